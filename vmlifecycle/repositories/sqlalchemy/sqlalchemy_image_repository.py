from typing import Optional
from sqlalchemy.orm import Session

from vmlifecycle.database import models
from vmlifecycle.repositories.interfaces import IImageRepository
from vmlifecycle.schemas import ImageRecord


class SqlalchemyImageRepository(IImageRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def find_by_name(self, name: str) -> Optional[ImageRecord]:
        image = self.db.query(models.Image).filter(models.Image.name == name).first()
        if image is None:
            return None
        return ImageRecord(
            name=image.name,
            filepath=image.filepath,
            min_disk_gb=image.min_disk_gb,
            min_ram_mb=image.min_ram_mb,
        )
