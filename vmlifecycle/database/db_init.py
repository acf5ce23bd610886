import logging
import os

from vmlifecycle.catalog import OPERATING_SYSTEMS
from vmlifecycle.config import settings
from .database import engine, SessionLocal, Base
from .models import *

logger = logging.getLogger(__name__)


def initialize_db():
    """
    테이블을 생성하고, 카탈로그의 운영체제별 기반 이미지를 등록합니다.
    이미 등록된 이미지는 건너뜁니다.
    """
    logger.info("Initializing database schema...")
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        existing = {name for (name,) in db.query(Image.name).all()}
        added = 0
        for os_id, info in OPERATING_SYSTEMS.items():
            if os_id in existing:
                continue
            min_disk_gb = 40 if info["family"] == "windows" else 10
            min_ram_mb = 4096 if info["family"] == "windows" else 1024
            db.add(Image(
                name=os_id,
                filepath=os.path.join(settings.IMAGE_BASE_DIR, "base", f"{os_id}.qcow2"),
                min_disk_gb=min_disk_gb,
                min_ram_mb=min_ram_mb,
            ))
            added += 1
        db.commit()
        logger.info("Database initialized. %d base image(s) registered.", added)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == '__main__':
    logging.basicConfig(level=settings.LOG_LEVEL)
    initialize_db()
