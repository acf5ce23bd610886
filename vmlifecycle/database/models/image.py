from sqlalchemy import Column, DateTime, Integer, String, func
from ..database import Base


class Image(Base):
    """
    VM을 생성할 때 사용하는 기반 디스크 이미지입니다.
    name은 운영체제 id(예: 'ubuntu-22')와 같습니다.
    """
    __tablename__ = "images"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)
    filepath = Column(String, nullable=False)
    min_disk_gb = Column(Integer)
    min_ram_mb = Column(Integer)
    created_at = Column(DateTime, server_default=func.now())
