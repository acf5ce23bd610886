from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, Text
from ..database import Base


class VM(Base):
    """
    주문 하나에 대응하여 프로비저닝된 가상 머신을 나타냅니다.
    주문당 최대 한 대만 존재하도록 order_id에 UNIQUE 제약이 걸려 있습니다.
    """
    __tablename__ = "virtual_machines"
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), unique=True, nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    remote_object_ref = Column(String, nullable=True)  # 하이퍼바이저 측 객체 참조 (libvirt는 도메인 UUID)
    name = Column(String, unique=True, nullable=False)
    hostname = Column(String, nullable=False)
    status = Column(String(32), nullable=False)

    cpu_count = Column(Integer, nullable=False)
    memory_gb = Column(Integer, nullable=False)
    disk_gb = Column(Integer, nullable=False)
    bandwidth_gb = Column(Integer, nullable=False)
    operating_system = Column(String(64), nullable=False)

    data_center = Column(String, nullable=False)
    ip_addresses = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)
    last_power_action = Column(String(32), nullable=True)
    last_power_action_time = Column(DateTime, nullable=True)
    bandwidth_usage = Column(Float, nullable=False, default=0.0)
    notes = Column(Text, nullable=True)
