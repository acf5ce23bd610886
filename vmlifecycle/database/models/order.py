from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, func
from ..database import Base


class Order(Base):
    """
    외부 주문/결제 원장의 주문. 이 서비스에서는 읽기만 합니다.
    service_config에는 요금제(plan)나 CPU/메모리/디스크/OS 같은 요청 사양이 담깁니다.
    """
    __tablename__ = "orders"
    id = Column(String(64), primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    payment_status = Column(String(32), nullable=False)
    billing_period = Column(String(32), nullable=False, default="monthly")
    duration_days = Column(Float, nullable=True)
    service_config = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, server_default=func.now())
