from typing import Optional
from sqlalchemy.orm import Session

from vmlifecycle.database import models
from vmlifecycle.repositories.interfaces import IOrderRepository
from vmlifecycle.schemas import OrderSnapshot


class SqlalchemyOrderRepository(IOrderRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def find_by_id(self, order_id: str) -> Optional[OrderSnapshot]:
        row = self.db.get(models.Order, order_id)
        if row is None:
            return None
        return OrderSnapshot(
            id=row.id,
            user_id=row.user_id,
            payment_status=row.payment_status,
            billing_period=row.billing_period,
            duration_days=row.duration_days,
            service_config=dict(row.service_config or {}),
        )
