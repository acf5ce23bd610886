from abc import ABC, abstractmethod
from typing import Optional

from vmlifecycle.schemas import OrderSnapshot


class IOrderRepository(ABC):
    @abstractmethod
    def find_by_id(self, order_id: str) -> Optional[OrderSnapshot]:
        """id로 주문을 조회합니다."""
        pass
