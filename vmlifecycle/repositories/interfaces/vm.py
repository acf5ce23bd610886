from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from vmlifecycle.schemas import VirtualMachine, VmStatus


class IVMRepository(ABC):
    @abstractmethod
    def create(self, vm: VirtualMachine) -> VirtualMachine:
        """
        새로운 VM 레코드를 저장하고 id가 채워진 VM을 반환합니다.
        같은 order_id의 레코드가 이미 있으면 VmAlreadyExistsError를 발생시킵니다.
        다른 VM이 같은 name을 쓰고 있으면 VmNameConflictError를 발생시킵니다.
        """
        pass

    @abstractmethod
    def find_by_id(self, vm_id: int) -> Optional[VirtualMachine]:
        """id로 특정 VM을 조회합니다."""
        pass

    @abstractmethod
    def find_by_order_id(self, order_id: str) -> Optional[VirtualMachine]:
        """주문 id로 VM을 조회합니다."""
        pass

    @abstractmethod
    def save(self, vm: VirtualMachine) -> VirtualMachine:
        """변경된 VM 스냅샷을 기존 레코드에 반영합니다."""
        pass

    @abstractmethod
    def delete(self, vm_id: int) -> bool:
        """VM 레코드를 데이터베이스에서 완전히 삭제합니다."""
        pass

    @abstractmethod
    def list_expired(self, now: datetime, exclude_statuses: Iterable[VmStatus] = ()) -> List[VirtualMachine]:
        """expires_at이 now보다 이전이고 상태가 exclude_statuses에 없는 VM 목록을 조회합니다."""
        pass

    @abstractmethod
    def list_by_user_id(self, user_id: Optional[int]) -> List[VirtualMachine]:
        """특정 사용자의 VM 목록을 최신순으로 조회합니다. user_id가 None이면 전체를 조회합니다."""
        pass
