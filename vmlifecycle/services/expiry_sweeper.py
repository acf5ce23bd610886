import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from vmlifecycle.repositories.interfaces import IVMRepository
from vmlifecycle.schemas import SYSTEM_ACTOR, VirtualMachine, VmAction, VmStatus
from vmlifecycle.services.exceptions import ConflictError, OrchestratorError
from vmlifecycle.services.power_service import PowerService
from vmlifecycle.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    만료 시각이 지난 VM을 찾아 suspend합니다.
    suspend는 PowerService를 통해 수행하므로 VM별 락과 상태 전이 규칙을 그대로 따릅니다.
    """

    def __init__(self, vm_repo: IVMRepository, power_service: PowerService, clock: Optional[Callable[[], datetime]] = None):
        self.vm_repo = vm_repo
        self.power_service = power_service
        self.clock = clock or utcnow

    def sweep_expired(self) -> List[VirtualMachine]:
        """
        만료된 VM을 모두 suspend하고, 실제로 suspend된 VM 목록을 반환합니다.
        개별 VM의 실패는 로그로 남기고 나머지 VM을 계속 처리합니다.
        """
        now = self.clock()
        candidates = self.vm_repo.list_expired(now, exclude_statuses=(VmStatus.SUSPENDED, VmStatus.DELETED))
        if not candidates:
            return []

        logger.info("Found %d expired VM(s) to suspend", len(candidates))
        suspended = []
        for vm in candidates:
            try:
                suspended.append(self.power_service.transition(vm.id, SYSTEM_ACTOR, VmAction.SUSPEND))
            except ConflictError as e:
                # provisioning/rebuilding/error 등 suspend할 수 없는 상태
                logger.info("Skipping expired VM %s: %s", vm.id, e)
            except OrchestratorError as e:
                logger.warning("Failed to suspend expired VM %s: %s", vm.id, e)
            except Exception:
                logger.exception("Unexpected error while suspending expired VM %s", vm.id)
        return suspended

    def run_forever(self, interval: float, stop_event: threading.Event, cleanup: Optional[Callable[[], None]] = None):
        """stop_event가 설정될 때까지 interval초마다 sweep_expired()를 실행합니다."""
        logger.info("Expiry sweeper started (interval: %ss)", interval)
        while not stop_event.is_set():
            try:
                self.sweep_expired()
            except Exception:
                logger.exception("Expiry sweep failed")
            finally:
                if cleanup is not None:
                    cleanup()
            stop_event.wait(interval)
        logger.info("Expiry sweeper stopped")
