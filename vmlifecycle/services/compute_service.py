import logging
from datetime import datetime
from typing import Callable, List, Optional

from vmlifecycle.config import Settings, settings as default_settings
from vmlifecycle.gateways.interfaces import IHypervisorGateway
from vmlifecycle.repositories.interfaces import IOrderRepository, IVMRepository
from vmlifecycle.schemas import Actor, VirtualMachine, VmAction, VmStatus
from vmlifecycle.services.authorization_guard import AuthorizationGuard
from vmlifecycle.services.exceptions import (
    ForbiddenError,
    GatewayError,
    InvalidTransitionError,
    TransitionAbortedError,
    VmNotFoundError,
)
from vmlifecycle.services.expiry_sweeper import ExpirySweeper
from vmlifecycle.services.locks import KeyedLock
from vmlifecycle.services.power_service import PowerService
from vmlifecycle.services.provisioning_service import ProvisioningService
from vmlifecycle.services.rebuild_service import RebuildService
from vmlifecycle.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ComputeService:
    """
    VM 수명주기 작업의 진입점.
    API 계층은 이 클래스만 사용하며, 실제 작업은 각 하위 서비스에 위임합니다.
    """

    def __init__(
        self,
        vm_repo: IVMRepository,
        gateway: IHypervisorGateway,
        guard: AuthorizationGuard,
        provisioning_service: ProvisioningService,
        power_service: PowerService,
        rebuild_service: RebuildService,
        expiry_sweeper: ExpirySweeper,
        vm_locks: KeyedLock,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.vm_repo = vm_repo
        self.gateway = gateway
        self.guard = guard
        self.provisioning_service = provisioning_service
        self.power_service = power_service
        self.rebuild_service = rebuild_service
        self.expiry_sweeper = expiry_sweeper
        self.vm_locks = vm_locks
        self.clock = clock or utcnow

    def provision(self, order_id: str) -> VirtualMachine:
        return self.provisioning_service.provision(order_id)

    def get_vm(self, vm_id: int, actor: Actor) -> VirtualMachine:
        vm = self._load(vm_id)
        self.guard.authorize(actor, vm, VmAction.READ)
        return vm

    def list_vms(self, actor: Actor) -> List[VirtualMachine]:
        """actor의 VM 목록을 최신순으로 반환합니다. 관리자는 전체 목록을 봅니다."""
        return self.vm_repo.list_by_user_id(None if actor.is_admin else actor.user_id)

    def transition(self, vm_id: int, actor: Actor, action: VmAction) -> VirtualMachine:
        return self.power_service.transition(vm_id, actor, action)

    def rebuild(self, vm_id: int, actor: Actor, os_type: str) -> VirtualMachine:
        return self.rebuild_service.rebuild(vm_id, actor, os_type)

    def delete(self, vm_id: int, actor: Actor, purge: bool = False) -> VirtualMachine:
        return self.power_service.delete(vm_id, actor, purge=purge)

    def list_expired(self, actor: Actor) -> List[VirtualMachine]:
        """
        만료 시각이 지났고 삭제되지 않은 VM 목록을 반환합니다. (관리자 전용)

        Raises:
            ForbiddenError: 관리자가 아닐 때.
        """
        if not actor.is_admin:
            raise ForbiddenError("Listing expired VMs requires an administrator.")
        return self.vm_repo.list_expired(self.clock(), exclude_statuses=(VmStatus.DELETED,))

    def sweep_expired(self) -> List[VirtualMachine]:
        return self.expiry_sweeper.sweep_expired()

    def refresh_ip_addresses(self, vm_id: int, actor: Actor) -> VirtualMachine:
        """
        하이퍼바이저에서 VM의 IP 주소를 다시 읽어 저장합니다.

        Raises:
            InvalidTransitionError: 하이퍼바이저 객체가 없는 VM일 때.
            TransitionAbortedError: 하이퍼바이저 조회에 실패했을 때.
        """
        with self.vm_locks.hold(vm_id):
            vm = self._load(vm_id)
            self.guard.authorize(actor, vm, VmAction.READ)
            if not vm.remote_object_ref:
                raise InvalidTransitionError(vm.id, VmAction.READ, vm.status)
            try:
                properties = self.gateway.get_properties(vm.remote_object_ref, ["ip_addresses"])
            except GatewayError as e:
                raise TransitionAbortedError(vm.id, VmAction.READ, vm.status, cause=e) from e
            return self.vm_repo.save(vm.with_changes(ip_addresses=list(properties.get("ip_addresses") or [])))

    def record_bandwidth_usage(self, vm_id: int, delta_gb: float) -> VirtualMachine:
        """VM의 누적 트래픽 사용량(GB)에 delta_gb를 더합니다. 사용량은 줄어들지 않습니다."""
        if delta_gb < 0:
            raise ValueError("Bandwidth usage delta must not be negative.")
        with self.vm_locks.hold(vm_id):
            vm = self._load(vm_id)
            return self.vm_repo.save(vm.with_changes(bandwidth_usage=vm.bandwidth_usage + delta_gb))

    def _load(self, vm_id: int) -> VirtualMachine:
        vm = self.vm_repo.find_by_id(vm_id)
        if vm is None:
            raise VmNotFoundError(f"VM {vm_id} not found.")
        return vm


def build_compute_service(
    vm_repo: IVMRepository,
    order_repo: IOrderRepository,
    gateway: IHypervisorGateway,
    clock: Optional[Callable[[], datetime]] = None,
    config: Optional[Settings] = None,
) -> ComputeService:
    """하위 서비스들이 같은 VM별 락과 시계를 공유하도록 ComputeService를 조립합니다."""
    clock = clock or utcnow
    config = config or default_settings
    vm_locks = KeyedLock()
    guard = AuthorizationGuard(clock)

    power_service = PowerService(vm_repo, gateway, guard, vm_locks=vm_locks, clock=clock, config=config)
    return ComputeService(
        vm_repo=vm_repo,
        gateway=gateway,
        guard=guard,
        provisioning_service=ProvisioningService(
            vm_repo, order_repo, gateway, guard,
            vm_locks=vm_locks, order_locks=KeyedLock(), clock=clock, config=config,
        ),
        power_service=power_service,
        rebuild_service=RebuildService(vm_repo, gateway, guard, vm_locks=vm_locks, clock=clock, config=config),
        expiry_sweeper=ExpirySweeper(vm_repo, power_service, clock=clock),
        vm_locks=vm_locks,
        clock=clock,
    )
