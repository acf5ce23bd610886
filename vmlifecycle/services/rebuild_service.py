import logging
from datetime import datetime
from typing import Callable, Optional

from vmlifecycle.config import Settings, settings as default_settings
from vmlifecycle.gateways.interfaces import IHypervisorGateway
from vmlifecycle.repositories.interfaces import IVMRepository
from vmlifecycle.schemas import Actor, VirtualMachine, VmAction, VmCreateSpec, VmStatus
from vmlifecycle.services.authorization_guard import AuthorizationGuard
from vmlifecycle.services.exceptions import (
    GatewayError,
    VmErrorStateError,
    VmNotFoundError,
)
from vmlifecycle.services.gateway_support import destroy_remote_object, fetch_ip_addresses, resolve_placement
from vmlifecycle.services.locks import KeyedLock
from vmlifecycle.services.state_machine import ensure_transition_allowed
from vmlifecycle.utils.clock import utcnow

logger = logging.getLogger(__name__)


class RebuildService:
    def __init__(
        self,
        vm_repo: IVMRepository,
        gateway: IHypervisorGateway,
        guard: AuthorizationGuard,
        vm_locks: Optional[KeyedLock] = None,
        clock: Optional[Callable[[], datetime]] = None,
        config: Optional[Settings] = None,
    ):
        self.vm_repo = vm_repo
        self.gateway = gateway
        self.guard = guard
        self.vm_locks = vm_locks or KeyedLock()
        self.clock = clock or utcnow
        self.config = config or default_settings

    def rebuild(self, vm_id: int, actor: Actor, os_type: str) -> VirtualMachine:
        """
        VM을 새 운영체제로 다시 만듭니다.

        기존 하이퍼바이저 객체를 제거한 뒤 운영체제만 바꾼 같은 사양으로 새 객체를 만듭니다.
        새 객체가 확인되기 전까지 기존 참조(remote_object_ref)는 유지됩니다.

        - 기존 객체 제거 실패: error 상태, 기존 참조 유지. 다시 rebuild하면 재시도합니다.
        - 제거 후 생성 실패: error 상태, 더 이상 존재하지 않는 기존 참조를 유지하고
          notes에 복구 방법을 남깁니다. 다시 rebuild하면 '객체 없음'을 제거 완료로 보고,
          같은 이름으로 남은 객체가 있으면 제거한 뒤 생성 단계부터 이어서 진행합니다.

        Args:
            vm_id: 대상 VM의 id.
            actor: 요청 주체.
            os_type: 새 운영체제 id.

        Returns:
            running 상태가 된 VM.

        Raises:
            VmNotFoundError: VM이 없을 때.
            ForbiddenError: 권한이 없을 때.
            VmExpiredError: 만료된 VM일 때.
            InvalidTransitionError: 현재 상태에서 rebuild할 수 없을 때.
            SpecificationError: 지원하지 않는 운영체제일 때.
            VmErrorStateError: 하이퍼바이저 작업이 실패해 VM이 error 상태가 되었을 때.
        """
        with self.vm_locks.hold(vm_id):
            vm = self.vm_repo.find_by_id(vm_id)
            if vm is None:
                raise VmNotFoundError(f"VM {vm_id} not found.")
            self.guard.authorize(actor, vm, VmAction.REBUILD)
            ensure_transition_allowed(vm, VmAction.REBUILD)

            new_specifications = self.guard.validate_specification(
                **{**vm.specifications.model_dump(), "operating_system": os_type}
            )

            vm = self.vm_repo.save(vm.with_changes(
                status=VmStatus.REBUILDING,
                last_power_action=VmAction.REBUILD.value,
                last_power_action_time=self.clock(),
            ))
            logger.info("Rebuilding VM %s with '%s'", vm.id, os_type)

            old_ref = vm.remote_object_ref
            try:
                destroy_remote_object(self.gateway, vm, self.config.GATEWAY_TASK_TIMEOUT)
            except GatewayError as e:
                self._mark_error(vm, f"Rebuild aborted: could not destroy remote object {old_ref}: {e}")
                logger.error("Rebuild of VM %s failed while destroying %s: %s", vm.id, old_ref, e)
                raise VmErrorStateError(vm.id, VmAction.REBUILD, VmStatus.ERROR, cause=e) from e

            try:
                placement = resolve_placement(self.gateway, vm.data_center, self.config)
                task = self.gateway.create_vm(VmCreateSpec(
                    name=vm.name,
                    hostname=vm.hostname,
                    specifications=new_specifications,
                    placement=placement,
                ))
                new_ref = self.gateway.await_task(task, self.config.GATEWAY_TASK_TIMEOUT)
            except GatewayError as e:
                self._mark_error(
                    vm,
                    f"Rebuild to '{os_type}' failed after destroying {old_ref}: "
                    f"no backing object exists on the hypervisor. Rebuild again to resume. ({e})",
                )
                logger.error("VM %s lost its backing object during rebuild: %s", vm.id, e)
                raise VmErrorStateError(vm.id, VmAction.REBUILD, VmStatus.ERROR, cause=e) from e

            rebuilt = self.vm_repo.save(vm.with_changes(
                remote_object_ref=new_ref,
                status=VmStatus.RUNNING,
                specifications=new_specifications,
                ip_addresses=fetch_ip_addresses(self.gateway, new_ref),
                notes=None,
            ))
            logger.info("VM %s rebuilt (ref: %s -> %s)", vm.id, old_ref, new_ref)
            return rebuilt

    def _mark_error(self, vm: VirtualMachine, note: str) -> VirtualMachine:
        return self.vm_repo.save(vm.with_changes(status=VmStatus.ERROR, notes=note))
