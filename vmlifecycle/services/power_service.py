import logging
from datetime import datetime
from typing import Callable, Optional

from vmlifecycle.config import Settings, settings as default_settings
from vmlifecycle.gateways.interfaces import IHypervisorGateway
from vmlifecycle.repositories.interfaces import IVMRepository
from vmlifecycle.schemas import POWER_ACTIONS, Actor, VirtualMachine, VmAction, VmStatus
from vmlifecycle.services.authorization_guard import AuthorizationGuard
from vmlifecycle.services.exceptions import (
    GatewayError,
    InvalidTransitionError,
    TransitionAbortedError,
    VmNotFoundError,
)
from vmlifecycle.services.gateway_support import destroy_remote_object
from vmlifecycle.services.locks import KeyedLock
from vmlifecycle.services.state_machine import ensure_transition_allowed, is_noop
from vmlifecycle.utils.clock import utcnow

logger = logging.getLogger(__name__)


class PowerService:
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

    def transition(self, vm_id: int, actor: Actor, action: VmAction) -> VirtualMachine:
        """
        VM의 전원 상태를 바꿉니다. (on / off / restart / suspend)

        하이퍼바이저 작업이 끝난 것을 확인한 뒤에만 상태를 저장합니다.
        suspend는 running인 VM만 실제로 전원을 끄고, stopped인 VM은 상태만 바꿉니다.
        이미 suspended인 VM에 대한 suspend는 아무것도 하지 않습니다.

        Args:
            vm_id: 대상 VM의 id.
            actor: 요청 주체.
            action: 수행할 전원 작업.

        Returns:
            작업 후의 VM.

        Raises:
            VmNotFoundError: VM이 없을 때.
            ForbiddenError: 권한이 없을 때.
            VmExpiredError: 만료된 VM을 켜거나 재시작하려 할 때.
            InvalidTransitionError: 현재 상태에서 허용되지 않는 작업일 때.
            TransitionAbortedError: 하이퍼바이저 작업이 실패했을 때. 상태는 바뀌지 않습니다.
        """
        action = VmAction(action)
        if action not in POWER_ACTIONS:
            raise ValueError(f"'{action.value}' is not a power action.")

        with self.vm_locks.hold(vm_id):
            vm = self._load(vm_id)
            self.guard.authorize(actor, vm, action)

            if is_noop(vm, action):
                logger.info("VM %s is already suspended", vm.id)
                return vm

            result_status = ensure_transition_allowed(vm, action)
            if not vm.remote_object_ref:
                raise InvalidTransitionError(vm.id, action, vm.status)

            try:
                self._run_power_task(vm, action)
            except GatewayError as e:
                logger.warning("Power action '%s' on VM %s aborted: %s", action.value, vm.id, e)
                raise TransitionAbortedError(vm.id, action, vm.status, cause=e) from e

            updated = self.vm_repo.save(vm.with_changes(
                status=result_status,
                last_power_action=action.value,
                last_power_action_time=self.clock(),
            ))
            logger.info("VM %s: %s -> %s (%s)", vm.id, vm.status.value, updated.status.value, action.value)
            return updated

    def delete(self, vm_id: int, actor: Actor, purge: bool = False) -> VirtualMachine:
        """
        VM을 삭제합니다. (관리자 전용)

        하이퍼바이저 객체를 먼저 제거하고, 성공하면 레코드를 deleted로 표시합니다.
        참조가 없는 error 상태의 VM도 이름으로 남은 객체를 찾아 제거합니다.
        객체가 이미 없으면 제거된 것으로 간주합니다.

        Args:
            vm_id: 대상 VM의 id.
            actor: 요청 주체.
            purge: True이면 레코드를 저장소에서 완전히 지웁니다.

        Returns:
            deleted 상태의 VM.

        Raises:
            TransitionAbortedError: 하이퍼바이저 객체 제거에 실패했을 때. 레코드는 바뀌지 않습니다.
        """
        with self.vm_locks.hold(vm_id):
            vm = self._load(vm_id)
            self.guard.authorize(actor, vm, VmAction.DELETE)
            ensure_transition_allowed(vm, VmAction.DELETE)

            try:
                destroy_remote_object(self.gateway, vm, self.config.GATEWAY_TASK_TIMEOUT)
            except GatewayError as e:
                logger.warning("Deleting VM %s aborted: %s", vm.id, e)
                raise TransitionAbortedError(vm.id, VmAction.DELETE, vm.status, cause=e) from e

            deleted = self.vm_repo.save(vm.with_changes(
                status=VmStatus.DELETED,
                remote_object_ref=None,
                ip_addresses=[],
                last_power_action=VmAction.DELETE.value,
                last_power_action_time=self.clock(),
            ))
            if purge:
                self.vm_repo.delete(vm.id)
            logger.info("VM %s deleted%s", vm.id, " and purged" if purge else "")
            return deleted

    def _run_power_task(self, vm: VirtualMachine, action: VmAction) -> None:
        ref = vm.remote_object_ref
        if action == VmAction.POWER_ON:
            task = self.gateway.power_on(ref)
        elif action == VmAction.POWER_OFF:
            task = self.gateway.power_off(ref)
        elif action == VmAction.RESTART:
            task = self.gateway.reboot(ref)
        elif vm.status == VmStatus.RUNNING:
            task = self.gateway.power_off(ref)
        else:
            return
        self.gateway.await_task(task, self.config.GATEWAY_TASK_TIMEOUT)

    def _load(self, vm_id: int) -> VirtualMachine:
        vm = self.vm_repo.find_by_id(vm_id)
        if vm is None:
            raise VmNotFoundError(f"VM {vm_id} not found.")
        return vm
