"""
VM 상태 전이 규칙.

각 작업(action)이 어떤 상태에서 허용되는지와, 성공 시 도달하는 상태를 정의합니다.
상태 변경은 반드시 이 표를 거쳐야 합니다.
"""
from vmlifecycle.schemas import VirtualMachine, VmAction, VmStatus
from vmlifecycle.services.exceptions import InvalidTransitionError

# action -> (허용되는 시작 상태, 성공 시 상태)
TRANSITIONS = {
    VmAction.POWER_ON: (frozenset({VmStatus.STOPPED, VmStatus.SUSPENDED}), VmStatus.RUNNING),
    VmAction.POWER_OFF: (frozenset({VmStatus.RUNNING}), VmStatus.STOPPED),
    VmAction.RESTART: (frozenset({VmStatus.RUNNING}), VmStatus.RUNNING),
    VmAction.SUSPEND: (frozenset({VmStatus.RUNNING, VmStatus.STOPPED, VmStatus.SUSPENDED}), VmStatus.SUSPENDED),
    VmAction.REBUILD: (frozenset({VmStatus.RUNNING, VmStatus.STOPPED, VmStatus.ERROR}), VmStatus.RUNNING),
    VmAction.DELETE: (
        frozenset({
            VmStatus.RUNNING,
            VmStatus.STOPPED,
            VmStatus.SUSPENDED,
            VmStatus.REBUILDING,
            VmStatus.ERROR,
        }),
        VmStatus.DELETED,
    ),
}

# 만료된 VM에서는 허용되지 않는 작업
EXPIRY_GATED_ACTIONS = frozenset({VmAction.POWER_ON, VmAction.RESTART, VmAction.REBUILD})

ADMIN_ONLY_ACTIONS = frozenset({VmAction.DELETE, VmAction.SUSPEND})


def target_status(action: VmAction) -> VmStatus:
    return TRANSITIONS[action][1]


def is_noop(vm: VirtualMachine, action: VmAction) -> bool:
    """이미 suspended 상태인 VM에 대한 suspend는 아무 작업도 하지 않습니다."""
    return action == VmAction.SUSPEND and vm.status == VmStatus.SUSPENDED


def ensure_transition_allowed(vm: VirtualMachine, action: VmAction) -> VmStatus:
    """
    현재 상태에서 action이 허용되는지 검사하고, 성공 시 도달할 상태를 반환합니다.

    error 상태에서의 rebuild는 하이퍼바이저 객체 참조가 남아 있을 때만 허용됩니다.
    (실패한 rebuild를 이어서 진행하는 경로)

    Raises:
        InvalidTransitionError: 허용되지 않는 전이일 때.
    """
    if action not in TRANSITIONS:
        raise InvalidTransitionError(vm.id, action, vm.status)

    allowed_from, result = TRANSITIONS[action]
    if vm.status not in allowed_from:
        raise InvalidTransitionError(vm.id, action, vm.status)
    if action == VmAction.REBUILD and vm.status == VmStatus.ERROR and not vm.remote_object_ref:
        raise InvalidTransitionError(vm.id, action, vm.status)
    return result
