import logging
from typing import Callable, Optional
from datetime import datetime

from pydantic import ValidationError

from vmlifecycle.schemas import Actor, VirtualMachine, VmAction, VmSpecification
from vmlifecycle.services.exceptions import ForbiddenError, SpecificationError, VmExpiredError
from vmlifecycle.services.state_machine import ADMIN_ONLY_ACTIONS, EXPIRY_GATED_ACTIONS
from vmlifecycle.utils.clock import utcnow

logger = logging.getLogger(__name__)


class AuthorizationGuard:
    """
    소유권, 관리자 전용 작업, 만료 여부를 검사합니다.
    하이퍼바이저에는 접근하지 않습니다.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow

    def authorize(self, actor: Actor, vm: VirtualMachine, action: VmAction) -> None:
        """
        actor가 vm에 대해 action을 수행할 수 있는지 검사합니다.

        Args:
            actor: 요청 주체.
            vm: 대상 VM.
            action: 수행하려는 작업.

        Raises:
            ForbiddenError: 소유자가 아니거나, 관리자 전용 작업을 일반 사용자가 요청했을 때.
            VmExpiredError: 만료된 VM에 전원 켜기/재시작/재구축을 요청했을 때.
                관리자도 이 검사를 우회할 수 없습니다.
        """
        if not actor.is_admin and actor.user_id != vm.user_id:
            raise ForbiddenError(f"User {actor.user_id} does not own VM {vm.id}.")

        if action in ADMIN_ONLY_ACTIONS and not actor.is_admin:
            raise ForbiddenError(f"Action '{action.value}' requires an administrator.")

        if action in EXPIRY_GATED_ACTIONS and vm.is_expired(self.clock()):
            logger.info("Rejected '%s' on VM %s: expired at %s", action.value, vm.id, vm.expires_at)
            raise VmExpiredError(f"VM {vm.id} expired at {vm.expires_at.isoformat()}.")

    def validate_specification(self, **fields) -> VmSpecification:
        """
        요청된 사양이 자원 한계와 지원 운영체제 목록을 만족하는지 검사합니다.

        Returns:
            검증된 VmSpecification.

        Raises:
            SpecificationError: 검증에 실패했을 때.
        """
        try:
            return VmSpecification(**fields)
        except ValidationError as e:
            raise SpecificationError(f"Invalid VM specification: {e}") from e
