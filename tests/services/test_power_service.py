# tests/services/test_power_service.py
import pytest
from datetime import timedelta

from vmlifecycle.gateways.interfaces import EntityKind
from vmlifecycle.schemas import Actor, OrderSnapshot, VmAction, VmStatus
from vmlifecycle.services.exceptions import (
    ForbiddenError,
    GatewayRejectedError,
    GatewayTransientError,
    InvalidTransitionError,
    RemoteObjectNotFoundError,
    TransitionAbortedError,
    VmErrorStateError,
    VmExpiredError,
    VmNotFoundError,
)
from vmlifecycle.services.power_service import PowerService
from vmlifecycle.services.provisioning_service import ProvisioningService

OWNER = Actor(user_id=7)
ADMIN = Actor(user_id=1, is_admin=True)
STRANGER = Actor(user_id=99)


@pytest.fixture
def power_service(mock_vm_repo, mock_gateway, guard, clock, test_settings) -> PowerService:
    return PowerService(mock_vm_repo, mock_gateway, guard, clock=clock, config=test_settings)

# ===================================================================
#  transition 테스트 스위트
# ===================================================================
class TestTransition:
    def test_power_off_running_vm(self, power_service, mock_vm_repo, mock_gateway, make_vm, now):
        # === Arrange ===
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.RUNNING)

        # === Act ===
        vm = power_service.transition(1, OWNER, VmAction.POWER_OFF)

        # === Assert ===
        mock_gateway.power_off.assert_called_once_with("ref-1")
        mock_gateway.await_task.assert_called_once_with(mock_gateway.power_off.return_value, 5.0)
        assert vm.status == VmStatus.STOPPED
        assert vm.last_power_action == "off"
        assert vm.last_power_action_time == now

    @pytest.mark.parametrize("action, gateway_call, start, result", [
        (VmAction.POWER_ON, "power_on", VmStatus.STOPPED, VmStatus.RUNNING),
        (VmAction.POWER_ON, "power_on", VmStatus.SUSPENDED, VmStatus.RUNNING),
        (VmAction.RESTART, "reboot", VmStatus.RUNNING, VmStatus.RUNNING),
    ])
    def test_power_actions_call_matching_gateway_operation(
        self, power_service, mock_vm_repo, mock_gateway, make_vm, action, gateway_call, start, result
    ):
        mock_vm_repo.find_by_id.return_value = make_vm(status=start)

        vm = power_service.transition(1, OWNER, action)

        getattr(mock_gateway, gateway_call).assert_called_once_with("ref-1")
        assert vm.status == result

    def test_power_on_expired_vm_is_forbidden(self, power_service, mock_vm_repo, mock_gateway, make_vm, now):
        """만료된 VM을 켜려고 하면 게이트웨이를 호출하지 않고 Forbidden이 발생해야 합니다."""
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.STOPPED, expires_at=now - timedelta(days=1))

        with pytest.raises(VmExpiredError):
            power_service.transition(1, OWNER, VmAction.POWER_ON)

        mock_gateway.power_on.assert_not_called()
        mock_gateway.await_task.assert_not_called()
        mock_vm_repo.save.assert_not_called()

    def test_admin_cannot_bypass_expiry(self, power_service, mock_vm_repo, make_vm, now):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.RUNNING, expires_at=now - timedelta(minutes=1))

        with pytest.raises(VmExpiredError):
            power_service.transition(1, ADMIN, VmAction.RESTART)

    def test_failed_power_off_leaves_status_unchanged(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        """전원 끄기가 실패하면 상태는 running 그대로이고 재시도 가능한 예외가 발생해야 합니다."""
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.RUNNING)
        mock_gateway.await_task.side_effect = GatewayRejectedError("domain is locked")

        with pytest.raises(TransitionAbortedError) as exc_info:
            power_service.transition(1, OWNER, VmAction.POWER_OFF)

        assert exc_info.value.vm_status == VmStatus.RUNNING
        assert exc_info.value.retry_safe is True
        assert exc_info.value.to_dict()["action"] == "off"
        mock_vm_repo.save.assert_not_called()

    def test_suspend_already_suspended_vm_is_noop(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        suspended = make_vm(status=VmStatus.SUSPENDED)
        mock_vm_repo.find_by_id.return_value = suspended

        vm = power_service.transition(1, ADMIN, VmAction.SUSPEND)

        assert vm == suspended
        assert mock_gateway.method_calls == []
        mock_vm_repo.save.assert_not_called()

    def test_suspend_running_vm_powers_off_first(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.RUNNING)

        vm = power_service.transition(1, ADMIN, VmAction.SUSPEND)

        mock_gateway.power_off.assert_called_once_with("ref-1")
        assert vm.status == VmStatus.SUSPENDED
        assert vm.last_power_action == "suspend"

    def test_suspend_stopped_vm_only_changes_status(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.STOPPED)

        vm = power_service.transition(1, ADMIN, VmAction.SUSPEND)

        mock_gateway.power_off.assert_not_called()
        mock_gateway.await_task.assert_not_called()
        assert vm.status == VmStatus.SUSPENDED

    def test_suspend_requires_admin(self, power_service, mock_vm_repo, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.RUNNING)

        with pytest.raises(ForbiddenError):
            power_service.transition(1, OWNER, VmAction.SUSPEND)

    def test_power_on_running_vm_is_invalid(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.RUNNING)

        with pytest.raises(InvalidTransitionError):
            power_service.transition(1, OWNER, VmAction.POWER_ON)

        mock_gateway.power_on.assert_not_called()

    def test_other_users_vm_is_forbidden(self, power_service, mock_vm_repo, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm()

        with pytest.raises(ForbiddenError):
            power_service.transition(1, STRANGER, VmAction.POWER_OFF)

    def test_missing_vm_raises_not_found(self, power_service, mock_vm_repo):
        mock_vm_repo.find_by_id.return_value = None

        with pytest.raises(VmNotFoundError):
            power_service.transition(404, OWNER, VmAction.POWER_OFF)

    def test_non_power_action_is_rejected(self, power_service):
        with pytest.raises(ValueError):
            power_service.transition(1, OWNER, VmAction.REBUILD)

# ===================================================================
#  delete 테스트 스위트
# ===================================================================
class TestDelete:
    def test_delete_destroys_remote_object_and_marks_deleted(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.RUNNING)

        vm = power_service.delete(1, ADMIN)

        mock_gateway.destroy.assert_called_once_with("ref-1")
        assert vm.status == VmStatus.DELETED
        assert vm.remote_object_ref is None
        assert vm.ip_addresses == []
        mock_vm_repo.delete.assert_not_called()

    def test_delete_with_purge_removes_record(self, power_service, mock_vm_repo, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.STOPPED)

        power_service.delete(1, ADMIN, purge=True)

        mock_vm_repo.delete.assert_called_once_with(1)

    def test_delete_treats_missing_remote_object_as_destroyed(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.ERROR)
        mock_gateway.await_task.side_effect = RemoteObjectNotFoundError("no domain")

        vm = power_service.delete(1, ADMIN)

        assert vm.status == VmStatus.DELETED

    def test_delete_destroys_domain_left_by_timed_out_create(self, power_service, mock_vm_repo, mock_gateway, make_vm, vm_lookup):
        """생성이 시간 초과되어 참조 없이 error가 된 VM도 같은 이름의 도메인을 찾아 제거해야 합니다."""
        # === Arrange ===
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.ERROR, remote_object_ref=None)
        vm_lookup("uuid-late")

        # === Act ===
        vm = power_service.delete(1, ADMIN)

        # === Assert ===
        mock_gateway.find_entity.assert_called_once_with(EntityKind.VM, "vm-ord-1-400000")
        mock_gateway.destroy.assert_called_once_with("uuid-late")
        assert vm.status == VmStatus.DELETED

    def test_delete_without_ref_and_without_domain(self, power_service, mock_vm_repo, mock_gateway, make_vm, vm_lookup):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.ERROR, remote_object_ref=None)
        vm_lookup(None)

        vm = power_service.delete(1, ADMIN)

        mock_gateway.destroy.assert_not_called()
        assert vm.status == VmStatus.DELETED

    def test_delete_after_provision_timeout(
        self, power_service, mock_vm_repo, mock_order_repo, mock_gateway, guard, clock, test_settings, vm_lookup
    ):
        # === Arrange ===
        provisioning_service = ProvisioningService(
            mock_vm_repo, mock_order_repo, mock_gateway, guard, clock=clock, config=test_settings
        )
        mock_order_repo.find_by_id.return_value = OrderSnapshot(
            id="ORD-9", user_id=7, payment_status="paid", billing_period="monthly", service_config={},
        )
        mock_vm_repo.find_by_order_id.return_value = None
        mock_vm_repo.create.side_effect = lambda vm: vm.with_changes(id=9)
        mock_gateway.await_task.side_effect = GatewayTransientError("task timed out")
        with pytest.raises(VmErrorStateError):
            provisioning_service.provision("ORD-9")
        failed = mock_vm_repo.save.call_args.args[0]
        assert failed.remote_object_ref is None

        mock_vm_repo.find_by_id.return_value = failed
        mock_gateway.await_task.side_effect = None
        vm_lookup("uuid-late")

        # === Act ===
        vm = power_service.delete(9, ADMIN)

        # === Assert ===
        mock_gateway.find_entity.assert_any_call(EntityKind.VM, failed.name)
        mock_gateway.destroy.assert_called_once_with("uuid-late")
        assert vm.status == VmStatus.DELETED

    def test_delete_lookup_failure_aborts(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.ERROR, remote_object_ref=None)
        mock_gateway.find_entity.side_effect = GatewayTransientError("connection lost")

        with pytest.raises(TransitionAbortedError):
            power_service.delete(1, ADMIN)

        mock_vm_repo.save.assert_not_called()

    def test_delete_failure_leaves_record_unchanged(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.RUNNING)
        mock_gateway.await_task.side_effect = GatewayTransientError("connection lost")

        with pytest.raises(TransitionAbortedError):
            power_service.delete(1, ADMIN)

        mock_vm_repo.save.assert_not_called()

    def test_delete_requires_admin(self, power_service, mock_vm_repo, mock_gateway, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm()

        with pytest.raises(ForbiddenError):
            power_service.delete(1, OWNER)

        mock_gateway.destroy.assert_not_called()

    def test_delete_while_provisioning_is_invalid(self, power_service, mock_vm_repo, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(status=VmStatus.PROVISIONING, remote_object_ref=None)

        with pytest.raises(InvalidTransitionError):
            power_service.delete(1, ADMIN)
