# tests/test_app.py
import io
import json
import pytest
from unittest.mock import MagicMock
from wsgiref.util import setup_testing_defaults

from vmlifecycle.app import create_application
from vmlifecycle.schemas import Actor, VmAction, VmStatus
from vmlifecycle.services.compute_service import ComputeService
from vmlifecycle.services.exceptions import (
    GatewayTransientError,
    InvalidTransitionError,
    TransitionAbortedError,
    VmErrorStateError,
    VmExpiredError,
    VmNotFoundError,
)

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def mock_compute_service() -> MagicMock:
    return MagicMock(spec=ComputeService)


@pytest.fixture
def session_cleanup() -> MagicMock:
    return MagicMock()


@pytest.fixture
def call_app(mock_compute_service, session_cleanup):
    """WSGI 애플리케이션을 호출하고 (상태 코드, JSON 본문)을 반환하는 헬퍼."""
    application = create_application(mock_compute_service, session_cleanup=session_cleanup)

    def _call(method, path, body=None, user_id="7", role=None, query=""):
        environ = {}
        setup_testing_defaults(environ)
        raw = json.dumps(body).encode("utf-8") if body is not None else b""
        environ.update({
            "REQUEST_METHOD": method,
            "PATH_INFO": path,
            "QUERY_STRING": query,
            "CONTENT_LENGTH": str(len(raw)),
            "wsgi.input": io.BytesIO(raw),
        })
        if user_id is not None:
            environ["HTTP_X_USER_ID"] = user_id
        if role is not None:
            environ["HTTP_X_USER_ROLE"] = role

        captured = {}

        def start_response(status, headers):
            captured["status"] = status

        response = b"".join(application(environ, start_response))
        return int(captured["status"].split()[0]), json.loads(response)

    return _call

# ===================================================================
#  라우팅 / 응답 테스트
# ===================================================================
class TestRoutes:
    def test_get_vm(self, call_app, mock_compute_service, make_vm, session_cleanup):
        mock_compute_service.get_vm.return_value = make_vm()

        status, body = call_app("GET", "/v1/vms/1")

        assert status == 200
        assert body["id"] == 1
        assert body["status"] == "running"
        assert body["specifications"]["operating_system"] == "ubuntu-22"
        mock_compute_service.get_vm.assert_called_once_with(1, Actor(user_id=7))
        session_cleanup.assert_called_once()

    def test_provision_vm(self, call_app, mock_compute_service, make_vm):
        mock_compute_service.provision.return_value = make_vm()

        status, body = call_app("POST", "/v1/vms", body={"order_id": "ORD-1"})

        assert status == 201
        mock_compute_service.provision.assert_called_once_with("ORD-1")

    def test_provision_without_order_id(self, call_app, mock_compute_service):
        status, _ = call_app("POST", "/v1/vms", body={})

        assert status == 400
        mock_compute_service.provision.assert_not_called()

    @pytest.mark.parametrize("body", [[], ["ORD-1"], "ORD-1", 42])
    def test_provision_with_non_object_body(self, call_app, mock_compute_service, body):
        status, response = call_app("POST", "/v1/vms", body=body)

        assert status == 400
        assert response == {"error": "JSON body must be an object."}
        mock_compute_service.provision.assert_not_called()

    def test_list_vms(self, call_app, mock_compute_service, make_vm):
        mock_compute_service.list_vms.return_value = [make_vm(), make_vm(id=2)]

        status, body = call_app("GET", "/v1/vms", role="admin")

        assert status == 200
        assert [vm["id"] for vm in body["vms"]] == [1, 2]
        mock_compute_service.list_vms.assert_called_once_with(Actor(user_id=7, is_admin=True))

    def test_power_action(self, call_app, mock_compute_service, make_vm):
        mock_compute_service.transition.return_value = make_vm(status=VmStatus.STOPPED)

        status, body = call_app("POST", "/v1/vms/1/power/off")

        assert status == 200
        assert body["status"] == "stopped"
        mock_compute_service.transition.assert_called_once_with(1, Actor(user_id=7), VmAction.POWER_OFF)

    def test_rebuild(self, call_app, mock_compute_service, make_vm):
        mock_compute_service.rebuild.return_value = make_vm()

        status, _ = call_app("POST", "/v1/vms/1/rebuild", body={"os_type": "debian-12"})

        assert status == 200
        mock_compute_service.rebuild.assert_called_once_with(1, Actor(user_id=7), "debian-12")

    def test_delete_with_purge(self, call_app, mock_compute_service, make_vm):
        mock_compute_service.delete.return_value = make_vm(status=VmStatus.DELETED, remote_object_ref=None)

        status, _ = call_app("DELETE", "/v1/vms/1", role="admin", query="purge=true")

        assert status == 200
        mock_compute_service.delete.assert_called_once_with(1, Actor(user_id=7, is_admin=True), purge=True)

    def test_sweep_requires_admin(self, call_app, mock_compute_service):
        status, _ = call_app("POST", "/v1/actions/sweep-expired")

        assert status == 403
        mock_compute_service.sweep_expired.assert_not_called()

    def test_unknown_route(self, call_app):
        status, body = call_app("GET", "/v1/unknown")

        assert status == 404
        assert body == {"error": "Not Found"}

# ===================================================================
#  오류 매핑 테스트
# ===================================================================
class TestErrorMapping:
    def test_missing_actor_header(self, call_app, mock_compute_service):
        status, _ = call_app("GET", "/v1/vms", user_id=None)

        assert status == 401
        mock_compute_service.list_vms.assert_not_called()

    @pytest.mark.parametrize("error, expected_status", [
        (VmNotFoundError("VM 1 not found."), 404),
        (VmExpiredError("expired"), 403),
        (InvalidTransitionError(1, VmAction.POWER_ON, VmStatus.RUNNING), 409),
        (ValueError("bad"), 400),
        (RuntimeError("unexpected"), 500),
    ])
    def test_errors_map_to_status(self, call_app, mock_compute_service, error, expected_status):
        mock_compute_service.transition.side_effect = error

        status, body = call_app("POST", "/v1/vms/1/power/on")

        assert status == expected_status
        assert "error" in body

    def test_aborted_transition_is_retryable(self, call_app, mock_compute_service):
        mock_compute_service.transition.side_effect = TransitionAbortedError(
            1, VmAction.POWER_OFF, VmStatus.RUNNING, cause=GatewayTransientError("timeout")
        )

        status, body = call_app("POST", "/v1/vms/1/power/off")

        assert status == 503
        assert body["retry_safe"] is True
        assert body["vm_status"] == "running"
        assert body["cause"] == "GatewayTransientError"

    def test_error_state_failure(self, call_app, mock_compute_service):
        mock_compute_service.rebuild.side_effect = VmErrorStateError(1, VmAction.REBUILD, VmStatus.ERROR)

        status, body = call_app("POST", "/v1/vms/1/rebuild", body={"os_type": "debian-12"})

        assert status == 502
        assert body["retry_safe"] is False
        assert body["vm_status"] == "error"
