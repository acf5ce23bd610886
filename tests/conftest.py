# tests/conftest.py
import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

from vmlifecycle.config import Settings
from vmlifecycle.gateways.interfaces import EntityKind, IHypervisorGateway
from vmlifecycle.repositories.interfaces import IOrderRepository, IVMRepository
from vmlifecycle.schemas import VirtualMachine, VmSpecification, VmStatus
from vmlifecycle.services.authorization_guard import AuthorizationGuard
from vmlifecycle.services.exceptions import RemoteObjectNotFoundError

# 모든 서비스 테스트가 공유하는 고정 시각 (UTC, tz 없음)
NOW = datetime(2025, 1, 15, 12, 0, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    """항상 NOW를 반환하는 시계."""
    return lambda: NOW


@pytest.fixture
def test_settings() -> Settings:
    return Settings(_env_file=None, GATEWAY_TASK_TIMEOUT=5.0, HOSTNAME_DOMAIN="cloud.local")


@pytest.fixture
def make_vm():
    """기본값이 채워진 VirtualMachine을 만드는 팩토리. 필요한 필드만 덮어씁니다."""
    def _make_vm(**overrides) -> VirtualMachine:
        fields = {
            "id": 1,
            "order_id": "ORD-1",
            "user_id": 7,
            "remote_object_ref": "ref-1",
            "name": "vm-ord-1-400000",
            "hostname": "vm-ord-1-400000.cloud.local",
            "status": VmStatus.RUNNING,
            "specifications": VmSpecification(
                cpu_count=2, memory_gb=4, disk_gb=60, bandwidth_gb=1024, operating_system="ubuntu-22"
            ),
            "data_center": "datacenter1",
            "ip_addresses": ["192.168.122.10"],
            "created_at": NOW - timedelta(days=1),
            "expires_at": NOW + timedelta(days=29),
        }
        fields.update(overrides)
        return VirtualMachine(**fields)
    return _make_vm


@pytest.fixture
def mock_vm_repo() -> MagicMock:
    """IVMRepository에 대한 모의(Mock) 객체. save()는 전달받은 VM을 그대로 반환합니다."""
    repo = MagicMock(spec=IVMRepository)
    repo.save.side_effect = lambda vm: vm
    return repo


@pytest.fixture
def mock_order_repo() -> MagicMock:
    return MagicMock(spec=IOrderRepository)


@pytest.fixture
def mock_gateway() -> MagicMock:
    """IHypervisorGateway에 대한 모의 객체. find_entity는 '<kind>:<name>' 형식의 참조를 돌려줍니다."""
    gateway = MagicMock(spec=IHypervisorGateway)
    gateway.find_entity.side_effect = lambda kind, name: f"{kind}:{name}"
    gateway.get_properties.return_value = {"ip_addresses": ["192.168.122.10"]}
    return gateway


@pytest.fixture
def vm_lookup(mock_gateway):
    """
    이름으로 VM을 찾을 때의 결과를 지정합니다.
    vm_ref가 None이면 객체 없음(RemoteObjectNotFoundError)을 발생시킵니다.
    """
    def configure(vm_ref=None):
        def find_entity(kind, name):
            if kind == EntityKind.VM:
                if vm_ref is None:
                    raise RemoteObjectNotFoundError(f"Domain '{name}' not found")
                return vm_ref
            return f"{kind}:{name}"

        mock_gateway.find_entity.side_effect = find_entity

    return configure


@pytest.fixture
def guard(clock) -> AuthorizationGuard:
    return AuthorizationGuard(clock)
