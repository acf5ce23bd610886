from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vmlifecycle.catalog import RESOURCE_BOUNDS, is_supported_os


class VmStatus(str, Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    REBUILDING = "rebuilding"
    ERROR = "error"
    DELETED = "deleted"


class VmAction(str, Enum):
    PROVISION = "provision"
    READ = "read"
    POWER_ON = "on"
    POWER_OFF = "off"
    RESTART = "restart"
    SUSPEND = "suspend"
    REBUILD = "rebuild"
    DELETE = "delete"


POWER_ACTIONS = frozenset({VmAction.POWER_ON, VmAction.POWER_OFF, VmAction.RESTART, VmAction.SUSPEND})


class VmSpecification(BaseModel):
    """
    VM에 할당되는 자원 사양 값 객체입니다.
    생성 시점에 자원 한계(RESOURCE_BOUNDS)와 지원 운영체제 목록으로 검증됩니다.
    """
    model_config = ConfigDict(frozen=True)

    cpu_count: int = Field(ge=RESOURCE_BOUNDS["cpu_count"][0], le=RESOURCE_BOUNDS["cpu_count"][1])
    memory_gb: int = Field(ge=RESOURCE_BOUNDS["memory_gb"][0], le=RESOURCE_BOUNDS["memory_gb"][1])
    disk_gb: int = Field(ge=RESOURCE_BOUNDS["disk_gb"][0], le=RESOURCE_BOUNDS["disk_gb"][1])
    bandwidth_gb: int = Field(ge=RESOURCE_BOUNDS["bandwidth_gb"][0], le=RESOURCE_BOUNDS["bandwidth_gb"][1])
    operating_system: str

    @field_validator("operating_system")
    @classmethod
    def _check_operating_system(cls, value: str) -> str:
        if not is_supported_os(value):
            raise ValueError(f"Unsupported operating system '{value}'.")
        return value


class VirtualMachine(BaseModel):
    """
    VM 레지스트리에 기록된 가상 머신 한 대의 불변 스냅샷입니다.
    상태 전이는 변경된 사본을 만들어 리포지토리의 save()로 명시적으로 저장합니다.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    order_id: str
    user_id: int
    remote_object_ref: Optional[str] = None
    name: str
    hostname: str
    status: VmStatus
    specifications: VmSpecification
    data_center: str
    ip_addresses: List[str] = Field(default_factory=list)
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_power_action: Optional[str] = None
    last_power_action_time: Optional[datetime] = None
    bandwidth_usage: float = 0.0
    notes: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def with_changes(self, **changes: Any) -> "VirtualMachine":
        return self.model_copy(update=changes)


class Actor(BaseModel):
    """요청을 보낸 주체. 시스템 액터는 소유권 검사를 건너뛰는 관리자 권한을 가집니다."""
    model_config = ConfigDict(frozen=True)

    user_id: Optional[int] = None
    is_admin: bool = False
    is_system: bool = False


SYSTEM_ACTOR = Actor(user_id=None, is_admin=True, is_system=True)


_BILLING_PERIODS = {
    "hourly": timedelta(hours=1),
    "monthly": timedelta(days=30),
    "quarterly": timedelta(days=90),
    "semiannual": timedelta(days=180),
    "annual": timedelta(days=365),
}


class OrderSnapshot(BaseModel):
    """외부 주문/결제 원장에서 읽어온 주문 정보 (읽기 전용)."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: int
    payment_status: str
    billing_period: str = "monthly"
    duration_days: Optional[float] = None
    service_config: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status.lower() in ("paid", "completed")

    def paid_duration(self) -> timedelta:
        if self.duration_days is not None:
            return timedelta(days=self.duration_days)
        try:
            return _BILLING_PERIODS[self.billing_period.lower()]
        except KeyError:
            raise ValueError(f"Unknown billing period '{self.billing_period}' on order '{self.id}'.")


class VmPlacement(BaseModel):
    model_config = ConfigDict(frozen=True)

    datacenter_ref: str
    host_ref: str
    datastore_ref: str
    network_ref: str


class VmCreateSpec(BaseModel):
    """게이트웨이의 create_vm()에 전달되는 생성 명세."""
    model_config = ConfigDict(frozen=True)

    name: str
    hostname: str
    specifications: VmSpecification
    placement: VmPlacement


class ImageRecord(BaseModel):
    """운영체제 id에 대응하는 기반 디스크 이미지 정보."""
    model_config = ConfigDict(frozen=True)

    name: str
    filepath: str
    min_disk_gb: Optional[int] = None
    min_ram_mb: Optional[int] = None
