import hashlib
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from vmlifecycle.catalog import VM_PLANS
from vmlifecycle.config import Settings, settings as default_settings
from vmlifecycle.gateways.interfaces import IHypervisorGateway
from vmlifecycle.repositories.interfaces import IOrderRepository, IVMRepository
from vmlifecycle.schemas import VirtualMachine, VmAction, VmCreateSpec, VmSpecification, VmStatus
from vmlifecycle.services.authorization_guard import AuthorizationGuard
from vmlifecycle.services.exceptions import (
    GatewayError,
    OrderNotFoundError,
    OrderNotPaidError,
    SpecificationError,
    VmAlreadyExistsError,
    VmErrorStateError,
)
from vmlifecycle.services.gateway_support import fetch_ip_addresses, resolve_placement
from vmlifecycle.services.locks import KeyedLock
from vmlifecycle.utils.clock import utcnow

logger = logging.getLogger(__name__)

# 주문의 service_config에서 사양 필드를 찾을 때 사용하는 키 (앞쪽이 우선)
SPEC_KEYS = {
    "cpu_count": ("cpuCores", "cpu_count", "cpu"),
    "memory_gb": ("memoryGB", "memory_gb", "ram"),
    "disk_gb": ("diskGB", "disk_gb", "storage"),
    "bandwidth_gb": ("bandwidthGB", "bandwidth_gb", "traffic"),
    "operating_system": ("osType", "operating_system", "os"),
}

_DNS_UNSAFE = re.compile(r"[^a-z0-9-]+")
# "vm-" + 주문 부분 + "-" + 해시 6자 + "-" + 시각 6자 <= 63
_ORDER_PART_MAX = 63 - len("vm-") - len("-000000-000000")


def make_vm_name(order_id: str, now: datetime) -> str:
    """
    'vm-<주문 id>-<주문 id 해시 6자리>-<epoch 밀리초의 마지막 6자리>' 형식의 DNS 호환 이름을 만듭니다.

    주문 id 부분은 잘리거나 다른 주문과 같아질 수 있으므로 원래 주문 id의 해시를 함께 붙입니다.
    """
    epoch_ms = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    digest = hashlib.sha1(order_id.encode("utf-8")).hexdigest()[:6]
    order_part = re.sub(r"-{2,}", "-", _DNS_UNSAFE.sub("-", order_id.lower())).strip("-")
    order_part = order_part[:_ORDER_PART_MAX].rstrip("-")
    parts = ["vm", order_part, digest, f"{epoch_ms % 1_000_000:06d}"]
    return "-".join(part for part in parts if part)


class ProvisioningService:
    def __init__(
        self,
        vm_repo: IVMRepository,
        order_repo: IOrderRepository,
        gateway: IHypervisorGateway,
        guard: AuthorizationGuard,
        vm_locks: Optional[KeyedLock] = None,
        order_locks: Optional[KeyedLock] = None,
        clock: Optional[Callable[[], datetime]] = None,
        config: Optional[Settings] = None,
    ):
        self.vm_repo = vm_repo
        self.order_repo = order_repo
        self.gateway = gateway
        self.guard = guard
        self.vm_locks = vm_locks or KeyedLock()
        self.order_locks = order_locks or KeyedLock()
        self.clock = clock or utcnow
        self.config = config or default_settings

    def provision(self, order_id: str) -> VirtualMachine:
        """
        결제가 완료된 주문으로 VM을 생성하고 시작합니다.

        주문 확인과 레코드 삽입은 주문별 락 안에서 원자적으로 수행됩니다.
        (order_id의 UNIQUE 제약이 프로세스 간 중복을 한 번 더 막습니다.)
        이후 VM별 락을 잡고 하이퍼바이저에 생성 작업을 요청해 완료를 기다립니다.

        Args:
            order_id: 프로비저닝할 주문의 id.

        Returns:
            running 상태가 된 VM.

        Raises:
            OrderNotFoundError: 주문이 없을 때.
            OrderNotPaidError: 결제가 완료되지 않은 주문일 때.
            VmAlreadyExistsError: 주문에 이미 VM이 있을 때.
            SpecificationError: 주문의 사양이 유효하지 않을 때.
            VmErrorStateError: 하이퍼바이저 작업이 실패해 VM이 error 상태가 되었을 때.
        """
        order_id = str(order_id)
        with self.order_locks.hold(order_id):
            order = self.order_repo.find_by_id(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order '{order_id}' not found.")
            if not order.is_paid:
                raise OrderNotPaidError(f"Order '{order_id}' is not paid (payment status: {order.payment_status}).")
            if self.vm_repo.find_by_order_id(order_id):
                raise VmAlreadyExistsError(f"A VM already exists for order '{order_id}'.")

            specifications = self.derive_specification(order.service_config)
            try:
                duration = order.paid_duration()
            except ValueError as e:
                raise SpecificationError(str(e)) from e

            now = self.clock()
            name = make_vm_name(order_id, now)
            vm = self.vm_repo.create(VirtualMachine(
                order_id=order_id,
                user_id=order.user_id,
                name=name,
                hostname=f"{name}.{self.config.HOSTNAME_DOMAIN}",
                status=VmStatus.PROVISIONING,
                specifications=specifications,
                data_center=self.config.DEFAULT_DATACENTER,
                created_at=now,
            ))
        logger.info("VM %s (%s) registered for order '%s'", vm.id, vm.name, order_id)

        with self.vm_locks.hold(vm.id):
            return self._create_remote_object(vm, duration)

    def derive_specification(self, service_config: Dict[str, Any]) -> VmSpecification:
        """
        주문의 service_config에서 VM 사양을 만듭니다.
        'plan' 키가 있으면 해당 요금제를 기본값으로 쓰고, 개별 키가 이를 덮어씁니다.
        나머지는 설정의 기본 사양으로 채웁니다.
        """
        fields = {
            "cpu_count": self.config.DEFAULT_CPU_COUNT,
            "memory_gb": self.config.DEFAULT_MEMORY_GB,
            "disk_gb": self.config.DEFAULT_DISK_GB,
            "bandwidth_gb": self.config.DEFAULT_BANDWIDTH_GB,
            "operating_system": self.config.DEFAULT_OPERATING_SYSTEM,
        }

        plan_name = service_config.get("plan")
        if plan_name is not None:
            plan = VM_PLANS.get(str(plan_name).lower())
            if plan is None:
                raise SpecificationError(f"Unknown VM plan '{plan_name}'.")
            fields.update(plan)

        for field, keys in SPEC_KEYS.items():
            for key in keys:
                if service_config.get(key) is not None:
                    fields[field] = service_config[key]
                    break

        return self.guard.validate_specification(**fields)

    def _create_remote_object(self, vm: VirtualMachine, duration: timedelta) -> VirtualMachine:
        try:
            placement = resolve_placement(self.gateway, vm.data_center, self.config)
            task = self.gateway.create_vm(VmCreateSpec(
                name=vm.name,
                hostname=vm.hostname,
                specifications=vm.specifications,
                placement=placement,
            ))
            ref = self.gateway.await_task(task, self.config.GATEWAY_TASK_TIMEOUT)
        except GatewayError as e:
            self.vm_repo.save(vm.with_changes(
                status=VmStatus.ERROR,
                notes=f"Provisioning failed: {e}",
            ))
            logger.error("Provisioning VM %s for order '%s' failed: %s", vm.id, vm.order_id, e)
            raise VmErrorStateError(vm.id, VmAction.PROVISION, VmStatus.ERROR, cause=e) from e

        now = self.clock()
        running = self.vm_repo.save(vm.with_changes(
            remote_object_ref=ref,
            status=VmStatus.RUNNING,
            expires_at=now + duration,
            ip_addresses=fetch_ip_addresses(self.gateway, ref),
        ))
        logger.info("VM %s is running (ref: %s, expires at %s)", running.id, ref, running.expires_at)
        return running
