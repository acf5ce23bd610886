import concurrent.futures
import logging
import threading
import uuid
import xml.etree.ElementTree as ET
from concurrent.futures import Future
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional

import libvirt

from vmlifecycle.config import settings
from vmlifecycle.gateways.interfaces import EntityKind, IHypervisorGateway
from vmlifecycle.schemas import VmCreateSpec
from vmlifecycle.services.exceptions import (
    DiskOperationError,
    GatewayError,
    GatewayRejectedError,
    GatewayTransientError,
    ImageNotFoundError,
    RemoteObjectNotFoundError,
)
from vmlifecycle.services.image_service import ImageService
from vmlifecycle.utils.vm_xml_generator import generate_vm_xml

logger = logging.getLogger(__name__)

# 연결 자체의 문제로 보고 연결을 다시 맺어야 하는 오류 코드
_CONNECTION_ERROR_CODES = frozenset({
    libvirt.VIR_ERR_NO_CONNECT,
    libvirt.VIR_ERR_INVALID_CONN,
    libvirt.VIR_ERR_SYSTEM_ERROR,
    libvirt.VIR_ERR_RPC,
    libvirt.VIR_ERR_OPERATION_TIMEOUT,
})

_NOT_FOUND_ERROR_CODES = frozenset({
    libvirt.VIR_ERR_NO_DOMAIN,
    libvirt.VIR_ERR_NO_NETWORK,
    libvirt.VIR_ERR_NO_STORAGE_POOL,
})

SUPPORTED_PROPERTIES = ("name", "power_state", "cpu_count", "memory_mb", "ip_addresses")


def _map_vm_state(state_code):
    state_map = {
        libvirt.VIR_DOMAIN_NOSTATE: 'NOSTATE',
        libvirt.VIR_DOMAIN_RUNNING: 'RUNNING',
        libvirt.VIR_DOMAIN_BLOCKED: 'BLOCKED',
        libvirt.VIR_DOMAIN_PAUSED: 'PAUSED',
        libvirt.VIR_DOMAIN_SHUTDOWN: 'SHUTDOWN',
        libvirt.VIR_DOMAIN_SHUTOFF: 'SHUTOFF',
        libvirt.VIR_DOMAIN_CRASHED: 'CRASHED',
        libvirt.VIR_DOMAIN_PMSUSPENDED: 'PMSUSPENDED',
    }
    return state_map.get(state_code, 'UNKNOWN')


class LibvirtHypervisorGateway(IHypervisorGateway):
    """
    libvirt/QEMU 기반 하이퍼바이저 게이트웨이.

    libvirt 파이썬 바인딩은 스레드 안전하지 않으므로 모든 호출을 전용 스레드 하나
    (ThreadPoolExecutor(max_workers=1))에서 순서대로 실행합니다.
    작업 핸들은 그 스레드에 제출된 Future입니다.

    - datacenter: libvirt에는 대응 개념이 없으므로 이름을 그대로 참조로 사용합니다.
    - host: 연결된 하이퍼바이저의 호스트 이름 (또는 'localhost')
    - datastore: 스토리지 풀. VM 디스크는 풀의 target 경로에 생성됩니다.
    - network: libvirt 가상 네트워크
    - vm: 도메인. 참조는 도메인 UUID입니다.
    """

    def __init__(
        self,
        image_service: ImageService,
        uri: Optional[str] = None,
        call_timeout: float = 60.0,
        task_cleanup: Optional[Callable[[], None]] = None,
    ):
        """
        task_cleanup은 작업 스레드에서 작업이 하나 끝날 때마다 호출됩니다.
        (image_service가 쓰는 스레드 로컬 세션 정리)
        """
        self.image_service = image_service
        self.task_cleanup = task_cleanup
        self.uri = uri or settings.LIBVIRT_URI
        self.call_timeout = call_timeout
        self._conn = None
        self._conn_lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="libvirt")

    # ------------------------------------------------------------------
    #  연결 관리
    # ------------------------------------------------------------------
    @property
    def conn(self):
        """libvirt 연결을 지연 생성하고, 끊어졌으면 다시 맺습니다."""
        with self._conn_lock:
            if self._conn is None or not self._is_alive(self._conn):
                try:
                    self._conn = libvirt.open(self.uri)
                except libvirt.libvirtError as e:
                    self._conn = None
                    raise GatewayTransientError(f"Failed to open connection to the hypervisor at {self.uri}: {e}") from e
                if self._conn is None:
                    raise GatewayTransientError(f"Failed to open connection to the hypervisor at {self.uri}.")
                logger.info("Connected to hypervisor at %s", self.uri)
            return self._conn

    @staticmethod
    def _is_alive(conn) -> bool:
        try:
            return bool(conn.isAlive())
        except libvirt.libvirtError:
            return False

    def _drop_connection(self):
        with self._conn_lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.close()
            except libvirt.libvirtError as e:
                logger.debug("Ignoring error while closing a broken connection: %s", e)

    @contextmanager
    def _libvirt_errors(self, context: str):
        """libvirt와 디스크 작업의 예외를 게이트웨이 예외로 변환합니다."""
        try:
            yield
        except GatewayError:
            raise
        except libvirt.libvirtError as e:
            code = e.get_error_code()
            if code in _CONNECTION_ERROR_CODES:
                self._drop_connection()
                raise GatewayTransientError(f"{context}: lost connection to the hypervisor: {e}") from e
            if code in _NOT_FOUND_ERROR_CODES:
                raise RemoteObjectNotFoundError(f"{context}: {e}") from e
            raise GatewayRejectedError(f"{context}: {e}") from e
        except (ImageNotFoundError, DiskOperationError) as e:
            raise GatewayRejectedError(f"{context}: {e}") from e

    def _submit(self, context: str, func, *args) -> Future:
        def run():
            try:
                with self._libvirt_errors(context):
                    return func(*args)
            finally:
                if self.task_cleanup is not None:
                    self.task_cleanup()
        return self._executor.submit(run)

    def _call(self, context: str, func, *args):
        return self.await_task(self._submit(context, func, *args), self.call_timeout)

    # ------------------------------------------------------------------
    #  IHypervisorGateway
    # ------------------------------------------------------------------
    def await_task(self, task: Future, timeout: float) -> Any:
        try:
            return task.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            raise GatewayTransientError(f"Hypervisor task did not finish within {timeout} seconds.") from e
        except GatewayError:
            raise
        except Exception as e:
            raise GatewayRejectedError(f"Hypervisor task failed: {e}") from e

    def find_entity(self, kind: str, name: str) -> str:
        return self._call(f"find_entity({kind}, {name})", self._find_entity_sync, kind, name)

    def get_properties(self, ref: str, fields: Iterable[str]) -> Dict[str, Any]:
        return self._call(f"get_properties({ref})", self._get_properties_sync, ref, list(fields))

    def create_vm(self, spec: VmCreateSpec) -> Future:
        return self._submit(f"create_vm({spec.name})", self._create_sync, spec)

    def power_on(self, ref: str) -> Future:
        return self._submit(f"power_on({ref})", self._power_on_sync, ref)

    def power_off(self, ref: str) -> Future:
        return self._submit(f"power_off({ref})", self._power_off_sync, ref)

    def reboot(self, ref: str) -> Future:
        return self._submit(f"reboot({ref})", self._reboot_sync, ref)

    def destroy(self, ref: str) -> Future:
        return self._submit(f"destroy({ref})", self._destroy_sync, ref)

    def close(self):
        self._executor.shutdown(wait=True)
        self._drop_connection()

    # ------------------------------------------------------------------
    #  libvirt 스레드에서 실행되는 동기 구현
    # ------------------------------------------------------------------
    def _find_entity_sync(self, kind: str, name: str) -> str:
        if kind == EntityKind.DATACENTER:
            return name
        if kind == EntityKind.HOST:
            hostname = self.conn.getHostname()
            if name in (hostname, "localhost"):
                return hostname
            raise RemoteObjectNotFoundError(f"Host '{name}' is not managed by {self.uri} (connected to '{hostname}').")
        if kind == EntityKind.DATASTORE:
            return self.conn.storagePoolLookupByName(name).name()
        if kind == EntityKind.NETWORK:
            return self.conn.networkLookupByName(name).name()
        if kind == EntityKind.VM:
            return self.conn.lookupByName(name).UUIDString()
        raise GatewayRejectedError(f"Unknown entity kind '{kind}'.")

    def _get_properties_sync(self, ref: str, fields: List[str]) -> Dict[str, Any]:
        unknown = [field for field in fields if field not in SUPPORTED_PROPERTIES]
        if unknown:
            raise GatewayRejectedError(f"Unsupported properties: {', '.join(unknown)}")

        domain = self.conn.lookupByUUIDString(ref)
        state_code, max_mem_kib, _, vcpus, _ = domain.info()
        properties = {}
        for field in fields:
            if field == "name":
                properties[field] = domain.name()
            elif field == "power_state":
                properties[field] = _map_vm_state(state_code)
            elif field == "cpu_count":
                properties[field] = vcpus
            elif field == "memory_mb":
                properties[field] = max_mem_kib // 1024
            elif field == "ip_addresses":
                properties[field] = self._ip_addresses(domain)
        return properties

    @staticmethod
    def _ip_addresses(domain) -> List[str]:
        if not domain.isActive():
            return []
        interfaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE, 0) or {}
        addresses = []
        for iface in interfaces.values():
            for addr in iface.get("addrs") or []:
                if addr.get("addr"):
                    addresses.append(addr["addr"])
        return addresses

    def _pool_target_path(self, pool_name: str) -> str:
        pool = self.conn.storagePoolLookupByName(pool_name)
        path = ET.fromstring(pool.XMLDesc(0)).findtext("target/path")
        return path or self.image_service.image_base_dir

    def _create_sync(self, spec: VmCreateSpec) -> str:
        """
        디스크 생성 → 도메인 정의 → 시작 순서로 VM을 만들고 도메인 UUID를 반환합니다.
        중간에 실패하면 이미 만든 리소스를 정리한 뒤 예외를 다시 발생시킵니다.
        """
        specs = spec.specifications
        source_filepath = self.image_service.validate_image_and_get_path(specs.operating_system)
        target_dir = self._pool_target_path(spec.placement.datastore_ref)

        vm_uuid = str(uuid.uuid4())
        disk_filepath = None
        domain = None
        try:
            disk_filepath = self.image_service.create_vm_disk(spec.name, source_filepath, specs.disk_gb, target_dir)

            xml_config = generate_vm_xml(
                vm_name=spec.name,
                vm_uuid=vm_uuid,
                cpu_count=specs.cpu_count,
                ram_mb=specs.memory_gb * 1024,
                image_filepath=disk_filepath,
                network_name=spec.placement.network_ref,
                hostname=spec.hostname,
            )
            domain = self.conn.defineXML(xml_config)

            if domain.create() < 0:
                raise GatewayRejectedError(f"Failed to start domain '{spec.name}' after definition.")
        except Exception as e:
            logger.warning("VM '%s' creation failed: %s. Starting rollback...", spec.name, e)
            self._rollback_vm_creation(domain, disk_filepath)
            raise

        logger.info("Domain '%s' (%s) defined and started", spec.name, vm_uuid)
        return domain.UUIDString()

    def _rollback_vm_creation(self, domain, disk_filepath):
        if domain is not None:
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefine()
            except libvirt.libvirtError as e:
                logger.warning("Rollback: failed to clean up libvirt domain: %s", e)

        if disk_filepath:
            try:
                self.image_service.delete_vm_disk(disk_filepath)
            except DiskOperationError as e:
                logger.warning("Rollback: failed to delete disk %s: %s", disk_filepath, e)

    def _power_on_sync(self, ref: str) -> None:
        domain = self.conn.lookupByUUIDString(ref)
        if not domain.isActive():
            domain.create()

    def _power_off_sync(self, ref: str) -> None:
        domain = self.conn.lookupByUUIDString(ref)
        if domain.isActive():
            domain.destroy()

    def _reboot_sync(self, ref: str) -> None:
        self.conn.lookupByUUIDString(ref).reboot(0)

    def _destroy_sync(self, ref: str) -> None:
        domain = self.conn.lookupByUUIDString(ref)
        disk_paths = self._disk_paths(domain)

        if domain.isActive():
            domain.destroy()
        domain.undefine()
        logger.info("Domain %s undefined", ref)

        for path in disk_paths:
            try:
                self.image_service.delete_vm_disk(path)
            except DiskOperationError as e:
                # 도메인은 이미 제거되었으므로 디스크 정리 실패는 경고로만 남깁니다.
                logger.warning("Failed to delete disk %s of domain %s: %s", path, ref, e)

    @staticmethod
    def _disk_paths(domain) -> List[str]:
        root = ET.fromstring(domain.XMLDesc(0))
        return [
            source.get("file")
            for source in root.findall("./devices/disk[@device='disk']/source")
            if source.get("file")
        ]
