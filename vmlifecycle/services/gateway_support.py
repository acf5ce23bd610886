import logging
from typing import List, Optional

from vmlifecycle.config import Settings
from vmlifecycle.gateways.interfaces import EntityKind, IHypervisorGateway
from vmlifecycle.schemas import VirtualMachine, VmPlacement
from vmlifecycle.services.exceptions import GatewayError, RemoteObjectNotFoundError

logger = logging.getLogger(__name__)


def resolve_placement(gateway: IHypervisorGateway, data_center: str, settings: Settings) -> VmPlacement:
    """설정된 기본 이름들로 데이터센터/호스트/데이터스토어/네트워크 참조를 찾습니다."""
    return VmPlacement(
        datacenter_ref=gateway.find_entity(EntityKind.DATACENTER, data_center),
        host_ref=gateway.find_entity(EntityKind.HOST, settings.DEFAULT_HOST),
        datastore_ref=gateway.find_entity(EntityKind.DATASTORE, settings.DEFAULT_DATASTORE),
        network_ref=gateway.find_entity(EntityKind.NETWORK, settings.DEFAULT_NETWORK),
    )


def fetch_ip_addresses(gateway: IHypervisorGateway, ref: Optional[str]) -> List[str]:
    """
    VM의 IP 주소를 조회합니다. 주소는 부가 정보이므로
    조회에 실패하면 경고를 남기고 빈 목록을 반환합니다.
    """
    if not ref:
        return []
    try:
        properties = gateway.get_properties(ref, ["ip_addresses"])
    except GatewayError as e:
        logger.warning("Could not read IP addresses of %s: %s", ref, e)
        return []
    return list(properties.get("ip_addresses") or [])


def destroy_remote_object(gateway: IHypervisorGateway, vm: VirtualMachine, timeout: float) -> None:
    """
    VM의 하이퍼바이저 객체를 제거합니다.

    저장된 참조가 없거나 참조한 객체가 이미 없으면 VM 이름으로 한 번 더 찾습니다.
    시간 초과된 생성 작업이 남긴 객체는 참조 없이 이름으로만 찾을 수 있습니다.
    어느 쪽에서도 객체가 없으면 제거된 것으로 봅니다.

    Raises:
        GatewayError: 조회나 제거가 실패했을 때. (RemoteObjectNotFoundError 제외)
    """
    ref = vm.remote_object_ref
    if ref:
        try:
            gateway.await_task(gateway.destroy(ref), timeout)
            return
        except RemoteObjectNotFoundError:
            logger.info("Remote object %s of VM %s is already gone", ref, vm.id)

    try:
        unrecorded_ref = gateway.find_entity(EntityKind.VM, vm.name)
    except RemoteObjectNotFoundError:
        return
    if unrecorded_ref == ref:
        return

    logger.warning("Destroying unrecorded remote object %s named '%s' (VM %s)", unrecorded_ref, vm.name, vm.id)
    try:
        gateway.await_task(gateway.destroy(unrecorded_ref), timeout)
    except RemoteObjectNotFoundError:
        logger.info("Remote object %s of VM %s is already gone", unrecorded_ref, vm.id)
