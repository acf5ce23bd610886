from abc import ABC, abstractmethod
from concurrent.futures import Future
from typing import Any, Dict, Iterable

from vmlifecycle.schemas import VmCreateSpec


class EntityKind:
    DATACENTER = "datacenter"
    HOST = "host"
    DATASTORE = "datastore"
    NETWORK = "network"
    VM = "vm"


class IHypervisorGateway(ABC):
    """
    하이퍼바이저에 대한 추상 인터페이스.

    create_vm/power_on/power_off/reboot/destroy는 즉시 작업 핸들(Future)을 반환하고,
    결과는 await_task로 기다립니다. await_task는 실패 시 다음 예외를 발생시킵니다.
      - GatewayTransientError: 타임아웃 또는 연결 끊김
      - GatewayRejectedError: 하이퍼바이저가 요청을 거부함
      - RemoteObjectNotFoundError: 대상 객체가 존재하지 않음
    연결 재수립 정책은 구현체가 책임집니다.
    """

    @abstractmethod
    def find_entity(self, kind: str, name: str) -> str:
        """종류(EntityKind)와 이름으로 하이퍼바이저 측 객체 참조를 찾습니다."""
        pass

    @abstractmethod
    def get_properties(self, ref: str, fields: Iterable[str]) -> Dict[str, Any]:
        """VM 객체의 속성 값들을 조회합니다."""
        pass

    @abstractmethod
    def create_vm(self, spec: VmCreateSpec) -> Future:
        """VM 생성 작업을 시작합니다. 작업 결과는 새 객체 참조입니다."""
        pass

    @abstractmethod
    def power_on(self, ref: str) -> Future:
        pass

    @abstractmethod
    def power_off(self, ref: str) -> Future:
        pass

    @abstractmethod
    def reboot(self, ref: str) -> Future:
        pass

    @abstractmethod
    def destroy(self, ref: str) -> Future:
        """VM 객체와 디스크를 제거하는 작업을 시작합니다."""
        pass

    @abstractmethod
    def await_task(self, task: Future, timeout: float) -> Any:
        """작업이 끝날 때까지 최대 timeout초 기다린 뒤 결과를 반환합니다."""
        pass
