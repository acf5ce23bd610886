from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    오케스트레이터 전역 설정입니다.
    환경 변수 또는 프로젝트 루트의 .env 파일에서 값을 읽어옵니다.
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # 레코드 저장소 (기본값은 로컬 SQLite)
    DATABASE_URL: str = "sqlite:///vm_lifecycle.db"

    # 하이퍼바이저 게이트웨이
    LIBVIRT_URI: str = "qemu:///system"
    IMAGE_BASE_DIR: str = "/var/lib/libvirt/images"
    GATEWAY_TASK_TIMEOUT: float = 900.0  # 초 단위. VM 생성은 수 분이 걸릴 수 있음

    # 배치(placement) 기본값
    DEFAULT_DATACENTER: str = "datacenter1"
    DEFAULT_HOST: str = "localhost"
    DEFAULT_DATASTORE: str = "default"
    DEFAULT_NETWORK: str = "default"
    HOSTNAME_DOMAIN: str = "cloud.local"

    # 주문의 서비스 구성에 값이 없을 때 사용하는 기본 사양
    DEFAULT_CPU_COUNT: int = 1
    DEFAULT_MEMORY_GB: int = 2
    DEFAULT_DISK_GB: int = 20
    DEFAULT_BANDWIDTH_GB: int = 1024
    DEFAULT_OPERATING_SYSTEM: str = "ubuntu-22"

    # 만료 스위퍼
    SWEEP_INTERVAL_SECONDS: float = 300.0

    LOG_LEVEL: str = "INFO"
    SERVER_PORT: int = 8000


settings = Settings()
