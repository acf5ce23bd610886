"""
판매 가능한 운영체제와 VM 요금제(plan), 그리고 사양 검증에 쓰이는 자원 한계를 정의합니다.
"""

OPERATING_SYSTEMS = {
    "ubuntu-24": {"family": "linux", "name": "Ubuntu 24.04", "code_name": "Noble Numbat"},
    "ubuntu-22": {"family": "linux", "name": "Ubuntu 22.04", "code_name": "Jammy Jellyfish"},
    "ubuntu-20": {"family": "linux", "name": "Ubuntu 20.04", "code_name": "Focal Fossa"},
    "debian-12": {"family": "linux", "name": "Debian 12", "code_name": "Bookworm"},
    "debian-11": {"family": "linux", "name": "Debian 11", "code_name": "Bullseye"},
    "debian-10": {"family": "linux", "name": "Debian 10", "code_name": "Buster"},
    "windows-server-2025": {"family": "windows", "name": "Windows Server 2025", "code_name": None},
    "windows-server-2022": {"family": "windows", "name": "Windows Server 2022", "code_name": None},
}

# 메모리/디스크/트래픽 단위는 GB
VM_PLANS = {
    "atlas": {"cpu_count": 1, "memory_gb": 2, "disk_gb": 20, "bandwidth_gb": 1024},
    "phoenix": {"cpu_count": 2, "memory_gb": 4, "disk_gb": 60, "bandwidth_gb": 1024},
    "tahmatan": {"cpu_count": 4, "memory_gb": 8, "disk_gb": 100, "bandwidth_gb": 1024},
    "garshasp": {"cpu_count": 8, "memory_gb": 16, "disk_gb": 200, "bandwidth_gb": 1024},
}

# (최소, 최대)
RESOURCE_BOUNDS = {
    "cpu_count": (1, 64),
    "memory_gb": (1, 256),
    "disk_gb": (10, 4096),
    "bandwidth_gb": (0, 102400),
}


def is_supported_os(os_id: str) -> bool:
    return os_id in OPERATING_SYSTEMS
