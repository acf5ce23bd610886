# vmlifecycle/utils/vm_xml_generator.py
from pathlib import Path
from xml.sax.saxutils import escape

# 템플릿은 패키지 안의 configs/vm_template.xml에 있습니다.
PACKAGE_ROOT = Path(__file__).resolve().parent.parent
TEMPLATE_PATH = str(PACKAGE_ROOT / 'configs' / 'vm_template.xml')


def get_xml_template():
    """템플릿 파일을 읽어 XML 내용을 반환합니다."""
    try:
        with open(TEMPLATE_PATH, 'r') as f:
            return f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"VM template file not found at {TEMPLATE_PATH}. Please check 'configs/vm_template.xml'.")


# 템플릿 내용은 모듈 로드 시 한 번만 읽습니다.
XML_TEMPLATE = get_xml_template()


def generate_vm_xml(vm_name, vm_uuid, cpu_count, ram_mb, image_filepath, network_name="default", hostname=None):
    """
    템플릿에 VM 스펙을 채워 넣어 최종 libvirt 도메인 XML을 생성합니다.
    hostname을 생략하면 vm_name을 <title>에 사용합니다.
    """
    # 메모리는 KiB 단위로 변환
    ram_kib = ram_mb * 1024

    return XML_TEMPLATE.format(
        vm_name=escape(vm_name),
        vm_uuid=vm_uuid,
        hostname=escape(hostname or vm_name),
        cpu_count=cpu_count,
        ram_kib=ram_kib,
        image_filepath=escape(image_filepath, {"'": "&apos;"}),
        network_name=escape(network_name, {"'": "&apos;"}),
    )
