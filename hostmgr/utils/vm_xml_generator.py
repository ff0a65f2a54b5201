# hostmgr/utils/vm_xml_generator.py
from pathlib import Path

# 템플릿은 패키지 안의 templates 디렉터리에 함께 배포됩니다.
TEMPLATE_DIR = Path(__file__).resolve().parent.parent / 'templates'
TEMPLATE_PATH = str(TEMPLATE_DIR / 'vm_template.xml')

def get_xml_template():
    """템플릿 파일을 읽어 XML 내용을 반환합니다."""
    try:
        with open(TEMPLATE_PATH, 'r') as f:
            return f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"VM template file not found at {TEMPLATE_PATH}.")

# 템플릿 내용을 한 번만 읽어와서 저장
XML_TEMPLATE = get_xml_template()


def generate_vm_xml(vm_name, vm_uuid, cpu_count, ram_mb, image_filepath):
    """
    템플릿에 VM 스펙을 채워 넣어 libvirt 도메인 XML을 생성합니다.
    """
    # 메모리는 KiB 단위로 변환
    ram_kib = ram_mb * 1024

    return XML_TEMPLATE.format(
        vm_name=vm_name,
        vm_uuid=vm_uuid,
        cpu_count=cpu_count,
        ram_kib=ram_kib,
        image_filepath=image_filepath
    )
