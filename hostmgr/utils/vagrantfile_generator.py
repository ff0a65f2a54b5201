# hostmgr/utils/vagrantfile_generator.py
from pathlib import Path
from typing import Optional

from hostmgr.domain import NetworkConfig

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / 'templates'
TEMPLATE_PATH = str(TEMPLATE_DIR / 'Vagrantfile.tmpl')

def get_vagrantfile_template():
    """템플릿 파일을 읽어 Vagrantfile 내용을 반환합니다."""
    try:
        with open(TEMPLATE_PATH, 'r') as f:
            return f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"Vagrantfile template not found at {TEMPLATE_PATH}.")

VAGRANTFILE_TEMPLATE = get_vagrantfile_template()


def generate_vagrantfile(vm_name: str, box: str, cpu_count: int = 1, ram_mb: int = 1024,
                         network: Optional[NetworkConfig] = None, provider: str = "virtualbox") -> str:
    """
    템플릿에 VM 스펙을 채워 넣어 Vagrantfile을 생성합니다.

    Args:
        vm_name: 머신 이름. 게스트의 hostname으로도 사용됩니다.
        box: 기반이 될 Vagrant box 이름 (예: 'ubuntu/jammy64').
        cpu_count: 할당할 CPU 코어 수.
        ram_mb: 할당할 RAM 크기 (MB).
        network: 고정 IP가 지정되면 private_network로 연결합니다.
        provider: Vagrant provider 이름 ('virtualbox', 'libvirt' 등).

    Returns:
        완성된 Vagrantfile 문자열.
    """
    network_block = ""
    if network is not None and network.ip:
        network_block = f'  config.vm.network "private_network", ip: "{network.ip}"\n'

    return VAGRANTFILE_TEMPLATE.format(
        box=box,
        hostname=vm_name,
        network_block=network_block,
        provider=provider,
        cpu_count=cpu_count,
        ram_mb=ram_mb,
    )
