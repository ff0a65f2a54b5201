# tests/conftest.py
import pytest

from hostmgr.domain import VMConfig, VMSpec, NetworkConfig
from hostmgr.provisioning import InMemoryBackend
from hostmgr.repositories import InMemoryVMRepository
from hostmgr.services.lifecycle_service import LifecycleService


def _make_spec(name="web-01", cpu=2, memory_mb=2048, storage_gb=20,
               client_id="client-1", template="ubuntu/jammy64", network=None, metadata=None):
    return VMSpec(
        name=name,
        client_id=client_id,
        template=template,
        config=VMConfig(cpu=cpu, memory_mb=memory_mb, storage_gb=storage_gb, network=network),
        metadata=metadata or {},
    )


@pytest.fixture
def make_spec():
    """VMSpec을 만드는 팩토리 함수를 반환합니다. 기본값은 web-01 (cpu=2, 2048MB, 20GB)입니다."""
    return _make_spec


@pytest.fixture
def network():
    return NetworkConfig(ip="10.0.0.11", subnet="10.0.0.0/24", gateway="10.0.0.1")


@pytest.fixture
def vm_repo() -> InMemoryVMRepository:
    return InMemoryVMRepository()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def service(vm_repo, backend) -> LifecycleService:
    """메모리 저장소와 메모리 백엔드를 주입한 LifecycleService를 생성합니다."""
    service = LifecycleService(vm_repo, backend, default_timeout=5.0, max_workers=4)
    yield service
    service.shutdown(wait=False)


@pytest.fixture
def running_vm(service, make_spec):
    """생성 후 시작까지 마친 'running' 상태의 VM을 반환합니다."""
    vm = service.create_vm(make_spec())
    return service.start(vm.id)
