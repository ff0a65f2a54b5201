# tests/repositories/conftest.py
import pytest

from hostmgr.database.database import build_engine, build_session_factory
from hostmgr.database.db_init import initialize_db
from hostmgr.domain import VM, VMConfig, VMStatus, NetworkConfig
from hostmgr.repositories import InMemoryVMRepository
from hostmgr.repositories.sqlalchemy import SqlalchemyVMRepository


@pytest.fixture
def sql_repo() -> SqlalchemyVMRepository:
    """메모리 SQLite에 테이블을 만들고 SqlalchemyVMRepository를 반환합니다."""
    engine = build_engine("sqlite://")
    initialize_db(engine)
    yield SqlalchemyVMRepository(build_session_factory(engine))
    engine.dispose()


@pytest.fixture(params=["memory", "sqlalchemy"])
def repo(request):
    """두 저장소 구현에 같은 테스트를 적용하기 위한 파라미터화된 fixture."""
    if request.param == "memory":
        return InMemoryVMRepository()
    return request.getfixturevalue("sql_repo")


@pytest.fixture
def make_vm():
    def _make_vm(vm_id="vm-1", name="web-01", status=VMStatus.STOPPED, client_id="client-1", network=None):
        return VM(
            id=vm_id,
            name=name,
            client_id=client_id,
            template="ubuntu/jammy64",
            config=VMConfig(cpu=2, memory_mb=2048, storage_gb=20, network=network),
            status=status,
            last_action="create",
            metadata={"owner": "ops"},
        )
    return _make_vm


@pytest.fixture
def network():
    return NetworkConfig(ip="10.0.0.11", subnet="10.0.0.0/24", gateway="10.0.0.1")
