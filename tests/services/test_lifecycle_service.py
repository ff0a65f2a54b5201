# tests/services/test_lifecycle_service.py
import pytest
from unittest.mock import MagicMock

from hostmgr.domain import VMStatus, ConfigUpdate, NetworkConfig
from hostmgr.provisioning import ProvisioningBackend, ProvisioningBackendError
from hostmgr.repositories import InMemoryVMRepository
from hostmgr.services.lifecycle_service import LifecycleService
from hostmgr.services.exceptions import (
    AdapterError,
    ConflictError,
    IllegalTransitionError,
    SnapshotNotFoundError,
    ValidationError,
    VmAlreadyExistsError,
    VmNotFoundError,
)

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def mock_backend() -> MagicMock:
    """ProvisioningBackend에 대한 모의(Mock) 객체를 생성하여 반환합니다."""
    return MagicMock(spec=ProvisioningBackend)

@pytest.fixture
def mocked_service(mock_backend: MagicMock):
    """모의 백엔드를 주입한 LifecycleService. 백엔드 호출 여부를 검증할 때 사용합니다."""
    service = LifecycleService(InMemoryVMRepository(), mock_backend, default_timeout=5.0)
    yield service
    service.shutdown(wait=False)

# ===================================================================
#  create_vm 테스트 스위트
# ===================================================================
class TestCreateVm:
    def test_create_vm_success(self, service, backend, make_spec):
        """VM 생성 성공 시 'stopped' 상태가 되는지 테스트합니다. (Happy Path)"""
        # === Act ===
        vm = service.create_vm(make_spec())

        # === Assert ===
        assert vm.status is VMStatus.STOPPED
        assert vm.name == "web-01"
        assert vm.last_action == "create"
        assert vm.last_error is None
        assert vm.config.cpu == 2 and vm.config.memory_mb == 2048 and vm.config.storage_gb == 20
        assert backend.calls == [("create", "web-01")]
        assert backend.machines["web-01"] == "stopped"

    def test_create_vm_passes_template_and_config_to_backend(self, mocked_service, mock_backend, make_spec):
        """백엔드 create에 머신 이름, box(템플릿), 구성이 전달되는지 테스트합니다."""
        vm = mocked_service.create_vm(make_spec(template="debian/bookworm64"))

        mock_backend.create.assert_called_once_with("web-01", "debian/bookworm64", vm.config)

    def test_create_vm_backend_failure_marks_error(self, service, backend, vm_repo, make_spec):
        """백엔드 생성이 실패하면 'error' 상태로 기록되고 AdapterError가 발생하는지 테스트합니다."""
        # === Arrange ===
        backend.fail("create", "box not found")

        # === Act & Assert ===
        with pytest.raises(AdapterError) as exc_info:
            service.create_vm(make_spec())

        # 검증: 레코드는 남아 있고 실패 사유가 기록되어야 함
        [vm] = vm_repo.list()
        assert exc_info.value.vm_id == vm.id
        assert isinstance(exc_info.value.cause, ProvisioningBackendError)
        assert vm.status is VMStatus.ERROR
        assert "box not found" in vm.last_error

    def test_create_vm_fails_if_name_exists(self, service, backend, vm_repo, make_spec):
        """파기되지 않은 VM과 이름이 겹치면 ConflictError가 발생하는지 테스트합니다."""
        service.create_vm(make_spec())

        with pytest.raises(ConflictError):
            service.create_vm(make_spec(cpu=4))

        # 검증: 두 번째 레코드는 만들어지지 않고, 백엔드도 다시 호출되지 않아야 함
        assert len(vm_repo.list()) == 1
        assert backend.calls == [("create", "web-01")]

    def test_duplicate_name_error_is_also_a_validation_error(self, service, make_spec):
        service.create_vm(make_spec())

        with pytest.raises(ValidationError):
            service.create_vm(make_spec())

    def test_create_vm_reuses_name_of_destroyed_vm(self, service, make_spec):
        """파기된 VM의 이름은 다시 사용할 수 있는지 테스트합니다."""
        old = service.create_vm(make_spec())
        service.destroy(old.id)

        new = service.create_vm(make_spec())

        assert new.id != old.id
        assert new.status is VMStatus.STOPPED
        assert service.get_vm(old.id).status is VMStatus.DESTROYED

    @pytest.mark.parametrize("overrides", [
        {"cpu": 0},
        {"memory_mb": -1},
        {"storage_gb": 0},
        {"cpu": "2"},
        {"cpu": True},
        {"memory_mb": 1.5},
    ])
    def test_create_vm_rejects_invalid_config(self, mocked_service, mock_backend, make_spec, overrides):
        """양의 정수가 아닌 구성 값은 백엔드 호출 전에 거부되는지 테스트합니다."""
        with pytest.raises(ValidationError):
            mocked_service.create_vm(make_spec(**overrides))

        mock_backend.create.assert_not_called()
        assert mocked_service.list_vms()[1].total == 0

    @pytest.mark.parametrize("name", ["", "web 01", "-web", "web/01", None, "x" * 64])
    def test_create_vm_rejects_invalid_name(self, mocked_service, mock_backend, make_spec, name):
        with pytest.raises(ValidationError):
            mocked_service.create_vm(make_spec(name=name))
        mock_backend.create.assert_not_called()

    def test_create_vm_checks_client_when_lookup_is_injected(self, backend, make_spec):
        """client_exists가 주입되면 존재하지 않는 고객 ID를 거부하는지 테스트합니다."""
        service = LifecycleService(InMemoryVMRepository(), backend, client_exists=lambda cid: cid == "client-1")
        try:
            with pytest.raises(ValidationError):
                service.create_vm(make_spec(client_id="ghost"))
            assert service.create_vm(make_spec()).status is VMStatus.STOPPED
        finally:
            service.shutdown()

    def test_create_vm_does_not_share_config_with_caller(self, service, make_spec, network):
        """호출자가 넘긴 구성 객체를 나중에 바꿔도 저장된 VM은 바뀌지 않아야 합니다."""
        spec = make_spec(network=network)
        vm = service.create_vm(spec)

        spec.config.cpu = 64
        spec.config.network.ip = "10.9.9.9"

        stored = service.get_vm(vm.id)
        assert stored.config.cpu == 2
        assert stored.config.network.ip == "10.0.0.11"

# ===================================================================
#  start/stop/suspend/resume 테스트 스위트
# ===================================================================
class TestTransitions:
    def test_start_stopped_vm(self, service, backend, make_spec):
        vm = service.create_vm(make_spec())

        started = service.start(vm.id)

        assert started.status is VMStatus.RUNNING
        assert started.last_action == "start"
        assert started.updated_at >= vm.updated_at
        assert backend.machines["web-01"] == "running"

    def test_start_running_vm_is_conflict(self, service, backend, running_vm):
        """실행 중인 VM을 다시 시작하면 ConflictError가 발생하고 상태가 그대로인지 테스트합니다."""
        calls_before = list(backend.calls)

        with pytest.raises(ConflictError):
            service.start(running_vm.id)

        vm = service.get_vm(running_vm.id)
        assert vm.status is VMStatus.RUNNING
        assert vm.last_action == "start"
        assert vm.updated_at == running_vm.updated_at
        assert backend.calls == calls_before

    def test_illegal_transition_makes_no_backend_call(self, mocked_service, mock_backend, make_spec):
        vm = mocked_service.create_vm(make_spec())

        with pytest.raises(IllegalTransitionError):
            mocked_service.stop(vm.id)

        mock_backend.halt.assert_not_called()

    def test_stop_running_vm(self, service, running_vm):
        stopped = service.stop(running_vm.id)

        assert stopped.status is VMStatus.STOPPED
        assert stopped.last_action == "stop"

    def test_stop_stopped_vm_is_conflict(self, service, make_spec):
        vm = service.create_vm(make_spec())

        with pytest.raises(IllegalTransitionError):
            service.stop(vm.id)

    def test_suspend_and_resume(self, service, backend, running_vm):
        suspended = service.suspend(running_vm.id)
        assert suspended.status is VMStatus.SUSPENDED
        assert backend.machines["web-01"] == "suspended"

        resumed = service.resume(running_vm.id)
        assert resumed.status is VMStatus.RUNNING
        assert resumed.last_action == "resume"

    def test_resume_running_vm_is_conflict(self, service, running_vm):
        with pytest.raises(IllegalTransitionError):
            service.resume(running_vm.id)

    def test_suspend_stopped_vm_is_conflict(self, service, make_spec):
        vm = service.create_vm(make_spec())
        with pytest.raises(IllegalTransitionError):
            service.suspend(vm.id)

    def test_failed_start_keeps_status_and_records_attempt(self, service, backend, make_spec):
        """백엔드 시작이 실패하면 상태는 그대로 두고 시도 기록만 남기는지 테스트합니다."""
        # === Arrange ===
        vm = service.create_vm(make_spec())
        backend.fail("start", "provider unavailable")

        # === Act & Assert ===
        with pytest.raises(AdapterError) as exc_info:
            service.start(vm.id)

        assert exc_info.value.action == "start"
        assert exc_info.value.retryable is True
        after = service.get_vm(vm.id)
        assert after.status is VMStatus.STOPPED
        assert after.last_action == "start"
        assert "provider unavailable" in after.last_error
        assert after.updated_at >= vm.updated_at

    def test_successful_transition_clears_last_error(self, service, backend, make_spec):
        vm = service.create_vm(make_spec())
        backend.fail("start")
        with pytest.raises(AdapterError):
            service.start(vm.id)
        backend.recover("start")

        assert service.start(vm.id).last_error is None

    def test_unknown_vm_is_not_found(self, service):
        with pytest.raises(VmNotFoundError):
            service.start("does-not-exist")

    def test_error_vm_cannot_be_started(self, service, backend, vm_repo, make_spec):
        backend.fail("create")
        with pytest.raises(AdapterError):
            service.create_vm(make_spec())
        [vm] = vm_repo.list()

        with pytest.raises(IllegalTransitionError):
            service.start(vm.id)

# ===================================================================
#  restart 테스트 스위트
# ===================================================================
class TestRestart:
    def test_restart_running_vm(self, service, backend, running_vm):
        restarted = service.restart(running_vm.id)

        assert restarted.status is VMStatus.RUNNING
        assert restarted.last_action == "restart"
        assert backend.calls[-2:] == [("halt", "web-01"), ("start", "web-01")]

    def test_restart_stopped_vm(self, service, make_spec):
        vm = service.create_vm(make_spec())

        assert service.restart(vm.id).status is VMStatus.RUNNING

    def test_restart_halt_failure_leaves_vm_running(self, service, backend, running_vm):
        """정지 단계가 실패하면 시작을 시도하지 않고 'running' 상태를 유지하는지 테스트합니다."""
        # === Arrange ===
        backend.fail("halt", "halt refused")

        # === Act & Assert ===
        with pytest.raises(AdapterError):
            service.restart(running_vm.id)

        vm = service.get_vm(running_vm.id)
        assert vm.status is VMStatus.RUNNING
        assert vm.last_action == "restart"
        # 검증: 정지가 실패했으므로 시작은 호출되지 않았어야 함
        assert backend.calls[-1] == ("halt", "web-01")

    def test_restart_start_failure_marks_error(self, service, backend, running_vm):
        """정지는 성공했지만 시작이 실패하면 'error' 상태가 되는지 테스트합니다."""
        backend.fail("start", "boot failed")

        with pytest.raises(AdapterError):
            service.restart(running_vm.id)

        vm = service.get_vm(running_vm.id)
        assert vm.status is VMStatus.ERROR
        assert vm.last_action == "restart"
        assert "boot failed" in vm.last_error

    def test_restart_suspended_vm_is_conflict(self, service, running_vm):
        service.suspend(running_vm.id)
        with pytest.raises(IllegalTransitionError):
            service.restart(running_vm.id)

# ===================================================================
#  destroy 테스트 스위트
# ===================================================================
class TestDestroy:
    @pytest.mark.parametrize("prepare", ["stopped", "running", "suspended"])
    def test_destroy_from_active_states(self, service, backend, make_spec, prepare):
        vm = service.create_vm(make_spec())
        if prepare in ("running", "suspended"):
            service.start(vm.id)
        if prepare == "suspended":
            service.suspend(vm.id)

        destroyed = service.destroy(vm.id)

        assert destroyed.status is VMStatus.DESTROYED
        assert "web-01" not in backend.machines

    def test_destroy_vm_whose_create_failed(self, service, backend, vm_repo, make_spec):
        """생성이 실패해 머신이 없는 'error' VM도 파기할 수 있고, 이름을 다시 쓸 수 있어야 합니다."""
        # === Arrange ===
        backend.fail("create")
        with pytest.raises(AdapterError):
            service.create_vm(make_spec())
        backend.recover()
        [vm] = vm_repo.list()
        assert vm.status is VMStatus.ERROR
        assert "web-01" not in backend.machines

        # === Act ===
        destroyed = service.destroy(vm.id)

        # === Assert ===
        assert destroyed.status is VMStatus.DESTROYED
        assert ("destroy", "web-01") in backend.calls
        assert service.create_vm(make_spec()).status is VMStatus.STOPPED

    def test_destroy_is_terminal(self, service, make_spec):
        vm = service.create_vm(make_spec())
        service.destroy(vm.id)

        for action in (service.destroy, service.start, service.stop, service.restart, service.resume):
            with pytest.raises(IllegalTransitionError):
                action(vm.id)

    def test_destroy_backend_failure_does_not_mark_destroyed(self, service, backend, running_vm):
        """백엔드 파기가 실패하면 'destroyed'로 표시하지 않는지 테스트합니다."""
        backend.fail("destroy", "machine locked")

        with pytest.raises(AdapterError):
            service.destroy(running_vm.id)

        vm = service.get_vm(running_vm.id)
        assert vm.status is VMStatus.RUNNING
        assert vm.last_action == "destroy"

        # 재시도하면 파기됨
        backend.recover()
        assert service.destroy(running_vm.id).status is VMStatus.DESTROYED

    def test_destroyed_vm_is_kept_for_history(self, service, make_spec):
        vm = service.create_vm(make_spec())
        service.destroy(vm.id)

        vms, pagination = service.list_vms(status="destroyed")
        assert [v.id for v in vms] == [vm.id]
        assert pagination.total == 1

# ===================================================================
#  clone 테스트 스위트
# ===================================================================
class TestClone:
    def test_clone_copies_template_and_config(self, service, backend, make_spec, network):
        source = service.create_vm(make_spec(network=network, template="ubuntu/focal64"))

        clone = service.clone(source.id, "web-02")

        assert clone.id != source.id
        assert clone.name == "web-02"
        assert clone.status is VMStatus.STOPPED
        assert clone.last_action == "clone"
        assert clone.template == "ubuntu/focal64"
        assert clone.config == source.config
        assert clone.client_id == source.client_id
        assert clone.metadata["cloned_from"] == source.id
        assert ("create", "web-02") in backend.calls

    def test_clone_with_taken_name_is_conflict(self, service, backend, vm_repo, make_spec):
        """이미 존재하는 이름으로 복제하면 ConflictError가 발생하고 레코드가 추가되지 않는지 테스트합니다."""
        source = service.create_vm(make_spec())
        service.create_vm(make_spec(name="web-01-clone"))
        calls_before = list(backend.calls)

        with pytest.raises(VmAlreadyExistsError):
            service.clone(source.id, "web-01-clone")

        assert len(vm_repo.list()) == 2
        assert backend.calls == calls_before

    def test_clone_derives_name_when_not_given(self, service, make_spec):
        source = service.create_vm(make_spec())

        first = service.clone(source.id)
        second = service.clone(source.id)

        assert first.name == "web-01-clone"
        assert second.name == "web-01-clone-2"

    def test_clone_of_destroyed_vm_is_conflict(self, service, make_spec):
        source = service.create_vm(make_spec())
        service.destroy(source.id)

        with pytest.raises(IllegalTransitionError):
            service.clone(source.id, "web-02")

    def test_clone_backend_failure_marks_clone_error(self, service, backend, make_spec):
        source = service.create_vm(make_spec())
        backend.fail("create")

        with pytest.raises(AdapterError) as exc_info:
            service.clone(source.id, "web-02")

        assert service.get_vm(exc_info.value.vm_id).status is VMStatus.ERROR
        assert service.get_vm(source.id).status is VMStatus.STOPPED

# ===================================================================
#  update_config 테스트 스위트
# ===================================================================
class TestUpdateConfig:
    def test_update_config_with_dataclass(self, service, make_spec):
        vm = service.create_vm(make_spec())

        updated = service.update_config(vm.id, ConfigUpdate(cpu=4))

        assert updated.config.cpu == 4
        assert updated.config.memory_mb == 2048
        assert updated.status is VMStatus.STOPPED
        assert updated.last_action == "update_config"

    def test_update_config_with_dict_and_network(self, service, running_vm):
        updated = service.update_config(running_vm.id, {"memory_mb": 4096, "network": {"ip": "10.0.0.50"}})

        assert updated.config.memory_mb == 4096
        assert updated.config.network == NetworkConfig(ip="10.0.0.50")
        assert updated.status is VMStatus.RUNNING

    @pytest.mark.parametrize("changes", [
        {"cores": 4},
        {"cpu": 0},
        {"storage_gb": "big"},
        {"network": {"mac": "aa:bb"}},
        {},
        ConfigUpdate(),
        ["cpu", 4],
    ])
    def test_update_config_rejects_bad_input(self, service, make_spec, changes):
        vm = service.create_vm(make_spec())

        with pytest.raises(ValidationError):
            service.update_config(vm.id, changes)

        assert service.get_vm(vm.id).config.cpu == 2

    def test_update_config_of_destroyed_vm_is_conflict(self, service, make_spec):
        vm = service.create_vm(make_spec())
        service.destroy(vm.id)

        with pytest.raises(IllegalTransitionError):
            service.update_config(vm.id, {"cpu": 4})

# ===================================================================
#  스냅샷 테스트 스위트
# ===================================================================
class TestSnapshots:
    def test_create_snapshot_keeps_status(self, service, running_vm):
        snapshot = service.create_snapshot(running_vm.id, "before-upgrade")

        assert snapshot.vm_id == running_vm.id
        assert snapshot.name == "before-upgrade"
        vm = service.get_vm(running_vm.id)
        assert vm.status is VMStatus.RUNNING
        assert vm.last_action == "start"
        assert service.list_snapshots(running_vm.id) == [snapshot]

    def test_restore_snapshot_updates_audit_fields_only(self, service, running_vm):
        snapshot = service.create_snapshot(running_vm.id, "before-upgrade")

        restored = service.restore_snapshot(running_vm.id, snapshot.id)

        assert restored.status is VMStatus.RUNNING
        assert restored.last_action == "restore_snapshot"
        assert restored.updated_at >= running_vm.updated_at

    def test_restore_unknown_snapshot(self, service, running_vm):
        with pytest.raises(SnapshotNotFoundError):
            service.restore_snapshot(running_vm.id, "missing")

    def test_restore_snapshot_of_another_vm(self, service, running_vm, make_spec):
        other = service.create_vm(make_spec(name="db-01"))
        snapshot = service.create_snapshot(other.id, "nightly")

        with pytest.raises(SnapshotNotFoundError):
            service.restore_snapshot(running_vm.id, snapshot.id)

    def test_snapshot_requires_name(self, service, running_vm):
        with pytest.raises(ValidationError):
            service.create_snapshot(running_vm.id, "  ")

    def test_snapshot_of_destroyed_vm_is_conflict(self, service, make_spec):
        vm = service.create_vm(make_spec())
        snapshot = service.create_snapshot(vm.id, "s1")
        service.destroy(vm.id)

        with pytest.raises(IllegalTransitionError):
            service.create_snapshot(vm.id, "s2")
        with pytest.raises(IllegalTransitionError):
            service.restore_snapshot(vm.id, snapshot.id)

# ===================================================================
#  조회 테스트 스위트
# ===================================================================
class TestListVms:
    def test_pagination(self, service, make_spec):
        for i in range(3):
            service.create_vm(make_spec(name=f"web-0{i + 1}"))

        first, page1 = service.list_vms(page=1, limit=2)
        second, page2 = service.list_vms(page=2, limit=2)

        assert [vm.name for vm in first] == ["web-01", "web-02"]
        assert [vm.name for vm in second] == ["web-03"]
        assert (page1.total, page1.total_pages) == (3, 2)
        assert page2.page == 2

    def test_filters(self, service, make_spec):
        a = service.create_vm(make_spec(name="a", client_id="c1"))
        service.create_vm(make_spec(name="b", client_id="c2"))
        service.start(a.id)

        by_client, _ = service.list_vms(client_id="c2")
        by_status, _ = service.list_vms(status="running")

        assert [vm.name for vm in by_client] == ["b"]
        assert [vm.name for vm in by_status] == ["a"]

    def test_empty_list(self, service):
        vms, pagination = service.list_vms()
        assert vms == []
        assert pagination.total == 0
        assert pagination.total_pages == 0

    @pytest.mark.parametrize("kwargs", [
        {"status": "booting"},
        {"page": 0},
        {"limit": 0},
        {"limit": 101},
        {"page": "1"},
    ])
    def test_invalid_arguments(self, service, kwargs):
        with pytest.raises(ValidationError):
            service.list_vms(**kwargs)

    def test_returned_vm_is_a_copy(self, service, make_spec):
        """조회 결과를 직접 수정해도 저장된 상태는 바뀌지 않아야 합니다."""
        vm = service.create_vm(make_spec())

        vm.status = VMStatus.RUNNING
        service.list_vms()[0][0].status = VMStatus.ERROR

        assert service.get_vm(vm.id).status is VMStatus.STOPPED

# ===================================================================
#  전체 시나리오
# ===================================================================
def test_web01_lifecycle_scenario(service, backend, make_spec):
    """생성 -> 시작 -> 중복 시작 거부 -> 파기 -> 같은 이름으로 재생성 시나리오를 검증합니다."""
    vm = service.create_vm(make_spec(name="web-01", cpu=2, memory_mb=2048, storage_gb=20))
    assert vm.status is VMStatus.STOPPED

    vm = service.start(vm.id)
    assert vm.status is VMStatus.RUNNING

    with pytest.raises(ConflictError):
        service.start(vm.id)

    vm = service.destroy(vm.id)
    assert vm.status is VMStatus.DESTROYED

    again = service.create_vm(make_spec(name="web-01"))
    assert again.status is VMStatus.STOPPED
    assert again.id != vm.id
    assert [op for op, _ in backend.calls] == ["create", "start", "destroy", "create"]
