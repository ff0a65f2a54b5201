import logging
import re
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from hostmgr.domain import (
    VM, VMConfig, VMSpec, VMStatus, NetworkConfig, ConfigUpdate, Snapshot, Pagination, utcnow,
)
from hostmgr.provisioning.interfaces import ProvisioningBackend
from hostmgr.repositories.interfaces import IVMRepository
from hostmgr.services.exceptions import (
    AdapterError,
    ConflictError,
    IllegalTransitionError,
    OperationInProgressError,
    SnapshotNotFoundError,
    ValidationError,
    VmAlreadyExistsError,
)

logger = logging.getLogger(__name__)

# 머신 이름은 백엔드의 식별자이자 작업 디렉터리 이름으로 쓰입니다.
NAME_PATTERN = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,62}$')

ACTIVE_STATUSES = frozenset(s for s in VMStatus if s is not VMStatus.DESTROYED)

# action -> (허용되는 현재 상태, 성공 시 상태, 호출할 백엔드 작업)
TRANSITIONS: Dict[str, Tuple[frozenset, VMStatus, str]] = {
    "start": (frozenset({VMStatus.STOPPED}), VMStatus.RUNNING, "start"),
    "stop": (frozenset({VMStatus.RUNNING}), VMStatus.STOPPED, "halt"),
    "suspend": (frozenset({VMStatus.RUNNING}), VMStatus.SUSPENDED, "suspend"),
    "resume": (frozenset({VMStatus.SUSPENDED}), VMStatus.RUNNING, "resume"),
    "restart": (frozenset({VMStatus.RUNNING, VMStatus.STOPPED}), VMStatus.RUNNING, "halt+start"),
    "destroy": (ACTIVE_STATUSES, VMStatus.DESTROYED, "destroy"),
}


class LifecycleService:
    """
    VM의 status를 바꿀 수 있는 유일한 주체입니다.

    전이 요청을 상태 머신에 비추어 검증하고, 프로비저닝 백엔드를 호출한 뒤,
    결과를 저장소에 기록합니다. 백엔드 호출은 저장소 잠금 밖에서 일어나며,
    VM 하나에는 동시에 하나의 작업만 진행될 수 있습니다.
    """

    def __init__(self, vm_repo: IVMRepository, backend: ProvisioningBackend,
                 default_timeout: float = 600.0, max_workers: int = 8,
                 client_exists: Optional[Callable[[str], bool]] = None,
                 default_page_limit: int = 10, max_page_limit: int = 100):
        """
        LifecycleService를 초기화합니다.

        Args:
            vm_repo: VM 레코드 저장소.
            backend: 실제 머신을 다룰 프로비저닝 백엔드.
            default_timeout: 호출자가 timeout을 주지 않았을 때 백엔드 호출에 적용할 시간(초).
            max_workers: 백엔드 호출을 실행할 워커 스레드 수.
            client_exists: 주어지면 create_vm에서 고객 ID의 존재 여부를 검사합니다.
            default_page_limit: list_vms의 기본 페이지 크기.
            max_page_limit: list_vms가 허용하는 최대 페이지 크기.
        """
        self.vm_repo = vm_repo
        self.backend = backend
        self.default_timeout = default_timeout
        self.client_exists = client_exists
        self.default_page_limit = default_page_limit
        self.max_page_limit = max_page_limit

        # 백엔드 호출 전용 풀과 비동기 생성 작업 풀을 분리해야
        # 생성 작업이 백엔드 호출을 기다리며 풀을 모두 점유하는 교착을 피할 수 있습니다.
        self._adapter_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hostmgr-adapter")
        self._provision_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hostmgr-provision")

        self._in_flight = set()
        # 시간 초과 후에도 아직 실행 중인 백엔드 호출. 끝날 때까지 해당 VM은 작업 중으로 취급합니다.
        self._abandoned: Dict[str, Future] = {}
        self._in_flight_lock = threading.Lock()
        self._name_lock = threading.Lock()

    # ------------------------------------------------------------------
    # 생성
    # ------------------------------------------------------------------

    def create_vm(self, spec: VMSpec, timeout: Optional[float] = None) -> VM:
        """
        새로운 VM을 등록하고 백엔드에서 머신을 생성합니다.

        VM은 먼저 'creating' 상태로 저장되고, 백엔드 생성이 끝날 때까지 호출이 블록됩니다.
        성공하면 'stopped', 실패하면 'error' 상태가 되며 실패 사유가 last_error에 남습니다.
        시간 초과 시에는 실제 결과를 알 수 없으므로 'creating' 상태를 그대로 둡니다.

        Args:
            spec: 생성 요청 (이름, 고객 ID, 템플릿, 하드웨어 구성).
            timeout: 백엔드 호출에 허용할 시간(초).

        Returns:
            생성이 완료된 VM.

        Raises:
            ValidationError: 이름 형식이나 구성 값이 잘못되었을 때.
            VmAlreadyExistsError: 파기되지 않은 VM 중에 같은 이름이 있을 때.
            AdapterError: 백엔드 생성이 실패했거나 시간 초과되었을 때.
        """
        vm = self._register(spec, action="create")
        return self._provision(vm, "create", timeout)

    def create_vm_async(self, spec: VMSpec, timeout: Optional[float] = None) -> "Future[VM]":
        """
        create_vm과 같지만 백엔드 생성은 워커 스레드에서 진행합니다.

        검증과 'creating' 레코드 저장은 호출 즉시 수행되므로 입력 오류는 바로 예외로 전달됩니다.
        반환된 Future는 완료된 VM으로 끝나거나 AdapterError를 발생시킵니다.
        """
        vm = self._register(spec, action="create")
        try:
            return self._provision_pool.submit(self._provision, vm, "create", timeout)
        except RuntimeError:
            self._release(vm.id)
            raise

    def clone(self, vm_id: str, new_name: Optional[str] = None, timeout: Optional[float] = None) -> VM:
        """
        기존 VM의 템플릿과 구성을 복사해 새 VM을 만듭니다.

        새 이름이 없으면 '<원본 이름>-clone'을 쓰고, 이미 사용 중이면 '-2', '-3' ...을 붙입니다.
        생성 과정은 create_vm과 동일합니다.

        Raises:
            VmNotFoundError: 원본 VM을 찾을 수 없을 때.
            IllegalTransitionError: 원본 VM이 이미 파기되었을 때.
            VmAlreadyExistsError: 지정한 새 이름이 이미 사용 중일 때. (레코드는 만들어지지 않음)
            AdapterError: 백엔드 생성이 실패했을 때.
        """
        source = self.vm_repo.get(vm_id)
        if source.status is VMStatus.DESTROYED:
            raise IllegalTransitionError(f"Cannot clone VM '{source.name}': it has been destroyed.")

        spec = VMSpec(
            name=new_name if new_name is not None else f"{source.name}-clone",
            client_id=source.client_id,
            template=source.template,
            config=VMConfig(
                cpu=source.config.cpu,
                memory_mb=source.config.memory_mb,
                storage_gb=source.config.storage_gb,
                network=NetworkConfig(**vars(source.config.network)) if source.config.network else None,
            ),
            metadata={**source.metadata, "cloned_from": source.id},
        )
        vm = self._register(spec, action="clone", derive_name=new_name is None)
        logger.info("Cloning VM '%s' into '%s'.", source.name, vm.name)
        return self._provision(vm, "clone", timeout)

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def get_vm(self, vm_id: str) -> VM:
        return self.vm_repo.get(vm_id)

    def list_vms(self, status: Optional[Union[VMStatus, str]] = None, client_id: Optional[str] = None,
                 page: int = 1, limit: Optional[int] = None) -> Tuple[List[VM], Pagination]:
        """
        조건에 맞는 VM 목록을 삽입 순서대로 페이지 단위로 조회합니다.

        Returns:
            (해당 페이지의 VM 리스트, 페이지 정보) 튜플.

        Raises:
            ValidationError: 상태 값이 잘못되었거나 page/limit 범위를 벗어났을 때.
        """
        if limit is None:
            limit = self.default_page_limit
        if isinstance(status, str) and not isinstance(status, VMStatus):
            try:
                status = VMStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown VM status '{status}'.")
        if not _is_int(page) or page < 1:
            raise ValidationError(f"page must be a positive integer, got {page!r}.")
        if not _is_int(limit) or not 1 <= limit <= self.max_page_limit:
            raise ValidationError(f"limit must be between 1 and {self.max_page_limit}, got {limit!r}.")

        vms = self.vm_repo.list(status=status, client_id=client_id)
        start = (page - 1) * limit
        return vms[start:start + limit], Pagination.of(page, limit, len(vms))

    # ------------------------------------------------------------------
    # 구성 변경
    # ------------------------------------------------------------------

    def update_config(self, vm_id: str, changes: Union[ConfigUpdate, Dict[str, Any]]) -> VM:
        """
        VM의 하드웨어 구성을 부분 변경합니다.

        진행 중인 작업이 없고, 'creating'/'destroyed'가 아닌 VM만 변경할 수 있습니다.
        알 수 없는 필드가 포함되면 병합하지 않고 거부합니다.

        Raises:
            ValidationError: 알 수 없는 필드, 양수가 아닌 값, 빈 변경 요청일 때.
            OperationInProgressError: 해당 VM에 다른 작업이 진행 중일 때.
            IllegalTransitionError: 'creating' 또는 'destroyed' 상태일 때.
        """
        update = _coerce_config_update(changes)
        with self._operation(vm_id):
            vm = self.vm_repo.get(vm_id)
            if vm.status in (VMStatus.CREATING, VMStatus.DESTROYED):
                raise IllegalTransitionError(
                    f"Cannot update config of VM '{vm.name}' while it is {vm.status.value}."
                )
            new_config = VMConfig(
                cpu=vm.config.cpu if update.cpu is None else update.cpu,
                memory_mb=vm.config.memory_mb if update.memory_mb is None else update.memory_mb,
                storage_gb=vm.config.storage_gb if update.storage_gb is None else update.storage_gb,
                network=vm.config.network if update.network is None else update.network,
            )
            _validate_config(new_config)

            def apply(target: VM):
                target.config = new_config
                target.last_action = "update_config"

            updated = self._commit(vm_id, vm.status, apply)
            logger.info("VM '%s' config updated: cpu=%s memory_mb=%s storage_gb=%s",
                        vm.name, new_config.cpu, new_config.memory_mb, new_config.storage_gb)
            return updated

    # ------------------------------------------------------------------
    # 상태 전이
    # ------------------------------------------------------------------

    def start(self, vm_id: str, timeout: Optional[float] = None) -> VM:
        """정지(stopped)된 VM을 시작합니다."""
        return self._transition(vm_id, "start", timeout)

    def stop(self, vm_id: str, timeout: Optional[float] = None) -> VM:
        """실행 중인 VM을 정지합니다."""
        return self._transition(vm_id, "stop", timeout)

    def suspend(self, vm_id: str, timeout: Optional[float] = None) -> VM:
        return self._transition(vm_id, "suspend", timeout)

    def resume(self, vm_id: str, timeout: Optional[float] = None) -> VM:
        return self._transition(vm_id, "resume", timeout)

    def destroy(self, vm_id: str, timeout: Optional[float] = None) -> VM:
        """
        VM을 파기합니다. 'destroyed'를 제외한 모든 상태에서 가능합니다.

        백엔드 파기가 실패하면 'destroyed'로 표시하지 않고 AdapterError를 발생시키므로
        호출자가 재시도해야 합니다. 파기된 레코드는 이력 조회를 위해 남겨둡니다.
        """
        return self._transition(vm_id, "destroy", timeout)

    def restart(self, vm_id: str, timeout: Optional[float] = None) -> VM:
        """
        VM을 정지한 뒤 다시 시작합니다.

        정지 단계가 실패하면 시작을 시도하지 않고 상태를 그대로 둡니다.
        정지는 성공했지만 시작이 실패하면 머신이 어떤 상태인지 확정할 수 없으므로 'error'로 기록합니다.
        두 경우 모두 last_action은 'restart'가 되고 AdapterError가 발생합니다.

        Raises:
            VmNotFoundError: VM을 찾을 수 없을 때.
            IllegalTransitionError: 'running'/'stopped'가 아닌 상태일 때.
            OperationInProgressError: 해당 VM에 다른 작업이 진행 중일 때.
            AdapterError: 정지 또는 시작 단계가 실패했을 때.
        """
        with self._operation(vm_id):
            vm = self.vm_repo.get(vm_id)
            self._check_transition(vm, "restart")

            try:
                self._call_backend(vm, "restart", "halt", timeout=timeout)
            except AdapterError as e:
                self._record_failure(vm, "restart", e)
                raise

            try:
                self._call_backend(vm, "restart", "start", timeout=timeout)
            except AdapterError as e:
                status = None if e.timed_out else VMStatus.ERROR
                self._record_failure(vm, "restart", e, status=status)
                raise

            return self._commit_transition(vm, "restart", VMStatus.RUNNING)

    # ------------------------------------------------------------------
    # 스냅샷
    # ------------------------------------------------------------------

    def create_snapshot(self, vm_id: str, name: str) -> Snapshot:
        """
        VM의 스냅샷 기술자를 만들어 저장합니다. VM의 상태는 바뀌지 않습니다.

        Raises:
            ValidationError: 스냅샷 이름이 비어 있을 때.
            IllegalTransitionError: 이미 파기된 VM일 때.
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Snapshot name must be a non-empty string.")
        with self._operation(vm_id):
            vm = self.vm_repo.get(vm_id)
            if vm.status is VMStatus.DESTROYED:
                raise IllegalTransitionError(f"Cannot snapshot VM '{vm.name}': it has been destroyed.")
            snapshot = self.vm_repo.insert_snapshot(
                Snapshot(id=str(uuid.uuid4()), name=name.strip(), vm_id=vm.id)
            )
            logger.info("Snapshot '%s' (%s) created for VM '%s'.", snapshot.name, snapshot.id, vm.name)
            return snapshot

    def list_snapshots(self, vm_id: str) -> List[Snapshot]:
        self.vm_repo.get(vm_id)
        return self.vm_repo.list_snapshots(vm_id)

    def restore_snapshot(self, vm_id: str, snapshot_id: str) -> VM:
        """
        스냅샷 복원을 기록합니다. VM의 status는 바뀌지 않고 last_action과 updated_at만 갱신됩니다.

        Raises:
            SnapshotNotFoundError: 스냅샷이 없거나 다른 VM의 스냅샷일 때.
            IllegalTransitionError: 'creating' 또는 'destroyed' 상태일 때.
        """
        with self._operation(vm_id):
            vm = self.vm_repo.get(vm_id)
            snapshot = self.vm_repo.get_snapshot(snapshot_id)
            if snapshot.vm_id != vm.id:
                raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' does not belong to VM '{vm.name}'.")
            if vm.status in (VMStatus.CREATING, VMStatus.DESTROYED):
                raise IllegalTransitionError(
                    f"Cannot restore snapshot on VM '{vm.name}' while it is {vm.status.value}."
                )

            def apply(target: VM):
                target.last_action = "restore_snapshot"

            updated = self._commit(vm_id, vm.status, apply)
            logger.info("VM '%s' restored from snapshot '%s'.", vm.name, snapshot.name)
            return updated

    def shutdown(self, wait: bool = True) -> None:
        """워커 스레드 풀을 종료합니다."""
        self._provision_pool.shutdown(wait=wait)
        self._adapter_pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # 내부 구현
    # ------------------------------------------------------------------

    def _register(self, spec: VMSpec, action: str, derive_name: bool = False) -> VM:
        _validate_spec(spec)
        if self.client_exists is not None and not self.client_exists(spec.client_id):
            raise ValidationError(f"Client '{spec.client_id}' does not exist.")

        # 이름 검사와 삽입 사이에 다른 생성 요청이 끼어들지 못하도록 묶어서 처리합니다.
        with self._name_lock:
            name = spec.name
            if derive_name:
                name = self._next_free_name(name)
            elif self.vm_repo.exists_by_name(name):
                raise VmAlreadyExistsError(f"VM name '{name}' is already in use.")

            now = utcnow()
            vm = VM(
                id=str(uuid.uuid4()),
                name=name,
                client_id=spec.client_id,
                template=spec.template,
                config=spec.config,
                status=VMStatus.CREATING,
                last_action=action,
                metadata=dict(spec.metadata),
                created_at=now,
                updated_at=now,
            )
            vm = self.vm_repo.insert(vm)
            self._acquire(vm.id)

        logger.info("VM '%s' (%s) registered for client '%s' from template '%s'.",
                    vm.name, vm.id, vm.client_id, vm.template)
        return vm

    def _next_free_name(self, base: str) -> str:
        name, suffix = base, 2
        while self.vm_repo.exists_by_name(name):
            name = f"{base}-{suffix}"
            suffix += 1
        return name

    def _provision(self, vm: VM, action: str, timeout: Optional[float]) -> VM:
        try:
            try:
                self._call_backend(vm, action, "create", vm.template, vm.config, timeout=timeout)
            except AdapterError as e:
                status = None if e.timed_out else VMStatus.ERROR
                self._record_failure(vm, action, e, status=status)
                raise
            return self._commit_transition(vm, action, VMStatus.STOPPED)
        finally:
            self._release(vm.id)

    def _transition(self, vm_id: str, action: str, timeout: Optional[float]) -> VM:
        _, target, operation = TRANSITIONS[action]
        with self._operation(vm_id):
            vm = self.vm_repo.get(vm_id)
            self._check_transition(vm, action)
            try:
                self._call_backend(vm, action, operation, timeout=timeout)
            except AdapterError as e:
                self._record_failure(vm, action, e)
                raise
            return self._commit_transition(vm, action, target)

    def _check_transition(self, vm: VM, action: str) -> None:
        allowed, _, _ = TRANSITIONS[action]
        if vm.status not in allowed:
            raise IllegalTransitionError(
                f"Cannot {action} VM '{vm.name}' while it is {vm.status.value}."
            )

    def _call_backend(self, vm: VM, action: str, operation: str, *args, timeout: Optional[float] = None) -> None:
        timeout = self.default_timeout if timeout is None else timeout
        func = getattr(self.backend, operation)
        logger.debug("Calling %s backend %s for VM '%s' (timeout=%ss).", self.backend.name, operation, vm.name, timeout)
        future = self._adapter_pool.submit(func, vm.name, *args)
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError as e:
            if future.cancel():
                message = (f"Backend {operation} for VM '{vm.name}' timed out after {timeout}s "
                           f"before it started; the call was cancelled.")
            else:
                self._abandon(vm, operation, future)
                message = (f"Backend {operation} for VM '{vm.name}' timed out after {timeout}s; "
                           f"the VM stays busy until the call returns. Check the machine state before retrying.")
            raise AdapterError(message, vm_id=vm.id, action=action, cause=e, timed_out=True) from e
        except Exception as e:
            raise AdapterError(
                f"Backend {operation} for VM '{vm.name}' failed: {e}",
                vm_id=vm.id, action=action, cause=e,
            ) from e

    def _commit(self, vm_id: str, expected: VMStatus, mutate: Callable[[VM], None]) -> VM:
        def mutator(vm: VM):
            if vm.status is not expected:
                raise ConflictError(
                    f"VM '{vm.name}' changed from {expected.value} to {vm.status.value} during the operation."
                )
            mutate(vm)
            vm.updated_at = utcnow()

        return self.vm_repo.update(vm_id, mutator)

    def _commit_transition(self, vm: VM, action: str, target: VMStatus) -> VM:
        def apply(current: VM):
            current.status = target
            current.last_action = action
            current.last_error = None

        updated = self._commit(vm.id, vm.status, apply)
        logger.info("VM '%s' %s: %s -> %s", vm.name, action, vm.status.value, target.value)
        return updated

    def _record_failure(self, vm: VM, action: str, error: AdapterError, status: Optional[VMStatus] = None) -> None:
        def apply(current: VM):
            current.last_action = action
            current.last_error = str(error)
            if status is not None:
                current.status = status

        try:
            self._commit(vm.id, vm.status, apply)
        except ConflictError as conflict:
            logger.error("Could not record failed %s on VM '%s': %s", action, vm.name, conflict)
            return
        if status is None:
            logger.warning("VM '%s' %s failed, status stays %s: %s", vm.name, action, vm.status.value, error)
        else:
            logger.error("VM '%s' %s failed, status %s -> %s: %s", vm.name, action, vm.status.value, status.value, error)

    @contextmanager
    def _operation(self, vm_id: str):
        self._acquire(vm_id)
        try:
            yield
        finally:
            self._release(vm_id)

    def _acquire(self, vm_id: str) -> None:
        with self._in_flight_lock:
            if vm_id in self._in_flight or vm_id in self._abandoned:
                raise OperationInProgressError(f"An operation is already in progress for VM '{vm_id}'.")
            self._in_flight.add(vm_id)

    def _release(self, vm_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(vm_id)

    def _abandon(self, vm: VM, operation: str, future: Future) -> None:
        with self._in_flight_lock:
            self._abandoned[vm.id] = future

        def forget(done: Future):
            with self._in_flight_lock:
                if self._abandoned.get(vm.id) is done:
                    del self._abandoned[vm.id]
            logger.warning("Abandoned backend %s for VM '%s' has returned; the VM accepts operations again.",
                           operation, vm.name)

        # 이미 끝났다면 콜백은 즉시 실행되므로 잠금 밖에서 등록합니다.
        future.add_done_callback(forget)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_config(config) -> None:
    if not isinstance(config, VMConfig):
        raise ValidationError("config must be a VMConfig.")
    for field_name in ("cpu", "memory_mb", "storage_gb"):
        value = getattr(config, field_name)
        if not _is_int(value) or value <= 0:
            raise ValidationError(f"config.{field_name} must be a positive integer, got {value!r}.")
    if config.network is not None and not isinstance(config.network, NetworkConfig):
        raise ValidationError("config.network must be a NetworkConfig.")


def _validate_spec(spec: VMSpec) -> None:
    if not isinstance(spec.name, str) or not NAME_PATTERN.match(spec.name):
        raise ValidationError(
            f"Invalid VM name {spec.name!r}: use letters, digits, '-', '_' or '.' (max 63 characters)."
        )
    if not isinstance(spec.client_id, str) or not spec.client_id:
        raise ValidationError("client_id is required.")
    if not isinstance(spec.template, str) or not spec.template:
        raise ValidationError("template is required.")
    if not isinstance(spec.metadata, dict):
        raise ValidationError("metadata must be a mapping.")
    _validate_config(spec.config)


def _coerce_config_update(changes) -> ConfigUpdate:
    if isinstance(changes, ConfigUpdate):
        update = changes
    elif isinstance(changes, dict):
        unknown = set(changes) - ConfigUpdate.field_names()
        if unknown:
            raise ValidationError(f"Unknown config fields: {', '.join(sorted(unknown))}.")
        values = dict(changes)
        network = values.get("network")
        if isinstance(network, dict):
            unknown = set(network) - {"ip", "subnet", "gateway"}
            if unknown:
                raise ValidationError(f"Unknown network fields: {', '.join(sorted(unknown))}.")
            values["network"] = NetworkConfig(**network)
        update = ConfigUpdate(**values)
    else:
        raise ValidationError("Config changes must be a ConfigUpdate or a dict.")

    if all(getattr(update, f) is None for f in ConfigUpdate.field_names()):
        raise ValidationError("Config update contains no changes.")
    return update
