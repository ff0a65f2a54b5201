import threading
from typing import Callable, Dict, List, Optional

from hostmgr.domain import VM, VMStatus, Snapshot
from hostmgr.repositories.interfaces import IVMRepository
from hostmgr.services.exceptions import ConflictError, VmNotFoundError, SnapshotNotFoundError

class InMemoryVMRepository(IVMRepository):
    """
    프로세스 메모리에 VM 레코드를 보관하는 저장소입니다.
    영속성은 보장하지 않으며, 프로세스당 한 번 생성해서 서비스에 주입합니다.
    """

    def __init__(self):
        # dict는 삽입 순서를 유지하므로 목록 조회의 정렬 기준으로 그대로 사용합니다.
        self._vms: Dict[str, VM] = {}
        self._snapshots: Dict[str, Snapshot] = {}
        self._lock = threading.Lock()

    def insert(self, vm: VM) -> VM:
        with self._lock:
            if vm.id in self._vms:
                raise ConflictError(f"VM with id '{vm.id}' already exists.")
            self._vms[vm.id] = vm.copy()
            return vm.copy()

    def get(self, vm_id: str) -> VM:
        with self._lock:
            return self._get_locked(vm_id).copy()

    def update(self, vm_id: str, mutator: Callable[[VM], None]) -> VM:
        with self._lock:
            working = self._get_locked(vm_id).copy()
            mutator(working)
            self._vms[vm_id] = working
            return working.copy()

    def list(self, status: Optional[VMStatus] = None, client_id: Optional[str] = None) -> List[VM]:
        with self._lock:
            return [
                vm.copy() for vm in self._vms.values()
                if (status is None or vm.status == status)
                and (client_id is None or vm.client_id == client_id)
            ]

    def exists_by_name(self, name: str, excluding_status: Optional[VMStatus] = VMStatus.DESTROYED) -> bool:
        with self._lock:
            return any(
                vm.name == name and vm.status != excluding_status
                for vm in self._vms.values()
            )

    def insert_snapshot(self, snapshot: Snapshot) -> Snapshot:
        with self._lock:
            if snapshot.id in self._snapshots:
                raise ConflictError(f"Snapshot with id '{snapshot.id}' already exists.")
            self._snapshots[snapshot.id] = snapshot
            return snapshot

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found.")
        return snapshot

    def list_snapshots(self, vm_id: str) -> List[Snapshot]:
        with self._lock:
            return [s for s in self._snapshots.values() if s.vm_id == vm_id]

    def _get_locked(self, vm_id: str) -> VM:
        vm = self._vms.get(vm_id)
        if vm is None:
            raise VmNotFoundError(f"VM '{vm_id}' not found.")
        return vm
