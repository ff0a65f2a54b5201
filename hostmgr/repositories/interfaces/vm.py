from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from hostmgr.domain import VM, VMStatus, Snapshot

class IVMRepository(ABC):
    @abstractmethod
    def insert(self, vm: VM) -> VM:
        """
        새로운 VM 레코드를 저장합니다.

        Raises:
            ConflictError: 같은 ID의 레코드가 이미 존재할 때.
        """
        pass

    @abstractmethod
    def get(self, vm_id: str) -> VM:
        """
        ID로 VM을 조회하여 독립된 사본을 반환합니다.

        Raises:
            VmNotFoundError: 해당 ID의 VM이 없을 때.
        """
        pass

    @abstractmethod
    def update(self, vm_id: str, mutator: Callable[[VM], None]) -> VM:
        """
        저장된 VM을 원자적으로 읽고-수정하고-기록합니다.

        mutator는 잠금 안에서 레코드의 작업용 사본을 받아 직접 수정하며,
        예외를 던지면 아무 변경도 반영되지 않습니다. 상태 검증(같은 상태인지 확인)은
        mutator 안에서 수행합니다.

        Args:
            vm_id: 수정할 VM의 ID.
            mutator: VM 사본을 받아 수정하는 함수.

        Returns:
            수정이 반영된 VM의 사본.

        Raises:
            VmNotFoundError: 해당 ID의 VM이 없을 때.
        """
        pass

    @abstractmethod
    def list(self, status: Optional[VMStatus] = None, client_id: Optional[str] = None) -> List[VM]:
        """상태/고객 ID 조건에 맞는 VM 목록을 삽입 순서대로 조회합니다."""
        pass

    @abstractmethod
    def exists_by_name(self, name: str, excluding_status: Optional[VMStatus] = VMStatus.DESTROYED) -> bool:
        """excluding_status 상태가 아닌 VM 중에 같은 이름이 있는지 확인합니다."""
        pass

    @abstractmethod
    def insert_snapshot(self, snapshot: Snapshot) -> Snapshot:
        """스냅샷 기술자를 저장합니다."""
        pass

    @abstractmethod
    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        """
        ID로 스냅샷을 조회합니다.

        Raises:
            SnapshotNotFoundError: 해당 ID의 스냅샷이 없을 때.
        """
        pass

    @abstractmethod
    def list_snapshots(self, vm_id: str) -> List[Snapshot]:
        """특정 VM의 스냅샷 목록을 생성 순서대로 조회합니다."""
        pass
