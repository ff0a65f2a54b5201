import threading
from datetime import timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hostmgr.database import models
from hostmgr.domain import VM, VMConfig, VMStatus, NetworkConfig, Snapshot
from hostmgr.repositories.interfaces import IVMRepository
from hostmgr.services.exceptions import ConflictError, VmNotFoundError, SnapshotNotFoundError


def _aware(value):
    # SQLite는 시간대 정보를 저장하지 않으므로 UTC로 다시 붙여줍니다.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_domain(row: models.VMRecord) -> VM:
    network = NetworkConfig(**row.network) if row.network is not None else None
    return VM(
        id=row.uuid,
        name=row.name,
        client_id=row.client_id,
        template=row.template,
        config=VMConfig(cpu=row.cpu_count, memory_mb=row.ram_mb, storage_gb=row.storage_gb, network=network),
        status=VMStatus(row.state),
        last_action=row.last_action,
        last_error=row.last_error,
        metadata=dict(row.extra or {}),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _apply(vm: VM, row: models.VMRecord) -> None:
    network = vm.config.network
    row.uuid = vm.id
    row.name = vm.name
    row.client_id = vm.client_id
    row.template = vm.template
    row.state = vm.status.value
    row.cpu_count = vm.config.cpu
    row.ram_mb = vm.config.memory_mb
    row.storage_gb = vm.config.storage_gb
    row.network = None if network is None else {"ip": network.ip, "subnet": network.subnet, "gateway": network.gateway}
    row.last_action = vm.last_action
    row.last_error = vm.last_error
    row.extra = dict(vm.metadata)
    row.created_at = vm.created_at
    row.updated_at = vm.updated_at


class SqlalchemyVMRepository(IVMRepository):
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        # 같은 프로세스 안의 read-modify-write를 직렬화합니다.
        # 다른 프로세스와의 경합은 SELECT ... FOR UPDATE가 지원되는 DB에서만 막힙니다.
        self._write_lock = threading.Lock()

    def insert(self, vm: VM) -> VM:
        row = models.VMRecord()
        _apply(vm, row)
        with self._write_lock, self.session_factory() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError(f"VM with id '{vm.id}' already exists.") from e
            db.refresh(row)
            return _to_domain(row)

    def get(self, vm_id: str) -> VM:
        with self.session_factory() as db:
            return _to_domain(self._find(db, vm_id))

    def update(self, vm_id: str, mutator: Callable[[VM], None]) -> VM:
        with self._write_lock, self.session_factory() as db:
            row = self._find(db, vm_id, for_update=True)
            working = _to_domain(row)
            try:
                mutator(working)
            except Exception:
                db.rollback()
                raise
            _apply(working, row)
            db.commit()
            db.refresh(row)
            return _to_domain(row)

    def list(self, status: Optional[VMStatus] = None, client_id: Optional[str] = None) -> List[VM]:
        with self.session_factory() as db:
            query = db.query(models.VMRecord)
            if status is not None:
                query = query.filter(models.VMRecord.state == status.value)
            if client_id is not None:
                query = query.filter(models.VMRecord.client_id == client_id)
            return [_to_domain(row) for row in query.order_by(models.VMRecord.id.asc()).all()]

    def exists_by_name(self, name: str, excluding_status: Optional[VMStatus] = VMStatus.DESTROYED) -> bool:
        with self.session_factory() as db:
            query = db.query(models.VMRecord.id).filter(models.VMRecord.name == name)
            if excluding_status is not None:
                query = query.filter(models.VMRecord.state != excluding_status.value)
            return query.first() is not None

    def insert_snapshot(self, snapshot: Snapshot) -> Snapshot:
        row = models.SnapshotRecord(
            uuid=snapshot.id,
            name=snapshot.name,
            vm_uuid=snapshot.vm_id,
            created_at=snapshot.created_at,
        )
        with self._write_lock, self.session_factory() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError(f"Snapshot with id '{snapshot.id}' already exists.") from e
            return snapshot

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        with self.session_factory() as db:
            row = db.query(models.SnapshotRecord).filter(models.SnapshotRecord.uuid == snapshot_id).first()
            if not row:
                raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found.")
            return Snapshot(id=row.uuid, name=row.name, vm_id=row.vm_uuid, created_at=_aware(row.created_at))

    def list_snapshots(self, vm_id: str) -> List[Snapshot]:
        with self.session_factory() as db:
            rows = db.query(models.SnapshotRecord).filter(
                models.SnapshotRecord.vm_uuid == vm_id
            ).order_by(models.SnapshotRecord.id.asc()).all()
            return [Snapshot(id=r.uuid, name=r.name, vm_id=r.vm_uuid, created_at=_aware(r.created_at)) for r in rows]

    def _find(self, db: Session, vm_id: str, for_update: bool = False) -> models.VMRecord:
        query = db.query(models.VMRecord).filter(models.VMRecord.uuid == vm_id)
        if for_update:
            query = query.with_for_update()
        row = query.first()
        if not row:
            raise VmNotFoundError(f"VM '{vm_id}' not found.")
        return row
