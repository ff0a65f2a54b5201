from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from ..database import Base

class SnapshotRecord(Base):
    """
    VM 스냅샷 기술자를 보관합니다. 스냅샷 데이터 자체는 저장하지 않습니다.
    """
    __tablename__ = "vm_snapshots"
    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    vm_uuid = Column(String, ForeignKey("vms.uuid"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
