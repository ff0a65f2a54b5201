from sqlalchemy import Column, Integer, String, DateTime, JSON
from ..database import Base

class VMRecord(Base):
    """
    사용자가 생성하고 관리하는 가상 머신(인스턴스)의 영속 레코드입니다.
    정수 id는 삽입 순서를 보존하기 위한 내부 키이고, 외부에 노출되는 식별자는 uuid입니다.
    파기된 VM의 이름은 재사용될 수 있으므로 name에는 unique 제약을 두지 않습니다.
    """
    __tablename__ = "vms"
    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    template = Column(String, nullable=False)
    state = Column(String, nullable=False, index=True)
    cpu_count = Column(Integer, nullable=False)
    ram_mb = Column(Integer, nullable=False)
    storage_gb = Column(Integer, nullable=False)
    network = Column(JSON, nullable=True)
    last_action = Column(String, nullable=True)
    last_error = Column(String, nullable=True)
    extra = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
