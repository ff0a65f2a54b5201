from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict

from hostmgr.domain.vm import utcnow


@dataclass(frozen=True)
class Snapshot:
    """
    특정 시점의 VM을 가리키는 스냅샷 기술자(descriptor)입니다.
    디스크 저장 형식은 다루지 않고, 복원 요청이 참조할 수 있도록 기록만 보관합니다.
    """
    id: str
    name: str
    vm_id: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "vmId": self.vm_id,
            "createdAt": self.created_at.isoformat(),
        }
