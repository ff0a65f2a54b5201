import copy
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VMStatus(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    DESTROYED = "destroyed"
    ERROR = "error"


@dataclass
class NetworkConfig:
    """VM에 연결할 네트워크 정보. IP 할당은 하지 않고 호출자가 준 값을 그대로 보관합니다."""
    ip: Optional[str] = None
    subnet: Optional[str] = None
    gateway: Optional[str] = None


@dataclass
class VMConfig:
    """
    VM의 하드웨어 구성입니다.
    OpenStack의 'Flavor'에 네트워크 정보를 더한 것과 비슷합니다.
    """
    cpu: int
    memory_mb: int
    storage_gb: int
    network: Optional[NetworkConfig] = None


@dataclass
class ConfigUpdate:
    """
    update_config()에 전달하는 부분 변경값입니다.
    None인 필드는 기존 값을 그대로 유지합니다.
    """
    cpu: Optional[int] = None
    memory_mb: Optional[int] = None
    storage_gb: Optional[int] = None
    network: Optional[NetworkConfig] = None

    @classmethod
    def field_names(cls):
        return {f.name for f in fields(cls)}


@dataclass
class VMSpec:
    """create_vm()에 전달하는 생성 요청입니다."""
    name: str
    client_id: str
    template: str
    config: VMConfig
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class VM:
    """
    수명주기 서비스가 관리하는 가상 머신(인스턴스)을 나타냅니다.
    status는 LifecycleService의 전이 작업으로만 바뀌며,
    파기(destroyed)된 VM도 감사 기록을 위해 저장소에서 삭제하지 않습니다.
    """
    id: str
    name: str
    client_id: str
    template: str
    config: VMConfig
    status: VMStatus = VMStatus.CREATING
    last_action: Optional[str] = None
    last_error: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self) -> "VM":
        """저장소 밖으로 내보낼 독립된 사본을 만듭니다."""
        return replace(
            self,
            config=copy.deepcopy(self.config),
            metadata=dict(self.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        network = self.config.network
        return {
            "id": self.id,
            "name": self.name,
            "clientId": self.client_id,
            "template": self.template,
            "status": self.status.value,
            "config": {
                "cpu": self.config.cpu,
                "memoryMB": self.config.memory_mb,
                "storageGB": self.config.storage_gb,
                "network": None if network is None else {
                    "ip": network.ip,
                    "subnet": network.subnet,
                    "gateway": network.gateway,
                },
            },
            "lastAction": self.last_action,
            "lastError": self.last_error,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
