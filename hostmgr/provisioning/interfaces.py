from abc import ABC, abstractmethod
from typing import Optional

from hostmgr.domain import VMConfig
from hostmgr.provisioning.exceptions import ProvisioningBackendError

class ProvisioningBackend(ABC):
    """
    외부 프로비저닝 도구(Vagrant, libvirt 등)에 대한 좁은 경계입니다.

    모든 작업은 성공하면 None을 반환하고, 실패하면 ProvisioningBackendError를 발생시킵니다.
    실제 백엔드 호출을 시도하지 않고 성공을 반환하거나, 오류를 삼켜서는 안 됩니다.
    """
    name = "abstract"

    @abstractmethod
    def create(self, name: str, box: str, config: Optional[VMConfig] = None) -> None:
        """box(이미지)로 새 머신을 만들고 정지 상태로 둡니다."""
        pass

    @abstractmethod
    def start(self, name: str) -> None:
        """머신을 부팅합니다."""
        pass

    @abstractmethod
    def halt(self, name: str) -> None:
        """머신을 정지합니다."""
        pass

    @abstractmethod
    def destroy(self, name: str) -> None:
        """머신과 관련 리소스를 제거합니다. 머신이 이미 없으면 성공으로 간주합니다."""
        pass

    def suspend(self, name: str) -> None:
        """머신의 실행 상태를 저장하고 일시 중지합니다. 지원하지 않는 백엔드는 실패합니다."""
        raise ProvisioningBackendError(
            f"Backend '{self.name}' does not support suspend.", machine=name, operation="suspend"
        )

    def resume(self, name: str) -> None:
        """일시 중지된 머신을 재개합니다. 지원하지 않는 백엔드는 실패합니다."""
        raise ProvisioningBackendError(
            f"Backend '{self.name}' does not support resume.", machine=name, operation="resume"
        )
