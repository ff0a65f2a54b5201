import logging
import threading
from typing import Dict, List, Optional, Tuple

from hostmgr.domain import VMConfig
from hostmgr.provisioning.exceptions import ProvisioningBackendError
from hostmgr.provisioning.interfaces import ProvisioningBackend

logger = logging.getLogger(__name__)


class InMemoryBackend(ProvisioningBackend):
    """
    외부 도구 없이 머신 상태를 메모리에 흉내 내는 백엔드입니다.

    테스트와 로컬 개발용이며, 다음 기능을 제공합니다.
    - calls: 호출된 (작업, 머신 이름) 기록
    - fail(): 특정 작업을 실패하도록 설정
    - hold(): 특정 작업이 release 이벤트를 받을 때까지 멈추도록 설정 (동시성/타임아웃 테스트용)
    """
    name = "memory"

    def __init__(self):
        self.machines: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[str, str] = {}
        self._gates: Dict[str, threading.Event] = {}
        self.entered: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def fail(self, operation: str, message: str = "injected failure") -> None:
        self._failures[operation] = message

    def recover(self, operation: Optional[str] = None) -> None:
        if operation is None:
            self._failures.clear()
        else:
            self._failures.pop(operation, None)

    def hold(self, operation: str) -> threading.Event:
        """작업을 멈춰 세우고, 재개에 쓸 이벤트를 반환합니다."""
        gate = threading.Event()
        self._gates[operation] = gate
        self.entered[operation] = threading.Event()
        return gate

    def create(self, name: str, box: str, config: Optional[VMConfig] = None) -> None:
        self._call("create", name)
        with self._lock:
            if name in self.machines:
                raise ProvisioningBackendError(f"Machine '{name}' already exists.", machine=name, operation="create")
            self.machines[name] = "stopped"

    def start(self, name: str) -> None:
        self._call("start", name)
        self._set_state(name, "start", "running")

    def halt(self, name: str) -> None:
        self._call("halt", name)
        self._set_state(name, "halt", "stopped")

    def suspend(self, name: str) -> None:
        self._call("suspend", name)
        self._set_state(name, "suspend", "suspended")

    def resume(self, name: str) -> None:
        self._call("resume", name)
        self._set_state(name, "resume", "running")

    def destroy(self, name: str) -> None:
        self._call("destroy", name)
        with self._lock:
            if self.machines.pop(name, None) is None:
                logger.debug("Machine '%s' already absent, nothing to destroy.", name)

    def _call(self, operation: str, name: str) -> None:
        with self._lock:
            self.calls.append((operation, name))
        gate = self._gates.get(operation)
        if gate is not None:
            self.entered[operation].set()
            gate.wait()
        message = self._failures.get(operation)
        if message is not None:
            logger.debug("Injected %s failure for machine '%s'.", operation, name)
            raise ProvisioningBackendError(message, machine=name, operation=operation)

    def _set_state(self, name: str, operation: str, state: str) -> None:
        with self._lock:
            if name not in self.machines:
                raise ProvisioningBackendError(f"Machine '{name}' not found.", machine=name, operation=operation)
            self.machines[name] = state
