import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from hostmgr.domain import VMConfig
from hostmgr.provisioning.exceptions import ProvisioningBackendError
from hostmgr.provisioning.interfaces import ProvisioningBackend
from hostmgr.utils.vagrantfile_generator import generate_vagrantfile

logger = logging.getLogger(__name__)


class VagrantBackend(ProvisioningBackend):
    """
    Vagrant CLI를 호출하는 프로비저닝 백엔드입니다.

    머신마다 `<machines_dir>/<name>/` 작업 디렉터리를 두고, 그 안의 Vagrantfile을 기준으로
    `vagrant up/halt/suspend/resume/destroy` 명령을 실행합니다.
    """
    name = "vagrant"

    def __init__(self, machines_dir, vagrant_bin: str = "vagrant", provider: str = "virtualbox",
                 command_timeout: Optional[float] = None):
        """
        VagrantBackend를 초기화합니다.

        Args:
            machines_dir: 머신별 작업 디렉터리가 만들어질 루트 경로.
            vagrant_bin: vagrant 실행 파일 경로.
            provider: Vagrantfile에 기록할 provider 이름.
            command_timeout: 명령 하나에 허용할 최대 시간(초). None이면 제한 없음.
        """
        self.machines_dir = Path(machines_dir)
        self.vagrant_bin = vagrant_bin
        self.provider = provider
        self.command_timeout = command_timeout

    def init(self) -> str:
        """
        vagrant 명령을 실행할 수 있는지 확인하고 버전 문자열을 반환합니다.

        Raises:
            ProvisioningBackendError: vagrant가 설치되어 있지 않거나 실행에 실패했을 때.
        """
        self.machines_dir.mkdir(parents=True, exist_ok=True)
        result = self._run(None, "--version", operation="init")
        return result.stdout.strip()

    def machine_dir(self, name: str) -> Path:
        return self.machines_dir / name

    def create(self, name: str, box: str, config: Optional[VMConfig] = None) -> None:
        """
        Vagrantfile을 생성하고 머신을 올린 뒤 정지 상태로 둡니다.
        도중에 실패하면 만들어진 머신과 작업 디렉터리를 정리하는 롤백이 동작합니다.
        """
        workdir = self.machine_dir(name)
        if (workdir / "Vagrantfile").exists():
            raise ProvisioningBackendError(
                f"Vagrant machine '{name}' already exists at {workdir}.", machine=name, operation="create"
            )

        vagrantfile = generate_vagrantfile(
            vm_name=name,
            box=box,
            cpu_count=config.cpu if config else 1,
            ram_mb=config.memory_mb if config else 1024,
            network=config.network if config else None,
            provider=self.provider,
        )
        workdir.mkdir(parents=True, exist_ok=True)
        (workdir / "Vagrantfile").write_text(vagrantfile)

        try:
            self._run(name, "up", "--provider", self.provider, operation="create")
            self._run(name, "halt", operation="create")
        except ProvisioningBackendError:
            logger.warning("Vagrant machine '%s' creation failed. Starting rollback...", name)
            self._rollback_creation(name)
            raise

    def start(self, name: str) -> None:
        self._require_machine(name, "start")
        self._run(name, "up", "--provider", self.provider, operation="start")

    def halt(self, name: str) -> None:
        self._require_machine(name, "halt")
        self._run(name, "halt", operation="halt")

    def suspend(self, name: str) -> None:
        self._require_machine(name, "suspend")
        self._run(name, "suspend", operation="suspend")

    def resume(self, name: str) -> None:
        self._require_machine(name, "resume")
        self._run(name, "resume", operation="resume")

    def destroy(self, name: str) -> None:
        workdir = self.machine_dir(name)
        if (workdir / "Vagrantfile").exists():
            self._run(name, "destroy", "-f", operation="destroy")
        else:
            # 생성 실패 시 롤백으로 이미 정리된 머신
            logger.info("Vagrant machine '%s' has no Vagrantfile, nothing to destroy.", name)
        shutil.rmtree(workdir, ignore_errors=True)

    def _rollback_creation(self, name):
        try:
            self._run(name, "destroy", "-f", operation="rollback")
        except ProvisioningBackendError as e:
            logger.warning("Rollback Warning: failed to destroy vagrant machine '%s': %s", name, e)
        shutil.rmtree(self.machine_dir(name), ignore_errors=True)

    def _require_machine(self, name, operation):
        if not (self.machine_dir(name) / "Vagrantfile").exists():
            raise ProvisioningBackendError(
                f"Vagrant machine '{name}' not found in {self.machines_dir}.", machine=name, operation=operation
            )

    def _run(self, name, *args, operation):
        command = [self.vagrant_bin, *args]
        cwd = str(self.machine_dir(name)) if name else str(self.machines_dir)
        logger.debug("Running %s (cwd=%s)", " ".join(command), cwd)
        try:
            return subprocess.run(
                command, cwd=cwd, check=True, capture_output=True, text=True, timeout=self.command_timeout
            )
        except subprocess.CalledProcessError as e:
            raise ProvisioningBackendError(
                f"'vagrant {' '.join(args)}' failed for '{name}': {e.stderr.strip() if e.stderr else e}",
                machine=name, operation=operation, stderr=e.stderr,
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ProvisioningBackendError(
                f"'vagrant {' '.join(args)}' timed out after {e.timeout}s for '{name}'.",
                machine=name, operation=operation,
            ) from e
        except FileNotFoundError as e:
            raise ProvisioningBackendError(
                f"vagrant command not found ({self.vagrant_bin}). Install Vagrant.",
                machine=name, operation=operation,
            ) from e
