import logging
import os
import subprocess
import uuid
from typing import Optional

import libvirt

from hostmgr.domain import VMConfig
from hostmgr.provisioning.exceptions import ProvisioningBackendError
from hostmgr.provisioning.interfaces import ProvisioningBackend
from hostmgr.utils.vm_xml_generator import generate_vm_xml

logger = logging.getLogger(__name__)


class LibvirtBackend(ProvisioningBackend):
    """
    libvirt(KVM/QEMU)를 직접 호출하는 프로비저닝 백엔드입니다.

    box는 image_dir 안의 `<box>.qcow2` 기반 이미지를 가리키며, 머신마다
    이를 backing file로 하는 CoW 디스크를 만들어 도메인을 정의합니다.
    """
    name = "libvirt"

    def __init__(self, uri="qemu:///system", image_dir="/var/lib/libvirt/images", use_sudo=False):
        self.image_dir = image_dir
        self.use_sudo = use_sudo
        try:
            self.conn = libvirt.open(uri)
        except libvirt.libvirtError as e:
            raise ConnectionError(f"Failed to open connection to the hypervisor at {uri}: {e}") from e

    def create(self, name: str, box: str, config: Optional[VMConfig] = None) -> None:
        """
        CoW 디스크를 만들고 도메인을 정의합니다. 도메인은 시작하지 않고 정지 상태로 둡니다.
        실패 시 생성된 리소스를 정리하는 롤백 로직이 동작합니다.
        """
        source_filepath = os.path.join(self.image_dir, f"{box}.qcow2")
        if not os.path.exists(source_filepath):
            raise ProvisioningBackendError(
                f"Base image not found on disk: {source_filepath}", machine=name, operation="create"
            )

        disk_filepath = None
        domain = None
        try:
            disk_filepath = self.create_vm_disk(name, source_filepath)
            xml_config = generate_vm_xml(
                name,
                str(uuid.uuid4()),
                config.cpu if config else 1,
                config.memory_mb if config else 1024,
                disk_filepath,
            )
            domain = self.conn.defineXML(xml_config)
            if domain is None:
                raise ProvisioningBackendError(f"Failed to define domain '{name}'.", machine=name, operation="create")
        except (libvirt.libvirtError, ProvisioningBackendError) as e:
            logger.warning("Domain '%s' creation failed: %s. Starting rollback...", name, e)
            self._rollback_creation(domain, disk_filepath)
            if isinstance(e, ProvisioningBackendError):
                raise
            raise ProvisioningBackendError(
                f"Failed to create domain '{name}': {e}", machine=name, operation="create"
            ) from e

    def start(self, name: str) -> None:
        domain = self._lookup(name, "start")
        self._call(name, "start", domain.create)

    def halt(self, name: str) -> None:
        domain = self._lookup(name, "halt")
        if domain.isActive():
            self._call(name, "halt", domain.destroy)

    def suspend(self, name: str) -> None:
        domain = self._lookup(name, "suspend")
        self._call(name, "suspend", domain.suspend)

    def resume(self, name: str) -> None:
        domain = self._lookup(name, "resume")
        self._call(name, "resume", domain.resume)

    def destroy(self, name: str) -> None:
        """
        도메인을 정지, 정의 해제하고 디스크를 삭제합니다.
        도메인이나 디스크가 이미 없으면 (예: 생성 실패 후 롤백됨) 해당 단계는 건너뜁니다.
        """
        try:
            domain = self.conn.lookupByName(name)
        except libvirt.libvirtError as e:
            if e.get_error_code() != libvirt.VIR_ERR_NO_DOMAIN:
                raise ProvisioningBackendError(
                    f"Failed to look up domain '{name}': {e}", machine=name, operation="destroy"
                ) from e
            logger.info("Domain '%s' is not defined, skipping undefine.", name)
            domain = None

        if domain is not None:
            if domain.isActive():
                self._call(name, "destroy", domain.destroy)
            self._call(name, "destroy", domain.undefine)
        self.delete_vm_disk(os.path.join(self.image_dir, f"{name}.qcow2"))

    def create_vm_disk(self, vm_name: str, source_filepath: str) -> str:
        """
        qemu-img로 원본 이미지를 backing file로 하는 qcow2 디스크를 생성합니다.

        Returns:
            새로 생성된 VM 디스크의 전체 경로.
        """
        target_filepath = os.path.join(self.image_dir, f"{vm_name}.qcow2")
        command = [
            'qemu-img', 'create',
            '-f', 'qcow2',
            '-F', 'qcow2',
            '-b', source_filepath,
            target_filepath
        ]
        self._run_command(vm_name, "create", command)
        return target_filepath

    def delete_vm_disk(self, disk_filepath: str) -> None:
        if not os.path.exists(disk_filepath):
            logger.info("Disk file not found, skipping delete: %s", disk_filepath)
            return
        self._run_command(os.path.basename(disk_filepath), "destroy", ['rm', '-f', disk_filepath])
        logger.info("Disk file deleted: %s", disk_filepath)

    def close(self):
        if self.conn:
            try:
                self.conn.close()
            except libvirt.libvirtError as e:
                logger.debug("Ignoring error while closing libvirt connection: %s", e)
            self.conn = None

    def _rollback_creation(self, domain, disk_path):
        if domain:
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefine()
            except libvirt.libvirtError as e:
                logger.warning("Rollback Warning: Failed to clean up libvirt domain: %s", e)

        if disk_path and os.path.exists(disk_path):
            try:
                self.delete_vm_disk(disk_path)
            except ProvisioningBackendError as e:
                logger.warning("Rollback Warning: %s", e)

    def _lookup(self, name, operation):
        try:
            return self.conn.lookupByName(name)
        except libvirt.libvirtError as e:
            raise ProvisioningBackendError(
                f"Domain '{name}' not found: {e}", machine=name, operation=operation
            ) from e

    def _call(self, name, operation, func):
        try:
            if func() < 0:
                raise ProvisioningBackendError(
                    f"libvirt {operation} returned failure for '{name}'.", machine=name, operation=operation
                )
        except libvirt.libvirtError as e:
            raise ProvisioningBackendError(
                f"libvirt {operation} failed for '{name}': {e}", machine=name, operation=operation
            ) from e

    def _run_command(self, name, operation, command):
        if self.use_sudo:
            command = ['sudo', *command]
        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            raise ProvisioningBackendError(
                f"{command[0]} failed for '{name}': {e.stderr}", machine=name, operation=operation, stderr=e.stderr
            ) from e
        except FileNotFoundError as e:
            raise ProvisioningBackendError(
                f"{command[0]} command not found. Install qemu-utils.", machine=name, operation=operation
            ) from e
