# hostmgr/provisioning/exceptions.py

class ProvisioningBackendError(Exception):
    """
    프로비저닝 백엔드(Vagrant, libvirt 등)의 작업이 실패했을 때.

    백엔드 구현체만 이 예외를 발생시키며, 수명주기 서비스는 이를 AdapterError로 감싸서 전달합니다.
    """

    def __init__(self, message, machine=None, operation=None, stderr=None):
        super().__init__(message)
        self.machine = machine
        self.operation = operation
        self.stderr = stderr
