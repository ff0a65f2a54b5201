# hostmgr/services/exceptions.py

class LifecycleError(Exception):
    """VM 수명주기 관리에서 발생하는 모든 예외의 기반 클래스"""
    code = "lifecycle_error"


# --- Validation Exceptions ---
class ValidationError(LifecycleError):
    """호출자의 입력이 잘못되었을 때"""
    code = "validation_error"


# --- Not Found Exceptions ---
class NotFoundError(LifecycleError):
    """요청한 리소스를 찾을 수 없을 때"""
    code = "not_found"

class VmNotFoundError(NotFoundError):
    """VM을 찾을 수 없을 때"""
    pass

class SnapshotNotFoundError(NotFoundError):
    """스냅샷을 찾을 수 없거나 다른 VM의 스냅샷일 때"""
    pass


# --- Conflict Exceptions ---
class ConflictError(LifecycleError):
    """현재 상태와 충돌하는 요청일 때"""
    code = "conflict"

class IllegalTransitionError(ConflictError):
    """현재 상태에서 허용되지 않는 전이를 요청했을 때"""
    pass

class OperationInProgressError(ConflictError):
    """같은 VM에 대해 다른 작업이 이미 진행 중일 때"""
    pass

class VmAlreadyExistsError(ConflictError, ValidationError):
    """파기되지 않은 VM 중에 같은 이름이 이미 존재할 때"""
    code = "conflict"


# --- Backend Exceptions ---
class AdapterError(LifecycleError):
    """
    프로비저닝 백엔드 호출이 실패했거나 시간 초과되었을 때.

    원인 예외는 `cause`와 `__cause__`에 함께 보존됩니다.
    VM의 실제 상태는 알 수 없으므로 항상 재시도 가능한 오류로 취급합니다.
    """
    code = "adapter_error"
    retryable = True

    def __init__(self, message, vm_id=None, action=None, cause=None, timed_out=False):
        super().__init__(message)
        self.vm_id = vm_id
        self.action = action
        self.cause = cause
        self.timed_out = timed_out
