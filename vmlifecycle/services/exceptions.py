# vmlifecycle/services/exceptions.py


class OrchestratorError(Exception):
    """오케스트레이터가 발생시키는 모든 예외의 기반 클래스"""
    retry_safe = False


# --- Not Found Exceptions ---
class NotFoundError(OrchestratorError):
    """요청한 대상을 찾을 수 없을 때"""
    pass

class VmNotFoundError(NotFoundError):
    """VM을 찾을 수 없을 때"""
    pass

class OrderNotFoundError(NotFoundError):
    """주문을 찾을 수 없을 때"""
    pass

class ImageNotFoundError(NotFoundError):
    """이미지를 찾을 수 없을 때"""
    pass


# --- Conflict Exceptions ---
class ConflictError(OrchestratorError):
    """현재 상태와 요청이 충돌할 때"""
    pass

class VmAlreadyExistsError(ConflictError):
    """주문에 이미 VM이 존재할 때"""
    pass

class VmNameConflictError(ConflictError):
    """다른 VM이 같은 이름을 이미 사용하고 있을 때"""
    pass

class OrderNotPaidError(ConflictError):
    """결제가 완료되지 않은 주문으로 프로비저닝을 시도할 때"""
    pass

class InvalidTransitionError(ConflictError):
    """현재 상태에서 허용되지 않는 전이를 요청했을 때"""

    def __init__(self, vm_id, action, status):
        self.vm_id = vm_id
        self.action = action
        self.status = status
        super().__init__(f"Action '{_value(action)}' is not allowed for VM {vm_id} in status '{_value(status)}'.")


# --- Forbidden Exceptions ---
class ForbiddenError(OrchestratorError):
    """권한이 없거나 정책상 허용되지 않을 때"""
    pass

class VmExpiredError(ForbiddenError):
    """만료된 VM에 전원/재구축 작업을 요청했을 때"""
    pass


# --- Auth Exceptions ---
class AuthenticationError(OrchestratorError):
    """요청 주체(X-User-Id)를 확인할 수 없을 때"""
    pass


# --- Validation Exceptions ---
class SpecificationError(OrchestratorError, ValueError):
    """VM 사양이 자원 한계나 운영체제 목록을 벗어날 때"""
    pass

class DiskOperationError(OrchestratorError):
    """qemu-img 디스크 생성/삭제 실패 시"""
    pass


# --- Gateway Exceptions ---
class GatewayError(OrchestratorError):
    """하이퍼바이저 게이트웨이 오류"""
    pass

class GatewayTransientError(GatewayError):
    """타임아웃 또는 연결 끊김. 재시도해도 안전합니다."""
    retry_safe = True

class GatewayRejectedError(GatewayError):
    """하이퍼바이저가 요청을 거부했을 때"""
    pass

class RemoteObjectNotFoundError(GatewayRejectedError):
    """하이퍼바이저 측 객체가 존재하지 않을 때"""
    pass


# --- Transition Failure Exceptions ---
class VmOperationError(OrchestratorError):
    """
    게이트웨이 오류를 VM id와 작업 정보로 감싼 예외.
    cause에는 원인이 된 게이트웨이 예외가 담깁니다.
    """

    def __init__(self, vm_id, action, vm_status, cause=None, message=None):
        self.vm_id = vm_id
        self.action = action
        self.vm_status = vm_status
        self.cause = cause
        if message is None:
            message = f"Action '{_value(action)}' on VM {vm_id} failed: {cause}"
        super().__init__(message)

    def to_dict(self):
        return {
            "error": type(self).__name__,
            "message": str(self),
            "vm_id": self.vm_id,
            "action": _value(self.action),
            "vm_status": _value(self.vm_status),
            "retry_safe": self.retry_safe,
            "cause": type(self.cause).__name__ if self.cause is not None else None,
        }

class TransitionAbortedError(VmOperationError):
    """작업이 실패했지만 VM 상태는 바뀌지 않았을 때. 재시도해도 안전합니다."""
    retry_safe = True

class VmErrorStateError(VmOperationError):
    """작업 실패로 VM이 error 상태가 되었을 때. 운영자 확인이 필요합니다."""
    retry_safe = False


def _value(enum_or_str):
    return getattr(enum_or_str, "value", enum_or_str)
