"""Error kinds shared by the ledger, strategy engine and expiry processor."""

from typing import Optional


class AppError(Exception):
    code = "app_error"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class ValidationError(AppError, ValueError):
    code = "validation_error"


class NotFoundError(AppError, LookupError):
    code = "not_found"


class EvaluationError(AppError):
    """Malformed condition, unknown function or arity mismatch."""
    code = "evaluation_error"


class StateError(AppError):
    """Operation on a lot or record in the wrong state (e.g. double expire)."""
    code = "invalid_state"


class SyncError(AppError):
    """Quota store unreachable, rejected the update, or diverged on read-back."""
    code = "sync_failed"
    retryable = True


class PersistenceError(AppError):
    """Durable store write failed; the enclosing unit was rolled back."""
    code = "persistence_failed"
    retryable = True


def error_code(exc: BaseException) -> str:
    return getattr(exc, "code", None) or "internal_error"
