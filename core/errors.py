"""
Error taxonomy shared by the ledger, router and reconciliation engine.

Every error carries a stable ``code`` so the HTTP adapter and callers can
branch on the failure mode without parsing messages. A replayed
idempotent operation is not an error; it is reported on the result.
"""

from typing import Any, Optional


class ServiceError(Exception):
    code = "service_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(ServiceError):
    code = "validation_error"


class InsufficientCreditsError(ServiceError):
    code = "insufficient_credits"

    def __init__(self, user_id: str, current_balance: int, requested: int):
        super().__init__(
            f"Insufficient credits: balance is {current_balance}, {requested} required",
            {"user_id": user_id, "current_balance": current_balance, "requested": requested},
        )
        self.current_balance = current_balance
        self.requested = requested


class NotFoundError(ServiceError):
    code = "not_found"


class UserNotFoundError(NotFoundError):
    code = "user_not_found"


class RequestNotFoundError(NotFoundError):
    code = "request_not_found"


class TransactionNotFoundError(NotFoundError):
    code = "transaction_not_found"


class PermissionDeniedError(ServiceError):
    code = "permission_denied"


class ConflictError(ServiceError):
    code = "conflict"


class IdempotencyConflictError(ConflictError):
    code = "idempotency_conflict"


class DependencyUnavailableError(ServiceError):
    code = "dependency_unavailable"


class OperationTimeoutError(DependencyUnavailableError):
    code = "timeout"


class AuditWriteFailedError(ServiceError):
    code = "audit_write_failed"
