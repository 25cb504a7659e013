from fastapi import HTTPException, status

from .errors import ServiceError

STATUS_BY_CODE = {
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "insufficient_credits": status.HTTP_402_PAYMENT_REQUIRED,
    "not_found": status.HTTP_404_NOT_FOUND,
    "user_not_found": status.HTTP_404_NOT_FOUND,
    "request_not_found": status.HTTP_404_NOT_FOUND,
    "transaction_not_found": status.HTTP_404_NOT_FOUND,
    "permission_denied": status.HTTP_403_FORBIDDEN,
    "conflict": status.HTTP_409_CONFLICT,
    "idempotency_conflict": status.HTTP_409_CONFLICT,
    "dependency_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "timeout": status.HTTP_504_GATEWAY_TIMEOUT,
}


def to_http_exception(error: ServiceError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_CODE.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=error.to_dict(),
    )
