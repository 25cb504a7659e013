import math
from typing import Any, Union
from uuid import UUID

from .errors import ValidationError


def parse_id(value: Union[str, UUID], field: str = "id") -> UUID:
    """Parse an opaque UUID-shaped identifier, rejecting anything else."""
    if isinstance(value, UUID):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty identifier", {"field": field})
    try:
        return UUID(value.strip())
    except ValueError:
        raise ValidationError(f"{field} is not a valid identifier: {value!r}", {"field": field})


def validate_credit_amount(amount: Any, max_amount: int, field: str = "amount") -> int:
    # bool is an int subclass; True must not pass as one credit
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError(f"{field} must be a whole number of credits", {"field": field})
    if isinstance(amount, float):
        if not math.isfinite(amount) or not amount.is_integer():
            raise ValidationError(f"{field} must be a finite whole number", {"field": field})
        amount = int(amount)
    if amount <= 0:
        raise ValidationError(f"{field} must be positive", {"field": field, "value": amount})
    if amount > max_amount:
        raise ValidationError(
            f"{field} exceeds the single-operation limit of {max_amount} credits",
            {"field": field, "value": amount, "limit": max_amount},
        )
    return amount


def validate_idempotency_key(key: Any) -> str:
    if not isinstance(key, str) or not key.strip():
        raise ValidationError("idempotency_key must be a non-empty string", {"field": "idempotency_key"})
    key = key.strip()
    if len(key) > 255:
        raise ValidationError("idempotency_key is too long", {"field": "idempotency_key"})
    return key


def validate_reason(reason: Any, min_length: int) -> str:
    if not isinstance(reason, str) or len(reason.strip()) < min_length:
        raise ValidationError(
            f"A justification of at least {min_length} characters is required",
            {"field": "reason", "min_length": min_length},
        )
    return reason.strip()
