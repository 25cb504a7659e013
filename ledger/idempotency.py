import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional

from core.errors import IdempotencyConflictError

from .models import IdempotencyRecord
from .storage import InMemoryStorage


def fingerprint(operation: str, params: dict[str, Any]) -> str:
    payload = json.dumps({"operation": operation, "params": params}, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


class IdempotencyGuard:
    """
    Applies a logical operation at most once per operation id.

    ``check`` and ``remember`` must run inside the same store transaction
    as the mutation they protect, so a concurrent duplicate either sees the
    record or waits for the first unit to finish.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def check(self, operation_id: str, operation: str, params: dict[str, Any]) -> Optional[dict[str, Any]]:
        record = self.storage.get_idempotency_record(operation_id)
        if record is None:
            return None
        if record.operation != operation or record.fingerprint != fingerprint(operation, params):
            raise IdempotencyConflictError(
                f"Idempotency key {operation_id!r} was already used for a different operation",
                {"idempotency_key": operation_id, "original_operation": record.operation},
            )
        return record.result_snapshot

    def remember(self, operation_id: str, operation: str, params: dict[str, Any], result: dict[str, Any]) -> None:
        self.storage.insert_idempotency_record(IdempotencyRecord(
            operation_id=operation_id,
            operation=operation,
            fingerprint=fingerprint(operation, params),
            result_snapshot=result,
            created_at=datetime.now(timezone.utc),
        ))
