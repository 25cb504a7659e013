import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from core.errors import AuditWriteFailedError

from .models import AuditRecord
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)
audit_log = logging.getLogger("audit")


class AuditLogWriter:
    """Appends immutable records of privileged mutations."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def write(
        self,
        actor_id: str,
        action: str,
        reason: str,
        before_state: dict,
        after_state: dict,
        target_id: Optional[str] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            id=uuid4(),
            actor_id=actor_id,
            action=action,
            target_id=target_id,
            before_state=before_state,
            after_state=after_state,
            reason=reason,
            created_at=datetime.now(timezone.utc),
        )
        try:
            with self.storage.transaction():
                self.storage.append_audit_record(record)
        except Exception as e:
            raise AuditWriteFailedError(
                f"Audit record for {action} by {actor_id} was not written: {e}",
                {"actor_id": actor_id, "action": action, "target_id": target_id},
            ) from e

        audit_log.info(f"{actor_id} performed '{action}' on {target_id or '-'}: {before_state} -> {after_state}")
        return record

    def list_records(self, actor_id: Optional[str] = None, target_id: Optional[str] = None) -> list[AuditRecord]:
        return [
            r for r in self.storage.audit_records
            if (actor_id is None or r.actor_id == actor_id)
            and (target_id is None or r.target_id == target_id)
        ]
