"""
Audit Trail Recorder

Append-only history of every state-changing action on a case.
Feeds the in-app activity feed and the proof packet.

Rows are never updated or deleted: a before_flush listener rejects any
flush that would modify or remove an existing audit event.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4
import logging

from sqlalchemy import event, func
from sqlalchemy.orm import Session

from ...models.db_models import AuditEventDB, CaseDB, CaseStatus
from .errors import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# ACTION VOCABULARY
# =============================================================================

AUDIT_ACTIONS = frozenset({
    "case_created",
    "case_updated",
    "deduction_added",
    "deduction_updated",
    "deduction_deleted",
    "deduction_ai_improved",
    "document_generated",
    "checklist_item_added",
    "checklist_item_completed",
    "checklist_item_uncompleted",
    "checklist_item_deleted",
    "forwarding_address_updated",
    "attachment_added",
}) | frozenset(f"status_{status.value.lower()}" for status in CaseStatus)


def status_action(status: CaseStatus) -> str:
    """Action code recorded when a case enters a status."""
    return f"status_{status.value.lower()}"


# =============================================================================
# RECORDER
# =============================================================================

class AuditTrailRecorder:
    """
    Writes audit events inside the caller's transaction.

    The recorder never commits; the owning service commits the audit row
    together with the change it describes.
    """

    def __init__(self, db_session: Session, clock: Callable[[], datetime] = datetime.utcnow):
        """Initialize with database session and the clock that stamps events."""
        self.db = db_session
        self.clock = clock

    def record(
        self,
        case: CaseDB,
        action: str,
        description: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEventDB:
        """Append one audit event for a case."""
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")

        entry = AuditEventDB(
            id=str(uuid4()),
            case_id=case.id,
            action=action,
            description=description,
            actor_id=actor_id,
            event_metadata=metadata or {},
            sequence=self._next_sequence(case.id),
            timestamp=self.clock(),
        )
        self.db.add(entry)

        logger.info(f"Audit [{case.id}] {action}: {description}")
        return entry

    def events(self, case_id: str) -> List[AuditEventDB]:
        """All events for a case, oldest first."""
        return (
            self.db.query(AuditEventDB)
            .filter(AuditEventDB.case_id == case_id)
            .order_by(AuditEventDB.timestamp.asc(), AuditEventDB.sequence.asc())
            .all()
        )

    def _next_sequence(self, case_id: str) -> int:
        last = (
            self.db.query(func.max(AuditEventDB.sequence))
            .filter(AuditEventDB.case_id == case_id)
            .scalar()
        ) or 0
        # Events added in this transaction but not yet flushed
        pending = [
            obj.sequence for obj in self.db.new
            if isinstance(obj, AuditEventDB) and obj.case_id == case_id
        ]
        return max([last] + pending) + 1


def serialize_event(entry: AuditEventDB) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "description": entry.description,
        "actor_id": entry.actor_id,
        "metadata": entry.event_metadata or {},
        "sequence": entry.sequence,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }


# =============================================================================
# IMMUTABILITY GUARD
# =============================================================================

@event.listens_for(Session, "before_flush")
def _reject_audit_mutation(session, flush_context, instances):
    for obj in session.deleted:
        if isinstance(obj, AuditEventDB):
            raise ValidationError("Audit events cannot be deleted", details={"audit_event_id": obj.id})
    for obj in session.dirty:
        if isinstance(obj, AuditEventDB) and session.is_modified(obj, include_collections=False):
            raise ValidationError("Audit events cannot be modified", details={"audit_event_id": obj.id})
