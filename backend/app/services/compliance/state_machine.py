"""
Case Lifecycle State Machine

Deterministic state machine for a deposit compliance case.

ACTIVE -> PENDING_SEND -> SENT -> CLOSED, with CLOSED also reachable directly
from ACTIVE and PENDING_SEND. A case awaiting send may be reopened for edits.
Every transition writes exactly one audit event. Illegal transitions raise
InvalidTransitionError and leave the case untouched.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from ...models.db_models import CaseDB, CaseStatus
from .audit_trail import AuditTrailRecorder, status_action
from .deadline_engine import compute_refund, sum_deductions
from .errors import InvalidTransitionError, ValidationError
from .readiness_gate import evaluate_readiness
from .rule_snapshots import RuleSnapshotManager

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    CaseStatus.ACTIVE: {
        "description": "Case open; deductions and documents are being prepared",
        "allowed_transitions": [CaseStatus.PENDING_SEND, CaseStatus.CLOSED],
        "editable": True,
    },
    CaseStatus.PENDING_SEND: {
        "description": "Documents prepared, awaiting delivery to tenant",
        "allowed_transitions": [CaseStatus.SENT, CaseStatus.CLOSED, CaseStatus.ACTIVE],
        "editable": True,
    },
    CaseStatus.SENT: {
        "description": "Notice and itemized statement delivered to tenant",
        "allowed_transitions": [CaseStatus.CLOSED],
        "editable": True,
    },
    CaseStatus.CLOSED: {
        "description": "Case closed; no further edits",
        "allowed_transitions": [],  # Terminal state
        "editable": False,
    },
}


# =============================================================================
# STATE MACHINE
# =============================================================================

class CaseStateMachine:
    """
    Validates and applies case status transitions.

    Guards are evaluated against persisted case data, never against a
    readiness result supplied by the client.
    """

    def __init__(
        self,
        db_session: Session,
        audit: Optional[AuditTrailRecorder] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.clock = clock
        self.audit = audit or AuditTrailRecorder(db_session, clock)

    def get_state_config(self, state: CaseStatus) -> Dict[str, Any]:
        """Get configuration for a state."""
        return STATE_CONFIG.get(state, {})

    def can_transition(self, from_state: CaseStatus, to_state: CaseStatus) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        allowed_transitions = self.get_state_config(from_state).get("allowed_transitions", [])
        if to_state in allowed_transitions:
            return True, "Transition allowed"
        return False, f"Cannot transition from {from_state.value} to {to_state.value}"

    def get_next_states(self, state: CaseStatus) -> List[CaseStatus]:
        return list(self.get_state_config(state).get("allowed_transitions", []))

    def is_terminal_state(self, state: CaseStatus) -> bool:
        return len(self.get_next_states(state)) == 0

    def is_editable(self, state: CaseStatus) -> bool:
        return bool(self.get_state_config(state).get("editable", False))

    # =========================================================================
    # TRANSITION
    # =========================================================================

    def transition(
        self,
        case: CaseDB,
        to_state: CaseStatus,
        actor_id: Optional[str] = None,
        *,
        delivery_method: Optional[str] = None,
        tracking_number: Optional[str] = None,
        sent_at: Optional[datetime] = None,
        delivery_address: Optional[str] = None,
        proof_attachment_ids: Optional[List[str]] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Execute a status transition.

        Validates the edge and its guard first, then mutates the case and
        appends the audit event. The caller commits.

        Returns {"previous_status", "status", "warnings"}.
        """
        from_state = case.status

        allowed, message = self.can_transition(from_state, to_state)
        if not allowed:
            logger.warning(f"Rejected transition for case {case.id}: {message}")
            raise InvalidTransitionError(
                message,
                details={"from": from_state.value, "to": to_state.value,
                         "allowed": [s.value for s in self.get_next_states(from_state)]},
            )

        warnings: List[str] = []
        metadata: Dict[str, Any] = {"previous_status": from_state.value, "new_status": to_state.value}

        if to_state == CaseStatus.PENDING_SEND:
            report = self.readiness(case, for_send=False)
            warnings = [c.label for c in report.blockers + report.warnings]
            metadata["readiness_score"] = report.score

        elif to_state == CaseStatus.SENT:
            self._guard_send(case, delivery_method, proof_attachment_ids)

        elif to_state == CaseStatus.CLOSED:
            if not reason or not reason.strip():
                raise ValidationError("A reason is required to close a case", details={"field": "reason"})

        # Guards passed - apply side effects
        now = self.clock()
        if to_state == CaseStatus.SENT:
            case.delivery_method = delivery_method
            case.tracking_number = tracking_number
            case.sent_at = sent_at or now
            case.delivery_address = delivery_address
            case.proof_attachment_ids = list(proof_attachment_ids or [])
            for item in case.checklist_items:
                if item.completes_on_send and not item.completed:
                    item.completed = True
                    item.completed_at = now
            metadata.update({
                "delivery_method": delivery_method,
                "tracking_number": tracking_number,
                "sent_at": case.sent_at.isoformat(),
            })
        elif to_state == CaseStatus.CLOSED:
            case.closed_at = now
            case.closed_reason = reason.strip()
            metadata["reason"] = case.closed_reason

        case.status = to_state
        case.updated_at = now

        self.audit.record(
            case,
            status_action(to_state),
            f"Status changed from {from_state.value} to {to_state.value}",
            actor_id=actor_id,
            metadata=metadata,
        )

        logger.info(f"Case {case.id} transitioned {from_state.value} -> {to_state.value}")
        return {"previous_status": from_state.value, "status": to_state.value, "warnings": warnings}

    # =========================================================================
    # GUARDS
    # =========================================================================

    def readiness(self, case: CaseDB, for_send: bool):
        """Readiness of the case as persisted, including the totals check."""
        total = sum_deductions(d.amount for d in case.deductions)
        return evaluate_readiness(
            case.checklist_items,
            [d.document_type for d in case.documents],
            case.deductions,
            for_send=for_send,
            refund_amount=compute_refund(case.deposit_amount, case.deposit_interest, total),
        )

    def _guard_send(self, case: CaseDB, delivery_method: Optional[str], proof_attachment_ids: Optional[List[str]]):
        snapshot = RuleSnapshotManager.snapshot(case.rule_set)

        if not delivery_method:
            raise ValidationError("Delivery method is required", details={"field": "delivery_method"})
        if not snapshot.allows_delivery_method(delivery_method):
            raise ValidationError(
                f"Delivery method '{delivery_method}' is not allowed in this jurisdiction",
                details={"allowed": list(snapshot.allowed_delivery_methods)},
            )

        known = {a.id for a in case.attachments}
        unknown = [a for a in (proof_attachment_ids or []) if a not in known]
        if unknown:
            raise ValidationError("Proof attachments not found on this case", details={"attachment_ids": unknown})

        report = self.readiness(case, for_send=True)
        if not report.ready:
            raise ValidationError(
                "Cannot send - required items are incomplete",
                details={"blockers": [c.label for c in report.blockers]},
            )
