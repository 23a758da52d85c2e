"""
Tests for the case lifecycle state machine.

ACTIVE -> PENDING_SEND -> SENT -> CLOSED, CLOSED reachable from every
non-terminal state, PENDING_SEND may reopen to ACTIVE.
"""
import pytest
from datetime import datetime

from app.models.db_models import CaseDB, CaseStatus, DocumentType
from app.services.compliance import (
    AuditTrailRecorder,
    CaseStateMachine,
    InvalidTransitionError,
    ValidationError,
)

from conftest import FIXED_NOW


def generate_required_documents(service, case_id):
    service.generate_document(case_id, DocumentType.NOTICE_LETTER)
    service.generate_document(case_id, DocumentType.ITEMIZED_STATEMENT)


def status_events(db, case_id):
    return [e for e in AuditTrailRecorder(db).events(case_id) if e.action.startswith("status_")]


# =============================================================================
# TRANSITION TABLE
# =============================================================================

class TestTransitionTable:

    @pytest.mark.parametrize("from_state,to_state,allowed", [
        (CaseStatus.ACTIVE, CaseStatus.PENDING_SEND, True),
        (CaseStatus.ACTIVE, CaseStatus.CLOSED, True),
        (CaseStatus.ACTIVE, CaseStatus.SENT, False),
        (CaseStatus.PENDING_SEND, CaseStatus.SENT, True),
        (CaseStatus.PENDING_SEND, CaseStatus.ACTIVE, True),
        (CaseStatus.PENDING_SEND, CaseStatus.CLOSED, True),
        (CaseStatus.SENT, CaseStatus.CLOSED, True),
        (CaseStatus.SENT, CaseStatus.ACTIVE, False),
        (CaseStatus.SENT, CaseStatus.PENDING_SEND, False),
        (CaseStatus.CLOSED, CaseStatus.ACTIVE, False),
    ])
    def test_can_transition(self, db, from_state, to_state, allowed):
        ok, _ = CaseStateMachine(db).can_transition(from_state, to_state)
        assert ok is allowed

    def test_closed_is_terminal_and_frozen(self, db):
        machine = CaseStateMachine(db)
        assert machine.is_terminal_state(CaseStatus.CLOSED)
        assert not machine.is_editable(CaseStatus.CLOSED)
        assert machine.is_editable(CaseStatus.SENT)

    def test_closed_reachable_from_every_open_state(self, db):
        machine = CaseStateMachine(db)
        for state in (CaseStatus.ACTIVE, CaseStatus.PENDING_SEND, CaseStatus.SENT):
            assert CaseStatus.CLOSED in machine.get_next_states(state)


# =============================================================================
# ILLEGAL TRANSITIONS
# =============================================================================

class TestIllegalTransitions:

    def test_active_cannot_skip_to_sent(self, db, service, sf_case):
        with pytest.raises(InvalidTransitionError) as exc:
            service.transition_status(sf_case["id"], CaseStatus.SENT, {"delivery_method": "mail"})

        assert exc.value.details["allowed"] == ["PENDING_SEND", "CLOSED"]
        assert service.get_case(sf_case["id"])["status"] == "ACTIVE"
        assert status_events(db, sf_case["id"]) == []

    def test_sent_cannot_return_to_active(self, db, service, sf_case):
        generate_required_documents(service, sf_case["id"])
        service.transition_status(sf_case["id"], CaseStatus.PENDING_SEND)
        service.transition_status(sf_case["id"], CaseStatus.SENT, {"delivery_method": "mail"})

        with pytest.raises(InvalidTransitionError):
            service.transition_status(sf_case["id"], CaseStatus.ACTIVE)
        assert service.get_case(sf_case["id"])["status"] == "SENT"

    def test_closed_cannot_reopen(self, service, sf_case):
        service.transition_status(sf_case["id"], CaseStatus.CLOSED, {"reason": "Tenant signed release"})
        with pytest.raises(InvalidTransitionError):
            service.transition_status(sf_case["id"], CaseStatus.ACTIVE)


# =============================================================================
# GUARDS
# =============================================================================

class TestSendGuard:

    @pytest.fixture
    def pending(self, service, sf_case):
        service.transition_status(sf_case["id"], CaseStatus.PENDING_SEND)
        return sf_case["id"]

    def test_requires_delivery_method(self, service, pending):
        generate_required_documents(service, pending)
        with pytest.raises(ValidationError):
            service.transition_status(pending, CaseStatus.SENT, {})

    def test_rejects_method_not_allowed_in_jurisdiction(self, service, pending):
        generate_required_documents(service, pending)
        with pytest.raises(ValidationError) as exc:
            service.transition_status(pending, CaseStatus.SENT, {"delivery_method": "certified_mail"})
        assert exc.value.details["allowed"] == ["mail", "hand_delivery", "email"]

    def test_blocked_without_documents(self, service, pending):
        with pytest.raises(ValidationError) as exc:
            service.transition_status(pending, CaseStatus.SENT, {"delivery_method": "mail"})

        assert set(exc.value.details["blockers"]) == {
            "Notice letter generated", "Itemized statement generated",
        }
        assert service.get_case(pending)["status"] == "PENDING_SEND"

    def test_blocked_by_incomplete_required_item(self, service, pending):
        generate_required_documents(service, pending)
        service.add_checklist_item(pending, "Confirm final walkthrough", blocks_export=True)

        with pytest.raises(ValidationError) as exc:
            service.transition_status(pending, CaseStatus.SENT, {"delivery_method": "mail"})
        assert exc.value.details["blockers"] == ["Confirm final walkthrough"]

    def test_rejects_unknown_proof_attachment(self, service, pending):
        generate_required_documents(service, pending)
        with pytest.raises(ValidationError):
            service.transition_status(
                pending, CaseStatus.SENT,
                {"delivery_method": "mail", "proof_attachment_ids": ["not-on-this-case"]},
            )

    def test_send_records_delivery_and_completes_send_items(self, service, pending):
        generate_required_documents(service, pending)
        receipt = service.add_attachment(pending, "receipt.pdf", "uploads/receipt.pdf")["attachments"][0]

        result = service.transition_status(
            pending, CaseStatus.SENT,
            {"delivery_method": "mail", "tracking_number": "9400 1000 0000 0000 0000 00",
             "delivery_address": "55 Elm St, Oakland, CA", "proof_attachment_ids": [receipt["id"]]},
        )

        assert result["status"] == "SENT"
        assert result["delivery_method"] == "mail"
        assert result["tracking_number"].startswith("9400")
        assert result["proof_attachment_ids"] == [receipt["id"]]
        assert result["sent_at"] == FIXED_NOW.isoformat()
        assert result["updated_at"] == FIXED_NOW.isoformat()
        completed = {i["label"] for i in result["checklist"] if i["completed"]}
        assert {"Send to tenant(s)", "Record proof of delivery"} <= completed


class TestCloseGuard:

    def test_requires_reason(self, service, sf_case):
        with pytest.raises(ValidationError):
            service.transition_status(sf_case["id"], CaseStatus.CLOSED, {"reason": "  "})

    @pytest.mark.parametrize("path", [
        [],
        [CaseStatus.PENDING_SEND],
        [CaseStatus.PENDING_SEND, CaseStatus.SENT],
    ])
    def test_closed_from_each_state(self, service, sf_case, path):
        generate_required_documents(service, sf_case["id"])
        for state in path:
            service.transition_status(sf_case["id"], state, {"delivery_method": "mail"})

        result = service.transition_status(sf_case["id"], CaseStatus.CLOSED, {"reason": "Deposit settled"})
        assert result["status"] == "CLOSED"
        assert result["closed_reason"] == "Deposit settled"
        assert result["closed_at"] == FIXED_NOW.isoformat()
        assert result["allowed_transitions"] == []


# =============================================================================
# AUDIT
# =============================================================================

class TestTransitionAudit:

    def test_one_event_per_transition(self, db, service, sf_case, user):
        case_id = sf_case["id"]
        generate_required_documents(service, case_id)

        service.transition_status(case_id, CaseStatus.PENDING_SEND, actor_id=user.id)
        service.transition_status(case_id, CaseStatus.ACTIVE, actor_id=user.id)
        service.transition_status(case_id, CaseStatus.PENDING_SEND, actor_id=user.id)
        service.transition_status(case_id, CaseStatus.SENT, {"delivery_method": "email"}, actor_id=user.id)
        service.transition_status(case_id, CaseStatus.CLOSED, {"reason": "Refund cashed"}, actor_id=user.id)

        events = status_events(db, case_id)
        assert [e.action for e in events] == [
            "status_pending_send", "status_active", "status_pending_send", "status_sent", "status_closed",
        ]
        assert events[3].event_metadata["previous_status"] == "PENDING_SEND"
        assert events[3].event_metadata["new_status"] == "SENT"
        assert all(e.actor_id == user.id for e in events)
        assert all(e.timestamp == FIXED_NOW for e in events)

    def test_pending_send_returns_readiness_warnings(self, db, service, sf_case):
        result = service.transition_status(sf_case["id"], CaseStatus.PENDING_SEND)
        assert "Notice letter generated" in result["warnings"]

        case = db.get(CaseDB, sf_case["id"])
        event = status_events(db, case.id)[0]
        assert event.event_metadata["readiness_score"] < 100


class TestClock:

    def test_machine_stamps_with_injected_clock(self, db, sf_case):
        later = datetime(2026, 2, 1, 12, 0, 0)
        case = db.get(CaseDB, sf_case["id"])

        CaseStateMachine(db, clock=lambda: later).transition(case, CaseStatus.CLOSED, reason="Tenant settled")
        db.commit()

        assert case.closed_at == later
        assert case.updated_at == later
        assert status_events(db, case.id)[-1].timestamp == later
