"""
Tests for document generation.

Storage is written before the document row; a failed write leaves no row, no
audit event and no version bump, and a retry of the same version is safe.
"""
import json
from unittest.mock import MagicMock

import pytest

from app.models.db_models import AuditEventDB, DocumentDB, DocumentType
from app.services.compliance import (
    CaseService,
    DocumentRenderer,
    PlainTextRenderer,
    UpstreamFailureError,
    ValidationError,
)

from conftest import FIXED_NOW, MemoryStorage


class ExplodingRenderer(DocumentRenderer):
    def render(self, snapshot, document_type):
        raise RuntimeError("template missing")


def document_rows(db, case_id):
    return db.query(DocumentDB).filter(DocumentDB.case_id == case_id).all()


# =============================================================================
# GENERATION
# =============================================================================

class TestGenerate:

    def test_storage_first_with_deterministic_path(self, db, service, sf_case, storage, user):
        document = service.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER, actor_id=user.id)

        expected_path = f"cases/{sf_case['id']}/notice_letter/notice_letter_v1.txt"
        assert document["version"] == 1
        assert document["storage_path"] == expected_path
        assert document["url"] == f"memory://{expected_path}"
        assert expected_path in storage.objects
        assert len(document["content_hash"]) == 64
        assert document["generated_at"] == FIXED_NOW.isoformat()

        row = document_rows(db, sf_case["id"])[0]
        assert row.generated_by == user.id

    def test_next_version(self, service, sf_case):
        service.generate_document(sf_case["id"], DocumentType.ITEMIZED_STATEMENT)
        second = service.generate_document(sf_case["id"], DocumentType.ITEMIZED_STATEMENT)
        assert second["version"] == 2
        assert second["file_name"] == "itemized_statement_v2.txt"

    def test_records_audit_event_and_bumps_version(self, service, sf_case):
        service.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER)

        case = service.get_case(sf_case["id"])
        assert case["version"] == sf_case["version"] + 1
        event = service.audit_events(sf_case["id"])[-1]
        assert event["action"] == "document_generated"
        assert event["metadata"]["version"] == 1
        assert event["timestamp"] == FIXED_NOW.isoformat()
        assert case["updated_at"] == FIXED_NOW.isoformat()

    def test_ticks_matching_checklist_item(self, service, sf_case):
        service.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER)
        checklist = {i["label"]: i["completed"] for i in service.get_case(sf_case["id"])["checklist"]}
        assert checklist["Generate notice letter"] is True
        assert checklist["Generate itemized statement"] is False

    def test_rule_snapshot_is_json(self, service, sf_case, storage):
        document = service.generate_document(sf_case["id"], DocumentType.RULE_SNAPSHOT)
        assert document["file_name"] == "rule_snapshot_v1.json"

        rules = json.loads(storage.objects[document["storage_path"]])
        assert rules["version"] == "2025.1"
        assert rules["return_deadline_days"] == 21

    def test_proof_packet_includes_activity(self, service, sf_case, storage):
        document = service.generate_document(sf_case["id"], DocumentType.PROOF_PACKET)
        text = storage.objects[document["storage_path"]].decode("utf-8")
        assert "case_created" in text
        assert "Return deadline: 2026-01-22" in text

    def test_version_cannot_skip_ahead(self, service, sf_case):
        with pytest.raises(ValidationError):
            service.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER, version=3)


# =============================================================================
# IDEMPOTENCY
# =============================================================================

class TestIdempotency:

    def test_repeated_version_returns_same_document(self, db, service, sf_case, storage):
        first = service.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER, version=1)
        again = service.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER, version=1)

        assert again["id"] == first["id"]
        assert storage.writes == 1
        assert len(document_rows(db, sf_case["id"])) == 1

    def test_failed_write_leaves_no_trace(self, db, sf_case, user):
        broken = MemoryStorage(fail=True)
        failing = CaseService(db, storage=broken, clock=lambda: FIXED_NOW)
        audit_before = db.query(AuditEventDB).filter(AuditEventDB.case_id == sf_case["id"]).count()

        with pytest.raises(UpstreamFailureError):
            failing.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER, version=1, actor_id=user.id)

        assert broken.writes == 1
        assert document_rows(db, sf_case["id"]) == []
        assert db.query(AuditEventDB).filter(AuditEventDB.case_id == sf_case["id"]).count() == audit_before
        assert failing.get_case(sf_case["id"])["version"] == sf_case["version"]

    def test_retry_after_failure(self, db, sf_case, storage):
        broken = MemoryStorage(fail=True)
        with pytest.raises(UpstreamFailureError):
            CaseService(db, storage=broken, clock=lambda: FIXED_NOW).generate_document(
                sf_case["id"], DocumentType.NOTICE_LETTER, version=1,
            )

        healthy = CaseService(db, storage=storage, clock=lambda: FIXED_NOW)
        document = healthy.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER, version=1)
        retried = healthy.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER, version=1)

        assert document["version"] == 1
        assert retried["id"] == document["id"]
        assert len(document_rows(db, sf_case["id"])) == 1

    def test_renderer_failure(self, db, sf_case, storage):
        service = CaseService(db, renderer=ExplodingRenderer(), storage=storage, clock=lambda: FIXED_NOW)
        with pytest.raises(UpstreamFailureError):
            service.generate_document(sf_case["id"], DocumentType.ITEMIZED_STATEMENT)
        assert storage.writes == 0
        assert document_rows(db, sf_case["id"]) == []


# =============================================================================
# RENDERER
# =============================================================================

class TestPlainTextRenderer:

    @pytest.fixture
    def snapshot(self, service, sf_case):
        service.add_deduction(
            sf_case["id"],
            {"description": "Carpet cleaning in both bedrooms", "category": "CLEANING",
             "amount": "150", "notes": "Invoice #4471"},
        )
        return service.get_case(sf_case["id"])

    def test_notice_letter(self, snapshot):
        text = PlainTextRenderer().render(snapshot, DocumentType.NOTICE_LETTER).decode("utf-8")
        assert "To: Jordan Rivera" in text
        assert "Amount returned to you: $3210.00" in text
        assert "Cal. Civ. Code § 1950.5; SF Admin. Code Ch. 49" in text

    def test_itemized_statement(self, snapshot):
        text = PlainTextRenderer().render(snapshot, DocumentType.ITEMIZED_STATEMENT).decode("utf-8")
        assert "1. Carpet cleaning in both bedrooms (CLEANING) $150.00" in text
        assert "Notes: Invoice #4471" in text
        assert "Refund due: $3210.00" in text

    def test_deterministic(self, snapshot):
        renderer = PlainTextRenderer()
        assert (renderer.render(snapshot, DocumentType.NOTICE_LETTER)
                == renderer.render(snapshot, DocumentType.NOTICE_LETTER))

    def test_renderer_receives_case_snapshot(self, db, sf_case, storage):
        renderer = MagicMock(spec=DocumentRenderer)
        renderer.render.return_value = b"rendered"
        renderer.file_name.return_value = "notice_letter_v1.txt"

        service = CaseService(db, renderer=renderer, storage=storage, clock=lambda: FIXED_NOW)
        service.generate_document(sf_case["id"], DocumentType.NOTICE_LETTER)

        snapshot, document_type = renderer.render.call_args.args
        assert document_type == DocumentType.NOTICE_LETTER
        assert snapshot["tenants"][0]["name"] == "Jordan Rivera"
        assert snapshot["audit_events"][0]["action"] == "case_created"
        renderer.file_name.assert_called_once_with(DocumentType.NOTICE_LETTER, 1)
