"""
Tests for the readiness gate.

ready must be exactly "no failed blocking checks" for every combination of
checklist, document and evidence state.
"""
import itertools
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.models.db_models import DocumentType
from app.services.compliance.readiness_gate import evaluate_readiness


BOTH_DOCUMENTS = [DocumentType.NOTICE_LETTER, DocumentType.ITEMIZED_STATEMENT]


def item(item_id="i1", label="Send to tenant(s)", blocks_export=True, completed=False, completes_on_send=False):
    return SimpleNamespace(
        id=item_id, label=label, blocks_export=blocks_export,
        completed=completed, completes_on_send=completes_on_send,
    )


def deduction(deduction_id="d1", description="Carpet cleaning", has_evidence=True):
    return SimpleNamespace(id=deduction_id, description=description, has_evidence=has_evidence)


class TestEvaluateReadiness:

    def test_empty_case_needs_both_documents(self):
        report = evaluate_readiness([], [], [])
        assert not report.ready
        assert report.score == 0
        assert {c.key for c in report.blockers} == {
            "document:NOTICE_LETTER", "document:ITEMIZED_STATEMENT",
        }

    def test_all_passed(self):
        report = evaluate_readiness([item(completed=True)], BOTH_DOCUMENTS, [deduction()])
        assert report.ready
        assert report.score == 100
        assert report.blockers == ()
        assert report.warnings == ()

    def test_non_blocking_items_ignored(self):
        report = evaluate_readiness([item(blocks_export=False)], BOTH_DOCUMENTS, [])
        assert report.ready
        assert len(report.checks) == 2

    def test_missing_evidence_warns_without_blocking(self):
        report = evaluate_readiness(
            [item(completed=True)], BOTH_DOCUMENTS, [deduction(has_evidence=False)],
        )
        assert report.ready
        assert [c.kind for c in report.warnings] == ["evidence"]
        assert report.score == 75

    def test_incomplete_blocking_item(self):
        report = evaluate_readiness([item(label="Confirm final walkthrough")], BOTH_DOCUMENTS, [])
        assert not report.ready
        assert report.blockers[0].label == "Confirm final walkthrough"

    def test_send_action_satisfies_its_own_item(self):
        items = [item(completes_on_send=True)]
        assert not evaluate_readiness(items, BOTH_DOCUMENTS, []).ready
        assert evaluate_readiness(items, BOTH_DOCUMENTS, [], for_send=True).ready

    def test_to_dict(self):
        data = evaluate_readiness([], [DocumentType.NOTICE_LETTER], []).to_dict()
        assert data["ready"] is False
        assert data["score"] == 50
        assert data["blockers"][0]["key"] == "document:ITEMIZED_STATEMENT"

    def test_over_deduction_is_advisory_warning(self):
        report = evaluate_readiness([], BOTH_DOCUMENTS, [], refund_amount=Decimal("-40.00"))
        assert report.ready
        assert [w.kind for w in report.warnings] == ["totals"]
        assert report.warnings[0].label == "Deductions exceed deposit plus interest by $40.00"
        assert report.score == 67

    def test_reconciled_totals_pass(self):
        report = evaluate_readiness([], BOTH_DOCUMENTS, [], refund_amount=Decimal("0.00"))
        assert report.warnings == ()
        assert report.score == 100


class TestReadyMeansNoBlockers:

    @pytest.mark.parametrize("item_done,notice,statement,evidence,for_send", list(
        itertools.product([True, False], repeat=5)
    ))
    def test_combinations(self, item_done, notice, statement, evidence, for_send):
        documents = []
        if notice:
            documents.append(DocumentType.NOTICE_LETTER)
        if statement:
            documents.append(DocumentType.ITEMIZED_STATEMENT)

        report = evaluate_readiness(
            [item(completed=item_done, completes_on_send=True), item("i2", "Walkthrough", blocks_export=False)],
            documents,
            [deduction(has_evidence=evidence)],
            for_send=for_send,
        )

        assert report.ready == (len(report.blockers) == 0)
        assert report.ready == ((item_done or for_send) and notice and statement)
        assert 0 <= report.score <= 100
