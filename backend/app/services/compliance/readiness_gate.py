"""
Readiness Gate

Aggregates checklist, document and evidence completeness into a go/no-go
signal for sending a case.

Checks:
- one per blocking checklist item
- notice letter generated (blocking)
- itemized statement generated (blocking)
- one advisory evidence check per deduction
- advisory totals check when the refund amount is supplied: deductions
  must not exceed deposit plus interest

score = passed / total x 100, ready = no failed blocking checks.
"""
from decimal import Decimal
from typing import Iterable, List, Optional

from ...models.compliance import ReadinessCheck, ReadinessReport
from ...models.db_models import ChecklistItemDB, DeductionDB, DocumentType
from .deadline_engine import round_money, to_decimal


REQUIRED_DOCUMENTS = (
    (DocumentType.NOTICE_LETTER, "Notice letter generated"),
    (DocumentType.ITEMIZED_STATEMENT, "Itemized statement generated"),
)


def totals_label(refund_amount) -> str:
    refund = round_money(to_decimal(refund_amount))
    if refund < 0:
        return f"Deductions exceed deposit plus interest by ${-refund}"
    return "Deductions within deposit plus interest"


def evaluate_readiness(
    checklist_items: Iterable[ChecklistItemDB],
    document_types: Iterable[DocumentType],
    deductions: Iterable[DeductionDB],
    for_send: bool = False,
    refund_amount: Optional[Decimal] = None,
) -> ReadinessReport:
    """
    Evaluate whether a case may be marked sent.

    With for_send=True, checklist items completed by the send action itself
    count as passed.
    """
    checks: List[ReadinessCheck] = []

    for item in checklist_items:
        if not item.blocks_export:
            continue
        passed = bool(item.completed) or (for_send and bool(item.completes_on_send))
        checks.append(ReadinessCheck(
            key=f"checklist:{item.id}",
            label=item.label,
            passed=passed,
            blocks_export=True,
            kind="checklist",
        ))

    present = set(document_types)
    for document_type, label in REQUIRED_DOCUMENTS:
        checks.append(ReadinessCheck(
            key=f"document:{document_type.value}",
            label=label,
            passed=document_type in present,
            blocks_export=True,
            kind="document",
        ))

    for deduction in deductions:
        checks.append(ReadinessCheck(
            key=f"evidence:{deduction.id}",
            label=f"Evidence attached for \"{deduction.description}\"",
            passed=deduction.has_evidence,
            blocks_export=False,
            kind="evidence",
        ))

    if refund_amount is not None:
        checks.append(ReadinessCheck(
            key="totals",
            label=totals_label(refund_amount),
            passed=to_decimal(refund_amount) >= 0,
            blocks_export=False,
            kind="totals",
        ))

    passed_count = sum(1 for c in checks if c.passed)
    score = round(passed_count * 100 / len(checks)) if checks else 100

    return ReadinessReport(
        score=score,
        checks=tuple(checks),
        blockers=tuple(c for c in checks if not c.passed and c.blocks_export),
        warnings=tuple(c for c in checks if not c.passed and not c.blocks_export),
    )
