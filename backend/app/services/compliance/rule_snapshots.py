"""
Rule Snapshot Manager

Governs versioning of jurisdiction rule sets.

Invariant: once a case references a RuleSet, neither the row nor its
citations/penalties change. A changed rule is published as a new revision
and only cases opened afterwards pick it up. A before_flush listener enforces
this for every session, whoever tries the write.
"""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4
import logging

from sqlalchemy import event
from sqlalchemy.orm import Session

from ...models.compliance import CitationRef, PenaltyClause, RuleSnapshot
from ...models.db_models import CaseDB, CitationDB, PenaltyDB, RuleSetDB
from .errors import NotFoundError, RuleSetImmutableError, UpstreamFailureError, ValidationError

logger = logging.getLogger(__name__)


# Columns copied into a new revision and accepted in publish_revision(changes=...)
RULE_FIELDS = (
    "return_deadline_days",
    "interest_required",
    "interest_rate",
    "interest_rate_source",
    "interest_calculation_method",
    "interest_min_holding_days",
    "interest_admin_fee_percent",
    "itemization_required",
    "receipt_threshold",
    "max_deposit_months",
    "allowed_delivery_methods",
    "notes",
)


class RuleSnapshotManager:
    """Selects current rule sets and publishes new revisions."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    # =========================================================================
    # SELECTION
    # =========================================================================

    def current_rule_set(self, jurisdiction_id: str, as_of: Optional[date] = None) -> Optional[RuleSetDB]:
        """Latest revision in force on as_of (defaults to today)."""
        as_of = as_of or date.today()
        return (
            self.db.query(RuleSetDB)
            .filter(
                RuleSetDB.jurisdiction_id == jurisdiction_id,
                RuleSetDB.effective_date <= as_of,
            )
            .order_by(RuleSetDB.effective_date.desc(), RuleSetDB.revision.desc())
            .first()
        )

    def get_rule_set(self, rule_set_id: str) -> RuleSetDB:
        rule_set = self.db.query(RuleSetDB).filter(RuleSetDB.id == rule_set_id).first()
        if not rule_set:
            raise NotFoundError("Rule set not found", details={"rule_set_id": rule_set_id})
        return rule_set

    def is_referenced(self, rule_set_id: str) -> bool:
        with self.db.no_autoflush:
            return self.db.query(CaseDB.id).filter(CaseDB.rule_set_id == rule_set_id).first() is not None

    # =========================================================================
    # SNAPSHOT CONVERSION
    # =========================================================================

    @staticmethod
    def snapshot(rule_set: RuleSetDB) -> RuleSnapshot:
        """
        Convert a rule set row into an immutable snapshot.

        Missing optional collections become empty tuples. A missing return
        deadline means the rule data itself is broken.
        """
        if rule_set.return_deadline_days is None:
            raise UpstreamFailureError(
                "Rule set is missing return_deadline_days",
                details={"rule_set_id": rule_set.id},
            )

        return RuleSnapshot(
            rule_set_id=rule_set.id,
            jurisdiction_id=rule_set.jurisdiction_id,
            version=rule_set.version,
            effective_date=rule_set.effective_date,
            return_deadline_days=int(rule_set.return_deadline_days),
            interest_required=bool(rule_set.interest_required),
            interest_rate=Decimal(str(rule_set.interest_rate)) if rule_set.interest_rate is not None else Decimal("0"),
            interest_rate_source=rule_set.interest_rate_source,
            interest_calculation_method=rule_set.interest_calculation_method,
            interest_min_holding_days=rule_set.interest_min_holding_days,
            interest_admin_fee_percent=(
                Decimal(str(rule_set.interest_admin_fee_percent))
                if rule_set.interest_admin_fee_percent is not None else None
            ),
            itemization_required=bool(rule_set.itemization_required),
            receipt_threshold=(
                Decimal(str(rule_set.receipt_threshold)) if rule_set.receipt_threshold is not None else None
            ),
            max_deposit_months=(
                Decimal(str(rule_set.max_deposit_months)) if rule_set.max_deposit_months is not None else None
            ),
            allowed_delivery_methods=tuple(rule_set.allowed_delivery_methods or ()),
            citations=tuple(
                CitationRef(code=c.code, title=c.title, url=c.url)
                for c in (rule_set.citations or [])
            ),
            penalties=tuple(
                PenaltyClause(condition=p.condition, penalty=p.penalty, description=p.description)
                for p in (rule_set.penalties or [])
            ),
        )

    # =========================================================================
    # REVISIONS
    # =========================================================================

    def publish_revision(
        self,
        rule_set_id: str,
        changes: Dict[str, Any],
        version: Optional[str] = None,
        effective_date: Optional[date] = None,
        citations: Optional[list] = None,
        penalties: Optional[list] = None,
    ) -> RuleSetDB:
        """
        Publish a changed copy of a rule set as a new revision.

        The source row is left untouched. citations/penalties, when given,
        replace the copied lists (dicts with the CitationDB/PenaltyDB fields).
        """
        source = self.get_rule_set(rule_set_id)

        unknown = sorted(set(changes) - set(RULE_FIELDS))
        if unknown:
            raise ValidationError("Unknown rule fields", details={"fields": unknown})

        latest = (
            self.db.query(RuleSetDB)
            .filter(RuleSetDB.jurisdiction_id == source.jurisdiction_id)
            .order_by(RuleSetDB.revision.desc())
            .first()
        )
        revision = (latest.revision if latest else 0) + 1

        values = {name: getattr(source, name) for name in RULE_FIELDS}
        values.update(changes)

        revised = RuleSetDB(
            id=str(uuid4()),
            jurisdiction_id=source.jurisdiction_id,
            version=version or _bump_version(source.version, revision),
            revision=revision,
            effective_date=effective_date or source.effective_date,
            **values,
        )
        self.db.add(revised)

        citation_rows = citations if citations is not None else [
            {"code": c.code, "title": c.title, "url": c.url} for c in source.citations
        ]
        for i, row in enumerate(citation_rows):
            self.db.add(CitationDB(id=str(uuid4()), rule_set_id=revised.id, sort_order=i, **row))

        penalty_rows = penalties if penalties is not None else [
            {"condition": p.condition, "penalty": p.penalty, "description": p.description}
            for p in source.penalties
        ]
        for i, row in enumerate(penalty_rows):
            self.db.add(PenaltyDB(id=str(uuid4()), rule_set_id=revised.id, sort_order=i, **row))

        self.db.commit()
        self.db.refresh(revised)

        logger.info(
            f"Published rule set revision {revised.version} (rev {revision}) "
            f"for jurisdiction {source.jurisdiction_id}, superseding {source.id}"
        )
        return revised


def _bump_version(label: str, revision: int) -> str:
    """'2025.1' -> '2025.<revision>'; anything else gets a revision suffix."""
    head, _, _ = (label or "").partition(".")
    if head.isdigit():
        return f"{head}.{revision}"
    return f"{label}-r{revision}"


# =============================================================================
# IMMUTABILITY GUARD
# =============================================================================

def _referenced_rule_set_id(obj) -> Optional[str]:
    if isinstance(obj, RuleSetDB):
        return obj.id
    if isinstance(obj, (CitationDB, PenaltyDB)):
        # Rows appended through the relationship get their FK only at flush
        if obj.rule_set_id is None and obj.rule_set is not None:
            return obj.rule_set.id
        return obj.rule_set_id
    return None


@event.listens_for(Session, "before_flush")
def _reject_locked_rule_set_mutation(session, flush_context, instances):
    candidates = [
        obj for obj in session.dirty
        if _referenced_rule_set_id(obj) and session.is_modified(obj, include_collections=False)
    ]
    candidates.extend(obj for obj in session.deleted if _referenced_rule_set_id(obj))
    candidates.extend(
        obj for obj in session.new
        if isinstance(obj, (CitationDB, PenaltyDB)) and _referenced_rule_set_id(obj)
    )
    if not candidates:
        return

    with session.no_autoflush:
        for obj in candidates:
            rule_set_id = _referenced_rule_set_id(obj)
            locked = session.query(CaseDB.id).filter(CaseDB.rule_set_id == rule_set_id).first()
            if locked is not None:
                raise RuleSetImmutableError(
                    "Rule set is referenced by a case and cannot be changed; publish a new revision",
                    details={"rule_set_id": rule_set_id},
                )
