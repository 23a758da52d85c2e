"""
Tests for rule set versioning.

A rule set referenced by a case never changes; new rules are published as a
new revision that only later cases pick up.
"""
import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.models.db_models import CaseDB, CitationDB, PenaltyDB, RuleSetDB
from app.services.compliance import (
    NotFoundError,
    RuleSetImmutableError,
    RuleSnapshotManager,
    UpstreamFailureError,
    ValidationError,
)

from conftest import make_jurisdiction, open_sf_case


# =============================================================================
# SELECTION
# =============================================================================

class TestCurrentRuleSet:

    def test_latest_effective_revision(self, db, jurisdictions):
        sf, sf_rules = jurisdictions["SF"]
        manager = RuleSnapshotManager(db)
        newer = manager.publish_revision(sf_rules.id, {"return_deadline_days": 30})

        assert manager.current_rule_set(sf.id, as_of=date(2026, 1, 10)).id == newer.id

    def test_future_revision_waits_for_effective_date(self, db, jurisdictions):
        sf, sf_rules = jurisdictions["SF"]
        manager = RuleSnapshotManager(db)
        future = manager.publish_revision(
            sf_rules.id, {"return_deadline_days": 30}, effective_date=date(2027, 3, 1),
        )

        assert manager.current_rule_set(sf.id, as_of=date(2026, 1, 10)).id == sf_rules.id
        assert manager.current_rule_set(sf.id, as_of=date(2027, 3, 1)).id == future.id

    def test_unknown_rule_set(self, db):
        with pytest.raises(NotFoundError):
            RuleSnapshotManager(db).get_rule_set("missing")


# =============================================================================
# SNAPSHOTS
# =============================================================================

class TestSnapshot:

    def test_collections_are_tuples(self, db, jurisdictions):
        _, fl_rules = jurisdictions["FL"]
        snapshot = RuleSnapshotManager.snapshot(fl_rules)
        assert snapshot.allowed_delivery_methods == ("certified_mail",)
        assert snapshot.citations == ()
        assert snapshot.penalties[0].penalty == "Forfeit claim to deposit"
        assert snapshot.allows_delivery_method("certified_mail")
        assert not snapshot.allows_delivery_method("email")

    def test_missing_optional_values_default(self, db):
        _, rules = make_jurisdiction(db, "Oregon", "OR", allowed_delivery_methods=None)
        snapshot = RuleSnapshotManager.snapshot(rules)
        assert snapshot.allowed_delivery_methods == ()
        assert snapshot.interest_rate == Decimal("0")
        assert snapshot.interest_admin_fee_percent is None

    def test_missing_deadline_is_upstream_failure(self, db):
        _, rules = make_jurisdiction(db, "Oregon", "OR", return_deadline_days=None)
        with pytest.raises(UpstreamFailureError):
            RuleSnapshotManager.snapshot(rules)


# =============================================================================
# REVISIONS
# =============================================================================

class TestPublishRevision:

    def test_copies_source_and_applies_changes(self, db, jurisdictions):
        _, sf_rules = jurisdictions["SF"]
        revised = RuleSnapshotManager(db).publish_revision(
            sf_rules.id, {"interest_rate": Decimal("0.052")},
        )

        assert revised.id != sf_rules.id
        assert revised.revision == 2
        assert revised.version == "2025.2"
        assert revised.interest_rate == Decimal("0.0520")
        assert revised.return_deadline_days == 21
        assert [c.code for c in revised.citations] == [c.code for c in sf_rules.citations]
        assert len(revised.penalties) == 2

        db.refresh(sf_rules)
        assert sf_rules.interest_rate == Decimal("0.0500")

    def test_replaces_penalties(self, db, jurisdictions):
        _, ca_rules = jurisdictions["CA"]
        revised = RuleSnapshotManager(db).publish_revision(
            ca_rules.id, {}, version="2026.1",
            penalties=[{"condition": "Bad faith retention", "penalty": "Up to 3x deposit amount"}],
        )
        assert revised.version == "2026.1"
        assert [p.penalty for p in revised.penalties] == ["Up to 3x deposit amount"]

    def test_unknown_field_rejected(self, db, jurisdictions):
        _, ca_rules = jurisdictions["CA"]
        with pytest.raises(ValidationError):
            RuleSnapshotManager(db).publish_revision(ca_rules.id, {"jurisdiction_id": "elsewhere"})

    def test_existing_case_keeps_locked_rules(self, db, service, sf_property, user, jurisdictions):
        _, sf_rules = jurisdictions["SF"]
        first = open_sf_case(service, sf_property["id"], user.id)

        RuleSnapshotManager(db).publish_revision(sf_rules.id, {"return_deadline_days": 30})
        second = open_sf_case(service, sf_property["id"], user.id)

        assert service.get_case(first["id"])["due_date"] == "2026-01-22"
        assert second["due_date"] == "2026-01-31"
        assert second["rule_set"]["version"] == "2025.2"


# =============================================================================
# IMMUTABILITY
# =============================================================================

class TestImmutability:

    def test_referenced_rule_set_cannot_change(self, db, sf_case, jurisdictions):
        _, sf_rules = jurisdictions["SF"]
        sf_rules.return_deadline_days = 30

        with pytest.raises(RuleSetImmutableError):
            db.commit()
        db.rollback()

        db.refresh(sf_rules)
        assert sf_rules.return_deadline_days == 21

    def test_referenced_penalty_cannot_change(self, db, sf_case, jurisdictions):
        _, sf_rules = jurisdictions["SF"]
        penalty = db.query(PenaltyDB).filter(PenaltyDB.rule_set_id == sf_rules.id).first()
        penalty.penalty = "Up to 3x deposit amount"

        with pytest.raises(RuleSetImmutableError):
            db.commit()
        db.rollback()

    def test_referenced_citation_cannot_be_deleted(self, db, sf_case, jurisdictions):
        _, sf_rules = jurisdictions["SF"]
        db.delete(sf_rules.citations[0])

        with pytest.raises(RuleSetImmutableError):
            db.commit()
        db.rollback()

    def test_penalty_cannot_be_added_to_referenced_rule_set(self, db, sf_case, jurisdictions):
        _, sf_rules = jurisdictions["SF"]
        before = db.query(PenaltyDB).filter(PenaltyDB.rule_set_id == sf_rules.id).count()
        db.add(PenaltyDB(id=str(uuid4()), rule_set_id=sf_rules.id,
                         condition="Any violation", penalty="10x deposit"))

        with pytest.raises(RuleSetImmutableError):
            db.commit()
        db.rollback()

        assert db.query(PenaltyDB).filter(PenaltyDB.rule_set_id == sf_rules.id).count() == before

    def test_citation_cannot_be_appended_to_referenced_rule_set(self, db, sf_case, jurisdictions):
        _, sf_rules = jurisdictions["SF"]
        before = len(sf_rules.citations)
        sf_rules.citations.append(CitationDB(id=str(uuid4()), code="Cal. Civ. Code § 1950.7"))

        with pytest.raises(RuleSetImmutableError):
            db.commit()
        db.rollback()

        db.expire(sf_rules)
        assert len(sf_rules.citations) == before

    def test_unreferenced_rule_set_accepts_new_penalty(self, db, sf_case, jurisdictions):
        _, ny_rules = jurisdictions["NY"]
        ny_rules.penalties.append(PenaltyDB(id=str(uuid4()), condition="Bad faith", penalty="Up to 2x deposit"))
        db.commit()

        assert db.query(PenaltyDB).filter(PenaltyDB.rule_set_id == ny_rules.id).count() >= 1

    def test_unreferenced_rule_set_can_be_corrected(self, db, sf_case, jurisdictions):
        _, ny_rules = jurisdictions["NY"]
        ny_rules.return_deadline_days = 15
        db.commit()

        assert db.get(RuleSetDB, ny_rules.id).return_deadline_days == 15

    def test_is_referenced(self, db, sf_case, jurisdictions):
        manager = RuleSnapshotManager(db)
        case = db.get(CaseDB, sf_case["id"])
        assert manager.is_referenced(case.rule_set_id)
        assert not manager.is_referenced(jurisdictions["NY"][1].id)
