"""
Pytest configuration and fixtures for the deposit compliance tests.

Every test gets a fresh in-memory SQLite database with the immutability
listeners registered, plus factory helpers for jurisdictions and cases.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models.db_models import (
    CitationDB, CoverageLevel, JurisdictionDB, PenaltyDB, RuleSetDB, UserDB,
)
from app.services.compliance import CaseService, ObjectStorage, TextImprover, TextSuggestion


# Morning of 2026-01-10, twelve days before the SF case deadline
FIXED_NOW = datetime(2026, 1, 10, 9, 0, 0)


# =============================================================================
# Collaborator doubles
# =============================================================================

class MemoryStorage(ObjectStorage):
    """In-memory ObjectStorage that can be told to fail."""

    def __init__(self, fail: bool = False):
        self.objects = {}
        self.fail = fail
        self.writes = 0

    def put(self, path: str, data: bytes) -> str:
        self.writes += 1
        if self.fail:
            raise IOError("storage unavailable")
        self.objects[path] = data
        return path

    def url(self, path: str) -> str:
        return f"memory://{path}"


class FixedImprover(TextImprover):
    """TextImprover returning a canned suggestion."""

    def __init__(self, description: str = "Professional deep cleaning of kitchen appliances and cabinets"):
        self.description = description
        self.calls = []

    def suggest(self, context):
        self.calls.append(context)
        return TextSuggestion(description=self.description, rationale="More specific wording")


# =============================================================================
# Factory Helpers
# =============================================================================

def make_jurisdiction(
    db,
    state: str,
    state_code: str,
    city=None,
    coverage_level: CoverageLevel = CoverageLevel.STATE_ONLY,
    citations=(),
    penalties=(),
    **rules,
):
    """Create a jurisdiction with one rule set. Returns (jurisdiction, rule_set)."""
    jurisdiction = JurisdictionDB(
        id=str(uuid4()),
        state=state,
        state_code=state_code,
        city=city,
        coverage_level=coverage_level,
    )
    db.add(jurisdiction)

    values = dict(
        version="2025.1",
        revision=1,
        effective_date=date(2025, 1, 1),
        return_deadline_days=21,
        interest_required=False,
        itemization_required=True,
        allowed_delivery_methods=["mail", "hand_delivery"],
    )
    values.update(rules)
    rule_set = RuleSetDB(id=str(uuid4()), jurisdiction_id=jurisdiction.id, **values)
    db.add(rule_set)

    for order, (code, title) in enumerate(citations):
        db.add(CitationDB(id=str(uuid4()), rule_set_id=rule_set.id, code=code, title=title, sort_order=order))
    for order, (condition, penalty) in enumerate(penalties):
        db.add(PenaltyDB(id=str(uuid4()), rule_set_id=rule_set.id, condition=condition,
                         penalty=penalty, sort_order=order))

    db.commit()
    return jurisdiction, rule_set


def make_user(db, email: str = "landlord@example.com", username: str = "landlord", role: str = "user") -> UserDB:
    user = UserDB(id=str(uuid4()), email=email, username=username, password_hash="not-a-real-hash", role=role)
    db.add(user)
    db.commit()
    return user


def open_sf_case(service: CaseService, property_id: str, user_id: str, **overrides):
    """Twelve-month SF tenancy ending on move-out day, $3,200 deposit."""
    values = dict(
        property_id=property_id,
        lease_start_date=date(2025, 1, 1),
        lease_end_date=date(2026, 1, 1),
        move_out_date=date(2026, 1, 1),
        deposit_amount=Decimal("3200"),
        tenants=[{"name": "Jordan Rivera", "email": "jordan@example.com"}],
        user_id=user_id,
    )
    values.update(overrides)
    return service.create_case(**values)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """Database session on a fresh schema."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def jurisdictions(db):
    """CA (state), San Francisco (city), NY (state) and FL (state)."""
    ca, ca_rules = make_jurisdiction(
        db, "California", "CA",
        allowed_delivery_methods=["mail", "hand_delivery", "email"],
        citations=[("Cal. Civ. Code § 1950.5", "Security deposits")],
        penalties=[("Bad faith retention", "Up to 2x deposit amount")],
    )
    sf, sf_rules = make_jurisdiction(
        db, "California", "CA", city="San Francisco", coverage_level=CoverageLevel.FULL,
        interest_required=True,
        interest_rate=Decimal("0.05"),
        interest_min_holding_days=365,
        allowed_delivery_methods=["mail", "hand_delivery", "email"],
        citations=[("Cal. Civ. Code § 1950.5", "Security deposits"),
                   ("SF Admin. Code Ch. 49", "Security deposit interest")],
        penalties=[("Bad faith retention", "Up to 2x deposit amount"),
                   ("Failure to pay interest", "Interest plus penalties")],
    )
    ny, ny_rules = make_jurisdiction(
        db, "New York", "NY",
        return_deadline_days=14,
        interest_required=True,
        interest_rate=Decimal("0.02"),
        interest_admin_fee_percent=Decimal("1.00"),
        penalties=[("Failure to return", "Up to 2x deposit")],
    )
    fl, fl_rules = make_jurisdiction(
        db, "Florida", "FL",
        return_deadline_days=15,
        allowed_delivery_methods=["certified_mail"],
        penalties=[("Failure to give notice", "Forfeit claim to deposit")],
    )
    return {
        "CA": (ca, ca_rules),
        "SF": (sf, sf_rules),
        "NY": (ny, ny_rules),
        "FL": (fl, fl_rules),
    }


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def improver():
    return FixedImprover()


@pytest.fixture
def service(db, storage, improver):
    """CaseService with in-memory storage and a frozen clock."""
    return CaseService(db, storage=storage, improver=improver, clock=lambda: FIXED_NOW)


@pytest.fixture
def sf_property(service, user, jurisdictions):
    return service.create_property(
        user_id=user.id,
        address="100 Market St",
        unit="4B",
        city="San Francisco",
        state="CA",
        zip_code="94105",
    )


@pytest.fixture
def sf_case(service, sf_property, user):
    return open_sf_case(service, sf_property["id"], user.id)
