#!/usr/bin/env python3
"""
Jurisdiction Seed Script
Loads the covered jurisdictions and their security deposit rule sets.

Rule sets are immutable once a case references them, so re-running the
script never edits an existing rule set: a jurisdiction that already has a
rule set with the same version label is skipped.

Usage:
    python -m scripts.seed_jurisdictions
"""
import sys
import os
from datetime import date
from decimal import Decimal
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from app.database import SessionLocal, init_db
from app.models.db_models import (
    CitationDB, CoverageLevel, JurisdictionDB, PenaltyDB, RuleSetDB,
)


EFFECTIVE_DATE = date(2025, 1, 1)
LAST_VERIFIED = date(2025, 3, 1)

CA_CIVIL_CODE = {
    "code": "Cal. Civ. Code § 1950.5",
    "title": "Security deposits",
    "url": "https://leginfo.legislature.ca.gov/faces/codes_displaySection.xhtml?sectionNum=1950.5.&lawCode=CIV",
}
CA_AB12 = {
    "code": "AB 12 (2023)",
    "title": "Security deposit limit reduction",
    "url": "https://leginfo.legislature.ca.gov/faces/billNavClient.xhtml?bill_id=202320240AB12",
}
CA_BAD_FAITH = {
    "condition": "Bad faith retention",
    "penalty": "Up to 2x deposit amount",
    "description": "If landlord retains deposit in bad faith, tenant may recover up to twice the deposit amount.",
}
NY_GOL = {
    "code": "NY Gen. Oblig. Law § 7-108",
    "title": "Deposits and advances",
    "url": "https://www.nysenate.gov/legislation/laws/GOB/7-108",
}
WA_RCW = {
    "code": "RCW 59.18.280",
    "title": "Deposit - Statement and notice",
    "url": "https://app.leg.wa.gov/RCW/default.aspx?cite=59.18.280",
}
WA_FAILURE = {
    "condition": "Failure to return or provide statement",
    "penalty": "Up to 2x deposit",
    "description": "Landlord liable for up to twice the deposit if they fail to comply.",
}
IL_ACT = {
    "code": "765 ILCS 710/1",
    "title": "Security Deposit Return Act",
    "url": "https://www.ilga.gov/legislation/ilcs/ilcs3.asp?ActID=2202",
}
IL_LATE = {
    "condition": "Failure to return within deadline",
    "penalty": "2x deposit",
    "description": "Landlord who fails to comply is liable for twice the deposit amount.",
}


JURISDICTIONS = [
    # California (state-level)
    {
        "state": "California", "state_code": "CA", "city": None,
        "coverage_level": CoverageLevel.STATE_ONLY,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 21,
            "interest_required": False,
            "itemization_required": True,
            "receipt_threshold": Decimal("125"),
            "max_deposit_months": Decimal("1"),
            "allowed_delivery_methods": ["mail", "hand_delivery", "email"],
            "notes": "21 days from move-out. Receipts required for repairs over $125; "
                     "dated photos of unit condition required after tenant vacates.",
            "citations": [CA_CIVIL_CODE, CA_AB12],
            "penalties": [CA_BAD_FAITH],
        },
    },
    # California - San Francisco
    {
        "state": "California", "state_code": "CA", "city": "San Francisco",
        "coverage_level": CoverageLevel.FULL,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 21,
            "interest_required": True,
            "interest_rate": Decimal("0.05"),
            "interest_rate_source": "San Francisco Rent Board annual rate",
            "interest_calculation_method": "simple",
            "interest_min_holding_days": 365,
            "itemization_required": True,
            "receipt_threshold": Decimal("125"),
            "max_deposit_months": Decimal("1"),
            "allowed_delivery_methods": ["mail", "hand_delivery", "email"],
            "notes": "Interest not due if tenancy is shorter than one year. Rate set each March 1.",
            "citations": [
                CA_CIVIL_CODE,
                {"code": "SF Admin. Code Ch. 49", "title": "Security deposit interest",
                 "url": "https://www.sf.gov/reports--security-deposits"},
                CA_AB12,
            ],
            "penalties": [
                CA_BAD_FAITH,
                {"condition": "Failure to pay interest", "penalty": "Interest plus penalties",
                 "description": "Landlord must pay interest at the rate set by the Rent Board annually."},
            ],
        },
    },
    # California - Los Angeles
    {
        "state": "California", "state_code": "CA", "city": "Los Angeles",
        "coverage_level": CoverageLevel.FULL,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 21,
            "interest_required": False,
            "itemization_required": True,
            "receipt_threshold": Decimal("125"),
            "max_deposit_months": Decimal("1"),
            "allowed_delivery_methods": ["mail", "hand_delivery", "email"],
            "citations": [
                CA_CIVIL_CODE,
                {"code": "LAMC § 151.06", "title": "LA Rent Stabilization", "url": "https://housing.lacity.org/"},
                CA_AB12,
            ],
            "penalties": [CA_BAD_FAITH],
        },
    },
    # New York (state-level)
    {
        "state": "New York", "state_code": "NY", "city": None,
        "coverage_level": CoverageLevel.STATE_ONLY,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 14,
            "interest_required": True,
            "interest_rate": Decimal("0.01"),
            "interest_rate_source": "Prevailing bank rate on deposits",
            "interest_calculation_method": "simple",
            "interest_admin_fee_percent": Decimal("1.00"),
            "itemization_required": True,
            "max_deposit_months": Decimal("1"),
            "allowed_delivery_methods": ["mail", "hand_delivery"],
            "citations": [NY_GOL],
            "penalties": [
                {"condition": "Failure to return", "penalty": "Up to 2x deposit",
                 "description": "Willful violation may result in punitive damages up to twice the deposit."},
            ],
        },
    },
    # New York - New York City
    {
        "state": "New York", "state_code": "NY", "city": "New York City",
        "coverage_level": CoverageLevel.FULL,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 14,
            "interest_required": True,
            "interest_rate": Decimal("0.01"),
            "interest_rate_source": "Prevailing bank rate on deposits",
            "interest_calculation_method": "simple",
            "interest_admin_fee_percent": Decimal("1.00"),
            "itemization_required": True,
            "max_deposit_months": Decimal("1"),
            "allowed_delivery_methods": ["mail", "hand_delivery"],
            "citations": [
                NY_GOL,
                {"code": "NYC Admin. Code § 26-511", "title": "Rent Stabilization", "url": "https://www.nyc.gov/hpd"},
            ],
            "penalties": [
                {"condition": "Failure to return within 14 days", "penalty": "Up to 2x deposit",
                 "description": "Tenant may sue for return plus up to 2x deposit as damages."},
            ],
        },
    },
    # Texas
    {
        "state": "Texas", "state_code": "TX", "city": None,
        "coverage_level": CoverageLevel.STATE_ONLY,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 30,
            "interest_required": False,
            "itemization_required": True,
            "allowed_delivery_methods": ["mail", "hand_delivery"],
            "citations": [
                {"code": "Tex. Prop. Code § 92.103", "title": "Security deposit obligations",
                 "url": "https://statutes.capitol.texas.gov/Docs/PR/htm/PR.92.htm"},
            ],
            "penalties": [
                {"condition": "Bad faith retention", "penalty": "$100 + 3x wrongfully withheld",
                 "description": "Tenant may recover $100 plus 3x the portion wrongfully withheld."},
            ],
        },
    },
    # Washington (state-level)
    {
        "state": "Washington", "state_code": "WA", "city": None,
        "coverage_level": CoverageLevel.STATE_ONLY,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 21,
            "interest_required": False,
            "itemization_required": True,
            "allowed_delivery_methods": ["mail", "hand_delivery"],
            "citations": [WA_RCW],
            "penalties": [WA_FAILURE],
        },
    },
    # Washington - Seattle
    {
        "state": "Washington", "state_code": "WA", "city": "Seattle",
        "coverage_level": CoverageLevel.FULL,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 21,
            "interest_required": False,
            "itemization_required": True,
            "allowed_delivery_methods": ["mail", "hand_delivery"],
            "notes": "Move-in checklist must be provided.",
            "citations": [
                WA_RCW,
                {"code": "SMC 7.24.030", "title": "Seattle Rental Agreement Regulation",
                 "url": "https://library.municode.com/wa/seattle/codes/municipal_code"},
            ],
            "penalties": [WA_FAILURE],
        },
    },
    # Illinois (state-level)
    {
        "state": "Illinois", "state_code": "IL", "city": None,
        "coverage_level": CoverageLevel.STATE_ONLY,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 30,
            "interest_required": False,
            "itemization_required": True,
            "allowed_delivery_methods": ["mail", "hand_delivery"],
            "citations": [IL_ACT],
            "penalties": [IL_LATE],
        },
    },
    # Illinois - Chicago
    {
        "state": "Illinois", "state_code": "IL", "city": "Chicago",
        "coverage_level": CoverageLevel.FULL,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 30,
            "interest_required": True,
            "interest_rate": Decimal("0.01"),
            "interest_rate_source": "Chicago RLTO rate set annually by City Comptroller",
            "interest_calculation_method": "simple",
            "itemization_required": True,
            "allowed_delivery_methods": ["mail", "hand_delivery"],
            "citations": [
                IL_ACT,
                {"code": "Chicago RLTO § 5-12-080", "title": "Chicago Residential Landlord Tenant Ordinance",
                 "url": "https://www.chicago.gov/city/en/depts/doh/provdrs/renters/svcs/rents_rights.html"},
            ],
            "penalties": [
                IL_LATE,
                {"condition": "Failure to pay interest", "penalty": "Amount plus penalties",
                 "description": "Must pay interest at city-mandated rate."},
            ],
        },
    },
    # Colorado
    {
        "state": "Colorado", "state_code": "CO", "city": None,
        "coverage_level": CoverageLevel.STATE_ONLY,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 30,
            "interest_required": False,
            "itemization_required": True,
            "allowed_delivery_methods": ["mail", "hand_delivery"],
            "citations": [
                {"code": "C.R.S. § 38-12-103", "title": "Security deposits",
                 "url": "https://leg.colorado.gov/sites/default/files/images/olls/crs2022-title-38.pdf"},
            ],
            "penalties": [
                {"condition": "Wrongful withholding", "penalty": "3x wrongfully withheld",
                 "description": "Willful retention may result in treble damages."},
            ],
        },
    },
    # Florida
    {
        "state": "Florida", "state_code": "FL", "city": None,
        "coverage_level": CoverageLevel.STATE_ONLY,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 15,
            "interest_required": False,
            "itemization_required": True,
            "allowed_delivery_methods": ["certified_mail"],
            "notes": "15 days if no deductions; written notice of intent to claim by certified mail within 30 days.",
            "citations": [
                {"code": "Fla. Stat. § 83.49", "title": "Deposit money or advance rent",
                 "url": "http://www.leg.state.fl.us/statutes/index.cfm?App_mode=Display_Statute&URL=0000-0099/0083/Sections/0083.49.html"},
            ],
            "penalties": [
                {"condition": "Failure to give notice", "penalty": "Forfeit claim to deposit",
                 "description": "Landlord forfeits right to impose claim if proper notice not given."},
            ],
        },
    },
    # Massachusetts
    {
        "state": "Massachusetts", "state_code": "MA", "city": None,
        "coverage_level": CoverageLevel.STATE_ONLY,
        "rules": {
            "version": "2025.1",
            "return_deadline_days": 30,
            "interest_required": True,
            "interest_rate": Decimal("0.05"),
            "interest_rate_source": "5% or actual interest rate of bank where deposited",
            "interest_calculation_method": "simple",
            "itemization_required": True,
            "max_deposit_months": Decimal("1"),
            "allowed_delivery_methods": ["mail", "hand_delivery"],
            "citations": [
                {"code": "M.G.L. c. 186 § 15B", "title": "Security deposits; entry of premises",
                 "url": "https://malegislature.gov/Laws/GeneralLaws/PartII/TitleI/Chapter186/Section15B"},
            ],
            "penalties": [
                {"condition": "Failure to comply with any requirement", "penalty": "3x deposit",
                 "description": "Tenant is entitled to treble damages or actual damages, whichever is greater."},
            ],
        },
    },
]


def seed_jurisdiction(db: Session, data: dict) -> bool:
    """Create the jurisdiction (if needed) and its rule set. Returns False when already seeded."""
    jurisdiction = db.query(JurisdictionDB).filter(
        JurisdictionDB.state_code == data["state_code"],
        JurisdictionDB.city.is_(None) if data["city"] is None else JurisdictionDB.city == data["city"],
    ).first()

    if jurisdiction is None:
        jurisdiction = JurisdictionDB(
            id=str(uuid4()),
            state=data["state"],
            state_code=data["state_code"],
            city=data["city"],
            coverage_level=data["coverage_level"],
            last_verified=LAST_VERIFIED,
        )
        db.add(jurisdiction)
        db.flush()

    rules = dict(data["rules"])
    existing = db.query(RuleSetDB).filter(
        RuleSetDB.jurisdiction_id == jurisdiction.id,
        RuleSetDB.version == rules["version"],
    ).first()
    if existing:
        return False

    citations = rules.pop("citations", [])
    penalties = rules.pop("penalties", [])
    latest_revision = max((r.revision for r in jurisdiction.rule_sets), default=0)

    rule_set = RuleSetDB(
        id=str(uuid4()),
        jurisdiction_id=jurisdiction.id,
        revision=latest_revision + 1,
        effective_date=EFFECTIVE_DATE,
        **rules,
    )
    db.add(rule_set)

    for order, citation in enumerate(citations):
        db.add(CitationDB(id=str(uuid4()), rule_set_id=rule_set.id, sort_order=order, **citation))
    for order, penalty in enumerate(penalties):
        db.add(PenaltyDB(id=str(uuid4()), rule_set_id=rule_set.id, sort_order=order, **penalty))

    return True


def main():
    init_db()

    db: Session = SessionLocal()
    created = 0
    try:
        for data in JURISDICTIONS:
            label = f"{data['city']}, {data['state_code']}" if data["city"] else data["state_code"]
            if seed_jurisdiction(db, data):
                created += 1
                print(f"Seeded: {label}")
            else:
                print(f"Skipped (already seeded): {label}")
        db.commit()
    except Exception as e:
        print(f"Error seeding jurisdictions: {e}")
        db.rollback()
        sys.exit(1)
    finally:
        db.close()

    print(f"Seed completed! {created} rule set(s) created.")


if __name__ == "__main__":
    main()
