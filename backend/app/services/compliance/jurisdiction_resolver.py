"""
Jurisdiction Resolver

Maps a property's (state, city) to the most specific jurisdiction record the
engine knows about, plus that jurisdiction's current rule set.

Resolution order:
1. exact (state_code, city) match -> the record's own coverage level
2. state-level record (city IS NULL) -> STATE_ONLY, city ordinances excluded
3. nothing -> NotFoundError

Pure read. Nothing here writes to the session.
"""
from datetime import date
from typing import Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.compliance import JurisdictionResolution
from ...models.db_models import CoverageLevel, JurisdictionDB
from .errors import NotFoundError, ValidationError
from .rule_snapshots import RuleSnapshotManager

logger = logging.getLogger(__name__)


# =============================================================================
# STATE LOOKUP TABLE
# =============================================================================

STATE_CODES: Dict[str, str] = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME",
    "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE",
    "nevada": "NV", "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM",
    "new york": "NY", "north carolina": "NC", "north dakota": "ND", "ohio": "OH",
    "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI",
    "south carolina": "SC", "south dakota": "SD", "tennessee": "TN", "texas": "TX",
    "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}

VALID_CODES = frozenset(STATE_CODES.values())

COVERAGE_MESSAGES = {
    CoverageLevel.FULL: "Full coverage: state law and {city} ordinances are included.",
    CoverageLevel.PARTIAL: "Partial coverage: some {city} ordinances may not be included.",
    CoverageLevel.STATE_ONLY: "State-level rules only.",
}


def normalize_state(state: Optional[str]) -> str:
    """
    Normalize a state name or code to its 2-letter code.

    Raises ValidationError for blank input and NotFoundError for names the
    lookup table does not know.
    """
    cleaned = " ".join((state or "").strip().split())
    if not cleaned:
        raise ValidationError("State is required", details={"field": "state"})

    if len(cleaned) == 2 and cleaned.upper() in VALID_CODES:
        return cleaned.upper()

    code = STATE_CODES.get(cleaned.lower())
    if code is None:
        raise NotFoundError(f"Unrecognized state: {cleaned}", details={"state": cleaned})
    return code


def _clean_city(city: Optional[str]) -> Optional[str]:
    cleaned = " ".join((city or "").strip().split())
    return cleaned or None


# =============================================================================
# RESOLVER
# =============================================================================

class JurisdictionResolver:
    """Resolves addresses to jurisdictions and their current rule sets."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session
        self.rule_snapshots = RuleSnapshotManager(db_session)

    def find_jurisdiction(self, state: str, city: Optional[str] = None) -> JurisdictionDB:
        """Most specific jurisdiction row for (state, city)."""
        state_code = normalize_state(state)
        city = _clean_city(city)

        if city:
            match = (
                self.db.query(JurisdictionDB)
                .filter(
                    JurisdictionDB.state_code == state_code,
                    func.lower(JurisdictionDB.city) == city.lower(),
                )
                .first()
            )
            if match:
                return match

        state_row = (
            self.db.query(JurisdictionDB)
            .filter(JurisdictionDB.state_code == state_code, JurisdictionDB.city.is_(None))
            .first()
        )
        if state_row:
            return state_row

        logger.warning(f"No jurisdiction coverage for {state_code}/{city}")
        raise NotFoundError(
            f"We don't have rules for {state_code} yet",
            details={"state_code": state_code, "city": city},
        )

    def resolve(self, state: str, city: Optional[str] = None, as_of: Optional[date] = None) -> JurisdictionResolution:
        """Resolve (state, city) to a jurisdiction, coverage level and current rule snapshot."""
        city = _clean_city(city)
        jurisdiction = self.find_jurisdiction(state, city)

        if jurisdiction.city is not None:
            coverage = jurisdiction.coverage_level
            message = COVERAGE_MESSAGES[coverage].format(city=jurisdiction.city)
        else:
            coverage = CoverageLevel.STATE_ONLY
            if city:
                message = (
                    f"City ordinances for {city} are not included. "
                    f"Only {jurisdiction.state} state law applies in this analysis."
                )
            else:
                message = COVERAGE_MESSAGES[CoverageLevel.STATE_ONLY]

        rule_set = self.rule_snapshots.current_rule_set(jurisdiction.id, as_of=as_of)

        return JurisdictionResolution(
            jurisdiction_id=jurisdiction.id,
            state=jurisdiction.state,
            state_code=jurisdiction.state_code,
            city=jurisdiction.city,
            coverage_level=coverage,
            coverage_message=message,
            rule_set=self.rule_snapshots.snapshot(rule_set) if rule_set else None,
        )

    def list_jurisdictions(self) -> List[Dict]:
        """Directory of every modelled jurisdiction, states before their cities."""
        rows = (
            self.db.query(JurisdictionDB)
            .order_by(
                JurisdictionDB.state_code.asc(),
                JurisdictionDB.city.isnot(None),
                JurisdictionDB.city.asc(),
            )
            .all()
        )
        return [
            {
                "id": row.id,
                "state": row.state,
                "state_code": row.state_code,
                "city": row.city,
                "coverage_level": row.coverage_level.value,
                "last_verified": row.last_verified.isoformat() if row.last_verified else None,
            }
            for row in rows
        ]
