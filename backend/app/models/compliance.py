"""
Deposit Compliance Engine - Compliance Value Objects

Immutable inputs and outputs of the rule engine and the pure calculators.
Nothing in here touches the database session; ORM rows are converted into
these objects before any calculation runs.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .db_models import CoverageLevel, DamageType, DeductionCategory, RiskLevel


def _money(value: Optional[Decimal]) -> Optional[str]:
    """Serialize a money value as a 2-decimal string."""
    if value is None:
        return None
    return f"{Decimal(value):.2f}"


# =============================================================================
# ENUMS
# =============================================================================

class Likelihood(str, Enum):
    """Qualitative likelihood that a penalty is triggered."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# =============================================================================
# RULE SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class CitationRef:
    code: str
    title: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class PenaltyClause:
    condition: str
    penalty: str
    description: Optional[str] = None


@dataclass(frozen=True)
class RuleSnapshot:
    """
    Read-only view of one RuleSet revision.

    Optional collections are always tuples (possibly empty); the required
    return_deadline_days is validated when the snapshot is built.
    """
    rule_set_id: str
    jurisdiction_id: str
    version: str
    effective_date: date
    return_deadline_days: int
    interest_required: bool = False
    interest_rate: Decimal = Decimal("0")
    interest_rate_source: Optional[str] = None
    interest_calculation_method: Optional[str] = None
    interest_min_holding_days: Optional[int] = None
    interest_admin_fee_percent: Optional[Decimal] = None
    itemization_required: bool = True
    receipt_threshold: Optional[Decimal] = None
    max_deposit_months: Optional[Decimal] = None
    allowed_delivery_methods: Tuple[str, ...] = ()
    citations: Tuple[CitationRef, ...] = ()
    penalties: Tuple[PenaltyClause, ...] = ()

    def allows_delivery_method(self, method: str) -> bool:
        return method in self.allowed_delivery_methods

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_set_id": self.rule_set_id,
            "jurisdiction_id": self.jurisdiction_id,
            "version": self.version,
            "effective_date": self.effective_date.isoformat(),
            "return_deadline_days": self.return_deadline_days,
            "interest_required": self.interest_required,
            "interest_rate": str(self.interest_rate),
            "interest_rate_source": self.interest_rate_source,
            "interest_calculation_method": self.interest_calculation_method,
            "interest_min_holding_days": self.interest_min_holding_days,
            "interest_admin_fee_percent": (
                str(self.interest_admin_fee_percent) if self.interest_admin_fee_percent is not None else None
            ),
            "itemization_required": self.itemization_required,
            "receipt_threshold": _money(self.receipt_threshold),
            "max_deposit_months": (
                str(self.max_deposit_months) if self.max_deposit_months is not None else None
            ),
            "allowed_delivery_methods": list(self.allowed_delivery_methods),
            "citations": [
                {"code": c.code, "title": c.title, "url": c.url} for c in self.citations
            ],
            "penalties": [
                {"condition": p.condition, "penalty": p.penalty, "description": p.description}
                for p in self.penalties
            ],
        }


@dataclass(frozen=True)
class JurisdictionResolution:
    """Result of resolving (state, city) to a jurisdiction record."""
    jurisdiction_id: str
    state: str
    state_code: str
    city: Optional[str]
    coverage_level: CoverageLevel
    coverage_message: str
    rule_set: Optional[RuleSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jurisdiction_id": self.jurisdiction_id,
            "state": self.state,
            "state_code": self.state_code,
            "city": self.city,
            "coverage_level": self.coverage_level.value,
            "coverage_message": self.coverage_message,
            "citations": (
                [{"code": c.code, "title": c.title, "url": c.url} for c in self.rule_set.citations]
                if self.rule_set else []
            ),
            "rule_set": self.rule_set.to_dict() if self.rule_set else None,
        }


# =============================================================================
# DEDUCTION RISK
# =============================================================================

@dataclass(frozen=True)
class DeductionFacts:
    """Attributes of a deduction that drive its risk score."""
    description: str
    category: DeductionCategory
    amount: Decimal
    has_evidence: bool
    damage_type: Optional[DamageType] = None
    ai_generated: bool = False
    item_age_months: Optional[int] = None


@dataclass(frozen=True)
class Suggestion:
    action: str
    impact: str


@dataclass
class RiskAssessment:
    score: int
    level: RiskLevel
    reasons: List[str] = field(default_factory=list)
    suggestions: List[Suggestion] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level.value,
            "reasons": list(self.reasons),
            "suggestions": [{"action": s.action, "impact": s.impact} for s in self.suggestions],
        }


# =============================================================================
# PENALTY EXPOSURE
# =============================================================================

@dataclass(frozen=True)
class ExposureContext:
    """
    Case facts the exposure estimator weighs.
    Built by the case service from persisted data so the estimator stays pure.
    """
    days_remaining: int
    already_sent: bool = False
    missing_evidence_count: int = 0
    normal_wear_count: int = 0
    high_risk_count: int = 0
    has_itemized_statement: bool = False
    interest_owed: Decimal = Decimal("0")
    pending_forwarding_addresses: int = 0
    incomplete_blocking_items: int = 0
    # Amount by which deductions exceed deposit plus interest
    over_deducted_amount: Decimal = Decimal("0")

    @property
    def is_overdue(self) -> bool:
        return self.days_remaining < 0 and not self.already_sent


@dataclass(frozen=True)
class PenaltyExposure:
    condition: str
    penalty: str
    multiplier: Optional[Decimal]
    amount: Optional[Decimal]
    likelihood: Likelihood
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "condition": self.condition,
            "penalty": self.penalty,
            "description": self.description,
            "multiplier": str(self.multiplier) if self.multiplier is not None else None,
            "amount": _money(self.amount),
            "likelihood": self.likelihood.value,
        }


@dataclass(frozen=True)
class RiskFactor:
    category: str
    description: str
    severity: Likelihood

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "description": self.description, "severity": self.severity.value}


@dataclass(frozen=True)
class ExposureEstimate:
    deposit_amount: Decimal
    min_exposure: Decimal
    max_exposure: Decimal
    penalties: Tuple[PenaltyExposure, ...]
    risk_factors: Tuple[RiskFactor, ...]
    unquantified_penalties: Tuple[str, ...]
    days_remaining: int
    is_overdue: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deposit_amount": _money(self.deposit_amount),
            "min_exposure": _money(self.min_exposure),
            "max_exposure": _money(self.max_exposure),
            "penalties": [p.to_dict() for p in self.penalties],
            "risk_factors": [r.to_dict() for r in self.risk_factors],
            "unquantified_penalties": list(self.unquantified_penalties),
            "days_remaining": self.days_remaining,
            "is_overdue": self.is_overdue,
        }


# =============================================================================
# READINESS
# =============================================================================

@dataclass(frozen=True)
class ReadinessCheck:
    key: str
    label: str
    passed: bool
    blocks_export: bool
    kind: str  # checklist | document | evidence | totals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "passed": self.passed,
            "blocks_export": self.blocks_export,
            "kind": self.kind,
        }


@dataclass(frozen=True)
class ReadinessReport:
    score: int
    checks: Tuple[ReadinessCheck, ...]
    blockers: Tuple[ReadinessCheck, ...]
    warnings: Tuple[ReadinessCheck, ...]

    @property
    def ready(self) -> bool:
        return len(self.blockers) == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "ready": self.ready,
            "checks": [c.to_dict() for c in self.checks],
            "blockers": [c.to_dict() for c in self.blockers],
            "warnings": [c.to_dict() for c in self.warnings],
        }
