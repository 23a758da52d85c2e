"""
Deduction Risk Scorer

Rates how likely a single deduction is to be disputed by the tenant.
The score is additive over fixed weights; the level is derived from the score.

This function is the only place risk is computed. Persisted risk values on a
deduction are user overrides and never replace the computed assessment.
"""
from decimal import Decimal
from typing import List, Optional

from ...models.compliance import DeductionFacts, RiskAssessment, Suggestion
from ...models.db_models import DamageType, DeductionCategory, RiskLevel
from .deadline_engine import DEFAULT_USEFUL_LIFE_MONTHS, to_decimal


# =============================================================================
# WEIGHTS (HARD-LOCKED)
# =============================================================================

MISSING_EVIDENCE_WEIGHT = 3
CLEANING_WEIGHT = 1
LARGE_AMOUNT_WEIGHT = 2      # amount > 500
MODERATE_AMOUNT_WEIGHT = 1   # 200 < amount <= 500
NORMAL_WEAR_WEIGHT = 3
SHORT_DESCRIPTION_WEIGHT = 1

LARGE_AMOUNT_THRESHOLD = Decimal("500")
MODERATE_AMOUNT_THRESHOLD = Decimal("200")
SHORT_DESCRIPTION_LENGTH = 30

HIGH_THRESHOLD = 4
MEDIUM_THRESHOLD = 2

DEPRECIABLE_CATEGORIES = (DeductionCategory.REPAIRS, DeductionCategory.DAMAGES)


# =============================================================================
# SCORING
# =============================================================================

def level_for_score(score: int) -> RiskLevel:
    if score >= HIGH_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def score_deduction(facts: DeductionFacts) -> RiskAssessment:
    """
    Score a deduction and explain the score.

    Returns a RiskAssessment with the integer score, its level, the reasons
    that contributed, and suggested remediations.
    """
    score = 0
    reasons: List[str] = []
    suggestions: List[Suggestion] = []

    if not facts.has_evidence:
        score += MISSING_EVIDENCE_WEIGHT
        reasons.append("No evidence attached")
        suggestions.append(Suggestion(
            action="Add photos or invoice",
            impact="Evidence is the strongest defense against a dispute",
        ))

    if facts.category == DeductionCategory.CLEANING:
        score += CLEANING_WEIGHT
        reasons.append("Cleaning charges are commonly disputed")

    amount = to_decimal(facts.amount)
    if amount > LARGE_AMOUNT_THRESHOLD:
        score += LARGE_AMOUNT_WEIGHT
        reasons.append("High amount (over $500)")
    elif amount > MODERATE_AMOUNT_THRESHOLD:
        score += MODERATE_AMOUNT_WEIGHT
        reasons.append("Moderate amount (over $200)")

    if facts.damage_type == DamageType.NORMAL_WEAR:
        score += NORMAL_WEAR_WEIGHT
        reasons.append("Normal wear and tear is generally not deductible")
        suggestions.append(Suggestion(
            action="Confirm this is tenant damage, not normal wear",
            impact="Charging for normal wear is a common bad-faith finding",
        ))

    if len(facts.description.strip()) < SHORT_DESCRIPTION_LENGTH and not facts.ai_generated:
        score += SHORT_DESCRIPTION_WEIGHT
        reasons.append("Description is brief")
        suggestions.append(Suggestion(
            action="Improve wording with AI",
            impact="Specific descriptions hold up better under review",
        ))

    proration = _proration_hint(facts)
    if proration:
        suggestions.append(proration)

    if not reasons:
        reasons.append("Well-documented deduction")

    return RiskAssessment(
        score=score,
        level=level_for_score(score),
        reasons=reasons,
        suggestions=suggestions,
    )


def _proration_hint(facts: DeductionFacts) -> Optional[Suggestion]:
    """Suggest prorating replacements of aged items (advice only, not scored)."""
    if facts.item_age_months is None or facts.category not in DEPRECIABLE_CATEGORIES:
        return None
    if facts.item_age_months >= DEFAULT_USEFUL_LIFE_MONTHS:
        return Suggestion(
            action="Item is past its useful life; consider removing this charge",
            impact="Fully depreciated items usually cannot be charged",
        )
    if facts.item_age_months > 0:
        return Suggestion(
            action=f"Prorate for item age ({facts.item_age_months} months)",
            impact="Charging only the undepreciated share is easier to defend",
        )
    return None


def effective_risk_level(assessment: RiskAssessment, override: Optional[RiskLevel]) -> RiskLevel:
    """User override wins; otherwise the computed level."""
    return override if override is not None else assessment.level
