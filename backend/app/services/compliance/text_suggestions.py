"""
Deduction Text Suggestions

Optional AI wording help for deduction descriptions.

The improver only proposes text. Nothing is written to a deduction until a
person accepts the suggestion through CaseService.accept_suggestion, which
sets ai_generated and keeps the pre-AI wording in original_description.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from ...models.db_models import DeductionDB
from .errors import UpstreamFailureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextSuggestion:
    description: str
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        return {"description": self.description, "rationale": self.rationale}


class TextImprover(ABC):
    """Proposes clearer wording for a deduction."""

    @abstractmethod
    def suggest(self, context: Dict[str, Any]) -> TextSuggestion:
        pass


def build_context(deduction: DeductionDB, jurisdiction: Optional[str] = None) -> Dict[str, Any]:
    """Raw facts handed to the improver."""
    return {
        "description": deduction.original_description or deduction.description,
        "current_description": deduction.description,
        "category": deduction.category.value,
        "amount": f"{deduction.amount:.2f}",
        "notes": deduction.notes,
        "item_age_months": deduction.item_age_months,
        "damage_type": deduction.damage_type.value if deduction.damage_type else None,
        "has_evidence": deduction.has_evidence,
        "jurisdiction": jurisdiction,
    }


def request_suggestion(improver: Optional[TextImprover], context: Dict[str, Any]) -> TextSuggestion:
    """Ask the improver for a suggestion, surfacing any failure as UpstreamFailureError."""
    if improver is None:
        raise UpstreamFailureError("AI text suggestions are not configured")

    try:
        suggestion = improver.suggest(context)
    except UpstreamFailureError:
        raise
    except Exception as e:
        logger.warning(f"Text improver failed: {e}")
        raise UpstreamFailureError("AI text suggestion failed") from e

    if not suggestion or not suggestion.description.strip():
        raise UpstreamFailureError("AI text suggestion was empty")
    return suggestion
