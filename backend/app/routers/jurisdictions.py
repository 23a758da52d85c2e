"""
Jurisdictions - API Endpoints

A) GET  /jurisdictions                                  - Directory of covered jurisdictions
B) GET  /jurisdictions/lookup?state=&city=              - Resolve an address to rules
C) POST /jurisdictions/rule-sets/{rule_set_id}/revisions - Publish a new rule revision (admin)
"""
from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_rules_admin
from ..database import get_db
from ..models.db_models import UserDB
from ..services.compliance import ComplianceError, JurisdictionResolver, RuleSnapshotManager
from .errors import http_error


router = APIRouter(prefix="/jurisdictions", tags=["Jurisdictions"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CitationInput(BaseModel):
    code: str
    title: Optional[str] = None
    url: Optional[str] = None


class PenaltyInput(BaseModel):
    condition: str
    penalty: str
    description: Optional[str] = None


class RuleRevisionRequest(BaseModel):
    """Changed rule fields; omitted fields are copied from the source revision."""
    version: Optional[str] = Field(None, description="Display label, defaults to the next revision")
    effective_date: Optional[date] = None
    return_deadline_days: Optional[int] = Field(None, gt=0)
    interest_required: Optional[bool] = None
    interest_rate: Optional[Decimal] = Field(None, ge=0)
    interest_rate_source: Optional[str] = None
    interest_calculation_method: Optional[str] = None
    interest_min_holding_days: Optional[int] = Field(None, ge=0)
    interest_admin_fee_percent: Optional[Decimal] = Field(None, ge=0)
    itemization_required: Optional[bool] = None
    receipt_threshold: Optional[Decimal] = Field(None, ge=0)
    max_deposit_months: Optional[Decimal] = Field(None, gt=0)
    allowed_delivery_methods: Optional[List[str]] = None
    notes: Optional[str] = None
    citations: Optional[List[CitationInput]] = None
    penalties: Optional[List[PenaltyInput]] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("")
async def list_jurisdictions(
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """List every jurisdiction with modelled rules."""
    return {"jurisdictions": JurisdictionResolver(db).list_jurisdictions()}


@router.get("/lookup")
async def lookup_jurisdiction(
    state: str = Query(..., description="State name or 2-letter code"),
    city: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """
    Resolve (state, city) to the most specific jurisdiction and its current rules.

    Falls back to state-level rules with coverage STATE_ONLY when the city
    has no record of its own.
    """
    try:
        return JurisdictionResolver(db).resolve(state, city).to_dict()
    except ComplianceError as e:
        raise http_error(e)


@router.post("/rule-sets/{rule_set_id}/revisions", status_code=status.HTTP_201_CREATED)
async def publish_rule_revision(
    rule_set_id: str,
    request: RuleRevisionRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_rules_admin),
):
    """
    Publish changed rules as a new revision.

    The source rule set is never edited; cases already locked to it keep it.
    """
    payload = request.model_dump(exclude_unset=True)
    version = payload.pop("version", None)
    effective_date = payload.pop("effective_date", None)
    citations = payload.pop("citations", None)
    penalties = payload.pop("penalties", None)

    manager = RuleSnapshotManager(db)
    try:
        revised = manager.publish_revision(
            rule_set_id,
            changes=payload,
            version=version,
            effective_date=effective_date,
            citations=citations,
            penalties=penalties,
        )
        return manager.snapshot(revised).to_dict()
    except ComplianceError as e:
        db.rollback()
        raise http_error(e)
