"""
Compliance Cases - API Endpoints

Case lifecycle, deductions, checklist, tenants, attachments and documents.

Every mutating endpoint requires an If-Match header carrying the case version
returned by the previous read (bare or quoted). A missing header yields 428
Precondition Required; a stale version yields 409 Conflict.

Endpoints:
A) POST   /cases                                   - Open a case (locks current rules)
B) GET    /cases, GET /cases/{id}                  - Read with derived fields
C) PATCH  /cases/{id}                              - Edit lease facts
D) POST   /cases/{id}/status                       - Lifecycle transition
E) GET    /cases/{id}/exposure                     - Penalty exposure estimate
F) GET    /cases/{id}/readiness                    - Readiness gate
G) POST/PATCH/DELETE /cases/{id}/deductions[/..]   - Deductions
H) POST   /cases/{id}/deductions/{did}/suggestion[/accept] - AI wording
I) POST/PATCH/DELETE /cases/{id}/checklist[/..]    - Checklist
J) PUT    /cases/{id}/tenants/{tid}/forwarding-address
K) POST   /cases/{id}/attachments                  - Register evidence
L) POST   /cases/{id}/documents                    - Generate a document
M) GET    /cases/{id}/audit                        - Activity feed
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models.db_models import (
    AttachmentType, CaseStatus, DamageType, DeductionCategory, DocumentType,
    ForwardingAddressStatus, RiskLevel, UserDB,
)
from ..services.compliance import CaseService, ComplianceError
from .errors import http_error


router = APIRouter(prefix="/cases", tags=["Cases"])


def get_case_service(db: Session = Depends(get_db)) -> CaseService:
    """Dependency - CaseService with the default collaborators."""
    return CaseService(db)


def case_version(if_match: Optional[str] = Header(None)) -> int:
    """Dependency - case version from If-Match. Accepts 3, "3" and W/"3"."""
    if if_match is None or not if_match.strip():
        raise HTTPException(
            status_code=status.HTTP_428_PRECONDITION_REQUIRED,
            detail={
                "code": "PRECONDITION_REQUIRED",
                "message": "If-Match header with the case version is required",
                "details": {},
            },
        )

    tag = if_match.strip()
    if tag.startswith("W/"):
        tag = tag[2:]
    tag = tag.strip('"')
    if not tag.isdigit():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "VALIDATION_ERROR",
                "message": "If-Match must carry the integer case version",
                "details": {"if_match": if_match},
            },
        )
    return int(tag)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class TenantInput(BaseModel):
    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    is_primary: bool = False
    forwarding_address: Optional[str] = None


class CreateCaseRequest(BaseModel):
    property_id: str
    lease_start_date: date
    lease_end_date: date
    move_out_date: date
    deposit_amount: Decimal = Field(..., gt=0)
    tenants: List[TenantInput] = Field(..., min_length=1)


class UpdateCaseRequest(BaseModel):
    lease_start_date: Optional[date] = None
    lease_end_date: Optional[date] = None
    move_out_date: Optional[date] = None
    deposit_amount: Optional[Decimal] = Field(None, gt=0)


class TransitionRequest(BaseModel):
    """Status change. Delivery fields apply to SENT, reason to CLOSED."""
    status: CaseStatus
    delivery_method: Optional[str] = None
    tracking_number: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivery_address: Optional[str] = None
    proof_attachment_ids: List[str] = Field(default=[])
    reason: Optional[str] = None


class DeductionRequest(BaseModel):
    description: str = Field(..., min_length=1)
    category: DeductionCategory
    amount: Decimal = Field(..., gt=0)
    notes: Optional[str] = None
    attachment_ids: List[str] = Field(default=[])
    item_age_months: Optional[int] = Field(None, ge=0)
    damage_type: Optional[DamageType] = None
    risk_level_override: Optional[RiskLevel] = None


class DeductionUpdateRequest(BaseModel):
    description: Optional[str] = None
    category: Optional[DeductionCategory] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    notes: Optional[str] = None
    attachment_ids: Optional[List[str]] = None
    item_age_months: Optional[int] = Field(None, ge=0)
    damage_type: Optional[DamageType] = None
    risk_level_override: Optional[RiskLevel] = None


class AcceptSuggestionRequest(BaseModel):
    description: str = Field(..., min_length=1, description="Suggested wording the user accepted")


class ChecklistItemRequest(BaseModel):
    label: str = Field(..., min_length=1)
    blocks_export: bool = False


class ChecklistToggleRequest(BaseModel):
    completed: bool


class ForwardingAddressRequest(BaseModel):
    status: ForwardingAddressStatus
    address: Optional[str] = None
    request_method: Optional[str] = None

    @field_validator('request_method')
    @classmethod
    def validate_request_method(cls, v):
        if v is not None:
            valid_methods = ['email', 'mail', 'text', 'in_person']
            if v.lower() not in valid_methods:
                raise ValueError(f'Invalid request method. Must be one of: {", ".join(valid_methods)}')
            return v.lower()
        return v


class AttachmentRequest(BaseModel):
    file_name: str = Field(..., min_length=1)
    storage_path: str = Field(..., min_length=1)
    attachment_type: AttachmentType = AttachmentType.OTHER
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = Field(None, ge=0)
    tags: List[str] = Field(default=[])
    deduction_id: Optional[str] = None


class GenerateDocumentRequest(BaseModel):
    document_type: DocumentType
    version: Optional[int] = Field(None, ge=1, description="Repeat a version to retry idempotently")


# =============================================================================
# CASES
# =============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_case(
    request: CreateCaseRequest,
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    """Open a case. The jurisdiction's current rule set is locked to it."""
    try:
        return service.create_case(
            property_id=request.property_id,
            lease_start_date=request.lease_start_date,
            lease_end_date=request.lease_end_date,
            move_out_date=request.move_out_date,
            deposit_amount=request.deposit_amount,
            tenants=[t.model_dump() for t in request.tenants],
            user_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.get("")
async def list_cases(
    status_filter: Optional[CaseStatus] = Query(None, alias="status"),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    return {"cases": service.list_cases(user_id=current_user.id, status=status_filter)}


@router.get("/{case_id}")
async def get_case(
    case_id: str,
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.get_case(case_id, user_id=current_user.id)
    except ComplianceError as e:
        raise http_error(e)


@router.patch("/{case_id}")
async def update_case(
    case_id: str,
    request: UpdateCaseRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    """Edit lease facts. Due date and interest follow only while ACTIVE."""
    try:
        return service.update_case(
            case_id,
            request.model_dump(exclude_unset=True),
            expected_version=if_match,
            actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.post("/{case_id}/status")
async def transition_status(
    case_id: str,
    request: TransitionRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    """
    Move the case through its lifecycle.

    SENT requires an allowed delivery method and no readiness blockers;
    CLOSED requires a reason.
    """
    payload = request.model_dump(exclude={"status"})
    try:
        return service.transition_status(
            case_id,
            request.status,
            payload=payload,
            expected_version=if_match,
            actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.get("/{case_id}/exposure")
async def get_exposure(
    case_id: str,
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.compute_exposure(case_id, user_id=current_user.id)
    except ComplianceError as e:
        raise http_error(e)


@router.get("/{case_id}/readiness")
async def get_readiness(
    case_id: str,
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.compute_readiness(case_id, user_id=current_user.id)
    except ComplianceError as e:
        raise http_error(e)


@router.get("/{case_id}/audit")
async def get_audit_trail(
    case_id: str,
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return {"events": service.audit_events(case_id, user_id=current_user.id)}
    except ComplianceError as e:
        raise http_error(e)


# =============================================================================
# DEDUCTIONS
# =============================================================================

@router.post("/{case_id}/deductions", status_code=status.HTTP_201_CREATED)
async def add_deduction(
    case_id: str,
    request: DeductionRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.add_deduction(
            case_id, request.model_dump(), expected_version=if_match, actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.patch("/{case_id}/deductions/{deduction_id}")
async def update_deduction(
    case_id: str,
    deduction_id: str,
    request: DeductionUpdateRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.update_deduction(
            case_id, deduction_id, request.model_dump(exclude_unset=True),
            expected_version=if_match, actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.delete("/{case_id}/deductions/{deduction_id}")
async def delete_deduction(
    case_id: str,
    deduction_id: str,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.delete_deduction(
            case_id, deduction_id, expected_version=if_match, actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.post("/{case_id}/deductions/{deduction_id}/suggestion")
async def suggest_deduction_wording(
    case_id: str,
    deduction_id: str,
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    """Get suggested wording. Nothing is saved until the suggestion is accepted."""
    try:
        return service.suggest_description(case_id, deduction_id, user_id=current_user.id)
    except ComplianceError as e:
        raise http_error(e)


@router.post("/{case_id}/deductions/{deduction_id}/suggestion/accept")
async def accept_deduction_wording(
    case_id: str,
    deduction_id: str,
    request: AcceptSuggestionRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.accept_suggestion(
            case_id, deduction_id, request.description,
            expected_version=if_match, actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


# =============================================================================
# CHECKLIST
# =============================================================================

@router.post("/{case_id}/checklist", status_code=status.HTTP_201_CREATED)
async def add_checklist_item(
    case_id: str,
    request: ChecklistItemRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.add_checklist_item(
            case_id, request.label, blocks_export=request.blocks_export,
            expected_version=if_match, actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.patch("/{case_id}/checklist/{item_id}")
async def toggle_checklist_item(
    case_id: str,
    item_id: str,
    request: ChecklistToggleRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.set_checklist_item_completed(
            case_id, item_id, request.completed,
            expected_version=if_match, actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.delete("/{case_id}/checklist/{item_id}")
async def delete_checklist_item(
    case_id: str,
    item_id: str,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.delete_checklist_item(
            case_id, item_id, expected_version=if_match, actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


# =============================================================================
# TENANTS, ATTACHMENTS, DOCUMENTS
# =============================================================================

@router.put("/{case_id}/tenants/{tenant_id}/forwarding-address")
async def update_forwarding_address(
    case_id: str,
    tenant_id: str,
    request: ForwardingAddressRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    try:
        return service.update_forwarding_address(
            case_id, tenant_id, request.status,
            address=request.address, request_method=request.request_method,
            expected_version=if_match, actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.post("/{case_id}/attachments", status_code=status.HTTP_201_CREATED)
async def add_attachment(
    case_id: str,
    request: AttachmentRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    """Register an uploaded file; optionally link it to a deduction as evidence."""
    try:
        return service.add_attachment(
            case_id,
            file_name=request.file_name,
            storage_path=request.storage_path,
            attachment_type=request.attachment_type,
            mime_type=request.mime_type,
            size_bytes=request.size_bytes,
            tags=request.tags,
            deduction_id=request.deduction_id,
            expected_version=if_match,
            actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.post("/{case_id}/documents", status_code=status.HTTP_201_CREATED)
async def generate_document(
    case_id: str,
    request: GenerateDocumentRequest,
    if_match: int = Depends(case_version),
    service: CaseService = Depends(get_case_service),
    current_user: UserDB = Depends(get_current_user),
):
    """
    Generate a document version.

    Storage is written before the document row. Passing an existing version
    returns that document, so retries never duplicate records.
    """
    try:
        return service.generate_document(
            case_id, request.document_type, version=request.version,
            expected_version=if_match, actor_id=current_user.id,
        )
    except ComplianceError as e:
        raise http_error(e)
