"""
Case Service

Main orchestration service for deposit compliance cases.
Coordinates jurisdiction resolution, rule snapshots, the deadline engine,
risk scoring, exposure estimation, the readiness gate, the lifecycle state
machine, document generation and the audit trail.

Every mutating operation:
- checks the caller's expected version (ConflictError on mismatch)
- refuses to touch a CLOSED case
- appends its audit event in the same transaction as the change
- bumps the case version, so concurrent editors detect each other

Every read returns the persisted case plus freshly computed derived fields
(due date, days remaining, total deductions, refund amount).
"""
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4
import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...models.compliance import DeductionFacts, ExposureContext
from ...models.db_models import (
    AttachmentDB, AttachmentType, CaseDB, CaseStatus, ChecklistItemDB,
    DamageType, DeductionCategory, DeductionDB, DocumentType,
    ForwardingAddressStatus, PropertyDB, RiskLevel, TenantDB,
)
from . import deadline_engine
from .audit_trail import AuditTrailRecorder, serialize_event
from .document_service import DocumentRenderer, DocumentService, ObjectStorage
from .errors import ConflictError, NotFoundError, UpstreamFailureError, ValidationError
from .exposure_estimator import PenaltyMultiplierParser, estimate_exposure
from .jurisdiction_resolver import JurisdictionResolver, normalize_state
from .risk_scorer import effective_risk_level, score_deduction
from .rule_snapshots import RuleSnapshotManager
from .state_machine import CaseStateMachine
from .text_suggestions import TextImprover, build_context, request_suggestion

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_CHECKLIST = [
    # (label, blocks_export, completes_on_send)
    ("Review jurisdiction rules", False, False),
    ("Calculate deductions", False, False),
    ("Upload evidence for deductions", False, False),
    ("Generate itemized statement", False, False),
    ("Generate notice letter", False, False),
    ("Send to tenant(s)", True, True),
    ("Record proof of delivery", False, True),
]

# Generating a document ticks the matching checklist item
DOCUMENT_CHECKLIST_LABELS = {
    DocumentType.NOTICE_LETTER: "generate notice letter",
    DocumentType.ITEMIZED_STATEMENT: "generate itemized statement",
}

EDITABLE_CASE_FIELDS = ("lease_start_date", "lease_end_date", "move_out_date", "deposit_amount")
EDITABLE_DEDUCTION_FIELDS = (
    "description", "category", "amount", "notes", "attachment_ids",
    "risk_level_override", "item_age_months", "damage_type",
)


def _money(value) -> str:
    return f"{deadline_engine.round_money(value):.2f}"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# CASE SERVICE
# =============================================================================

class CaseService:
    """
    Service for compliance case management.

    Collaborators (renderer, storage, text improver, multiplier parser) are
    injectable; the clock is injectable so deadline math is testable.
    """

    def __init__(
        self,
        db_session: Session,
        renderer: Optional[DocumentRenderer] = None,
        storage: Optional[ObjectStorage] = None,
        improver: Optional[TextImprover] = None,
        penalty_parser: Optional[PenaltyMultiplierParser] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.clock = clock
        self.audit = AuditTrailRecorder(db_session, clock)
        self.resolver = JurisdictionResolver(db_session)
        self.rule_snapshots = RuleSnapshotManager(db_session)
        self.state_machine = CaseStateMachine(db_session, self.audit, clock)
        self.documents = DocumentService(db_session, renderer, storage, self.audit, clock)
        self.improver = improver
        self.penalty_parser = penalty_parser

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    def create_property(
        self,
        user_id: str,
        address: str,
        city: str,
        state: str,
        zip_code: Optional[str] = None,
        unit: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Register a property and bind it to its most specific jurisdiction."""
        if not address or not address.strip():
            raise ValidationError("Address is required", details={"field": "address"})
        if not city or not city.strip():
            raise ValidationError("City is required", details={"field": "city"})

        jurisdiction = self.resolver.find_jurisdiction(state, city)

        prop = PropertyDB(
            id=str(uuid4()),
            user_id=user_id,
            address=address.strip(),
            unit=unit,
            city=city.strip(),
            state=normalize_state(state),
            zip_code=zip_code,
            jurisdiction_id=jurisdiction.id,
        )
        self.db.add(prop)
        self.db.commit()

        logger.info(f"Property {prop.id} created in jurisdiction {jurisdiction.state_code}/{jurisdiction.city}")
        return self._serialize_property(prop)

    def list_properties(self, user_id: str) -> List[Dict[str, Any]]:
        rows = (
            self.db.query(PropertyDB)
            .filter(PropertyDB.user_id == user_id)
            .order_by(PropertyDB.created_at.desc())
            .all()
        )
        return [self._serialize_property(p) for p in rows]

    # =========================================================================
    # CASE CREATION
    # =========================================================================

    def create_case(
        self,
        property_id: str,
        lease_start_date: date,
        lease_end_date: date,
        move_out_date: date,
        deposit_amount,
        tenants: List[Dict[str, Any]],
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Open a compliance case for a move-out.

        Locks the jurisdiction's current rule set, computes the due date and
        interest, seeds tenants and the default checklist, and records
        case_created.
        """
        prop = self.db.query(PropertyDB).filter(PropertyDB.id == property_id).first()
        if not prop or (user_id is not None and prop.user_id != user_id):
            raise NotFoundError("Property not found", details={"property_id": property_id})

        deposit = self._parse_amount(deposit_amount, "deposit_amount")
        self._validate_dates(lease_start_date, lease_end_date, move_out_date)

        if not tenants:
            raise ValidationError("At least one tenant is required", details={"field": "tenants"})
        for tenant in tenants:
            if not (tenant.get("name") or "").strip():
                raise ValidationError("Tenant name is required", details={"field": "tenants.name"})

        rule_set = self.rule_snapshots.current_rule_set(prop.jurisdiction_id, as_of=self.clock().date())
        if rule_set is None:
            raise UpstreamFailureError(
                "No rule set is in force for this property's jurisdiction",
                details={"jurisdiction_id": prop.jurisdiction_id},
            )
        snapshot = self.rule_snapshots.snapshot(rule_set)

        case = CaseDB(
            id=str(uuid4()),
            user_id=user_id,
            property_id=prop.id,
            rule_set_id=rule_set.id,
            lease_start_date=lease_start_date,
            lease_end_date=lease_end_date,
            move_out_date=move_out_date,
            deposit_amount=deposit,
            deposit_interest=self._interest_for(snapshot, deposit, lease_start_date, lease_end_date),
            due_date=deadline_engine.compute_due_date(move_out_date, snapshot.return_deadline_days),
            status=CaseStatus.ACTIVE,
            proof_attachment_ids=[],
            version=1,
        )
        self.db.add(case)

        has_primary = any(t.get("is_primary") for t in tenants)
        for index, tenant in enumerate(tenants):
            forwarding = tenant.get("forwarding_address")
            self.db.add(TenantDB(
                id=str(uuid4()),
                case_id=case.id,
                name=tenant["name"].strip(),
                email=tenant.get("email"),
                phone=tenant.get("phone"),
                is_primary=bool(tenant.get("is_primary")) if has_primary else index == 0,
                forwarding_address=forwarding,
                forwarding_address_status=(
                    ForwardingAddressStatus.PROVIDED if forwarding else ForwardingAddressStatus.NOT_REQUESTED
                ),
            ))

        for order, (label, blocks_export, completes_on_send) in enumerate(DEFAULT_CHECKLIST, start=1):
            self.db.add(ChecklistItemDB(
                id=str(uuid4()),
                case_id=case.id,
                label=label,
                blocks_export=blocks_export,
                completes_on_send=completes_on_send,
                sort_order=order,
            ))

        self.audit.record(
            case,
            "case_created",
            f"Case created under rule set {snapshot.version}. Return deadline: {case.due_date.isoformat()}",
            actor_id=user_id,
            metadata={
                "rule_set_id": rule_set.id,
                "rule_set_version": snapshot.version,
                "due_date": case.due_date.isoformat(),
                "return_deadline_days": snapshot.return_deadline_days,
            },
        )

        self._commit(case)
        logger.info(f"Case {case.id} created for property {prop.id}, due {case.due_date.isoformat()}")
        return self.serialize_case(case)

    # =========================================================================
    # CASE READS
    # =========================================================================

    def get_case(self, case_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self.serialize_case(self._get_case(case_id, user_id))

    def list_cases(self, user_id: Optional[str] = None, status: Optional[CaseStatus] = None) -> List[Dict[str, Any]]:
        query = self.db.query(CaseDB)
        if user_id is not None:
            query = query.filter(CaseDB.user_id == user_id)
        if status is not None:
            query = query.filter(CaseDB.status == status)
        return [self.serialize_case(c) for c in query.order_by(CaseDB.due_date.asc()).all()]

    def audit_events(self, case_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        case = self._get_case(case_id, user_id)
        return [serialize_event(e) for e in self.audit.events(case.id)]

    # =========================================================================
    # CASE UPDATES
    # =========================================================================

    def update_case(
        self,
        case_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Edit lease facts. Due date and interest follow the facts only while
        the case is ACTIVE; after that they stay as sent.
        """
        case = self._get_for_update(case_id, expected_version, actor_id)

        unknown = sorted(set(changes) - set(EDITABLE_CASE_FIELDS))
        if unknown:
            raise ValidationError("Fields cannot be edited", details={"fields": unknown})
        if not changes:
            return self.serialize_case(case)

        updated = dict(
            lease_start_date=changes.get("lease_start_date", case.lease_start_date),
            lease_end_date=changes.get("lease_end_date", case.lease_end_date),
            move_out_date=changes.get("move_out_date", case.move_out_date),
        )
        self._validate_dates(**updated)
        deposit = (
            self._parse_amount(changes["deposit_amount"], "deposit_amount")
            if "deposit_amount" in changes else case.deposit_amount
        )

        before = {name: _iso(getattr(case, name)) for name in ("lease_start_date", "lease_end_date", "move_out_date")}
        before["deposit_amount"] = _money(case.deposit_amount)

        for name, value in updated.items():
            setattr(case, name, value)
        case.deposit_amount = deposit

        if case.status == CaseStatus.ACTIVE:
            snapshot = self.rule_snapshots.snapshot(case.rule_set)
            case.due_date = deadline_engine.compute_due_date(case.move_out_date, snapshot.return_deadline_days)
            case.deposit_interest = self._interest_for(
                snapshot, case.deposit_amount, case.lease_start_date, case.lease_end_date
            )

        self.audit.record(
            case,
            "case_updated",
            f"Case details updated: {', '.join(sorted(changes))}",
            actor_id=actor_id,
            metadata={"before": before, "changed": sorted(changes), "due_date": case.due_date.isoformat()},
        )
        return self._save(case)

    # =========================================================================
    # DEDUCTIONS
    # =========================================================================

    def add_deduction(
        self,
        case_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        case = self._get_for_update(case_id, expected_version, actor_id)

        unknown = sorted(set(data) - set(EDITABLE_DEDUCTION_FIELDS))
        if unknown:
            raise ValidationError("Unknown deduction fields", details={"fields": unknown})
        for required in ("description", "category", "amount"):
            if data.get(required) in (None, ""):
                raise ValidationError(f"{required} is required", details={"field": required})

        deduction = DeductionDB(
            id=str(uuid4()),
            case_id=case.id,
            sort_order=len(case.deductions),
            attachment_ids=[],
            ai_generated=False,
        )
        self._apply_deduction_fields(case, deduction, data)
        case.deductions.append(deduction)

        self.audit.record(
            case,
            "deduction_added",
            f"Added deduction: {deduction.description} (${_money(deduction.amount)})",
            actor_id=actor_id,
            metadata={"deduction_id": deduction.id, "amount": _money(deduction.amount),
                      "category": deduction.category.value},
        )
        return self._save(case)

    def update_deduction(
        self,
        case_id: str,
        deduction_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        case = self._get_for_update(case_id, expected_version, actor_id)
        deduction = self._get_deduction(case, deduction_id)

        unknown = sorted(set(changes) - set(EDITABLE_DEDUCTION_FIELDS))
        if unknown:
            raise ValidationError("Unknown deduction fields", details={"fields": unknown})

        self._apply_deduction_fields(case, deduction, changes)
        deduction.updated_at = self.clock()

        self.audit.record(
            case,
            "deduction_updated",
            f"Updated deduction: {deduction.description}",
            actor_id=actor_id,
            metadata={"deduction_id": deduction.id, "changed": sorted(changes)},
        )
        return self._save(case)

    def delete_deduction(
        self,
        case_id: str,
        deduction_id: str,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        case = self._get_for_update(case_id, expected_version, actor_id)
        deduction = self._get_deduction(case, deduction_id)

        case.deductions.remove(deduction)

        self.audit.record(
            case,
            "deduction_deleted",
            f"Deleted deduction: {deduction.description} (${_money(deduction.amount)})",
            actor_id=actor_id,
            metadata={"deduction_id": deduction.id, "amount": _money(deduction.amount)},
        )
        return self._save(case)

    # =========================================================================
    # AI WORDING SUGGESTIONS
    # =========================================================================

    def suggest_description(self, case_id: str, deduction_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Ask the text improver for wording. Read-only: nothing is applied."""
        case = self._get_case(case_id, user_id)
        deduction = self._get_deduction(case, deduction_id)

        jurisdiction = case.rule_set.jurisdiction
        label = f"{jurisdiction.city}, {jurisdiction.state_code}" if jurisdiction.city else jurisdiction.state_code
        suggestion = request_suggestion(self.improver, build_context(deduction, label))

        return {
            "deduction_id": deduction.id,
            "current_description": deduction.description,
            **suggestion.to_dict(),
        }

    def accept_suggestion(
        self,
        case_id: str,
        deduction_id: str,
        description: str,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply AI wording a person has explicitly accepted.
        The first pre-AI description is kept in original_description.
        """
        case = self._get_for_update(case_id, expected_version, actor_id)
        deduction = self._get_deduction(case, deduction_id)

        text = (description or "").strip()
        if not text:
            raise ValidationError("Accepted description cannot be empty", details={"field": "description"})

        previous = deduction.description
        if deduction.original_description is None:
            deduction.original_description = previous
        deduction.description = text
        deduction.ai_generated = True
        deduction.updated_at = self.clock()

        self.audit.record(
            case,
            "deduction_ai_improved",
            f"Accepted AI wording for deduction: {text}",
            actor_id=actor_id,
            metadata={"deduction_id": deduction.id, "previous_description": previous,
                      "original_description": deduction.original_description},
        )
        return self._save(case)

    # =========================================================================
    # CHECKLIST
    # =========================================================================

    def add_checklist_item(
        self,
        case_id: str,
        label: str,
        blocks_export: bool = False,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        case = self._get_for_update(case_id, expected_version, actor_id)
        if not label or not label.strip():
            raise ValidationError("Checklist label is required", details={"field": "label"})

        next_order = max((i.sort_order for i in case.checklist_items), default=0) + 1
        item = ChecklistItemDB(
            id=str(uuid4()),
            case_id=case.id,
            label=label.strip(),
            blocks_export=blocks_export,
            completes_on_send=False,
            completed=False,
            sort_order=next_order,
        )
        case.checklist_items.append(item)

        self.audit.record(
            case, "checklist_item_added", f"Added checklist item: {item.label}",
            actor_id=actor_id, metadata={"item_id": item.id, "blocks_export": blocks_export},
        )
        return self._save(case)

    def set_checklist_item_completed(
        self,
        case_id: str,
        item_id: str,
        completed: bool,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        case = self._get_for_update(case_id, expected_version, actor_id)
        item = self._get_checklist_item(case, item_id)

        if bool(item.completed) == bool(completed):
            return self.serialize_case(case)

        item.completed = bool(completed)
        item.completed_at = self.clock() if completed else None

        action = "checklist_item_completed" if completed else "checklist_item_uncompleted"
        verb = "Completed" if completed else "Reopened"
        self.audit.record(
            case, action, f"{verb} checklist item: {item.label}",
            actor_id=actor_id, metadata={"item_id": item.id},
        )
        return self._save(case)

    def delete_checklist_item(
        self,
        case_id: str,
        item_id: str,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        case = self._get_for_update(case_id, expected_version, actor_id)
        item = self._get_checklist_item(case, item_id)

        case.checklist_items.remove(item)

        self.audit.record(
            case, "checklist_item_deleted", f"Deleted checklist item: {item.label}",
            actor_id=actor_id, metadata={"item_id": item.id, "blocks_export": bool(item.blocks_export)},
        )
        return self._save(case)

    # =========================================================================
    # TENANTS / FORWARDING ADDRESS
    # =========================================================================

    def update_forwarding_address(
        self,
        case_id: str,
        tenant_id: str,
        status: ForwardingAddressStatus,
        address: Optional[str] = None,
        request_method: Optional[str] = None,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        case = self._get_for_update(case_id, expected_version, actor_id)
        tenant = next((t for t in case.tenants if t.id == tenant_id), None)
        if tenant is None:
            raise NotFoundError("Tenant not found", details={"tenant_id": tenant_id})

        if status == ForwardingAddressStatus.PROVIDED and not (address or "").strip():
            raise ValidationError("An address is required when status is PROVIDED", details={"field": "address"})

        previous = tenant.forwarding_address_status
        tenant.forwarding_address_status = status
        if status == ForwardingAddressStatus.PROVIDED:
            tenant.forwarding_address = address.strip()
        if status == ForwardingAddressStatus.REQUESTED:
            tenant.forwarding_address_requested_at = self.clock()
            tenant.forwarding_address_request_method = request_method

        self.audit.record(
            case,
            "forwarding_address_updated",
            f"Forwarding address for {tenant.name}: {status.value.replace('_', ' ').lower()}",
            actor_id=actor_id,
            metadata={"tenant_id": tenant.id, "previous_status": previous.value, "new_status": status.value,
                      "request_method": request_method},
        )
        return self._save(case)

    # =========================================================================
    # ATTACHMENTS
    # =========================================================================

    def add_attachment(
        self,
        case_id: str,
        file_name: str,
        storage_path: str,
        attachment_type: AttachmentType = AttachmentType.OTHER,
        mime_type: Optional[str] = None,
        size_bytes: Optional[int] = None,
        tags: Optional[List[str]] = None,
        deduction_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Register an uploaded evidence file. When deduction_id is given the
        attachment is also linked to that deduction as evidence.
        """
        case = self._get_for_update(case_id, expected_version, actor_id)
        if not file_name or not storage_path:
            raise ValidationError("file_name and storage_path are required")

        attachment = AttachmentDB(
            id=str(uuid4()),
            case_id=case.id,
            attachment_type=attachment_type,
            file_name=file_name,
            storage_path=storage_path,
            mime_type=mime_type,
            size_bytes=size_bytes,
            tags=list(tags or []),
            uploaded_at=self.clock(),
        )
        case.attachments.append(attachment)

        if deduction_id is not None:
            deduction = self._get_deduction(case, deduction_id)
            # Reassign so the JSON column registers the change
            deduction.attachment_ids = list(deduction.attachment_ids or []) + [attachment.id]

        self.audit.record(
            case, "attachment_added", f"Uploaded {attachment_type.value.lower()}: {file_name}",
            actor_id=actor_id,
            metadata={"attachment_id": attachment.id, "deduction_id": deduction_id},
        )
        return self._save(case)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def transition_status(
        self,
        case_id: str,
        new_status: CaseStatus,
        payload: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move a case through its lifecycle.

        payload carries delivery fields for SENT and the reason for CLOSED.
        Returns the case plus any readiness warnings.
        """
        case = self._get_case(case_id, actor_id)
        self._check_version(case, expected_version)

        payload = payload or {}
        result = self.state_machine.transition(
            case,
            new_status,
            actor_id=actor_id,
            delivery_method=payload.get("delivery_method"),
            tracking_number=payload.get("tracking_number"),
            sent_at=payload.get("sent_at"),
            delivery_address=payload.get("delivery_address"),
            proof_attachment_ids=payload.get("proof_attachment_ids"),
            reason=payload.get("reason"),
        )

        serialized = self._save(case)
        serialized["warnings"] = result["warnings"]
        return serialized

    # =========================================================================
    # DERIVED VIEWS
    # =========================================================================

    def compute_readiness(self, case_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """The same gate the SENT transition applies, evaluated now."""
        case = self._get_case(case_id, user_id)
        return self.state_machine.readiness(case, for_send=True).to_dict()

    def compute_exposure(self, case_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        case = self._get_case(case_id, user_id)
        snapshot = self.rule_snapshots.snapshot(case.rule_set)
        context = self.exposure_context(case)

        estimate = estimate_exposure(case.deposit_amount, snapshot.penalties, context, self.penalty_parser)
        result = estimate.to_dict()
        result["citations"] = [{"code": c.code, "title": c.title, "url": c.url} for c in snapshot.citations]
        return result

    def exposure_context(self, case: CaseDB) -> ExposureContext:
        """Case facts the exposure estimator needs, computed from persisted data."""
        assessments = [(d, self._assess(d)) for d in case.deductions]
        refund = deadline_engine.compute_refund(
            case.deposit_amount,
            case.deposit_interest,
            deadline_engine.sum_deductions(d.amount for d in case.deductions),
        )
        return ExposureContext(
            days_remaining=deadline_engine.days_remaining(case.due_date, self.clock()),
            already_sent=case.sent_at is not None,
            missing_evidence_count=sum(1 for d, _ in assessments if not d.has_evidence),
            normal_wear_count=sum(1 for d, _ in assessments if d.damage_type == DamageType.NORMAL_WEAR),
            high_risk_count=sum(
                1 for d, a in assessments
                if effective_risk_level(a, d.risk_level_override) == RiskLevel.HIGH
            ),
            has_itemized_statement=any(
                doc.document_type == DocumentType.ITEMIZED_STATEMENT for doc in case.documents
            ),
            interest_owed=deadline_engine.to_decimal(case.deposit_interest),
            pending_forwarding_addresses=sum(
                1 for t in case.tenants
                if t.forwarding_address_status not in (ForwardingAddressStatus.PROVIDED,
                                                       ForwardingAddressStatus.REFUSED)
            ),
            incomplete_blocking_items=sum(
                1 for i in case.checklist_items if i.blocks_export and not i.completed
            ),
            over_deducted_amount=max(-refund, Decimal("0")),
        )

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    def generate_document(
        self,
        case_id: str,
        document_type: DocumentType,
        version: Optional[int] = None,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Generate (or, for a repeated version, return) a case document.

        Any renderer/storage failure rolls the session back so the case is
        left exactly as it was.
        """
        case = self._get_case(case_id, actor_id)

        if version is not None:
            existing = next(
                (d for d in case.documents if d.document_type == document_type and d.version == version),
                None,
            )
            if existing is not None:
                return self.documents.serialize(existing)

        self._check_version(case, expected_version)
        self._ensure_editable(case)

        snapshot = self.serialize_case(case)
        snapshot["audit_events"] = [serialize_event(e) for e in self.audit.events(case.id)]

        try:
            document = self.documents.generate(case, document_type, snapshot, actor_id=actor_id, version=version)
        except UpstreamFailureError:
            self.db.rollback()
            raise

        label = DOCUMENT_CHECKLIST_LABELS.get(document_type)
        if label:
            for item in case.checklist_items:
                if item.label.lower() == label and not item.completed:
                    item.completed = True
                    item.completed_at = self.clock()

        self._touch(case)
        self._commit(case)
        return self.documents.serialize(document)

    # =========================================================================
    # SERIALIZATION
    # =========================================================================

    def serialize_case(self, case: CaseDB) -> Dict[str, Any]:
        """Persisted fields plus derived fields recomputed on every call."""
        snapshot = self.rule_snapshots.snapshot(case.rule_set)
        jurisdiction = case.rule_set.jurisdiction

        total = deadline_engine.sum_deductions(d.amount for d in case.deductions)
        remaining = deadline_engine.days_remaining(case.due_date, self.clock())

        return {
            "id": case.id,
            "version": case.version,
            "status": case.status.value,
            "allowed_transitions": [s.value for s in self.state_machine.get_next_states(case.status)],
            "property": self._serialize_property(case.property),
            "jurisdiction": {
                "id": jurisdiction.id,
                "state": jurisdiction.state,
                "state_code": jurisdiction.state_code,
                "city": jurisdiction.city,
                "coverage_level": jurisdiction.coverage_level.value,
            },
            "rule_set": snapshot.to_dict(),
            "tenants": [self._serialize_tenant(t) for t in case.tenants],
            "lease_start_date": _iso(case.lease_start_date),
            "lease_end_date": _iso(case.lease_end_date),
            "move_out_date": _iso(case.move_out_date),
            "deposit_amount": _money(case.deposit_amount),
            "deposit_interest": _money(case.deposit_interest),
            "due_date": _iso(case.due_date),
            "days_remaining": remaining,
            "days_remaining_label": deadline_engine.format_days_remaining(remaining),
            "urgency": deadline_engine.deadline_urgency(remaining),
            "total_deductions": _money(total),
            "refund_amount": _money(deadline_engine.compute_refund(case.deposit_amount, case.deposit_interest, total)),
            "delivery_method": case.delivery_method,
            "tracking_number": case.tracking_number,
            "sent_at": _iso(case.sent_at),
            "delivery_address": case.delivery_address,
            "proof_attachment_ids": list(case.proof_attachment_ids or []),
            "closed_at": _iso(case.closed_at),
            "closed_reason": case.closed_reason,
            "deductions": [self._serialize_deduction(d) for d in case.deductions],
            "checklist": [self._serialize_checklist_item(i) for i in case.checklist_items],
            "documents": [self.documents.serialize(d) for d in case.documents],
            "attachments": [self._serialize_attachment(a) for a in case.attachments],
            "created_at": _iso(case.created_at),
            "updated_at": _iso(case.updated_at),
        }

    def _serialize_deduction(self, deduction: DeductionDB) -> Dict[str, Any]:
        assessment = self._assess(deduction)
        return {
            "id": deduction.id,
            "description": deduction.description,
            "category": deduction.category.value,
            "amount": _money(deduction.amount),
            "notes": deduction.notes,
            "attachment_ids": list(deduction.attachment_ids or []),
            "has_evidence": deduction.has_evidence,
            "item_age_months": deduction.item_age_months,
            "damage_type": deduction.damage_type.value if deduction.damage_type else None,
            "ai_generated": bool(deduction.ai_generated),
            "original_description": deduction.original_description,
            "risk": assessment.to_dict(),
            "risk_level_override": deduction.risk_level_override.value if deduction.risk_level_override else None,
            "risk_level": effective_risk_level(assessment, deduction.risk_level_override).value,
            "sort_order": deduction.sort_order,
        }

    @staticmethod
    def _serialize_property(prop: PropertyDB) -> Dict[str, Any]:
        return {
            "id": prop.id,
            "address": prop.address,
            "unit": prop.unit,
            "city": prop.city,
            "state": prop.state,
            "zip_code": prop.zip_code,
            "jurisdiction_id": prop.jurisdiction_id,
        }

    @staticmethod
    def _serialize_tenant(tenant: TenantDB) -> Dict[str, Any]:
        return {
            "id": tenant.id,
            "name": tenant.name,
            "email": tenant.email,
            "phone": tenant.phone,
            "is_primary": bool(tenant.is_primary),
            "forwarding_address": tenant.forwarding_address,
            "forwarding_address_status": tenant.forwarding_address_status.value,
            "forwarding_address_requested_at": _iso(tenant.forwarding_address_requested_at),
            "forwarding_address_request_method": tenant.forwarding_address_request_method,
        }

    @staticmethod
    def _serialize_checklist_item(item: ChecklistItemDB) -> Dict[str, Any]:
        return {
            "id": item.id,
            "label": item.label,
            "completed": bool(item.completed),
            "completed_at": _iso(item.completed_at),
            "blocks_export": bool(item.blocks_export),
            "completes_on_send": bool(item.completes_on_send),
            "sort_order": item.sort_order,
        }

    @staticmethod
    def _serialize_attachment(attachment: AttachmentDB) -> Dict[str, Any]:
        return {
            "id": attachment.id,
            "attachment_type": attachment.attachment_type.value,
            "file_name": attachment.file_name,
            "storage_path": attachment.storage_path,
            "mime_type": attachment.mime_type,
            "size_bytes": attachment.size_bytes,
            "tags": list(attachment.tags or []),
            "uploaded_at": _iso(attachment.uploaded_at),
        }

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _get_case(self, case_id: str, user_id: Optional[str] = None) -> CaseDB:
        case = self.db.query(CaseDB).filter(CaseDB.id == case_id).first()
        if not case or (user_id is not None and case.user_id is not None and case.user_id != user_id):
            raise NotFoundError("Case not found", details={"case_id": case_id})
        return case

    def _get_for_update(self, case_id: str, expected_version: Optional[int], actor_id: Optional[str]) -> CaseDB:
        case = self._get_case(case_id, actor_id)
        self._check_version(case, expected_version)
        self._ensure_editable(case)
        return case

    @staticmethod
    def _check_version(case: CaseDB, expected_version: Optional[int]):
        if expected_version is not None and case.version != expected_version:
            logger.warning(
                f"Version conflict on case {case.id}: expected {expected_version}, found {case.version}"
            )
            raise ConflictError(
                "Case was modified by someone else. Reload and try again.",
                details={"expected_version": expected_version, "current_version": case.version},
            )

    def _ensure_editable(self, case: CaseDB):
        if not self.state_machine.is_editable(case.status):
            raise ValidationError(
                f"Case is {case.status.value} and can no longer be edited",
                details={"status": case.status.value},
            )

    @staticmethod
    def _get_deduction(case: CaseDB, deduction_id: str) -> DeductionDB:
        deduction = next((d for d in case.deductions if d.id == deduction_id), None)
        if deduction is None:
            raise NotFoundError("Deduction not found", details={"deduction_id": deduction_id})
        return deduction

    @staticmethod
    def _get_checklist_item(case: CaseDB, item_id: str) -> ChecklistItemDB:
        item = next((i for i in case.checklist_items if i.id == item_id), None)
        if item is None:
            raise NotFoundError("Checklist item not found", details={"item_id": item_id})
        return item

    @staticmethod
    def _assess(deduction: DeductionDB):
        return score_deduction(DeductionFacts(
            description=deduction.description,
            category=deduction.category,
            amount=deadline_engine.to_decimal(deduction.amount),
            has_evidence=deduction.has_evidence,
            damage_type=deduction.damage_type,
            ai_generated=bool(deduction.ai_generated),
            item_age_months=deduction.item_age_months,
        ))

    def _apply_deduction_fields(self, case: CaseDB, deduction: DeductionDB, data: Dict[str, Any]):
        if "description" in data:
            text = (data["description"] or "").strip()
            if not text:
                raise ValidationError("Description cannot be empty", details={"field": "description"})
            deduction.description = text
        if "category" in data:
            deduction.category = self._parse_enum(DeductionCategory, data["category"], "category")
        if "amount" in data:
            deduction.amount = self._parse_amount(data["amount"], "amount")
        if "notes" in data:
            deduction.notes = data["notes"]
        if "attachment_ids" in data:
            ids = list(data["attachment_ids"] or [])
            known = {a.id for a in case.attachments}
            unknown = [a for a in ids if a not in known]
            if unknown:
                raise ValidationError("Attachments not found on this case", details={"attachment_ids": unknown})
            deduction.attachment_ids = ids
        if "risk_level_override" in data:
            value = data["risk_level_override"]
            deduction.risk_level_override = (
                self._parse_enum(RiskLevel, value, "risk_level_override") if value is not None else None
            )
        if "item_age_months" in data:
            age = data["item_age_months"]
            if age is not None and int(age) < 0:
                raise ValidationError("item_age_months cannot be negative", details={"field": "item_age_months"})
            deduction.item_age_months = int(age) if age is not None else None
        if "damage_type" in data:
            value = data["damage_type"]
            deduction.damage_type = self._parse_enum(DamageType, value, "damage_type") if value is not None else None

    @staticmethod
    def _parse_enum(enum_cls, value, field_name: str):
        try:
            return value if isinstance(value, enum_cls) else enum_cls(str(value).upper())
        except ValueError:
            raise ValidationError(
                f"Invalid {field_name}: {value}",
                details={"field": field_name, "allowed": [m.value for m in enum_cls]},
            )

    @staticmethod
    def _parse_amount(value, field_name: str) -> Decimal:
        try:
            amount = deadline_engine.to_decimal(value)
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid {field_name}", details={"field": field_name})
        if not amount.is_finite() or amount <= 0:
            raise ValidationError(f"{field_name} must be greater than zero", details={"field": field_name})
        return deadline_engine.round_money(amount)

    @staticmethod
    def _validate_dates(lease_start_date: date, lease_end_date: date, move_out_date: date):
        if not lease_start_date or not lease_end_date or not move_out_date:
            raise ValidationError("Lease start, lease end and move-out dates are required")
        if lease_end_date < lease_start_date:
            raise ValidationError("Lease end date cannot be before lease start", details={"field": "lease_end_date"})
        if move_out_date < lease_start_date:
            raise ValidationError("Move-out date cannot be before lease start", details={"field": "move_out_date"})

    @staticmethod
    def _interest_for(snapshot, deposit, lease_start_date: date, lease_end_date: date) -> Decimal:
        return deadline_engine.compute_interest(
            deposit,
            snapshot.interest_rate,
            deadline_engine.held_days(lease_start_date, lease_end_date),
            interest_required=snapshot.interest_required,
            min_holding_days=snapshot.interest_min_holding_days,
            admin_fee_percent=snapshot.interest_admin_fee_percent,
        )

    def _touch(self, case: CaseDB):
        # Child-only edits must still move the case version
        case.updated_at = self.clock()
        case.version = case.version + 1

    def _save(self, case: CaseDB) -> Dict[str, Any]:
        self._touch(case)
        self._commit(case)
        return self.serialize_case(case)

    def _commit(self, case: CaseDB):
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            logger.warning(f"Concurrent update detected on case {case.id}")
            raise ConflictError("Case was modified by someone else. Reload and try again.",
                                details={"case_id": case.id})
        self.db.refresh(case)
