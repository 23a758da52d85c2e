"""
Deposit Compliance Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, Date, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS FOR JURISDICTION / RULE DATA
# =============================================================================

class CoverageLevel(str, Enum):
    """How completely a jurisdiction's rules are modelled."""
    FULL = "FULL"
    PARTIAL = "PARTIAL"
    STATE_ONLY = "STATE_ONLY"


# =============================================================================
# ENUMS FOR CASE LIFECYCLE
# =============================================================================

class CaseStatus(str, Enum):
    """States in the case lifecycle state machine."""
    ACTIVE = "ACTIVE"
    PENDING_SEND = "PENDING_SEND"
    SENT = "SENT"
    CLOSED = "CLOSED"


class DeductionCategory(str, Enum):
    """Deduction categories claimed against a deposit."""
    CLEANING = "CLEANING"
    REPAIRS = "REPAIRS"
    DAMAGES = "DAMAGES"
    UNPAID_RENT = "UNPAID_RENT"
    OTHER = "OTHER"


class DamageType(str, Enum):
    """Whether the condition is chargeable to the tenant."""
    NORMAL_WEAR = "NORMAL_WEAR"
    TENANT_DAMAGE = "TENANT_DAMAGE"
    UNKNOWN = "UNKNOWN"


class RiskLevel(str, Enum):
    """Qualitative dispute risk."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class DocumentType(str, Enum):
    """Generated document kinds."""
    NOTICE_LETTER = "NOTICE_LETTER"
    ITEMIZED_STATEMENT = "ITEMIZED_STATEMENT"
    PROOF_PACKET = "PROOF_PACKET"
    RULE_SNAPSHOT = "RULE_SNAPSHOT"


class AttachmentType(str, Enum):
    """Uploaded evidence kinds."""
    PHOTO = "PHOTO"
    RECEIPT = "RECEIPT"
    INVOICE = "INVOICE"
    DELIVERY_PROOF = "DELIVERY_PROOF"
    OTHER = "OTHER"


class ForwardingAddressStatus(str, Enum):
    """Progress of collecting a tenant's forwarding address."""
    NOT_REQUESTED = "NOT_REQUESTED"
    REQUESTED = "REQUESTED"
    PROVIDED = "PROVIDED"
    REFUSED = "REFUSED"


# =============================================================================
# USERS
# =============================================================================

class UserDB(Base):
    """Landlord / property manager account."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="user")  # user | admin
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    properties = relationship("PropertyDB", back_populates="user")
    cases = relationship("CaseDB", back_populates="user")


# =============================================================================
# JURISDICTIONS AND RULE SETS
# =============================================================================

class JurisdictionDB(Base):
    """
    A state or city whose deposit law is modelled.
    City rows (city IS NOT NULL) override the state row with the same code.
    """
    __tablename__ = "jurisdictions"
    __table_args__ = (
        UniqueConstraint("state_code", "city", name="uq_jurisdiction_state_city"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    state = Column(String(100), nullable=False)          # "California"
    state_code = Column(String(2), nullable=False, index=True)  # "CA"
    city = Column(String(100), nullable=True)            # None for state-level rules
    coverage_level = Column(SQLEnum(CoverageLevel), nullable=False, default=CoverageLevel.STATE_ONLY)
    last_verified = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    rule_sets = relationship("RuleSetDB", back_populates="jurisdiction", order_by="RuleSetDB.revision")


class RuleSetDB(Base):
    """
    Versioned snapshot of a jurisdiction's deposit rules.
    Rows referenced by a case are never modified; changes become new revisions.
    """
    __tablename__ = "rule_sets"
    __table_args__ = (
        UniqueConstraint("jurisdiction_id", "revision", name="uq_rule_set_revision"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    jurisdiction_id = Column(String(36), ForeignKey("jurisdictions.id"), nullable=False, index=True)

    # Versioning
    version = Column(String(20), nullable=False)        # Display label, e.g. "2025.1"
    revision = Column(Integer, nullable=False, default=1)  # Monotonic per jurisdiction
    effective_date = Column(Date, nullable=False)

    # Deadline (required - NULL here is bad seed data)
    return_deadline_days = Column(Integer, nullable=True)

    # Interest
    interest_required = Column(Boolean, nullable=False, default=False)
    interest_rate = Column(Numeric(6, 4), nullable=True)             # 0.0500 = 5% per annum
    interest_rate_source = Column(String(255), nullable=True)
    interest_calculation_method = Column(String(50), nullable=True)  # simple
    interest_min_holding_days = Column(Integer, nullable=True)       # e.g. 365 for SF
    interest_admin_fee_percent = Column(Numeric(5, 2), nullable=True)  # Annual %, e.g. 1.00 for NY

    # Itemization
    itemization_required = Column(Boolean, nullable=False, default=True)
    receipt_threshold = Column(Numeric(12, 2), nullable=True)

    # Limits and delivery
    max_deposit_months = Column(Numeric(4, 1), nullable=True)
    allowed_delivery_methods = Column(JSON, nullable=True, default=list)  # ["mail", "hand_delivery"]

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    jurisdiction = relationship("JurisdictionDB", back_populates="rule_sets")
    citations = relationship("CitationDB", back_populates="rule_set", order_by="CitationDB.sort_order")
    penalties = relationship("PenaltyDB", back_populates="rule_set", order_by="PenaltyDB.sort_order")


class CitationDB(Base):
    """Statute or ordinance cited by a rule set."""
    __tablename__ = "citations"

    id = Column(String(36), primary_key=True)  # UUID
    rule_set_id = Column(String(36), ForeignKey("rule_sets.id"), nullable=False, index=True)
    code = Column(String(100), nullable=False)  # "Cal. Civ. Code § 1950.5"
    title = Column(String(255), nullable=True)
    url = Column(String(500), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    rule_set = relationship("RuleSetDB", back_populates="citations")


class PenaltyDB(Base):
    """Free-text penalty clause (parsed for multipliers by the exposure estimator)."""
    __tablename__ = "penalties"

    id = Column(String(36), primary_key=True)  # UUID
    rule_set_id = Column(String(36), ForeignKey("rule_sets.id"), nullable=False, index=True)
    condition = Column(String(255), nullable=False)  # "Bad faith retention"
    penalty = Column(String(255), nullable=False)    # "Up to 2x deposit amount"
    description = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    rule_set = relationship("RuleSetDB", back_populates="penalties")


# =============================================================================
# PROPERTIES AND CASES
# =============================================================================

class PropertyDB(Base):
    """Rental property owned by a user."""
    __tablename__ = "properties"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    address = Column(String(255), nullable=False)
    unit = Column(String(50), nullable=True)
    city = Column(String(100), nullable=False)
    state = Column(String(2), nullable=False)  # 2-letter code
    zip_code = Column(String(10), nullable=True)
    jurisdiction_id = Column(String(36), ForeignKey("jurisdictions.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("UserDB", back_populates="properties")
    jurisdiction = relationship("JurisdictionDB")
    cases = relationship("CaseDB", back_populates="property")


class CaseDB(Base):
    """
    Compliance case - one per move-out event.
    Aggregate root for tenants, deductions, checklist, documents and audit events.
    The service bumps version on every change; the ORM checks the old value
    in the UPDATE so a concurrent writer raises StaleDataError.
    """
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False, index=True)
    rule_set_id = Column(String(36), ForeignKey("rule_sets.id"), nullable=False)  # Locked at creation

    # Lease facts
    lease_start_date = Column(Date, nullable=False)
    lease_end_date = Column(Date, nullable=False)
    move_out_date = Column(Date, nullable=False)
    deposit_amount = Column(Numeric(12, 2), nullable=False)
    deposit_interest = Column(Numeric(12, 2), nullable=False, default=0)

    # Deadline (frozen once the case leaves ACTIVE)
    due_date = Column(Date, nullable=False)

    status = Column(SQLEnum(CaseStatus), nullable=False, default=CaseStatus.ACTIVE)

    # Delivery
    delivery_method = Column(String(50), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivery_address = Column(Text, nullable=True)
    proof_attachment_ids = Column(JSON, nullable=True, default=list)

    # Closing
    closed_at = Column(DateTime, nullable=True)
    closed_reason = Column(Text, nullable=True)

    # Optimistic concurrency stamp
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    # Relationships
    user = relationship("UserDB", back_populates="cases")
    property = relationship("PropertyDB", back_populates="cases")
    rule_set = relationship("RuleSetDB")
    tenants = relationship("TenantDB", back_populates="case", cascade="all, delete-orphan",
                           order_by="TenantDB.created_at")
    deductions = relationship("DeductionDB", back_populates="case", cascade="all, delete-orphan",
                              order_by="DeductionDB.sort_order")
    checklist_items = relationship("ChecklistItemDB", back_populates="case", cascade="all, delete-orphan",
                                   order_by="ChecklistItemDB.sort_order")
    documents = relationship("DocumentDB", back_populates="case", order_by="DocumentDB.generated_at")
    attachments = relationship("AttachmentDB", back_populates="case", order_by="AttachmentDB.uploaded_at")
    # No delete cascade - audit rows outlive everything
    audit_events = relationship("AuditEventDB", back_populates="case",
                                order_by=lambda: [AuditEventDB.timestamp, AuditEventDB.sequence])


class TenantDB(Base):
    """Tenant on a case, with forwarding address tracking."""
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    is_primary = Column(Boolean, nullable=False, default=False)

    forwarding_address = Column(Text, nullable=True)
    forwarding_address_status = Column(SQLEnum(ForwardingAddressStatus), nullable=False,
                                       default=ForwardingAddressStatus.NOT_REQUESTED)
    forwarding_address_requested_at = Column(DateTime, nullable=True)
    forwarding_address_request_method = Column(String(50), nullable=True)  # email, mail, text

    created_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("CaseDB", back_populates="tenants")


class DeductionDB(Base):
    """
    Amount claimed against the deposit.
    Risk is always recomputed; risk_level_override holds explicit user overrides only.
    """
    __tablename__ = "deductions"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    category = Column(SQLEnum(DeductionCategory), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    notes = Column(Text, nullable=True)
    attachment_ids = Column(JSON, nullable=True, default=list)
    risk_level_override = Column(SQLEnum(RiskLevel), nullable=True)
    item_age_months = Column(Integer, nullable=True)
    damage_type = Column(SQLEnum(DamageType), nullable=True)

    # AI-assisted wording (set only when a suggestion is accepted)
    ai_generated = Column(Boolean, nullable=False, default=False)
    original_description = Column(Text, nullable=True)

    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    case = relationship("CaseDB", back_populates="deductions")

    @property
    def has_evidence(self) -> bool:
        return bool(self.attachment_ids)


class ChecklistItemDB(Base):
    """Task on a case; blocks_export items gate sending."""
    __tablename__ = "checklist_items"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    label = Column(String(255), nullable=False)
    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    blocks_export = Column(Boolean, nullable=False, default=False)
    completes_on_send = Column(Boolean, nullable=False, default=False)  # Satisfied by the SENT transition
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("CaseDB", back_populates="checklist_items")


class DocumentDB(Base):
    """
    Generated document. Only inserted after the bytes are in object storage.
    """
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("case_id", "document_type", "version", name="uq_document_version"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("cases.id"), nullable=False, index=True)
    document_type = Column(SQLEnum(DocumentType), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    file_name = Column(String(255), nullable=False)
    storage_path = Column(String(500), nullable=False)
    content_hash = Column(String(64), nullable=False)  # SHA-256 of stored bytes
    generated_by = Column(String(36), nullable=True)
    generated_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("CaseDB", back_populates="documents")


class AttachmentDB(Base):
    """Evidence file (photo, receipt, delivery proof) registered on a case."""
    __tablename__ = "attachments"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("cases.id"), nullable=False, index=True)
    attachment_type = Column(SQLEnum(AttachmentType), nullable=False, default=AttachmentType.OTHER)
    file_name = Column(String(255), nullable=False)
    storage_path = Column(String(500), nullable=False)
    mime_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=True)
    tags = Column(JSON, nullable=True, default=list)
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("CaseDB", back_populates="attachments")


class AuditEventDB(Base):
    """
    Immutable record of every state-changing action on a case.
    Ordered by timestamp, ties broken by per-case sequence.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_case_order", "case_id", "timestamp", "sequence"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("cases.id"), nullable=False)

    action = Column(String(50), nullable=False)  # case_created, status_sent, etc.
    description = Column(Text, nullable=False)
    actor_id = Column(String(36), nullable=True)

    # Event Metadata (named to avoid the reserved 'metadata' attribute)
    event_metadata = Column(JSON, nullable=True)

    sequence = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    case = relationship("CaseDB", back_populates="audit_events")
