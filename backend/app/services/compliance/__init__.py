"""
Deposit Compliance Services

Rule engine and case lifecycle for security-deposit return compliance.

- JurisdictionResolver: (state, city) -> jurisdiction + current rule set
- RuleSnapshotManager: append-only rule set revisions
- deadline_engine / exposure_estimator / risk_scorer / readiness_gate: pure calculators
- CaseStateMachine: ACTIVE -> PENDING_SEND -> SENT -> CLOSED
- AuditTrailRecorder: append-only case history
- CaseService: orchestration used by the API routers
"""

from .errors import (
    ComplianceError,
    NotFoundError,
    ValidationError,
    RuleSetImmutableError,
    InvalidTransitionError,
    ConflictError,
    UpstreamFailureError,
)
from .audit_trail import AuditTrailRecorder
from .rule_snapshots import RuleSnapshotManager
from .jurisdiction_resolver import JurisdictionResolver
from .state_machine import CaseStateMachine
from .document_service import DocumentService, DocumentRenderer, ObjectStorage, LocalFileStorage, PlainTextRenderer
from .text_suggestions import TextImprover, TextSuggestion
from .case_service import CaseService

__all__ = [
    'ComplianceError',
    'NotFoundError',
    'ValidationError',
    'RuleSetImmutableError',
    'InvalidTransitionError',
    'ConflictError',
    'UpstreamFailureError',
    'AuditTrailRecorder',
    'RuleSnapshotManager',
    'JurisdictionResolver',
    'CaseStateMachine',
    'DocumentService',
    'DocumentRenderer',
    'ObjectStorage',
    'LocalFileStorage',
    'PlainTextRenderer',
    'TextImprover',
    'TextSuggestion',
    'CaseService',
]
