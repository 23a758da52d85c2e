"""
Compliance Errors

Error taxonomy shared by every compliance service.
Services raise these; routers translate them into HTTP responses.
"""
from typing import Any, Dict, Optional


class ComplianceError(Exception):
    """Base class for compliance service failures."""

    code = "COMPLIANCE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(ComplianceError):
    """Missing jurisdiction, case, deduction or related record."""
    code = "NOT_FOUND"
    status_code = 404


class ValidationError(ComplianceError):
    """Malformed or missing required input, or an unmet transition guard."""
    code = "VALIDATION_ERROR"
    status_code = 400


class RuleSetImmutableError(ValidationError):
    """Attempt to modify a rule set that a case already references."""
    code = "RULE_SET_IMMUTABLE"


class InvalidTransitionError(ComplianceError):
    """Illegal lifecycle change."""
    code = "INVALID_TRANSITION"
    status_code = 409


class ConflictError(ComplianceError):
    """Concurrent edit detected by the case version stamp."""
    code = "CONFLICT"
    status_code = 409


class UpstreamFailureError(ComplianceError):
    """Storage, renderer or AI collaborator failure, or corrupt rule data."""
    code = "UPSTREAM_FAILURE"
    status_code = 502
