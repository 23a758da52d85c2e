"""Maps compliance service errors onto HTTP responses."""
from fastapi import HTTPException

from ..services.compliance import ComplianceError


def http_error(error: ComplianceError) -> HTTPException:
    """HTTPException carrying the error code, message and details."""
    return HTTPException(status_code=error.status_code, detail=error.to_dict())
