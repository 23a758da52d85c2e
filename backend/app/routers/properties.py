"""
Properties - API Endpoints

A) POST /properties - Register a rental property (binds it to a jurisdiction)
B) GET  /properties - List the current user's properties
"""
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models.db_models import UserDB
from ..services.compliance import CaseService, ComplianceError
from .errors import http_error


router = APIRouter(prefix="/properties", tags=["Properties"])


class CreatePropertyRequest(BaseModel):
    address: str = Field(..., min_length=1)
    unit: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., description="State name or 2-letter code")
    zip_code: Optional[str] = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_property(
    request: CreatePropertyRequest,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    """Register a property. Fails with 404 when the state has no coverage."""
    try:
        return CaseService(db).create_property(
            user_id=current_user.id,
            address=request.address,
            city=request.city,
            state=request.state,
            zip_code=request.zip_code,
            unit=request.unit,
        )
    except ComplianceError as e:
        raise http_error(e)


@router.get("")
async def list_properties(
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    return {"properties": CaseService(db).list_properties(current_user.id)}
