"""Deposit Compliance Engine - API Routers"""
from .auth import router as auth_router
from .jurisdictions import router as jurisdictions_router
from .properties import router as properties_router
from .cases import router as cases_router

__all__ = [
    "auth_router",
    "jurisdictions_router",
    "properties_router",
    "cases_router",
]
