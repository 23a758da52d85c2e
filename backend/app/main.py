"""
Deposit Compliance Engine - FastAPI Application

Main entry point for the deposit compliance backend.

Architecture:
- Property → JurisdictionResolver → Jurisdiction + current RuleSet
- Case opened → RuleSet locked, due date + interest computed
- Deductions → DeductionRiskScorer, ExposureEstimator
- ReadinessGate → CaseStateMachine (ACTIVE → PENDING_SEND → SENT → CLOSED)
- Every change → AuditTrail (append-only)
"""
from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import auth_router, jurisdictions_router, properties_router, cases_router
from .database import init_db

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Deposit Compliance Engine",
    description="""
    Deposit Compliance Engine - Security Deposit Return Workflow

    Guides a landlord from tenant move-out to a compliant deposit return:
    resolves the property's jurisdiction, locks the rules in force, computes
    the return deadline and interest, scores deduction risk, estimates penalty
    exposure and gates sending on readiness.

    ## Key Principles
    - Rule sets are immutable once a case references them
    - Derived values (due date, refund) are recomputed on every read
    - The audit trail is append-only
    - Edits carry the case version (If-Match) and fail on conflict
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(jurisdictions_router)
app.include_router(properties_router)
app.include_router(cases_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Deposit Compliance Engine",
        "version": "1.0.0",
        "description": "Security deposit return compliance",
        "docs": "/docs",
        "lifecycle": ["ACTIVE", "PENDING_SEND", "SENT", "CLOSED"],
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8001")))
