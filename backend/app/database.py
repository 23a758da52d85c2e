"""
Deposit Compliance Engine - Database Configuration

Environment:
    DATABASE_URL   SQLAlchemy URL (default: local PostgreSQL, current OS user)
    DATABASE_ECHO  "1"/"true" to log every SQL statement

Tests and single-user installs may point DATABASE_URL at SQLite.
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/deposit_compliance"
)
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "").lower() in ("1", "true", "yes")


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # uvicorn serves requests from a worker thread pool
        return {"connect_args": {"check_same_thread": False}}
    # Drop stale pooled connections
    return {"pool_pre_ping": True}


engine = create_engine(DATABASE_URL, echo=DATABASE_ECHO, **_engine_options(DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency for FastAPI - one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create missing tables. Existing tables are left untouched."""
    # Registers mappers and the immutability listeners before create_all
    from .models import db_models  # noqa: F401
    from .services.compliance import audit_trail, rule_snapshots  # noqa: F401

    Base.metadata.create_all(bind=engine)
