#!/usr/bin/env python3
"""
Rules Administrator Seed Script
Creates (or promotes) the account allowed to publish rule set revisions.

Usage:
    python -m scripts.seed_admin <email> <username> <password>

Example:
    python -m scripts.seed_admin rules@example.com rules-admin securepassword123
"""
import sys
import os
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from app.database import SessionLocal, init_db
from app.models.db_models import UserDB
from app.auth import ROLE_RULES_ADMIN, hash_password


def ensure_admin(db: Session, email: str, username: str, password: str) -> str:
    """
    Create the administrator, or promote the account already using the email.
    Returns "created", "promoted" or "unchanged"; a username taken by a
    different account raises ValueError.
    """
    existing = db.query(UserDB).filter(UserDB.email == email).first()
    if existing:
        if existing.role == ROLE_RULES_ADMIN:
            return "unchanged"
        existing.role = ROLE_RULES_ADMIN
        db.commit()
        return "promoted"

    if db.query(UserDB).filter(UserDB.username == username).first():
        raise ValueError(f"Username '{username}' belongs to another account")

    db.add(UserDB(
        id=str(uuid4()),
        email=email,
        username=username,
        password_hash=hash_password(password),
        role=ROLE_RULES_ADMIN,
    ))
    db.commit()
    return "created"


def main():
    if len(sys.argv) != 4:
        print(__doc__)
        sys.exit(1)

    email, username, password = sys.argv[1:4]

    if len(password) < 8:
        print("Error: Password must be at least 8 characters.")
        sys.exit(1)
    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    init_db()
    db: Session = SessionLocal()
    try:
        outcome = ensure_admin(db, email, username, password)
    except ValueError as e:
        db.rollback()
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db.close()

    print(f"Rules administrator {email}: {outcome}")


if __name__ == "__main__":
    main()
