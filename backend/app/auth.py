"""
Deposit Compliance Engine - Authentication Utilities

Landlords sign in to work their own properties and cases. Rules
administrators additionally publish rule set revisions.

Bearer JWTs carry the user id (sub), role and expiry; the user row is
re-read on every request so a demoted administrator loses access at once.
"""
import os
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

from .database import get_db
from .models.db_models import UserDB

# Configuration
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "deposit-compliance-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", "24"))

ROLE_LANDLORD = "user"
ROLE_RULES_ADMIN = "admin"

# bcrypt ignores (or, in recent releases, rejects) anything past 72 bytes
MAX_PASSWORD_BYTES = 72

security = HTTPBearer()


def hash_password(password: str) -> str:
    password_bytes = password.encode("utf-8")
    if len(password_bytes) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(password_bytes, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    password_bytes = plain_password.encode("utf-8")
    if len(password_bytes) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(password_bytes, hashed_password.encode("utf-8"))


def create_access_token(user_id: str, email: str, role: str = ROLE_LANDLORD) -> str:
    """Signed token for one user session."""
    claims = {
        "sub": user_id,
        "email": email,
        "role": role,
        "exp": datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS),
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """
    Verified claims, or None for a bad signature or malformed token.
    An expired token raises ExpiredSignatureError so callers can say so.
    """
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise
    except JWTError:
        return None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> UserDB:
    """Dependency - the signed-in user."""
    try:
        payload = decode_token(credentials.credentials)
    except ExpiredSignatureError:
        raise _unauthorized("Token has expired")

    if not payload or not payload.get("sub"):
        raise _unauthorized("Could not validate credentials")

    user = db.query(UserDB).filter(UserDB.id == payload["sub"]).first()
    if user is None:
        raise _unauthorized("Could not validate credentials")
    return user


async def require_rules_admin(current_user: UserDB = Depends(get_current_user)) -> UserDB:
    """Dependency - only rules administrators may publish rule revisions."""
    if current_user.role != ROLE_RULES_ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Rules administrator access required"
        )
    return current_user
