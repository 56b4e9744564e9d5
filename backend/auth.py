"""
Password hashing and bearer tokens for FlowForge accounts.

Tokens are HS256 JWTs issued by this API; `sub` is the user's uid and the
role/plan claims are informational only (middleware re-reads the stored
profile on every request).
"""
from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Tuple
import os

from flowforge.models.user import UserRole

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))
JWT_ISSUER = "flowforge-ai"

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(claims: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Sign `claims` with issuer, issued-at and expiry added."""
    now = datetime.now(timezone.utc)
    to_encode = dict(claims)
    to_encode.update({
        "iss": JWT_ISSUER,
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=JWT_EXPIRATION_HOURS)),
    })
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def create_user_token(user: Dict[str, Any]) -> str:
    return create_access_token({
        "sub": user["uid"],
        "email": user["email"],
        "role": user.get("role", UserRole.USER.value),
        "plan": user.get("plan", "free"),
    })


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Payload of a valid FlowForge token, or None."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM], issuer=JWT_ISSUER)
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and user.get("role") == UserRole.ADMIN.value


def validate_password_strength(password: str) -> Tuple[bool, str]:
    if len(password) < 8:
        return False, "Password must be at least 8 characters"
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False, "Password must be at most 72 bytes"
    if not any(c.isalpha() for c in password):
        return False, "Password must contain at least one letter"
    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one number"
    return True, "Password is valid"
