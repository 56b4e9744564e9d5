from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, is_admin
from database import database

logger = logging.getLogger(__name__)

# Stored profile fields never handed to route handlers
PROFILE_PROJECTION = {"_id": 0, "password_hash": 0}


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization") or ""
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_token_payload(request: Request) -> Optional[dict]:
    """JWT payload for the request, or None when absent/invalid."""
    token = _bearer_token(request)
    if not token:
        return None
    return decode_access_token(token)


async def require_auth(request: Request) -> dict:
    """Resolve the caller to their stored FlowForge profile (usage map included)."""
    payload = await get_token_payload(request)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )

    db = database.get_db()
    user = await db.users.find_one({"uid": payload["sub"]}, PROFILE_PROJECTION)
    if not user:
        logger.warning(f"Token for unknown user {payload['sub']} path={request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    return user


async def require_admin(request: Request) -> dict:
    user = await require_auth(request)
    if not is_admin(user):
        logger.warning(f"Admin route denied for user {user.get('uid')} path={request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user


def ensure_self_or_admin(user: dict, user_id: str) -> None:
    """Users may only read their own records unless they are admins."""
    if user.get("uid") != user_id and not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
