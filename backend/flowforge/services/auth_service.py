"""FlowForge Authentication Service

Email/password accounts in the `users` collection. New accounts start on
the free plan with the pre-onboarding usage map.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging

from database import database
from auth import (
    hash_password,
    verify_password,
    create_user_token,
    validate_password_strength,
)
from flowforge.models.user import (
    UserProfile,
    UserCreate,
    UserLogin,
    UserResponse,
    TokenResponse,
)
from flowforge.models.analytics import FunnelStep
from flowforge.services.analytics_service import analytics_service

logger = logging.getLogger(__name__)


class AuthService:
    """Registration, login and profile updates."""

    def __init__(self):
        self.db = None

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    def _token_for(self, user: Dict[str, Any]) -> TokenResponse:
        return TokenResponse(access_token=create_user_token(user), user=UserResponse(**user))

    async def register(self, data: UserCreate) -> TokenResponse:
        db = self._get_db()

        existing = await db.users.find_one({"email": data.email.lower()})
        if existing:
            raise ValueError("Email already registered")

        is_valid, message = validate_password_strength(data.password)
        if not is_valid:
            raise ValueError(message)

        user = UserProfile(
            email=data.email.lower(),
            display_name=data.display_name or data.email.split("@")[0],
            password_hash=hash_password(data.password),
        )
        doc = user.model_dump(mode="json")
        await db.users.insert_one(doc)

        await analytics_service.track_conversion_step(user.uid, FunnelStep.SIGNUP, {"method": "email"})

        logger.info(f"New FlowForge user registered: {user.uid}")
        return self._token_for(doc)

    async def login(self, data: UserLogin) -> TokenResponse:
        db = self._get_db()

        user = await db.users.find_one({"email": data.email.lower()}, {"_id": 0})
        if not user or not verify_password(data.password, user["password_hash"]):
            raise ValueError("Invalid email or password")

        now = datetime.now(timezone.utc).isoformat()
        await db.users.update_one({"uid": user["uid"]}, {"$set": {"last_login_at": now}})
        user["last_login_at"] = now

        return self._token_for(user)

    async def get_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        db = self._get_db()
        return await db.users.find_one({"uid": user_id}, {"_id": 0, "password_hash": 0})

    async def update_profile(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        db = self._get_db()

        updates: Dict[str, Any] = {}
        if display_name:
            updates["display_name"] = display_name
        if preferences is not None:
            updates["preferences"] = preferences

        if updates:
            await db.users.update_one({"uid": user_id}, {"$set": updates})

        user = await self.get_user_by_id(user_id)
        if not user:
            raise ValueError(f"User {user_id} not found")
        return user


auth_service = AuthService()
