"""FlowForge Authentication Routes

Endpoints:
- POST /api/auth/register - Register new user
- POST /api/auth/login - User login
- GET /api/auth/me - Get current user
- PUT /api/auth/profile - Update profile
"""

from fastapi import APIRouter, HTTPException, Depends
import logging

from flowforge.models.user import (
    UserCreate,
    UserLogin,
    UserResponse,
    TokenResponse,
    ProfileUpdate,
)
from flowforge.services.auth_service import auth_service
from middleware import require_auth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post("/register", response_model=TokenResponse)
async def register(data: UserCreate):
    """Register a new user and return an access token.

    New users start on the free plan and pick a primary platform during
    onboarding.
    """
    try:
        return await auth_service.register(data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Registration failed: {e}")
        raise HTTPException(status_code=500, detail="Registration failed")


@router.post("/login", response_model=TokenResponse)
async def login(data: UserLogin):
    try:
        return await auth_service.login(data)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except Exception as e:
        logger.error(f"Login failed: {e}")
        raise HTTPException(status_code=500, detail="Login failed")


@router.get("/me", response_model=UserResponse)
async def get_me(user: dict = Depends(require_auth)):
    return UserResponse(**user)


@router.put("/profile", response_model=UserResponse)
async def update_profile(data: ProfileUpdate, user: dict = Depends(require_auth)):
    try:
        updated = await auth_service.update_profile(
            user["uid"],
            display_name=data.display_name,
            preferences=data.preferences,
        )
        return UserResponse(**updated)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Profile update failed: {e}")
        raise HTTPException(status_code=500, detail="Profile update failed")
