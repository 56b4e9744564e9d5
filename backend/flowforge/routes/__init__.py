"""FlowForge Routes"""

from .auth import router as auth_router
from .onboarding import router as onboarding_router
from .usage import router as usage_router
from .workflow import router as workflow_router
from .payment import router as payment_router
from .analytics import router as analytics_router

__all__ = [
    "auth_router",
    "onboarding_router",
    "usage_router",
    "workflow_router",
    "payment_router",
    "analytics_router",
]
