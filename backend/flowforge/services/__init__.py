"""FlowForge Services"""

from .usage_service import UsageService, usage_service
from .openai_service import OpenAIService, openai_service
from .analytics_service import AnalyticsService, analytics_service
from .stripe_service import StripeService, stripe_service
from .auth_service import AuthService, auth_service

__all__ = [
    "UsageService",
    "usage_service",
    "OpenAIService",
    "openai_service",
    "AnalyticsService",
    "analytics_service",
    "StripeService",
    "stripe_service",
    "AuthService",
    "auth_service",
]
