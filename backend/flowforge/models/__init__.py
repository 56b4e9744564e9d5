"""FlowForge Data Models"""

from .usage import (
    Platform,
    ConversionTrigger,
    UsageData,
    UsageLimit,
    UsageSummary,
    UpgradePrompt,
    UpgradeOffer,
)
from .user import (
    Plan,
    UserProfile,
    UserCreate,
    UserResponse,
)
from .workflow import (
    Complexity,
    WorkflowGenerationRequest,
    WorkflowGenerationResult,
    WorkflowRecord,
)
from .billing import (
    PaidPlan,
    BillingInterval,
    CheckoutSessionRequest,
)
from .analytics import (
    FunnelStep,
    AnalyticsEvent,
    BusinessMetric,
)

__all__ = [
    # Usage
    "Platform",
    "ConversionTrigger",
    "UsageData",
    "UsageLimit",
    "UsageSummary",
    "UpgradePrompt",
    "UpgradeOffer",
    # User
    "Plan",
    "UserProfile",
    "UserCreate",
    "UserResponse",
    # Workflow
    "Complexity",
    "WorkflowGenerationRequest",
    "WorkflowGenerationResult",
    "WorkflowRecord",
    # Billing
    "PaidPlan",
    "BillingInterval",
    "CheckoutSessionRequest",
    # Analytics
    "FunnelStep",
    "AnalyticsEvent",
    "BusinessMetric",
]
