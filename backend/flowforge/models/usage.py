"""FlowForge Usage Models

Per-platform monthly quotas for free users:
- Primary platform (picked during onboarding) gets FEWER workflows
- Every other platform gets MORE
- Paid plans are unlimited
"""

from pydantic import BaseModel
from typing import Optional, List, Dict
from enum import Enum


class Platform(str, Enum):
    """Supported automation platforms"""
    N8N = "n8n"
    ZAPIER = "zapier"
    MAKE = "make"
    POWER_AUTOMATE = "power_automate"


class ConversionTrigger(str, Enum):
    """Why a user was blocked and shown an upgrade prompt"""
    PRIMARY_PLATFORM_LIMIT = "primary_platform_limit"
    SECONDARY_PLATFORM_LIMIT = "secondary_platform_limit"


class PromptType(str, Enum):
    """Upgrade prompt urgency tiers"""
    URGENT = "urgent"
    GENTLE = "gentle"
    EXPLORATION = "exploration"


PLATFORMS: List[str] = [p.value for p in Platform]
DEFAULT_PRIMARY_PLATFORM = Platform.N8N.value

PRIMARY_PLATFORM_LIMIT = 3
SECONDARY_PLATFORM_LIMIT = 10
UNLIMITED = 999999

# Prompt thresholds
EXPLORATION_USAGE_RATIO = 0.8
GENTLE_PROMPT_PROBABILITY = 0.7
HIGH_USAGE_RATE = 0.8
NEW_USER_DAYS = 7
CONVERSION_RAMP_DAYS = 14

PRO_FEATURES = [
    "Unlimited workflows on ALL platforms",
    "Priority support and faster generation",
    "Advanced workflow templates",
    "Team collaboration features",
    "Export to multiple formats",
]


class UsageData(BaseModel):
    """Usage counter for one platform in the current month"""
    used: int = 0
    limit: int = SECONDARY_PLATFORM_LIMIT
    is_primary: bool = False

    model_config = {"extra": "ignore"}


UserUsage = Dict[str, UsageData]


class UsageLimit(BaseModel):
    """Admission decision for one generation request"""
    allowed: bool
    remaining: int
    is_at_limit: bool
    will_trigger_upgrade: bool
    conversion_trigger: Optional[ConversionTrigger] = None
    message: Optional[str] = None


class UsageSummary(BaseModel):
    total_used: int = 0
    total_limit: int = 0
    platforms_at_limit: List[str] = []
    primary_platform_usage: int = 0
    secondary_platforms_usage: int = 0


class UpgradePrompt(BaseModel):
    show: bool
    type: PromptType = PromptType.GENTLE
    platform: Optional[str] = None
    message: str = ""


class UpgradeOffer(BaseModel):
    discount: int = 0
    urgency: str = ""
    features: List[str] = []


class DiscountedPrice(BaseModel):
    discounted_price: int
    savings: int


class UsageOverview(BaseModel):
    """Everything the dashboard needs to render the usage panel"""
    plan: str
    primary_platform: Optional[str] = None
    usage: Dict[str, UsageData]
    summary: UsageSummary
    conversion_probability: float
    next_reset_date: str


class UsageStatistics(BaseModel):
    """Aggregated usage numbers for the admin dashboard"""
    total_workflows: int = 0
    conversion_rate: float = 0
    platform_usage: Dict[str, int] = {}
    monthly_growth: float = 0
