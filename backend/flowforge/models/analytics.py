"""FlowForge Analytics Models

Product events and business metrics, stored for the conversion funnel
and the admin dashboard.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class FunnelStep(str, Enum):
    """Conversion funnel, in order"""
    VISITOR = "visitor"
    SIGNUP = "signup"
    ACTIVATED = "activated"
    LIMITED = "limited"
    TRIAL = "trial"
    CONVERTED = "converted"
    RETAINED = "retained"


FUNNEL_ORDER: List[str] = [s.value for s in FunnelStep]

TIME_RANGES = {"7d": 7, "30d": 30, "90d": 90}

# Written only by the API itself (generation, limits, billing webhooks)
SERVER_EVENTS = {
    "workflow_generated",
    "usage_limit_hit",
    "conversion_limit_reached",
    "conversion_signup",
    "conversion_subscription",
    "funnel_signup",
    "funnel_activated",
    "funnel_limited",
    "funnel_converted",
    "subscription_started",
    "subscription_upgraded",
    "subscription_cancelled",
    "subscription_renewed",
}
SERVER_METRICS = {"revenue", "workflows_generated"}


class AnalyticsEvent(BaseModel):
    """Body of POST /api/analytics/track"""
    event: str = Field(min_length=1)
    properties: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    timestamp: datetime

    @field_validator("event")
    @classmethod
    def check_event(cls, v: str) -> str:
        if v in SERVER_EVENTS:
            raise ValueError(f"Event '{v}' is recorded by the server")
        return v


class BusinessMetric(BaseModel):
    """Body of POST /api/analytics/metrics"""
    metric: str = Field(min_length=1)
    value: float
    timestamp: datetime
    dimensions: Optional[Dict[str, str]] = None

    @field_validator("metric")
    @classmethod
    def check_metric(cls, v: str) -> str:
        if v in SERVER_METRICS:
            raise ValueError(f"Metric '{v}' is recorded by the server")
        return v
