"""FlowForge Workflow Models

A workflow is a platform-specific JSON document:
- n8n: nodes + connections
- Zapier: steps
- Make: flow modules
- Power Automate: definition with triggers and actions
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

from flowforge.models.usage import PLATFORMS

MIN_INPUT_LENGTH = 10
MAX_INPUT_LENGTH = 2000


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class WorkflowGenerationRequest(BaseModel):
    """Body of POST /api/generate-workflow"""
    input: str
    platform: str
    user_id: Optional[str] = None

    @field_validator("input")
    @classmethod
    def check_input_length(cls, v: str) -> str:
        v = v.strip()
        if len(v) < MIN_INPUT_LENGTH:
            raise ValueError("Workflow description must be at least 10 characters")
        if len(v) > MAX_INPUT_LENGTH:
            raise ValueError("Workflow description too long")
        return v

    @field_validator("platform")
    @classmethod
    def check_platform(cls, v: str) -> str:
        if v not in PLATFORMS:
            raise ValueError("Platform must be one of: n8n, zapier, make, power_automate")
        return v


class GenerationMetadata(BaseModel):
    platform: str
    nodes_count: int
    complexity: Complexity
    tokens_used: int = 0
    generation_time: int  # milliseconds


class WorkflowGenerationResult(BaseModel):
    """What the generator hands back to the route"""
    success: bool
    workflow: Dict[str, Any]
    metadata: GenerationMetadata
    fallback: bool = False
    error: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = []


class WorkflowRecord(BaseModel):
    """Generated workflow stored for the user's history"""
    workflow_id: str = Field(default_factory=lambda: f"WF-{uuid.uuid4().hex[:12].upper()}")
    user_id: str
    platform: str
    input: str
    workflow: Dict[str, Any]
    complexity: Complexity
    nodes_count: int
    tokens_used: int = 0
    generation_time: int = 0
    fallback: bool = False
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    model_config = {"extra": "ignore"}


class WorkflowValidationRequest(BaseModel):
    workflow: Optional[Dict[str, Any]] = None
    platform: Optional[str] = None


class WorkflowTemplate(BaseModel):
    id: str
    title: str
    description: str
    platform: str
    category: str
    complexity: Complexity
    estimated_time: str


# ============================================================================
# Template Gallery
# ============================================================================

WORKFLOW_TEMPLATES: List[WorkflowTemplate] = [
    WorkflowTemplate(
        id="template_1",
        title="GitHub to Slack Notifications",
        description="Get notified in Slack when issues are created or updated",
        platform="zapier",
        category="productivity",
        complexity=Complexity.SIMPLE,
        estimated_time="2 minutes",
    ),
    WorkflowTemplate(
        id="template_2",
        title="Customer Data Sync",
        description="Sync customer information between CRM systems",
        platform="n8n",
        category="crm",
        complexity=Complexity.MEDIUM,
        estimated_time="5 minutes",
    ),
    WorkflowTemplate(
        id="template_3",
        title="Email Campaign Automation",
        description="Trigger email campaigns based on user behavior",
        platform="make",
        category="marketing",
        complexity=Complexity.COMPLEX,
        estimated_time="10 minutes",
    ),
    WorkflowTemplate(
        id="template_4",
        title="Document Approval Workflow",
        description="Automate document approval process with notifications",
        platform="power_automate",
        category="business",
        complexity=Complexity.MEDIUM,
        estimated_time="7 minutes",
    ),
]

TEMPLATE_CATEGORIES = ["productivity", "crm", "marketing", "business"]

VALIDATION_SUGGESTIONS = [
    "Check the workflow structure matches the platform schema",
    "Ensure all required fields are present",
    "Verify node connections are properly defined",
]
