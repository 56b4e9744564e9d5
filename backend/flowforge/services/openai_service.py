"""FlowForge Workflow Generator

Turns a natural-language description into platform-specific workflow JSON
through OpenAI chat completions (JSON mode), validates it against the
platform's expected shape and falls back to a canned workflow when the
model call or validation fails.
"""

from typing import Dict, Any, List
import copy
import json
import time
import logging

from utils import llm_chat
from flowforge.models.workflow import (
    WorkflowGenerationRequest,
    WorkflowGenerationResult,
    GenerationMetadata,
    ValidationResult,
    Complexity,
    MIN_INPUT_LENGTH,
    MAX_INPUT_LENGTH,
)

logger = logging.getLogger(__name__)

TEMPERATURE = 0.1
MAX_TOKENS = 2500

BASE_PROMPT = """You are FlowForge AI, the world's leading workflow automation generator.
Generate production-ready, optimized workflows that follow best practices and include proper error handling.
Always respond with valid JSON that matches the platform schema exactly."""

PLATFORM_PROMPTS = {
    "n8n": """Generate n8n workflow JSON with this exact structure:
{
  "name": "Generated Workflow",
  "nodes": [
    {
      "parameters": {},
      "id": "unique-id",
      "name": "Node Name",
      "type": "node-type",
      "position": [x, y],
      "credentials": {}
    }
  ],
  "connections": {
    "NodeName": {
      "main": [
        [
          {
            "node": "NextNodeName",
            "type": "main",
            "index": 0
          }
        ]
      ]
    }
  },
  "active": false,
  "settings": {},
  "versionId": "1.0"
}

Requirements:
- Use appropriate n8n node types (HTTP Request, Set, IF, Code, etc.)
- Include proper node positioning (increment x by 300, y by 0 for each node)
- Add error handling with proper connections
- Follow n8n JSON schema exactly
- Include meaningful node names and descriptions""",

    "zapier": """Generate Zapier workflow blueprint with this exact structure:
{
  "title": "Generated Workflow",
  "description": "AI-generated workflow description",
  "steps": [
    {
      "id": 1,
      "meta": {
        "app": "app-name",
        "action": "action-name"
      },
      "params": {
        "key": "value"
      }
    }
  ]
}

Requirements:
- Use official Zapier app names and actions
- Include proper step configurations with realistic parameters
- Add filters and formatters where needed
- Follow Zapier blueprint schema exactly
- Include error handling steps""",

    "make": """Generate Make (Integromat) scenario blueprint with this exact structure:
{
  "name": "Generated Scenario",
  "team_id": null,
  "flow": [
    {
      "id": 1,
      "module": "module-name",
      "version": 1,
      "parameters": {},
      "filter": {},
      "mapper": {}
    }
  ],
  "metadata": {
    "designer": {
      "x": 0,
      "y": 0
    }
  }
}

Requirements:
- Use proper Make module types and configurations
- Include filters, routers, and aggregators where appropriate
- Add error handling routes
- Follow Make blueprint schema exactly
- Include proper module settings and mappings""",

    "power_automate": """Generate Microsoft Power Automate flow definition with this exact structure:
{
  "definition": {
    "$schema": "https://schema.management.azure.com/providers/Microsoft.Logic/schemas/2016-06-01/workflowdefinition.json#",
    "contentVersion": "1.0.0.0",
    "parameters": {},
    "triggers": {
      "trigger_name": {
        "type": "trigger-type",
        "inputs": {}
      }
    },
    "actions": {
      "action_name": {
        "type": "action-type",
        "inputs": {}
      }
    }
  }
}

Requirements:
- Use official Power Automate connectors and actions
- Include proper action configurations
- Add condition and loop actions where needed
- Follow Power Automate schema exactly
- Include error handling actions""",
}

POWER_AUTOMATE_SCHEMA = (
    "https://schema.management.azure.com/providers/Microsoft.Logic/schemas/"
    "2016-06-01/workflowdefinition.json#"
)

FALLBACK_WORKFLOWS: Dict[str, Dict[str, Any]] = {
    "n8n": {
        "name": "Demo Workflow",
        "nodes": [
            {
                "parameters": {
                    "httpMethod": "GET",
                    "url": "https://api.example.com/webhook",
                },
                "id": "webhook-trigger",
                "name": "Webhook Trigger",
                "type": "n8n-nodes-base.webhook",
                "position": [250, 300],
                "credentials": {},
            },
            {
                "parameters": {
                    "values": {"string": [{"name": "processed", "value": "true"}]},
                },
                "id": "set-data",
                "name": "Set Data",
                "type": "n8n-nodes-base.set",
                "position": [550, 300],
            },
            {
                "parameters": {"message": "Workflow completed successfully"},
                "id": "notify",
                "name": "Send Notification",
                "type": "n8n-nodes-base.emailSend",
                "position": [850, 300],
            },
        ],
        "connections": {
            "Webhook Trigger": {
                "main": [[{"node": "Set Data", "type": "main", "index": 0}]],
            },
            "Set Data": {
                "main": [[{"node": "Send Notification", "type": "main", "index": 0}]],
            },
        },
        "active": False,
        "settings": {},
        "versionId": "1.0",
    },
    "zapier": {
        "title": "Demo Workflow",
        "description": "",
        "steps": [
            {
                "id": 1,
                "meta": {"app": "webhook", "action": "catch_hook"},
                "params": {"webhook_url": "{{generated}}"},
            },
            {
                "id": 2,
                "meta": {"app": "formatter", "action": "text"},
                "params": {"transform": "title_case"},
            },
            {
                "id": 3,
                "meta": {"app": "email", "action": "send"},
                "params": {"to": "user@example.com", "subject": "Workflow Triggered"},
            },
        ],
    },
    "make": {
        "name": "Demo Scenario",
        "team_id": None,
        "flow": [
            {"id": 1, "module": "webhook", "version": 1, "parameters": {"url": "/webhook"}, "filter": {}, "mapper": {}},
            {"id": 2, "module": "json", "version": 1, "parameters": {"action": "parse"}, "filter": {}, "mapper": {}},
            {"id": 3, "module": "email", "version": 1, "parameters": {"to": "user@example.com"}, "filter": {}, "mapper": {}},
        ],
        "metadata": {"designer": {"x": 0, "y": 0}},
    },
    "power_automate": {
        "definition": {
            "$schema": POWER_AUTOMATE_SCHEMA,
            "contentVersion": "1.0.0.0",
            "parameters": {},
            "triggers": {
                "http_trigger": {
                    "type": "Request",
                    "inputs": {"schema": {}},
                },
            },
            "actions": {
                "compose_data": {
                    "type": "Compose",
                    "inputs": "@triggerBody()",
                },
                "send_email": {
                    "type": "Office365Outlook.SendEmail",
                    "inputs": {
                        "to": "user@example.com",
                        "subject": "Workflow Triggered",
                        "body": "Your workflow has been executed successfully.",
                    },
                },
            },
        },
    },
}


class WorkflowGenerationError(Exception):
    """Model output could not be used as a workflow."""
    pass


class OpenAIService:
    """Workflow generation via OpenAI."""

    def build_system_prompt(self, platform: str) -> str:
        platform_prompt = PLATFORM_PROMPTS.get(platform, PLATFORM_PROMPTS["n8n"])
        return f"{BASE_PROMPT}\n\n{platform_prompt}"

    async def generate_workflow(self, request: WorkflowGenerationRequest) -> WorkflowGenerationResult:
        """Generate a workflow, or the platform's fallback if generation fails.

        Raises ValueError for descriptions outside the accepted length.
        """
        text = (request.input or "").strip()
        if len(text) < MIN_INPUT_LENGTH:
            raise ValueError("Please provide a more detailed workflow description (at least 10 characters)")
        if len(text) > MAX_INPUT_LENGTH:
            raise ValueError("Workflow description is too long (maximum 2000 characters)")

        start = time.monotonic()
        try:
            result = await llm_chat.chat(
                system_prompt=self.build_system_prompt(request.platform),
                user_text=f"Generate a {request.platform} workflow for: {text}",
                temperature=TEMPERATURE,
                max_tokens=MAX_TOKENS,
                json_mode=True,
            )

            try:
                workflow = json.loads(result.content or "{}")
            except json.JSONDecodeError as e:
                raise WorkflowGenerationError(f"Model returned invalid JSON: {e}")
            if not isinstance(workflow, dict):
                raise WorkflowGenerationError("Model returned a non-object JSON document")

            validation = self.validate_workflow(workflow, request.platform)
            if not validation.valid:
                raise WorkflowGenerationError(
                    f"Generated workflow validation failed: {', '.join(validation.errors)}"
                )

            generation_time = int((time.monotonic() - start) * 1000)
            return WorkflowGenerationResult(
                success=True,
                workflow=workflow,
                metadata=GenerationMetadata(
                    platform=request.platform,
                    nodes_count=self.count_nodes(workflow),
                    complexity=self.calculate_complexity(workflow, text),
                    tokens_used=result.total_tokens,
                    generation_time=generation_time,
                ),
            )
        except Exception as e:
            logger.error(f"OpenAI workflow generation failed: {e}")
            return self.generate_fallback_workflow(
                request.platform,
                text,
                int((time.monotonic() - start) * 1000),
                error=str(e),
            )

    def validate_workflow(self, workflow: Any, platform: str) -> ValidationResult:
        errors: List[str] = []
        if not isinstance(workflow, dict):
            workflow = {}

        if platform == "n8n":
            nodes = workflow.get("nodes")
            if not isinstance(nodes, list):
                errors.append("n8n workflow must have nodes array")
            if not isinstance(workflow.get("connections"), dict):
                errors.append("n8n workflow must have connections object")
            if isinstance(nodes, list) and len(nodes) == 0:
                errors.append("n8n workflow must have at least one node")
        elif platform == "zapier":
            if not isinstance(workflow.get("steps"), list):
                errors.append("Zapier workflow must have steps array")
            if not isinstance(workflow.get("title"), str) or not workflow.get("title"):
                errors.append("Zapier workflow must have title")
        elif platform == "make":
            if not isinstance(workflow.get("flow"), list):
                errors.append("Make scenario must have flow array")
            if not isinstance(workflow.get("name"), str) or not workflow.get("name"):
                errors.append("Make scenario must have name")
        elif platform == "power_automate":
            definition = workflow.get("definition")
            if not isinstance(definition, dict):
                errors.append("Power Automate flow must have definition object")
                definition = {}
            if not isinstance(definition.get("triggers"), dict):
                errors.append("Power Automate flow must have triggers")
        else:
            errors.append(f"Unsupported platform: {platform}")

        return ValidationResult(valid=not errors, errors=errors)

    def calculate_complexity(self, workflow: Dict[str, Any], input_text: str) -> Complexity:
        node_count = self.count_nodes(workflow)
        input_length = len(input_text)

        if node_count > 6 or input_length > 150:
            return Complexity.COMPLEX
        if node_count > 3 or input_length > 75:
            return Complexity.MEDIUM
        return Complexity.SIMPLE

    def count_nodes(self, workflow: Dict[str, Any]) -> int:
        for key in ("nodes", "steps", "flow"):
            if isinstance(workflow.get(key), list):
                return len(workflow[key])
        definition = workflow.get("definition")
        if isinstance(definition, dict) and definition.get("actions"):
            # +1 for the trigger
            return len(definition["actions"]) + 1
        return 1

    def generate_fallback_workflow(
        self,
        platform: str,
        input_text: str,
        generation_time: int,
        error: str = None,
    ) -> WorkflowGenerationResult:
        workflow = copy.deepcopy(FALLBACK_WORKFLOWS.get(platform, FALLBACK_WORKFLOWS["n8n"]))
        if platform == "zapier":
            workflow["description"] = f"Automated workflow: {input_text}"

        return WorkflowGenerationResult(
            success=True,
            workflow=workflow,
            metadata=GenerationMetadata(
                platform=platform,
                nodes_count=self.count_nodes(workflow),
                complexity=self.calculate_complexity(workflow, input_text),
                tokens_used=0,
                generation_time=generation_time,
            ),
            fallback=True,
            error=error,
        )


openai_service = OpenAIService()
