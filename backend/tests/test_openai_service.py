"""
Workflow generator: prompt building, structural validation, complexity and
node counting, and fallback behaviour when the model call fails.
"""
import json
from unittest.mock import AsyncMock, patch

import pytest

from flowforge.models.workflow import WorkflowGenerationRequest, Complexity
from flowforge.services.openai_service import openai_service, FALLBACK_WORKFLOWS, BASE_PROMPT
from utils.llm_chat import ChatResult

N8N_WORKFLOW = {
    "name": "Sheets to Slack",
    "nodes": [
        {"id": "1", "name": "Sheets Trigger", "type": "n8n-nodes-base.googleSheetsTrigger", "position": [250, 300]},
        {"id": "2", "name": "Slack", "type": "n8n-nodes-base.slack", "position": [550, 300]},
    ],
    "connections": {"Sheets Trigger": {"main": [[{"node": "Slack", "type": "main", "index": 0}]]}},
}


def _request(platform="n8n", text="Send a Slack message when a new row is added to Google Sheets"):
    return WorkflowGenerationRequest(input=text, platform=platform)


class TestPrompt:
    def test_platform_prompt_appended(self):
        prompt = openai_service.build_system_prompt("make")
        assert prompt.startswith(BASE_PROMPT)
        assert "Make (Integromat) scenario blueprint" in prompt

    def test_unknown_platform_uses_n8n(self):
        assert openai_service.build_system_prompt("ifttt") == openai_service.build_system_prompt("n8n")


class TestGenerate:
    @pytest.mark.asyncio
    async def test_successful_generation(self):
        with patch(
            "flowforge.services.openai_service.llm_chat.chat",
            new=AsyncMock(return_value=ChatResult(json.dumps(N8N_WORKFLOW), 812)),
        ) as chat:
            result = await openai_service.generate_workflow(_request())

        assert result.success is True
        assert result.fallback is False
        assert result.workflow == N8N_WORKFLOW
        assert result.metadata.platform == "n8n"
        assert result.metadata.nodes_count == 2
        assert result.metadata.complexity == Complexity.SIMPLE
        assert result.metadata.tokens_used == 812
        kwargs = chat.call_args.kwargs
        assert kwargs["json_mode"] is True
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 2500
        assert kwargs["user_text"].startswith("Generate a n8n workflow for: Send a Slack message")

    @pytest.mark.asyncio
    async def test_provider_error_returns_fallback(self):
        with patch(
            "flowforge.services.openai_service.llm_chat.chat",
            new=AsyncMock(side_effect=Exception("rate limited")),
        ):
            result = await openai_service.generate_workflow(_request(platform="make"))

        assert result.success is True
        assert result.fallback is True
        assert result.error == "rate limited"
        assert result.workflow == FALLBACK_WORKFLOWS["make"]
        assert result.metadata.tokens_used == 0
        assert result.metadata.nodes_count == 3

    @pytest.mark.asyncio
    async def test_invalid_json_returns_fallback(self):
        with patch(
            "flowforge.services.openai_service.llm_chat.chat",
            new=AsyncMock(return_value=ChatResult("not json", 10)),
        ):
            result = await openai_service.generate_workflow(_request())
        assert result.fallback is True
        assert "invalid JSON" in result.error

    @pytest.mark.asyncio
    async def test_schema_mismatch_returns_fallback(self):
        with patch(
            "flowforge.services.openai_service.llm_chat.chat",
            new=AsyncMock(return_value=ChatResult(json.dumps({"title": "x"}), 10)),
        ):
            result = await openai_service.generate_workflow(_request(platform="n8n"))
        assert result.fallback is True
        assert "n8n workflow must have nodes array" in result.error

    @pytest.mark.asyncio
    async def test_missing_api_key_returns_fallback(self, monkeypatch):
        monkeypatch.setattr("utils.llm_chat.OPENAI_API_KEY", None)
        monkeypatch.setattr("utils.llm_chat._client", None)
        result = await openai_service.generate_workflow(_request(platform="zapier"))
        assert result.fallback is True
        assert result.workflow["description"].startswith("Automated workflow: Send a Slack message")

    @pytest.mark.asyncio
    async def test_short_description_rejected(self):
        request = WorkflowGenerationRequest.model_construct(input="  short  ", platform="n8n")
        with pytest.raises(ValueError, match="at least 10 characters"):
            await openai_service.generate_workflow(request)

    @pytest.mark.asyncio
    async def test_long_description_rejected(self):
        request = WorkflowGenerationRequest.model_construct(input="x" * 2001, platform="n8n")
        with pytest.raises(ValueError, match="maximum 2000 characters"):
            await openai_service.generate_workflow(request)


class TestValidation:
    def test_valid_fallbacks(self):
        for platform, workflow in FALLBACK_WORKFLOWS.items():
            if platform == "zapier":
                workflow = dict(workflow, description="x")
            assert openai_service.validate_workflow(workflow, platform).valid, platform

    def test_n8n_errors(self):
        result = openai_service.validate_workflow({"nodes": [], "connections": {}}, "n8n")
        assert result.errors == ["n8n workflow must have at least one node"]
        result = openai_service.validate_workflow({}, "n8n")
        assert result.errors == [
            "n8n workflow must have nodes array",
            "n8n workflow must have connections object",
        ]

    def test_zapier_errors(self):
        result = openai_service.validate_workflow({"steps": {}}, "zapier")
        assert result.errors == ["Zapier workflow must have steps array", "Zapier workflow must have title"]

    def test_make_errors(self):
        result = openai_service.validate_workflow({"flow": []}, "make")
        assert result.errors == ["Make scenario must have name"]

    def test_power_automate_errors(self):
        assert openai_service.validate_workflow({}, "power_automate").errors == [
            "Power Automate flow must have definition object",
            "Power Automate flow must have triggers",
        ]
        assert openai_service.validate_workflow({"definition": {}}, "power_automate").errors == [
            "Power Automate flow must have triggers",
        ]

    def test_unsupported_platform(self):
        result = openai_service.validate_workflow({}, "ifttt")
        assert result.valid is False
        assert result.errors == ["Unsupported platform: ifttt"]

    def test_non_object_workflow(self):
        assert openai_service.validate_workflow(["nodes"], "make").valid is False


class TestMetrics:
    def test_count_nodes(self):
        assert openai_service.count_nodes({"nodes": [1, 2, 3]}) == 3
        assert openai_service.count_nodes({"steps": [1]}) == 1
        assert openai_service.count_nodes({"flow": [1, 2]}) == 2
        assert openai_service.count_nodes(FALLBACK_WORKFLOWS["power_automate"]) == 3
        assert openai_service.count_nodes({}) == 1

    def test_complexity_by_nodes(self):
        assert openai_service.calculate_complexity({"nodes": [0] * 3}, "x") == Complexity.SIMPLE
        assert openai_service.calculate_complexity({"nodes": [0] * 4}, "x") == Complexity.MEDIUM
        assert openai_service.calculate_complexity({"nodes": [0] * 7}, "x") == Complexity.COMPLEX

    def test_complexity_by_input_length(self):
        assert openai_service.calculate_complexity({}, "x" * 75) == Complexity.SIMPLE
        assert openai_service.calculate_complexity({}, "x" * 76) == Complexity.MEDIUM
        assert openai_service.calculate_complexity({}, "x" * 151) == Complexity.COMPLEX

    def test_fallback_is_a_copy(self):
        result = openai_service.generate_fallback_workflow("n8n", "some description", 5)
        result.workflow["nodes"].clear()
        assert len(FALLBACK_WORKFLOWS["n8n"]["nodes"]) == 3
