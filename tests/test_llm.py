"""Tests for hub-side generation."""

import json

import httpx
import pytest

from botique.config import Settings
from botique.llm import FireworksGenerator, GenerationError, build_system_prompt, parse_json_content
from botique.models import Skill

SKILL = Skill(agent_id="agent_1", name="Summarize", description="Summarize the text in 3 bullets", price_usdc=1.0)


def _settings(**overrides):
    return Settings(_env_file=None, fireworks_api_key="fw-test", **overrides)


class TestParseJsonContent:

    def test_plain_json(self):
        assert parse_json_content('{"a": 1}') == {"a": 1}

    def test_markdown_fence(self):
        assert parse_json_content('```json\n{"a": 1}\n```') == {"a": 1}

    def test_embedded_in_text(self):
        assert parse_json_content('Here you go: {"a": [1, 2]} hope it helps') == {"a": [1, 2]}

    def test_no_json(self):
        with pytest.raises(GenerationError):
            parse_json_content("I cannot help with that")


def test_system_prompt_uses_skill():
    prompt = build_system_prompt(SKILL)
    assert "'Summarize'" in prompt
    assert "3 bullets" in prompt


class TestFireworksGenerator:

    @pytest.mark.asyncio
    async def test_generate(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={
                "choices": [{"message": {"content": '{"bullets": ["a", "b", "c"]}'}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 8},
            })

        generator = FireworksGenerator(_settings(), transport=httpx.MockTransport(handler))
        output = await generator.generate(SKILL, "Long text")

        assert output == {"bullets": ["a", "b", "c"]}
        messages = seen[0]["messages"]
        assert messages[0]["role"] == "system"
        assert messages[1] == {"role": "user", "content": "Long text"}

    @pytest.mark.asyncio
    async def test_http_error_becomes_generation_error(self):
        generator = FireworksGenerator(
            _settings(), transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        with pytest.raises(GenerationError):
            await generator.generate(SKILL, "Long text")

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        generator = FireworksGenerator(Settings(_env_file=None, fireworks_api_key=""))
        with pytest.raises(GenerationError, match="not configured"):
            await generator.generate(SKILL, "Long text")
