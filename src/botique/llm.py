"""Generation provider for hub-side job processing.

Used only when the assigned agent has no webhook: the hub does the work
itself with the skill's description as the system prompt.
"""

import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional
import httpx
import structlog

from .config import Settings
from .models import Skill

logger = structlog.get_logger()

FIREWORKS_CHAT_URL = "https://api.fireworks.ai/inference/v1/chat/completions"


class GenerationError(Exception):
    """The provider failed or returned something unusable."""


@dataclass
class LLMResponse:
    """Standardized LLM response."""
    content: str
    tokens_input: int
    tokens_output: int
    model: str
    latency_ms: float


class Generator(ABC):
    """External capability that turns a skill + prompt into structured output."""

    @abstractmethod
    async def generate(self, skill: Skill, prompt: str) -> dict[str, Any]:
        ...


def build_system_prompt(skill: Skill) -> str:
    parts = [f"You are an AI agent providing the '{skill.name}' service."]
    if skill.description:
        parts.append(skill.description)
    parts.append("Respond with valid JSON only. No markdown or explanation.")
    return "\n\n".join(parts)


def parse_json_content(content: str) -> dict[str, Any]:
    """Pull a JSON object out of a model reply (may be wrapped in markdown)."""
    content = content.strip()

    # Remove markdown code blocks
    if content.startswith("```json"):
        content = content[7:]
    if content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    content = content.strip()

    try:
        parsed = json.loads(content)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    json_match = re.search(r"\{[\s\S]*\}", content)
    if json_match:
        try:
            return json.loads(json_match.group())
        except json.JSONDecodeError:
            pass

    raise GenerationError("No JSON found in response")


class FireworksGenerator(Generator):
    """Calls Fireworks AI chat completions."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_tokens: int = 2000,
    ):
        self.api_key = settings.fireworks_api_key
        self.model = settings.fireworks_model
        self.max_tokens = max_tokens
        self._transport = transport

    async def call(self, prompt: str, system_prompt: Optional[str] = None, temperature: float = 0.4) -> LLMResponse:
        start_time = time.time()

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(
                FIREWORKS_CHAT_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": self.max_tokens,
                },
                timeout=120.0,
            )
            response.raise_for_status()
            data = response.json()

        latency_ms = (time.time() - start_time) * 1000

        return LLMResponse(
            content=data["choices"][0]["message"]["content"],
            tokens_input=data.get("usage", {}).get("prompt_tokens", 0),
            tokens_output=data.get("usage", {}).get("completion_tokens", 0),
            model=self.model,
            latency_ms=latency_ms,
        )

    async def generate(self, skill: Skill, prompt: str) -> dict[str, Any]:
        if not self.api_key:
            raise GenerationError("Generation provider is not configured")

        try:
            response = await self.call(prompt, build_system_prompt(skill))
        except httpx.HTTPError as e:
            logger.error("generation_request_failed", skill_id=skill.skill_id, error=str(e))
            raise GenerationError("Generation provider request failed") from e

        logger.info(
            "generation_complete",
            skill_id=skill.skill_id,
            tokens_in=response.tokens_input,
            tokens_out=response.tokens_output,
            latency_ms=round(response.latency_ms, 1),
        )
        return parse_json_content(response.content)
