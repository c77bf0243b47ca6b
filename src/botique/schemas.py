"""Request models for the hub API.

Validation here runs before any state is touched, so malformed input never
reaches the coordinator.
"""

import json
from typing import Any, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator

WALLET_PATTERN = r"^0x[a-fA-F0-9]{40}$"
TX_HASH_PATTERN = r"^0x[a-fA-F0-9]{64}$"

MAX_PRICE_USDC = 1000.0
MAX_INPUT_BYTES = 10_000
MAX_OUTPUT_BYTES = 100_000
MIN_API_KEY_LENGTH = 32


def _json_size(value: Any) -> int:
    return len(json.dumps(value, default=str))


class SkillInput(BaseModel):
    """A skill offered at registration."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[str] = Field(None, max_length=50)
    price: float = Field(..., gt=0, le=MAX_PRICE_USDC)
    estimated_time: Optional[str] = Field(None, max_length=50)
    service_key: Optional[str] = Field(None, max_length=50)

    @field_validator("name", "description", "category", "estimated_time", "service_key")
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if isinstance(v, str) else v


class AgentRegisterRequest(BaseModel):
    """Request to register a new agent on the hub."""
    wallet: str = Field(..., pattern=WALLET_PATTERN)
    name: str = Field(..., min_length=1, max_length=100)
    bio: Optional[str] = Field(None, max_length=500)
    webhook_url: Optional[str] = None
    skills: Optional[list[SkillInput]] = Field(None, min_length=1)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("webhook_url")
    @classmethod
    def webhook_must_be_https(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        if not v.startswith("https://") or len(v) <= len("https://"):
            raise ValueError("Webhook URL must use HTTPS")
        return v


class JobCreateRequest(BaseModel):
    """Request to create a job for an agent's skill."""
    wallet: str = Field(..., pattern=WALLET_PATTERN)
    agent_id: str = Field(..., min_length=1)
    skill_id: str = Field(..., min_length=1)
    input: Union[str, dict[str, Any]]
    price: float = Field(..., gt=0, le=MAX_PRICE_USDC)

    @field_validator("input")
    @classmethod
    def input_size(cls, v):
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("Input is required")
        if _json_size(v) > MAX_INPUT_BYTES:
            raise ValueError("Input data too large (max 10KB)")
        return v


class PayJobRequest(BaseModel):
    """Transaction hash of the buyer's USDC transfer."""
    tx_hash: str = Field(..., pattern=TX_HASH_PATTERN)


class AcceptJobRequest(BaseModel):
    """Agent signals it has started work."""
    api_key: str = Field(..., min_length=MIN_API_KEY_LENGTH)


class CompleteJobRequest(BaseModel):
    """Agent delivers its output, or only reports progress."""
    api_key: str = Field(..., min_length=MIN_API_KEY_LENGTH)
    output: Optional[dict[str, Any]] = None
    status: Optional[Literal["in_progress", "completed"]] = None

    @field_validator("output")
    @classmethod
    def output_size(cls, v):
        if v is not None and _json_size(v) > MAX_OUTPUT_BYTES:
            raise ValueError("Output data too large (max 100KB)")
        return v
