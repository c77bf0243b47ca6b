"""API key authentication for agents.

Each agent gets an API key once, at registration. Agents present it in the
request body (`api_key`) on job callbacks, or in the `X-API-Key` header on
other agent-only endpoints. Keys are compared in constant time and never
logged in full.
"""

import hmac
from typing import Optional

from fastapi import Depends
from fastapi.security import APIKeyHeader
import structlog

from .errors import Unauthorized
from .models import Agent

logger = structlog.get_logger()

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def mask_key(api_key: Optional[str]) -> str:
    """Short prefix for logs."""
    if not api_key:
        return "<none>"
    return api_key[:8] + "..."


def api_key_matches(agent: Agent, api_key: Optional[str]) -> bool:
    if not api_key or not agent.api_key:
        return False
    return hmac.compare_digest(agent.api_key.encode("utf-8"), api_key.encode("utf-8"))


def require_agent_key(agent: Agent, api_key: Optional[str], job_id: Optional[str] = None) -> None:
    """Raise Unauthorized unless `api_key` belongs to `agent`."""
    if api_key_matches(agent, api_key):
        return
    logger.warning(
        "unauthorized_agent_call",
        agent_id=agent.agent_id,
        job_id=job_id,
        provided_key=mask_key(api_key),
    )
    raise Unauthorized("Invalid API key")


async def get_api_key(api_key: Optional[str] = Depends(api_key_header)) -> Optional[str]:
    """FastAPI dependency returning the `X-API-Key` header, if any."""
    return api_key
