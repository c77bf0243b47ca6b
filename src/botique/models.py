"""Pydantic models for all TheBotique collections."""

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_agent_id() -> str:
    return f"agent_{uuid.uuid4().hex[:8]}"


def new_skill_id() -> str:
    return f"skill_{uuid.uuid4().hex[:8]}"


def new_api_key() -> str:
    """API key handed to the agent once at registration."""
    return "hub_" + secrets.token_hex(24)


def new_webhook_secret() -> str:
    return "whsec_" + secrets.token_hex(24)


# ============================================================
# Enums
# ============================================================

class JobStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FulfillmentKind(str, Enum):
    INLINE = "inline"
    WEBHOOK = "webhook"


class TrustTier(str, Enum):
    NEW = "new"
    RISING = "rising"
    ESTABLISHED = "established"
    TRUSTED = "trusted"
    VERIFIED = "verified"


# Edges of the job state machine. Anything not listed is rejected.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CREATED: frozenset({JobStatus.PAID}),
    JobStatus.PAID: frozenset({JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(JobStatus(current), frozenset())


def sources_for(target: JobStatus) -> list[JobStatus]:
    """States from which `target` may be reached."""
    return [src for src, targets in ALLOWED_TRANSITIONS.items() if target in targets]


# (min completed jobs, min rating) per tier, highest first
TRUST_TIER_THRESHOLDS = [
    (TrustTier.VERIFIED, 250, 4.8),
    (TrustTier.TRUSTED, 100, 4.5),
    (TrustTier.ESTABLISHED, 25, 4.0),
    (TrustTier.RISING, 5, 0.0),
]


def derive_trust_tier(total_jobs: int, rating: float) -> TrustTier:
    """Informational reputation label. Never stored authoritatively."""
    for tier, min_jobs, min_rating in TRUST_TIER_THRESHOLDS:
        if total_jobs >= min_jobs and rating >= min_rating:
            return tier
    return TrustTier.NEW


# ============================================================
# Agent Models
# ============================================================

class Skill(BaseModel):
    """Priced capability listed by an agent."""
    skill_id: str = Field(default_factory=new_skill_id)
    agent_id: str
    name: str
    description: str = ""
    category: str = "general"
    price_usdc: float
    estimated_time: str = "1 minute"
    service_key: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Agent(BaseModel):
    """Registered service provider."""
    agent_id: str = Field(default_factory=new_agent_id)
    name: str
    bio: Optional[str] = None
    wallet_address: str

    # Credentials
    api_key: str = Field(default_factory=new_api_key)
    webhook_url: Optional[str] = None
    webhook_secret: str = Field(default_factory=new_webhook_secret)

    # Reputation
    total_jobs: int = 0
    total_earned: float = 0.0
    rating: float = 0.0

    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def trust_tier(self) -> TrustTier:
        return derive_trust_tier(self.total_jobs, self.rating)

    def public_profile(self, skills: Optional[list[Skill]] = None) -> dict:
        """Profile safe to show anyone: no API key or webhook secret."""
        profile = self.model_dump(
            mode="json",
            exclude={"api_key", "webhook_secret", "webhook_url"},
        )
        profile["has_webhook"] = bool(self.webhook_url)
        profile["trust_tier"] = self.trust_tier.value
        if skills is not None:
            profile["skills"] = [s.model_dump(mode="json") for s in skills]
        return profile


# ============================================================
# Job Models
# ============================================================

class Job(BaseModel):
    """Paid unit of work tracked from creation to completion."""
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    agent_id: str
    skill_id: str
    requester_wallet: str

    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[dict[str, Any]] = None

    price_usdc: float
    payment_tx_hash: Optional[str] = None

    status: JobStatus = JobStatus.CREATED
    fulfillment: Optional[FulfillmentKind] = None
    failure_reason: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ============================================================
# Webhook Delivery Models
# ============================================================

class WebhookDelivery(BaseModel):
    """One delivery attempt. Append-only, kept for observability."""
    delivery_id: str = Field(default_factory=lambda: f"dlv_{uuid.uuid4().hex[:12]}")
    job_id: str
    agent_id: str
    webhook_url: str
    event: str = "job.paid"
    attempt: int
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_snippet: Optional[str] = None
    is_final: bool = False
    created_at: datetime = Field(default_factory=utcnow)
