"""Abstract storage interface for the hub.

Implementations can keep state in MongoDB or in process memory.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from ..models import Agent, Job, JobStatus, Skill, WebhookDelivery


class DuplicatePaymentTx(Exception):
    """The payment transaction hash is already recorded on another job."""

    def __init__(self, tx_hash: str):
        super().__init__(f"Transaction {tx_hash} already paid for a job")
        self.tx_hash = tx_hash


class HubStore(ABC):
    """Persistence for agents, skills, jobs and webhook delivery records.

    Job status changes go through `transition_job` / `complete_job`, which
    only apply when the job is currently in one of the `expected` states.
    A `None` return means the precondition did not hold and nothing changed.
    """

    async def init(self) -> None:
        """Prepare the backend (connections, indexes)."""

    async def close(self) -> None:
        """Release backend resources."""

    # ============================================================
    # Agent Operations
    # ============================================================

    @abstractmethod
    async def create_agent(self, agent: Agent, skills: list[Skill]) -> Agent:
        """Insert an agent together with its skills."""
        ...

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def get_agent_by_wallet(self, wallet_address: str) -> Optional[Agent]:
        """Case-insensitive wallet lookup."""
        ...

    @abstractmethod
    async def list_agents(self, active_only: bool = True, limit: int = 100) -> list[Agent]:
        ...

    @abstractmethod
    async def set_agent_active(self, agent_id: str, active: bool) -> bool:
        ...

    @abstractmethod
    async def delete_agent(self, agent_id: str) -> bool:
        """Hard delete. Cascades to the agent's skills and delivery records."""
        ...

    # ============================================================
    # Skill Operations
    # ============================================================

    @abstractmethod
    async def get_skill(self, skill_id: str) -> Optional[Skill]:
        ...

    @abstractmethod
    async def list_skills(self, agent_id: str, active_only: bool = True) -> list[Skill]:
        ...

    # ============================================================
    # Job Operations
    # ============================================================

    @abstractmethod
    async def create_job(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs_for_agent(
        self,
        agent_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> list[Job]:
        """Jobs assigned to an agent, newest first."""
        ...

    @abstractmethod
    async def list_jobs_for_requester(
        self,
        wallet_address: str,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> list[Job]:
        """Jobs a buyer wallet created, newest first. Wallet match is case-insensitive."""
        ...

    @abstractmethod
    async def get_job_by_payment_tx(self, tx_hash: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def transition_job(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        target: JobStatus,
        updates: Optional[dict[str, Any]] = None,
    ) -> Optional[Job]:
        """Set `status=target` plus `updates` if the job is in `expected`.

        Raises:
            DuplicatePaymentTx: `updates` sets a `payment_tx_hash` that
                another job already holds
        """
        ...

    @abstractmethod
    async def complete_job(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        output: dict[str, Any],
        completed_at: datetime,
    ) -> Optional[Job]:
        """Mark the job completed and credit the agent in one atomic step.

        The agent's `total_jobs` is incremented and `total_earned` grows by
        the job price. Either both writes happen or neither does.
        """
        ...

    @abstractmethod
    async def delete_job(self, job_id: str) -> bool:
        """Hard delete. Cascades to the job's delivery records."""
        ...

    # ============================================================
    # Webhook Delivery Records
    # ============================================================

    @abstractmethod
    async def record_delivery(self, record: WebhookDelivery) -> None:
        ...

    @abstractmethod
    async def list_deliveries(self, job_id: str) -> list[WebhookDelivery]:
        """Delivery attempts for a job, oldest first."""
        ...
