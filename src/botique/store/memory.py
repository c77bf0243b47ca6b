"""In-process store for tests and local runs."""

import asyncio
from datetime import datetime
from typing import Any, Iterable, Optional
import structlog

from ..models import Agent, Job, JobStatus, Skill, WebhookDelivery
from .base import DuplicatePaymentTx, HubStore

logger = structlog.get_logger()


class MemoryStore(HubStore):
    """Keeps everything in dicts guarded by a single asyncio lock.

    Returned models are copies, so callers can never mutate stored state
    without going through the store.
    """

    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}
        self._skills: dict[str, Skill] = {}
        self._jobs: dict[str, Job] = {}
        self._deliveries: list[WebhookDelivery] = []
        self._lock = asyncio.Lock()

    # Agents

    async def create_agent(self, agent: Agent, skills: list[Skill]) -> Agent:
        async with self._lock:
            self._agents[agent.agent_id] = agent.model_copy(deep=True)
            for skill in skills:
                self._skills[skill.skill_id] = skill.model_copy(deep=True)
        logger.info("agent_created", agent_id=agent.agent_id, skills=len(skills))
        return agent

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def get_agent_by_wallet(self, wallet_address: str) -> Optional[Agent]:
        wallet = wallet_address.lower()
        for agent in self._agents.values():
            if agent.wallet_address.lower() == wallet:
                return agent.model_copy(deep=True)
        return None

    async def list_agents(self, active_only: bool = True, limit: int = 100) -> list[Agent]:
        agents = [a for a in self._agents.values() if a.is_active or not active_only]
        agents.sort(key=lambda a: (a.rating, a.total_jobs), reverse=True)
        return [a.model_copy(deep=True) for a in agents[:limit]]

    async def set_agent_active(self, agent_id: str, active: bool) -> bool:
        async with self._lock:
            agent = self._agents.get(agent_id)
            if not agent:
                return False
            self._agents[agent_id] = agent.model_copy(update={"is_active": active})
        return True

    async def delete_agent(self, agent_id: str) -> bool:
        async with self._lock:
            if self._agents.pop(agent_id, None) is None:
                return False
            self._skills = {k: s for k, s in self._skills.items() if s.agent_id != agent_id}
            self._deliveries = [d for d in self._deliveries if d.agent_id != agent_id]
        logger.info("agent_deleted", agent_id=agent_id)
        return True

    # Skills

    async def get_skill(self, skill_id: str) -> Optional[Skill]:
        skill = self._skills.get(skill_id)
        return skill.model_copy(deep=True) if skill else None

    async def list_skills(self, agent_id: str, active_only: bool = True) -> list[Skill]:
        return [
            s.model_copy(deep=True)
            for s in self._skills.values()
            if s.agent_id == agent_id and (s.is_active or not active_only)
        ]

    # Jobs

    async def create_job(self, job: Job) -> Job:
        async with self._lock:
            self._jobs[job.job_id] = job.model_copy(deep=True)
        logger.info("job_created", job_id=job.job_id)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs_for_agent(
        self,
        agent_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> list[Job]:
        jobs = [
            j for j in self._jobs.values()
            if j.agent_id == agent_id and (status is None or j.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def list_jobs_for_requester(
        self,
        wallet_address: str,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> list[Job]:
        wallet = wallet_address.lower()
        jobs = [
            j for j in self._jobs.values()
            if j.requester_wallet.lower() == wallet and (status is None or j.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def get_job_by_payment_tx(self, tx_hash: str) -> Optional[Job]:
        for job in self._jobs.values():
            if job.payment_tx_hash == tx_hash:
                return job.model_copy(deep=True)
        return None

    async def transition_job(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        target: JobStatus,
        updates: Optional[dict[str, Any]] = None,
    ) -> Optional[Job]:
        expected = set(expected)
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in expected:
                return None
            changes = dict(updates or {})
            tx_hash = changes.get("payment_tx_hash")
            if tx_hash and any(
                j.payment_tx_hash == tx_hash for j in self._jobs.values() if j.job_id != job_id
            ):
                raise DuplicatePaymentTx(tx_hash)
            changes["status"] = target
            updated = job.model_copy(update=changes, deep=True)
            self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def complete_job(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        output: dict[str, Any],
        completed_at: datetime,
    ) -> Optional[Job]:
        expected = set(expected)
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in expected:
                return None
            agent = self._agents.get(job.agent_id)
            if agent is None:
                raise LookupError(f"Agent {job.agent_id} missing for job {job_id}")

            updated_job = job.model_copy(
                update={
                    "status": JobStatus.COMPLETED,
                    "output_data": output,
                    "completed_at": completed_at,
                },
                deep=True,
            )
            updated_agent = agent.model_copy(update={
                "total_jobs": agent.total_jobs + 1,
                "total_earned": agent.total_earned + job.price_usdc,
            })
            # Both built before either is stored
            self._jobs[job_id] = updated_job
            self._agents[agent.agent_id] = updated_agent
        return updated_job.model_copy(deep=True)

    async def delete_job(self, job_id: str) -> bool:
        async with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return False
            self._deliveries = [d for d in self._deliveries if d.job_id != job_id]
        logger.info("job_deleted", job_id=job_id)
        return True

    # Deliveries

    async def record_delivery(self, record: WebhookDelivery) -> None:
        async with self._lock:
            self._deliveries.append(record.model_copy(deep=True))

    async def list_deliveries(self, job_id: str) -> list[WebhookDelivery]:
        records = [d for d in self._deliveries if d.job_id == job_id]
        records.sort(key=lambda d: (d.created_at, d.attempt))
        return [d.model_copy(deep=True) for d in records]
