"""Job lifecycle for TheBotique hub.

Every status change goes through the store's conditional updates, so two
callers racing on the same job cannot both win: the loser gets
InvalidStateTransition and nothing is written for it.
"""

from dataclasses import dataclass, field
from typing import Any, Optional
import structlog

from .auth import require_agent_key
from .config import Settings
from .dispatch import BackgroundDispatcher
from .errors import (
    Conflict,
    InvalidStateTransition,
    NotFound,
    PaymentVerificationError,
    ValidationError,
)
from .fulfillment import FulfillmentResult, FulfillmentStrategy, InlineProcessor, WebhookNotifier
from .llm import FireworksGenerator, Generator
from .models import Agent, Job, JobStatus, Skill, WebhookDelivery, utcnow
from .payments import PaymentVerifier, VerificationResult, create_verifier
from .schemas import AgentRegisterRequest, JobCreateRequest
from .store import DuplicatePaymentTx, HubStore, create_store
from .webhooks import WebhookDeliveryService

logger = structlog.get_logger()

PAYMENT_FAILED_MESSAGE = (
    "Payment could not be verified. Please ensure you sent the correct amount to the right address."
)
TX_ALREADY_USED_MESSAGE = "This transaction has already been used to pay for a job"


@dataclass
class RegistrationResult:
    """Returned once; the only time the API key and webhook secret are shown."""
    agent: Agent
    skills: list[Skill] = field(default_factory=list)

    @property
    def api_key(self) -> str:
        return self.agent.api_key

    @property
    def webhook_secret(self) -> str:
        return self.agent.webhook_secret


@dataclass
class PaymentResult:
    job: Job
    verification: VerificationResult
    fulfillment: FulfillmentResult


class HubCoordinator:
    """Owns the job state machine and hands paid jobs to a fulfillment strategy."""

    def __init__(
        self,
        store: HubStore,
        verifier: PaymentVerifier,
        delivery: WebhookDeliveryService,
        dispatcher: BackgroundDispatcher,
        generator: Generator,
        settings: Settings,
    ):
        self.store = store
        self.verifier = verifier
        self.delivery = delivery
        self.dispatcher = dispatcher
        self.settings = settings

        self.webhook_notifier = WebhookNotifier(delivery, dispatcher, self.fail_job, settings)
        self.inline_processor = InlineProcessor(generator, self._finish, self.fail_job, settings)

    # ============================================================
    # Agents
    # ============================================================

    async def register_agent(self, request: AgentRegisterRequest) -> RegistrationResult:
        """Register a new agent and its skills.

        One agent per wallet. Credentials are generated here and returned
        only in the result.
        """
        wallet = request.wallet.lower()
        if await self.store.get_agent_by_wallet(wallet):
            raise Conflict("Already registered as an agent")

        agent = Agent(
            name=request.name,
            bio=request.bio,
            wallet_address=wallet,
            webhook_url=request.webhook_url,
        )
        skills = [
            Skill(
                agent_id=agent.agent_id,
                name=s.name,
                description=s.description or "",
                category=s.category or "general",
                price_usdc=s.price,
                estimated_time=s.estimated_time or "1 minute",
                service_key=s.service_key,
            )
            for s in (request.skills or [])
        ]

        agent = await self.store.create_agent(agent, skills)
        logger.info(
            "agent_registered",
            agent_id=agent.agent_id,
            skills=len(skills),
            has_webhook=bool(agent.webhook_url),
        )
        return RegistrationResult(agent=agent, skills=skills)

    async def get_agent(self, agent_id: str) -> tuple[Agent, list[Skill]]:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise NotFound("Agent not found")
        return agent, await self.store.list_skills(agent_id)

    async def list_agents(self, limit: int = 100) -> list[tuple[Agent, list[Skill]]]:
        agents = await self.store.list_agents(active_only=True, limit=limit)
        return [(a, await self.store.list_skills(a.agent_id)) for a in agents]

    async def deactivate_agent(self, agent_id: str, api_key: Optional[str]) -> Agent:
        """Stop an agent from receiving new jobs. Jobs already paid carry on."""
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise NotFound("Agent not found")
        require_agent_key(agent, api_key)
        await self.store.set_agent_active(agent_id, False)
        logger.info("agent_deactivated", agent_id=agent_id)
        return agent.model_copy(update={"is_active": False})

    async def list_agent_jobs(
        self,
        agent_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> list[Job]:
        if await self.store.get_agent(agent_id) is None:
            raise NotFound("Agent not found")
        return await self.store.list_jobs_for_agent(agent_id, status=status, limit=limit)

    # ============================================================
    # Jobs
    # ============================================================

    async def create_job(self, request: JobCreateRequest) -> Job:
        """Create an unpaid job for one of an agent's skills.

        Raises:
            NotFound: Agent is missing or inactive, or the skill is missing
            ValidationError: Skill belongs to another agent, or the price
                does not match the listed skill price
        """
        agent = await self.store.get_agent(request.agent_id)
        if agent is None or not agent.is_active:
            raise NotFound("Agent not found or inactive")

        skill = await self.store.get_skill(request.skill_id)
        if skill is None or not skill.is_active:
            raise NotFound("Skill not found")
        if skill.agent_id != agent.agent_id:
            raise ValidationError("Skill does not belong to specified agent")

        tolerance = skill.price_usdc * self.settings.payment_tolerance
        if abs(skill.price_usdc - request.price) > tolerance:
            raise ValidationError(
                f"Price mismatch. Expected ${skill.price_usdc:.2f}, got ${request.price:.2f}"
            )

        input_data = request.input if isinstance(request.input, dict) else {"prompt": request.input}
        job = Job(
            agent_id=agent.agent_id,
            skill_id=skill.skill_id,
            requester_wallet=request.wallet.lower(),
            input_data=input_data,
            price_usdc=skill.price_usdc,
        )
        job = await self.store.create_job(job)
        logger.info("job_created", job_id=job.job_id, agent_id=agent.agent_id, price=job.price_usdc)
        return job

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFound("Job not found")
        return job

    async def list_requester_jobs(
        self,
        wallet: str,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> list[Job]:
        """A buyer's job history. An unknown wallet simply has no jobs."""
        return await self.store.list_jobs_for_requester(wallet.lower(), status=status, limit=limit)

    async def submit_payment(self, job_id: str, tx_hash: str) -> PaymentResult:
        """Verify the buyer's transfer, mark the job paid and start fulfillment.

        A failed verification leaves the job in `created` so the buyer can
        resubmit. On the webhook path this returns as soon as the delivery
        is queued; on the inline path it returns the finished job.
        """
        job = await self.get_job(job_id)
        if job.status != JobStatus.CREATED:
            raise InvalidStateTransition(job_id, job.status.value, JobStatus.PAID.value)

        agent = await self.store.get_agent(job.agent_id)
        skill = await self.store.get_skill(job.skill_id)
        if agent is None or skill is None:
            raise NotFound("Agent or skill for this job no longer exists")
        if not agent.is_active:
            raise NotFound("Agent not found or inactive")

        tx_hash = tx_hash.lower()
        if await self.store.get_job_by_payment_tx(tx_hash) is not None:
            logger.warning("payment_tx_reused", job_id=job_id, tx_hash=tx_hash[:12] + "...")
            raise PaymentVerificationError(TX_ALREADY_USED_MESSAGE)

        verification = await self.verifier.verify(tx_hash, job.price_usdc, agent.wallet_address)
        if not verification.valid:
            logger.warning(
                "payment_verification_failed",
                job_id=job_id,
                tx_hash=tx_hash[:12] + "...",
                error=verification.error,
            )
            raise PaymentVerificationError(PAYMENT_FAILED_MESSAGE, details=verification.error)

        strategy = self.strategy_for(agent)
        try:
            paid = await self.store.transition_job(
                job_id,
                [JobStatus.CREATED],
                JobStatus.PAID,
                {
                    "payment_tx_hash": tx_hash,
                    "paid_at": utcnow(),
                    "fulfillment": strategy.kind,
                },
            )
        except DuplicatePaymentTx:
            logger.warning("payment_tx_reused", job_id=job_id, tx_hash=tx_hash[:12] + "...")
            raise PaymentVerificationError(TX_ALREADY_USED_MESSAGE)
        if paid is None:
            current = await self.store.get_job(job_id)
            raise InvalidStateTransition(
                job_id, current.status.value if current else None, JobStatus.PAID.value
            )

        logger.info(
            "job_paid",
            job_id=job_id,
            amount=verification.amount,
            fulfillment=strategy.kind.value,
        )
        result = await strategy.fulfill(paid, agent, skill)
        return PaymentResult(job=result.job, verification=verification, fulfillment=result)

    def strategy_for(self, agent: Agent) -> FulfillmentStrategy:
        if agent.webhook_url:
            return self.webhook_notifier
        return self.inline_processor

    async def mark_in_progress(self, job_id: str, api_key: Optional[str]) -> Job:
        """Agent acknowledges a paid job and starts working on it."""
        job, _ = await self._authorized_job(job_id, api_key)
        return await self._start(job)

    async def complete_job(
        self,
        job_id: str,
        api_key: Optional[str],
        output: Optional[dict[str, Any]] = None,
        status: Optional[str] = None,
    ) -> Job:
        """Agent callback: report progress, or deliver output and complete.

        Completion and the agent's earnings update are written together.
        """
        job, agent = await self._authorized_job(job_id, api_key)

        # Output wins over a progress hint
        if status == JobStatus.IN_PROGRESS.value and not output:
            return await self._start(job)

        if job.status not in (JobStatus.PAID, JobStatus.IN_PROGRESS):
            raise InvalidStateTransition(job_id, job.status.value, JobStatus.COMPLETED.value)
        if not output:
            raise ValidationError("Output is required to complete a job")

        completed = await self._finish(job_id, output)
        logger.info(
            "job_completed",
            job_id=job_id,
            agent_id=agent.agent_id,
            earned=completed.price_usdc,
        )
        return completed

    async def fail_job(self, job_id: str, reason: str) -> Optional[Job]:
        """Move a paid or in-progress job to `failed`.

        Returns None without changing anything if the job already finished.
        """
        failed = await self.store.transition_job(
            job_id,
            [JobStatus.PAID, JobStatus.IN_PROGRESS],
            JobStatus.FAILED,
            {"failure_reason": reason, "failed_at": utcnow()},
        )
        if failed is None:
            logger.info("job_fail_skipped", job_id=job_id, reason=reason)
            return None
        logger.warning("job_failed", job_id=job_id, reason=reason)
        return failed

    async def list_deliveries(self, job_id: str, api_key: Optional[str]) -> list[WebhookDelivery]:
        """Delivery attempts for a job, visible to the assigned agent only."""
        await self._authorized_job(job_id, api_key)
        return await self.store.list_deliveries(job_id)

    # ============================================================
    # Internals
    # ============================================================

    async def _authorized_job(self, job_id: str, api_key: Optional[str]) -> tuple[Job, Agent]:
        job = await self.get_job(job_id)
        agent = await self.store.get_agent(job.agent_id)
        if agent is None:
            raise NotFound("Agent not found")
        require_agent_key(agent, api_key, job_id=job_id)
        return job, agent

    async def _start(self, job: Job) -> Job:
        started = await self.store.transition_job(
            job.job_id,
            [JobStatus.PAID],
            JobStatus.IN_PROGRESS,
            {"started_at": utcnow()},
        )
        if started is None:
            current = await self.store.get_job(job.job_id)
            raise InvalidStateTransition(
                job.job_id,
                current.status.value if current else job.status.value,
                JobStatus.IN_PROGRESS.value,
            )
        logger.info("job_started", job_id=job.job_id, agent_id=job.agent_id)
        return started

    async def _finish(self, job_id: str, output: dict[str, Any]) -> Job:
        completed = await self.store.complete_job(
            job_id,
            [JobStatus.PAID, JobStatus.IN_PROGRESS],
            output,
            utcnow(),
        )
        if completed is None:
            current = await self.store.get_job(job_id)
            raise InvalidStateTransition(
                job_id, current.status.value if current else None, JobStatus.COMPLETED.value
            )
        return completed


def build_coordinator(
    settings: Settings,
    store: Optional[HubStore] = None,
    verifier: Optional[PaymentVerifier] = None,
    generator: Optional[Generator] = None,
    delivery: Optional[WebhookDeliveryService] = None,
) -> HubCoordinator:
    """Wire a coordinator from settings. Any piece can be passed in instead."""
    store = store or create_store(settings)
    delivery = delivery or WebhookDeliveryService(settings, recorder=store.record_delivery)
    return HubCoordinator(
        store=store,
        verifier=verifier or create_verifier(settings),
        delivery=delivery,
        dispatcher=BackgroundDispatcher(),
        generator=generator or FireworksGenerator(settings),
        settings=settings,
    )
