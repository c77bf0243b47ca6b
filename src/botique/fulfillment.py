"""Who does the work for a paid job.

Chosen once, when the job moves `created -> paid`:
- WebhookNotifier: the agent has a webhook URL, so notify it in the
  background and let it call back with results.
- InlineProcessor: the agent has no webhook, so the hub generates the output
  itself before answering the payment request.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional
import structlog

from .config import Settings
from .dispatch import BackgroundDispatcher
from .errors import DeliveryFailure
from .llm import GenerationError, Generator
from .models import Agent, FulfillmentKind, Job, Skill
from .webhooks import WebhookDeliveryService, build_job_paid_payload

logger = structlog.get_logger()

CompleteFn = Callable[[str, dict[str, Any]], Awaitable[Job]]
FailFn = Callable[[str, str], Awaitable[Optional[Job]]]


@dataclass
class FulfillmentResult:
    kind: FulfillmentKind
    job: Job
    webhook_notified: bool = False
    output: Optional[dict[str, Any]] = None


class FulfillmentStrategy(ABC):
    kind: FulfillmentKind

    @abstractmethod
    async def fulfill(self, job: Job, agent: Agent, skill: Skill) -> FulfillmentResult:
        ...


class WebhookNotifier(FulfillmentStrategy):
    """Hands the job to the agent's webhook and returns immediately.

    A successful delivery only means the agent has been told; the job stays
    `paid` until the agent calls the completion endpoint.
    """

    kind = FulfillmentKind.WEBHOOK

    def __init__(
        self,
        delivery: WebhookDeliveryService,
        dispatcher: BackgroundDispatcher,
        fail: FailFn,
        settings: Settings,
    ):
        self.delivery = delivery
        self.dispatcher = dispatcher
        self.fail = fail
        self.deadline = timedelta(minutes=settings.job_deadline_minutes)

    async def fulfill(self, job: Job, agent: Agent, skill: Skill) -> FulfillmentResult:
        logger.info("webhook_path", job_id=job.job_id, agent_id=agent.agent_id)
        self.dispatcher.submit(self.notify, job, agent, skill, name=f"webhook:{job.job_id}")
        return FulfillmentResult(kind=self.kind, job=job, webhook_notified=True)

    async def notify(self, job: Job, agent: Agent, skill: Skill) -> None:
        deadline = job.paid_at + self.deadline if job.paid_at else None
        payload = build_job_paid_payload(job, agent, skill, deadline)
        outcome = await self.delivery.deliver(
            agent.webhook_url,
            payload,
            job_id=job.job_id,
            agent_id=agent.agent_id,
            secret=agent.webhook_secret,
        )
        try:
            outcome.raise_for_failure()
        except DeliveryFailure as e:
            await self.fail(job.job_id, f"Webhook delivery failed: {e.message}")


class InlineProcessor(FulfillmentStrategy):
    """Generates the output on the hub and finishes the job before returning."""

    kind = FulfillmentKind.INLINE

    def __init__(
        self,
        generator: Generator,
        complete: CompleteFn,
        fail: FailFn,
        settings: Settings,
    ):
        self.generator = generator
        self.complete = complete
        self.fail = fail
        self.timeout = settings.inline_timeout_seconds

    @staticmethod
    def prompt_for(job: Job) -> str:
        data = job.input_data or {}
        prompt = data.get("prompt") or data.get("input")
        if isinstance(prompt, str) and prompt.strip():
            return prompt
        return json.dumps(data, default=str)

    async def fulfill(self, job: Job, agent: Agent, skill: Skill) -> FulfillmentResult:
        logger.info("hub_processing_path", job_id=job.job_id, reason="no_webhook_url")
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            output = await asyncio.wait_for(
                self.generator.generate(skill, self.prompt_for(job)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            reason = "Processing failed: generation timed out"
        except GenerationError as e:
            reason = f"Processing failed: {e}"
        except Exception as e:
            logger.exception("processing_error", job_id=job.job_id, error_type=type(e).__name__)
            reason = "Processing failed: unexpected error"
        else:
            if not isinstance(output, dict) or not output:
                reason = "Processing failed: empty result"
            else:
                completed = await self.complete(job.job_id, output)
                logger.info(
                    "ai_processing_complete",
                    job_id=job.job_id,
                    duration_ms=round((loop.time() - started) * 1000, 1),
                )
                return FulfillmentResult(kind=self.kind, job=completed, output=output)

        logger.error(
            "processing_error",
            job_id=job.job_id,
            reason=reason,
            duration_ms=round((loop.time() - started) * 1000, 1),
        )
        failed = await self.fail(job.job_id, reason)
        return FulfillmentResult(kind=self.kind, job=failed or job)
