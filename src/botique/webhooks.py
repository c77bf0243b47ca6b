"""Webhook notifications for TheBotique.

Notifies agents when a job assigned to them has been paid. Delivery retries
with exponential backoff and records every attempt.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
import httpx
import structlog

from .config import Settings
from .errors import DeliveryPermanentFailure, DeliveryTransientFailure
from .models import WebhookDelivery
from .signing import DELIVERY_HEADER, EVENT_HEADER, SIGNATURE_HEADER, sign_payload

logger = structlog.get_logger()

JOB_PAID_EVENT = "job.paid"

RESPONSE_SNIPPET_CHARS = 500

DeliveryRecorder = Callable[[WebhookDelivery], Awaitable[None]]


@dataclass
class DeliveryOutcome:
    """Result of delivering one notification to one agent."""
    success: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    permanent: bool = False
    response_snippet: Optional[str] = None

    def raise_for_failure(self) -> None:
        """Raise the matching delivery error if the notification was not acknowledged."""
        if self.success:
            return
        if self.permanent:
            detail = f"HTTP {self.status_code}" if self.status_code else "invalid webhook URL"
            raise DeliveryPermanentFailure(
                f"agent endpoint rejected the notification ({detail})",
                attempts=self.attempts,
                status_code=self.status_code,
            )
        raise DeliveryTransientFailure(
            f"agent endpoint unreachable after {self.attempts} attempts",
            attempts=self.attempts,
            status_code=self.status_code,
        )


class WebhookDeliveryService:
    """Delivers signed webhook payloads with bounded retries.

    A 4xx stops delivery at once. A 5xx, a non-2xx redirect, a network error
    or a timeout is retried until `max_attempts` is used up.
    """

    def __init__(
        self,
        settings: Settings,
        recorder: Optional[DeliveryRecorder] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the delivery service.

        Args:
            settings: Hub settings (attempts, delays, timeout, user agent)
            recorder: Async callable that persists a delivery record
            transport: Optional httpx transport, used by tests to fake agents
            sleep: Awaitable sleep used between attempts
        """
        self.max_attempts = settings.webhook_max_attempts
        self.retry_delays = list(settings.webhook_retry_delays) or [0.0]
        self.timeout = settings.webhook_timeout_seconds
        self.user_agent = settings.webhook_user_agent
        self._recorder = recorder
        self._transport = transport
        self._sleep = sleep

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before `attempt` (1-based). Doubles past the configured list."""
        index = attempt - 1
        if index < len(self.retry_delays):
            return self.retry_delays[index]
        extra = index - len(self.retry_delays) + 1
        return max(self.retry_delays[-1], 1.0) * (2 ** extra)

    async def deliver(
        self,
        target_url: str,
        payload: Dict[str, Any],
        *,
        job_id: str,
        agent_id: str,
        secret: str,
        event: str = JOB_PAID_EVENT,
    ) -> DeliveryOutcome:
        """Deliver a payload to an agent's webhook URL.

        Args:
            target_url: Agent's registered webhook URL
            payload: JSON payload; signed as sent
            job_id: Job the notification is about
            agent_id: Agent being notified
            secret: Agent's webhook secret for the HMAC signature
            event: Event name for the X-Botique-Event header

        Returns:
            DeliveryOutcome describing the final attempt
        """
        body, signature = sign_payload(payload, secret)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            EVENT_HEADER: event,
            DELIVERY_HEADER: str(payload.get("id") or f"evt_{uuid.uuid4().hex[:24]}"),
            SIGNATURE_HEADER: signature,
        }

        outcome = DeliveryOutcome(success=False, attempts=0)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                delay = self.delay_before(attempt)
                if delay > 0:
                    await self._sleep(delay)

                logger.info(
                    "webhook_attempt",
                    attempt=attempt,
                    job_id=job_id,
                    agent_id=agent_id,
                    delay=delay,
                )
                outcome = await self._attempt(client, target_url, body, headers, attempt)
                is_final = outcome.success or outcome.permanent or attempt == self.max_attempts

                await self._record(WebhookDelivery(
                    job_id=job_id,
                    agent_id=agent_id,
                    webhook_url=target_url,
                    event=event,
                    attempt=attempt,
                    success=outcome.success,
                    status_code=outcome.status_code,
                    error=outcome.error,
                    response_snippet=outcome.response_snippet,
                    is_final=is_final,
                ))

                if outcome.success:
                    logger.info(
                        "webhook_success",
                        attempt=attempt,
                        job_id=job_id,
                        agent_id=agent_id,
                        status=outcome.status_code,
                    )
                    return outcome

                if outcome.permanent:
                    logger.warning(
                        "webhook_abort",
                        reason="4xx_error" if outcome.status_code else "invalid_url",
                        attempt=attempt,
                        job_id=job_id,
                        status=outcome.status_code,
                    )
                    return outcome

        logger.error(
            "webhook_exhausted",
            job_id=job_id,
            agent_id=agent_id,
            attempts=self.max_attempts,
            error=outcome.error,
        )
        return outcome

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        target_url: str,
        body: bytes,
        headers: Dict[str, str],
        attempt: int,
    ) -> DeliveryOutcome:
        started = time.monotonic()
        try:
            resp = await asyncio.wait_for(
                client.post(target_url, content=body, headers=headers),
                timeout=self.timeout,
            )
        except httpx.InvalidURL as e:
            return DeliveryOutcome(success=False, attempts=attempt, error=str(e), permanent=True)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            logger.warning("webhook_timeout", attempt=attempt, timeout=self.timeout)
            return DeliveryOutcome(
                success=False,
                attempts=attempt,
                error=f"Timed out after {self.timeout:g}s",
            )
        except httpx.HTTPError as e:
            logger.warning(
                "webhook_error",
                attempt=attempt,
                url=target_url[:50] + "...",
                error=str(e),
                error_type=type(e).__name__,
            )
            return DeliveryOutcome(
                success=False,
                attempts=attempt,
                error=f"{type(e).__name__}: {e}",
            )

        snippet = resp.text[:RESPONSE_SNIPPET_CHARS] if resp.content else None
        status = resp.status_code
        latency_ms = (time.monotonic() - started) * 1000

        if 200 <= status < 300:
            return DeliveryOutcome(
                success=True,
                attempts=attempt,
                status_code=status,
                response_snippet=snippet,
            )

        logger.warning(
            "webhook_non_success",
            attempt=attempt,
            status=status,
            latency_ms=round(latency_ms, 1),
        )
        return DeliveryOutcome(
            success=False,
            attempts=attempt,
            status_code=status,
            error=f"HTTP {status}",
            permanent=400 <= status < 500,
            response_snippet=snippet,
        )

    async def _record(self, record: WebhookDelivery) -> None:
        """Persist a delivery record. Failures are logged and never interrupt delivery."""
        if self._recorder is None:
            return
        try:
            await self._recorder(record)
        except Exception as e:
            logger.warning(
                "webhook_delivery_log_failed",
                job_id=record.job_id,
                attempt=record.attempt,
                error=str(e),
            )


def build_job_paid_payload(job, agent, skill, deadline) -> Dict[str, Any]:
    """Notification body for a freshly paid job.

    Contains only what the agent needs to do the work; no credentials.
    """
    return {
        "id": f"evt_{uuid.uuid4().hex[:24]}",
        "type": JOB_PAID_EVENT,
        "created": int(time.time()),
        "data": {
            "job_id": job.job_id,
            "agent_id": agent.agent_id,
            "skill_id": skill.skill_id,
            "skill_name": skill.name,
            "service_key": skill.service_key,
            "price_usdc": job.price_usdc,
            "input": job.input_data,
            "paid_at": job.paid_at.isoformat() if job.paid_at else None,
            "deadline": deadline.isoformat() if deadline else None,
        },
    }
