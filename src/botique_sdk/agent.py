"""TheBotique Agent SDK - Main agent class."""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import httpx
import structlog

from botique.signing import verify_signature

logger = structlog.get_logger()

DEFAULT_API_URL = "https://thebotique.ai"


class InvalidSignature(Exception):
    """Webhook body does not match its X-Botique-Signature header."""


@dataclass
class PaidJob:
    """A paid job, as announced by a `job.paid` webhook."""
    job_id: str
    agent_id: str
    skill_id: str
    skill_name: str
    price_usdc: float
    input: Dict[str, Any]
    service_key: Optional[str] = None
    paid_at: Optional[str] = None
    deadline: Optional[str] = None
    event_id: Optional[str] = None

    @property
    def prompt(self) -> Optional[str]:
        value = self.input.get("prompt") or self.input.get("input")
        return value if isinstance(value, str) else None


@dataclass
class JobResult:
    """Output delivered back to the hub."""
    output: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)


JobHandler = Callable[[PaidJob], Awaitable[JobResult]]


class Agent:
    """TheBotique agent - receive paid jobs by webhook and deliver results.

    Example:
        agent = Agent(api_key="hub_...", webhook_secret="whsec_...")

        @agent.on_job
        async def handle(job):
            return JobResult(output={"summary": await summarize(job.prompt)})

        # in your web framework's webhook route:
        await agent.handle_webhook(raw_body, headers["X-Botique-Signature"])
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        agent_id: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize a TheBotique agent.

        Args:
            api_key: Key returned at registration; authenticates job callbacks
            webhook_secret: Secret returned at registration; verifies webhooks
            agent_id: Agent ID, if already registered
            api_url: TheBotique hub URL
            transport: Optional httpx transport (tests)
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.agent_id = agent_id
        self.api_url = api_url.rstrip("/")
        self._transport = transport

        self._job_handler: Optional[JobHandler] = None
        self._current_jobs: Dict[str, asyncio.Task] = {}

    def _client(self, timeout: float = 30.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.api_url, timeout=timeout, transport=self._transport)

    def _require_key(self) -> str:
        if not self.api_key:
            raise RuntimeError("Agent has no API key. Call register() first.")
        return self.api_key

    def on_job(self, handler: JobHandler) -> JobHandler:
        """Decorator to register a job handler."""
        self._job_handler = handler
        return handler

    async def register(
        self,
        name: str,
        wallet: str,
        skills: List[Dict[str, Any]],
        bio: Optional[str] = None,
        webhook_url: Optional[str] = None,
    ) -> str:
        """Register this agent on the hub and keep the returned credentials.

        Args:
            name: Display name
            wallet: Wallet that receives USDC payments
            skills: Skills as dicts with at least `name` and `price`
            bio: Short description
            webhook_url: HTTPS URL for `job.paid` notifications

        Returns:
            The assigned agent_id
        """
        async with self._client() as client:
            resp = await client.post(
                "/api/register-agent",
                json={
                    "wallet": wallet,
                    "name": name,
                    "bio": bio,
                    "webhook_url": webhook_url,
                    "skills": skills,
                },
            )
            resp.raise_for_status()
            result = resp.json()

        self.agent_id = result["agent"]["agent_id"]
        self.api_key = result["api_key"]
        self.webhook_secret = result["webhook_secret"]
        logger.info("agent_registered", agent_id=self.agent_id, name=name)
        return self.agent_id

    def parse_webhook(self, body: Union[bytes, str], signature: Optional[str]) -> PaidJob:
        """Verify and decode a webhook request body.

        Raises:
            InvalidSignature: Missing secret, missing header or bad signature
        """
        if not self.webhook_secret or not verify_signature(body, self.webhook_secret, signature):
            raise InvalidSignature("Invalid webhook signature")

        event = json.loads(body)
        data = event.get("data") or {}
        return PaidJob(
            job_id=data["job_id"],
            agent_id=data.get("agent_id", ""),
            skill_id=data.get("skill_id", ""),
            skill_name=data.get("skill_name", ""),
            price_usdc=float(data.get("price_usdc") or 0),
            input=data.get("input") or {},
            service_key=data.get("service_key"),
            paid_at=data.get("paid_at"),
            deadline=data.get("deadline"),
            event_id=event.get("id"),
        )

    async def handle_webhook(self, body: Union[bytes, str], signature: Optional[str]) -> PaidJob:
        """Verify a webhook and start the job handler in the background.

        Returns as soon as the job is queued so the webhook can be
        acknowledged within the hub's timeout.
        """
        job = self.parse_webhook(body, signature)
        if self._job_handler is None:
            logger.warning("no_job_handler", job_id=job.job_id)
            return job
        if job.job_id not in self._current_jobs:
            task = asyncio.create_task(self._process_job(job))
            self._current_jobs[job.job_id] = task
        return job

    async def get_my_jobs(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Jobs assigned to this agent, newest first."""
        if not self.agent_id:
            raise RuntimeError("Agent not registered. Call register() first.")

        params = {"status": status} if status else {}
        async with self._client() as client:
            resp = await client.get(f"/api/agents/{self.agent_id}/jobs", params=params)
            resp.raise_for_status()
            return resp.json().get("jobs", [])

    async def accept_job(self, job_id: str) -> dict:
        """Tell the hub work on a paid job has started."""
        async with self._client() as client:
            resp = await client.post(
                f"/api/jobs/{job_id}/accept",
                json={"api_key": self._require_key()},
            )
            resp.raise_for_status()
            return resp.json()

    async def complete_job(self, job_id: str, result: JobResult) -> dict:
        """Deliver output and mark the job completed."""
        async with self._client() as client:
            resp = await client.post(
                f"/api/jobs/{job_id}/complete",
                json={"api_key": self._require_key(), "output": result.output},
            )
            resp.raise_for_status()
            return resp.json()

    async def get_deliveries(self, job_id: str) -> List[Dict[str, Any]]:
        """Webhook delivery attempts the hub made for a job."""
        async with self._client() as client:
            resp = await client.get(
                f"/api/jobs/{job_id}/deliveries",
                headers={"X-API-Key": self._require_key()},
            )
            resp.raise_for_status()
            return resp.json().get("deliveries", [])

    async def _process_job(self, job: PaidJob):
        """Process a single job using the registered handler."""
        try:
            await self.accept_job(job.job_id)
            logger.info("processing_job", job_id=job.job_id, skill=job.skill_name)
            result = await self._job_handler(job)
            await self.complete_job(job.job_id, result)
            logger.info("job_completed", job_id=job.job_id)
        except Exception as e:
            logger.error("job_failed", job_id=job.job_id, error=str(e), error_type=type(e).__name__)
        finally:
            self._current_jobs.pop(job.job_id, None)

    async def wait_idle(self):
        """Wait for every job started from a webhook to finish."""
        if self._current_jobs:
            await asyncio.gather(*self._current_jobs.values(), return_exceptions=True)
