"""Pytest configuration and fixtures."""

import uuid
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import pytest

from botique.config import Settings
from botique.coordinator import HubCoordinator, RegistrationResult
from botique.dispatch import BackgroundDispatcher
from botique.llm import Generator
from botique.models import Job, Skill
from botique.payments import StaticVerifier
from botique.schemas import AgentRegisterRequest, JobCreateRequest, SkillInput
from botique.store import MemoryStore
from botique.webhooks import WebhookDeliveryService

AGENT_WALLET = "0x" + "a1" * 20
BUYER_WALLET = "0x" + "b2" * 20
TX_HASH = "0x" + "c3" * 32
WEBHOOK_URL = "https://agent.example.com/hooks/botique"


def new_tx_hash() -> str:
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every delay."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeAgentEndpoint:
    """httpx MockTransport handler playing an agent's webhook receiver.

    Each entry is a status code or an httpx exception class. The last entry
    repeats once the list runs out.
    """

    def __init__(self, *responses):
        self.responses = list(responses) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, type) and issubclass(item, Exception):
            raise item("simulated failure", request=request)
        return httpx.Response(item, json={"received": item < 300})


class FakeGenerator(Generator):
    def __init__(self, output: Optional[dict[str, Any]] = None, error: Optional[Exception] = None):
        self.output = output if output is not None else {"result": "generated"}
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def generate(self, skill: Skill, prompt: str) -> dict[str, Any]:
        self.calls.append((skill.skill_id, prompt))
        if self.error:
            raise self.error
        return self.output


@dataclass
class Hub:
    coordinator: HubCoordinator
    store: MemoryStore
    verifier: StaticVerifier
    endpoint: FakeAgentEndpoint
    sleep: RecordingSleep
    generator: FakeGenerator
    settings: Settings

    async def register(self, webhook_url: Optional[str] = WEBHOOK_URL, wallet: str = AGENT_WALLET,
                       price: float = 5.0) -> RegistrationResult:
        return await self.coordinator.register_agent(AgentRegisterRequest(
            wallet=wallet,
            name="Summarizer",
            bio="Summarizes documents",
            webhook_url=webhook_url,
            skills=[SkillInput(name="Summarize", description="Summarize text", price=price,
                               service_key="summarize")],
        ))

    async def create_job(self, registration: RegistrationResult, prompt: str = "Summarize this",
                         wallet: str = BUYER_WALLET) -> Job:
        return await self.coordinator.create_job(JobCreateRequest(
            wallet=wallet,
            agent_id=registration.agent.agent_id,
            skill_id=registration.skills[0].skill_id,
            input=prompt,
            price=registration.skills[0].price_usdc,
        ))

    async def paid_job(self, registration: RegistrationResult) -> Job:
        job = await self.create_job(registration)
        await self.coordinator.submit_payment(job.job_id, new_tx_hash())
        await self.coordinator.dispatcher.drain()
        return await self.store.get_job(job.job_id)


def build_hub(settings: Settings, endpoint: FakeAgentEndpoint, generator: Optional[FakeGenerator] = None,
              verifier: Optional[StaticVerifier] = None) -> Hub:
    store = MemoryStore()
    sleep = RecordingSleep()
    verifier = verifier or StaticVerifier(valid=True)
    generator = generator or FakeGenerator()
    delivery = WebhookDeliveryService(
        settings,
        recorder=store.record_delivery,
        transport=httpx.MockTransport(endpoint),
        sleep=sleep,
    )
    coordinator = HubCoordinator(
        store=store,
        verifier=verifier,
        delivery=delivery,
        dispatcher=BackgroundDispatcher(),
        generator=generator,
        settings=settings,
    )
    return Hub(coordinator, store, verifier, endpoint, sleep, generator, settings)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        store_backend="memory",
        payments_enabled=False,
        fireworks_api_key="",
    )


@pytest.fixture
def endpoint() -> FakeAgentEndpoint:
    return FakeAgentEndpoint(200)


@pytest.fixture
def hub(settings, endpoint) -> Hub:
    return build_hub(settings, endpoint)
