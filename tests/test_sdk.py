"""Tests for the agent SDK."""

import json

import httpx
import pytest

from botique.api import app
from botique.coordinator import RegistrationResult
from botique.models import JobStatus
from botique.signing import sign_payload
from botique_sdk import Agent, InvalidSignature, JobResult

from conftest import AGENT_WALLET, TX_HASH, WEBHOOK_URL

SECRET = "whsec_" + "12" * 24
API_KEY = "hub_" + "34" * 24


def _event(job_id="0b6c3f5e-1111-4222-8333-444455556666"):
    return {
        "id": "evt_1",
        "type": "job.paid",
        "created": 1760000000,
        "data": {
            "job_id": job_id,
            "agent_id": "agent_1",
            "skill_id": "skill_1",
            "skill_name": "Summarize",
            "service_key": "summarize",
            "price_usdc": 5.0,
            "input": {"prompt": "Summarize this"},
            "paid_at": "2026-01-01T00:00:00+00:00",
            "deadline": "2026-01-01T01:00:00+00:00",
        },
    }


class FakeHub:
    def __init__(self):
        self.calls: list[tuple[str, str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.calls.append((request.method, request.url.path, body))
        return httpx.Response(200, json={"success": True})


class TestParseWebhook:

    def test_valid(self):
        body, signature = sign_payload(_event(), SECRET)
        job = Agent(api_key=API_KEY, webhook_secret=SECRET).parse_webhook(body, signature)

        assert job.job_id == "0b6c3f5e-1111-4222-8333-444455556666"
        assert job.prompt == "Summarize this"
        assert job.price_usdc == 5.0
        assert job.event_id == "evt_1"

    def test_tampered_body(self):
        body, signature = sign_payload(_event(), SECRET)
        with pytest.raises(InvalidSignature):
            Agent(webhook_secret=SECRET).parse_webhook(body.replace(b"5.0", b"0.5"), signature)

    def test_missing_secret(self):
        body, signature = sign_payload(_event(), SECRET)
        with pytest.raises(InvalidSignature):
            Agent().parse_webhook(body, signature)


class TestAgentClient:

    @pytest.mark.asyncio
    async def test_handle_webhook_accepts_and_completes(self):
        hub = FakeHub()
        agent = Agent(api_key=API_KEY, webhook_secret=SECRET, transport=httpx.MockTransport(hub))

        @agent.on_job
        async def handle(job):
            return JobResult(output={"summary": job.prompt.upper()})

        body, signature = sign_payload(_event(), SECRET)
        await agent.handle_webhook(body, signature)
        await agent.wait_idle()

        job_path = "/api/jobs/0b6c3f5e-1111-4222-8333-444455556666"
        assert hub.calls == [
            ("POST", f"{job_path}/accept", {"api_key": API_KEY}),
            ("POST", f"{job_path}/complete", {"api_key": API_KEY, "output": {"summary": "SUMMARIZE THIS"}}),
        ]

    @pytest.mark.asyncio
    async def test_register_keeps_credentials(self):
        def handler(request):
            return httpx.Response(200, json={
                "success": True,
                "agent": {"agent_id": "agent_abc"},
                "api_key": API_KEY,
                "webhook_secret": SECRET,
            })

        agent = Agent(transport=httpx.MockTransport(handler))
        agent_id = await agent.register("Summarizer", AGENT_WALLET, [{"name": "Summarize", "price": 5.0}])

        assert agent_id == "agent_abc"
        assert agent.api_key == API_KEY
        assert agent.webhook_secret == SECRET

    @pytest.mark.asyncio
    async def test_calls_need_api_key(self):
        with pytest.raises(RuntimeError):
            await Agent().accept_job("job")


class TestAgainstHub:
    """SDK agent talking to the real API in-process."""

    @pytest.fixture
    def hub_agent(self, hub):
        app.state.coordinator = hub.coordinator
        transport = httpx.ASGITransport(app=app)
        yield Agent(api_url="http://hub.test", transport=transport)
        app.state.coordinator = None

    @pytest.mark.asyncio
    async def test_paid_job_round_trip(self, hub, hub_agent):
        await hub_agent.register(
            "Summarizer", AGENT_WALLET, [{"name": "Summarize", "price": 5.0}], webhook_url=WEBHOOK_URL,
        )

        @hub_agent.on_job
        async def handle(job):
            return JobResult(output={"summary": f"done: {job.prompt}"})

        stored_agent = await hub.store.get_agent(hub_agent.agent_id)
        skills = await hub.store.list_skills(hub_agent.agent_id)
        registration = RegistrationResult(agent=stored_agent, skills=skills)
        job = await hub.create_job(registration, prompt="the report")
        await hub.coordinator.submit_payment(job.job_id, TX_HASH)
        await hub.coordinator.dispatcher.drain()

        delivered = hub.endpoint.requests[0]
        await hub_agent.handle_webhook(delivered.content, delivered.headers["X-Botique-Signature"])
        await hub_agent.wait_idle()

        finished = await hub.store.get_job(job.job_id)
        assert finished.status == JobStatus.COMPLETED
        assert finished.output_data == {"summary": "done: the report"}
        assert finished.started_at is not None

        deliveries = await hub_agent.get_deliveries(job.job_id)
        assert len(deliveries) == 1
        assert deliveries[0]["success"] is True
