"""Tests for the in-memory store's conditional updates and cascades."""

import pytest

from botique.models import Agent, Job, JobStatus, Skill, WebhookDelivery, utcnow
from botique.store import DuplicatePaymentTx, MemoryStore, create_store


def _agent():
    return Agent(name="Agent", wallet_address="0x" + "ab" * 20)


def _job(agent, skill):
    return Job(
        agent_id=agent.agent_id,
        skill_id=skill.skill_id,
        requester_wallet="0x" + "cd" * 20,
        price_usdc=skill.price_usdc,
    )


async def _seed(store):
    agent = _agent()
    skill = Skill(agent_id=agent.agent_id, name="Translate", price_usdc=2.5)
    await store.create_agent(agent, [skill])
    job = await store.create_job(_job(agent, skill))
    return agent, skill, job


class TestMemoryStore:

    @pytest.mark.asyncio
    async def test_wallet_lookup_is_case_insensitive(self):
        store = MemoryStore()
        agent, _, _ = await _seed(store)
        found = await store.get_agent_by_wallet(agent.wallet_address.upper().replace("0X", "0x"))
        assert found.agent_id == agent.agent_id

    @pytest.mark.asyncio
    async def test_transition_applies_when_expected(self):
        store = MemoryStore()
        _, _, job = await _seed(store)

        updated = await store.transition_job(
            job.job_id, [JobStatus.CREATED], JobStatus.PAID, {"payment_tx_hash": "0xabc"}
        )

        assert updated.status == JobStatus.PAID
        assert updated.payment_tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_transition_refused_leaves_job_untouched(self):
        store = MemoryStore()
        _, _, job = await _seed(store)

        result = await store.transition_job(
            job.job_id, [JobStatus.PAID], JobStatus.FAILED, {"failure_reason": "nope"}
        )

        assert result is None
        stored = await store.get_job(job.job_id)
        assert stored.status == JobStatus.CREATED
        assert stored.failure_reason is None

    @pytest.mark.asyncio
    async def test_complete_credits_agent_once(self):
        store = MemoryStore()
        agent, _, job = await _seed(store)
        await store.transition_job(job.job_id, [JobStatus.CREATED], JobStatus.PAID)

        first = await store.complete_job(job.job_id, [JobStatus.PAID], {"ok": True}, utcnow())
        second = await store.complete_job(job.job_id, [JobStatus.PAID], {"ok": False}, utcnow())

        assert first.status == JobStatus.COMPLETED
        assert second is None
        stored_agent = await store.get_agent(agent.agent_id)
        assert stored_agent.total_jobs == 1
        assert stored_agent.total_earned == 2.5
        assert (await store.get_job(job.job_id)).output_data == {"ok": True}

    @pytest.mark.asyncio
    async def test_complete_without_agent_writes_nothing(self):
        store = MemoryStore()
        agent, _, job = await _seed(store)
        await store.transition_job(job.job_id, [JobStatus.CREATED], JobStatus.PAID)
        await store.delete_agent(agent.agent_id)

        with pytest.raises(LookupError):
            await store.complete_job(job.job_id, [JobStatus.PAID], {"ok": True}, utcnow())

        assert (await store.get_job(job.job_id)).status == JobStatus.PAID

    @pytest.mark.asyncio
    async def test_returned_models_are_copies(self):
        store = MemoryStore()
        _, _, job = await _seed(store)

        fetched = await store.get_job(job.job_id)
        fetched.status = JobStatus.COMPLETED

        assert (await store.get_job(job.job_id)).status == JobStatus.CREATED

    @pytest.mark.asyncio
    async def test_delete_job_cascades_deliveries(self):
        store = MemoryStore()
        agent, _, job = await _seed(store)
        await store.record_delivery(WebhookDelivery(
            job_id=job.job_id, agent_id=agent.agent_id, webhook_url="https://a.example.com",
            attempt=1, success=True, status_code=200, is_final=True,
        ))

        assert await store.delete_job(job.job_id) is True
        assert await store.list_deliveries(job.job_id) == []
        assert await store.delete_job(job.job_id) is False

    @pytest.mark.asyncio
    async def test_delete_agent_cascades_skills(self):
        store = MemoryStore()
        agent, skill, _ = await _seed(store)

        assert await store.delete_agent(agent.agent_id) is True
        assert await store.get_skill(skill.skill_id) is None
        assert await store.list_skills(agent.agent_id) == []

    @pytest.mark.asyncio
    async def test_list_jobs_filters_status(self):
        store = MemoryStore()
        agent, skill, job = await _seed(store)
        other = await store.create_job(_job(agent, skill))
        await store.transition_job(other.job_id, [JobStatus.CREATED], JobStatus.PAID)

        created = await store.list_jobs_for_agent(agent.agent_id, status=JobStatus.CREATED)
        assert [j.job_id for j in created] == [job.job_id]

    @pytest.mark.asyncio
    async def test_payment_tx_is_unique_across_jobs(self):
        store = MemoryStore()
        agent, skill, job = await _seed(store)
        other = await store.create_job(_job(agent, skill))
        await store.transition_job(job.job_id, [JobStatus.CREATED], JobStatus.PAID, {"payment_tx_hash": "0xabc"})

        with pytest.raises(DuplicatePaymentTx):
            await store.transition_job(
                other.job_id, [JobStatus.CREATED], JobStatus.PAID, {"payment_tx_hash": "0xabc"}
            )

        assert (await store.get_job(other.job_id)).status == JobStatus.CREATED
        assert (await store.get_job_by_payment_tx("0xabc")).job_id == job.job_id
        assert await store.get_job_by_payment_tx("0xdef") is None

    @pytest.mark.asyncio
    async def test_list_jobs_for_requester(self):
        store = MemoryStore()
        agent, skill, job = await _seed(store)
        elsewhere = _job(agent, skill).model_copy(update={"requester_wallet": "0x" + "ef" * 20})
        await store.create_job(elsewhere)

        jobs = await store.list_jobs_for_requester("0x" + "CD" * 20)
        assert [j.job_id for j in jobs] == [job.job_id]
        assert await store.list_jobs_for_requester("0x" + "cd" * 20, status=JobStatus.PAID) == []


class TestCreateStore:

    def test_memory_backend(self, settings):
        assert isinstance(create_store(settings), MemoryStore)

    def test_unknown_backend(self, settings):
        settings.store_backend = "sqlite"
        with pytest.raises(ValueError):
            create_store(settings)
