"""MongoDB store for TheBotique hub."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorCollection
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
import structlog

from ..config import Settings
from ..models import Agent, Job, JobStatus, Skill, WebhookDelivery
from .base import DuplicatePaymentTx, HubStore

logger = structlog.get_logger()


# ============================================================
# Collection Names
# ============================================================

AGENTS_COLLECTION = "botique_agents"
SKILLS_COLLECTION = "botique_skills"
JOBS_COLLECTION = "botique_jobs"
DELIVERIES_COLLECTION = "botique_webhook_deliveries"


def _strip_id(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc.pop("_id", None)
    return doc


def _status_values(statuses: Iterable[JobStatus]) -> list[str]:
    return [JobStatus(s).value for s in statuses]


class MongoStore(HubStore):
    """Motor-backed store.

    Status changes use `find_one_and_update` with the expected status in the
    filter, so two concurrent writers on one job cannot both win. Completion
    and the agent stats update run in one multi-document transaction, which
    needs a replica set (Atlas clusters are).
    """

    def __init__(self, settings: Settings, client: Optional[AsyncIOMotorClient] = None):
        self.settings = settings
        self._client = client
        self._db: Optional[AsyncIOMotorDatabase] = None

    @property
    def db(self) -> AsyncIOMotorDatabase:
        if self._db is None:
            if self._client is None:
                # TLS is enabled by default for mongodb+srv://
                self._client = AsyncIOMotorClient(self.settings.mongodb_uri, tz_aware=True)
            self._db = self._client[self.settings.mongodb_database]
            logger.info("mongodb_connected", database=self.settings.mongodb_database)
        return self._db

    def _collection(self, name: str) -> AsyncIOMotorCollection:
        return self.db[name]

    async def init(self) -> None:
        try:
            await self.setup_indexes()
            logger.info("database_initialized")
        except Exception as e:
            # Indexes usually exist already; a failure here should not stop the API
            logger.warning("index_setup_failed", error=str(e), note="continuing without index creation")

    async def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
            self._db = None
            logger.info("mongodb_disconnected")

    async def setup_indexes(self) -> None:
        agents = self._collection(AGENTS_COLLECTION)
        await agents.create_index([("agent_id", 1)], unique=True)
        await agents.create_index([("wallet_address", 1)], unique=True)
        await agents.create_index([("api_key", 1)], unique=True)
        await agents.create_index([("is_active", 1), ("rating", -1)])

        skills = self._collection(SKILLS_COLLECTION)
        await skills.create_index([("skill_id", 1)], unique=True)
        await skills.create_index([("agent_id", 1)])

        jobs = self._collection(JOBS_COLLECTION)
        await jobs.create_index([("job_id", 1)], unique=True)
        await jobs.create_index([("agent_id", 1), ("status", 1), ("created_at", -1)])
        await jobs.create_index([("requester_wallet", 1), ("created_at", -1)])
        # Unpaid jobs store payment_tx_hash as null, so only strings are indexed
        await jobs.create_index(
            [("payment_tx_hash", 1)],
            unique=True,
            partialFilterExpression={"payment_tx_hash": {"$type": "string"}},
        )

        deliveries = self._collection(DELIVERIES_COLLECTION)
        await deliveries.create_index([("delivery_id", 1)], unique=True)
        await deliveries.create_index([("job_id", 1), ("created_at", 1)])
        await deliveries.create_index([("agent_id", 1)])

        logger.info("indexes_created")

    # ============================================================
    # Agent Operations
    # ============================================================

    async def create_agent(self, agent: Agent, skills: list[Skill]) -> Agent:
        doc = agent.model_dump()
        doc["wallet_address"] = agent.wallet_address.lower()
        await self._collection(AGENTS_COLLECTION).insert_one(doc)
        if skills:
            await self._collection(SKILLS_COLLECTION).insert_many([s.model_dump() for s in skills])
        logger.info("agent_created", agent_id=agent.agent_id, skills=len(skills))
        return agent

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        doc = await self._collection(AGENTS_COLLECTION).find_one({"agent_id": agent_id})
        return Agent(**_strip_id(doc)) if doc else None

    async def get_agent_by_wallet(self, wallet_address: str) -> Optional[Agent]:
        doc = await self._collection(AGENTS_COLLECTION).find_one({
            "wallet_address": {"$regex": f"^{re.escape(wallet_address)}$", "$options": "i"}
        })
        return Agent(**_strip_id(doc)) if doc else None

    async def list_agents(self, active_only: bool = True, limit: int = 100) -> list[Agent]:
        query = {"is_active": True} if active_only else {}
        cursor = self._collection(AGENTS_COLLECTION).find(query).sort([
            ("rating", -1),
            ("total_jobs", -1),
        ]).limit(limit)

        agents = []
        async for doc in cursor:
            agents.append(Agent(**_strip_id(doc)))
        return agents

    async def set_agent_active(self, agent_id: str, active: bool) -> bool:
        result = await self._collection(AGENTS_COLLECTION).update_one(
            {"agent_id": agent_id},
            {"$set": {"is_active": active}},
        )
        return result.matched_count > 0

    async def delete_agent(self, agent_id: str) -> bool:
        result = await self._collection(AGENTS_COLLECTION).delete_one({"agent_id": agent_id})
        if result.deleted_count == 0:
            return False
        await self._collection(SKILLS_COLLECTION).delete_many({"agent_id": agent_id})
        await self._collection(DELIVERIES_COLLECTION).delete_many({"agent_id": agent_id})
        logger.info("agent_deleted", agent_id=agent_id)
        return True

    # ============================================================
    # Skill Operations
    # ============================================================

    async def get_skill(self, skill_id: str) -> Optional[Skill]:
        doc = await self._collection(SKILLS_COLLECTION).find_one({"skill_id": skill_id})
        return Skill(**_strip_id(doc)) if doc else None

    async def list_skills(self, agent_id: str, active_only: bool = True) -> list[Skill]:
        query: dict[str, Any] = {"agent_id": agent_id}
        if active_only:
            query["is_active"] = True
        skills = []
        async for doc in self._collection(SKILLS_COLLECTION).find(query):
            skills.append(Skill(**_strip_id(doc)))
        return skills

    # ============================================================
    # Job Operations
    # ============================================================

    async def create_job(self, job: Job) -> Job:
        await self._collection(JOBS_COLLECTION).insert_one(job.model_dump())
        logger.info("job_created", job_id=job.job_id)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        doc = await self._collection(JOBS_COLLECTION).find_one({"job_id": job_id})
        return Job(**_strip_id(doc)) if doc else None

    async def list_jobs_for_agent(
        self,
        agent_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> list[Job]:
        query: dict[str, Any] = {"agent_id": agent_id}
        if status is not None:
            query["status"] = JobStatus(status).value
        cursor = self._collection(JOBS_COLLECTION).find(query).sort("created_at", -1).limit(limit)

        jobs = []
        async for doc in cursor:
            jobs.append(Job(**_strip_id(doc)))
        return jobs

    async def list_jobs_for_requester(
        self,
        wallet_address: str,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> list[Job]:
        query: dict[str, Any] = {"requester_wallet": wallet_address.lower()}
        if status is not None:
            query["status"] = JobStatus(status).value
        cursor = self._collection(JOBS_COLLECTION).find(query).sort("created_at", -1).limit(limit)

        jobs = []
        async for doc in cursor:
            jobs.append(Job(**_strip_id(doc)))
        return jobs

    async def get_job_by_payment_tx(self, tx_hash: str) -> Optional[Job]:
        doc = await self._collection(JOBS_COLLECTION).find_one({"payment_tx_hash": tx_hash})
        return Job(**_strip_id(doc)) if doc else None

    async def transition_job(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        target: JobStatus,
        updates: Optional[dict[str, Any]] = None,
    ) -> Optional[Job]:
        changes = {k: v.value if isinstance(v, Enum) else v for k, v in (updates or {}).items()}
        changes["status"] = JobStatus(target).value
        try:
            doc = await self._collection(JOBS_COLLECTION).find_one_and_update(
                {"job_id": job_id, "status": {"$in": _status_values(expected)}},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            if changes.get("payment_tx_hash"):
                raise DuplicatePaymentTx(changes["payment_tx_hash"])
            raise
        return Job(**_strip_id(doc)) if doc else None

    async def complete_job(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        output: dict[str, Any],
        completed_at: datetime,
    ) -> Optional[Job]:
        jobs = self._collection(JOBS_COLLECTION)
        agents = self._collection(AGENTS_COLLECTION)

        async with await self.db.client.start_session() as session:
            async with session.start_transaction():
                doc = await jobs.find_one_and_update(
                    {"job_id": job_id, "status": {"$in": _status_values(expected)}},
                    {"$set": {
                        "status": JobStatus.COMPLETED.value,
                        "output_data": output,
                        "completed_at": completed_at,
                    }},
                    return_document=ReturnDocument.AFTER,
                    session=session,
                )
                if doc is None:
                    return None

                result = await agents.update_one(
                    {"agent_id": doc["agent_id"]},
                    {"$inc": {"total_jobs": 1, "total_earned": doc["price_usdc"]}},
                    session=session,
                )
                if result.matched_count != 1:
                    # Raising inside the block aborts the transaction
                    raise LookupError(f"Agent {doc['agent_id']} missing for job {job_id}")

        return Job(**_strip_id(doc))

    async def delete_job(self, job_id: str) -> bool:
        result = await self._collection(JOBS_COLLECTION).delete_one({"job_id": job_id})
        if result.deleted_count == 0:
            return False
        await self._collection(DELIVERIES_COLLECTION).delete_many({"job_id": job_id})
        logger.info("job_deleted", job_id=job_id)
        return True

    # ============================================================
    # Webhook Delivery Records
    # ============================================================

    async def record_delivery(self, record: WebhookDelivery) -> None:
        await self._collection(DELIVERIES_COLLECTION).insert_one(record.model_dump())

    async def list_deliveries(self, job_id: str) -> list[WebhookDelivery]:
        cursor = self._collection(DELIVERIES_COLLECTION).find({"job_id": job_id}).sort([
            ("created_at", 1),
            ("attempt", 1),
        ])
        records = []
        async for doc in cursor:
            records.append(WebhookDelivery(**_strip_id(doc)))
        return records
