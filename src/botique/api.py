"""TheBotique hub API.

Agents register and list skills, buyers create and pay for jobs, and agents
report results back through the job callbacks.
"""

import re
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
from dotenv import load_dotenv

from . import __version__
from .auth import get_api_key
from .config import get_settings
from .coordinator import HubCoordinator, build_coordinator
from .errors import BotiqueError, ValidationError
from .models import Job, JobStatus
from .schemas import (
    AcceptJobRequest,
    AgentRegisterRequest,
    CompleteJobRequest,
    JobCreateRequest,
    PayJobRequest,
    WALLET_PATTERN,
)

load_dotenv()
logger = structlog.get_logger()

app = FastAPI(
    title="TheBotique",
    description="Agent marketplace hub with USDC payments on Base",
    version=__version__,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_coordinator(request: Request) -> HubCoordinator:
    return request.app.state.coordinator


def _check_uuid(job_id: str) -> str:
    try:
        uuid.UUID(job_id)
    except ValueError:
        raise ValidationError("Invalid job ID format")
    return job_id


def _job_response(job: Job) -> dict:
    return job.model_dump(mode="json")


# ============================================================
# Error Handlers
# ============================================================

@app.exception_handler(BotiqueError)
async def botique_error_handler(request: Request, exc: BotiqueError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    error = ValidationError(f"{field}: {message}" if field else message)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={"error": "Something went wrong. Please try again.", "code": "INTERNAL_ERROR"},
    )


# ============================================================
# Lifecycle
# ============================================================

@app.on_event("startup")
async def startup():
    if getattr(app.state, "coordinator", None) is None:
        app.state.coordinator = build_coordinator(get_settings())
    await app.state.coordinator.store.init()
    logger.info("botique_api_started", version=__version__)


@app.on_event("shutdown")
async def shutdown():
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        await coordinator.dispatcher.shutdown()
        await coordinator.store.close()
    logger.info("botique_api_stopped")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "TheBotique", "version": __version__}


# ============================================================
# Agent Endpoints
# ============================================================

@app.post("/api/register-agent")
async def register_agent(
    request: AgentRegisterRequest,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Register a new agent.

    The API key and webhook secret are in this response only. Store them:
    the API key authenticates job callbacks and the secret verifies the
    signature on webhook notifications.
    """
    result = await coordinator.register_agent(request)
    return {
        "success": True,
        "agent": result.agent.public_profile(result.skills),
        "api_key": result.api_key,
        "webhook_secret": result.webhook_secret,
    }


@app.get("/api/agents")
async def list_agents(
    limit: int = 100,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Active agents with their skills."""
    agents = await coordinator.list_agents(limit=max(1, min(limit, 100)))
    profiles = [agent.public_profile(skills) for agent, skills in agents]
    return {"agents": profiles, "count": len(profiles)}


@app.get("/api/agents/{agent_id}")
async def get_agent_details(
    agent_id: str,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    agent, skills = await coordinator.get_agent(agent_id)
    return agent.public_profile(skills)


@app.delete("/api/agents/{agent_id}")
async def deactivate_agent(
    agent_id: str,
    api_key: Optional[str] = Depends(get_api_key),
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Deactivate an agent. Requires the agent's key in `X-API-Key`."""
    agent = await coordinator.deactivate_agent(agent_id, api_key)
    return {"success": True, "agent_id": agent.agent_id, "is_active": agent.is_active}


@app.get("/api/agents/{agent_id}/jobs")
async def get_agent_jobs(
    agent_id: str,
    status: Optional[JobStatus] = None,
    limit: int = 100,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Jobs assigned to this agent, newest first."""
    jobs = await coordinator.list_agent_jobs(agent_id, status=status, limit=max(1, min(limit, 100)))
    return {"jobs": [_job_response(j) for j in jobs], "count": len(jobs)}


# ============================================================
# Job Endpoints
# ============================================================

@app.post("/api/jobs")
async def create_job(
    request: JobCreateRequest,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Create a job. It stays `created` until payment is verified."""
    job = await coordinator.create_job(request)
    return {"job_id": job.job_id, "status": job.status.value, "price_usdc": job.price_usdc}


@app.get("/api/jobs/{job_id}")
async def get_job_details(
    job_id: str,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    job = await coordinator.get_job(_check_uuid(job_id))
    return _job_response(job)


@app.post("/api/jobs/{job_id}/pay")
async def pay_job(
    job_id: str,
    request: PayJobRequest,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Submit the payment transaction for a job.

    If the agent has a webhook, it is notified in the background and the
    job comes back `paid`. Otherwise the hub processes the job before
    responding and the job comes back `completed` or `failed`.
    """
    result = await coordinator.submit_payment(_check_uuid(job_id), request.tx_hash)
    job = result.job
    return {
        "success": True,
        "job_id": job.job_id,
        "status": job.status.value,
        "fulfillment": result.fulfillment.kind.value,
        "webhook_notified": result.fulfillment.webhook_notified,
        "output": job.output_data,
        "failure_reason": job.failure_reason,
    }


@app.post("/api/jobs/{job_id}/accept")
async def accept_job(
    job_id: str,
    request: AcceptJobRequest,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Agent starts work on a paid job."""
    job = await coordinator.mark_in_progress(_check_uuid(job_id), request.api_key)
    return {"success": True, "job_id": job.job_id, "status": job.status.value}


@app.post("/api/jobs/{job_id}/complete")
async def complete_job(
    job_id: str,
    request: CompleteJobRequest,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Agent reports progress (`status=in_progress`) or delivers its output."""
    job = await coordinator.complete_job(
        _check_uuid(job_id),
        request.api_key,
        output=request.output,
        status=request.status,
    )
    return {"success": True, "job_id": job.job_id, "status": job.status.value}


@app.get("/api/jobs/{job_id}/deliveries")
async def get_job_deliveries(
    job_id: str,
    api_key: Optional[str] = Depends(get_api_key),
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Webhook delivery attempts for a job. Requires the agent's `X-API-Key`."""
    records = await coordinator.list_deliveries(_check_uuid(job_id), api_key)
    return {
        "job_id": job_id,
        "deliveries": [r.model_dump(mode="json") for r in records],
        "count": len(records),
    }


# ============================================================
# Buyer Endpoints
# ============================================================

@app.get("/api/users/{wallet}/jobs")
async def get_requester_jobs(
    wallet: str,
    status: Optional[JobStatus] = None,
    limit: int = 100,
    coordinator: HubCoordinator = Depends(get_coordinator),
):
    """Jobs created by this buyer wallet, newest first."""
    if not re.fullmatch(WALLET_PATTERN, wallet):
        raise ValidationError("Invalid wallet address")
    jobs = await coordinator.list_requester_jobs(wallet, status=status, limit=max(1, min(limit, 100)))
    return {"jobs": [_job_response(j) for j in jobs], "count": len(jobs)}
