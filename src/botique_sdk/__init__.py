"""TheBotique SDK - receive paid jobs and deliver results.

Example usage:
    from botique_sdk import Agent, JobResult

    agent = Agent(api_key="hub_...", webhook_secret="whsec_...")

    @agent.on_job
    async def handle_job(job):
        return JobResult(output={"answer": await answer(job.prompt)})

    # In the route registered as your webhook URL:
    job = await agent.handle_webhook(raw_body, signature_header)
"""

from botique.signing import SIGNATURE_HEADER, verify_signature

from .agent import Agent, InvalidSignature, JobResult, PaidJob

__version__ = "2.0.0"
__all__ = [
    "Agent",
    "InvalidSignature",
    "JobResult",
    "PaidJob",
    "SIGNATURE_HEADER",
    "verify_signature",
]
