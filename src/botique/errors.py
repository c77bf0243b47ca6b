"""Error taxonomy for the hub.

Every error carries an HTTP status and a stable code so the API layer can
render it without inspecting messages. Messages are safe to show to buyers
and agents; never put credentials or raw upstream errors in them.
"""

from typing import Optional


class BotiqueError(Exception):
    """Base class for hub errors surfaced to callers."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BotiqueError):
    """Malformed or missing request fields."""

    status_code = 400
    code = "INVALID_INPUT"


class PaymentVerificationError(BotiqueError):
    """Transaction missing, underpaid, or sent to the wrong address.

    The job is left in `created`; the buyer may resubmit a transaction hash.
    """

    status_code = 400
    code = "PAYMENT_VERIFICATION_FAILED"


class Unauthorized(BotiqueError):
    status_code = 403
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized", details: Optional[str] = None):
        super().__init__(message, details)


class NotFound(BotiqueError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(BotiqueError):
    status_code = 409
    code = "CONFLICT"


class InvalidStateTransition(BotiqueError):
    """Requested transition is not valid from the job's current state.

    Also raised to the loser of a concurrent update on the same job.
    """

    status_code = 409
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, job_id: str, current: Optional[str], target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job status is {current}, cannot move to {target}")


class DeliveryFailure(BotiqueError):
    """Webhook delivery did not get an acknowledgment from the agent."""

    code = "WEBHOOK_DELIVERY_FAILED"

    def __init__(self, message: str, attempts: int, status_code: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts
        self.http_status = status_code


class DeliveryPermanentFailure(DeliveryFailure):
    """Agent endpoint rejected the notification with a 4xx."""


class DeliveryTransientFailure(DeliveryFailure):
    """Agent endpoint kept failing (5xx, network, timeout) until retries ran out."""
