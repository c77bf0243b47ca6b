"""HMAC signatures for outbound webhooks.

The hub signs the raw request body with the agent's webhook secret and sends
it as `X-Botique-Signature: sha256=<hex>`. Receivers recompute the digest
over the bytes they received and compare in constant time.
"""

import hashlib
import hmac
import json
from typing import Any, Optional, Union

SIGNATURE_HEADER = "X-Botique-Signature"
EVENT_HEADER = "X-Botique-Event"
DELIVERY_HEADER = "X-Botique-Delivery"
SIGNATURE_PREFIX = "sha256="


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Serialize a payload to the exact bytes that get signed and sent."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def compute_signature(body: Union[bytes, str], secret: str) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def sign_payload(payload: dict[str, Any], secret: str) -> tuple[bytes, str]:
    """Encode a payload and sign it.

    Returns:
        (body bytes, signature header value)
    """
    body = encode_payload(payload)
    return body, compute_signature(body, secret)


def verify_signature(body: Union[bytes, str], secret: str, signature: Optional[str]) -> bool:
    """Check a received signature header against the body.

    Args:
        body: Raw request body as received
        secret: The agent's webhook secret
        signature: Value of the X-Botique-Signature header

    Returns:
        True if the signature is valid
    """
    if not signature or not secret:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))
