"""Payment verification for USDC on Base."""

from ..config import Settings
from .verification import (
    OnChainUSDCVerifier,
    PaymentVerifier,
    StaticVerifier,
    VerificationResult,
)


def create_verifier(settings: Settings) -> PaymentVerifier:
    """On-chain verifier, or a pass-through when payments are disabled."""
    if settings.payments_enabled:
        return OnChainUSDCVerifier(settings)
    return StaticVerifier(valid=True)


__all__ = [
    "OnChainUSDCVerifier",
    "PaymentVerifier",
    "StaticVerifier",
    "VerificationResult",
    "create_verifier",
]
