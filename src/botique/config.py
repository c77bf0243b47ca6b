"""Configuration settings for TheBotique hub.

## Webhook Delivery Defaults

Agents with a webhook URL are notified when a job is paid:
- 4 attempts, waiting 0s / 1s / 2s / 4s before each one
- 30s timeout per attempt
- 4xx responses are permanent, anything else is retried

## Payments

Buyers pay agents directly in USDC on Base. The hub only verifies the
transfer; it never holds funds. Amounts must match the skill price within
`payment_tolerance` (0.1%).
"""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """TheBotique settings from environment."""

    # Storage
    store_backend: str = "mongo"  # mongo | memory
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "botique"

    # Base L2 / USDC
    payments_enabled: bool = True
    base_rpc_url: str = "https://mainnet.base.org"
    usdc_address: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    usdc_decimals: int = 6
    payment_tolerance: float = 0.001
    rpc_timeout_seconds: float = 30.0

    # Webhook delivery
    webhook_max_attempts: int = 4
    webhook_retry_delays: list[float] = [0.0, 1.0, 2.0, 4.0]
    webhook_timeout_seconds: float = 30.0
    webhook_user_agent: str = "TheBotique/2.0"

    # Hub-side processing
    inline_timeout_seconds: float = 30.0
    job_deadline_minutes: int = 60

    # Fireworks AI (inline generation)
    fireworks_api_key: str = ""
    fireworks_model: str = "accounts/fireworks/models/llama-v3p3-70b-instruct"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
