"""Storage backends."""

from ..config import Settings
from .base import DuplicatePaymentTx, HubStore
from .memory import MemoryStore


def create_store(settings: Settings) -> HubStore:
    """Build the store selected by `settings.store_backend`."""
    if settings.store_backend == "memory":
        return MemoryStore()
    if settings.store_backend == "mongo":
        from .mongo import MongoStore
        return MongoStore(settings)
    raise ValueError(f"Unknown store backend: {settings.store_backend}")


__all__ = ["DuplicatePaymentTx", "HubStore", "MemoryStore", "create_store"]
