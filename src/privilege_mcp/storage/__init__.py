"""Storage collaborators for privilege records."""

from loguru import logger

from ..config import Config
from .base import PrivilegeStore
from .memory import InMemoryPrivilegeStore
from .redis_store import RedisPrivilegeStore


def create_store(backend: str | None = None) -> PrivilegeStore:
    """
    Build the storage backend named by Config.STORAGE_BACKEND.

    Raises:
        ValueError: If the backend is unknown
    """
    backend = (backend or Config.STORAGE_BACKEND).lower()
    if backend == "memory":
        logger.info("Using in-memory privilege store")
        return InMemoryPrivilegeStore()
    if backend == "redis":
        logger.info(f"Using Redis privilege store at {Config.REDIS_URL}")
        return RedisPrivilegeStore()
    raise ValueError(f"Unknown storage backend '{backend}'")


__all__ = [
    "PrivilegeStore",
    "InMemoryPrivilegeStore",
    "RedisPrivilegeStore",
    "create_store",
]
