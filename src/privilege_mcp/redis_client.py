"""Shared async Redis connection for the privilege stores."""

import asyncio
import time
from typing import Any, Optional, Tuple

from loguru import logger
from redis import asyncio as aioredis

from .config import Config

_client: Optional[aioredis.Redis] = None
_pool: Optional[aioredis.ConnectionPool] = None
_connect_lock: Optional[asyncio.Lock] = None


class InstrumentedRedis(aioredis.Redis):
    """Redis client that logs commands slower than Config.REDIS_SLOW_COMMAND_MS."""

    async def execute_command(self, *args: Any, **options: Any) -> Any:
        started = time.perf_counter()
        try:
            return await super().execute_command(*args, **options)
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            if elapsed_ms > Config.REDIS_SLOW_COMMAND_MS:
                name = args[0] if args else "?"
                if isinstance(name, bytes):
                    name = name.decode("utf-8", errors="replace")
                logger.warning(f"Slow Redis command {name} took {elapsed_ms:.1f}ms")


def _build_pool() -> aioredis.ConnectionPool:
    return aioredis.ConnectionPool.from_url(
        Config.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=Config.REDIS_MAX_CONNECTIONS,
        socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
        socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
    )


async def _connect() -> aioredis.Redis:
    """
    Open the pool and verify it with PING.

    Connection attempts back off exponentially (REDIS_CONNECT_RETRY_DELAY,
    doubling, capped at REDIS_CONNECT_RETRY_MAX_DELAY). Only connecting is
    retried; commands issued later are never retried here.
    """
    global _client, _pool

    attempts = Config.REDIS_CONNECT_RETRIES
    for attempt in range(1, attempts + 1):
        pool = _build_pool()
        client = InstrumentedRedis(connection_pool=pool)
        try:
            await client.ping()
        except (aioredis.ConnectionError, aioredis.TimeoutError) as e:
            await client.aclose()
            await pool.disconnect()
            if attempt == attempts:
                logger.error(f"Redis at {Config.REDIS_URL} unreachable after {attempts} attempts: {e}")
                raise
            delay = min(
                Config.REDIS_CONNECT_RETRY_DELAY * 2 ** (attempt - 1),
                Config.REDIS_CONNECT_RETRY_MAX_DELAY,
            )
            logger.warning(f"Redis connect attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            continue

        _client, _pool = client, pool
        logger.info(f"Connected to Redis at {Config.REDIS_URL} (max_connections={pool.max_connections})")
        return client

    raise RuntimeError("REDIS_CONNECT_RETRIES must be >= 1")


async def get_redis_client() -> aioredis.Redis:
    """Return the process-wide Redis client, connecting on first use."""
    global _connect_lock

    if _client is not None:
        return _client
    if _connect_lock is None:
        _connect_lock = asyncio.Lock()
    async with _connect_lock:
        if _client is not None:
            return _client
        return await _connect()


async def close_redis_client() -> None:
    """Close the shared client and its pool."""
    global _client, _pool, _connect_lock

    if _client is not None:
        await _client.aclose()
    if _pool is not None:
        await _pool.disconnect()
    _client = None
    _pool = None
    _connect_lock = None


async def check_redis_health(client: Optional[aioredis.Redis] = None) -> Tuple[bool, str]:
    """Ping Redis; returns (healthy, message) and never raises on connection failure."""
    try:
        redis = client if client is not None else await get_redis_client()
        pong = await redis.ping()
    except (aioredis.ConnectionError, aioredis.TimeoutError) as e:
        return False, f"Redis connection failed: {e}"
    if pong is True or pong == "PONG":
        return True, "Redis ping succeeded"
    return False, f"Unexpected Redis ping response: {pong!r}"
