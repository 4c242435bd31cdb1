"""Redis-backed privilege store with WATCH-based optimistic concurrency."""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from loguru import logger
from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from ..config import Config
from ..errors import Conflict, NotFound, StorageTimeout, StorageUnavailable
from ..privileges.models import PrivilegeRequest
from ..redis_client import check_redis_health, get_redis_client
from .base import Predicate, PrivilegeStore, apply_patch

_QUERY_BATCH_SIZE = 100


class RedisPrivilegeStore(PrivilegeStore):
    """
    Stores each record as a JSON document.

    Keys:
    - {prefix}:privilege:{id}  -> record JSON (camelCase wire shape)
    - {prefix}:index           -> list of ids in insertion order

    Updates WATCH the record key, compare the stored version with the
    version the caller read, and write inside MULTI/EXEC. A lost race
    surfaces as Conflict; nothing is retried here.
    """

    def __init__(self, client: Optional[aioredis.Redis] = None, prefix: Optional[str] = None):
        """
        Initialize store with lazy Redis connection.

        Args:
            client: Redis client to use (defaults to the shared pooled client)
            prefix: Key namespace (defaults to Config.REDIS_KEY_PREFIX)
        """
        self._redis_client = client
        self._prefix = prefix or Config.REDIS_KEY_PREFIX

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis_client is None:
            try:
                self._redis_client = await get_redis_client()
            except RedisConnectionError as e:
                raise StorageUnavailable(f"Redis unavailable: {e}")
            except RedisTimeoutError as e:
                raise StorageTimeout(f"Redis connection timed out: {e}")
        return self._redis_client

    def _record_key(self, privilege_id: str) -> str:
        return f"{self._prefix}:privilege:{privilege_id}"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}:index"

    @staticmethod
    def _serialize(record: PrivilegeRequest) -> str:
        return json.dumps(record.to_dict())

    @staticmethod
    def _deserialize(payload: str) -> PrivilegeRequest:
        return PrivilegeRequest.from_dict(json.loads(payload))

    @staticmethod
    def _assign_rule_ids(record: PrivilegeRequest) -> None:
        for rule in record.privilege_rules:
            if not rule.id:
                rule.id = uuid.uuid4().hex

    async def save(self, record: PrivilegeRequest) -> PrivilegeRequest:
        now = datetime.now(timezone.utc)
        stored = record.copy(id=uuid.uuid4().hex, created_at=now, updated_at=now, version=1)
        self._assign_rule_ids(stored)

        try:
            redis = await self._get_redis()
            async with redis.pipeline(transaction=True) as pipe:
                pipe.set(self._record_key(stored.id), self._serialize(stored))
                pipe.rpush(self._index_key, stored.id)
                await pipe.execute()
        except RedisConnectionError as e:
            logger.error(f"Redis connection failed in save: {e}")
            raise StorageUnavailable(f"Redis unavailable: {e}")
        except RedisTimeoutError as e:
            logger.error(f"Redis timed out in save: {e}")
            raise StorageTimeout(f"Redis timed out: {e}")

        logger.debug(f"Stored privilege {stored.id} in Redis")
        return stored

    async def find(self, privilege_id: str) -> Optional[PrivilegeRequest]:
        try:
            redis = await self._get_redis()
            payload = await redis.get(self._record_key(privilege_id))
        except RedisConnectionError as e:
            logger.error(f"Redis connection failed in find: {e}")
            raise StorageUnavailable(f"Redis unavailable: {e}", privilege_id=privilege_id)
        except RedisTimeoutError as e:
            logger.error(f"Redis timed out in find: {e}")
            raise StorageTimeout(f"Redis timed out: {e}", privilege_id=privilege_id)

        if payload is None:
            return None
        return self._deserialize(payload)

    async def query(self, predicate: Predicate) -> AsyncIterator[PrivilegeRequest]:
        try:
            redis = await self._get_redis()
            start = 0
            while True:
                ids = await redis.lrange(self._index_key, start, start + _QUERY_BATCH_SIZE - 1)
                if not ids:
                    break
                payloads = await redis.mget([self._record_key(i) for i in ids])
                for payload in payloads:
                    if payload is None:
                        continue
                    record = self._deserialize(payload)
                    if predicate(record):
                        yield record
                start += len(ids)
        except RedisConnectionError as e:
            logger.error(f"Redis connection failed in query: {e}")
            raise StorageUnavailable(f"Redis unavailable: {e}")
        except RedisTimeoutError as e:
            logger.error(f"Redis timed out in query: {e}")
            raise StorageTimeout(f"Redis timed out: {e}")

    async def update(
        self,
        privilege_id: str,
        patch: dict[str, Any],
        expected_version: int,
    ) -> PrivilegeRequest:
        key = self._record_key(privilege_id)
        try:
            redis = await self._get_redis()
            async with redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                payload = await pipe.get(key)
                if payload is None:
                    raise NotFound(f"Privilege {privilege_id} not found", privilege_id=privilege_id)

                current = self._deserialize(payload)
                if current.version != expected_version:
                    raise Conflict(
                        f"Privilege {privilege_id} changed concurrently "
                        f"(expected version {expected_version}, found {current.version})",
                        privilege_id=privilege_id,
                    )

                updated = apply_patch(current, patch)
                updated.version = current.version + 1
                updated.updated_at = datetime.now(timezone.utc)
                self._assign_rule_ids(updated)

                pipe.multi()
                pipe.set(key, self._serialize(updated))
                await pipe.execute()
        except WatchError:
            logger.warning(f"Optimistic write lost for privilege {privilege_id}")
            raise Conflict(
                f"Privilege {privilege_id} changed concurrently",
                privilege_id=privilege_id,
            )
        except RedisConnectionError as e:
            logger.error(f"Redis connection failed in update: {e}")
            raise StorageUnavailable(f"Redis unavailable: {e}", privilege_id=privilege_id)
        except RedisTimeoutError as e:
            logger.error(f"Redis timed out in update: {e}")
            raise StorageTimeout(f"Redis timed out: {e}", privilege_id=privilege_id)

        return updated

    async def health(self) -> tuple[bool, str]:
        try:
            redis = await self._get_redis()
        except (StorageUnavailable, StorageTimeout) as e:
            return False, e.message
        return await check_redis_health(redis)

    async def close(self) -> None:
        # The shared client is closed by close_redis_client(); only drop our reference
        self._redis_client = None
