"""In-process privilege store for development mode and tests."""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from loguru import logger

from ..errors import Conflict, NotFound
from ..privileges.models import PrivilegeRequest
from .base import Predicate, PrivilegeStore, apply_patch


class InMemoryPrivilegeStore(PrivilegeStore):
    """
    Dict-backed store with per-record optimistic concurrency.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._records: dict[str, PrivilegeRequest] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _new_rule_ids(record: PrivilegeRequest) -> None:
        for rule in record.privilege_rules:
            if not rule.id:
                rule.id = uuid.uuid4().hex

    async def save(self, record: PrivilegeRequest) -> PrivilegeRequest:
        async with self._lock:
            now = datetime.now(timezone.utc)
            stored = record.copy(
                id=uuid.uuid4().hex,
                created_at=now,
                updated_at=now,
                version=1,
            )
            self._new_rule_ids(stored)
            self._records[stored.id] = stored
            logger.debug(f"Stored privilege {stored.id} in memory")
            return stored.copy()

    async def find(self, privilege_id: str) -> Optional[PrivilegeRequest]:
        record = self._records.get(privilege_id)
        return record.copy() if record is not None else None

    async def query(self, predicate: Predicate) -> AsyncIterator[PrivilegeRequest]:
        # Snapshot ids so concurrent saves don't break iteration; dicts keep insertion order
        for privilege_id in list(self._records):
            record = self._records.get(privilege_id)
            if record is not None and predicate(record):
                yield record.copy()

    async def update(
        self,
        privilege_id: str,
        patch: dict[str, Any],
        expected_version: int,
    ) -> PrivilegeRequest:
        async with self._lock:
            current = self._records.get(privilege_id)
            if current is None:
                raise NotFound(f"Privilege {privilege_id} not found", privilege_id=privilege_id)
            if current.version != expected_version:
                raise Conflict(
                    f"Privilege {privilege_id} changed concurrently "
                    f"(expected version {expected_version}, found {current.version})",
                    privilege_id=privilege_id,
                )
            updated = apply_patch(current, patch)
            updated.version = current.version + 1
            updated.updated_at = datetime.now(timezone.utc)
            self._new_rule_ids(updated)
            self._records[privilege_id] = updated
            return updated.copy()

    def clear(self) -> None:
        """Drop all records (tests)."""
        self._records.clear()
