"""Privilege lifecycle service.

Mediates between a caller's in-memory privilege records and the durable
copies held by a storage collaborator. Nothing is cached between calls and
each mutating operation writes to storage exactly once. Failures propagate
with their error kind intact; nothing is retried here.
"""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Literal, Optional, Sequence, TypeVar

from loguru import logger

from ..audit import AuditLogger
from ..config import Config
from ..errors import Forbidden, IllegalTransition, NotFound, PrivilegeError, StorageTimeout, ValidationError
from ..identity import IdentityProvider, SessionIdentity
from ..storage.base import PrivilegeStore
from .models import PrivilegeRequest, PrivilegeState, PrivilegeUpdateRequest, equals
from .rules import ResponseModeration
from .transitions import check_editable, plan_transition

T = TypeVar("T")

Role = Literal["caller", "callee"]


class PrivilegeQuery:
    """
    Lazy, restartable view over the privileges a client holds in one role.

    Nothing is fetched until iteration starts, and each ``async for`` runs
    the storage query again from the beginning.
    """

    def __init__(self, store: PrivilegeStore, client_id: str, role: Role):
        self._store = store
        self.client_id = client_id
        self.role = role

    def _matches(self, record: PrivilegeRequest) -> bool:
        if self.role == "caller":
            return record.caller_client_id == self.client_id
        return record.callee_client_id == self.client_id

    def __aiter__(self) -> AsyncIterator[PrivilegeRequest]:
        return self._store.query(self._matches).__aiter__()

    async def to_list(self, timeout: Optional[float] = None) -> list[PrivilegeRequest]:
        """Materialize the query, bounded by a timeout."""

        async def _collect() -> list[PrivilegeRequest]:
            return [record async for record in self]

        timeout = Config.STORAGE_TIMEOUT if timeout is None else timeout
        try:
            return await asyncio.wait_for(_collect(), timeout)
        except asyncio.TimeoutError:
            raise StorageTimeout(f"Listing privileges for {self.role} '{self.client_id}' timed out")


class PrivilegeLifecycleService:
    """
    Create/read/update/transition operations for privilege requests.

    Args:
        store: Storage collaborator (save/find/query/update)
        identity: Identity collaborator used to default the caller on create
        audit: Optional audit trail for successful and denied decisions
        timeout: Default per-call storage timeout in seconds
    """

    def __init__(
        self,
        store: PrivilegeStore,
        identity: Optional[IdentityProvider] = None,
        audit: Optional[AuditLogger] = None,
        timeout: Optional[float] = None,
    ):
        self._store = store
        self._identity = identity or SessionIdentity()
        self._audit = audit
        self._timeout = Config.STORAGE_TIMEOUT if timeout is None else timeout

    async def _call(self, awaitable: Awaitable[T], operation: str, timeout: Optional[float]) -> T:
        """Run one storage call under a timeout, surfacing StorageTimeout."""
        limit = self._timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(awaitable, limit)
        except asyncio.TimeoutError:
            logger.error(f"Storage {operation} timed out after {limit}s")
            raise StorageTimeout(f"Storage {operation} timed out after {limit}s")

    # ========================================================================
    # Create / Read
    # ========================================================================

    async def create(
        self, request: PrivilegeRequest, timeout: Optional[float] = None
    ) -> PrivilegeRequest:
        """
        Validate and persist a new privilege request.

        Whatever state the input carries, the stored record is PENDING.
        An empty caller id is filled from the identity collaborator.

        Args:
            request: Unpersisted record
            timeout: Storage timeout override in seconds

        Returns:
            Stored record with id, timestamps and version

        Raises:
            ValidationError: If the record is malformed
        """
        candidate = request.copy(
            id=None,
            created_at=None,
            updated_at=None,
            version=0,
            state=PrivilegeState.PENDING,
        )
        for rule in candidate.privilege_rules:
            rule.id = ""
            rule.response_moderation = ResponseModeration()
        if not candidate.caller_client_id:
            candidate.caller_client_id = self._identity.current_client_id()

        candidate.validate()

        stored = await self._call(self._store.save(candidate), "save", timeout)
        logger.info(
            f"Created privilege {stored.id} '{stored.name}' "
            f"({stored.caller_client_id} -> {stored.callee_client_id}, {stored.rule_count} rules)"
        )
        if self._audit is not None:
            self._audit.log_created(
                privilege_id=stored.id,
                actor_client_id=stored.caller_client_id,
                callee_client_id=stored.callee_client_id,
                rule_count=stored.rule_count,
            )
        return stored

    def list_for(self, client_id: str, role: str) -> PrivilegeQuery:
        """
        All privileges where client_id occupies role ("caller" or "callee").

        Returns:
            Lazy, restartable async sequence in storage insertion order

        Raises:
            ValidationError: If role is unknown or client_id is empty
        """
        if role not in ("caller", "callee"):
            raise ValidationError(f"role must be 'caller' or 'callee', got '{role}'")
        if not client_id:
            raise ValidationError("client_id must not be empty")
        return PrivilegeQuery(self._store, client_id, role)

    async def get(self, privilege_id: str, timeout: Optional[float] = None) -> PrivilegeRequest:
        """
        Fetch one privilege.

        Raises:
            NotFound: If no record exists for privilege_id
        """
        if not privilege_id:
            raise ValidationError("privilege id must not be empty")
        record = await self._call(self._store.find(privilege_id), "find", timeout)
        if record is None:
            raise NotFound(f"Privilege {privilege_id} not found", privilege_id=privilege_id)
        return record

    # ========================================================================
    # Transitions
    # ========================================================================

    async def transition(
        self,
        privilege_id: str,
        new_state: Any,
        actor_client_id: str,
        response_moderation: Optional[Sequence[Any]] = None,
        timeout: Optional[float] = None,
    ) -> PrivilegeRequest:
        """
        Move a privilege to a new lifecycle state.

        Args:
            privilege_id: Record to change
            new_state: Target PrivilegeState (or its string value)
            actor_client_id: Client deciding; must be the callee
            response_moderation: One moderation entry per rule (required when granting)
            timeout: Storage timeout override in seconds

        Returns:
            The updated record (or the unchanged record for a same-state no-op)

        Raises:
            NotFound: Unknown privilege_id
            Forbidden: Actor is not the callee
            IllegalTransition: State machine forbids the change
            ValidationError: Moderation payload missing or malformed
            Conflict: Record changed between read and write
        """
        target = PrivilegeState.parse(new_state)
        record = await self.get(privilege_id, timeout=timeout)

        try:
            plan = plan_transition(record, target, actor_client_id, response_moderation)
        except (Forbidden, IllegalTransition, ValidationError) as e:
            logger.warning(
                f"Transition of {privilege_id} to {target.value} by '{actor_client_id}' denied: {e.message}"
            )
            if self._audit is not None:
                self._audit.log_denied(
                    privilege_id=privilege_id,
                    actor_client_id=actor_client_id,
                    requested_state=target.value,
                    kind=e.kind,
                    reason=e.message,
                )
            raise

        if plan.noop:
            logger.debug(f"Privilege {privilege_id} already {plan.to_state.value}; nothing to do")
            return record

        updated = await self._call(
            self._store.update(privilege_id, plan.patch(), record.version),
            "update",
            timeout,
        )
        logger.info(
            f"Privilege {privilege_id}: {plan.from_state.value} -> {plan.to_state.value} "
            f"by '{actor_client_id}'"
        )
        if self._audit is not None:
            self._audit.log_state_change(
                privilege_id=privilege_id,
                actor_client_id=actor_client_id,
                old_state=plan.from_state.value,
                new_state=plan.to_state.value,
                moderated_rules=len(plan.rules) if plan.rules is not None else 0,
                on_behalf_of=plan.on_behalf_of,
            )
        return updated

    async def apply(
        self, update: PrivilegeUpdateRequest, timeout: Optional[float] = None
    ) -> PrivilegeRequest:
        """Apply a PrivilegeUpdateRequest (see transition)."""
        return await self.transition(
            update.id,
            update.new_state,
            update.actor_client_id,
            update.response_moderation,
            timeout=timeout,
        )

    # ========================================================================
    # Content edits
    # ========================================================================

    async def update(
        self,
        request: PrivilegeRequest,
        actor_client_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> PrivilegeRequest:
        """
        Replace the content of a PENDING privilege.

        The submitted state is ignored; edits keep the record PENDING.
        A submission identical to the stored record is not written.

        Args:
            request: Full record carrying the id to update
            actor_client_id: When given, must be the stored caller
            timeout: Storage timeout override in seconds

        Raises:
            ValidationError: Missing id or malformed content
            NotFound: Unknown id
            Forbidden: Actor is not the caller
            IllegalTransition: Stored record is no longer PENDING
            Conflict: Record changed between read and write
        """
        if not request.id:
            raise ValidationError("update requires a privilege id")

        stored = await self.get(request.id, timeout=timeout)
        if actor_client_id is not None and actor_client_id != stored.caller_client_id:
            raise Forbidden(
                f"Client '{actor_client_id}' is not the caller of privilege {stored.id}",
                privilege_id=stored.id,
            )
        check_editable(stored)

        candidate = request.copy(state=PrivilegeState.PENDING)
        _reconcile_rules(candidate, stored)
        candidate.validate()

        if equals(candidate, stored):
            logger.debug(f"Privilege {stored.id} unchanged; skipping write")
            return stored

        patch = {
            "name": candidate.name,
            "description": candidate.description,
            "caller_client_id": candidate.caller_client_id,
            "callee_client_id": candidate.callee_client_id,
            "skip_user_token_expiry": candidate.skip_user_token_expiry,
            "privilege_rules": candidate.privilege_rules,
        }
        updated = await self._call(
            self._store.update(stored.id, patch, stored.version), "update", timeout
        )
        logger.info(f"Updated privilege {updated.id} (version {updated.version})")
        if self._audit is not None:
            self._audit.log_updated(
                privilege_id=updated.id,
                actor_client_id=actor_client_id,
                version=updated.version,
            )
        return updated

    async def health(self) -> tuple[bool, str]:
        """Report storage reachability."""
        try:
            return await self._call(self._store.health(), "health", None)
        except PrivilegeError as e:
            return False, e.message

    async def close(self) -> None:
        await self._store.close()


def _reconcile_rules(candidate: PrivilegeRequest, stored: PrivilegeRequest) -> None:
    """
    Strip server- and callee-owned rule fields from an edit.

    A submitted rule id survives only if it names a stored rule and has not
    already been claimed earlier in the submission; any other id is cleared
    so storage assigns a fresh one. Moderation is always reset.
    """
    known = {rule.id for rule in stored.privilege_rules if rule.id}
    claimed: set[str] = set()
    for rule in candidate.privilege_rules:
        if rule.id in known and rule.id not in claimed:
            claimed.add(rule.id)
        else:
            rule.id = ""
        rule.response_moderation = ResponseModeration()
