"""Storage collaborator contract for privilege records."""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Optional

from ..privileges.models import PrivilegeRequest

Predicate = Callable[[PrivilegeRequest], bool]


class PrivilegeStore(ABC):
    """
    Durable home of privilege records.

    Implementations own id assignment, timestamps and the version counter
    used for optimistic concurrency. They never retry on their own.
    """

    @abstractmethod
    async def save(self, record: PrivilegeRequest) -> PrivilegeRequest:
        """
        Persist a new record.

        Returns:
            Stored copy with id, created_at, updated_at and version=1
        """

    @abstractmethod
    async def find(self, privilege_id: str) -> Optional[PrivilegeRequest]:
        """Return the stored record, or None if the id is unknown."""

    @abstractmethod
    def query(self, predicate: Predicate) -> AsyncIterator[PrivilegeRequest]:
        """Yield stored records matching predicate in insertion order."""

    @abstractmethod
    async def update(
        self,
        privilege_id: str,
        patch: dict[str, Any],
        expected_version: int,
    ) -> PrivilegeRequest:
        """
        Apply a patch if the stored version still equals expected_version.

        Args:
            privilege_id: Record to update
            patch: Attribute name -> new value (e.g. state, privilege_rules)
            expected_version: Version the caller read before deciding

        Returns:
            Updated record with version incremented

        Raises:
            NotFound: If the id is unknown
            Conflict: If another writer got there first
        """

    async def health(self) -> tuple[bool, str]:
        """Report backend reachability."""
        return True, f"{type(self).__name__} ready"

    async def close(self) -> None:
        """Release backend resources."""


def apply_patch(record: PrivilegeRequest, patch: dict[str, Any]) -> PrivilegeRequest:
    """Return a copy of record with patch applied; server-assigned fields are protected."""
    protected = {"id", "created_at", "updated_at", "version"}
    illegal = protected.intersection(patch)
    if illegal:
        raise ValueError(f"patch may not set server-assigned fields: {sorted(illegal)}")
    unknown = [key for key in patch if not hasattr(record, key)]
    if unknown:
        raise ValueError(f"patch has unknown fields: {unknown}")
    return record.copy(**patch)
