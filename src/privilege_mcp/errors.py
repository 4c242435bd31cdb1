"""Error taxonomy for the privilege lifecycle core.

Every failure raised by the core is a PrivilegeError subclass carrying a
stable ``kind`` string so that a presentation layer can render an
appropriate message without inspecting exception types.
"""

from typing import Optional


class PrivilegeError(Exception):
    """Base class for all privilege lifecycle failures."""

    kind: str = "error"

    def __init__(self, message: str, privilege_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.privilege_id = privilege_id

    def to_dict(self) -> dict:
        """Serialize for transport to a presentation layer."""
        return {
            "kind": self.kind,
            "message": self.message,
            "privilege_id": self.privilege_id,
        }


class ValidationError(PrivilegeError, ValueError):
    """Raised when input is malformed (short name, missing URL, bad method...)."""

    kind = "validation_error"


class InvalidURL(ValidationError):
    """Raised when a rule's requestedURL is empty or malformed."""

    kind = "invalid_url"


class InvalidMethod(ValidationError):
    """Raised when a rule's requestedMethod is not a recognized verb."""

    kind = "invalid_method"


class IllegalTransition(PrivilegeError):
    """Raised when a state change (or an edit after decision) is not allowed."""

    kind = "illegal_transition"


class Forbidden(PrivilegeError):
    """Raised when the acting client may not perform the operation."""

    kind = "forbidden"


class NotFound(PrivilegeError, LookupError):
    """Raised when no privilege record exists for an id."""

    kind = "not_found"


class Conflict(PrivilegeError):
    """Raised when an optimistic write loses against a concurrent writer."""

    kind = "conflict"


class StorageTimeout(PrivilegeError):
    """Raised when the storage collaborator does not answer in time."""

    kind = "timeout"


class StorageUnavailable(PrivilegeError):
    """Raised when the storage collaborator cannot be reached."""

    kind = "unavailable"
