"""Privilege MCP - lifecycle service for inter-system access privileges."""

__version__ = "0.1.0"

from .errors import PrivilegeError
from .privileges import PrivilegeLifecycleService, PrivilegeRequest, PrivilegeRule, PrivilegeState

__all__ = [
    "PrivilegeError",
    "PrivilegeLifecycleService",
    "PrivilegeRequest",
    "PrivilegeRule",
    "PrivilegeState",
    "__version__",
]
