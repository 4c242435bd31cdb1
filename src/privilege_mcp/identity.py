"""Identity collaborator: who is acting on a privilege request."""

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from loguru import logger

from .config import Config
from .errors import Forbidden


class IdentityProvider(Protocol):
    """Supplies the acting client's identifier. Pure lookup, no side effects."""

    def current_client_id(self) -> str:
        """Return the acting client id."""


@dataclass(frozen=True)
class SessionIdentity:
    """
    Identity resolved from an authenticated session.

    Outside production a missing session falls back to the development
    placeholder client (Config.DEV_CLIENT_ID). In production a missing
    session is refused. Unset fields follow Config at call time.
    """

    client_id: Optional[str] = None
    production: Optional[bool] = None
    placeholder: Optional[str] = None

    def current_client_id(self) -> str:
        if self.client_id:
            return self.client_id
        production = Config.PRODUCTION if self.production is None else self.production
        if production:
            raise Forbidden("No authenticated session supplies a client id")
        return Config.DEV_CLIENT_ID if self.placeholder is None else self.placeholder


def identity_from_context(ctx: Any) -> SessionIdentity:
    """
    Build a SessionIdentity from a FastMCP Context (or anything shaped like one).

    Looks for a ``client_id`` on the request context first, then on the
    context itself. Session ids are not client ids and are ignored.
    """
    request_context = getattr(ctx, "request_context", None)
    client_id = getattr(request_context, "client_id", None) or getattr(ctx, "client_id", None)
    if client_id is not None and not isinstance(client_id, str):
        client_id = str(client_id)
    if not client_id:
        logger.debug("No client id on request context; using session fallback")
    return SessionIdentity(client_id=client_id or None)
