"""FastMCP server exposing the privilege lifecycle.

Tools:
- create_privilege: Submit a new request (always PENDING)
- list_privileges: Requests where a client is caller or callee
- get_privilege: Fetch one request
- transition_privilege: Grant, reject, activate or deactivate a request
- update_privilege: Edit a request while it is still PENDING
- get_storage_status: Storage backend reachability

Tools take and return JSON-shaped dicts using the wire field names
(callerClientId, privilegeRules, responseModeration...). Failures from the
core surface as ToolError messages prefixed with the error kind.
"""

import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from loguru import logger

from .audit import AuditLogger
from .config import Config
from .errors import PrivilegeError
from .identity import identity_from_context
from .privileges import PrivilegeLifecycleService, PrivilegeRequest, PrivilegeUpdateRequest
from .redis_client import close_redis_client
from .storage import create_store

SERVER_NAME = "PrivilegeLifecycle"
HOST = Config.HOST
PORT = Config.PORT

_service: Optional[PrivilegeLifecycleService] = None


def get_service() -> PrivilegeLifecycleService:
    """Return the process-wide service, building it from Config on first use."""
    global _service
    if _service is None:
        _service = PrivilegeLifecycleService(
            store=create_store(),
            audit=AuditLogger(Config.AUDIT_LOG_PATH),
        )
    return _service


def set_service(service: Optional[PrivilegeLifecycleService]) -> None:
    """Replace the process-wide service (tests, embedding)."""
    global _service
    _service = service


def _tool_error(e: PrivilegeError) -> ToolError:
    return ToolError(f"{e.kind}: {e.message}")


def _acting_client(actor_client_id: Optional[str], ctx: Optional[Context]) -> str:
    """Explicit actor if given, else the session identity (dev placeholder outside production)."""
    if actor_client_id:
        return actor_client_id
    return identity_from_context(ctx).current_client_id()


# ============================================================================
# SERVER LIFECYCLE
# ============================================================================


@asynccontextmanager
async def lifespan(app):
    """
    Server lifecycle manager (startup/shutdown).

    Startup: build the service and report storage reachability.
    Shutdown: release storage and the shared Redis pool.
    """
    logger.info(f"Starting {SERVER_NAME} server...")
    service = get_service()
    healthy, message = await service.health()
    if healthy:
        logger.info(f"Storage ready: {message}")
    else:
        logger.warning(f"Storage not reachable at startup: {message}")

    try:
        yield
    finally:
        logger.info(f"Shutting down {SERVER_NAME} server...")
        await service.close()
        await close_redis_client()


mcp = FastMCP(name=SERVER_NAME, lifespan=lifespan)


# ============================================================================
# TOOLS
# ============================================================================


@mcp.tool()
async def create_privilege(privilege: dict[str, Any], ctx: Context = None) -> dict[str, Any]:
    """
    Submit a new privilege request.

    The stored request is always PENDING. When callerClientId is empty the
    session identity is used.

    Args:
        privilege: Request with name, description, callerClientId,
            calleeClientId, skipUserTokenExpiry and privilegeRules

    Returns:
        Stored request including id, timestamps and version

    Raises:
        ToolError: If validation or storage fails
    """
    try:
        request = PrivilegeRequest.from_dict(privilege)
        if not request.caller_client_id:
            request.caller_client_id = identity_from_context(ctx).current_client_id()
        stored = await get_service().create(request)
    except PrivilegeError as e:
        raise _tool_error(e)
    return stored.to_dict()


@mcp.tool()
async def list_privileges(
    role: str = "caller", client_id: str = "", ctx: Context = None
) -> list[dict[str, Any]]:
    """
    List requests where a client is the caller (outgoing) or callee (incoming).

    Args:
        role: "caller" or "callee"
        client_id: Client to list for (defaults to the session identity)

    Returns:
        Requests in submission order
    """
    try:
        client = _acting_client(client_id, ctx)
        records = await get_service().list_for(client, role).to_list()
    except PrivilegeError as e:
        raise _tool_error(e)
    return [record.to_dict() for record in records]


@mcp.tool()
async def get_privilege(privilege_id: str) -> dict[str, Any]:
    """Fetch one privilege request by id."""
    try:
        record = await get_service().get(privilege_id)
    except PrivilegeError as e:
        raise _tool_error(e)
    return record.to_dict()


@mcp.tool()
async def transition_privilege(
    privilege_id: str,
    new_state: str,
    actor_client_id: str = "",
    response_moderation: Optional[list[dict[str, Any]]] = None,
    ctx: Context = None,
) -> dict[str, Any]:
    """
    Move a privilege request to a new state.

    Only the callee may decide. Granting requires one responseModeration
    entry per rule ({"fields": ..., "responseFilterCriteria": ...}).

    Args:
        privilege_id: Request to change
        new_state: GRANTED, REJECTED, ACTIVE or INACTIVE (APPROVED is read as GRANTED)
        actor_client_id: Deciding client (defaults to the session identity)
        response_moderation: Per-rule moderation, in rule order

    Returns:
        The request after the change

    Raises:
        ToolError: forbidden, illegal_transition, validation_error, not_found, conflict
    """
    try:
        update = PrivilegeUpdateRequest.from_dict(
            {
                "id": privilege_id,
                "newState": new_state,
                "actorClientId": _acting_client(actor_client_id, ctx),
                "responseModeration": response_moderation,
            }
        )
        record = await get_service().apply(update)
    except PrivilegeError as e:
        raise _tool_error(e)
    return record.to_dict()


@mcp.tool()
async def update_privilege(
    privilege: dict[str, Any], actor_client_id: str = "", ctx: Context = None
) -> dict[str, Any]:
    """
    Edit a PENDING privilege request.

    The submitted state is ignored. Only the caller may edit, and only
    before the callee has decided.

    Args:
        privilege: Full request including its id
        actor_client_id: Editing client (defaults to the session identity)

    Returns:
        The stored request (unchanged when nothing differs)
    """
    try:
        request = PrivilegeRequest.from_dict(privilege)
        record = await get_service().update(request, actor_client_id=_acting_client(actor_client_id, ctx))
    except PrivilegeError as e:
        raise _tool_error(e)
    return record.to_dict()


@mcp.tool()
async def get_storage_status() -> dict[str, Any]:
    """Report the configured storage backend and whether it is reachable."""
    healthy, message = await get_service().health()
    return {
        "backend": Config.STORAGE_BACKEND,
        "healthy": healthy,
        "message": message,
        "environment": Config.ENVIRONMENT,
    }


def main():
    """
    Main entry point for the privilege server.

    Configures:
    - Loguru for structured logging
    - HTTP/SSE transport
    """
    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>",
        level="INFO",
    )

    logger.add(
        "privilege_mcp.log",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        level="DEBUG",
    )

    try:
        Config.validate()
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"Starting {SERVER_NAME} on {HOST}:{PORT}...")

    try:
        mcp.run(transport="sse", host=HOST, port=PORT)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
