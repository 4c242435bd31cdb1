"""Pytest fixtures and test utilities for the privilege lifecycle test suite."""

import json
from pathlib import Path
from typing import Any, Optional

import pytest
from redis import asyncio as aioredis

from privilege_mcp.audit import AuditLogger
from privilege_mcp.config import Config
from privilege_mcp.identity import SessionIdentity
from privilege_mcp.privileges import (
    HttpMethod,
    PrivilegeLifecycleService,
    PrivilegeRequest,
    PrivilegeRule,
)
from privilege_mcp.storage import InMemoryPrivilegeStore

CALLER = "billing-api"
CALLEE = "ledger-api"


# ============================================================================
# REDIS FIXTURES
# ============================================================================


@pytest.fixture
async def redis_client():
    """
    Provide clean Redis connection with flush before and after test.

    Skips the test when no Redis server is reachable.

    Yields:
        Redis client instance with clean database
    """
    client = aioredis.from_url(
        Config.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )

    try:
        await client.ping()
    except (aioredis.ConnectionError, aioredis.TimeoutError, OSError):
        await client.aclose()
        pytest.skip("Redis server not reachable")

    try:
        await client.flushdb()
        yield client
    finally:
        await client.flushdb()
        await client.aclose()


# ============================================================================
# SERVICE FIXTURES
# ============================================================================


@pytest.fixture
def store():
    """Fresh in-memory store."""
    return InMemoryPrivilegeStore()


@pytest.fixture
def audit_log_path(tmp_path) -> Path:
    return tmp_path / "audit.jsonl"


@pytest.fixture
def audit_logger(audit_log_path):
    """Audit logger writing to a temp file with retention cleanup disabled."""
    return AuditLogger(log_path=str(audit_log_path), retention_days=0)


@pytest.fixture
def identity():
    return SessionIdentity(client_id=None, production=False, placeholder="dev-user-123")


@pytest.fixture
def service(store, identity, audit_logger):
    """Lifecycle service over the in-memory store."""
    return PrivilegeLifecycleService(store=store, identity=identity, audit=audit_logger, timeout=2)


# ============================================================================
# DATA FIXTURES
# ============================================================================


def make_rule(
    url: str = "/accounts/*",
    method: Any = HttpMethod.GET,
    priority: int = 0,
    scopes: Optional[list[str]] = None,
) -> PrivilegeRule:
    return PrivilegeRule(
        requested_url=url,
        requested_method=method,
        priority=priority,
        scopes=list(scopes) if scopes is not None else ["read"],
    )


def make_request(
    caller: str = CALLER,
    callee: str = CALLEE,
    rules: Optional[list[PrivilegeRule]] = None,
    **overrides: Any,
) -> PrivilegeRequest:
    fields = {
        "name": "Ledger read access",
        "description": "Billing needs to read ledger accounts for invoicing",
        "caller_client_id": caller,
        "callee_client_id": callee,
        "privilege_rules": rules
        if rules is not None
        else [
            make_rule("/accounts/*", HttpMethod.GET, priority=1),
            make_rule("/accounts/*/entries", HttpMethod.POST, priority=2, scopes=["write"]),
        ],
    }
    fields.update(overrides)
    return PrivilegeRequest(**fields)


def moderation_for(count: int, fields: str = "id,name", criteria: str = "") -> list[dict[str, str]]:
    return [{"fields": fields, "responseFilterCriteria": criteria} for _ in range(count)]


def read_audit(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


@pytest.fixture
def sample_request() -> PrivilegeRequest:
    return make_request()


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Wire-shaped request as a UI would submit it."""
    return {
        "name": "Ledger read access",
        "description": "Billing needs to read ledger accounts for invoicing",
        "callerClientId": CALLER,
        "calleeClientId": CALLEE,
        "skipUserTokenExpiry": False,
        "privilegeRules": [
            {
                "priority": 1,
                "requestedURL": "/accounts/*",
                "requestedMethod": "get",
                "scopes": ["read"],
                "metaData": {"team": "billing"},
            }
        ],
    }


@pytest.fixture
async def pending(service, sample_request) -> PrivilegeRequest:
    """A stored PENDING request between CALLER and CALLEE."""
    return await service.create(sample_request)


@pytest.fixture
def admin(monkeypatch):
    """Register an administrator client for the test."""
    monkeypatch.setattr(Config, "ADMIN_CLIENT_IDS", ["ops-admin"])
    return "ops-admin"
