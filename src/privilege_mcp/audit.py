"""Structured JSON audit trail for privilege lifecycle decisions."""

import json
import os
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

AUDIT_RETENTION_DAYS = int(os.getenv("AUDIT_RETENTION_DAYS", "30"))
AUDIT_ROTATION_BYTES = int(os.getenv("AUDIT_ROTATION_BYTES", str(10 * 1024 * 1024)))
MAX_VALUE_LENGTH = 1000


class AuditEvent(str, Enum):
    """Audit event types for privilege decisions."""

    PRIVILEGE_CREATED = "privilege_created"
    PRIVILEGE_UPDATED = "privilege_updated"
    PRIVILEGE_STATE_CHANGED = "privilege_state_changed"
    TRANSITION_DENIED = "transition_denied"


def _clip(value: Any, limit: int = MAX_VALUE_LENGTH) -> Any:
    # Long strings anywhere in the payload are cut; structure is kept
    if isinstance(value, str):
        if len(value) <= limit:
            return value
        return f"{value[:limit]}... [truncated, {len(value)} total chars]"
    if isinstance(value, dict):
        return {key: _clip(item, limit) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clip(item, limit) for item in value]
    return value


class AuditLogger:
    """
    Append-only JSON Lines record of who decided what on which privilege.

    Every line carries ``timestamp`` (ISO 8601, UTC), ``event``,
    ``privilege_id`` and ``actor_client_id`` plus event-specific fields.

    The live file is renamed to ``<name>.<UTC timestamp>`` once it reaches
    ``rotation_bytes``. Rotated files older than ``retention_days`` are
    deleted (checked at start-up and at most once a day afterwards).
    The live file is never deleted by retention.
    """

    def __init__(
        self,
        log_path: Optional[str] = None,
        retention_days: int = AUDIT_RETENTION_DAYS,
        rotation_bytes: int = AUDIT_ROTATION_BYTES,
    ):
        self.log_path = Path(log_path or os.getenv("AUDIT_LOG_PATH", "./privilege_audit.jsonl"))
        self.retention_days = retention_days
        self.rotation_bytes = rotation_bytes
        self._next_purge: Optional[datetime] = None
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.purge_expired()

    # ------------------------------------------------------------------
    # File management
    # ------------------------------------------------------------------

    def rotated_files(self) -> Iterator[Path]:
        prefix = f"{self.log_path.name}."
        for path in self.log_path.parent.iterdir():
            if path.is_file() and path.name.startswith(prefix):
                yield path

    def rotate(self) -> Optional[Path]:
        """Move the live file aside. Returns the rotated path, or None if nothing to rotate."""
        if not self.log_path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        target = self.log_path.with_name(f"{self.log_path.name}.{stamp}")
        suffix = 0
        while target.exists():
            suffix += 1
            target = self.log_path.with_name(f"{self.log_path.name}.{stamp}.{suffix}")
        self.log_path.rename(target)
        logger.debug(f"Rotated audit log to {target}")
        return target

    def purge_expired(self) -> int:
        """Delete rotated files past the retention window. Returns how many were removed."""
        if self.retention_days <= 0:
            return 0
        now = datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=self.retention_days)).timestamp()
        removed = 0
        for path in list(self.rotated_files()):
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        if removed:
            logger.info(f"Removed {removed} expired audit log file(s)")
        self._next_purge = now + timedelta(days=1)
        return removed

    def _write(self, line: str) -> None:
        if self._next_purge is not None and datetime.now(timezone.utc) >= self._next_purge:
            self.purge_expired()
        if self.log_path.exists() and self.log_path.stat().st_size >= self.rotation_bytes:
            self.rotate()
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def log(
        self,
        event: AuditEvent,
        privilege_id: Optional[str] = None,
        actor_client_id: Optional[str] = None,
        **fields: Any,
    ) -> None:
        """
        Append one audit record.

        Args:
            event: Audit event type
            privilege_id: Record the event concerns
            actor_client_id: Client that performed (or attempted) the action
            **fields: Event-specific values (long strings are truncated)
        """
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event.value,
            "privilege_id": privilege_id,
            "actor_client_id": actor_client_id,
            **_clip(fields),
        }
        self._write(json.dumps(record, ensure_ascii=False, default=str))

    def log_created(self, privilege_id: str, actor_client_id: str, callee_client_id: str, rule_count: int):
        self.log(
            AuditEvent.PRIVILEGE_CREATED,
            privilege_id=privilege_id,
            actor_client_id=actor_client_id,
            callee_client_id=callee_client_id,
            rule_count=rule_count,
        )

    def log_updated(self, privilege_id: str, actor_client_id: Optional[str], version: int):
        self.log(
            AuditEvent.PRIVILEGE_UPDATED,
            privilege_id=privilege_id,
            actor_client_id=actor_client_id,
            version=version,
        )

    def log_state_change(
        self,
        privilege_id: str,
        actor_client_id: str,
        old_state: str,
        new_state: str,
        moderated_rules: int = 0,
        on_behalf_of: Optional[str] = None,
    ):
        """
        Log an applied state transition.

        Args:
            privilege_id: Record that changed
            actor_client_id: Callee (or administrator) who decided
            old_state: State before the transition
            new_state: State after the transition
            moderated_rules: Number of rules whose moderation was set
            on_behalf_of: Callee id when an administrator acted for it
        """
        extra: dict[str, Any] = {}
        if on_behalf_of is not None:
            extra["on_behalf_of"] = on_behalf_of
        self.log(
            AuditEvent.PRIVILEGE_STATE_CHANGED,
            privilege_id=privilege_id,
            actor_client_id=actor_client_id,
            old_state=old_state,
            new_state=new_state,
            moderated_rules=moderated_rules,
            **extra,
        )

    def log_denied(
        self,
        privilege_id: str,
        actor_client_id: str,
        requested_state: str,
        kind: str,
        reason: str,
    ):
        self.log(
            AuditEvent.TRANSITION_DENIED,
            privilege_id=privilege_id,
            actor_client_id=actor_client_id,
            requested_state=requested_state,
            kind=kind,
            reason=reason,
        )
