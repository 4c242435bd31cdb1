"""Data models for privilege records (the aggregate root)."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..config import Config
from ..errors import ValidationError
from .rules import PrivilegeRule, ResponseModeration, parse_flag


class PrivilegeState(str, Enum):
    """
    Lifecycle state of a privilege request.

    APPROVED is the legacy name of GRANTED. It stays a valid value so
    legacy payloads and stored records parse, but it is canonicalized to
    GRANTED before any policy decision or write.
    """

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    GRANTED = "GRANTED"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"

    @classmethod
    def parse(cls, value: Any) -> "PrivilegeState":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValidationError(f"state must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValidationError(f"Unrecognized state '{value}'. Valid: {valid}")

    def canonical(self) -> "PrivilegeState":
        return PrivilegeState.GRANTED if self is PrivilegeState.APPROVED else self

    @property
    def is_decided(self) -> bool:
        return self.canonical() is not PrivilegeState.PENDING

    @property
    def is_granted_family(self) -> bool:
        return self.canonical() in {
            PrivilegeState.GRANTED,
            PrivilegeState.ACTIVE,
            PrivilegeState.INACTIVE,
        }


@dataclass
class PrivilegeRequest:
    """
    A named bundle of access rules requested by a caller from a callee.

    Invariants (enforced by validate/create):
    - name, description, caller_client_id, callee_client_id are non-empty
      and meet the configured minimum lengths
    - caller_client_id != callee_client_id
    - privilege_rules has at least one rule, each rule valid

    id, created_at, updated_at and version are owned by the storage
    collaborator and never compared by equals().
    """

    name: str
    description: str
    caller_client_id: str
    callee_client_id: str
    privilege_rules: list[PrivilegeRule] = field(default_factory=list)
    skip_user_token_expiry: bool = False
    state: PrivilegeState = PrivilegeState.PENDING
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def create(
        cls,
        name: str,
        description: str,
        caller_client_id: str,
        callee_client_id: str,
        privilege_rules: list[PrivilegeRule],
        skip_user_token_expiry: bool = False,
    ) -> "PrivilegeRequest":
        """
        Create a new PENDING PrivilegeRequest with validation.

        Args:
            name: Human-readable name
            description: Human-readable description
            caller_client_id: Requesting system
            callee_client_id: System whose resources are requested
            privilege_rules: At least one rule
            skip_user_token_expiry: Accept calls with an expired end-user token

        Returns:
            New, unpersisted PrivilegeRequest

        Raises:
            ValidationError: If any invariant fails
        """
        request = cls(
            name=name,
            description=description,
            caller_client_id=caller_client_id,
            callee_client_id=callee_client_id,
            privilege_rules=list(privilege_rules),
            skip_user_token_expiry=skip_user_token_expiry,
            state=PrivilegeState.PENDING,
        )
        request.validate()
        return request

    def validate(self) -> bool:
        """
        Validate record invariants.

        Returns:
            True if all invariants are satisfied

        Raises:
            ValidationError: If any invariant is violated
        """
        _require_text("name", self.name, Config.NAME_MIN_LENGTH)
        _require_text("description", self.description, Config.DESCRIPTION_MIN_LENGTH)
        _require_text("callerClientId", self.caller_client_id, Config.CLIENT_ID_MIN_LENGTH)
        _require_text("calleeClientId", self.callee_client_id, Config.CLIENT_ID_MIN_LENGTH)

        if self.caller_client_id.strip() == self.callee_client_id.strip():
            raise ValidationError(
                f"callerClientId and calleeClientId must differ, both are '{self.caller_client_id}'",
                privilege_id=self.id,
            )
        if not self.privilege_rules:
            raise ValidationError("privilegeRules must contain at least one rule", privilege_id=self.id)

        for rule in self.privilege_rules:
            if not isinstance(rule, PrivilegeRule):
                raise ValidationError("privilegeRules must contain PrivilegeRule objects")
            rule.validate()

        self.state = PrivilegeState.parse(self.state)
        return True

    @property
    def rule_count(self) -> int:
        return len(self.privilege_rules)

    def copy(self, **changes: Any) -> "PrivilegeRequest":
        """Deep-enough copy: rules and moderation are duplicated, not shared."""
        rules = changes.pop("privilege_rules", self.privilege_rules)
        return replace(
            self,
            privilege_rules=[
                replace(
                    rule,
                    scopes=list(rule.scopes),
                    meta_data=dict(rule.meta_data),
                    response_moderation=replace(rule.response_moderation),
                )
                for rule in rules
            ],
            **changes,
        )

    def with_moderation(self, moderation: list[ResponseModeration]) -> list[PrivilegeRule]:
        """Return copies of the rules with moderation applied by position."""
        return [
            replace(rule, response_moderation=entry)
            for rule, entry in zip(self.copy().privilege_rules, moderation)
        ]

    def content_key(self) -> tuple:
        """Structural identity of the record, excluding server-assigned fields."""
        return (
            self.name,
            self.description,
            self.caller_client_id,
            self.callee_client_id,
            bool(self.skip_user_token_expiry),
            PrivilegeState.parse(self.state).canonical().value,
            tuple(rule.content_key() for rule in self.privilege_rules),
        )

    # ------------------------------------------------------------------
    # Wire format
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PrivilegeRequest":
        """Build a record from its JSON wire shape. Does not validate."""
        if not isinstance(data, dict):
            raise ValidationError(f"privilege must be an object, got {type(data).__name__}")
        rules = data.get("privilegeRules") or []
        if not isinstance(rules, list):
            raise ValidationError("privilegeRules must be an array")
        return cls(
            id=data.get("id") or None,
            name=data.get("name") or "",
            description=data.get("description") or "",
            caller_client_id=data.get("callerClientId") or "",
            callee_client_id=data.get("calleeClientId") or "",
            skip_user_token_expiry=parse_flag(data.get("skipUserTokenExpiry"), "skipUserTokenExpiry"),
            privilege_rules=[PrivilegeRule.from_dict(rule) for rule in rules],
            state=PrivilegeState.parse(data.get("state") or PrivilegeState.PENDING),
            created_at=_parse_timestamp(data.get("createdAt")),
            updated_at=_parse_timestamp(data.get("updatedAt")),
            version=int(data.get("version") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "callerClientId": self.caller_client_id,
            "calleeClientId": self.callee_client_id,
            "skipUserTokenExpiry": self.skip_user_token_expiry,
            "privilegeRules": [rule.to_dict() for rule in self.privilege_rules],
            "state": PrivilegeState.parse(self.state).value,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "version": self.version,
        }


@dataclass(frozen=True)
class PrivilegeUpdateRequest:
    """
    The single accepted shape for a state change.

    response_moderation, when given, has one entry per rule in rule order.
    """

    id: str
    new_state: PrivilegeState
    actor_client_id: str
    response_moderation: Optional[list[Any]] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PrivilegeUpdateRequest":
        """
        Parse a state-change payload.

        Legacy shapes that carry a bare ``state`` alongside a different
        ``newState``, or full rule payloads, are rejected rather than guessed.
        """
        if not isinstance(data, dict):
            raise ValidationError("update request must be an object")
        if "privilegeRules" in data:
            raise ValidationError(
                "privilegeRules are not accepted in a state change; use update for content edits"
            )
        new_state = data.get("newState", data.get("state"))
        if "newState" in data and "state" in data and data["state"] != data["newState"]:
            raise ValidationError("ambiguous update request: 'state' and 'newState' differ")
        if not data.get("id"):
            raise ValidationError("update request requires an id")
        if new_state is None:
            raise ValidationError("update request requires newState")
        moderation = data.get("responseModeration")
        if moderation is not None and not isinstance(moderation, list):
            raise ValidationError("responseModeration must be an array with one entry per rule")
        return cls(
            id=data["id"],
            new_state=PrivilegeState.parse(new_state),
            actor_client_id=data.get("actorClientId") or "",
            response_moderation=moderation,
        )


def equals(a: Optional[PrivilegeRequest], b: Optional[PrivilegeRequest]) -> bool:
    """
    Deep structural equality over all non-server-assigned fields.

    Used to detect "no changes since load" so needless writes are skipped.
    """
    if a is None or b is None:
        return a is b
    return a.content_key() == b.content_key()


def _require_text(label: str, value: Any, min_length: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} must not be empty")
    if len(value.strip()) < min_length:
        raise ValidationError(f"{label} must be at least {min_length} characters")


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid timestamp '{value}'")
