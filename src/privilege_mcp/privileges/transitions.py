"""Privilege transition policy (the lifecycle state machine).

Pure functions: nothing here touches storage or identity lookups.
"""

from dataclasses import dataclass
from typing import Any, Literal, Optional, Sequence

from ..config import Config
from ..errors import Forbidden, IllegalTransition, ValidationError
from .models import PrivilegeRequest, PrivilegeState
from .rules import PrivilegeRule, ResponseModeration

_S = PrivilegeState

# (from, to) -> moderation requirement: "required", "optional" or "forbidden"
_TRANSITIONS: dict[tuple[PrivilegeState, PrivilegeState], str] = {
    (_S.PENDING, _S.GRANTED): "required",
    (_S.PENDING, _S.REJECTED): "optional",
    (_S.GRANTED, _S.REJECTED): "optional",
    (_S.REJECTED, _S.GRANTED): "required",
    (_S.GRANTED, _S.ACTIVE): "forbidden",
    (_S.GRANTED, _S.INACTIVE): "forbidden",
    (_S.ACTIVE, _S.INACTIVE): "forbidden",
    (_S.INACTIVE, _S.ACTIVE): "forbidden",
}


@dataclass
class TransitionDecision:
    """
    Transition decision result.

    Contains the action to take, the moderation requirement and reasoning.
    """

    action: Literal["allow", "noop", "deny"]
    moderation: Literal["required", "optional", "forbidden"]
    reason: str

    @property
    def allowed(self) -> bool:
        return self.action != "deny"


@dataclass
class TransitionPlan:
    """What the service must persist for an authorized, legal transition."""

    privilege_id: Optional[str]
    from_state: PrivilegeState
    to_state: PrivilegeState
    rules: Optional[list[PrivilegeRule]]  # None when rules are unchanged
    noop: bool = False
    on_behalf_of: Optional[str] = None  # Set when an administrator acts for the callee

    def patch(self) -> dict[str, Any]:
        """Storage patch applying state and moderation in one write."""
        changes: dict[str, Any] = {"state": self.to_state}
        if self.rules is not None:
            changes["privilege_rules"] = self.rules
        return changes


def evaluate_transition(current: PrivilegeState, target: PrivilegeState) -> TransitionDecision:
    """
    Evaluate whether a state change is legal.

    Transition Matrix (APPROVED is read as GRANTED):
    ┌──────────┬─────────┬──────────────┬──────────┬────────┬──────────┐
    │ From\\To  │ PENDING │ GRANTED      │ REJECTED │ ACTIVE │ INACTIVE │
    ├──────────┼─────────┼──────────────┼──────────┼────────┼──────────┤
    │ PENDING  │ No-op   │ + moderation │ Allow    │ Deny   │ Deny     │
    │ GRANTED  │ Deny    │ No-op        │ Allow    │ Allow  │ Allow    │
    │ REJECTED │ Deny    │ + moderation │ No-op    │ Deny   │ Deny     │
    │ ACTIVE   │ Deny    │ Deny         │ Deny     │ No-op  │ Allow    │
    │ INACTIVE │ Deny    │ Deny         │ Deny     │ Allow  │ No-op    │
    └──────────┴─────────┴──────────────┴──────────┴────────┴──────────┘

    Args:
        current: Stored state
        target: Requested state

    Returns:
        TransitionDecision with action and reasoning
    """
    current = PrivilegeState.parse(current).canonical()
    target = PrivilegeState.parse(target).canonical()

    if current is target:
        return TransitionDecision(
            action="noop",
            moderation="optional",
            reason=f"{current.value} is already the current state",
        )

    if target is _S.PENDING:
        return TransitionDecision(
            action="deny",
            moderation="forbidden",
            reason=f"A decided request cannot be reopened ({current.value} -> PENDING)",
        )

    requirement = _TRANSITIONS.get((current, target))
    if requirement is None:
        return TransitionDecision(
            action="deny",
            moderation="forbidden",
            reason=f"Transition {current.value} -> {target.value} is not allowed",
        )

    return TransitionDecision(
        action="allow",
        moderation=requirement,
        reason=f"Transition {current.value} -> {target.value} is allowed",
    )


def is_authorized(record: PrivilegeRequest, actor_client_id: str) -> bool:
    """Only the callee (or a configured administrator) decides on a request."""
    if not actor_client_id:
        return False
    return actor_client_id == record.callee_client_id or Config.is_admin(actor_client_id)


def resolve_moderation(
    record: PrivilegeRequest,
    payload: Optional[Sequence[Any]],
    requirement: str,
) -> Optional[list[ResponseModeration]]:
    """
    Validate a per-rule moderation payload against a requirement.

    Args:
        record: Stored record the payload applies to
        payload: One entry per rule, in rule order (or None)
        requirement: "required", "optional" or "forbidden"

    Returns:
        Parsed moderation entries, or None when none was supplied

    Raises:
        ValidationError: If the payload is missing, misaligned or incomplete
    """
    if payload is None:
        if requirement == "required":
            raise ValidationError(
                "responseModeration is required for every rule when granting",
                privilege_id=record.id,
            )
        return None

    if requirement == "forbidden":
        raise ValidationError(
            "responseModeration is only accepted when granting or rejecting",
            privilege_id=record.id,
        )

    if isinstance(payload, (str, bytes, dict)) or not isinstance(payload, Sequence):
        raise ValidationError(
            "responseModeration must be a list with one entry per rule",
            privilege_id=record.id,
        )
    if len(payload) != record.rule_count:
        raise ValidationError(
            f"responseModeration has {len(payload)} entries for {record.rule_count} rules",
            privilege_id=record.id,
        )

    try:
        return [ResponseModeration.from_payload(entry, index) for index, entry in enumerate(payload)]
    except ValidationError as e:
        e.privilege_id = record.id
        raise


def plan_transition(
    record: PrivilegeRequest,
    target: PrivilegeState,
    actor_client_id: str,
    response_moderation: Optional[Sequence[Any]] = None,
) -> TransitionPlan:
    """
    Decide a transition for a stored record.

    Order of checks: authorization, then legality, then moderation payload.

    Raises:
        Forbidden: If the actor is not the callee (or an administrator)
        IllegalTransition: If the state machine forbids the change
        ValidationError: If the moderation payload does not fit the change
    """
    current = PrivilegeState.parse(record.state).canonical()
    target = PrivilegeState.parse(target).canonical()

    if not is_authorized(record, actor_client_id):
        raise Forbidden(
            f"Client '{actor_client_id}' is not the callee of privilege {record.id}",
            privilege_id=record.id,
        )

    decision = evaluate_transition(current, target)
    on_behalf_of = None
    if actor_client_id != record.callee_client_id:
        on_behalf_of = record.callee_client_id

    if decision.action == "noop":
        return TransitionPlan(
            privilege_id=record.id,
            from_state=current,
            to_state=target,
            rules=None,
            noop=True,
            on_behalf_of=on_behalf_of,
        )

    if decision.action == "deny":
        raise IllegalTransition(decision.reason, privilege_id=record.id)

    moderation = resolve_moderation(record, response_moderation, decision.moderation)
    return TransitionPlan(
        privilege_id=record.id,
        from_state=current,
        to_state=target,
        rules=record.with_moderation(moderation) if moderation is not None else None,
        on_behalf_of=on_behalf_of,
    )


def check_editable(record: PrivilegeRequest) -> None:
    """
    Content edits are only allowed while the stored record is PENDING.

    Raises:
        IllegalTransition: If a decision has already been made
    """
    state = PrivilegeState.parse(record.state).canonical()
    if state is not _S.PENDING:
        raise IllegalTransition(
            f"Privilege {record.id} is {state.value}; content can only change while PENDING",
            privilege_id=record.id,
        )
