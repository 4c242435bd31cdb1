"""Privilege lifecycle core.

Rule model, privilege record model, transition policy and the lifecycle
service that enforces the policy against a storage collaborator.
"""

from .models import PrivilegeRequest, PrivilegeState, PrivilegeUpdateRequest, equals
from .rules import HttpMethod, PrivilegeRule, ResponseModeration, parse_flag, validate, validate_url
from .service import PrivilegeLifecycleService, PrivilegeQuery
from .transitions import (
    TransitionDecision,
    TransitionPlan,
    check_editable,
    evaluate_transition,
    plan_transition,
)

__all__ = [
    "HttpMethod",
    "ResponseModeration",
    "PrivilegeRule",
    "validate",
    "validate_url",
    "parse_flag",
    "PrivilegeState",
    "PrivilegeRequest",
    "PrivilegeUpdateRequest",
    "equals",
    "TransitionDecision",
    "TransitionPlan",
    "evaluate_transition",
    "plan_transition",
    "check_editable",
    "PrivilegeLifecycleService",
    "PrivilegeQuery",
]
