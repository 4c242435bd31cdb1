"""
Tests for the PrivilegeLifecycleService.

Covers the end-to-end scenarios (create, reject, grant, caller cannot grant),
the lifecycle properties (always PENDING on create, no reopening, moderation
required for grants, callee-only decisions, idempotent same-state changes),
single storage write per mutation, optimistic-concurrency conflicts,
timeouts and the audit trail.
"""

import asyncio

import pytest

from privilege_mcp.errors import (
    Conflict,
    Forbidden,
    IllegalTransition,
    NotFound,
    StorageTimeout,
    ValidationError,
)
from privilege_mcp.identity import SessionIdentity
from privilege_mcp.privileges import (
    HttpMethod,
    PrivilegeLifecycleService,
    PrivilegeRequest,
    PrivilegeState,
    PrivilegeUpdateRequest,
    ResponseModeration,
    equals,
)
from privilege_mcp.storage import InMemoryPrivilegeStore
from tests.conftest import CALLEE, CALLER, make_request, make_rule, moderation_for, read_audit


class CountingStore(InMemoryPrivilegeStore):
    """In-memory store that counts mutating calls."""

    def __init__(self):
        super().__init__()
        self.saves = 0
        self.updates = 0

    async def save(self, record):
        self.saves += 1
        return await super().save(record)

    async def update(self, privilege_id, patch, expected_version):
        self.updates += 1
        return await super().update(privilege_id, patch, expected_version)


class RacingStore(InMemoryPrivilegeStore):
    """Another writer lands between the service's read and its write."""

    async def find(self, privilege_id):
        record = await super().find(privilege_id)
        if record is not None:
            await super().update(privilege_id, {"skip_user_token_expiry": True}, record.version)
        return record


class SlowStore(InMemoryPrivilegeStore):
    async def find(self, privilege_id):
        await asyncio.sleep(1)
        return await super().find(privilege_id)


def scenario_request() -> PrivilegeRequest:
    return PrivilegeRequest.from_dict(
        {
            "name": "X",
            "description": "desc-desc-desc",
            "callerClientId": "A",
            "calleeClientId": "B",
            "privilegeRules": [
                {"requestedURL": "/x", "requestedMethod": "GET", "scopes": ["read"], "priority": 1}
            ],
        }
    )


# ============================================================================
# SCENARIOS
# ============================================================================


@pytest.mark.asyncio
async def test_scenario_create(service):
    record = await service.create(scenario_request())

    assert record.state is PrivilegeState.PENDING
    assert record.rule_count == 1
    assert record.privilege_rules[0].priority == 1
    assert record.id
    assert record.created_at is not None
    assert record.version == 1


@pytest.mark.asyncio
async def test_scenario_reject_then_reopen_fails(service):
    record = await service.create(scenario_request())

    rejected = await service.transition(record.id, "REJECTED", "B")
    assert rejected.state is PrivilegeState.REJECTED

    with pytest.raises(IllegalTransition):
        await service.transition(record.id, "PENDING", "B")


@pytest.mark.asyncio
async def test_scenario_grant_with_moderation(service):
    record = await service.create(scenario_request())

    granted = await service.transition(
        record.id, "GRANTED", "B", [{"fields": "name", "responseFilterCriteria": ""}]
    )

    assert granted.state is PrivilegeState.GRANTED
    assert granted.privilege_rules[0].response_moderation.fields == "name"
    assert granted.privilege_rules[0].response_moderation.response_filter_criteria == ""


@pytest.mark.asyncio
async def test_scenario_caller_cannot_grant(service):
    record = await service.create(scenario_request())

    with pytest.raises(Forbidden):
        await service.transition(
            record.id, "GRANTED", "A", [{"fields": "name", "responseFilterCriteria": ""}]
        )

    assert (await service.get(record.id)).state is PrivilegeState.PENDING


# ============================================================================
# CREATE / READ
# ============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("state", list(PrivilegeState))
async def test_create_always_pending(service, state):
    record = await service.create(make_request(state=state))
    assert record.state is PrivilegeState.PENDING


@pytest.mark.asyncio
async def test_create_ignores_client_supplied_server_fields(service):
    request = make_request(id="forged", version=42)
    request.privilege_rules[0].id = "forged-rule"

    record = await service.create(request)

    assert record.id != "forged"
    assert record.version == 1
    assert "forged-rule" not in [rule.id for rule in record.privilege_rules]
    assert all(rule.id for rule in record.privilege_rules)


@pytest.mark.asyncio
async def test_create_does_not_mutate_input(service, sample_request):
    await service.create(sample_request)
    assert sample_request.id is None
    assert sample_request.privilege_rules[0].id == ""


@pytest.mark.asyncio
async def test_create_fills_caller_from_identity(service):
    record = await service.create(make_request(caller=""))
    assert record.caller_client_id == "dev-user-123"


@pytest.mark.asyncio
async def test_create_without_session_in_production_is_forbidden(store):
    service = PrivilegeLifecycleService(store, identity=SessionIdentity(production=True))
    with pytest.raises(Forbidden):
        await service.create(make_request(caller=""))


@pytest.mark.asyncio
async def test_create_rejects_malformed_input(service, store):
    with pytest.raises(ValidationError):
        await service.create(make_request(rules=[]))
    with pytest.raises(ValidationError):
        await service.create(make_request(rules=[make_rule("/x", "BREW")]))
    assert [r async for r in store.query(lambda r: True)] == []


@pytest.mark.asyncio
async def test_save_find_round_trip(service, sample_request):
    record = await service.create(sample_request)
    found = await service.get(record.id)

    assert equals(found, sample_request)
    assert found.id == record.id


@pytest.mark.asyncio
async def test_get_unknown_id(service):
    with pytest.raises(NotFound) as exc_info:
        await service.get("missing")
    assert exc_info.value.privilege_id == "missing"


@pytest.mark.asyncio
async def test_list_for_roles(service):
    first = await service.create(make_request())
    await service.create(make_request(caller="crm-api", callee=CALLEE))
    third = await service.create(make_request(caller=CALLER, callee="payroll-api"))

    outgoing = await service.list_for(CALLER, "caller").to_list()
    incoming = await service.list_for(CALLEE, "callee").to_list()

    assert [r.id for r in outgoing] == [first.id, third.id]
    assert len(incoming) == 2
    assert all(r.callee_client_id == CALLEE for r in incoming)


@pytest.mark.asyncio
async def test_list_for_is_lazy_and_restartable(service):
    query = service.list_for(CALLER, "caller")
    assert await query.to_list() == []

    await service.create(make_request())
    first_pass = [r.id async for r in query]
    await service.create(make_request())
    second_pass = [r.id async for r in query]

    assert len(first_pass) == 1
    assert len(second_pass) == 2
    assert second_pass[0] == first_pass[0]


@pytest.mark.asyncio
async def test_list_for_rejects_unknown_role(service):
    with pytest.raises(ValidationError):
        service.list_for(CALLER, "owner")
    with pytest.raises(ValidationError):
        service.list_for("", "caller")


# ============================================================================
# TRANSITIONS
# ============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("decided", ["GRANTED", "REJECTED"])
async def test_decided_cannot_return_to_pending(service, pending, decided):
    await service.transition(pending.id, decided, CALLEE, moderation_for(2))

    with pytest.raises(IllegalTransition):
        await service.transition(pending.id, PrivilegeState.PENDING, CALLEE)


@pytest.mark.asyncio
async def test_grant_requires_moderation_for_every_rule(service, pending):
    with pytest.raises(ValidationError):
        await service.transition(pending.id, "GRANTED", CALLEE)
    with pytest.raises(ValidationError):
        await service.transition(pending.id, "GRANTED", CALLEE, moderation_for(1))

    assert (await service.get(pending.id)).state is PrivilegeState.PENDING


@pytest.mark.asyncio
async def test_only_callee_decides(service, pending):
    for actor in (CALLER, "someone-else", ""):
        with pytest.raises(Forbidden):
            await service.transition(pending.id, "REJECTED", actor)


@pytest.mark.asyncio
async def test_unknown_target_state(service, pending):
    with pytest.raises(ValidationError):
        await service.transition(pending.id, "REVOKED", CALLEE)


@pytest.mark.asyncio
async def test_same_state_is_noop_without_write(identity):
    store = CountingStore()
    service = PrivilegeLifecycleService(store, identity=identity)
    record = await service.create(make_request())

    result = await service.transition(record.id, "PENDING", CALLEE)

    assert result.state is PrivilegeState.PENDING
    assert result.version == record.version
    assert store.updates == 0


@pytest.mark.asyncio
async def test_each_mutation_writes_once(identity):
    store = CountingStore()
    service = PrivilegeLifecycleService(store, identity=identity)

    record = await service.create(make_request())
    assert store.saves == 1

    await service.transition(record.id, "GRANTED", CALLEE, moderation_for(2))
    assert store.updates == 1

    await service.transition(record.id, "ACTIVE", CALLEE)
    await service.transition(record.id, "INACTIVE", CALLEE)
    assert store.updates == 3


@pytest.mark.asyncio
async def test_full_lifecycle(service, pending):
    granted = await service.transition(pending.id, "APPROVED", CALLEE, moderation_for(2, "id", "a=1"))
    assert granted.state is PrivilegeState.GRANTED
    assert granted.version == 2

    active = await service.transition(pending.id, "ACTIVE", CALLEE)
    inactive = await service.transition(pending.id, "INACTIVE", CALLEE)
    reactivated = await service.transition(pending.id, "ACTIVE", CALLEE)

    assert active.state is PrivilegeState.ACTIVE
    assert inactive.state is PrivilegeState.INACTIVE
    assert reactivated.state is PrivilegeState.ACTIVE
    assert reactivated.version == 5
    assert reactivated.privilege_rules[0].response_moderation.response_filter_criteria == "a=1"

    with pytest.raises(IllegalTransition):
        await service.transition(pending.id, "REJECTED", CALLEE)


@pytest.mark.asyncio
async def test_reject_after_grant_and_regrant(service, pending):
    await service.transition(pending.id, "GRANTED", CALLEE, moderation_for(2, "id"))
    rejected = await service.transition(pending.id, "REJECTED", CALLEE)
    assert rejected.privilege_rules[0].response_moderation.fields == "id"

    regranted = await service.transition(pending.id, "GRANTED", CALLEE, moderation_for(2, "name"))
    assert regranted.state is PrivilegeState.GRANTED
    assert regranted.privilege_rules[1].response_moderation.fields == "name"


@pytest.mark.asyncio
async def test_toggle_only_after_grant(service, pending):
    with pytest.raises(IllegalTransition):
        await service.transition(pending.id, "ACTIVE", CALLEE)

    await service.transition(pending.id, "REJECTED", CALLEE)
    with pytest.raises(IllegalTransition):
        await service.transition(pending.id, "INACTIVE", CALLEE)


@pytest.mark.asyncio
async def test_admin_acts_on_behalf_of_callee(service, pending, admin, audit_log_path):
    granted = await service.transition(pending.id, "GRANTED", admin, moderation_for(2))
    assert granted.state is PrivilegeState.GRANTED

    entry = read_audit(audit_log_path)[-1]
    assert entry["event"] == "privilege_state_changed"
    assert entry["actor_client_id"] == admin
    assert entry["on_behalf_of"] == CALLEE


@pytest.mark.asyncio
async def test_apply_update_request(service, pending):
    update = PrivilegeUpdateRequest.from_dict(
        {
            "id": pending.id,
            "newState": "GRANTED",
            "actorClientId": CALLEE,
            "responseModeration": moderation_for(2),
        }
    )
    record = await service.apply(update)
    assert record.state is PrivilegeState.GRANTED


@pytest.mark.asyncio
async def test_concurrent_write_surfaces_conflict(identity):
    store = RacingStore()
    service = PrivilegeLifecycleService(store, identity=identity)
    record = await store.save(make_request())

    with pytest.raises(Conflict):
        await service.transition(record.id, "REJECTED", CALLEE)

    assert (await InMemoryPrivilegeStore.find(store, record.id)).state is PrivilegeState.PENDING


@pytest.mark.asyncio
async def test_concurrent_grants_only_one_wins(service, pending):
    results = await asyncio.gather(
        service.transition(pending.id, "GRANTED", CALLEE, moderation_for(2)),
        service.transition(pending.id, "REJECTED", CALLEE),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, PrivilegeRequest)]
    failures = [r for r in results if isinstance(r, Exception)]
    # Either both apply in sequence or the loser gets Conflict; no write is lost
    final = await service.get(pending.id)
    assert final.version == 1 + len(successes)
    assert all(isinstance(f, (Conflict, IllegalTransition)) for f in failures)


@pytest.mark.asyncio
async def test_storage_timeout(identity):
    store = SlowStore()
    service = PrivilegeLifecycleService(store, identity=identity, timeout=0.05)
    record = await store.save(make_request())

    with pytest.raises(StorageTimeout):
        await service.get(record.id)
    with pytest.raises(StorageTimeout):
        await service.transition(record.id, "REJECTED", CALLEE, timeout=0.01)


# ============================================================================
# CONTENT EDITS
# ============================================================================


@pytest.mark.asyncio
async def test_update_pending_content(service, pending):
    edit = pending.copy(name="Ledger read and write", state=PrivilegeState.GRANTED)
    edit.privilege_rules.append(make_rule("/journal", HttpMethod.DELETE, priority=5))

    updated = await service.update(edit, actor_client_id=CALLER)

    assert updated.name == "Ledger read and write"
    assert updated.state is PrivilegeState.PENDING
    assert updated.rule_count == 3
    assert updated.version == pending.version + 1
    assert all(rule.id for rule in updated.privilege_rules)


@pytest.mark.asyncio
async def test_update_without_changes_skips_write(identity):
    store = CountingStore()
    service = PrivilegeLifecycleService(store, identity=identity)
    record = await service.create(make_request(rules=[make_rule(scopes=["read", "write"])]))

    reordered = record.copy()
    reordered.privilege_rules[0].scopes = list(reversed(reordered.privilege_rules[0].scopes))

    result = await service.update(reordered)

    assert store.updates == 0
    assert result.version == record.version


@pytest.mark.asyncio
async def test_update_after_decision_is_illegal(service, pending):
    await service.transition(pending.id, "REJECTED", CALLEE)

    with pytest.raises(IllegalTransition):
        await service.update(pending.copy(name="Renamed"))


@pytest.mark.asyncio
async def test_update_by_non_caller_forbidden(service, pending):
    with pytest.raises(Forbidden):
        await service.update(pending.copy(name="Renamed"), actor_client_id=CALLEE)


@pytest.mark.asyncio
async def test_update_requires_id_and_valid_content(service, pending):
    with pytest.raises(ValidationError):
        await service.update(make_request())
    with pytest.raises(ValidationError):
        await service.update(pending.copy(description="short"))
    with pytest.raises(NotFound):
        await service.update(pending.copy(id="missing"))


@pytest.mark.asyncio
async def test_successive_edits_bump_version(service, pending):
    await service.update(pending.copy(name="First edit"))

    # Each edit is guarded by the freshly loaded version
    second = await service.update(pending.copy(name="Second edit"))
    assert second.version == 3


@pytest.mark.asyncio
async def test_update_reassigns_invented_and_repeated_rule_ids(service, pending):
    kept_id = pending.privilege_rules[0].id
    edit = pending.copy(name="Renamed ledger access")
    edit.privilege_rules[0].id = "dup"
    edit.privilege_rules[1].id = "dup"
    edit.privilege_rules.append(make_rule("/journal", priority=3))
    edit.privilege_rules[2].id = kept_id
    edit.privilege_rules.append(make_rule("/journal/*", priority=4))
    edit.privilege_rules[3].id = kept_id

    updated = await service.update(edit)

    ids = [rule.id for rule in updated.privilege_rules]
    assert len(set(ids)) == 4
    assert "dup" not in ids
    assert ids[2] == kept_id
    assert ids.count(kept_id) == 1


@pytest.mark.asyncio
async def test_update_keeps_stored_rule_ids(service, pending):
    edit = pending.copy(name="Renamed ledger access")
    updated = await service.update(edit)

    assert [r.id for r in updated.privilege_rules] == [r.id for r in pending.privilege_rules]


@pytest.mark.asyncio
async def test_caller_supplied_moderation_is_discarded(service):
    request = make_request()
    request.privilege_rules[0].response_moderation = ResponseModeration(fields="ssn,salary")

    record = await service.create(request)
    assert record.privilege_rules[0].response_moderation.is_empty

    edit = record.copy(name="Renamed ledger access")
    edit.privilege_rules[1].response_moderation = ResponseModeration(
        fields="ssn", response_filter_criteria="all"
    )
    edited = await service.update(edit)
    assert all(rule.response_moderation.is_empty for rule in edited.privilege_rules)

    rejected = await service.transition(record.id, "REJECTED", CALLEE)
    assert all(rule.response_moderation.is_empty for rule in rejected.privilege_rules)


# ============================================================================
# AUDIT TRAIL
# ============================================================================


@pytest.mark.asyncio
async def test_audit_trail(service, pending, audit_log_path):
    with pytest.raises(Forbidden):
        await service.transition(pending.id, "REJECTED", CALLER)
    await service.transition(pending.id, "REJECTED", CALLEE)

    events = read_audit(audit_log_path)
    assert [e["event"] for e in events] == [
        "privilege_created",
        "transition_denied",
        "privilege_state_changed",
    ]
    assert events[0]["rule_count"] == 2
    assert events[1]["kind"] == "forbidden"
    assert events[1]["requested_state"] == "REJECTED"
    assert events[2]["old_state"] == "PENDING"
    assert events[2]["new_state"] == "REJECTED"
    assert "on_behalf_of" not in events[2]


@pytest.mark.asyncio
async def test_service_health(service):
    healthy, message = await service.health()
    assert healthy
    assert "InMemoryPrivilegeStore" in message
