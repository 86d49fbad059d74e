# SPDX-License-Identifier: Apache-2.0
"""Unit tests for PolicyEngine.

File: tests/test_engine.py

Scope:
- Decision pipeline for check / check_role (messages, details, ordering).
- Caching of denials and unknown names; faults never cached.
- Recursive checks: cycle and depth guards.
- In-flight de-duplication of concurrent identical checks.
- Decision metrics keep a bounded label set.
- Batch evaluation and debug tracing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List

import pytest

from authz_kernel import metrics
from authz_kernel.cache import check_key, role_key
from authz_kernel.config import EngineSettings
from authz_kernel.engine import UNKNOWN_TYPE_LABEL, PolicyEngine
from authz_kernel.exceptions import (
    ConditionEvaluationError,
    CyclicPolicyError,
    PolicyDepthExceededError,
)
from authz_kernel.models import CheckOptions, CheckRequest, CheckResult, Role, RoleCheckRequest
from authz_kernel.schema import Schema

pytestmark = pytest.mark.asyncio


class Recorder:
    """Condition factory that records every evaluation."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def returning(self, name: str, outcome: Callable[[str, str], bool]):
        async def condition(user_id: str, resource_id: str) -> bool:
            self.calls.append((name, user_id, resource_id))
            return outcome(user_id, resource_id)

        return condition

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def schema(recorder: Recorder) -> Schema:
    owners: Dict[str, str] = {"d1": "alice"}
    viewers = {("bob", "d1")}
    schema = Schema()
    schema.register_resource_type(
        "doc",
        ["read", "edit", "delete"],
        [
            Role("owner", ("read", "edit", "delete"), recorder.returning("owner", lambda u, r: owners.get(r) == u)),
            Role("viewer", ("read",), recorder.returning("viewer", lambda u, r: (u, r) in viewers)),
        ],
    )
    return schema


@pytest.fixture
def engine(schema: Schema) -> PolicyEngine:
    return PolicyEngine(schema)


# === Decisions ===

async def test_owner_is_allowed_by_first_role(engine: PolicyEngine, recorder: Recorder) -> None:
    result = await engine.check("alice", "read", "doc", "d1")
    assert result == CheckResult(True, "Action 'read' allowed on doc")
    # First true condition wins; later roles never run.
    assert recorder.count("owner") == 1
    assert recorder.count("viewer") == 0


async def test_later_role_grants_when_earlier_fails(engine: PolicyEngine, recorder: Recorder) -> None:
    result = await engine.check("bob", "read", "doc", "d1")
    assert result.allowed
    assert [call[0] for call in recorder.calls] == ["owner", "viewer"]


async def test_denied_when_no_role_matches(engine: PolicyEngine) -> None:
    result = await engine.check("bob", "edit", "doc", "d1")
    assert result == CheckResult(False, "Action 'edit' denied on doc")


async def test_unknown_resource_type_and_action(engine: PolicyEngine, recorder: Recorder) -> None:
    unknown_type = await engine.check("alice", "read", "folder", "x")
    unknown_action = await engine.check("alice", "publish", "doc", "d1")

    assert unknown_type == CheckResult(False, "Unknown resource type")
    assert unknown_action == CheckResult(False, "Unknown action")
    assert recorder.calls == []
    assert check_key("alice", "read", "folder", "x") in engine.cache
    assert check_key("alice", "publish", "doc", "d1") in engine.cache


async def test_include_details(engine: PolicyEngine) -> None:
    options = CheckOptions(include_details=True)
    allowed = await engine.check("bob", "read", "doc", "d1", options)
    denied = await engine.check("bob", "delete", "doc", "d1", options)

    assert allowed.detail == "doc.viewer"
    assert denied.detail == "doc.delete"
    # Served from cache, still without detail unless requested.
    assert (await engine.check("bob", "read", "doc", "d1")).detail is None


async def test_denials_are_cached(engine: PolicyEngine, recorder: Recorder) -> None:
    first = await engine.check("mallory", "delete", "doc", "d1")
    second = await engine.check("mallory", "delete", "doc", "d1")

    assert first == second
    assert not second.allowed
    assert recorder.count("owner") == 1


async def test_disabled_cache_reevaluates(schema: Schema, recorder: Recorder) -> None:
    engine = PolicyEngine(schema, caching_enabled=False)
    await engine.check("alice", "read", "doc", "d1")
    await engine.check("alice", "read", "doc", "d1")

    assert recorder.count("owner") == 2
    assert len(engine.cache) == 0


async def test_sync_conditions_are_accepted() -> None:
    schema = Schema()
    schema.register_resource_type("user", ["read"], [Role("self", ("read",), lambda u, r: u == r)])
    engine = PolicyEngine(schema)

    assert await engine.is_allowed("u1", "read", "user", "u1")
    assert not await engine.is_allowed("u1", "read", "user", "u2")


async def test_schema_is_frozen_by_first_check(engine: PolicyEngine, schema: Schema) -> None:
    assert not schema.frozen
    await engine.check("alice", "read", "doc", "d1")
    assert schema.frozen


# === Role checks ===

async def test_check_role(engine: PolicyEngine) -> None:
    assert await engine.check_role("doc", "owner", "alice", "d1") == CheckResult(True, "Role 'owner' granted on doc")
    assert await engine.check_role("doc", "owner", "bob", "d1") == CheckResult(
        False, "Role 'owner' not granted on doc"
    )
    assert await engine.check_role("doc", "admin", "alice", "d1") == CheckResult(False, "Unknown role")
    assert await engine.check_role("folder", "owner", "alice", "d1") == CheckResult(False, "Unknown resource type")
    assert role_key("doc", "admin", "alice", "d1") in engine.cache


async def test_check_role_ignores_action_grants(engine: PolicyEngine, recorder: Recorder) -> None:
    # Holding owner does not imply holding viewer.
    assert not await engine.has_role("doc", "viewer", "alice", "d1")
    assert recorder.count("owner") == 0


# === Evaluation faults ===

async def test_condition_failure_is_raised_and_not_cached() -> None:
    calls = {"n": 0}

    async def flaky(user_id: str, resource_id: str) -> bool:
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionError("database unavailable")
        return True

    schema = Schema()
    schema.register_resource_type("doc", ["read"], [Role("owner", ("read",), flaky)])
    engine = PolicyEngine(schema)

    with pytest.raises(ConditionEvaluationError) as exc_info:
        await engine.check("alice", "read", "doc", "d1")
    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert exc_info.value.role_name == "owner"
    assert exc_info.value.status_code == 503
    assert len(engine.cache) == 0

    assert (await engine.check("alice", "read", "doc", "d1")).allowed
    assert calls["n"] == 2


async def test_nested_fault_propagates_unchanged() -> None:
    async def broken(user_id: str, resource_id: str) -> bool:
        raise RuntimeError("boom")

    schema = Schema()
    engine = PolicyEngine(schema)

    async def inherits(user_id: str, resource_id: str) -> bool:
        return await engine.has_role("project", "owner", user_id, "p1")

    schema.register_resource_type("project", ["read"], [Role("owner", ("read",), broken)])
    schema.register_resource_type("folder", ["read"], [Role("owner", ("read",), inherits)])

    with pytest.raises(ConditionEvaluationError) as exc_info:
        await engine.check("alice", "read", "folder", "f1")
    assert exc_info.value.resource_type == "project"


# === Recursion guards ===

async def test_cycle_is_detected_and_not_cached() -> None:
    schema = Schema()
    engine = PolicyEngine(schema)
    parents = {"a": "b", "b": "a"}

    async def inherit(user_id: str, resource_id: str) -> bool:
        return await engine.has_role("folder", "owner", user_id, parents[resource_id])

    schema.register_resource_type("folder", ["read"], [Role("owner", ("read",), inherit)])

    with pytest.raises(CyclicPolicyError) as exc_info:
        await engine.check("alice", "read", "folder", "a")
    chain = exc_info.value.chain
    assert chain[0] == check_key("alice", "read", "folder", "a")
    assert chain[-1] == chain[1] == role_key("folder", "owner", "alice", "b")
    assert len(engine.cache) == 0


async def test_depth_limit() -> None:
    schema = Schema()
    engine = PolicyEngine(schema, EngineSettings(max_depth=3))

    async def inherit(user_id: str, resource_id: str) -> bool:
        return await engine.has_role("folder", "owner", user_id, str(int(resource_id) + 1))

    schema.register_resource_type("folder", ["read"], [Role("owner", ("read",), inherit)])

    with pytest.raises(PolicyDepthExceededError) as exc_info:
        await engine.check("alice", "read", "folder", "0")
    assert exc_info.value.max_depth == 3
    assert len(exc_info.value.chain) == 4


async def test_shallow_recursion_is_cached_per_level() -> None:
    schema = Schema()
    engine = PolicyEngine(schema)
    owners = {"p1": "alice"}

    async def project_owner(user_id: str, resource_id: str) -> bool:
        return owners.get(resource_id) == user_id

    async def folder_owner(user_id: str, resource_id: str) -> bool:
        return await engine.has_role("project", "owner", user_id, "p1")

    schema.register_resource_type("project", ["read"], [Role("owner", ("read",), project_owner)])
    schema.register_resource_type("folder", ["read"], [Role("owner", ("read",), folder_owner)])

    assert await engine.is_allowed("alice", "read", "folder", "f1")
    assert role_key("project", "owner", "alice", "p1") in engine.cache
    assert role_key("folder", "owner", "alice", "f1") in engine.cache
    assert check_key("alice", "read", "folder", "f1") in engine.cache


# === In-flight de-duplication ===

async def test_concurrent_identical_checks_share_one_evaluation() -> None:
    gate = asyncio.Event()
    calls = {"n": 0}

    async def slow(user_id: str, resource_id: str) -> bool:
        calls["n"] += 1
        await gate.wait()
        return True

    schema = Schema()
    schema.register_resource_type("doc", ["read"], [Role("owner", ("read",), slow)])
    engine = PolicyEngine(schema, caching_enabled=False)

    tasks = [asyncio.create_task(engine.check("alice", "read", "doc", "d1")) for _ in range(5)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks)

    assert all(result.allowed for result in results)
    assert calls["n"] == 1

    # Nothing is in flight any more, so a later call evaluates again.
    await engine.check("alice", "read", "doc", "d1")
    assert calls["n"] == 2


async def test_inflight_fault_reaches_every_waiter() -> None:
    gate = asyncio.Event()
    calls = {"n": 0}

    async def failing(user_id: str, resource_id: str) -> bool:
        calls["n"] += 1
        await gate.wait()
        raise TimeoutError("slow backend")

    schema = Schema()
    schema.register_resource_type("doc", ["read"], [Role("owner", ("read",), failing)])
    engine = PolicyEngine(schema)

    tasks = [asyncio.create_task(engine.check("alice", "read", "doc", "d1")) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert calls["n"] == 1
    assert all(isinstance(result, ConditionEvaluationError) for result in results)
    assert len(engine.cache) == 0


async def test_cancelled_owner_does_not_fail_waiters() -> None:
    started = asyncio.Event()
    gate = asyncio.Event()

    async def slow(user_id: str, resource_id: str) -> bool:
        started.set()
        await gate.wait()
        return True

    schema = Schema()
    schema.register_resource_type("doc", ["read"], [Role("owner", ("read",), slow)])
    engine = PolicyEngine(schema, caching_enabled=False)

    owner = asyncio.create_task(engine.check("alice", "read", "doc", "d1"))
    await started.wait()
    waiter = asyncio.create_task(engine.check("alice", "read", "doc", "d1"))
    await asyncio.sleep(0)
    owner.cancel()
    await asyncio.sleep(0)
    gate.set()

    assert (await waiter).allowed
    with pytest.raises(asyncio.CancelledError):
        await owner


async def test_waiter_reuses_cached_result_after_owner_cancelled() -> None:
    started = asyncio.Event()
    gate = asyncio.Event()
    calls = {"n": 0}

    async def slow(user_id: str, resource_id: str) -> bool:
        calls["n"] += 1
        started.set()
        await gate.wait()
        return True

    schema = Schema()
    schema.register_resource_type("doc", ["read"], [Role("owner", ("read",), slow)])
    engine = PolicyEngine(schema)

    owner = asyncio.create_task(engine.check("alice", "read", "doc", "d1"))
    await started.wait()
    waiter = asyncio.create_task(engine.check("alice", "read", "doc", "d1"))
    await asyncio.sleep(0)
    # Another writer stores the decision while the shared evaluation is still running.
    engine.cache.set(check_key("alice", "read", "doc", "d1"), CheckResult(False, "Action 'read' denied on doc"))
    owner.cancel()

    result = await waiter
    assert result == CheckResult(False, "Action 'read' denied on doc")
    assert calls["n"] == 1
    with pytest.raises(asyncio.CancelledError):
        await owner


async def test_deduplication_can_be_disabled() -> None:
    gate = asyncio.Event()
    calls = {"n": 0}

    async def slow(user_id: str, resource_id: str) -> bool:
        calls["n"] += 1
        await gate.wait()
        return True

    schema = Schema()
    schema.register_resource_type("doc", ["read"], [Role("owner", ("read",), slow)])
    engine = PolicyEngine(schema, EngineSettings(deduplicate_inflight=False, caching_enabled=False))

    tasks = [asyncio.create_task(engine.check("alice", "read", "doc", "d1")) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(*tasks)
    assert calls["n"] == 3


# === Batch ===

async def test_batch_check_mixed_requests(engine: PolicyEngine) -> None:
    results = await engine.batch_check(
        {
            "can_read": CheckRequest("bob", "read", "doc", "d1"),
            "can_delete": CheckRequest("bob", "delete", "doc", "d1"),
            "is_owner": RoleCheckRequest("doc", "owner", "alice", "d1"),
        }
    )
    assert list(results) == ["can_read", "can_delete", "is_owner"]
    assert results["can_read"].allowed
    assert not results["can_delete"].allowed
    assert results["is_owner"].message == "Role 'owner' granted on doc"


async def test_batch_check_faults() -> None:
    async def broken(user_id: str, resource_id: str) -> bool:
        raise ValueError("bad row")

    schema = Schema()
    schema.register_resource_type("doc", ["read"], [Role("owner", ("read",), broken)])
    schema.register_resource_type("note", ["read"], [Role("owner", ("read",), lambda u, r: True)])
    engine = PolicyEngine(schema)
    requests = {
        "doc": CheckRequest("alice", "read", "doc", "d1"),
        "note": CheckRequest("alice", "read", "note", "n1"),
    }

    with pytest.raises(ConditionEvaluationError):
        await engine.batch_check(requests)

    results = await engine.batch_check(requests, return_exceptions=True)
    assert isinstance(results["doc"], ConditionEvaluationError)
    assert results["note"].allowed


async def test_batch_check_rejects_unknown_request_type(engine: PolicyEngine) -> None:
    with pytest.raises(TypeError):
        await engine.batch_check({"bad": ("alice", "read", "doc", "d1")})  # type: ignore[dict-item]


# === Tracing and introspection ===

async def test_debug_option_emits_structured_trace(engine: PolicyEngine, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="authz_kernel.engine")
    await engine.check("alice", "read", "doc", "d1", CheckOptions(debug=True))
    await engine.check("alice", "read", "doc", "d1", CheckOptions(debug=True))

    traces = [record for record in caplog.records if hasattr(record, "authz")]
    assert len(traces) == 2
    assert traces[0].authz["allowed"] is True
    assert traces[0].authz["cached"] is False
    assert traces[1].authz["cached"] is True
    assert traces[0].authz["detail"] == "doc.owner"


async def test_no_trace_without_debug(engine: PolicyEngine, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="authz_kernel.engine")
    await engine.check("alice", "read", "doc", "d1")
    assert not [record for record in caplog.records if hasattr(record, "authz")]


async def test_introspection_delegates_to_schema(engine: PolicyEngine) -> None:
    assert [info.name for info in engine.list_resource_types()] == ["doc"]
    assert [info.name for info in engine.list_roles("doc")] == ["owner", "viewer"]
    assert engine.get_resource_actions("doc") == ["read", "edit", "delete"]
    assert engine.get_role_actions("doc", "viewer") == ["read"]
    with pytest.raises(KeyError):
        engine.list_roles("folder")


def _decision_series() -> set:
    return {
        tuple(sorted(sample.labels.items()))
        for metric in metrics.DECISIONS.collect()
        for sample in metric.samples
        if sample.name == "authz_decisions_total"
    }


async def test_unknown_resource_types_share_one_metric_series(engine: PolicyEngine) -> None:
    before = _decision_series()
    for i in range(200):
        result = await engine.check("mallory", "read", f"junk-{i}", "x")
        assert not result.allowed
        await engine.check_role(f"junk-{i}", "owner", "mallory", "x")
    await engine.check("alice", "read", "doc", "d1")

    added = _decision_series() - before
    resource_types = {dict(labels)["resource_type"] for labels in added}
    assert resource_types <= {UNKNOWN_TYPE_LABEL, "doc"}
    assert len([labels for labels in added if dict(labels)["resource_type"] == UNKNOWN_TYPE_LABEL]) <= 2


async def test_lifecycle_starts_and_stops_sweeper(schema: Schema) -> None:
    async with PolicyEngine(schema, EngineSettings(sweep_interval_seconds=0.01)) as engine:
        assert engine.cache.sweeping
    assert not engine.cache.sweeping
