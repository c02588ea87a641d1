import asyncio
from typing import Any

import pytest

from phasegate.agents import AgentAdapter, AgentRegistry, AgentRequest
from phasegate.errors import InvalidTransitionError
from phasegate.locks import ArtifactLockManager, LockOwner
from phasegate.models import Finding, PhaseDefinition, WorkItem, WorkItemStatus
from phasegate.scheduler import CONFIGURATION_ERROR, PhaseScheduler, RetryPolicy


def _item(*phases: PhaseDefinition) -> WorkItem:
    return WorkItem(id="wi-s", title="t", description="d", pipeline="p", phases=phases)


def _phase(name: str, agent_id: str = "agent", **extra: Any) -> PhaseDefinition:
    return PhaseDefinition.from_dict(
        {"phase_name": name, "agent_id": agent_id, "gate_rules": {"CRITICAL": "BLOCK"}, **extra}
    )


def test_retry_policy_backoff_is_capped() -> None:
    policy = RetryPolicy()

    assert [policy.delay(retry) for retry in range(0, 7)] == [0.0, 1, 2, 4, 8, 16, 30]


def test_pending_item_cancels_immediately() -> None:
    changes: list[WorkItemStatus] = []
    scheduler = PhaseScheduler(
        _item(_phase("plan")),
        AgentAdapter(AgentRegistry()),
        ArtifactLockManager(),
        on_change=lambda snapshot: changes.append(snapshot.status),
    )

    assert scheduler.request_cancel() is True
    assert scheduler.snapshot().status is WorkItemStatus.CANCELLED
    assert changes == [WorkItemStatus.CANCELLED]
    with pytest.raises(InvalidTransitionError):
        scheduler.request_cancel()
    # A cancelled item never starts.
    assert asyncio.run(scheduler.run()).status is WorkItemStatus.CANCELLED


def test_missing_agent_at_run_time_blocks_without_retry() -> None:
    registry = AgentRegistry()
    calls: list[str] = []

    def agent(request: AgentRequest) -> list[Finding]:
        calls.append(request.phase.name)
        return []

    registry.register("agent", agent)
    scheduler = PhaseScheduler(
        _item(_phase("plan"), _phase("review", agent_id="removed", max_retry=3)),
        AgentAdapter(registry),
        ArtifactLockManager(),
        retry_policy=RetryPolicy(base_seconds=0.001),
    )

    snapshot = asyncio.run(scheduler.run())

    assert snapshot.status is WorkItemStatus.BLOCKED
    assert snapshot.phase_index == 1
    assert calls == ["plan"]
    assert len(snapshot.history) == 2
    assert CONFIGURATION_ERROR in snapshot.findings[-1].message


def test_lock_timeout_is_retried_then_blocks() -> None:
    registry = AgentRegistry()
    registry.register("agent", lambda request: [], ["read", "write:src"])
    locks = ArtifactLockManager()
    phase = _phase(
        "build", required_capabilities=["write:src"], max_retry=1, lock_timeout_seconds=0.02
    )
    scheduler = PhaseScheduler(
        _item(phase),
        AgentAdapter(registry),
        locks,
        retry_policy=RetryPolicy(base_seconds=0.001),
    )

    async def scenario() -> Any:
        async with locks.hold(phase.lock_requests(), LockOwner("wi-other", "build"), timeout=1):
            return await scheduler.run()

    snapshot = asyncio.run(scenario())

    assert snapshot.status is WorkItemStatus.BLOCKED
    assert [result.attempt for result in snapshot.history] == [1, 2]
    assert "Timed out" in (snapshot.history[-1].error or "")
    assert locks.held() == ()

