from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from phasegate.agents import AgentAdapter, AgentRequest
from phasegate.audit import AuditTrailWriter
from phasegate.errors import ConfigurationError, ExecutionError, InvalidTransitionError
from phasegate.gates import evaluate
from phasegate.locks import ArtifactLockManager, LockOwner
from phasegate.models import (
    Finding,
    Outcome,
    PhaseDefinition,
    PhaseResult,
    Severity,
    Verdict,
    WorkItem,
    WorkItemSnapshot,
    WorkItemStatus,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
SchedulerEventHook = Callable[[dict[str, Any]], None]
ChangeHook = Callable[[WorkItemSnapshot], None]

AGENT_UNAVAILABLE = "agent unavailable"
CONFIGURATION_ERROR = "configuration error"


class _Cancelled:
    pass


_CANCELLED = _Cancelled()


@dataclass(slots=True)
class RetryPolicy:
    base_seconds: float = 1.0
    factor: float = 2.0
    cap_seconds: float = 30.0

    def delay(self, retry: int) -> float:
        """Backoff before the ``retry``-th retry of a phase (1-based)."""
        if retry <= 0:
            return 0.0
        return min(self.cap_seconds, self.base_seconds * (self.factor ** (retry - 1)))


class PhaseScheduler:
    """Drives one work item through its phases.

    The scheduler is the only writer of its work item. Everything else reads
    immutable snapshots.
    """

    def __init__(
        self,
        item: WorkItem,
        adapter: AgentAdapter,
        lock_manager: ArtifactLockManager,
        *,
        audit: AuditTrailWriter | None = None,
        retry_policy: RetryPolicy | None = None,
        admission: asyncio.Semaphore | None = None,
        event_hook: SchedulerEventHook | None = None,
        on_change: ChangeHook | None = None,
    ) -> None:
        self._item = item
        self.adapter = adapter
        self.locks = lock_manager
        self.audit = audit
        self.retry_policy = retry_policy or RetryPolicy()
        self.admission = admission
        self.event_hook = event_hook
        self.on_change = on_change
        self._cancel_requested = asyncio.Event()
        self._running = False

    @property
    def work_item_id(self) -> str:
        return self._item.id

    @property
    def running(self) -> bool:
        return self._running

    def snapshot(self) -> WorkItemSnapshot:
        return self._item.snapshot()

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook({"work_item": self._item.id, **event})

    def _changed(self) -> WorkItemSnapshot:
        self._item.touch()
        snapshot = self._item.snapshot()
        if self.on_change:
            self.on_change(snapshot)
        return snapshot

    def _transition(self, status: WorkItemStatus, reason: str = "") -> None:
        previous = self._item.status
        self._item.status = status
        snapshot = self._changed()
        current = snapshot.current_phase
        logger.info(
            "%s: %s -> %s at phase %s%s",
            self._item.id,
            previous.value,
            status.value,
            current.name if current else "-",
            f" ({reason})" if reason else "",
        )
        if self.audit:
            self.audit.record_transition(snapshot, previous, reason=reason)
        self._emit({"event": "transition", "from": previous.value, "to": status.value})

    def _record(self, result: PhaseResult) -> None:
        self._item.history.append(result)
        self._item.findings.extend(result.findings)
        snapshot = self._changed()
        if self.audit:
            self.audit.record_phase_result(snapshot, result)

    def request_cancel(self) -> bool:
        """Cancel now if idle, otherwise at the next safe point.

        Returns True when the work item is already CANCELLED on return.
        """
        if self._item.status.terminal:
            raise InvalidTransitionError(
                f"Work item {self._item.id} is already {self._item.status.value}."
            )
        if self._running:
            self._cancel_requested.set()
            self._emit({"event": "cancel_requested"})
            return False
        self._transition(WorkItemStatus.CANCELLED, reason="cancelled by operator")
        return True

    def check_restartable(self) -> None:
        if self._running or self._item.status is not WorkItemStatus.BLOCKED:
            raise InvalidTransitionError(
                f"Only BLOCKED work items can be restarted; {self._item.id} is "
                f"{self._item.status.value}."
            )

    async def _until_cancelled(self, awaitable: Awaitable[T]) -> T | _Cancelled:
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancel_requested.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return _CANCELLED

    async def run(self) -> WorkItemSnapshot:
        if self._item.status.terminal:
            return self._item.snapshot()
        self._running = True
        try:
            if self.admission is None:
                await self._drive()
            else:
                admitted = await self._until_cancelled(self.admission.acquire())
                if admitted is _CANCELLED:
                    self._transition(WorkItemStatus.CANCELLED, reason="cancelled while queued")
                else:
                    try:
                        await self._drive()
                    finally:
                        self.admission.release()
        finally:
            self._running = False
        return self._item.snapshot()

    async def _drive(self) -> None:
        if self._cancel_requested.is_set():
            self._transition(WorkItemStatus.CANCELLED, reason="cancelled by operator")
            return
        restarting = self._item.status is WorkItemStatus.BLOCKED
        self._transition(
            WorkItemStatus.RUNNING, reason="restarted after fix" if restarting else "started"
        )

        phases = self._item.phases
        while self._item.phase_index < len(phases):
            if self._cancel_requested.is_set():
                self._transition(WorkItemStatus.CANCELLED, reason="cancelled by operator")
                return
            phase = phases[self._item.phase_index]
            result = await self._execute_phase(phase)
            if result is None:
                self._transition(WorkItemStatus.CANCELLED, reason="cancelled by operator")
                return

            verdict = result.verdict
            if verdict is not None and verdict.outcome is Outcome.BLOCK:
                self._emit({"event": "phase_blocked", "phase": phase.name})
                self._transition(
                    WorkItemStatus.BLOCKED,
                    reason=f"{phase.name} blocked by {verdict.triggering[0].severity.value}",
                )
                return
            if verdict is not None and verdict.outcome is Outcome.WARN:
                self._item.warnings.extend(result.findings)

            self._item.phase_index += 1
            if self._item.phase_index < len(phases):
                self._transition(WorkItemStatus.RUNNING, reason=f"{phase.name} passed")

        self._transition(WorkItemStatus.COMPLETED, reason="all phases passed")

    def _escalate(
        self,
        phase: PhaseDefinition,
        attempt: int,
        started_at: str,
        started: float,
        label: str,
        exc: Exception,
    ) -> PhaseResult:
        finding = Finding(
            severity=Severity.CRITICAL,
            message=f"{label}: {phase.agent_id} ({exc})",
            location=phase.name,
            remediation="Fix the agent or pipeline configuration, then restart the work item.",
        )
        return PhaseResult(
            phase=phase.name,
            agent_id=phase.agent_id,
            attempt=attempt,
            findings=(finding,),
            verdict=Verdict(outcome=Outcome.BLOCK, triggering=(finding,)),
            duration_seconds=time.monotonic() - started,
            started_at=started_at,
            finished_at=utcnow_iso(),
            error=str(exc),
        )

    async def _execute_phase(self, phase: PhaseDefinition) -> PhaseResult | None:
        """Run one phase with retries; None means the work item was cancelled."""
        owner = LockOwner(work_item_id=self._item.id, phase=phase.name)
        for retry in range(phase.max_retry + 1):
            if retry:
                delay = self.retry_policy.delay(retry)
                logger.warning(
                    "%s: retrying phase %s in %.2fs (retry %d/%d)",
                    self._item.id,
                    phase.name,
                    delay,
                    retry,
                    phase.max_retry,
                )
                self._emit(
                    {
                        "event": "phase_retry",
                        "phase": phase.name,
                        "retry": retry,
                        "delay_seconds": delay,
                    }
                )
                if await self._until_cancelled(asyncio.sleep(delay)) is _CANCELLED:
                    return None
            if self._cancel_requested.is_set():
                return None

            attempt = self._item.next_attempt(phase.name)
            started_at, started = utcnow_iso(), time.monotonic()
            try:
                locks = await self._until_cancelled(
                    self.locks.acquire_batch(
                        phase.lock_requests(), owner, timeout=phase.lock_timeout_seconds
                    )
                )
                if isinstance(locks, _Cancelled):
                    return None
                if self._cancel_requested.is_set():
                    self.locks.release_all(locks)
                    return None
                started_at, started = utcnow_iso(), time.monotonic()
                try:
                    request = AgentRequest(
                        work_item=self._item.snapshot(),
                        phase=phase,
                        attempt=attempt,
                        locks=tuple(locks),
                    )
                    findings = await self.adapter.invoke(request, locks)
                finally:
                    finished_at, finished = utcnow_iso(), time.monotonic()
                    self.locks.release_all(locks)
            except ConfigurationError as exc:
                logger.error("%s: phase %s misconfigured: %s", self._item.id, phase.name, exc)
                result = self._escalate(
                    phase, attempt, started_at, started, CONFIGURATION_ERROR, exc
                )
                self._record(result)
                return result
            except ExecutionError as exc:
                final = retry >= phase.max_retry or not exc.retriable
                logger.warning(
                    "%s: phase %s attempt %d failed: %s", self._item.id, phase.name, attempt, exc
                )
                if final:
                    result = self._escalate(
                        phase, attempt, started_at, started, AGENT_UNAVAILABLE, exc
                    )
                    self._record(result)
                    return result
                self._record(
                    PhaseResult(
                        phase=phase.name,
                        agent_id=phase.agent_id,
                        attempt=attempt,
                        findings=(),
                        verdict=None,
                        duration_seconds=time.monotonic() - started,
                        started_at=started_at,
                        finished_at=utcnow_iso(),
                        error=str(exc),
                    )
                )
                continue

            if self._cancel_requested.is_set():
                logger.info(
                    "%s: discarding %s results after cancellation", self._item.id, phase.name
                )
                return None
            result = PhaseResult(
                phase=phase.name,
                agent_id=phase.agent_id,
                attempt=attempt,
                findings=tuple(findings),
                verdict=evaluate(findings, phase.gate_rules),
                duration_seconds=finished - started,
                started_at=started_at,
                finished_at=finished_at,
            )
            self._record(result)
            return result
        raise RuntimeError(f"Retry loop for phase {phase.name} ended without a result.")
