from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any
from uuid import uuid4

from phasegate.agents import AgentAdapter, AgentRegistry, registry_from_config
from phasegate.audit import AuditTrailWriter
from phasegate.config import PhasegateConfig
from phasegate.errors import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    PhasegateError,
)
from phasegate.locks import ArtifactLockManager
from phasegate.models import PhaseDefinition, WorkItem, WorkItemSnapshot
from phasegate.scheduler import PhaseScheduler, RetryPolicy
from phasegate.state import WorkItemStore

logger = logging.getLogger(__name__)

EngineEventHook = Callable[[dict[str, Any]], None]


def _freeze_pipelines(
    pipelines: Mapping[str, Sequence[PhaseDefinition]],
) -> dict[str, tuple[PhaseDefinition, ...]]:
    frozen: dict[str, tuple[PhaseDefinition, ...]] = {}
    for name, phases in pipelines.items():
        if not phases:
            raise ConfigurationError(f"Pipeline '{name}' has no phases.")
        frozen[str(name)] = tuple(phases)
    return frozen


class PipelineEngine:
    """Runs many work items concurrently, one scheduler task per item.

    Pipelines are resolved into phase tuples at submission; ``reload`` only
    affects later submissions. The artifact lock manager is the only state
    shared between work items.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        pipelines: Mapping[str, Sequence[PhaseDefinition]],
        *,
        lock_manager: ArtifactLockManager | None = None,
        audit: AuditTrailWriter | None = None,
        store: WorkItemStore | None = None,
        retry_policy: RetryPolicy | None = None,
        max_parallel_items: int = 0,
        event_hook: EngineEventHook | None = None,
    ) -> None:
        self.registry = registry
        self.event_hook = event_hook
        self.adapter = AgentAdapter(registry, event_hook=self._emit)
        self.locks = lock_manager or ArtifactLockManager()
        self.audit = audit
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.audit_failures = 0
        if audit is not None and audit.on_error is None:
            audit.on_error = self._on_audit_error
        self._pipelines = _freeze_pipelines(pipelines)
        self._admission = asyncio.Semaphore(max_parallel_items) if max_parallel_items > 0 else None
        self._schedulers: dict[str, PhaseScheduler] = {}
        self._tasks: dict[str, asyncio.Task[WorkItemSnapshot]] = {}

    @classmethod
    def from_config(
        cls,
        config: PhasegateConfig,
        repo_root: Path,
        *,
        registry: AgentRegistry | None = None,
        event_hook: EngineEventHook | None = None,
    ) -> PipelineEngine:
        repo_root = repo_root.resolve()
        return cls(
            registry or registry_from_config(config.agents, working_directory=repo_root),
            config.pipelines,
            audit=AuditTrailWriter(repo_root / config.engine.audit_log),
            store=WorkItemStore(repo_root / config.engine.state_dir),
            retry_policy=RetryPolicy(
                base_seconds=max(0.0, float(config.retry.backoff_base_seconds)),
                factor=max(1.0, float(config.retry.backoff_factor)),
                cap_seconds=max(0.0, float(config.retry.backoff_cap_seconds)),
            ),
            max_parallel_items=max(0, int(config.engine.max_parallel_items)),
            event_hook=event_hook,
        )

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _on_audit_error(self, exc: Exception, record: dict[str, Any]) -> None:
        self.audit_failures += 1
        self._emit(
            {
                "event": "audit_write_failed",
                "work_item": record.get("workItemId"),
                "sequence": record.get("sequence"),
                "error": str(exc),
            }
        )

    def _persist(self, snapshot: WorkItemSnapshot) -> None:
        if self.store is None:
            return
        try:
            self.store.save(snapshot)
        except (OSError, PhasegateError) as exc:
            logger.error("Could not persist work item %s: %s", snapshot.id, exc)
            self._emit({"event": "store_write_failed", "work_item": snapshot.id, "error": str(exc)})

    def reload(self, config: PhasegateConfig | Mapping[str, Sequence[PhaseDefinition]]) -> None:
        """Swap the pipeline catalogue. Items already submitted keep their phases."""
        pipelines = config.pipelines if isinstance(config, PhasegateConfig) else config
        self._pipelines = _freeze_pipelines(pipelines)
        logger.info("Reloaded %d pipeline(s)", len(self._pipelines))

    def resolve(self, pipeline_name: str) -> tuple[PhaseDefinition, ...]:
        """Return the pipeline's phases after checking every agent and capability."""
        phases = self._pipelines.get(pipeline_name)
        if phases is None:
            raise ConfigurationError(f"Unknown pipeline: {pipeline_name}")
        for phase in phases:
            self.registry.check(phase)
        return phases

    def validate(self) -> None:
        for name in self._pipelines:
            self.resolve(name)

    def _scheduler(self, item: WorkItem) -> PhaseScheduler:
        scheduler = PhaseScheduler(
            item,
            self.adapter,
            self.locks,
            audit=self.audit,
            retry_policy=self.retry_policy,
            admission=self._admission,
            event_hook=self._emit,
            on_change=self._persist,
        )
        self._schedulers[item.id] = scheduler
        return scheduler

    def _start(
        self, scheduler: PhaseScheduler, loop: asyncio.AbstractEventLoop | None = None
    ) -> None:
        task = (loop or asyncio.get_running_loop()).create_task(
            scheduler.run(), name=f"phasegate:{scheduler.work_item_id}"
        )
        task.add_done_callback(self._log_task_failure)
        self._tasks[scheduler.work_item_id] = task

    @staticmethod
    def _log_task_failure(task: asyncio.Task[WorkItemSnapshot]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduler task %s crashed", task.get_name(), exc_info=exc)

    def _get(self, work_item_id: str) -> PhaseScheduler:
        scheduler = self._schedulers.get(work_item_id)
        if scheduler is None:
            raise NotFoundError(f"Work item not found: {work_item_id}")
        return scheduler

    def submit(
        self,
        description: str,
        pipeline_name: str,
        *,
        title: str | None = None,
    ) -> str:
        # Fails outside a running loop before anything is persisted.
        loop = asyncio.get_running_loop()
        phases = self.resolve(pipeline_name)
        summary = description.strip().splitlines()[0][:80] if description.strip() else ""
        item = WorkItem(
            id=f"wi-{uuid4().hex[:12]}",
            title=title or summary,
            description=description,
            pipeline=pipeline_name,
            phases=phases,
        )
        scheduler = self._scheduler(item)
        snapshot = scheduler.snapshot()
        self._persist(snapshot)
        if self.audit:
            self.audit.record_transition(snapshot, None, reason="submitted")
        logger.info("Submitted %s to pipeline %s (%d phases)", item.id, pipeline_name, len(phases))
        self._start(scheduler, loop)
        return item.id

    def adopt(self, snapshot: WorkItemSnapshot) -> str:
        """Register a stored work item with this engine without running it."""
        if snapshot.id in self._schedulers:
            raise InvalidTransitionError(f"Work item already managed: {snapshot.id}")
        self._scheduler(WorkItem.from_snapshot(snapshot))
        return snapshot.id

    def query(self, work_item_id: str) -> WorkItemSnapshot:
        return self._get(work_item_id).snapshot()

    def list(self) -> list[WorkItemSnapshot]:
        return [scheduler.snapshot() for scheduler in self._schedulers.values()]

    def cancel(self, work_item_id: str) -> WorkItemSnapshot:
        scheduler = self._get(work_item_id)
        scheduler.request_cancel()
        return scheduler.snapshot()

    def restart_blocked(self, work_item_id: str) -> WorkItemSnapshot:
        scheduler = self._get(work_item_id)
        task = self._tasks.get(work_item_id)
        if task is not None and not task.done():
            raise InvalidTransitionError(f"Work item {work_item_id} is still scheduled.")
        scheduler.check_restartable()
        self._start(scheduler)
        return scheduler.snapshot()

    async def wait(self, work_item_id: str) -> WorkItemSnapshot:
        scheduler = self._get(work_item_id)
        task = self._tasks.get(work_item_id)
        if task is not None:
            await asyncio.shield(task)
        return scheduler.snapshot()

    async def join(self) -> list[WorkItemSnapshot]:
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return self.list()

    async def shutdown(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

