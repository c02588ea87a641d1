from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from phasegate.agents.registry import Agent, AgentOutput, AgentRegistry, AgentRequest
from phasegate.errors import (
    AgentTimeoutError,
    CapabilityError,
    ConfigurationError,
    ExecutionError,
)
from phasegate.locks import Lock
from phasegate.models import Finding, LockMode, PhaseDefinition, scope_contains

logger = logging.getLogger(__name__)

AdapterEventHook = Callable[[dict[str, Any]], None]


class AgentAdapter:
    """Uniform call contract between the scheduler and registered agents."""

    def __init__(
        self,
        registry: AgentRegistry,
        event_hook: AdapterEventHook | None = None,
    ) -> None:
        self.registry = registry
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _verify_write_locks(phase: PhaseDefinition, locks: Sequence[Lock]) -> None:
        for scope in phase.write_scopes:
            if not any(
                lock.mode is LockMode.EXCLUSIVE and scope_contains(lock.scope, scope)
                for lock in locks
            ):
                raise CapabilityError(
                    f"Phase '{phase.name}' requires an exclusive lock on '{scope}' "
                    "before its agent may run."
                )

    @staticmethod
    async def _call(agent: Agent, request: AgentRequest) -> AgentOutput:
        if inspect.iscoroutinefunction(agent.invoke):
            return await agent.invoke(request)
        result = await asyncio.to_thread(agent.invoke, request)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _normalize(agent: Agent, raw: AgentOutput) -> list[Finding]:
        if isinstance(raw, Mapping):
            raw = raw.get("findings")
        if raw is None or isinstance(raw, (str, bytes)):
            raise ExecutionError(
                f"Agent '{agent.agent_id}' returned malformed output: expected a findings list.",
                agent_id=agent.agent_id,
            )
        findings: list[Finding] = []
        try:
            for item in raw:
                if isinstance(item, Finding):
                    findings.append(item)
                elif isinstance(item, Mapping):
                    findings.append(Finding.from_dict(item))
                else:
                    raise TypeError(f"unexpected finding {item!r}")
        except (ConfigurationError, KeyError, TypeError) as exc:
            raise ExecutionError(
                f"Agent '{agent.agent_id}' returned malformed output: {exc}",
                agent_id=agent.agent_id,
            ) from exc
        return findings

    async def invoke(
        self,
        request: AgentRequest,
        locks: Sequence[Lock] = (),
    ) -> list[Finding]:
        phase = request.phase
        agent = self.registry.check(phase)
        self._verify_write_locks(phase, locks)
        self._emit(
            {
                "event": "agent_invoke",
                "agent": agent.agent_id,
                "phase": phase.name,
                "work_item": request.work_item.id,
                "attempt": request.attempt,
            }
        )
        try:
            raw = await asyncio.wait_for(
                self._call(agent, request), timeout=phase.timeout_seconds
            )
        except TimeoutError as exc:
            raise AgentTimeoutError(
                f"Agent '{agent.agent_id}' timed out after {phase.timeout_seconds:.1f}s",
                agent_id=agent.agent_id,
            ) from exc
        except (ExecutionError, ConfigurationError):
            raise
        except Exception as exc:
            logger.debug("Agent %s raised", agent.agent_id, exc_info=True)
            raise ExecutionError(
                f"Agent '{agent.agent_id}' failed: {exc}", agent_id=agent.agent_id
            ) from exc
        return self._normalize(agent, raw)
