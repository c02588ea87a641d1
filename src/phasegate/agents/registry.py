from __future__ import annotations

import importlib
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from phasegate.errors import CapabilityError, ConfigurationError
from phasegate.locks import Lock
from phasegate.models import (
    Capability,
    Finding,
    PhaseDefinition,
    WorkItemSnapshot,
    missing_capabilities,
    parse_capabilities,
)

if TYPE_CHECKING:
    from phasegate.config import AgentConfig

AgentOutput = Iterable[Finding | Mapping[str, Any]] | Mapping[str, Any] | None
AgentCallable = Callable[["AgentRequest"], Awaitable[AgentOutput] | AgentOutput]


@dataclass(frozen=True, slots=True)
class AgentRequest:
    work_item: WorkItemSnapshot
    phase: PhaseDefinition
    attempt: int
    locks: tuple[Lock, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        item = self.work_item
        return {
            "work_item": {
                "id": item.id,
                "title": item.title,
                "description": item.description,
                "pipeline": item.pipeline,
                "phase_index": item.phase_index,
                "findings": [finding.to_dict() for finding in item.findings],
                "warnings": [finding.to_dict() for finding in item.warnings],
            },
            "phase": self.phase.to_dict(),
            "attempt": self.attempt,
            "locks": [{"scope": lock.scope, "mode": lock.mode.value} for lock in self.locks],
        }


@dataclass(frozen=True, slots=True)
class Agent:
    agent_id: str
    capabilities: frozenset[Capability]
    invoke: AgentCallable = field(compare=False)
    description: str = ""


class AgentRegistry:
    """Maps agent ids to invocation functions and their declared capabilities."""

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self._agents: dict[str, Agent] = {}
        for agent in agents:
            self.add(agent)

    def add(self, agent: Agent, *, replace: bool = False) -> Agent:
        if agent.agent_id in self._agents and not replace:
            raise ConfigurationError(f"Agent already registered: {agent.agent_id}")
        self._agents[agent.agent_id] = agent
        return agent

    def register(
        self,
        agent_id: str,
        invoke: AgentCallable,
        capabilities: Iterable[str | Capability] = ("read",),
        *,
        description: str = "",
        replace: bool = False,
    ) -> Agent:
        agent = Agent(
            agent_id=agent_id,
            capabilities=parse_capabilities(capabilities),
            invoke=invoke,
            description=description,
        )
        return self.add(agent, replace=replace)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def ids(self) -> list[str]:
        return sorted(self._agents)

    def get(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise ConfigurationError(f"Unknown agent id: {agent_id}")
        return agent

    def check(self, phase: PhaseDefinition) -> Agent:
        """Return the phase's agent, failing closed if it lacks a required capability."""
        agent = self.get(phase.agent_id)
        missing = missing_capabilities(agent.capabilities, phase.required_capabilities)
        if missing:
            raise CapabilityError(
                f"Agent '{agent.agent_id}' lacks capabilities required by phase "
                f"'{phase.name}': " + ", ".join(str(item) for item in missing)
            )
        return agent


def resolve_entrypoint(reference: str) -> AgentCallable:
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(
            f"Agent entrypoint must look like 'package.module:function': {reference!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import agent module '{module_name}': {exc}") from exc
    target: Any = module
    for part in attribute.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise ConfigurationError(f"Agent entrypoint not found: {reference}")
    if not callable(target):
        raise ConfigurationError(f"Agent entrypoint is not callable: {reference}")
    return target


def registry_from_config(
    agents: Mapping[str, AgentConfig],
    working_directory: Path | None = None,
) -> AgentRegistry:
    from phasegate.agents.process import ProcessAgent

    registry = AgentRegistry()
    for agent_id, agent_config in sorted(agents.items()):
        if agent_config.command:
            invoke: AgentCallable = ProcessAgent(
                agent_config.command,
                agent_id=agent_id,
                working_directory=working_directory,
            ).run
        elif agent_config.entrypoint:
            invoke = resolve_entrypoint(agent_config.entrypoint)
        else:
            raise ConfigurationError(f"Agent '{agent_id}' needs a command or an entrypoint.")
        registry.register(
            agent_id,
            invoke,
            agent_config.capabilities,
            description=agent_config.description,
        )
    return registry
