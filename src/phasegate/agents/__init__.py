from phasegate.agents.adapter import AgentAdapter
from phasegate.agents.process import ProcessAgent
from phasegate.agents.registry import (
    Agent,
    AgentCallable,
    AgentRegistry,
    AgentRequest,
    registry_from_config,
    resolve_entrypoint,
)

__all__ = [
    "Agent",
    "AgentAdapter",
    "AgentCallable",
    "AgentRegistry",
    "AgentRequest",
    "ProcessAgent",
    "registry_from_config",
    "resolve_entrypoint",
]
