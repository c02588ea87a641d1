from __future__ import annotations


class PhasegateError(RuntimeError):
    """Base class for orchestrator failures."""

    exit_code: int = 1


class ConfigurationError(PhasegateError):
    """Raised for malformed pipelines, unknown agents or capability mismatches."""

    exit_code = 2


class CapabilityError(ConfigurationError):
    """Raised when an agent lacks a capability the phase requires."""


class NotFoundError(PhasegateError):
    """Raised when a work item id is not known to the engine or store."""

    exit_code = 3


class InvalidTransitionError(PhasegateError):
    """Raised when a command is not allowed in the work item's current state."""

    exit_code = 4


class ExecutionError(PhasegateError):
    """Raised when an agent invocation fails without producing findings."""

    def __init__(
        self,
        message: str,
        *,
        agent_id: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.process_exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(ExecutionError):
    """Raised when an agent call exceeds the phase timeout."""


class LockTimeoutError(ExecutionError):
    """Raised when a phase cannot acquire its artifact locks in time."""
