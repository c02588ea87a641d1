from phasegate.engine import PipelineEngine
from phasegate.errors import (
    ConfigurationError,
    ExecutionError,
    InvalidTransitionError,
    NotFoundError,
    PhasegateError,
)
from phasegate.gates import evaluate
from phasegate.models import Finding, Outcome, Severity, Verdict, WorkItemStatus

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ExecutionError",
    "Finding",
    "InvalidTransitionError",
    "NotFoundError",
    "Outcome",
    "PhasegateError",
    "PipelineEngine",
    "Severity",
    "Verdict",
    "WorkItemStatus",
    "__version__",
    "evaluate",
]
