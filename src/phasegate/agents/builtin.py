from __future__ import annotations

from phasegate.agents.registry import AgentRequest
from phasegate.models import Finding


def no_findings(request: AgentRequest) -> list[Finding]:
    """Placeholder agent that approves every phase."""
    _ = request
    return []
