import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

from phasegate.agents import (
    AgentAdapter,
    AgentRegistry,
    AgentRequest,
    ProcessAgent,
    registry_from_config,
    resolve_entrypoint,
)
from phasegate.agents.builtin import no_findings
from phasegate.config import AgentConfig
from phasegate.errors import (
    AgentTimeoutError,
    CapabilityError,
    ConfigurationError,
    ExecutionError,
)
from phasegate.locks import ArtifactLockManager, LockOwner
from phasegate.models import Finding, PhaseDefinition, Severity, WorkItem


def _phase(agent_id: str = "agent", **overrides: Any) -> PhaseDefinition:
    payload: dict[str, Any] = {
        "phase_name": "review",
        "agent_id": agent_id,
        "required_capabilities": ["read:src"],
        "gate_rules": {"CRITICAL": "BLOCK"},
        "timeout_seconds": 5,
    }
    payload.update(overrides)
    return PhaseDefinition.from_dict(payload)


def _request(phase: PhaseDefinition, attempt: int = 1) -> AgentRequest:
    item = WorkItem(
        id="wi-test",
        title="Add login",
        description="Add login endpoint",
        pipeline="feature",
        phases=(phase,),
    )
    return AgentRequest(work_item=item.snapshot(), phase=phase, attempt=attempt)


def test_adapter_normalizes_mappings_and_findings() -> None:
    async def agent(request: AgentRequest) -> dict[str, Any]:
        assert request.attempt == 2
        return {
            "findings": [
                {"severity": "high", "message": "unchecked input", "location": "src/api.py:10"},
                Finding(severity=Severity.LOW, message="typo"),
            ]
        }

    registry = AgentRegistry()
    registry.register("agent", agent, ["read"])

    findings = asyncio.run(AgentAdapter(registry).invoke(_request(_phase(), attempt=2)))

    assert findings == [
        Finding(severity=Severity.HIGH, message="unchecked input", location="src/api.py:10"),
        Finding(severity=Severity.LOW, message="typo"),
    ]


def test_sync_agents_run_in_worker_thread() -> None:
    registry = AgentRegistry()
    registry.register("agent", no_findings, ["read"])

    assert asyncio.run(AgentAdapter(registry).invoke(_request(_phase()))) == []


def test_capability_mismatch_fails_closed() -> None:
    calls: list[str] = []

    def agent(request: AgentRequest) -> list[Finding]:
        calls.append(request.phase.name)
        return []

    registry = AgentRegistry()
    registry.register("agent", agent, ["read:docs"])

    with pytest.raises(CapabilityError, match="read:src"):
        asyncio.run(AgentAdapter(registry).invoke(_request(_phase())))
    assert calls == []


def test_unknown_agent_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="Unknown agent id"):
        asyncio.run(AgentAdapter(AgentRegistry()).invoke(_request(_phase("ghost"))))


def test_write_phase_requires_exclusive_lock() -> None:
    registry = AgentRegistry()
    registry.register("agent", no_findings, ["read", "write:src"])
    phase = _phase(required_capabilities=["write:src/api"])
    adapter = AgentAdapter(registry)

    with pytest.raises(CapabilityError, match="exclusive lock"):
        asyncio.run(adapter.invoke(_request(phase)))

    async def with_lock() -> list[Finding]:
        manager = ArtifactLockManager()
        owner = LockOwner(work_item_id="wi-test", phase=phase.name)
        async with manager.hold(phase.lock_requests(), owner, timeout=1) as locks:
            return await adapter.invoke(_request(phase), locks)

    assert asyncio.run(with_lock()) == []


def test_timeout_is_execution_error() -> None:
    async def slow(request: AgentRequest) -> list[Finding]:
        await asyncio.sleep(5)
        return []

    registry = AgentRegistry()
    registry.register("agent", slow, ["read"])

    with pytest.raises(AgentTimeoutError):
        asyncio.run(AgentAdapter(registry).invoke(_request(_phase(timeout_seconds=0.05))))


@pytest.mark.parametrize(
    "output",
    [None, "CRITICAL: broken", [{"severity": "FATAL", "message": "x"}], [42], {"result": []}],
)
def test_malformed_output_is_execution_error(output: Any) -> None:
    registry = AgentRegistry()
    registry.register("agent", lambda request: output, ["read"])

    with pytest.raises(ExecutionError, match="malformed output"):
        asyncio.run(AgentAdapter(registry).invoke(_request(_phase())))


def test_agent_exception_is_wrapped() -> None:
    def broken(request: AgentRequest) -> list[Finding]:
        raise ValueError("model overloaded")

    events: list[dict[str, Any]] = []
    registry = AgentRegistry()
    registry.register("agent", broken, ["read"])

    with pytest.raises(ExecutionError, match="model overloaded") as excinfo:
        asyncio.run(AgentAdapter(registry, event_hook=events.append).invoke(_request(_phase())))

    assert excinfo.value.retriable is True
    assert excinfo.value.agent_id == "agent"
    assert [event["event"] for event in events] == ["agent_invoke"]


def test_duplicate_registration_rejected() -> None:
    registry = AgentRegistry()
    registry.register("agent", no_findings)

    with pytest.raises(ConfigurationError):
        registry.register("agent", no_findings)
    registry.register("agent", no_findings, ["read", "write:src"], replace=True)
    assert registry.ids() == ["agent"]


def test_resolve_entrypoint() -> None:
    assert resolve_entrypoint("phasegate.agents.builtin:no_findings") is no_findings
    with pytest.raises(ConfigurationError):
        resolve_entrypoint("phasegate.agents.builtin")
    with pytest.raises(ConfigurationError):
        resolve_entrypoint("phasegate.agents.builtin:missing")
    with pytest.raises(ConfigurationError):
        resolve_entrypoint("phasegate_missing_module:agent")


def _script(tmp_path: Path, body: str) -> list[str]:
    script = tmp_path / "agent.py"
    script.write_text(body, encoding="utf-8")
    return [sys.executable, str(script)]


def test_process_agent_reads_findings_from_stdout(tmp_path: Path) -> None:
    command = _script(
        tmp_path,
        "import json, sys\n"
        "request = json.load(sys.stdin)\n"
        "print(json.dumps({'findings': [{'severity': 'MEDIUM', "
        "'message': request['phase']['phase_name'] + ' ' + str(request['attempt'])}]}))\n",
    )
    registry = registry_from_config(
        {"proc": AgentConfig(capabilities=["read"], command=command)},
        working_directory=tmp_path,
    )

    findings = asyncio.run(AgentAdapter(registry).invoke(_request(_phase("proc"), attempt=3)))

    assert findings == [Finding(severity=Severity.MEDIUM, message="review 3")]


def test_process_agent_accepts_json_lines(tmp_path: Path) -> None:
    command = _script(
        tmp_path,
        "import json\n"
        "print(json.dumps({'severity': 'LOW', 'message': 'a'}))\n"
        "print(json.dumps({'severity': 'HIGH', 'message': 'b'}))\n",
    )
    agent = ProcessAgent(command, agent_id="proc")

    output = asyncio.run(agent.run(_request(_phase("proc"))))

    assert output == [
        {"severity": "LOW", "message": "a"},
        {"severity": "HIGH", "message": "b"},
    ]


def test_process_agent_nonzero_exit(tmp_path: Path) -> None:
    command = _script(tmp_path, "import sys\nsys.stderr.write('no api key')\nsys.exit(3)\n")
    agent = ProcessAgent(command, agent_id="proc")

    with pytest.raises(ExecutionError, match="no api key") as excinfo:
        asyncio.run(agent.run(_request(_phase("proc"))))
    assert excinfo.value.process_exit_code == 3


def test_process_agent_missing_binary_is_not_retriable(tmp_path: Path) -> None:
    agent = ProcessAgent([str(tmp_path / "missing-agent")], agent_id="proc")

    with pytest.raises(ExecutionError) as excinfo:
        asyncio.run(agent.run(_request(_phase("proc"))))
    assert excinfo.value.retriable is False


def test_registry_from_config_rejects_agent_without_invocation() -> None:
    with pytest.raises(ConfigurationError):
        registry_from_config({"empty": AgentConfig(capabilities=["read"])})
