from __future__ import annotations

import json
import logging
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from phasegate.errors import ConfigurationError
from phasegate.models import PhaseDefinition

DEFAULT_CONFIG_FILE = "phasegate.toml"
BUILTIN_AGENT = "phasegate.agents.builtin:no_findings"


@dataclass(slots=True)
class EngineConfig:
    max_parallel_items: int = 0
    state_dir: str = ".phasegate/state"
    audit_log: str = ".phasegate/audit.jsonl"


@dataclass(slots=True)
class RetryConfig:
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap_seconds: float = 30.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class AgentConfig:
    capabilities: list[str] = field(default_factory=lambda: ["read"])
    command: list[str] = field(default_factory=list)
    entrypoint: str = ""
    description: str = ""


def _default_agents() -> dict[str, AgentConfig]:
    return {
        "planner": AgentConfig(capabilities=["read"], entrypoint=BUILTIN_AGENT),
        "architect": AgentConfig(capabilities=["read"], entrypoint=BUILTIN_AGENT),
        "tdd-guide": AgentConfig(
            capabilities=["read", "write:src", "write:tests"], entrypoint=BUILTIN_AGENT
        ),
        "code-reviewer": AgentConfig(capabilities=["read"], entrypoint=BUILTIN_AGENT),
        "security-reviewer": AgentConfig(capabilities=["read"], entrypoint=BUILTIN_AGENT),
        "refactor-cleaner": AgentConfig(
            capabilities=["read", "write:src"], entrypoint=BUILTIN_AGENT
        ),
        "doc-updater": AgentConfig(capabilities=["read", "write:docs"], entrypoint=BUILTIN_AGENT),
    }


def _default_pipelines() -> dict[str, tuple[PhaseDefinition, ...]]:
    review_gate = {"CRITICAL": "BLOCK", "HIGH": "BLOCK", "MEDIUM": "WARN", "LOW": "PASS"}
    phases = {
        "plan": ("planner", ["read"], {"CRITICAL": "BLOCK", "HIGH": "WARN"}),
        "architecture": ("architect", ["read"], {"CRITICAL": "BLOCK", "HIGH": "WARN"}),
        "tdd": ("tdd-guide", ["read", "write:src", "write:tests"], {"CRITICAL": "BLOCK"}),
        "code-review": ("code-reviewer", ["read:src"], review_gate),
        "security-review": ("security-reviewer", ["read:src"], review_gate),
        "refactor": ("refactor-cleaner", ["read", "write:src"], {"CRITICAL": "BLOCK"}),
        "docs": ("doc-updater", ["read", "write:docs"], {"CRITICAL": "BLOCK", "HIGH": "WARN"}),
    }

    def _build(names: list[str]) -> tuple[PhaseDefinition, ...]:
        return tuple(
            PhaseDefinition.from_dict(
                {
                    "phase_name": name,
                    "agent_id": phases[name][0],
                    "required_capabilities": phases[name][1],
                    "gate_rules": phases[name][2],
                    "max_retry": 2,
                    "timeout_seconds": 300.0,
                }
            )
            for name in names
        )

    return {
        "feature": _build(list(phases)),
        "hotfix": _build(["tdd", "code-review", "security-review"]),
    }


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, Mapping):
        raise ConfigurationError(f"[{name}] must be a table.")
    return dict(section)


def _build_section(kind: type, data: Mapping[str, Any], name: str) -> Any:
    try:
        return kind(**_section(data, name))
    except TypeError as exc:
        raise ConfigurationError(f"Invalid [{name}] section: {exc}") from exc


def parse_pipelines(raw: Any) -> dict[str, tuple[PhaseDefinition, ...]]:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("[pipelines] must map pipeline names to phase arrays.")
    pipelines: dict[str, tuple[PhaseDefinition, ...]] = {}
    for name, phase_list in raw.items():
        if not isinstance(phase_list, list) or not phase_list:
            raise ConfigurationError(f"Pipeline '{name}' must be a non-empty array of phases.")
        phases: list[PhaseDefinition] = []
        seen: set[str] = set()
        for entry in phase_list:
            if not isinstance(entry, Mapping):
                raise ConfigurationError(f"Pipeline '{name}' contains a non-table phase entry.")
            phase = PhaseDefinition.from_dict(entry)
            if phase.name in seen:
                raise ConfigurationError(f"Pipeline '{name}' repeats phase '{phase.name}'.")
            seen.add(phase.name)
            phases.append(phase)
        pipelines[str(name)] = tuple(phases)
    return pipelines


def parse_agents(raw: Any) -> dict[str, AgentConfig]:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("[agents] must be a table of agent tables.")
    agents: dict[str, AgentConfig] = {}
    for agent_id, payload in raw.items():
        if not isinstance(payload, Mapping):
            raise ConfigurationError(f"[agents.{agent_id}] must be a table.")
        try:
            agent = AgentConfig(**payload)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid [agents.{agent_id}]: {exc}") from exc
        if bool(agent.command) == bool(agent.entrypoint):
            raise ConfigurationError(
                f"[agents.{agent_id}] needs exactly one of 'command' or 'entrypoint'."
            )
        agents[str(agent_id)] = agent
    return agents


@dataclass(slots=True)
class PhasegateConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    agents: dict[str, AgentConfig] = field(default_factory=_default_agents)
    pipelines: dict[str, tuple[PhaseDefinition, ...]] = field(default_factory=_default_pipelines)

    @classmethod
    def default(cls) -> PhasegateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PhasegateConfig:
        return cls(
            engine=_build_section(EngineConfig, data, "engine"),
            retry=_build_section(RetryConfig, data, "retry"),
            logging=_build_section(LoggingConfig, data, "logging"),
            agents=parse_agents(data.get("agents", {})),
            pipelines=parse_pipelines(data.get("pipelines", {})),
        )

    def to_dict(self) -> dict:
        agents: dict[str, dict[str, Any]] = {}
        for agent_id, agent in self.agents.items():
            payload: dict[str, Any] = {"capabilities": list(agent.capabilities)}
            if agent.command:
                payload["command"] = list(agent.command)
            if agent.entrypoint:
                payload["entrypoint"] = agent.entrypoint
            if agent.description:
                payload["description"] = agent.description
            agents[agent_id] = payload
        return {
            "engine": {
                "max_parallel_items": self.engine.max_parallel_items,
                "state_dir": self.engine.state_dir,
                "audit_log": self.engine.audit_log,
            },
            "retry": {
                "backoff_base_seconds": self.retry.backoff_base_seconds,
                "backoff_factor": self.retry.backoff_factor,
                "backoff_cap_seconds": self.retry.backoff_cap_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
            "agents": agents,
            "pipelines": {
                name: [phase.to_dict() for phase in phases]
                for name, phases in self.pipelines.items()
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key.replace("-", "").replace("_", "").isalnum():
        return key
    return json.dumps(key, ensure_ascii=False)


def dumps_toml(config: PhasegateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["engine", "retry", "logging"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for agent_id, payload in data["agents"].items():
        lines.append(f"[agents.{_toml_key(agent_id)}]")
        for key, value in payload.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for name, phases in data["pipelines"].items():
        for phase in phases:
            lines.append(f"[[pipelines.{_toml_key(name)}]]")
            for key, value in phase.items():
                lines.append(f"{key} = {_toml_value(value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PhasegateConfig:
    if not path.exists():
        return PhasegateConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    return PhasegateConfig.from_dict(data)


def save_config(path: Path, config: PhasegateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def configure_logging(config: LoggingConfig, level_override: str | None = None) -> None:
    level_name = (level_override or config.level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown log level: {level_name}")
    logging.basicConfig(level=level, format=config.format, force=True)
