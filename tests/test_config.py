import logging
import tomllib
from pathlib import Path

import pytest

from phasegate import __version__
from phasegate.config import (
    AgentConfig,
    PhasegateConfig,
    configure_logging,
    dumps_toml,
    load_config,
    save_config,
)
from phasegate.errors import ConfigurationError
from phasegate.models import Capability, Outcome, Severity


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "phasegate.toml"
    config = PhasegateConfig.default()
    config.engine.max_parallel_items = 4
    config.engine.audit_log = "logs/audit.jsonl"
    config.retry.backoff_base_seconds = 0.5
    config.retry.backoff_cap_seconds = 10.0
    config.logging.level = "DEBUG"
    config.agents["linter"] = AgentConfig(
        capabilities=["read:src"],
        command=["lint-agent", "--json"],
        description="Runs the linter",
    )

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.engine.max_parallel_items == 4
    assert loaded.engine.audit_log == "logs/audit.jsonl"
    assert loaded.retry.backoff_base_seconds == 0.5
    assert loaded.retry.backoff_cap_seconds == 10
    assert loaded.logging.level == "DEBUG"
    assert loaded.logging.format == config.logging.format
    assert loaded.agents["linter"].command == ["lint-agent", "--json"]
    assert loaded.agents["linter"].description == "Runs the linter"
    assert loaded.pipelines == config.pipelines


def test_default_pipelines_reference_default_agents() -> None:
    config = PhasegateConfig.default()

    assert [phase.name for phase in config.pipelines["feature"]] == [
        "plan",
        "architecture",
        "tdd",
        "code-review",
        "security-review",
        "refactor",
        "docs",
    ]
    for phases in config.pipelines.values():
        for phase in phases:
            assert phase.agent_id in config.agents


def test_pipeline_table_parsing(tmp_path: Path) -> None:
    config_path = tmp_path / "phasegate.toml"
    config_path.write_text(
        """
[agents.builder]
capabilities = ["read", "write:src"]
entrypoint = "phasegate.agents.builtin:no_findings"

[[pipelines.tiny]]
phase_name = "build"
agent_id = "builder"
required_capabilities = ["write:src/", "read:docs"]
gate_rules = { critical = "block", HIGH = "WARN" }
max_retry = 1
timeout_seconds = 5
""",
        encoding="utf-8",
    )

    config = load_config(config_path)
    (phase,) = config.pipelines["tiny"]

    assert phase.required_capabilities == frozenset(
        {Capability("write", "src"), Capability("read", "docs")}
    )
    assert phase.gate_map == {Severity.CRITICAL: Outcome.BLOCK, Severity.HIGH: Outcome.WARN}
    assert phase.max_retry == 1
    assert phase.timeout_seconds == 5.0
    assert phase.lock_timeout_seconds == 60.0


@pytest.mark.parametrize(
    "body",
    [
        "[[pipelines.empty]]\n",
        '[[pipelines.p]]\nphase_name = "a"\nagent_id = "x"\n'
        '[[pipelines.p]]\nphase_name = "a"\nagent_id = "y"\n',
        '[[pipelines.p]]\nphase_name = "a"\nagent_id = "x"\ngate_rules = { FATAL = "BLOCK" }\n',
        '[[pipelines.p]]\nphase_name = "a"\nagent_id = "x"\nrequired_capabilities = ["write"]\n',
        '[[pipelines.p]]\nphase_name = "a"\nagent_id = "x"\nmax_retry = -1\n',
        '[agents.x]\ncapabilities = ["read"]\n',
        "[engine]\nunknown_key = 1\n",
        "not toml = = =\n",
    ],
)
def test_invalid_config_raises_configuration_error(tmp_path: Path, body: str) -> None:
    config_path = tmp_path / "phasegate.toml"
    config_path.write_text(body, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(config_path)


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.engine.state_dir == ".phasegate/state"
    assert "hotfix" in config.pipelines


def test_toml_dump_contains_sections() -> None:
    rendered = dumps_toml(PhasegateConfig.default())

    assert "[engine]" in rendered
    assert "[retry]" in rendered
    assert "[logging]" in rendered
    assert "[agents.tdd-guide]" in rendered
    assert "[[pipelines.feature]]" in rendered
    assert "lock_timeout_seconds" in rendered


def test_configure_logging_rejects_unknown_level() -> None:
    config = PhasegateConfig.default()

    with pytest.raises(ConfigurationError):
        configure_logging(config.logging, "LOUD")

    configure_logging(config.logging, "warning")
    assert logging.getLogger().level == logging.WARNING


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
