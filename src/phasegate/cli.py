from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from phasegate.agents import AgentRegistry, registry_from_config
from phasegate.audit import read_audit_log
from phasegate.config import (
    DEFAULT_CONFIG_FILE,
    PhasegateConfig,
    configure_logging,
    load_config,
    save_config,
)
from phasegate.engine import PipelineEngine
from phasegate.errors import PhasegateError
from phasegate.models import WorkItemSnapshot
from phasegate.state import WorkItemStore

T = TypeVar("T")


class CommandError(click.ClickException):
    """ClickException that keeps the exit code of the underlying failure."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code

    @classmethod
    def from_error(cls, exc: PhasegateError) -> CommandError:
        return cls(str(exc), exit_code=exc.exit_code)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: PhasegateConfig
    store: WorkItemStore

    @property
    def audit_path(self) -> Path:
        return self.repo_root / self.config.engine.audit_log


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_registry(config: PhasegateConfig, repo_root: Path) -> AgentRegistry:
    return registry_from_config(config.agents, working_directory=repo_root)


def _load_runtime(config_value: str, log_level: str | None = None) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
        configure_logging(config.logging, log_level)
    except PhasegateError as exc:
        raise CommandError.from_error(exc) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=WorkItemStore(repo_root / config.engine.state_dir),
    )


def _build_engine(runtime: Runtime) -> PipelineEngine:
    return PipelineEngine.from_config(
        runtime.config,
        runtime.repo_root,
        registry=_build_registry(runtime.config, runtime.repo_root),
    )


def _run(runtime: Runtime, action: Callable[[PipelineEngine], Awaitable[T]]) -> T:
    async def _main() -> T:
        engine = _build_engine(runtime)
        try:
            return await action(engine)
        finally:
            await engine.shutdown()

    try:
        return asyncio.run(_main())
    except PhasegateError as exc:
        raise CommandError.from_error(exc) from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _render(snapshot: WorkItemSnapshot, verbose: bool) -> dict[str, Any]:
    payload = snapshot.to_dict()
    if not verbose:
        payload.pop("phases")
        payload.pop("history")
        payload["attempts"] = len(snapshot.history)
    return payload


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override the [logging] level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Phasegate work item pipeline orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config.")
@config_option
def init_command(force: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    if config_path.exists() and not force:
        try:
            config = load_config(config_path)
        except PhasegateError as exc:
            raise CommandError.from_error(exc) from exc
    else:
        config = PhasegateConfig.default()
        save_config(config_path, config)

    (repo_root / config.engine.state_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized phasegate in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Pipelines: {', '.join(sorted(config.pipelines))}")
    click.echo(f"Audit log: {repo_root / config.engine.audit_log}")


@cli.command("pipelines")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
@click.pass_context
def pipelines_command(ctx: click.Context, as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value, ctx.obj.get("log_level"))
    pipelines = runtime.config.pipelines
    if as_json:
        _echo_json(
            {name: [phase.to_dict() for phase in phases] for name, phases in pipelines.items()}
        )
        return
    for name, phases in sorted(pipelines.items()):
        click.echo(f"{name}:")
        for index, phase in enumerate(phases):
            capabilities = ", ".join(sorted(str(item) for item in phase.required_capabilities))
            click.echo(f"  {index}. {phase.name:<16} agent={phase.agent_id} [{capabilities}]")


@cli.command("submit")
@click.argument("pipeline_name")
@click.argument("description")
@click.option("--title", default=None)
@click.option("--verbose", is_flag=True, default=False)
@config_option
@click.pass_context
def submit_command(
    ctx: click.Context,
    pipeline_name: str,
    description: str,
    title: str | None,
    verbose: bool,
    config_value: str,
) -> None:
    """Submit a work item and run it until it completes, blocks or is cancelled."""
    runtime = _load_runtime(config_value, ctx.obj.get("log_level"))

    async def _submit(engine: PipelineEngine) -> WorkItemSnapshot:
        work_item_id = engine.submit(description, pipeline_name, title=title)
        return await engine.wait(work_item_id)

    snapshot = _run(runtime, _submit)
    _echo_json(_render(snapshot, verbose))


@cli.command("query")
@click.argument("work_item_id", required=False)
@click.option("--verbose", is_flag=True, default=False)
@config_option
@click.pass_context
def query_command(
    ctx: click.Context, work_item_id: str | None, verbose: bool, config_value: str
) -> None:
    """Show one stored work item, or all of them when no id is given."""
    runtime = _load_runtime(config_value, ctx.obj.get("log_level"))
    try:
        if work_item_id is None:
            snapshots = runtime.store.list()
            if not snapshots:
                click.echo("No work items found.")
                return
            for snapshot in snapshots:
                current = snapshot.current_phase
                click.echo(
                    f"{snapshot.id} {snapshot.status.value:<9} "
                    f"{snapshot.pipeline}:{current.name if current else '-'} {snapshot.title}"
                )
            return
        snapshot = runtime.store.load(work_item_id)
    except PhasegateError as exc:
        raise CommandError.from_error(exc) from exc
    _echo_json(_render(snapshot, verbose))


@cli.command("restart")
@click.argument("work_item_id")
@click.option("--verbose", is_flag=True, default=False)
@config_option
@click.pass_context
def restart_command(
    ctx: click.Context, work_item_id: str, verbose: bool, config_value: str
) -> None:
    """Re-run a BLOCKED work item from the phase that blocked it."""
    runtime = _load_runtime(config_value, ctx.obj.get("log_level"))

    async def _restart(engine: PipelineEngine) -> WorkItemSnapshot:
        engine.adopt(runtime.store.load(work_item_id))
        engine.restart_blocked(work_item_id)
        return await engine.wait(work_item_id)

    snapshot = _run(runtime, _restart)
    _echo_json(_render(snapshot, verbose))


@cli.command("cancel")
@click.argument("work_item_id")
@config_option
@click.pass_context
def cancel_command(ctx: click.Context, work_item_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value, ctx.obj.get("log_level"))

    async def _cancel(engine: PipelineEngine) -> WorkItemSnapshot:
        engine.adopt(runtime.store.load(work_item_id))
        engine.cancel(work_item_id)
        return await engine.wait(work_item_id)

    snapshot = _run(runtime, _cancel)
    click.echo(f"{snapshot.id} {snapshot.status.value}")


@cli.command("audit")
@click.argument("work_item_id", required=False)
@config_option
@click.pass_context
def audit_command(ctx: click.Context, work_item_id: str | None, config_value: str) -> None:
    """Print audit records as JSON lines."""
    runtime = _load_runtime(config_value, ctx.obj.get("log_level"))
    records = read_audit_log(runtime.audit_path, work_item_id)
    if not records:
        click.echo("No audit records found.")
        return
    for record in records:
        click.echo(json.dumps(record, ensure_ascii=False, separators=(",", ":")))


if __name__ == "__main__":
    cli()
