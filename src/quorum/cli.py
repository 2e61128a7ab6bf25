from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from quorum import __version__
from quorum.config import QuorumConfig, load_config, save_config
from quorum.logging_config import setup_logging
from quorum.models import ExecutionResult, Milestone
from quorum.state import ProjectStateStore, QuorumStateError
from quorum.workflow import ExecutionStateMachine


@dataclass(slots=True)
class Runtime:
    project_dir: Path
    config_path: Path
    config: QuorumConfig
    store: ProjectStateStore


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _load_runtime(project_dir: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
        config.validate()
    except ValueError as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    store = ProjectStateStore(project_dir, state_dir_name=config.state.directory)
    return Runtime(
        project_dir=project_dir,
        config_path=config_path,
        config=config,
        store=store,
    )


def _echo_progress(phase: str, message: str) -> None:
    click.echo(f"[{phase}] {message}")


def _load_milestones(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot read milestones file {path}: {exc}") from exc
    if isinstance(payload, list):
        payload = {"milestones": payload}
    if not isinstance(payload, dict) or not isinstance(payload.get("milestones"), list):
        raise click.ClickException(
            f"{path} must hold a list of milestones or an object with a 'milestones' list."
        )
    return payload


def _report(result: ExecutionResult) -> None:
    if result.success:
        click.echo("Project complete.")
    elif result.rate_limit_paused:
        click.echo(f"Paused: {result.error}")
        click.echo("Run `quorum resume` once the provider limit resets.")
    click.echo(f"Tasks completed: {result.completed_tasks}, failed: {result.failed_tasks}")
    if result.build_status:
        click.echo(f"Build: {result.build_status}")
    if result.test_status:
        click.echo(f"Tests: {result.test_status}")
    if not result.success and not result.rate_limit_paused:
        raise click.ClickException(result.error or "Execution failed.")


@click.group()
@click.version_option(__version__, prog_name="quorum")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging.")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only log errors.")
def cli(verbose: bool, quiet: bool) -> None:
    """Quorum: plan, review, implement and verify a project by consensus."""
    setup_logging(verbose=verbose, quiet=quiet)


@cli.command("init")
@click.option(
    "--milestones",
    "milestones_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file with the project's milestones and tasks.",
)
@click.option("--name", default=None)
@click.option("--language", type=click.Choice(["python", "typescript"]), default=None)
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default="quorum.toml", show_default=True)
def init_command(
    milestones_file: Path | None,
    name: str | None,
    language: str | None,
    backend: str | None,
    config_value: str,
) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    config = load_config(config_path)
    if name:
        config.project.name = name
    if language:
        config.project.language = language  # type: ignore[assignment]
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    click.echo(f"Initialized Quorum in {project_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")

    if milestones_file is None:
        return
    payload = _load_milestones(milestones_file)
    store = ProjectStateStore(project_dir, state_dir_name=config.state.directory)
    try:
        state = store.create(
            str(payload.get("name") or config.project.name),
            idea=str(payload.get("idea", "")),
            language=str(payload.get("language") or config.project.language),
            milestones=[Milestone.from_dict(item) for item in payload["milestones"]],
            specification=str(payload.get("specification", "")),
            plan=payload.get("plan"),
        )
    except (KeyError, QuorumStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        f"Project {state.name}: {len(state.milestones)} milestones, "
        f"{len(state.all_tasks())} tasks (phase {state.phase})"
    )


@cli.command("run")
@click.option("--config", "config_value", default="quorum.toml", show_default=True)
def run_command(config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        machine = ExecutionStateMachine.from_config(
            runtime.config, runtime.project_dir, on_progress=_echo_progress
        )
        result = asyncio.run(machine.run())
    except (RuntimeError, QuorumStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    _report(result)


@cli.command("resume")
@click.option("--config", "config_value", default="quorum.toml", show_default=True)
def resume_command(config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        machine = ExecutionStateMachine.from_config(
            runtime.config, runtime.project_dir, on_progress=_echo_progress
        )
        result = asyncio.run(machine.resume())
    except (RuntimeError, QuorumStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    _report(result)


@cli.command("pause")
@click.option("--reason", default="Paused by user", show_default=True)
@click.option("--config", "config_value", default="quorum.toml", show_default=True)
def pause_command(reason: str, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        runtime.store.pause_project(reason)
    except QuorumStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Project paused.")


@cli.command("status")
@click.option("--verbose", "show_tasks", is_flag=True, default=False)
@click.option("--config", "config_value", default="quorum.toml", show_default=True)
def status_command(show_tasks: bool, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        state = runtime.store.load()
        verification = runtime.store.verify_project_completion()
    except QuorumStateError as exc:
        raise click.ClickException(str(exc)) from exc

    payload: dict[str, Any] = {
        "name": state.name,
        "phase": state.phase,
        "status": state.status,
        "current_milestone": state.current_milestone,
        "current_task": state.current_task,
        "error": state.error,
        "progress": verification.progress.to_dict(),
        "verified_complete": verification.is_complete,
    }
    if show_tasks:
        payload["milestones"] = [
            {
                "id": milestone.id,
                "name": milestone.name,
                "status": milestone.status,
                "completion_approved": milestone.completion_approved,
                "tasks": [
                    {"id": task.id, "status": task.status, "error": task.error}
                    for task in milestone.tasks
                ],
            }
            for milestone in state.milestones
        ]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
