import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from quorum.agents import GenerationAgent
from quorum.backends.base import AgentBackend, BackendRateLimitError
from quorum.cli import cli
from quorum.config import ConsensusConfig, QuorumConfig, load_config
from quorum.models import BuildResult, Plan, ReviewResult, TestResult
from quorum.verification import BuildRunner, TestRunner
from quorum.workflow import ExecutionStateMachine

MILESTONES = {
    "name": "calc",
    "language": "python",
    "specification": "A command line calculator",
    "milestones": [
        {
            "id": "milestone-1",
            "name": "Core",
            "tasks": [{"id": "milestone-1-task-1", "name": "Parser"}],
        }
    ],
}

README = "# Calc\n\n## Installation\n\npip install -e .\n\n## Usage\n\ncalc 1+2\n\npytest\n"
MAIN_PY = "\n".join(f"def op_{index}(a, b):\n    return a * b + {index}" for index in range(20))


class FakeBackend(AgentBackend):
    def __init__(self, *, rate_limited: bool = False) -> None:
        self.rate_limited = rate_limited

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, tools
        if self.rate_limited:
            raise BackendRateLimitError("usage limit reached")
        if user_prompt.startswith("Implement the approved plan"):
            (Path(context["_working_directory"]) / "main.py").write_text(MAIN_PY + "\n")
            yield "done"
            return
        if user_prompt.startswith("Write README.md"):
            yield README
            return
        yield "# Plan\n\n1. Build the parser\n2. Add tests for every operator"


class ApprovingReviewer:
    name = "openai"

    async def review(self, plan: Plan, context: str, config: ConsensusConfig) -> ReviewResult:
        return ReviewResult(score=98, analysis="ready", reviewer=self.name)


class PassingBuild(BuildRunner):
    async def run(self, cwd: Path, language) -> BuildResult:
        return BuildResult(success=True, command="build", attempts=1)


class NoTests(TestRunner):
    async def run(self, cwd: Path, language) -> TestResult:
        return TestResult(success=True)


def _use_fakes(monkeypatch: pytest.MonkeyPatch, backend: FakeBackend) -> None:
    def _from_config(cls, config: QuorumConfig, project_dir: Path, *, on_progress=None):
        return cls(
            config,
            project_dir,
            generator=GenerationAgent(backend),
            reviewers=[ApprovingReviewer()],
            test_runner=NoTests(),
            build_runner=PassingBuild(),
            on_progress=on_progress,
        )

    monkeypatch.setattr(ExecutionStateMachine, "from_config", classmethod(_from_config))


def _init_project(runner: CliRunner, root: Path) -> None:
    milestones = root / "milestones.json"
    milestones.write_text(json.dumps(MILESTONES), encoding="utf-8")
    result = runner.invoke(cli, ["init", "--milestones", str(milestones), "--name", "calc"])
    assert result.exit_code == 0, result.output
    assert "Project calc: 1 milestones, 1 tasks (phase execution)" in result.output


def test_init_writes_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(
        cli, ["init", "--name", "calc", "--language", "typescript", "--backend", "codex"]
    )

    assert result.exit_code == 0, result.output
    assert "Initialized Quorum in" in result.output
    config = load_config(tmp_path / "quorum.toml")
    assert config.project.name == "calc"
    assert config.project.language == "typescript"
    assert config.backend.primary == "codex"


def test_init_rejects_malformed_milestones(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    bad = tmp_path / "milestones.json"
    bad.write_text('{"tasks": []}', encoding="utf-8")

    result = CliRunner().invoke(cli, ["init", "--milestones", str(bad)])

    assert result.exit_code != 0
    assert "'milestones' list" in result.output


def test_run_and_status_lifecycle(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _use_fakes(monkeypatch, FakeBackend())
    runner = CliRunner()
    _init_project(runner, tmp_path)

    run_result = runner.invoke(cli, ["run"])
    assert run_result.exit_code == 0, run_result.output
    assert "Project complete." in run_result.output
    assert "Tasks completed: 1, failed: 0" in run_result.output
    assert "Build: passed" in run_result.output
    assert "[consensus]" in run_result.output

    status_result = runner.invoke(cli, ["--quiet", "status", "--verbose"])
    assert status_result.exit_code == 0
    payload = json.loads(status_result.output)
    assert payload["status"] == "complete"
    assert payload["verified_complete"] is True
    assert payload["milestones"][0]["tasks"][0]["status"] == "complete"

    resume_result = runner.invoke(cli, ["resume"])
    assert resume_result.exit_code == 0
    assert "Project complete." in resume_result.output


def test_rate_limited_run_reports_pause(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _use_fakes(monkeypatch, FakeBackend(rate_limited=True))
    runner = CliRunner()
    _init_project(runner, tmp_path)

    result = runner.invoke(cli, ["run"])

    assert result.exit_code == 0, result.output
    assert "Paused: Rate limit: usage limit reached" in result.output
    status = json.loads(runner.invoke(cli, ["--quiet", "status"]).output)
    assert status["status"] == "paused"


def test_pause_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_project(runner, tmp_path)

    result = runner.invoke(cli, ["pause", "--reason", "maintenance window"])

    assert result.exit_code == 0
    assert "Project paused." in result.output
    status = json.loads(runner.invoke(cli, ["--quiet", "status"]).output)
    assert status["status"] == "paused"
    assert status["error"] == "maintenance window"


def test_status_without_project_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "Error:" in result.output


def test_invalid_config_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "quorum.toml").write_text('[consensus]\nreviewer = "gemini"\n', encoding="utf-8")

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "Invalid config" in result.output
