"""Project-level execution: milestones, final verification gates and resume."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from quorum.agents.arbitrator import ArbitratorAgent
from quorum.agents.generator import GenerationAgent
from quorum.agents.registry import build_arbitrator, build_generator, build_reviewers
from quorum.agents.reviewer import ReviewerAgent
from quorum.config import QuorumConfig
from quorum.consensus.protocol import ConsensusRunner
from quorum.logging_config import ProgressCallback, report_progress
from quorum.models import ExecutionResult, ProjectState, TestStatus
from quorum.state.plans import PlanStore
from quorum.state.project import ProjectStateStore, compute_progress
from quorum.state.store import QuorumStateError
from quorum.verification import (
    BuildRunner,
    TestRunner,
    build_with_auto_fix,
    has_tests,
    summarize_tests,
    validate_readme,
    verify_code_quality,
)
from quorum.workflow.build_fix import BuildFixLoop
from quorum.workflow.milestones import MilestoneOrchestrator
from quorum.workflow.tasks import DESIGN_CONTEXT_DOC, TaskExecutor

logger = logging.getLogger(__name__)

_FRONTEND_MARKERS = ("react", "vue", "svelte", "next", "@angular/core", "solid-js")


def has_frontend(project_dir: Path) -> bool:
    package_json = project_dir / "package.json"
    if not package_json.exists():
        return False
    text = package_json.read_text(encoding="utf-8", errors="replace")
    return any(f'"{marker}"' in text for marker in _FRONTEND_MARKERS)


def _readme_context(state: ProjectState) -> str:
    milestones = "\n".join(f"- {milestone.name}" for milestone in state.milestones)
    return "\n\n".join(
        [
            f"Project: {state.name}",
            f"Language: {state.language}",
            f"Specification:\n{state.specification[:2000]}",
            f"Milestones:\n{milestones}",
        ]
    )


class _Paused(Exception):
    """Raised inside the final gates when a provider rate limit stops the run."""


class ExecutionStateMachine:
    """Drives an execution-phase project from its current state to a verified finish.

    Every transition is persisted through :class:`ProjectStateStore` before the next
    step starts, so ``resume`` picks up after the last durable change.
    """

    def __init__(
        self,
        config: QuorumConfig,
        project_dir: Path,
        *,
        generator: GenerationAgent,
        reviewers: Sequence[ReviewerAgent],
        arbitrator: ArbitratorAgent | None = None,
        test_runner: TestRunner | None = None,
        build_runner: BuildRunner | None = None,
        on_progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.project_dir = project_dir.resolve()
        self.generator = generator
        self.on_progress = on_progress
        state_dir = config.state.directory
        self.project_store = ProjectStateStore(self.project_dir, state_dir_name=state_dir)
        self.plan_store = PlanStore(self.project_dir, state_dir_name=state_dir)
        execution = config.execution
        self.test_runner = test_runner or TestRunner(
            command=config.project.test_command,
            timeout_seconds=execution.command_timeout_seconds,
        )
        self.build_runner = build_runner or BuildRunner(
            command=config.project.build_command,
            timeout_seconds=execution.command_timeout_seconds,
        )
        self.consensus = ConsensusRunner(
            reviewers,
            generator,
            config.consensus,
            arbitrator=arbitrator,
            plan_store=self.plan_store,
            project_store=self.project_store,
            cwd=self.project_dir,
            on_progress=on_progress,
            clock=clock,
        )
        self.tasks = TaskExecutor(
            generator,
            self.consensus,
            self.project_store,
            self.test_runner,
            self.project_dir,
            max_retries=execution.max_task_retries,
            crash_floor=execution.test_crash_failure_floor,
            on_progress=on_progress,
        )
        self.milestones = MilestoneOrchestrator(
            generator,
            self.consensus,
            self.project_store,
            self.tasks,
            self.project_dir,
            on_progress=on_progress,
        )

    @classmethod
    def from_config(
        cls,
        config: QuorumConfig,
        project_dir: Path,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionStateMachine:
        return cls(
            config,
            project_dir,
            generator=build_generator(config, project_dir),
            reviewers=build_reviewers(config, project_dir),
            arbitrator=build_arbitrator(config, project_dir),
            on_progress=on_progress,
        )

    def _progress(self, phase: str, message: str) -> None:
        report_progress(self.on_progress, phase, message)

    def _language(self, state: ProjectState) -> str:
        return state.language or self.config.project.language

    def _result(self, success: bool, **fields: object) -> ExecutionResult:
        try:
            state = self.project_store.load()
        except QuorumStateError:
            state = None
        if state is not None:
            progress = compute_progress(state)
            fields.setdefault("completed_tasks", progress.completed_tasks)
            fields.setdefault("failed_tasks", progress.failed_tasks)
        return ExecutionResult(success=success, state=state, **fields)

    def _pause(self, reason: str | None, **fields: object) -> ExecutionResult:
        error = reason or "Paused due to rate limit"
        self.project_store.pause_project(error)
        self._progress("paused", f"{error}. Run `quorum resume` to continue.")
        return self._result(False, error=error, rate_limit_paused=True, **fields)

    def _fail(self, error: str, **fields: object) -> ExecutionResult:
        self.project_store.fail_project(error)
        self._progress("error", error)
        return self._result(False, error=error, **fields)

    async def run(self) -> ExecutionResult:
        try:
            return await self._run()
        except Exception as exc:
            logger.exception("Execution aborted")
            self._progress("error", f"Execution aborted: {exc}")
            return self._result(False, error=str(exc))

    async def _run(self) -> ExecutionResult:
        state = self.project_store.load()
        if state.phase != "execution":
            return ExecutionResult(
                success=False,
                state=state,
                error=f"Cannot run execution mode: project is in {state.phase} phase",
            )
        state = self.project_store.set_status("in-progress")
        self._progress("execution", f"Executing {len(state.milestones)} milestones")

        for milestone in state.milestones:
            if milestone.status == "complete" and milestone.completion_approved:
                self._progress("execution", f"Skipping completed milestone: {milestone.name}")
                continue
            self.project_store.set_current_milestone(milestone.id)
            result = await self.milestones.execute(milestone.id)
            if result.rate_limit_paused:
                return self._pause(result.error)
            if not result.success:
                return self._fail(f'Milestone "{milestone.name}" failed: {result.error}')
        self.project_store.set_current_milestone(None)
        self.project_store.set_current_task(None)

        try:
            return await self._finalize()
        except _Paused as paused:
            return self._pause(str(paused))

    async def _setup_ui(self, state: ProjectState) -> None:
        if state.language != "typescript" or not has_frontend(self.project_dir):
            self._progress("ui", "No frontend detected, skipping UI setup")
            return
        design_doc = self.project_dir / DESIGN_CONTEXT_DOC
        if design_doc.exists():
            self._progress("ui", "UI design context already present")
            return
        self._progress("ui", "Generating UI design context")
        prompt = (
            "Inspect the frontend in this project and write a concise UI design context: "
            "component inventory, layout conventions, styling approach, and accessibility "
            "rules that later changes must follow. Return markdown only."
        )
        try:
            result = await self.generator.execute(prompt, {"phase": "ui-setup"}, self.project_dir)
        except Exception as exc:
            logger.warning("UI setup failed: %s", exc)
            self._progress("ui", f"UI setup skipped: {exc}")
            return
        if result.rate_limit_paused:
            raise _Paused(result.error)
        if not result.success:
            self._progress("ui", f"UI setup skipped: {result.error}")
            return
        design_doc.parent.mkdir(parents=True, exist_ok=True)
        design_doc.write_text(result.response, encoding="utf-8")

    async def _finalize(self) -> ExecutionResult:
        state = self.project_store.load()
        language = self._language(state)
        await self._setup_ui(state)

        verification = self.project_store.verify_project_completion()
        if not verification.is_complete:
            self._progress("verification", f"Completion check: {verification.reason}")
            for item in verification.incomplete_items:
                self._progress("verification", f"  - {item}")

        self._progress("build", "Verifying build")
        build = await build_with_auto_fix(
            self.build_runner,
            self.generator,
            self.project_dir,
            language,
            max_attempts=self.config.execution.build_autofix_attempts,
            on_progress=self.on_progress,
        )
        if build.rate_limit_paused:
            raise _Paused("Build auto-fix paused due to rate limit")
        if not build.success:
            fix = await BuildFixLoop(
                self.generator,
                self.consensus,
                self.build_runner,
                self.project_dir,
                language,
                verify_attempts=self.config.execution.build_verify_attempts,
                on_progress=self.on_progress,
            ).run(state.name, build.output)
            if fix.rate_limit_paused:
                raise _Paused(fix.error)
            if not fix.success:
                return self._fail(fix.error or "Build verification failed", build_status="failed")

        test_status: TestStatus = "no-tests"
        if has_tests(self.project_dir, language):
            self._progress("tests", "Running final test verification")
            tests = await self.test_runner.run(self.project_dir, language)
            if not tests.success:
                return self._fail(
                    f"Final test verification failed: {summarize_tests(tests)}",
                    build_status="passed",
                    test_status="failed",
                )
            test_status = "passed"
            self._progress("tests", summarize_tests(tests))

        quality = verify_code_quality(self.project_dir, language)
        self._progress(
            "quality",
            f"{quality.total_source_files} source files, "
            f"{quality.total_lines_of_code} lines of code, {quality.test_file_count} test files",
        )
        for warning in quality.warnings:
            self._progress("quality", f"Warning: {warning}")
        for issue in quality.issues:
            self._progress("quality", f"Issue: {issue}")
        if quality.issues and self.config.execution.require_quality_gate:
            return self._fail(
                f"Project verification failed: {len(quality.issues)} critical issues",
                build_status="passed",
                test_status=test_status,
            )

        await self._write_readme(state, language)

        self.project_store.complete_project()
        self._progress("complete", f"Project {state.name} complete")
        return self._result(True, build_status="passed", test_status=test_status)

    async def _write_readme(self, state: ProjectState, language: str) -> None:
        for attempt in (1, 2):
            self._progress("readme", "Generating README" if attempt == 1 else "Regenerating README")
            result = await self.generator.generate_readme(_readme_context(state), self.project_dir)
            if result.rate_limit_paused:
                raise _Paused(result.error)
            readme = self.project_dir / "README.md"
            if result.success and not readme.exists():
                readme.write_text(result.response, encoding="utf-8")
            if not result.success:
                self._progress("readme", f"README generation failed: {result.error}")
            validation = validate_readme(self.project_dir, language)
            for missing in validation.missing_recommended:
                self._progress("readme", f"README could also include: {missing}")
            if validation.valid:
                return
            self._progress(
                "readme", f"README missing: {', '.join(validation.missing_critical)}"
            )
        self._progress("readme", "README still incomplete; continuing")

    async def resume(self) -> ExecutionResult:
        try:
            state = self.project_store.load()
            verification = self.project_store.verify_project_completion()
            progress = verification.progress
            self._progress(
                "resume",
                f"{state.name}: {progress.completed_tasks}/{progress.total_tasks} tasks complete "
                f"(phase {state.phase}, status {state.status})",
            )
            if state.is_complete and verification.is_complete:
                self._progress("resume", "Project already complete and verified")
                return self._result(True)
            if state.is_complete:
                self._progress(
                    "resume",
                    f"Project marked complete but verification failed: {verification.reason}",
                )
            self.project_store.reset_incomplete_project()
        except Exception as exc:
            logger.exception("Resume failed")
            return self._result(False, error=str(exc))
        return await self.run()
