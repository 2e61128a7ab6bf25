"""Per-task workflow: plan consensus, implementation, and the test-fix loop."""

from __future__ import annotations

import logging
from pathlib import Path

from quorum.agents.generator import GenerationAgent
from quorum.consensus.protocol import ConsensusRunner, validate_plan_structure
from quorum.logging_config import ProgressCallback, report_progress
from quorum.models import (
    ConsensusProcessResult,
    GenerationResult,
    Milestone,
    Plan,
    PlanScope,
    ProjectState,
    Task,
    TaskResult,
    TestResult,
)
from quorum.state.project import ProjectStateStore
from quorum.state.store import QuorumStateError
from quorum.verification import TestRunner, has_tests, is_test_runner_crash, summarize_tests
from quorum.workflow.documents import (
    render_task_plan,
    render_test_results,
    task_plan_path,
    task_tests_path,
    write_document,
)

logger = logging.getLogger(__name__)

DESIGN_CONTEXT_DOC = Path("docs") / "ui_design.md"


def build_task_context(
    state: ProjectState,
    milestone: Milestone,
    task: Task,
    *,
    design_context: str = "",
) -> str:
    """Context handed to planning, review and implementation of a single task."""
    sections = [
        f"# Project: {state.name}",
        f"Language: {state.language}",
    ]
    if state.specification:
        sections.append(f"## Specification\n{state.specification[:2000]}")
    if state.plan:
        sections.append(f"## Master Plan\n{state.plan[:2000]}")
    if design_context:
        sections.append(f"## UI Design Context\n{design_context[:2000]}")
    sections.append(
        f"## Current Milestone: {milestone.name}\n{milestone.description or milestone.name}"
    )
    if milestone.plan:
        sections.append(f"## Milestone Plan\n{milestone.plan[:2000]}")
    completed = [item for item in milestone.tasks if item.status == "complete"]
    if completed:
        sections.append(
            "## Completed Tasks in this Milestone\n"
            + "\n".join(f"- {item.name}: {item.description}" for item in completed)
        )
    sections.append(f"## Current Task: {task.name}\n{task.description or task.name}")
    if task.test_plan:
        sections.append(f"## Test Plan\n{task.test_plan}")
    return "\n\n".join(sections)


def build_test_fix_plan(
    task: Task,
    result: TestResult,
    language: str,
    *,
    crash_floor: int = 20,
) -> str:
    """Draft plan for fixing failing tests; crash output gets a different playbook."""
    failing = "\n".join(f"- {name}" for name in result.failed_tests[:20]) or "- (not parsed)"
    output = result.output[-3000:]
    if is_test_runner_crash(result, crash_floor):
        return f"""## Test Runner Crash Fix Plan for: {task.name}

### Diagnosis
{result.failed} tests failed with no passing tests. This pattern points at a runner
crash (import error, missing dependency, broken configuration), not individual test bugs.

### Runner Output
```
{output}
```

### Fix Steps
1. Read the first error in the output above; everything after it is usually fallout.
2. Check the test configuration and dependency manifest for {language}.
3. Fix module imports and missing packages before touching any test body.
4. Re-run the full suite once the runner starts cleanly.

### Rules
- Fix the crash at its source; do not delete or skip tests.
- Do not change application behavior to work around a configuration problem.
"""
    return f"""## Test Fix Plan for: {task.name}

### Failing Tests ({result.failed} of {result.total})
{failing}

### Test Output
```
{output}
```

### Fix Steps
1. Analyze each failing test and locate the root cause in the implementation.
2. Fix the implementation so it meets the behavior the test asserts.
3. Only change a test when it is itself incorrect, and explain why in the summary.
4. Re-run the suite and confirm no previously passing test regressed.

### Review Checklist
- [ ] Each fix addresses a root cause, not a symptom
- [ ] No tests were deleted or skipped
- [ ] The change stays within the scope of task "{task.name}"
"""


class TaskExecutor:
    """Runs one task through plan consensus, implementation and verified tests."""

    def __init__(
        self,
        generator: GenerationAgent,
        consensus: ConsensusRunner,
        project_store: ProjectStateStore,
        test_runner: TestRunner,
        project_dir: Path,
        *,
        max_retries: int = 3,
        crash_floor: int = 20,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.generator = generator
        self.consensus = consensus
        self.project_store = project_store
        self.test_runner = test_runner
        self.project_dir = project_dir
        self.max_retries = max_retries
        self.crash_floor = crash_floor
        self.on_progress = on_progress

    def _progress(self, message: str) -> None:
        report_progress(self.on_progress, "task", message)

    def _load(self, milestone_id: str, task_id: str) -> tuple[ProjectState, Milestone, Task]:
        state = self.project_store.load()
        milestone = state.milestone(milestone_id)
        if milestone is None:
            raise QuorumStateError(f"Unknown milestone: {milestone_id}")
        task = milestone.task(task_id)
        if task is None:
            raise QuorumStateError(f"Unknown task: {task_id}")
        return state, milestone, task

    def _design_context(self) -> str:
        path = self.project_dir / DESIGN_CONTEXT_DOC
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def _fail(self, task: Task, error: str, **extra: object) -> TaskResult:
        self._progress(f'Task "{task.name}" failed: {error}')
        updated = self.project_store.update_task(task.id, status="failed", error=error)
        return TaskResult(success=False, task=updated, error=error, **extra)

    def _pause(self, task: Task, message: str | None, **extra: object) -> TaskResult:
        reason = (message or "provider limit reached").removeprefix("Rate limit: ")
        error = f"Rate limit: {reason}"
        self._progress(f'Task "{task.name}" paused. Run `quorum resume` to continue.')
        updated = self.project_store.update_task(task.id, error=error)
        return TaskResult(
            success=False, task=updated, error=error, rate_limit_paused=True, **extra
        )

    async def execute(self, milestone_id: str, task_id: str) -> TaskResult:
        state, milestone, task = self._load(milestone_id, task_id)
        self._progress(f"Starting task: {task.name}")
        self.project_store.update_task(task.id, status="in-progress", error=None)
        self.project_store.set_current_task(task.id)
        context = build_task_context(
            state, milestone, task, design_context=self._design_context()
        )
        scope = PlanScope(kind="task", milestone_id=milestone.id, task_id=task.id)
        consensus_result: ConsensusProcessResult | None = None

        if task.consensus_approved and task.plan:
            self._progress("Task plan already approved, skipping planning")
            plan_text = task.plan
        else:
            plan = self.consensus.checkpoint_plan(scope)
            if plan is None:
                self._progress("Creating task plan")
                generated = await self.generator.create_plan(
                    task.name, task.description, context, self.project_dir
                )
                if generated.rate_limit_paused:
                    return self._pause(task, generated.rate_limit_message)
                if not generated.success:
                    return self._fail(task, f"Failed to create task plan: {generated.error}")
                for problem in validate_plan_structure(generated.response):
                    self._progress(f"Plan structure warning: {problem}")
                plan = Plan(content=generated.response, scope=scope)
                self.project_store.update_task(task.id, plan=plan.content)

            self._progress("Getting consensus on task plan")
            consensus_result = await self.consensus.run(plan, context)
            if consensus_result.rate_limit_paused:
                return self._pause(task, consensus_result.error, consensus=consensus_result)

            plan_text = consensus_result.final_plan.content
            plan_doc = write_document(
                self.project_dir,
                task_plan_path(milestone, task),
                render_task_plan(milestone, task, plan_text, consensus_result),
            )
            self.project_store.update_task(
                task.id,
                plan=plan_text,
                consensus_score=consensus_result.final_score,
                consensus_iterations=consensus_result.total_iterations,
                consensus_approved=consensus_result.approved,
                plan_doc=plan_doc,
            )
            if not consensus_result.approved:
                return self._fail(
                    task,
                    f"Consensus not reached: {consensus_result.final_score:.1f}%",
                    consensus=consensus_result,
                )

        state, milestone, task = self._load(milestone_id, task_id)
        if task.implementation_complete:
            self._progress("Implementation already complete, skipping to tests")
        else:
            self._progress("Implementing task")
            implemented = await self.generator.implement(plan_text, context, self.project_dir)
            if implemented.rate_limit_paused:
                return self._pause(
                    task, implemented.rate_limit_message, consensus=consensus_result
                )
            if not implemented.success:
                return self._fail(
                    task, f"Implementation failed: {implemented.error}", consensus=consensus_result
                )
            task = self.project_store.update_task(task.id, implementation_complete=True)

        if not has_tests(self.project_dir, state.language):
            self._progress("No tests found for this task")
            task = self.project_store.update_task(
                task.id, status="complete", tests_passed=None, error=None
            )
            return TaskResult(success=True, task=task, consensus=consensus_result)

        return await self._test_loop(state, milestone, task, scope, context, consensus_result)

    async def _test_loop(
        self,
        state: ProjectState,
        milestone: Milestone,
        task: Task,
        scope: PlanScope,
        context: str,
        consensus_result: ConsensusProcessResult | None,
    ) -> TaskResult:
        retries = 0
        while True:
            self._progress(f"Running tests (attempt {retries + 1}/{self.max_retries + 1})")
            test_result = await self.test_runner.run(self.project_dir, state.language)
            test_doc = write_document(
                self.project_dir,
                task_tests_path(milestone, task),
                render_test_results(milestone, task, test_result),
            )
            self.project_store.update_task(task.id, test_results_doc=test_doc)
            self._progress(summarize_tests(test_result))
            if test_result.success or retries >= self.max_retries:
                break

            retries += 1
            fix_scope = scope.with_variant(f"test-fix-{retries}")
            fix_plan = self.consensus.checkpoint_plan(fix_scope) or Plan(
                content=build_test_fix_plan(
                    task, test_result, state.language, crash_floor=self.crash_floor
                ),
                scope=fix_scope,
            )
            self._progress(f"Getting consensus on test fix {retries}/{self.max_retries}")
            fix_consensus = await self.consensus.run(
                fix_plan, f"{context}\n\n## Test Failures\n{summarize_tests(test_result)}"
            )
            if fix_consensus.rate_limit_paused:
                return self._pause(task, fix_consensus.error, consensus=consensus_result)
            if not fix_consensus.approved:
                self._progress(
                    f"Test fix plan not approved ({fix_consensus.final_score:.1f}%)"
                )
                break

            fix: GenerationResult = await self.generator.apply_test_fix(
                fix_consensus.final_plan.content, test_result, self.project_dir
            )
            if fix.rate_limit_paused:
                return self._pause(task, fix.rate_limit_message, consensus=consensus_result)
            if not fix.success:
                self._progress(f"Test fix failed: {fix.error}")
                break

        if not test_result.success:
            return self._fail(
                task,
                f"Tests failed after {retries} retries",
                consensus=consensus_result,
                test_result=test_result,
            )
        task = self.project_store.update_task(
            task.id, status="complete", tests_passed=True, error=None
        )
        self._progress(f"Task complete: {task.name}")
        return TaskResult(
            success=True, task=task, consensus=consensus_result, test_result=test_result
        )
