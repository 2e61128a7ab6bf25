"""Milestone workflow: plan consensus, sequential tasks, and a reviewed completion."""

from __future__ import annotations

import logging
from pathlib import Path

from quorum.agents.generator import GenerationAgent
from quorum.consensus.protocol import ConsensusRunner
from quorum.logging_config import ProgressCallback, report_progress
from quorum.models import Milestone, MilestoneResult, Plan, PlanScope, ProjectState
from quorum.state.project import ProjectStateStore
from quorum.state.store import QuorumStateError
from quorum.workflow.documents import (
    milestone_completion_path,
    milestone_plan_path,
    render_milestone_completion,
    render_milestone_plan,
    write_document,
)
from quorum.workflow.tasks import TaskExecutor

logger = logging.getLogger(__name__)


def build_milestone_context(state: ProjectState, milestone: Milestone) -> str:
    sections = [f"# Project: {state.name}", f"Language: {state.language}"]
    if state.specification:
        sections.append(f"## Specification\n{state.specification[:2000]}")
    if state.plan:
        sections.append(f"## Master Plan\n{state.plan[:2000]}")
    done = [item.name for item in state.milestones if item.status == "complete"]
    if done:
        sections.append("## Completed Milestones\n" + "\n".join(f"- {name}" for name in done))
    sections.append(f"## Milestone: {milestone.name}\n{milestone.description or milestone.name}")
    sections.append(
        "## Tasks\n"
        + "\n".join(f"- {task.name}: {task.description}" for task in milestone.tasks)
    )
    return "\n\n".join(sections)


def summarize_milestone(milestone: Milestone) -> str:
    lines = [f"Milestone: {milestone.name}", "", "Tasks:"]
    for task in milestone.tasks:
        tests = {True: "tests passed", False: "tests failed", None: "no tests"}[task.tests_passed]
        lines.append(f"- [{task.status}] {task.name} ({tests})")
        if task.plan_doc:
            lines.append(f"  plan: {task.plan_doc}")
    if milestone.plan:
        lines += ["", "Approved plan:", milestone.plan[:3000]]
    return "\n".join(lines)


class MilestoneOrchestrator:
    """Plans a milestone, runs its tasks in order and gets completion signed off."""

    def __init__(
        self,
        generator: GenerationAgent,
        consensus: ConsensusRunner,
        project_store: ProjectStateStore,
        tasks: TaskExecutor,
        project_dir: Path,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.generator = generator
        self.consensus = consensus
        self.project_store = project_store
        self.tasks = tasks
        self.project_dir = project_dir
        self.on_progress = on_progress

    def _progress(self, message: str) -> None:
        report_progress(self.on_progress, "milestone", message)

    def _load(self, milestone_id: str) -> tuple[ProjectState, Milestone]:
        state = self.project_store.load()
        milestone = state.milestone(milestone_id)
        if milestone is None:
            raise QuorumStateError(f"Unknown milestone: {milestone_id}")
        return state, milestone

    def _fail(self, milestone: Milestone, error: str, **counts: int) -> MilestoneResult:
        self._progress(f'Milestone "{milestone.name}" failed: {error}')
        updated = self.project_store.update_milestone(milestone.id, status="failed", error=error)
        return MilestoneResult(success=False, milestone=updated, error=error, **counts)

    def _pause(self, milestone: Milestone, error: str | None, **counts: int) -> MilestoneResult:
        self._progress(f'Milestone "{milestone.name}" paused by rate limit')
        return MilestoneResult(
            success=False,
            milestone=milestone,
            error=error or "Rate limit",
            rate_limit_paused=True,
            **counts,
        )

    async def _plan(self, state: ProjectState, milestone: Milestone) -> MilestoneResult | None:
        """Get the milestone plan approved; return a result only when execution must stop."""
        scope = PlanScope(kind="milestone", milestone_id=milestone.id)
        context = build_milestone_context(state, milestone)
        plan = self.consensus.checkpoint_plan(scope)
        if plan is None:
            self._progress(f"Creating plan for milestone: {milestone.name}")
            generated = await self.generator.create_plan(
                milestone.name, milestone.description, context, self.project_dir
            )
            if generated.rate_limit_paused:
                return self._pause(milestone, generated.error)
            if not generated.success:
                return self._fail(milestone, f"Failed to create milestone plan: {generated.error}")
            plan = Plan(content=generated.response, scope=scope)

        self._progress("Getting consensus on milestone plan")
        result = await self.consensus.run(plan, context)
        if result.rate_limit_paused:
            return self._pause(milestone, result.error)

        plan_doc = write_document(
            self.project_dir,
            milestone_plan_path(milestone),
            render_milestone_plan(milestone, result.final_plan.content, result),
        )
        self.project_store.update_milestone(
            milestone.id,
            plan=result.final_plan.content,
            plan_approved=result.approved,
            consensus_score=result.final_score,
            plan_doc=plan_doc,
        )
        if not result.approved:
            return self._fail(
                milestone, f"Milestone plan not approved. Score: {result.final_score:.1f}%"
            )
        self._progress(f"Milestone plan approved ({result.final_score:.1f}%)")
        return None

    async def _complete(
        self, state: ProjectState, milestone: Milestone, completed: int
    ) -> MilestoneResult:
        counts = {"completed_tasks": completed}
        self._progress(f"Reviewing completion of milestone: {milestone.name}")
        context = build_milestone_context(state, milestone)
        scope = PlanScope(kind="milestone", milestone_id=milestone.id, variant="completion")
        plan = self.consensus.checkpoint_plan(scope)
        if plan is None:
            review = await self.generator.review_completion(
                summarize_milestone(milestone), context, self.project_dir
            )
            if review.rate_limit_paused:
                return self._pause(milestone, review.error, **counts)
            if not review.success:
                return self._fail(
                    milestone, f"Failed to create milestone review: {review.error}", **counts
                )
            plan = Plan(content=review.response, scope=scope)
        result = await self.consensus.run(plan, context)
        if result.rate_limit_paused:
            return self._pause(milestone, result.error, **counts)

        completion_doc = write_document(
            self.project_dir,
            milestone_completion_path(milestone),
            render_milestone_completion(milestone, result.final_plan.content, result),
        )
        if not result.approved:
            error = f"Milestone completion not approved. Score: {result.final_score:.1f}%"
            self._progress(error)
            updated = self.project_store.update_milestone(
                milestone.id,
                status="in-progress",
                completion_approved=False,
                completion_score=result.final_score,
                completion_review=result.final_plan.content,
                completion_doc=completion_doc,
                error=error,
            )
            return MilestoneResult(success=False, milestone=updated, error=error, **counts)

        updated = self.project_store.update_milestone(
            milestone.id,
            status="complete",
            completion_approved=True,
            completion_score=result.final_score,
            completion_review=result.final_plan.content,
            completion_doc=completion_doc,
            error=None,
        )
        self._progress(f"Milestone complete: {milestone.name} ({result.final_score:.1f}%)")
        return MilestoneResult(success=True, milestone=updated, **counts)

    async def execute(self, milestone_id: str) -> MilestoneResult:
        state, milestone = self._load(milestone_id)
        self._progress(f"Starting milestone: {milestone.name}")
        self.project_store.update_milestone(milestone.id, status="in-progress", error=None)

        if milestone.plan_approved and milestone.plan:
            self._progress("Milestone plan already approved, skipping planning")
        else:
            stopped = await self._plan(state, milestone)
            if stopped is not None:
                return stopped

        completed = failed = 0
        first_error: str | None = None
        for task_id in [task.id for task in milestone.tasks]:
            _, current = self._load(milestone_id)
            task = current.task(task_id)
            if task is None or task.status == "complete":
                continue
            result = await self.tasks.execute(milestone_id, task_id)
            if result.rate_limit_paused:
                return self._pause(
                    current, result.error, completed_tasks=completed, failed_tasks=failed
                )
            if result.success:
                completed += 1
                continue
            failed += 1
            if first_error is None:
                first_error = f'Task "{task.name}" failed: {result.error}'
            self._progress(f'Task "{task.name}" failed; continuing with remaining tasks')

        self.project_store.set_current_task(None)
        state, milestone = self._load(milestone_id)
        if failed:
            return self._fail(
                milestone,
                f"{failed} task(s) failed. {first_error}",
                completed_tasks=completed,
                failed_tasks=failed,
            )
        return await self._complete(state, milestone, completed)
