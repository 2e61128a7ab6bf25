from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from quorum.models import (
    ConsensusIteration,
    Milestone,
    Phase,
    ProjectState,
    ProjectStatus,
    Task,
    _utcnow_iso,
)
from quorum.state.store import (
    CompletionInvariantError,
    JsonStateStore,
    ProjectNotFoundError,
    QuorumStateError,
)

logger = logging.getLogger(__name__)

ProjectMutator = Callable[[ProjectState], ProjectState | None]


@dataclass(slots=True)
class ProjectProgress:
    total_milestones: int = 0
    completed_milestones: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    in_progress_tasks: int = 0
    pending_tasks: int = 0
    failed_tasks: int = 0

    @property
    def percent_complete(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return round(100.0 * self.completed_tasks / self.total_tasks, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_milestones": self.total_milestones,
            "completed_milestones": self.completed_milestones,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "in_progress_tasks": self.in_progress_tasks,
            "pending_tasks": self.pending_tasks,
            "failed_tasks": self.failed_tasks,
            "percent_complete": self.percent_complete,
        }


@dataclass(slots=True)
class CompletionVerification:
    is_complete: bool
    progress: ProjectProgress
    reason: str | None = None
    incomplete_items: list[str] = field(default_factory=list)


def check_completion_invariant(
    before: ProjectState | None,
    after: ProjectState,
    *,
    allow_completion: bool,
) -> None:
    """Reject states where phase and status disagree about completion.

    Reaching ``complete/complete`` from anything else is reserved for
    :meth:`ProjectStateStore.complete_project`.
    """
    if (after.phase == "complete") != (after.status == "complete"):
        raise CompletionInvariantError(
            f"Refusing to persist phase={after.phase!r} with status={after.status!r}; "
            "phase and status must reach 'complete' together."
        )
    newly_complete = after.is_complete and not (before is not None and before.is_complete)
    if newly_complete and not allow_completion:
        raise CompletionInvariantError(
            "Only the terminal completion step may mark the project complete."
        )


def compute_progress(state: ProjectState) -> ProjectProgress:
    tasks = state.all_tasks()
    return ProjectProgress(
        total_milestones=len(state.milestones),
        completed_milestones=sum(
            1 for milestone in state.milestones if milestone.status == "complete"
        ),
        total_tasks=len(tasks),
        completed_tasks=sum(1 for task in tasks if task.status == "complete"),
        in_progress_tasks=sum(1 for task in tasks if task.status == "in-progress"),
        pending_tasks=sum(1 for task in tasks if task.status == "pending"),
        failed_tasks=sum(1 for task in tasks if task.status == "failed"),
    )


def _recomputed_milestone_status(milestone: Milestone) -> str:
    if milestone.tasks and all(task.status == "complete" for task in milestone.tasks):
        return "complete"
    if any(task.status in {"complete", "in-progress"} for task in milestone.tasks):
        return "in-progress"
    return "pending"


class ProjectStateStore:
    """Persists one project's :class:`ProjectState` with re-read-then-write mutations."""

    NAMESPACE = "project"

    def __init__(self, project_dir: Path, *, state_dir_name: str = ".quorum") -> None:
        self.project_dir = project_dir.resolve()
        self.store = JsonStateStore(self.project_dir / state_dir_name / "state")

    def exists(self) -> bool:
        return self.store.exists(self.NAMESPACE)

    def create(
        self,
        name: str,
        *,
        idea: str = "",
        language: str = "python",
        milestones: list[Milestone] | None = None,
        specification: str = "",
        plan: str | None = None,
    ) -> ProjectState:
        if self.exists():
            raise QuorumStateError(f"Project state already exists in {self.project_dir}")
        state = ProjectState(
            name=name,
            idea=idea,
            language=language,
            phase="execution" if milestones else "plan",
            status="pending",
            milestones=list(milestones or []),
            specification=specification,
            plan=plan,
        )
        return self.save(state)

    def load(self) -> ProjectState:
        payload = self.store.get_json(self.NAMESPACE)
        if not isinstance(payload, dict):
            raise ProjectNotFoundError(f"No project state found in {self.project_dir}")
        return ProjectState.from_dict(payload)

    def save(self, state: ProjectState) -> ProjectState:
        previous = self.load() if self.exists() else None
        check_completion_invariant(previous, state, allow_completion=False)
        state.updated_at = _utcnow_iso()
        self.store.set_json(self.NAMESPACE, state.to_dict())
        return state

    def mutate(self, mutator: ProjectMutator, *, _allow_completion: bool = False) -> ProjectState:
        """Apply ``mutator`` to freshly loaded state and persist the result."""
        result: dict[str, ProjectState] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            if not isinstance(payload, dict):
                raise ProjectNotFoundError(f"No project state found in {self.project_dir}")
            before = ProjectState.from_dict(payload)
            working = ProjectState.from_dict(payload)
            after = mutator(working) or working
            check_completion_invariant(before, after, allow_completion=_allow_completion)
            after.updated_at = _utcnow_iso()
            result["state"] = after
            return after.to_dict()

        self.store.update_json(self.NAMESPACE, _updater)
        return result["state"]

    def set_phase(self, phase: Phase) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state.phase = phase

        return self.mutate(_apply)

    def set_status(self, status: ProjectStatus, *, error: str | None = None) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state.status = status
            state.error = error

        return self.mutate(_apply)

    def set_current_milestone(self, milestone_id: str | None) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state.current_milestone = milestone_id
            state.current_task = None

        return self.mutate(_apply)

    def set_current_task(self, task_id: str | None) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state.current_task = task_id

        return self.mutate(_apply)

    def update_task(self, task_id: str, **changes: Any) -> Task:
        updated: dict[str, Task] = {}

        def _apply(state: ProjectState) -> None:
            found = state.find_task(task_id)
            if found is None:
                raise QuorumStateError(f"Unknown task: {task_id}")
            _, task = found
            for key, value in changes.items():
                if not hasattr(task, key):
                    raise QuorumStateError(f"Unknown task field: {key}")
                setattr(task, key, value)
            updated["task"] = task

        self.mutate(_apply)
        return updated["task"]

    def update_milestone(self, milestone_id: str, **changes: Any) -> Milestone:
        updated: dict[str, Milestone] = {}

        def _apply(state: ProjectState) -> None:
            milestone = state.milestone(milestone_id)
            if milestone is None:
                raise QuorumStateError(f"Unknown milestone: {milestone_id}")
            for key, value in changes.items():
                if key == "tasks" or not hasattr(milestone, key):
                    raise QuorumStateError(f"Unknown milestone field: {key}")
                setattr(milestone, key, value)
            updated["milestone"] = milestone

        self.mutate(_apply)
        return updated["milestone"]

    def append_consensus_iteration(self, iteration: ConsensusIteration) -> ProjectState:
        record = iteration.to_dict()

        def _apply(state: ProjectState) -> None:
            state.consensus_history.append(record)

        return self.mutate(_apply)

    def pause_project(self, reason: str) -> ProjectState:
        logger.warning("Pausing project: %s", reason)
        return self.set_status("paused", error=reason)

    def fail_project(self, error: str) -> ProjectState:
        logger.error("Project failed: %s", error)
        return self.set_status("failed", error=error)

    def complete_project(self) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state.phase = "complete"
            state.status = "complete"
            state.error = None
            state.current_milestone = None
            state.current_task = None

        return self.mutate(_apply, _allow_completion=True)

    def get_progress(self) -> ProjectProgress:
        return compute_progress(self.load())

    def verify_project_completion(self) -> CompletionVerification:
        state = self.load()
        progress = compute_progress(state)
        if progress.total_tasks == 0:
            return CompletionVerification(
                is_complete=False,
                progress=progress,
                reason="No tasks defined in the project",
            )
        incomplete = [
            f"{milestone.name} / {task.name} ({task.status})"
            for milestone in state.milestones
            for task in milestone.tasks
            if task.status != "complete"
        ]
        unapproved = [
            f"{milestone.name} (completion not approved)"
            for milestone in state.milestones
            if not milestone.completion_approved
        ]
        if incomplete:
            return CompletionVerification(
                is_complete=False,
                progress=progress,
                reason=f"{len(incomplete)} tasks remaining",
                incomplete_items=incomplete,
            )
        if unapproved:
            return CompletionVerification(
                is_complete=False,
                progress=progress,
                reason=f"{len(unapproved)} milestones lack an approved completion review",
                incomplete_items=unapproved,
            )
        return CompletionVerification(is_complete=True, progress=progress)

    def reset_incomplete_project(self) -> ProjectState:
        """Put a drifted or failed project back into a resumable state."""
        verification = self.verify_project_completion()
        if verification.is_complete and self.load().is_complete:
            return self.load()

        def _apply(state: ProjectState) -> None:
            for milestone in state.milestones:
                for task in milestone.tasks:
                    if task.status == "failed":
                        task.status = "pending"
                        task.error = None
                milestone.status = _recomputed_milestone_status(milestone)
                if milestone.status != "complete":
                    milestone.completion_approved = False
            progress = compute_progress(state)
            if progress.total_tasks == 0:
                state.phase, state.status = "plan", "pending"
            elif progress.completed_tasks > 0:
                state.phase, state.status = "execution", "in-progress"
            else:
                state.phase, state.status = "execution", "pending"
            state.error = None

        return self.mutate(_apply)
