from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

Phase = Literal["plan", "execution", "complete"]
ProjectStatus = Literal["pending", "in-progress", "paused", "failed", "complete"]
WorkStatus = Literal["pending", "in-progress", "complete", "failed"]
PlanKind = Literal["master", "milestone", "task"]
PlanStatus = Literal["draft", "reviewing", "approved", "implemented"]
BuildStatus = Literal["passed", "failed", "skipped"]
TestStatus = Literal["passed", "failed", "no-tests"]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class PlanScope:
    kind: PlanKind
    milestone_id: str | None = None
    task_id: str | None = None
    variant: str | None = None

    @property
    def key(self) -> str:
        if self.kind == "master":
            parts = ["master"]
        elif self.kind == "milestone":
            parts = [f"milestone-{self.milestone_id}"]
        else:
            parts = [f"milestone-{self.milestone_id}", f"task-{self.task_id}"]
        if self.variant:
            parts.append(self.variant)
        return "-".join(parts)

    def with_variant(self, variant: str) -> PlanScope:
        return replace(self, variant=variant)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PlanScope:
        return cls(
            kind=payload.get("kind", "task"),
            milestone_id=payload.get("milestone_id"),
            task_id=payload.get("task_id"),
            variant=payload.get("variant"),
        )


@dataclass(frozen=True, slots=True)
class Plan:
    """One immutable revision of a plan under review."""

    content: str
    scope: PlanScope
    revision: int = 1
    score: float | None = None

    def revise(self, content: str) -> Plan:
        return Plan(content=content, scope=self.scope, revision=self.revision + 1)

    def with_score(self, score: float) -> Plan:
        return replace(self, score=score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "scope": self.scope.to_dict(),
            "revision": self.revision,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Plan:
        score = payload.get("score")
        return cls(
            content=str(payload.get("content", "")),
            scope=PlanScope.from_dict(payload.get("scope") or {}),
            revision=int(payload.get("revision", 1)),
            score=float(score) if score is not None else None,
        )


@dataclass(slots=True)
class ReviewResult:
    score: float
    analysis: str
    concerns: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    approved: bool = False
    reviewer: str = ""
    strengths: list[str] = field(default_factory=list)
    raw_response: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("raw_response")
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ReviewResult:
        return cls(
            score=float(payload.get("score", 0)),
            analysis=str(payload.get("analysis", "")),
            concerns=list(payload.get("concerns", [])),
            recommendations=list(payload.get("recommendations", [])),
            approved=bool(payload.get("approved", False)),
            reviewer=str(payload.get("reviewer", "")),
            strengths=list(payload.get("strengths", [])),
        )


@dataclass(slots=True)
class ConsensusIteration:
    iteration: int
    plan: Plan
    result: ReviewResult
    timestamp: str = field(default_factory=_utcnow_iso)
    reviews: list[ReviewResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "scope": self.plan.scope.key,
            "plan": self.plan.to_dict(),
            "result": self.result.to_dict(),
            "reviews": [review.to_dict() for review in self.reviews],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ConsensusIteration:
        return cls(
            iteration=int(payload.get("iteration", 0)),
            plan=Plan.from_dict(payload.get("plan") or {}),
            result=ReviewResult.from_dict(payload.get("result") or {}),
            timestamp=str(payload.get("timestamp") or _utcnow_iso()),
            reviews=[ReviewResult.from_dict(item) for item in payload.get("reviews", [])],
        )


@dataclass(slots=True)
class ArbitrationResult:
    approved: bool
    score: float
    critical_concerns: list[str] = field(default_factory=list)
    minor_concerns: list[str] = field(default_factory=list)
    suggested_changes: list[str] = field(default_factory=list)
    reasoning: str = ""
    subjective_concerns: list[str] = field(default_factory=list)
    analysis: str = ""
    raw_response: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("raw_response")
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ArbitrationResult:
        return cls(
            approved=bool(payload.get("approved", False)),
            score=float(payload.get("score", 0)),
            critical_concerns=list(payload.get("critical_concerns", [])),
            minor_concerns=list(payload.get("minor_concerns", [])),
            suggested_changes=list(payload.get("suggested_changes", [])),
            reasoning=str(payload.get("reasoning", "")),
            subjective_concerns=list(payload.get("subjective_concerns", [])),
            analysis=str(payload.get("analysis", "")),
        )


@dataclass(slots=True)
class ConsensusProcessResult:
    approved: bool
    final_plan: Plan
    final_score: float
    best_plan: Plan
    best_score: float
    best_iteration: int
    iterations: list[ConsensusIteration] = field(default_factory=list)
    arbitrated: bool = False
    timed_out: bool = False
    rate_limit_paused: bool = False
    arbitration_result: ArbitrationResult | None = None
    error: str | None = None

    @property
    def total_iterations(self) -> int:
        return len(self.iterations)

    @property
    def scores(self) -> list[float]:
        return [item.result.score for item in self.iterations]


@dataclass(slots=True)
class CorrectionRecord:
    id: str
    previous_score: float
    new_score: float | None
    concerns: list[str] = field(default_factory=list)
    changes: list[str] = field(default_factory=list)
    reviewer: str = ""
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Task:
    id: str
    name: str
    description: str = ""
    status: WorkStatus = "pending"
    test_plan: str | None = None
    error: str | None = None
    plan: str | None = None
    consensus_score: float | None = None
    consensus_iterations: int = 0
    consensus_approved: bool = False
    implementation_complete: bool = False
    tests_passed: bool | None = None
    plan_doc: str | None = None
    test_results_doc: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", payload["id"])),
            description=str(payload.get("description", "")),
            status=payload.get("status", "pending"),
            test_plan=payload.get("test_plan"),
            error=payload.get("error"),
            plan=payload.get("plan"),
            consensus_score=payload.get("consensus_score"),
            consensus_iterations=int(payload.get("consensus_iterations", 0)),
            consensus_approved=bool(payload.get("consensus_approved", False)),
            implementation_complete=bool(payload.get("implementation_complete", False)),
            tests_passed=payload.get("tests_passed"),
            plan_doc=payload.get("plan_doc"),
            test_results_doc=payload.get("test_results_doc"),
        )


@dataclass(slots=True)
class Milestone:
    id: str
    name: str
    description: str = ""
    tasks: list[Task] = field(default_factory=list)
    status: WorkStatus = "pending"
    completion_approved: bool = False
    plan: str | None = None
    plan_approved: bool = False
    consensus_score: float | None = None
    completion_score: float | None = None
    completion_review: str | None = None
    plan_doc: str | None = None
    completion_doc: str | None = None
    error: str | None = None

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tasks": [task.to_dict() for task in self.tasks],
            "status": self.status,
            "completion_approved": self.completion_approved,
            "plan": self.plan,
            "plan_approved": self.plan_approved,
            "consensus_score": self.consensus_score,
            "completion_score": self.completion_score,
            "completion_review": self.completion_review,
            "plan_doc": self.plan_doc,
            "completion_doc": self.completion_doc,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Milestone:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", payload["id"])),
            description=str(payload.get("description", "")),
            tasks=[Task.from_dict(item) for item in payload.get("tasks", [])],
            status=payload.get("status", "pending"),
            completion_approved=bool(payload.get("completion_approved", False)),
            plan=payload.get("plan"),
            plan_approved=bool(payload.get("plan_approved", False)),
            consensus_score=payload.get("consensus_score"),
            completion_score=payload.get("completion_score"),
            completion_review=payload.get("completion_review"),
            plan_doc=payload.get("plan_doc"),
            completion_doc=payload.get("completion_doc"),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class ProjectState:
    name: str
    idea: str = ""
    language: str = "python"
    phase: Phase = "plan"
    status: ProjectStatus = "pending"
    milestones: list[Milestone] = field(default_factory=list)
    consensus_history: list[dict[str, Any]] = field(default_factory=list)
    current_milestone: str | None = None
    current_task: str | None = None
    error: str | None = None
    specification: str = ""
    plan: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    @property
    def is_complete(self) -> bool:
        return self.phase == "complete" and self.status == "complete"

    def milestone(self, milestone_id: str) -> Milestone | None:
        for milestone in self.milestones:
            if milestone.id == milestone_id:
                return milestone
        return None

    def find_task(self, task_id: str) -> tuple[Milestone, Task] | None:
        for milestone in self.milestones:
            task = milestone.task(task_id)
            if task is not None:
                return milestone, task
        return None

    def all_tasks(self) -> list[Task]:
        return [task for milestone in self.milestones for task in milestone.tasks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "idea": self.idea,
            "language": self.language,
            "phase": self.phase,
            "status": self.status,
            "milestones": [milestone.to_dict() for milestone in self.milestones],
            "consensus_history": list(self.consensus_history),
            "current_milestone": self.current_milestone,
            "current_task": self.current_task,
            "error": self.error,
            "specification": self.specification,
            "plan": self.plan,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProjectState:
        return cls(
            name=str(payload.get("name", "project")),
            idea=str(payload.get("idea", "")),
            language=str(payload.get("language", "python")),
            phase=payload.get("phase", "plan"),
            status=payload.get("status", "pending"),
            milestones=[Milestone.from_dict(item) for item in payload.get("milestones", [])],
            consensus_history=list(payload.get("consensus_history", [])),
            current_milestone=payload.get("current_milestone"),
            current_task=payload.get("current_task"),
            error=payload.get("error"),
            specification=str(payload.get("specification", "")),
            plan=payload.get("plan"),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            updated_at=str(payload.get("updated_at") or _utcnow_iso()),
        )


@dataclass(slots=True)
class GenerationResult:
    success: bool
    response: str = ""
    error: str | None = None
    rate_limit_paused: bool = False
    rate_limit_message: str | None = None


@dataclass(slots=True)
class TestResult:
    __test__ = False

    success: bool
    passed: int = 0
    failed: int = 0
    total: int = 0
    output: str = ""
    failed_tests: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class BuildResult:
    success: bool
    output: str = ""
    auto_fixed: bool = False
    command: str = ""
    rate_limit_paused: bool = False
    attempts: int = 0


@dataclass(slots=True)
class CodeQualityResult:
    passed: bool
    total_source_files: int = 0
    total_lines_of_code: int = 0
    has_main_entry_point: bool = False
    has_tests: bool = False
    test_file_count: int = 0
    warnings: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskResult:
    success: bool
    task: Task
    error: str | None = None
    rate_limit_paused: bool = False
    consensus: ConsensusProcessResult | None = None
    test_result: TestResult | None = None


@dataclass(slots=True)
class MilestoneResult:
    success: bool
    milestone: Milestone
    completed_tasks: int = 0
    failed_tasks: int = 0
    error: str | None = None
    rate_limit_paused: bool = False


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    state: ProjectState | None
    completed_tasks: int = 0
    failed_tasks: int = 0
    error: str | None = None
    rate_limit_paused: bool = False
    build_status: BuildStatus | None = None
    test_status: TestStatus | None = None
