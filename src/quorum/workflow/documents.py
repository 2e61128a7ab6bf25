"""Markdown records of plans, test runs and milestone reviews under ``docs/``."""

from __future__ import annotations

import re
from pathlib import Path

from quorum.models import ConsensusProcessResult, Milestone, Task, TestResult, _utcnow_iso

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def milestone_number(milestone_id: str) -> str:
    return _UNSAFE.sub("_", milestone_id.removeprefix("milestone-"))


def task_number(task_id: str) -> str:
    _, marker, suffix = task_id.partition("-task-")
    return _UNSAFE.sub("_", suffix if marker else task_id)


def task_plan_path(milestone: Milestone, task: Task) -> Path:
    name = f"milestone_{milestone_number(milestone.id)}_task_{task_number(task.id)}_plan.md"
    return Path("docs") / "tasks" / name


def task_tests_path(milestone: Milestone, task: Task) -> Path:
    name = f"milestone_{milestone_number(milestone.id)}_task_{task_number(task.id)}_tests.md"
    return Path("docs") / "tests" / name


def milestone_plan_path(milestone: Milestone) -> Path:
    return Path("docs") / f"milestone_{milestone_number(milestone.id)}_plan.md"


def milestone_completion_path(milestone: Milestone) -> Path:
    return Path("docs") / f"milestone_{milestone_number(milestone.id)}_complete.md"


def write_document(project_dir: Path, relative: Path, content: str) -> str:
    target = project_dir / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    return relative.as_posix()


def _history_table(result: ConsensusProcessResult) -> str:
    rows = [
        f"| {item.iteration} | {item.result.score:.1f}% | "
        f"{'; '.join(item.result.concerns[:2]) or 'None'} |"
        for item in result.iterations
    ]
    return "\n".join(
        ["| Iteration | Score | Key Feedback |", "|-----------|-------|--------------|", *rows]
    )


def _final_concerns(result: ConsensusProcessResult) -> list[str]:
    if not result.iterations:
        return []
    return result.iterations[-1].result.concerns


def render_task_plan(
    milestone: Milestone, task: Task, plan: str, result: ConsensusProcessResult
) -> str:
    lines = [
        f"# Task Plan: {task.name}",
        "",
        "## Metadata",
        f"- **Milestone**: {milestone.name}",
        f"- **Task ID**: {task.id}",
        f"- **Consensus Score**: {result.final_score:.1f}%",
        f"- **Iterations**: {result.total_iterations}",
        f"- **Status**: {'APPROVED' if result.approved else 'NOT APPROVED'}",
        f"- **Generated**: {_utcnow_iso()}",
        "",
        "## Task Description",
        task.description or task.name,
        "",
        "## Implementation Plan",
        plan,
    ]
    concerns = _final_concerns(result)
    if concerns:
        lines += ["", "## Notes from Review", *(f"- {concern}" for concern in concerns)]
    return "\n".join(lines) + "\n"


def render_test_results(milestone: Milestone, task: Task, result: TestResult) -> str:
    lines = [
        f"# Test Results: {task.name}",
        "",
        "## Summary",
        f"- **Status**: {'PASSED' if result.success else 'FAILED'}",
        f"- **Total Tests**: {result.total}",
        f"- **Passed**: {result.passed}",
        f"- **Failed**: {result.failed}",
        f"- **Execution Time**: {_utcnow_iso()}",
        "",
        "## Task Details",
        f"- **Milestone**: {milestone.name}",
        f"- **Task ID**: {task.id}",
        "",
        "## Test Output",
        "```",
        result.output[:5000],
        "```",
    ]
    if result.failed_tests:
        lines += ["", "## Failed Tests", *(f"- {name}" for name in result.failed_tests)]
    return "\n".join(lines) + "\n"


def render_milestone_plan(milestone: Milestone, plan: str, result: ConsensusProcessResult) -> str:
    lines = [
        f"# Milestone Plan: {milestone.name}",
        "",
        "## Metadata",
        f"- **Milestone ID**: {milestone.id}",
        f"- **Consensus Score**: {result.final_score:.1f}%",
        f"- **Iterations**: {result.total_iterations}",
        f"- **Status**: {'APPROVED' if result.approved else 'NOT APPROVED'}",
    ]
    if result.arbitrated:
        lines.append("- **Arbitrated**: Yes")
    lines += [
        f"- **Generated**: {_utcnow_iso()}",
        "",
        "## Milestone Description",
        milestone.description or milestone.name,
        "",
        "## Tasks",
        *(
            f"{index}. **{task.name}**: {task.description}"
            for index, task in enumerate(milestone.tasks, start=1)
        ),
        "",
        "## Implementation Plan",
        plan,
        "",
        "## Consensus History",
        _history_table(result),
    ]
    concerns = _final_concerns(result)
    if concerns:
        lines += ["", "## Remaining Notes", *(f"- {concern}" for concern in concerns)]
    return "\n".join(lines) + "\n"


def render_milestone_completion(
    milestone: Milestone, review: str, result: ConsensusProcessResult
) -> str:
    def _tests(task: Task) -> str:
        return "Passed" if task.tests_passed else "N/A"

    def _score(task: Task) -> str:
        return "N/A" if task.consensus_score is None else f"{task.consensus_score:.1f}%"

    lines = [
        f"# Milestone Completion: {milestone.name}",
        "",
        "## Metadata",
        f"- **Milestone ID**: {milestone.id}",
        f"- **Completion Score**: {result.final_score:.1f}%",
        f"- **Review Iterations**: {result.total_iterations}",
        f"- **Status**: {'COMPLETE' if result.approved else 'NEEDS REVIEW'}",
        f"- **Completed**: {_utcnow_iso()}",
        "",
        "## Task Summary",
        "| Task | Status | Tests | Consensus |",
        "|------|--------|-------|-----------|",
        *(
            f"| {task.name} | {task.status} | {_tests(task)} | {_score(task)} |"
            for task in milestone.tasks
        ),
        "",
        "## Completion Review",
        review,
        "",
        "## Final Assessment",
        "- **All Tasks Complete**: "
        + ("Yes" if all(task.status == "complete" for task in milestone.tasks) else "No"),
        "- **All Tests Passing**: "
        + ("Yes" if all(task.tests_passed is not False for task in milestone.tasks) else "No"),
        f"- **Milestone Approved**: {'Yes' if result.approved else 'No'}",
    ]
    return "\n".join(lines) + "\n"
