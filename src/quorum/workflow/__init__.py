from quorum.workflow.build_fix import (
    BuildFixLoop,
    BuildFixResult,
    FileExistenceReport,
    analyze_file_existence,
    classify_build_failure,
    parse_error_file_paths,
)
from quorum.workflow.execution import ExecutionStateMachine
from quorum.workflow.milestones import MilestoneOrchestrator
from quorum.workflow.tasks import TaskExecutor, build_task_context, build_test_fix_plan

__all__ = [
    "BuildFixLoop",
    "BuildFixResult",
    "ExecutionStateMachine",
    "FileExistenceReport",
    "MilestoneOrchestrator",
    "TaskExecutor",
    "analyze_file_existence",
    "build_task_context",
    "build_test_fix_plan",
    "classify_build_failure",
    "parse_error_file_paths",
]
