from quorum.state.plans import PlanMetadata, PlanStore
from quorum.state.project import CompletionVerification, ProjectProgress, ProjectStateStore
from quorum.state.store import (
    CompletionInvariantError,
    JsonStateStore,
    ProjectNotFoundError,
    QuorumStateError,
)

__all__ = [
    "CompletionInvariantError",
    "CompletionVerification",
    "JsonStateStore",
    "PlanMetadata",
    "PlanStore",
    "ProjectNotFoundError",
    "ProjectProgress",
    "ProjectStateStore",
    "QuorumStateError",
]
