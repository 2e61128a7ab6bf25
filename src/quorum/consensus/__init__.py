from quorum.consensus.protocol import (
    ConsensusRunner,
    calculate_average_score,
    combine_reviews,
    extract_concerns,
    format_plan_for_review,
    get_score_trend,
    meets_threshold,
    summarize_consensus_process,
    validate_plan_structure,
)
from quorum.consensus.revision import PlanReviser, RevisionDriver, RevisionOutcome
from quorum.consensus.stuck import (
    Arbitration,
    ArbitrationOutcome,
    StuckThresholds,
    is_stuck,
    stuck_reason,
)

__all__ = [
    "Arbitration",
    "ArbitrationOutcome",
    "ConsensusRunner",
    "PlanReviser",
    "RevisionDriver",
    "RevisionOutcome",
    "StuckThresholds",
    "calculate_average_score",
    "combine_reviews",
    "extract_concerns",
    "format_plan_for_review",
    "get_score_trend",
    "is_stuck",
    "meets_threshold",
    "stuck_reason",
    "summarize_consensus_process",
    "validate_plan_structure",
]
