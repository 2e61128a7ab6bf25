import asyncio
from pathlib import Path

from quorum.backends.base import BackendRateLimitError
from quorum.config import ConsensusConfig
from quorum.consensus import (
    ConsensusRunner,
    combine_reviews,
    extract_concerns,
    get_score_trend,
    summarize_consensus_process,
    validate_plan_structure,
)
from quorum.models import ArbitrationResult, GenerationResult, Plan, PlanScope, ReviewResult
from quorum.state import PlanStore

SCOPE = PlanScope(kind="task", milestone_id="1", task_id="1")


class ScriptedReviewer:
    def __init__(self, name: str, scores: list[float], clock: "FakeClock | None" = None) -> None:
        self.name = name
        self.scores = list(scores)
        self.clock = clock
        self.calls = 0
        self.seen_revisions: list[int] = []

    async def review(self, plan: Plan, context: str, config: ConsensusConfig) -> ReviewResult:
        self.calls += 1
        self.seen_revisions.append(plan.revision)
        if self.clock is not None:
            self.clock.now += 600
        score = self.scores.pop(0) if len(self.scores) > 1 else self.scores[0]
        return ReviewResult(
            score=score,
            analysis=f"{self.name} reviewed r{plan.revision}",
            concerns=[f"{self.name} concern"],
            recommendations=["add tests"],
            approved=score >= config.threshold,
            reviewer=self.name,
        )


class BrokenReviewer:
    name = "broken"

    async def review(self, plan: Plan, context: str, config: ConsensusConfig) -> ReviewResult:
        raise RuntimeError("reviewer crashed")


class FakeReviser:
    def __init__(self, *, rate_limited: bool = False) -> None:
        self.calls: list[tuple[int, list[str]]] = []
        self.rate_limited = rate_limited

    async def revise_plan(self, plan, analysis, concerns, cwd=None) -> GenerationResult:
        self.calls.append((plan.revision, list(concerns)))
        if self.rate_limited:
            return GenerationResult(
                success=False,
                error="Rate limit: too many requests",
                rate_limit_paused=True,
                rate_limit_message="too many requests",
            )
        return GenerationResult(success=True, response=f"# Plan\nrevised from r{plan.revision}")


class FakeArbitrator:
    name = "claude"

    def __init__(self, *, approved: bool, score: float, raises: Exception | None = None) -> None:
        self.approved = approved
        self.score = score
        self.raises = raises
        self.calls = 0

    async def arbitrate(self, plan, feedback, generator_feedback, iteration, scores):
        self.calls += 1
        if self.raises is not None:
            raise self.raises
        return ArbitrationResult(
            approved=self.approved,
            score=self.score,
            critical_concerns=["handle empty input"],
            suggested_changes=["validate arguments"],
            reasoning="needs one more pass",
        )


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _config(**overrides) -> ConsensusConfig:
    values = {"threshold": 95.0, "max_iterations": 5, "enable_arbitration": False}
    values.update(overrides)
    return ConsensusConfig(**values)


def _plan() -> Plan:
    return Plan(content="# Plan\n1. build it", scope=SCOPE)


def test_combine_reviews_averages_and_unions() -> None:
    reviews = [
        ReviewResult(score=90, analysis="a", concerns=["x", "y"], reviewer="openai"),
        ReviewResult(score=97, analysis="b", concerns=["y", "z"], reviewer="codex"),
    ]

    combined = combine_reviews(reviews, threshold=95)

    assert combined.score == 93.5
    assert combined.concerns == ["x", "y", "z"]
    assert combined.analysis == "[openai] a\n\n[codex] b"
    assert combined.reviewer == "openai+codex"
    assert combined.approved is False
    assert combine_reviews([], threshold=95).score == 0.0


def test_helpers() -> None:
    review = ReviewResult(score=80, analysis="", concerns=["c"], recommendations=["r"])

    assert extract_concerns(review) == ["c", "Consider: r"]
    assert get_score_trend([60, 62, 80, 85]) == "improving"
    assert get_score_trend([90, 88, 70, 72]) == "declining"
    assert get_score_trend([80]) == "stable"
    assert validate_plan_structure("") == ["Plan is empty"]
    assert "Plan has no headings or list steps" in validate_plan_structure("x" * 120)
    assert validate_plan_structure("# Plan\n" + "- step one\n" * 20) == []


def test_low_then_high_score_needs_one_revision(tmp_path: Path) -> None:
    reviewer = ScriptedReviewer("openai", [60, 97])
    reviser = FakeReviser()
    store = PlanStore(tmp_path)
    runner = ConsensusRunner([reviewer], reviser, _config(), plan_store=store)

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is True
    assert result.total_iterations == 2
    assert result.final_score == 97
    assert len(reviser.calls) == 1
    assert "Consider: add tests" in reviser.calls[0][1]
    assert result.final_plan.revision == 2
    assert reviewer.seen_revisions == [1, 2]
    assert store.load_metadata(SCOPE).status == "approved"
    assert store.load_session(SCOPE) is None


def test_first_round_approval_skips_revision() -> None:
    reviewers = [ScriptedReviewer("openai", [96]), ScriptedReviewer("codex", [98])]
    reviser = FakeReviser()
    runner = ConsensusRunner(reviewers, reviser, _config())

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is True
    assert result.final_score == 97
    assert result.total_iterations == 1
    assert reviser.calls == []


def test_failing_reviewer_is_excluded_from_the_round() -> None:
    runner = ConsensusRunner(
        [BrokenReviewer(), ScriptedReviewer("openai", [96])], FakeReviser(), _config()
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is True
    assert result.iterations[0].result.reviewer == "openai"


def test_best_plan_tracks_highest_score() -> None:
    runner = ConsensusRunner(
        [ScriptedReviewer("openai", [70, 90, 80])], FakeReviser(), _config(max_iterations=3)
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is False
    assert result.best_score == 90
    assert result.best_iteration == 2
    assert result.best_plan.revision == 2
    assert result.final_plan == result.best_plan
    assert result.final_score == 90
    assert result.error == "Consensus not reached after 3 iterations"
    assert "NOT APPROVED" in summarize_consensus_process(result)


def test_equal_score_does_not_replace_best() -> None:
    runner = ConsensusRunner(
        [ScriptedReviewer("openai", [80, 80])], FakeReviser(), _config(max_iterations=2)
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.best_iteration == 1
    assert result.best_plan.revision == 1


def test_zero_reviewers_never_approve() -> None:
    reviser = FakeReviser()
    runner = ConsensusRunner([], reviser, _config(max_iterations=2))

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is False
    assert result.final_score == 0.0
    assert result.total_iterations == 2
    assert len(reviser.calls) == 1


def test_stuck_review_is_arbitrated_and_accepted() -> None:
    arbitrator = FakeArbitrator(approved=True, score=91)
    runner = ConsensusRunner(
        [ScriptedReviewer("openai", [88, 89, 88])],
        FakeReviser(),
        _config(enable_arbitration=True, max_iterations=10),
        arbitrator=arbitrator,
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is True
    assert result.arbitrated is True
    assert result.total_iterations == 3
    assert result.final_score == 91
    assert result.final_plan.revision == 2
    assert arbitrator.calls == 1


def test_arbitration_is_bounded_by_attempts() -> None:
    arbitrator = FakeArbitrator(approved=False, score=70)
    reviser = FakeReviser()
    runner = ConsensusRunner(
        [ScriptedReviewer("openai", [88])],
        reviser,
        _config(enable_arbitration=True, max_iterations=10, max_arbitration_attempts=2),
        arbitrator=arbitrator,
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is False
    assert result.total_iterations == 10
    assert arbitrator.calls == 2
    arbitrated_concerns = [
        concerns for _, concerns in reviser.calls if "handle empty input" in concerns
    ]
    assert arbitrated_concerns == [["handle empty input", "validate arguments"]] * 2


def test_failing_arbitrator_accepts_best_plan_once_exhausted() -> None:
    arbitrator = FakeArbitrator(approved=False, score=0, raises=RuntimeError("crash"))
    runner = ConsensusRunner(
        [ScriptedReviewer("openai", [88])],
        FakeReviser(),
        _config(enable_arbitration=True, max_iterations=10, max_arbitration_attempts=2),
        arbitrator=arbitrator,
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is True
    assert result.arbitrated is True
    assert result.final_score == 88
    assert result.total_iterations == 4
    assert arbitrator.calls == 2


def test_arbitration_below_threshold_is_skipped() -> None:
    arbitrator = FakeArbitrator(approved=True, score=99)
    runner = ConsensusRunner(
        [ScriptedReviewer("openai", [70])],
        FakeReviser(),
        _config(enable_arbitration=True, max_iterations=4),
        arbitrator=arbitrator,
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is False
    assert arbitrator.calls == 0


def test_rate_limited_arbitration_pauses_and_refunds_attempt(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    arbitrator = FakeArbitrator(
        approved=True, score=95, raises=BackendRateLimitError("429 Too Many Requests")
    )
    runner = ConsensusRunner(
        [ScriptedReviewer("openai", [88])],
        FakeReviser(),
        _config(enable_arbitration=True, max_iterations=10),
        arbitrator=arbitrator,
        plan_store=store,
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.rate_limit_paused is True
    assert result.approved is False
    session = store.load_session(SCOPE)
    assert session is not None
    assert session["arbitration_attempts"] == 0
    assert len(session["iterations"]) == 3


def test_timeout_without_arbitration_uses_best_score() -> None:
    clock = FakeClock()
    runner = ConsensusRunner(
        [ScriptedReviewer("openai", [70], clock=clock)],
        FakeReviser(),
        _config(timeout_seconds=900, max_iterations=10),
        clock=clock,
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.timed_out is True
    assert result.approved is False
    assert result.total_iterations == 2


def test_timeout_escalates_to_arbitration() -> None:
    clock = FakeClock()
    arbitrator = FakeArbitrator(approved=False, score=82)
    runner = ConsensusRunner(
        [ScriptedReviewer("openai", [70], clock=clock)],
        FakeReviser(),
        _config(timeout_seconds=900, max_iterations=10, enable_arbitration=True),
        arbitrator=arbitrator,
        clock=clock,
    )

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.timed_out is True
    assert result.arbitrated is True
    assert result.approved is True
    assert result.final_score == 82
    assert arbitrator.calls == 1


def test_rate_limited_revision_resumes_without_re_review(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    reviewer = ScriptedReviewer("openai", [60, 97])

    paused = asyncio.run(
        ConsensusRunner(
            [reviewer], FakeReviser(rate_limited=True), _config(), plan_store=store
        ).run(_plan(), "context")
    )

    assert paused.rate_limit_paused is True
    assert reviewer.calls == 1
    assert store.load_session(SCOPE)["pending_revision"] is True

    runner = ConsensusRunner([reviewer], FakeReviser(), _config(), plan_store=store)
    checkpoint = runner.checkpoint_plan(SCOPE)
    assert checkpoint is not None
    resumed = asyncio.run(runner.run(checkpoint, "context"))

    assert resumed.approved is True
    assert reviewer.calls == 2
    assert resumed.total_iterations == 2
    assert [item.result.score for item in resumed.iterations] == [60, 97]
    assert store.load_session(SCOPE) is None


def test_failed_revision_falls_back_to_best_plan() -> None:
    class EmptyReviser(FakeReviser):
        async def revise_plan(self, plan, analysis, concerns, cwd=None) -> GenerationResult:
            self.calls.append((plan.revision, list(concerns)))
            return GenerationResult(success=False, error="backend down")

    reviewer = ScriptedReviewer("openai", [80, 97])
    runner = ConsensusRunner([reviewer], EmptyReviser(), _config())

    result = asyncio.run(runner.run(_plan(), "context"))

    assert result.approved is True
    assert reviewer.seen_revisions == [1, 1]
