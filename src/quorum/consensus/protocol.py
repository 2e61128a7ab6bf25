"""Plan -> review -> revise consensus rounds with stuck detection and arbitration."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from quorum.agents.arbitrator import ArbitratorBackend
from quorum.agents.reviewer import ReviewerBackend
from quorum.config import ConsensusConfig
from quorum.consensus.revision import PlanReviser, RevisionDriver
from quorum.consensus.stuck import Arbitration
from quorum.logging_config import ProgressCallback, report_progress
from quorum.models import (
    ArbitrationResult,
    ConsensusIteration,
    ConsensusProcessResult,
    Plan,
    PlanScope,
    ReviewResult,
)
from quorum.state.plans import PlanStore
from quorum.state.project import ProjectStateStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def _dedupe(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for item in items:
        key = item.strip()
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(key)
    return unique


def meets_threshold(score: float, threshold: float) -> bool:
    return score >= threshold


def combine_reviews(reviews: Sequence[ReviewResult], threshold: float) -> ReviewResult:
    """Merge one round of reviewer results into a single round-level result."""
    if not reviews:
        return ReviewResult(
            score=0.0,
            analysis="No reviewer returned a usable review this round.",
            approved=False,
            reviewer="combined",
        )
    score = sum(review.score for review in reviews) / len(reviews)
    return ReviewResult(
        score=score,
        analysis="\n\n".join(f"[{review.reviewer}] {review.analysis}" for review in reviews),
        concerns=_dedupe(concern for review in reviews for concern in review.concerns),
        recommendations=_dedupe(item for review in reviews for item in review.recommendations),
        strengths=_dedupe(item for review in reviews for item in review.strengths),
        approved=meets_threshold(score, threshold),
        reviewer="+".join(review.reviewer for review in reviews),
    )


def extract_concerns(review: ReviewResult) -> list[str]:
    return [*review.concerns, *(f"Consider: {item}" for item in review.recommendations)]


def calculate_average_score(iterations: Sequence[ConsensusIteration]) -> float:
    if not iterations:
        return 0.0
    return sum(item.result.score for item in iterations) / len(iterations)


def get_score_trend(scores: Sequence[float]) -> str:
    if len(scores) < 2:
        return "stable"
    middle = len(scores) // 2
    first, second = scores[:middle], scores[middle:]
    delta = sum(second) / len(second) - sum(first) / len(first)
    if delta > 5:
        return "improving"
    if delta < -5:
        return "declining"
    return "stable"


def format_plan_for_review(plan: Plan, context: str) -> str:
    return (
        f"## Context\n\n{context.strip() or '(none)'}\n\n"
        f"## Plan ({plan.scope.key}, revision {plan.revision})\n\n{plan.content.strip()}\n"
    )


_HEADING = re.compile(r"^\s*#{1,6}\s+\S", re.MULTILINE)
_STEP = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+\S", re.MULTILINE)


def validate_plan_structure(content: str, *, min_length: int = 100) -> list[str]:
    problems: list[str] = []
    text = content.strip()
    if not text:
        return ["Plan is empty"]
    if len(text) < min_length:
        problems.append(f"Plan is too short ({len(text)} characters, expected {min_length}+)")
    if not _HEADING.search(text) and not _STEP.search(text):
        problems.append("Plan has no headings or list steps")
    return problems


def summarize_iterations(iterations: Sequence[ConsensusIteration]) -> str:
    lines = [
        f"Iteration {item.iteration} (r{item.plan.revision}): {item.result.score:.1f}% "
        f"- {len(item.result.concerns)} concerns"
        for item in iterations
    ]
    return "\n".join(lines) or "No review rounds completed."


def summarize_consensus_process(result: ConsensusProcessResult) -> str:
    outcome = "APPROVED" if result.approved else "NOT APPROVED"
    flags = [
        name
        for name, active in (
            ("arbitrated", result.arbitrated),
            ("timed out", result.timed_out),
            ("rate limit paused", result.rate_limit_paused),
        )
        if active
    ]
    lines = [
        f"Consensus {outcome} after {result.total_iterations} iterations"
        + (f" ({', '.join(flags)})" if flags else ""),
        f"Final score: {result.final_score:.1f}%",
        f"Best score: {result.best_score:.1f}% (iteration {result.best_iteration})",
        f"Average score: {calculate_average_score(result.iterations):.1f}%",
        f"Trend: {get_score_trend(result.scores)}",
    ]
    if result.error:
        lines.append(f"Error: {result.error}")
    lines.append(summarize_iterations(result.iterations))
    return "\n".join(lines)


@dataclass(slots=True)
class _RunState:
    """Everything a consensus run needs to continue after an interruption."""

    current_plan: Plan
    iterations: list[ConsensusIteration] = field(default_factory=list)
    window: list[float] = field(default_factory=list)
    best_iteration: int = 0
    arbitration_attempts: int = 0
    last_analysis: str = ""
    elapsed_seconds: float = 0.0
    pending_revision: bool = False

    @property
    def best(self) -> ConsensusIteration | None:
        if self.best_iteration == 0:
            return None
        return self.iterations[self.best_iteration - 1]

    @property
    def best_plan(self) -> Plan:
        best = self.best
        return best.plan if best is not None else self.current_plan

    @property
    def best_score(self) -> float:
        best = self.best
        return best.result.score if best is not None else 0.0

    def record(self, iteration: ConsensusIteration) -> None:
        self.iterations.append(iteration)
        self.window.append(iteration.result.score)
        if self.best is None or iteration.result.score > self.best_score:
            self.best_iteration = iteration.iteration

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_plan": self.current_plan.to_dict(),
            "iterations": [item.to_dict() for item in self.iterations],
            "window": list(self.window),
            "best_iteration": self.best_iteration,
            "arbitration_attempts": self.arbitration_attempts,
            "last_analysis": self.last_analysis,
            "elapsed_seconds": self.elapsed_seconds,
            "pending_revision": self.pending_revision,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> _RunState:
        return cls(
            current_plan=Plan.from_dict(payload["current_plan"]),
            iterations=[
                ConsensusIteration.from_dict(item) for item in payload.get("iterations", [])
            ],
            window=[float(score) for score in payload.get("window", [])],
            best_iteration=int(payload.get("best_iteration", 0)),
            arbitration_attempts=int(payload.get("arbitration_attempts", 0)),
            last_analysis=str(payload.get("last_analysis", "")),
            elapsed_seconds=float(payload.get("elapsed_seconds", 0.0)),
            pending_revision=bool(payload.get("pending_revision", False)),
        )


class ConsensusRunner:
    """Drives one plan through review rounds until it is accepted or a budget runs out.

    Reviewers run concurrently inside a round; every other step is sequential.
    Each completed round is checkpointed to the plan store so that a run
    interrupted by a crash or a rate limit resumes at the next unreviewed round.
    """

    def __init__(
        self,
        reviewers: Sequence[ReviewerBackend],
        reviser: PlanReviser,
        config: ConsensusConfig,
        *,
        arbitrator: ArbitratorBackend | None = None,
        plan_store: PlanStore | None = None,
        project_store: ProjectStateStore | None = None,
        cwd: Path | None = None,
        on_progress: ProgressCallback | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.reviewers = list(reviewers)
        self.config = config
        self.arbitrator = arbitrator
        self.plan_store = plan_store
        self.project_store = project_store
        self.on_progress = on_progress
        self.clock = clock
        self.revisions = RevisionDriver(
            reviser, plan_store=plan_store, cwd=cwd, on_progress=on_progress
        )

    def checkpoint_plan(self, scope: PlanScope) -> Plan | None:
        """Return the plan an interrupted run for ``scope`` was working on, if any."""
        if self.plan_store is None:
            return None
        session = self.plan_store.load_session(scope)
        if session is None:
            return None
        return Plan.from_dict(session["current_plan"])

    def _restore(self, plan: Plan) -> _RunState:
        if self.plan_store is not None:
            session = self.plan_store.load_session(plan.scope)
            if session is not None:
                state = _RunState.from_dict(session)
                report_progress(
                    self.on_progress,
                    "consensus",
                    f"Resuming {plan.scope.key} after {len(state.iterations)} completed rounds",
                )
                return state
        return _RunState(current_plan=plan)

    def _checkpoint(self, state: _RunState, started: float) -> None:
        if self.plan_store is None:
            return
        payload = state.to_dict()
        payload["elapsed_seconds"] = state.elapsed_seconds + (self.clock() - started)
        self.plan_store.save_session(state.current_plan.scope, payload)

    async def _review_one(
        self,
        reviewer: ReviewerBackend,
        plan: Plan,
        context: str,
        semaphore: asyncio.Semaphore,
    ) -> ReviewResult | None:
        async with semaphore:
            try:
                review = await reviewer.review(plan, context, self.config)
            except Exception as exc:
                logger.warning("Reviewer %s failed: %s", reviewer.name, exc)
                report_progress(
                    self.on_progress, "review", f"Reviewer {reviewer.name} failed: {exc}"
                )
                return None
        if not review.reviewer:
            review.reviewer = reviewer.name
        report_progress(
            self.on_progress, "review", f"{review.reviewer} scored {review.score:g}%"
        )
        return review

    async def collect_reviews(self, plan: Plan, context: str) -> list[ReviewResult]:
        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_reviews))
        results = await asyncio.gather(
            *(self._review_one(reviewer, plan, context, semaphore) for reviewer in self.reviewers)
        )
        return [review for review in results if review is not None]

    def _finish(
        self,
        state: _RunState,
        *,
        approved: bool,
        final_plan: Plan,
        final_score: float,
        arbitrated: bool = False,
        timed_out: bool = False,
        arbitration_result: ArbitrationResult | None = None,
        error: str | None = None,
    ) -> ConsensusProcessResult:
        scope = final_plan.scope
        if self.plan_store is not None:
            if approved:
                self.plan_store.save_plan(scope, final_plan, score=final_score, status="approved")
                self.plan_store.update_status(scope, "approved")
            else:
                self.plan_store.update_status(scope, "reviewing")
            self.plan_store.clear_session(scope)
        result = ConsensusProcessResult(
            approved=approved,
            final_plan=final_plan,
            final_score=final_score,
            best_plan=state.best_plan,
            best_score=state.best_score,
            best_iteration=state.best_iteration,
            iterations=list(state.iterations),
            arbitrated=arbitrated,
            timed_out=timed_out,
            arbitration_result=arbitration_result,
            error=error,
        )
        report_progress(
            self.on_progress,
            "consensus",
            f"{scope.key}: {'approved' if approved else 'not approved'} at "
            f"{final_score:.1f}% after {result.total_iterations} rounds",
        )
        return result

    def _paused(
        self, state: _RunState, started: float, error: str | None
    ) -> ConsensusProcessResult:
        self._checkpoint(state, started)
        report_progress(self.on_progress, "consensus", "Paused by rate limit; checkpoint kept")
        return ConsensusProcessResult(
            approved=False,
            final_plan=state.current_plan,
            final_score=state.best_score,
            best_plan=state.best_plan,
            best_score=state.best_score,
            best_iteration=state.best_iteration,
            iterations=list(state.iterations),
            rate_limit_paused=True,
            error=error,
        )

    async def _on_timeout(
        self,
        state: _RunState,
        arbitration: Arbitration,
        started: float,
    ) -> ConsensusProcessResult:
        report_progress(
            self.on_progress,
            "consensus",
            f"Wall-clock budget of {self.config.timeout_seconds:g}s exhausted",
        )
        if arbitration.enabled and not arbitration.exhausted and state.iterations:
            outcome = await arbitration.arbitrate(
                state.best_plan,
                state.last_analysis,
                summarize_iterations(state.iterations),
                len(state.iterations),
                [item.result.score for item in state.iterations],
            )
            state.arbitration_attempts = arbitration.attempts
            if outcome.rate_limit_paused:
                return self._paused(state, started, outcome.error)
            if outcome.result is not None:
                verdict = outcome.result
                return self._finish(
                    state,
                    approved=verdict.approved
                    or verdict.score >= self.config.arbitration_exhausted_score,
                    final_plan=state.best_plan,
                    final_score=verdict.score,
                    arbitrated=True,
                    timed_out=True,
                    arbitration_result=verdict,
                )
        return self._finish(
            state,
            approved=meets_threshold(state.best_score, self.config.arbitration_threshold),
            final_plan=state.best_plan,
            final_score=state.best_score,
            timed_out=True,
        )

    async def _advance(
        self,
        state: _RunState,
        arbitration: Arbitration,
        started: float,
    ) -> ConsensusProcessResult | None:
        """Arbitrate or revise after a rejected round; ``None`` means keep iterating."""
        last = state.iterations[-1]
        number = last.iteration
        combined = last.result
        final_round = number >= self.config.max_iterations

        if arbitration.should_arbitrate(state.best_score, state.window):
            outcome = await arbitration.arbitrate(
                state.best_plan,
                combined.analysis,
                summarize_iterations(state.iterations),
                number,
                [item.result.score for item in state.iterations],
            )
            state.arbitration_attempts = arbitration.attempts
            if outcome.rate_limit_paused:
                return self._paused(state, started, outcome.error)
            verdict = outcome.result
            if (
                verdict is None
                and arbitration.exhausted
                and meets_threshold(state.best_score, self.config.arbitration_threshold)
            ):
                report_progress(
                    self.on_progress,
                    "consensus",
                    f"Arbitration unavailable ({outcome.error}); accepting best plan at "
                    f"{state.best_score:g}%",
                )
                return self._finish(
                    state,
                    approved=True,
                    final_plan=state.best_plan,
                    final_score=state.best_score,
                    arbitrated=True,
                )
            if verdict is not None and outcome.accepted:
                return self._finish(
                    state,
                    approved=True,
                    final_plan=state.best_plan,
                    final_score=verdict.score,
                    arbitrated=True,
                    arbitration_result=verdict,
                )
            if verdict is not None:
                # Start a fresh stuck window so the next check cannot re-trigger at once.
                state.window = [verdict.score]
                if not final_round:
                    revision = await self.revisions.revise(
                        state.best_plan,
                        verdict.reasoning or verdict.analysis,
                        _dedupe([*verdict.critical_concerns, *verdict.suggested_changes]),
                        fallback=state.best_plan,
                        reviewer=arbitration.arbitrator.name if arbitration.arbitrator else "",
                    )
                    if revision.rate_limit_paused:
                        return self._paused(state, started, revision.error)
                    state.current_plan = revision.plan
                state.pending_revision = False
                self._checkpoint(state, started)
                return None

        if not final_round:
            revision = await self.revisions.revise(
                last.plan,
                combined.analysis,
                extract_concerns(combined),
                fallback=state.best_plan,
                reviewer=",".join(reviewer.name for reviewer in self.reviewers),
            )
            if revision.rate_limit_paused:
                return self._paused(state, started, revision.error)
            state.current_plan = revision.plan
        state.pending_revision = False
        self._checkpoint(state, started)
        return None

    async def run(self, plan: Plan, context: str) -> ConsensusProcessResult:
        state = self._restore(plan)
        started = self.clock()
        arbitration = Arbitration(
            self.arbitrator,
            self.config,
            attempts=state.arbitration_attempts,
            on_progress=self.on_progress,
        )
        scope = state.current_plan.scope

        if state.pending_revision and state.iterations:
            finished = await self._advance(state, arbitration, started)
            if finished is not None:
                return finished

        while len(state.iterations) < self.config.max_iterations:
            elapsed = state.elapsed_seconds + (self.clock() - started)
            if elapsed >= self.config.timeout_seconds:
                return await self._on_timeout(state, arbitration, started)

            number = len(state.iterations) + 1
            plan_under_review = state.current_plan
            report_progress(
                self.on_progress,
                "consensus",
                f"Round {number}/{self.config.max_iterations} for {scope.key} "
                f"(r{plan_under_review.revision}, {len(self.reviewers)} reviewers)",
            )
            if self.plan_store is not None:
                self.plan_store.clear_feedback(scope)
            reviews = await self.collect_reviews(plan_under_review, context)
            combined = combine_reviews(reviews, self.config.threshold)
            scored_plan = plan_under_review.with_score(combined.score)
            iteration = ConsensusIteration(
                iteration=number, plan=scored_plan, result=combined, reviews=reviews
            )
            state.record(iteration)
            state.current_plan = scored_plan
            state.last_analysis = combined.analysis
            if self.plan_store is not None:
                for review in reviews:
                    self.plan_store.save_feedback(scope, review)
                self.plan_store.save_plan(
                    scope, scored_plan, score=combined.score, status="reviewing"
                )
            if self.project_store is not None:
                self.project_store.append_consensus_iteration(iteration)
            report_progress(
                self.on_progress,
                "consensus",
                f"Round {number} combined score {combined.score:.1f}% "
                f"(threshold {self.config.threshold:g}%, best {state.best_score:.1f}%)",
            )

            if meets_threshold(combined.score, self.config.threshold):
                return self._finish(
                    state, approved=True, final_plan=scored_plan, final_score=combined.score
                )
            state.pending_revision = True
            self._checkpoint(state, started)
            finished = await self._advance(state, arbitration, started)
            if finished is not None:
                return finished

        report_progress(
            self.on_progress,
            "consensus",
            f"Reached {self.config.max_iterations} iterations without consensus",
        )
        return self._finish(
            state,
            approved=False,
            final_plan=state.best_plan,
            final_score=state.best_score,
            error=f"Consensus not reached after {self.config.max_iterations} iterations",
        )
