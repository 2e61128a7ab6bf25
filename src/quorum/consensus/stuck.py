"""Convergence checks over score history and the bounded arbitration step."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from quorum.agents.arbitrator import ArbitratorBackend
from quorum.backends.base import BackendRateLimitError
from quorum.config import ConsensusConfig
from quorum.logging_config import ProgressCallback, report_progress
from quorum.models import ArbitrationResult, Plan

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StuckThresholds:
    stagnation_range: float = 5.0
    oscillation_deviation: float = 3.0
    oscillation_range: float = 20.0
    oscillation_gain: float = 2.0

    @classmethod
    def from_config(cls, config: ConsensusConfig) -> StuckThresholds:
        return cls(
            stagnation_range=config.stagnation_range,
            oscillation_deviation=config.oscillation_deviation,
            oscillation_range=config.oscillation_range,
            oscillation_gain=config.oscillation_gain,
        )


DEFAULT_THRESHOLDS = StuckThresholds()


def stuck_reason(
    scores: Sequence[float],
    window_size: int,
    thresholds: StuckThresholds = DEFAULT_THRESHOLDS,
) -> str | None:
    """Return ``"stagnation"`` or ``"oscillation"`` when the window stops converging."""
    if window_size < 1 or len(scores) < window_size:
        return None
    recent = list(scores[-window_size:])
    spread = max(recent) - min(recent)
    if spread <= thresholds.stagnation_range:
        return "stagnation"
    if len(recent) >= 3:
        average = sum(recent) / len(recent)
        deviation = sum(abs(score - average) for score in recent) / len(recent)
        if (
            deviation > thresholds.oscillation_deviation
            and spread < thresholds.oscillation_range
            and recent[-1] <= recent[0] + thresholds.oscillation_gain
        ):
            return "oscillation"
    return None


def is_stuck(
    scores: Sequence[float],
    window_size: int,
    thresholds: StuckThresholds = DEFAULT_THRESHOLDS,
) -> bool:
    return stuck_reason(scores, window_size, thresholds) is not None


@dataclass(slots=True)
class ArbitrationOutcome:
    result: ArbitrationResult | None = None
    accepted: bool = False
    error: str | None = None
    rate_limit_paused: bool = False


class Arbitration:
    """Decides when to escalate to the arbitrator and whether to accept its verdict."""

    def __init__(
        self,
        arbitrator: ArbitratorBackend | None,
        config: ConsensusConfig,
        *,
        attempts: int = 0,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.arbitrator = arbitrator
        self.config = config
        self.attempts = attempts
        self.thresholds = StuckThresholds.from_config(config)
        self.on_progress = on_progress

    @property
    def enabled(self) -> bool:
        return self.config.enable_arbitration and self.arbitrator is not None

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.config.max_arbitration_attempts - self.attempts)

    @property
    def exhausted(self) -> bool:
        return self.attempts_remaining == 0

    def should_arbitrate(self, best_score: float, scores: Sequence[float]) -> bool:
        if not self.enabled or self.exhausted:
            return False
        if best_score < self.config.arbitration_threshold:
            return False
        reason = stuck_reason(scores, self.config.stuck_iterations, self.thresholds)
        if reason is None:
            return False
        report_progress(
            self.on_progress,
            "consensus",
            f"Review appears stuck ({reason}) over the last "
            f"{self.config.stuck_iterations} rounds",
        )
        return True

    def accepts(self, result: ArbitrationResult) -> bool:
        if result.approved or result.score >= self.config.arbitration_accept_score:
            return True
        return self.exhausted and result.score >= self.config.arbitration_exhausted_score

    async def arbitrate(
        self,
        plan: Plan,
        feedback: str,
        summary: str,
        iteration: int,
        scores: Sequence[float],
    ) -> ArbitrationOutcome:
        if self.arbitrator is None:
            return ArbitrationOutcome(error="No arbitrator configured.")
        self.attempts += 1
        report_progress(
            self.on_progress,
            "arbitration",
            f"Invoking arbitrator {self.arbitrator.name} "
            f"(attempt {self.attempts}/{self.config.max_arbitration_attempts})",
        )
        try:
            result = await self.arbitrator.arbitrate(
                plan, feedback, summary, iteration, list(scores)
            )
        except BackendRateLimitError as exc:
            # Rate limits do not consume an attempt.
            self.attempts -= 1
            report_progress(
                self.on_progress,
                "arbitration",
                f"Arbitrator rate limited: {exc.rate_limit_message}",
            )
            return ArbitrationOutcome(error=str(exc), rate_limit_paused=True)
        except Exception as exc:
            logger.exception("Arbitration attempt %d failed", self.attempts)
            report_progress(self.on_progress, "arbitration", f"Arbitration failed: {exc}")
            return ArbitrationOutcome(error=str(exc))

        accepted = self.accepts(result)
        decision = "accepted" if accepted else "revise"
        report_progress(
            self.on_progress,
            "arbitration",
            f"Arbitrator scored {result.score:g}% ({'APPROVE' if result.approved else 'REVISE'}); "
            f"verdict {decision}",
        )
        return ArbitrationOutcome(result=result, accepted=accepted)
