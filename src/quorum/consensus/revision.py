from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from quorum.logging_config import ProgressCallback, report_progress
from quorum.models import CorrectionRecord, GenerationResult, Plan
from quorum.state.plans import PlanStore

logger = logging.getLogger(__name__)


class PlanReviser(Protocol):
    async def revise_plan(
        self,
        plan: Plan,
        analysis: str,
        concerns: list[str],
        cwd: Path | None = None,
    ) -> GenerationResult: ...


@dataclass(slots=True)
class RevisionOutcome:
    plan: Plan
    revised: bool
    rate_limit_paused: bool = False
    error: str | None = None


class RevisionDriver:
    """Turns one round of combined feedback into exactly one revision request."""

    def __init__(
        self,
        reviser: PlanReviser,
        *,
        plan_store: PlanStore | None = None,
        cwd: Path | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.reviser = reviser
        self.plan_store = plan_store
        self.cwd = cwd
        self.on_progress = on_progress

    async def revise(
        self,
        plan: Plan,
        analysis: str,
        concerns: list[str],
        *,
        fallback: Plan,
        reviewer: str = "",
    ) -> RevisionOutcome:
        report_progress(
            self.on_progress,
            "revision",
            f"Requesting revision of plan r{plan.revision} ({len(concerns)} concerns)",
        )
        try:
            result = await self.reviser.revise_plan(plan, analysis, concerns, self.cwd)
        except Exception as exc:
            logger.exception("Plan revision raised")
            result = GenerationResult(success=False, error=str(exc))

        if result.rate_limit_paused:
            report_progress(
                self.on_progress, "revision", f"Revision paused by rate limit: {result.error}"
            )
            return RevisionOutcome(
                plan=fallback, revised=False, rate_limit_paused=True, error=result.error
            )
        if not result.success or not result.response.strip():
            error = result.error or "empty revision"
            report_progress(
                self.on_progress,
                "revision",
                f"Revision failed ({error}); continuing with best plan r{fallback.revision}",
            )
            return RevisionOutcome(plan=fallback, revised=False, error=error)

        revised = plan.revise(result.response.strip())
        if self.plan_store is not None:
            self.plan_store.record_correction(
                plan.scope,
                CorrectionRecord(
                    id=f"corr-{uuid4().hex[:8]}",
                    previous_score=plan.score if plan.score is not None else 0.0,
                    new_score=None,
                    concerns=list(concerns),
                    changes=[f"revision {plan.revision} -> {revised.revision}"],
                    reviewer=reviewer,
                ),
            )
        report_progress(self.on_progress, "revision", f"Revision r{revised.revision} applied")
        return RevisionOutcome(plan=revised, revised=True)
