from __future__ import annotations

from typing import Protocol

from quorum.agents.base import Agent
from quorum.agents.parsing import extract_section, parse_list, parse_percentage
from quorum.config import ConsensusConfig
from quorum.models import Plan, ReviewResult

SCORE_PATTERNS = (
    r"CONSENSUS:\s*(\d+(?:\.\d+)?)\s*%",
    r"CONSENSUS\s*SCORE:\s*(\d+(?:\.\d+)?)\s*%",
    r"(\d+(?:\.\d+)?)\s*%\s*consensus",
    r"score[:\s]+(\d+(?:\.\d+)?)\s*%",
)


class ReviewerBackend(Protocol):
    name: str

    async def review(self, plan: Plan, context: str, config: ConsensusConfig) -> ReviewResult: ...


def parse_review(response: str, *, reviewer: str, threshold: float) -> ReviewResult:
    score = parse_percentage(response, *SCORE_PATTERNS)
    score = 0.0 if score is None else score
    return ReviewResult(
        score=score,
        analysis=extract_section(response, "ANALYSIS"),
        strengths=parse_list(extract_section(response, "STRENGTHS")),
        concerns=parse_list(extract_section(response, "CONCERNS")),
        recommendations=parse_list(extract_section(response, "RECOMMENDATIONS")),
        approved=score >= threshold,
        reviewer=reviewer,
        raw_response=response,
    )


class ReviewerAgent(Agent):
    role = "reviewer"
    prompt_file = "reviewer.md"
    fallback_prompt = """
You are a senior software architect reviewing development plans.
Judge completeness, correctness and feasibility; be specific and constructive.
""".strip()

    def build_prompt(self, plan: Plan, context: str) -> str:
        return (
            "Analyze the following plan for completeness, correctness, and feasibility.\n\n"
            f"PROJECT CONTEXT:\n{context}\n\n"
            f"PROPOSED PLAN (revision {plan.revision}):\n{plan.content}\n\n"
            "Respond with these sections:\n"
            "ANALYSIS: detailed review of the plan\n"
            "STRENGTHS: what works well (bullets)\n"
            "CONCERNS: issues or gaps (bullets)\n"
            "RECOMMENDATIONS: specific improvements (bullets)\n"
            "CONSENSUS: [X]% - your agreement that the plan is ready for execution\n"
            "  95-100%: ready; 80-94%: minor revisions; 60-79%: significant revisions; "
            "below 60%: major rework."
        )

    async def review(self, plan: Plan, context: str, config: ConsensusConfig) -> ReviewResult:
        response = await self.run(
            self.build_prompt(plan, context),
            {"phase": "review", "scope": plan.scope.key},
        )
        return parse_review(response.content, reviewer=self.name, threshold=config.threshold)
