from __future__ import annotations

import re
from typing import Protocol

from quorum.agents.base import Agent
from quorum.agents.parsing import extract_section, parse_list, parse_percentage, without_none
from quorum.models import ArbitrationResult, Plan


class ArbitratorBackend(Protocol):
    name: str

    async def arbitrate(
        self,
        plan: Plan,
        feedback: str,
        generator_feedback: str,
        iteration: int,
        scores: list[float],
    ) -> ArbitrationResult: ...


def parse_arbitration(response: str) -> ArbitrationResult:
    score = parse_percentage(response, r"FINAL_SCORE:\s*(\d+(?:\.\d+)?)\s*%?") or 0.0
    decision = re.search(r"DECISION:\s*\**\s*(APPROVE|REVISE)", response, re.IGNORECASE)
    approved = decision.group(1).upper() == "APPROVE" if decision else score >= 90
    return ArbitrationResult(
        approved=approved,
        score=score,
        analysis=extract_section(response, "ANALYSIS"),
        critical_concerns=without_none(parse_list(extract_section(response, "CRITICAL_CONCERNS"))),
        minor_concerns=without_none(parse_list(extract_section(response, "MINOR_CONCERNS"))),
        subjective_concerns=without_none(
            parse_list(extract_section(response, "SUBJECTIVE_CONCERNS"))
        ),
        reasoning=extract_section(response, "REASONING"),
        suggested_changes=without_none(parse_list(extract_section(response, "SUGGESTED_CHANGES"))),
        raw_response=response,
    )


class ArbitratorAgent(Agent):
    role = "arbitrator"
    prompt_file = "arbitrator.md"
    fallback_prompt = """
You are an impartial arbitrator resolving a stalled review between a plan author and reviewers.
Separate critical defects from minor and subjective concerns and decide decisively.
""".strip()

    def build_prompt(
        self,
        plan: Plan,
        feedback: str,
        generator_feedback: str,
        iteration: int,
        scores: list[float],
    ) -> str:
        history = ", ".join(
            f"Iteration {index}: {score:g}%" for index, score in enumerate(scores, start=1)
        )
        return (
            f"The plan below has gone through {iteration} review iterations without reaching "
            f"consensus.\nScore history: {history or 'none'}\n\n"
            f"THE PLAN:\n{plan.content}\n\n"
            f"REVIEWERS' LATEST FEEDBACK:\n{feedback or '(none)'}\n\n"
            f"REVIEW PROCESS SUMMARY:\n{generator_feedback or '(none)'}\n\n"
            "Classify remaining concerns as CRITICAL (must fix before proceeding), MINOR "
            "(fix during implementation) or SUBJECTIVE (preference only), then decide.\n\n"
            "Respond in EXACTLY this format:\n"
            "ANALYSIS:\n...\n"
            "CRITICAL_CONCERNS:\n- ... (or None)\n"
            "MINOR_CONCERNS:\n- ...\n"
            "SUBJECTIVE_CONCERNS:\n- ...\n"
            "DECISION: APPROVE or REVISE\n"
            "FINAL_SCORE: [X]%\n"
            "REASONING:\n...\n"
            "SUGGESTED_CHANGES:\n- ... (or None - plan is acceptable)"
        )

    async def arbitrate(
        self,
        plan: Plan,
        feedback: str,
        generator_feedback: str,
        iteration: int,
        scores: list[float],
    ) -> ArbitrationResult:
        response = await self.run(
            self.build_prompt(plan, feedback, generator_feedback, iteration, scores),
            {"phase": "arbitration", "scope": plan.scope.key},
        )
        return parse_arbitration(response.content)
