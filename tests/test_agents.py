import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from quorum.agents import ArbitratorAgent, GenerationAgent, ReviewerAgent
from quorum.agents.arbitrator import parse_arbitration
from quorum.agents.parsing import extract_section, parse_list
from quorum.agents.registry import build_arbitrator, build_generator, build_reviewers
from quorum.agents.reviewer import parse_review
from quorum.backends import ClaudeCodeBackend, ResilientBackend
from quorum.backends.base import AgentBackend, BackendExecutionError, BackendRateLimitError
from quorum.config import ConsensusConfig, QuorumConfig
from quorum.models import Plan, PlanScope

REVIEW_RESPONSE = """
ANALYSIS: The plan covers parsing and evaluation well.
STRENGTHS:
- Clear module boundaries
CONCERNS:
- Error handling for division by zero is missing
- No test covers integer overflow
RECOMMENDATIONS:
1. Add a dedicated error type
CONSENSUS: 87%
"""

ARBITRATION_RESPONSE = """
DECISION: REVISE
FINAL_SCORE: 84%
ANALYSIS: Reviewers disagree on error handling.
CRITICAL_CONCERNS:
- Missing input validation for the parser
MINOR_CONCERNS:
- None
SUGGESTED_CHANGES:
- Validate tokens before evaluation
REASONING: One defect remains.
"""


class CannedBackend(AgentBackend):
    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.prompts: list[str] = []
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, tools
        self.prompts.append(user_prompt)
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        yield self.text


def _plan() -> Plan:
    return Plan(content="# Plan\n1. parse\n2. evaluate", scope=PlanScope(kind="master"))


def test_parse_review_sections() -> None:
    review = parse_review(REVIEW_RESPONSE, reviewer="openai", threshold=95)

    assert review.score == 87
    assert review.approved is False
    assert review.analysis == "The plan covers parsing and evaluation well."
    assert review.strengths == ["Clear module boundaries"]
    assert review.concerns == [
        "Error handling for division by zero is missing",
        "No test covers integer overflow",
    ]
    assert review.recommendations == ["Add a dedicated error type"]
    assert review.reviewer == "openai"


def test_parse_review_score_variants() -> None:
    assert parse_review("Overall score: 91.5%", reviewer="x", threshold=90).score == 91.5
    assert parse_review("96% consensus from me", reviewer="x", threshold=95).approved is True
    assert parse_review("no number here", reviewer="x", threshold=95).score == 0.0
    assert parse_review("CONSENSUS: 140%", reviewer="x", threshold=95).score == 100.0


def test_parse_arbitration_decision_and_lists() -> None:
    result = parse_arbitration(ARBITRATION_RESPONSE)

    assert result.approved is False
    assert result.score == 84
    assert result.analysis == "Reviewers disagree on error handling."
    assert result.critical_concerns == ["Missing input validation for the parser"]
    assert result.minor_concerns == []
    assert result.suggested_changes == ["Validate tokens before evaluation"]
    assert result.reasoning == "One defect remains."


def test_parse_arbitration_without_decision_uses_score() -> None:
    assert parse_arbitration("FINAL_SCORE: 92").approved is True
    assert parse_arbitration("FINAL_SCORE: 85%").approved is False
    assert parse_arbitration("DECISION: **APPROVE**\nFINAL_SCORE: 70%").approved is True


def test_parse_list_formats() -> None:
    text = "\n".join(
        [
            "- bullet item",
            "2) numbered item",
            "**Caching**: add an LRU cache",
            "a plain sentence that is long enough",
            "short",
            "HEADER:",
        ]
    )

    assert parse_list(text) == [
        "bullet item",
        "numbered item",
        "Caching: add an LRU cache",
        "a plain sentence that is long enough",
    ]
    assert extract_section("nothing relevant", "ANALYSIS") == ""


def test_reviewer_agent_parses_backend_output() -> None:
    backend = CannedBackend(REVIEW_RESPONSE)
    agent = ReviewerAgent(backend, name="codex", model="gpt-5-mini")

    review = asyncio.run(agent.review(_plan(), "calculator project", ConsensusConfig()))

    assert review.reviewer == "codex"
    assert review.score == 87
    assert "calculator project" in backend.prompts[0]
    assert backend.contexts[0]["model"] == "gpt-5-mini"
    assert backend.contexts[0]["scope"] == "master"


def test_arbitrator_agent_includes_score_history() -> None:
    backend = CannedBackend(ARBITRATION_RESPONSE)
    agent = ArbitratorAgent(backend, name="claude")

    result = asyncio.run(agent.arbitrate(_plan(), "feedback", "summary", 3, [86.0, 87.0, 86.0]))

    assert result.score == 84
    assert "Iteration 2: 87%" in backend.prompts[0]


def test_generation_agent_reports_rate_limit() -> None:
    agent = GenerationAgent(CannedBackend(error=BackendRateLimitError("usage limit reached")))

    result = asyncio.run(agent.create_plan("Parser", "tokenize input", "context"))

    assert result.success is False
    assert result.rate_limit_paused is True
    assert result.rate_limit_message == "usage limit reached"
    assert result.error == "Rate limit: usage limit reached"


def test_generation_agent_failures_and_success(tmp_path: Path) -> None:
    failing = GenerationAgent(CannedBackend(error=BackendExecutionError("exit 1")))
    empty = GenerationAgent(CannedBackend(""))
    backend = CannedBackend("# Plan\n1. write code")
    working = GenerationAgent(backend)

    assert asyncio.run(failing.implement("plan", "ctx", tmp_path)).error == "exit 1"
    assert asyncio.run(empty.implement("plan", "ctx", tmp_path)).success is False
    result = asyncio.run(working.implement("plan", "ctx", tmp_path))
    assert result.success is True
    assert result.response == "# Plan\n1. write code"
    assert backend.prompts[0].startswith("Implement the approved plan")
    assert backend.contexts[0]["_working_directory"] == str(tmp_path)
    assert backend.contexts[0]["phase"] == "implementation"


def test_registry_builds_reviewers_and_arbitrator(tmp_path: Path) -> None:
    config = QuorumConfig.default()
    config.consensus.additional_reviewers = ["claude"]

    reviewers = build_reviewers(config, tmp_path)
    arbitrator = build_arbitrator(config, tmp_path)

    assert [reviewer.name for reviewer in reviewers] == ["openai", "claude"]
    assert isinstance(reviewers[1].backend, ClaudeCodeBackend)
    assert reviewers[1].backend.permission_mode == "plan"
    assert arbitrator is not None
    assert arbitrator.name == "claude"

    config.consensus.enable_arbitration = False
    assert build_arbitrator(config, tmp_path) is None


def test_registry_rejects_unknown_provider(tmp_path: Path) -> None:
    config = QuorumConfig.default()
    config.consensus.additional_reviewers = ["gemini"]

    with pytest.raises(ValueError, match="Unsupported review provider 'gemini'"):
        build_reviewers(config, tmp_path)


def test_registry_generator_is_resilient(tmp_path: Path) -> None:
    config = QuorumConfig.default()
    config.backend.generator_model = "opus"

    generator = build_generator(config, tmp_path)

    assert isinstance(generator.backend, ResilientBackend)
    assert generator.model == "opus"


def test_registry_zero_timeout_leaves_generation_unbounded(tmp_path: Path) -> None:
    config = QuorumConfig.default()
    config.backend.timeout_seconds = 0

    generator = build_generator(config, tmp_path)

    assert generator.backend.retry_policy.timeout_seconds is None
    config.backend.timeout_seconds = 1
    assert build_generator(config, tmp_path).backend.retry_policy.timeout_seconds == 5.0
