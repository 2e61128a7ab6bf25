"""Startup dispatch table from provider names to backend-bound agents."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from quorum.agents.arbitrator import ArbitratorAgent
from quorum.agents.generator import GenerationAgent
from quorum.agents.reviewer import ReviewerAgent
from quorum.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    OpenAISDKBackend,
    ResilientBackend,
    RetryPolicy,
)
from quorum.backends.resilient import BackendEventHook
from quorum.config import PROVIDER_NAMES, BackendName, QuorumConfig

BackendFactory = Callable[[QuorumConfig, Path], AgentBackend]


def _openai_backend(config: QuorumConfig, project_dir: Path) -> AgentBackend:
    return OpenAISDKBackend(
        model=config.consensus.reviewer_model or "gpt-5",
        working_directory=project_dir,
        temperature=config.consensus.temperature,
        max_output_tokens=config.consensus.max_tokens,
    )


def _codex_backend(config: QuorumConfig, project_dir: Path) -> AgentBackend:
    return CodexBackend(working_directory=project_dir)


def _claude_review_backend(config: QuorumConfig, project_dir: Path) -> AgentBackend:
    # Reviewers read the tree but never edit it.
    return ClaudeCodeBackend(working_directory=project_dir, permission_mode="plan")


REVIEW_BACKENDS: dict[str, BackendFactory] = {
    "openai": _openai_backend,
    "codex": _codex_backend,
    "claude": _claude_review_backend,
}


def _review_backend(name: str, config: QuorumConfig, project_dir: Path) -> AgentBackend:
    factory = REVIEW_BACKENDS.get(name)
    if factory is None:
        raise ValueError(
            f"Unsupported review provider '{name}'. Expected one of: {', '.join(PROVIDER_NAMES)}"
        )
    return factory(config, project_dir)


def build_reviewers(config: QuorumConfig, project_dir: Path) -> list[ReviewerAgent]:
    model = config.consensus.reviewer_model or None
    return [
        ReviewerAgent(_review_backend(name, config, project_dir), name=name, model=model)
        for name in config.consensus.reviewer_names()
    ]


def build_arbitrator(config: QuorumConfig, project_dir: Path) -> ArbitratorAgent | None:
    if not config.consensus.enable_arbitration:
        return None
    name = config.consensus.arbitrator
    return ArbitratorAgent(
        _review_backend(name, config, project_dir),
        name=name,
        model=config.consensus.arbitrator_model or None,
    )


def _generation_backend(name: BackendName, project_dir: Path) -> AgentBackend:
    if name == "codex":
        return CodexBackend(working_directory=project_dir)
    return ClaudeCodeBackend(working_directory=project_dir)


def build_generator(
    config: QuorumConfig,
    project_dir: Path,
    event_hook: BackendEventHook | None = None,
) -> GenerationAgent:
    timeout = float(config.backend.timeout_seconds)
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        # 0 leaves generation calls unbounded.
        timeout_seconds=max(5.0, timeout) if timeout > 0 else None,
    )
    backend = ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_generation_backend(config.backend.primary, project_dir),
        fallback_name=config.backend.fallback,
        fallback_backend=_generation_backend(config.backend.fallback, project_dir),
        retry_policy=policy,
        event_hook=event_hook,
    )
    return GenerationAgent(backend, model=config.backend.generator_model or None)
