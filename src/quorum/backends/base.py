from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

RATE_LIMIT_PATTERNS = (
    re.compile(r"you['’]ve hit your limit", re.IGNORECASE),
    re.compile(r"rate_limit_exceeded", re.IGNORECASE),
    re.compile(r"rate limit exceeded", re.IGNORECASE),
    re.compile(r"you have been rate limited", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"quota exceeded", re.IGNORECASE),
    re.compile(r"\b429\b"),
    re.compile(r"rate limited", re.IGNORECASE),
    re.compile(r"api rate limit", re.IGNORECASE),
    re.compile(r"request limit reached", re.IGNORECASE),
    re.compile(r"usage limit exceeded", re.IGNORECASE),
    re.compile(r"limit reached.*try again", re.IGNORECASE),
)


def rate_limit_message(text: str) -> str | None:
    """Return the matching line when ``text`` reports a rate limit."""
    for line in text.splitlines() or [text]:
        for pattern in RATE_LIMIT_PATTERNS:
            if pattern.search(line):
                return line.strip()[:300]
    return None


def render_prompt(user_prompt: str, context: dict[str, Any], tools: list[str] | None) -> str:
    # Keys starting with "_" and the model name steer the backend, not the agent.
    visible = {
        key: value for key, value in context.items() if not key.startswith("_") and key != "model"
    }
    parts = [user_prompt]
    if visible:
        parts.append("Context JSON:")
        parts.append(json.dumps(visible, ensure_ascii=False, indent=2, default=str))
    if tools:
        parts.append("Allowed tools:")
        parts.append(json.dumps(tools, ensure_ascii=False))
    return "\n\n".join(parts)


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class BackendRateLimitError(BackendExecutionError):
    """Raised when a backend reports throttling; callers pause instead of retrying."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, backend=backend, exit_code=exit_code, retriable=False)
        self.rate_limit_message = message


def raise_for_exit(backend: str, return_code: int, stderr_output: str) -> None:
    if return_code == 0:
        return
    limited = rate_limit_message(stderr_output)
    if limited:
        raise BackendRateLimitError(limited, backend=backend, exit_code=return_code)
    raise BackendExecutionError(
        f"{backend} backend failed with exit code {return_code}: {stderr_output}",
        backend=backend,
        exit_code=return_code,
        retriable=True,
    )


class AgentBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(system_prompt, user_prompt, context, tools):
            chunks.append(chunk)
        return "".join(chunks).strip()
