from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from quorum.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendRateLimitError,
    rate_limit_message,
    render_prompt,
)
from quorum.backends.codex import CodexBackend


class OpenAISDKBackend(AgentBackend):
    """Responses API backend with automatic fallback to the Codex CLI."""

    def __init__(
        self,
        *,
        model: str = "gpt-5",
        working_directory: Path | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.cli_fallback = CodexBackend(working_directory=working_directory)
        self._client: Any | None = None
        try:
            from openai import OpenAI

            self._client = OpenAI()
        except Exception:
            self._client = None

    @property
    def sdk_available(self) -> bool:
        return self._client is not None

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    def _request_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            options["max_output_tokens"] = self.max_output_tokens
        return options

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        if self._client is None:
            async for chunk in self.cli_fallback.execute(system_prompt, user_prompt, context, tools):
                yield chunk
            return

        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        prompt = render_prompt(user_prompt, context, tools)
        client = self._client

        def _request() -> Any:
            return client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                **self._request_options(),
            )

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            limited = rate_limit_message(str(exc))
            if limited or getattr(exc, "status_code", None) == 429:
                raise BackendRateLimitError(
                    limited or str(exc), backend="openai", exit_code=429
                ) from exc
            raise BackendExecutionError(
                f"OpenAI SDK execution failed: {exc}",
                backend="openai",
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
