import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from quorum.backends import RetryPolicy
from quorum.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendRateLimitError,
    rate_limit_message,
    render_prompt,
)
from quorum.backends.claude import ClaudeCodeBackend
from quorum.backends.codex import CodexBackend
from quorum.backends.openai_sdk import OpenAISDKBackend
from quorum.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self) -> None:
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=True)
        yield ""  # pragma: no cover


class RateLimitedBackend(AgentBackend):
    def __init__(self) -> None:
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.calls += 1
        raise BackendRateLimitError("You've hit your limit", backend="fake")
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    def __init__(self) -> None:
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.calls += 1
        yield "ok"


def _resilient(primary: AgentBackend, fallback: AgentBackend, events: list) -> ResilientBackend:
    return ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="review plan",
        context={"phase": "review", "model": "gpt-5-codex", "_working_directory": "/tmp"},
        tools=["read"],
    )

    assert command[0:3] == ["codex", "exec", "--json"]
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert "review plan" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "_working_directory" not in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", {})

    assert command[0:2] == ["claude", "-p"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[command.index("--permission-mode") + 1] == "acceptEdits"
    assert "--append-system-prompt" in command


def test_render_prompt_hides_control_keys() -> None:
    prompt = render_prompt("do it", {"phase": "x", "model": "m", "_working_directory": "/p"}, None)

    assert '"phase": "x"' in prompt
    assert "model" not in prompt
    assert "_working_directory" not in prompt


def test_rate_limit_message_detection() -> None:
    assert rate_limit_message("error: 429 Too Many Requests") == "error: 429 Too Many Requests"
    assert rate_limit_message("usage limit exceeded for today") is not None
    assert rate_limit_message("Limit reached, try again at 5pm") is not None
    assert rate_limit_message("syntax error in line 4290") is None


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = _resilient(primary, SuccessBackend(), events)

    output = asyncio.run(backend.complete("system", "user", context={}))

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_does_not_retry_rate_limits() -> None:
    events: list[dict[str, Any]] = []
    primary = RateLimitedBackend()
    fallback = SuccessBackend()
    backend = _resilient(primary, fallback, events)

    with pytest.raises(BackendRateLimitError):
        asyncio.run(backend.complete("system", "user", context={}))

    assert primary.calls == 1
    assert fallback.calls == 0
    assert "backend_retry" not in [event["event"] for event in events]


def test_resilient_backend_raises_when_every_backend_fails() -> None:
    events: list[dict[str, Any]] = []
    backend = _resilient(AlwaysFailBackend(), AlwaysFailBackend(), events)

    with pytest.raises(BackendExecutionError):
        asyncio.run(backend.complete("system", "user", context={}))


def test_resilient_backend_without_call_timeout() -> None:
    primary = SuccessBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=None),
    )

    assert asyncio.run(backend.complete("system", "user", context={})) == "ok"
    assert primary.calls == 1


class _FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "_FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class _FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self.payload = payload

    async def read(self) -> bytes:
        return self.payload


class _FakeProcess:
    def __init__(self, lines: list[bytes], *, exit_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = _FakeStdout(lines)
        self.stderr = _FakeStderr(stderr)
        self.exit_code = exit_code

    async def wait(self) -> int:
        return self.exit_code


def test_codex_backend_emits_stream_telemetry(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> _FakeProcess:
        _ = args, kwargs
        return _FakeProcess(
            [
                b'{"type":"response.output_text.delta","content":"hello"}\n',
                b"noise-before-json\n",
                b'{"type":"response.completed"}\n',
            ]
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = CodexBackend(event_hook=events.append)

    output = asyncio.run(backend.complete("system", "user", context={}))

    assert output == "hello"
    event_names = [event.get("event") for event in events]
    assert "codex_cli_start" in event_names
    assert "codex_json_parse_fallback" in event_names
    assert "codex_cli_exit" in event_names


def test_claude_backend_raises_rate_limit_from_stderr(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> _FakeProcess:
        _ = args, kwargs
        return _FakeProcess([], exit_code=1, stderr=b"Error: rate limit exceeded, retry later")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = ClaudeCodeBackend()

    with pytest.raises(BackendRateLimitError) as excinfo:
        asyncio.run(backend.complete("system", "user", context={}))

    assert "rate limit exceeded" in excinfo.value.rate_limit_message
    assert excinfo.value.retriable is False


def test_claude_backend_skips_result_event(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> _FakeProcess:
        _ = args, kwargs
        return _FakeProcess(
            [
                b'{"type":"assistant","message":{"content":[{"type":"text","text":"plan"}]}}\n',
                b'{"type":"result","result":"plan"}\n',
            ]
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    output = asyncio.run(ClaudeCodeBackend().complete("system", "user", context={}))

    assert output == "plan"


def test_openai_sdk_uses_context_model(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    class FakeResponses:
        def create(self, **kwargs: Any) -> dict[str, Any]:
            captured.update(kwargs)
            return {"output_text": "CONSENSUS: 90%"}

    class FakeClient:
        def __init__(self) -> None:
            self.responses = FakeResponses()

    backend = OpenAISDKBackend(model="gpt-5", temperature=0.3, max_output_tokens=512)
    monkeypatch.setattr(backend, "_client", FakeClient())

    output = asyncio.run(backend.complete("system", "user", context={"model": "gpt-5-mini"}))

    assert output == "CONSENSUS: 90%"
    assert captured["model"] == "gpt-5-mini"
    assert captured["temperature"] == 0.3
    assert captured["max_output_tokens"] == 512
