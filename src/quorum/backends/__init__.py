from quorum.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendRateLimitError,
    BackendTimeoutError,
)
from quorum.backends.claude import ClaudeCodeBackend
from quorum.backends.codex import CodexBackend
from quorum.backends.openai_sdk import OpenAISDKBackend
from quorum.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendRateLimitError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "OpenAISDKBackend",
    "ResilientBackend",
    "RetryPolicy",
]
