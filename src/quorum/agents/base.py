from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from quorum.backends.base import AgentBackend


@dataclass(slots=True)
class AgentResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class Agent:
    role: str = "agent"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a senior software engineer."

    def __init__(
        self,
        backend: AgentBackend,
        *,
        name: str | None = None,
        model: str | None = None,
    ) -> None:
        self.backend = backend
        self.name = name or self.role
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("quorum.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    async def run(self, instruction: str, context: dict[str, Any]) -> AgentResponse:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        content = await self.backend.complete(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=run_context,
        )
        return AgentResponse(
            role=self.role,
            content=content,
            metadata={"agent": self.name, "model": self.model},
        )
