from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from quorum.agents.base import Agent
from quorum.backends.base import BackendExecutionError, BackendRateLimitError
from quorum.models import GenerationResult, Plan, TestResult

logger = logging.getLogger(__name__)


class GenerationAgent(Agent):
    """Plans, revises and implements code against the project working tree."""

    role = "generator"
    prompt_file = "generator.md"
    fallback_prompt = """
You are the code generator of an autonomous build pipeline.
Produce complete, working code and precise, actionable plans.
Never leave placeholders or TODO stubs in generated code.
""".strip()

    async def execute(
        self,
        prompt: str,
        context: dict[str, Any] | None = None,
        cwd: Path | None = None,
    ) -> GenerationResult:
        run_context = dict(context or {})
        if cwd is not None:
            run_context["_working_directory"] = str(cwd)
        try:
            response = await self.run(prompt, run_context)
        except BackendRateLimitError as exc:
            logger.warning("Generation backend rate limited: %s", exc.rate_limit_message)
            return GenerationResult(
                success=False,
                error=f"Rate limit: {exc.rate_limit_message}",
                rate_limit_paused=True,
                rate_limit_message=exc.rate_limit_message,
            )
        except BackendExecutionError as exc:
            logger.warning("Generation backend failed: %s", exc)
            return GenerationResult(success=False, error=str(exc))
        if not response.content:
            return GenerationResult(success=False, error="Generation backend returned no output.")
        return GenerationResult(success=True, response=response.content)

    async def create_plan(
        self,
        subject: str,
        description: str,
        context: str,
        cwd: Path | None = None,
    ) -> GenerationResult:
        prompt = (
            f"Create a detailed implementation plan for: {subject}\n\n"
            f"Description:\n{description or subject}\n\n"
            f"Project context:\n{context}\n\n"
            "Structure the plan in markdown with these sections: Overview, Files to create "
            "or modify, Implementation steps (numbered), Testing approach, Risks. "
            "Return only the plan; do not write any files yet."
        )
        return await self.execute(prompt, {"phase": "planning"}, cwd)

    async def revise_plan(
        self,
        plan: Plan,
        analysis: str,
        concerns: list[str],
        cwd: Path | None = None,
    ) -> GenerationResult:
        concern_lines = "\n".join(f"- {concern}" for concern in concerns) or "- (none listed)"
        prompt = (
            "Revise the plan below so that it addresses every reviewer concern. "
            "Keep what already works, change what the feedback asks for, and return the "
            "complete revised plan in markdown (not a diff).\n\n"
            f"CURRENT PLAN (revision {plan.revision}):\n{plan.content}\n\n"
            f"REVIEWER ANALYSIS:\n{analysis or '(no analysis provided)'}\n\n"
            f"CONCERNS TO ADDRESS:\n{concern_lines}"
        )
        return await self.execute(prompt, {"phase": "revision"}, cwd)

    async def implement(self, plan: str, context: str, cwd: Path) -> GenerationResult:
        prompt = (
            "Implement the approved plan below in the current working directory. "
            "Create or modify every file it names, write tests alongside the code, and "
            "finish with a short summary of the files you changed.\n\n"
            f"PROJECT CONTEXT:\n{context}\n\nAPPROVED PLAN:\n{plan}"
        )
        return await self.execute(prompt, {"phase": "implementation"}, cwd)

    async def apply_test_fix(
        self,
        fix_plan: str,
        test_result: TestResult,
        cwd: Path,
    ) -> GenerationResult:
        failing = "\n".join(f"- {name}" for name in test_result.failed_tests[:20]) or "- (unknown)"
        prompt = (
            "Tests are failing. Apply the approved fix plan below.\n"
            "Do NOT modify the tests unless they are themselves incorrect.\n\n"
            f"FAILING TESTS:\n{failing}\n\n"
            f"TEST OUTPUT (tail):\n{test_result.output[-4000:]}\n\n"
            f"APPROVED FIX PLAN:\n{fix_plan}"
        )
        return await self.execute(prompt, {"phase": "test-fix"}, cwd)

    async def fix_build_errors(self, errors: str, cwd: Path) -> GenerationResult:
        prompt = (
            "The project build fails with the errors below. Fix the root causes with the "
            "smallest correct change; do not silence errors with casts or ignores.\n\n"
            f"BUILD OUTPUT (tail):\n{errors[-6000:]}"
        )
        return await self.execute(prompt, {"phase": "build-autofix"}, cwd)

    async def review_completion(self, summary: str, context: str, cwd: Path) -> GenerationResult:
        prompt = (
            "Review the completed milestone below against its plan. Inspect the working tree, "
            "then write a completion report in markdown with: Delivered scope, Gaps, "
            "Test evidence, and Follow-ups.\n\n"
            f"PROJECT CONTEXT:\n{context}\n\nMILESTONE SUMMARY:\n{summary}"
        )
        return await self.execute(prompt, {"phase": "completion-review"}, cwd)

    async def generate_readme(self, context: str, cwd: Path) -> GenerationResult:
        prompt = (
            "Write README.md for this project in the current working directory. Include a "
            "title, a short description, Setup/installation steps, Usage examples and how to "
            "run the tests. Base it on the actual code in the tree.\n\n"
            f"PROJECT CONTEXT:\n{context}"
        )
        return await self.execute(prompt, {"phase": "documentation"}, cwd)
