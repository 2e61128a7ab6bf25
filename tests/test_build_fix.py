import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from quorum.agents import GenerationAgent
from quorum.backends.base import AgentBackend, BackendRateLimitError
from quorum.config import ConsensusConfig
from quorum.consensus import ConsensusRunner
from quorum.models import BuildResult, GenerationResult, Plan, PlanScope, ReviewResult
from quorum.state import PlanStore
from quorum.verification import BuildRunner
from quorum.workflow import (
    BuildFixLoop,
    analyze_file_existence,
    classify_build_failure,
    parse_error_file_paths,
)
from quorum.workflow.build_fix import (
    BUILD_FIX_MILESTONE,
    REBUILD_FAILED_ERROR,
    FileExistenceReport,
    summarize_project_structure,
)

TSC_OUTPUT = """
\x1b[31msrc/app.ts(12,5): error TS2304: Cannot find name 'foo'.\x1b[0m
src/components/Button.tsx:4:10 - error TS2307: Cannot find module './styles'.
node_modules/@types/react/index.d.ts(3,1): error TS1005: ';' expected.
src/app.ts(20,1): error TS2304: Cannot find name 'bar'.
"""


class BuildFixBackend(AgentBackend):
    def __init__(self, *, rate_limit_plan: bool = False) -> None:
        self.rate_limit_plan = rate_limit_plan
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, context, tools
        self.prompts.append(user_prompt)
        if user_prompt.startswith("Analyze the following build errors"):
            if self.rate_limit_plan:
                raise BackendRateLimitError("usage limit reached")
            yield "# Build fix\n1. Create src/components/styles.ts"
            return
        yield "done"


class FixedScoreReviewer:
    name = "openai"

    def __init__(self, score: float) -> None:
        self.score = score

    async def review(self, plan: Plan, context: str, config: ConsensusConfig) -> ReviewResult:
        return ReviewResult(score=self.score, analysis="checked", reviewer=self.name)


class Reviser:
    async def revise_plan(self, plan, analysis, concerns, cwd=None):
        return GenerationResult(success=True, response=plan.content)


class ScriptedBuilder(BuildRunner):
    def __init__(self, outcomes: list[bool]) -> None:
        super().__init__(command="npm run build")
        self.outcomes = list(outcomes)

    async def run(self, cwd: Path, language) -> BuildResult:
        success = self.outcomes.pop(0) if self.outcomes else False
        return BuildResult(success=success, output="" if success else TSC_OUTPUT, command="b")


def _loop(
    tmp_path: Path,
    *,
    score: float = 97,
    builds: list[bool] | None = None,
    backend: BuildFixBackend | None = None,
) -> tuple[BuildFixLoop, BuildFixBackend, PlanStore]:
    backend = backend or BuildFixBackend()
    store = PlanStore(tmp_path)
    consensus = ConsensusRunner(
        [FixedScoreReviewer(score)],
        Reviser(),
        ConsensusConfig(max_iterations=2, enable_arbitration=False),
        plan_store=store,
    )
    loop = BuildFixLoop(
        GenerationAgent(backend),
        consensus,
        ScriptedBuilder(builds if builds is not None else [True]),
        tmp_path,
        "typescript",
        verify_attempts=1,
    )
    return loop, backend, store


def test_parse_error_file_paths_filters_and_dedupes() -> None:
    assert parse_error_file_paths(TSC_OUTPUT) == [
        "src/app.ts",
        "src/components/Button.tsx",
    ]
    assert parse_error_file_paths("ERROR in ./lib/util.ts(1,1): error TS1") == ["./lib/util.ts"]
    assert parse_error_file_paths("tmp/file.ts(1,1): error TS1") == []


def test_file_existence_classification(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.ts").write_text("export {}", encoding="utf-8")

    report = analyze_file_existence(tmp_path, ["src/app.ts", "src/missing.ts", "src/gone.ts"])

    assert report.existing == ["src/app.ts"]
    assert report.missing == ["src/missing.ts", "src/gone.ts"]
    assert report.is_structural is True
    assert classify_build_failure(report) == "structural"
    assert report.summary == "1/3 error files exist, 2/3 MISSING from disk"


def test_path_parsing_is_stable_across_runs() -> None:
    first = parse_error_file_paths(TSC_OUTPUT)

    assert parse_error_file_paths(TSC_OUTPUT) == first


def test_all_files_present_is_never_structural(tmp_path: Path) -> None:
    (tmp_path / "src" / "components").mkdir(parents=True)
    (tmp_path / "src" / "app.ts").write_text("export {}", encoding="utf-8")
    (tmp_path / "src" / "components" / "Button.tsx").write_text("export {}", encoding="utf-8")

    report = analyze_file_existence(tmp_path, parse_error_file_paths(TSC_OUTPUT))

    assert report.missing == []
    assert report.existing == ["src/app.ts", "src/components/Button.tsx"]
    assert report.is_structural is False
    assert classify_build_failure(report) == "logic"


def test_half_missing_is_a_logic_failure() -> None:
    report = FileExistenceReport(existing=["a.ts"], missing=["b.ts"])

    assert report.is_structural is False
    assert classify_build_failure(report) == "logic"
    assert FileExistenceReport().is_structural is False
    assert FileExistenceReport().summary == "No error files to check"


def test_project_structure_summary(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.ts").write_text("", encoding="utf-8")
    (tmp_path / "src" / "b.ts").write_text("", encoding="utf-8")
    (tmp_path / "package.json").write_text("{}", encoding="utf-8")
    (tmp_path / "node_modules" / "x").mkdir(parents=True)
    (tmp_path / "node_modules" / "x" / "index.js").write_text("", encoding="utf-8")

    assert summarize_project_structure(tmp_path) == "- ./: 1 files\n- src/: 2 files"


def test_structural_prompt_carries_guidance(tmp_path: Path) -> None:
    loop, _, _ = _loop(tmp_path)
    report = FileExistenceReport(existing=[], missing=["src/app.ts"])

    prompt = loop.build_fix_prompt("calc", TSC_OUTPUT, ["src/app.ts"], report, "- src/: 1 files")

    assert "STRUCTURAL ISSUE DETECTED" in prompt
    assert "Missing files (1 of 1)" in prompt
    assert "## Language: typescript" in prompt


def test_build_fix_loop_applies_approved_plan(tmp_path: Path) -> None:
    loop, backend, store = _loop(tmp_path, builds=[True])

    result = asyncio.run(loop.run("calc", TSC_OUTPUT))

    assert result.success is True
    assert result.classification == "structural"
    assert result.consensus is not None and result.consensus.approved
    assert any(prompt.startswith("Implement the approved plan") for prompt in backend.prompts)
    plan_doc = tmp_path / "docs" / "build_fix_plan.md"
    assert plan_doc.read_text(encoding="utf-8").startswith("# Build fix")
    scope = PlanScope(kind="milestone", milestone_id=BUILD_FIX_MILESTONE)
    assert store.load_metadata(scope).status == "approved"


def test_build_fix_loop_blocks_when_rebuild_fails(tmp_path: Path) -> None:
    loop, _, _ = _loop(tmp_path, builds=[False, False])

    result = asyncio.run(loop.run("calc", TSC_OUTPUT))

    assert result.success is False
    assert result.error == REBUILD_FAILED_ERROR
    assert result.build is not None and result.build.success is False


def test_build_fix_loop_rejects_unapproved_plan(tmp_path: Path) -> None:
    loop, backend, _ = _loop(tmp_path, score=60)

    result = asyncio.run(loop.run("calc", TSC_OUTPUT))

    assert result.success is False
    assert result.error == "Build fix not approved (60.0%)"
    assert not any(prompt.startswith("Implement the approved plan") for prompt in backend.prompts)


def test_build_fix_loop_pauses_on_rate_limit(tmp_path: Path) -> None:
    loop, _, _ = _loop(tmp_path, backend=BuildFixBackend(rate_limit_plan=True))

    result = asyncio.run(loop.run("calc", TSC_OUTPUT))

    assert result.rate_limit_paused is True
    assert result.error == "Build fix paused due to rate limit"
    assert not (tmp_path / "docs" / "build_fix_plan.md").exists()
