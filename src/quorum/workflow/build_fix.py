"""Consensus-reviewed remediation of a failing final build."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from quorum.agents.generator import GenerationAgent
from quorum.config import LanguageName
from quorum.consensus.protocol import ConsensusRunner
from quorum.logging_config import ProgressCallback, report_progress
from quorum.models import BuildResult, ConsensusProcessResult, Plan, PlanScope
from quorum.verification import IGNORED_DIRS, BuildRunner, build_with_auto_fix

logger = logging.getLogger(__name__)

FailureKind = Literal["structural", "logic"]

BUILD_FIX_MILESTONE = "build-fix"
BUILD_FIX_PLAN_DOC = Path("docs") / "build_fix_plan.md"
REBUILD_FAILED_ERROR = (
    "Build verification failed - build errors remain after consensus-approved fix"
)

_ANSI = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_DIAGNOSTIC_PATTERNS = (
    # src/app.ts(12,5): error TS2304: ...
    re.compile(r"^(?:ERROR in\s+)?(.+?)\(\d+,\d+\): error TS", re.MULTILINE),
    # src/app.ts:12:5 - error TS2304: ...
    re.compile(r"^(?:ERROR in\s+)?(.+?):\d+:\d+\s*-\s*error TS", re.MULTILINE),
)
_EXCLUDED_FRAGMENTS = ("node_modules/", "vite/", "@types/", "virtual:", "__generated__")
_PROJECT_PREFIXES = ("src/", "apps/", "packages/", "./", "lib/", "components/")


def parse_error_file_paths(output: str) -> list[str]:
    """Return the project files named by compiler diagnostics, de-duplicated in order."""
    text = _ANSI.sub("", output)
    paths: list[str] = []
    seen: set[str] = set()
    for pattern in _DIAGNOSTIC_PATTERNS:
        for match in pattern.finditer(text):
            path = match.group(1).strip().replace("\\", "/")
            if any(fragment in path for fragment in _EXCLUDED_FRAGMENTS):
                continue
            if not (path.startswith(_PROJECT_PREFIXES) or path.startswith("/")):
                continue
            if path not in seen:
                seen.add(path)
                paths.append(path)
    return paths


@dataclass(slots=True)
class FileExistenceReport:
    existing: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.existing) + len(self.missing)

    @property
    def is_structural(self) -> bool:
        return self.total > 0 and len(self.missing) * 2 > self.total

    @property
    def summary(self) -> str:
        if self.total == 0:
            return "No error files to check"
        return (
            f"{len(self.existing)}/{self.total} error files exist, "
            f"{len(self.missing)}/{self.total} MISSING from disk"
        )


def analyze_file_existence(project_dir: Path, paths: list[str]) -> FileExistenceReport:
    report = FileExistenceReport()
    for path in paths:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = project_dir / path
        (report.existing if candidate.exists() else report.missing).append(path)
    return report


def classify_build_failure(report: FileExistenceReport) -> FailureKind:
    return "structural" if report.is_structural else "logic"


def summarize_project_structure(project_dir: Path, *, limit: int = 40) -> str:
    """Top-level layout with file counts, used to ground the fix plan in the real tree."""
    counts: Counter[str] = Counter()
    for path in project_dir.rglob("*"):
        relative = path.relative_to(project_dir)
        if any(part in IGNORED_DIRS or part.startswith(".") for part in relative.parts):
            continue
        if path.is_file():
            top = relative.parts[0] if len(relative.parts) > 1 else "."
            counts[top] += 1
    if not counts:
        return "(empty project directory)"
    lines = [f"- {name}/: {count} files" for name, count in sorted(counts.items())[:limit]]
    return "\n".join(lines)


_STRUCTURAL_GUIDANCE = """
## STRUCTURAL ISSUE DETECTED
This is a MISSING FILES problem, not a code bug.
Most files named in the errors do not exist on disk. Typical root causes: the generator
wrote files to a different root, import paths are wrong after a refactor, or the build
configuration includes folders that were never created.
The fix MUST create the missing files or correct the paths and build configuration.
Never plan edits to files that do not exist.
""".strip()


@dataclass(slots=True)
class BuildFixResult:
    success: bool
    classification: FailureKind
    report: FileExistenceReport
    error: str | None = None
    rate_limit_paused: bool = False
    consensus: ConsensusProcessResult | None = None
    build: BuildResult | None = None


class BuildFixLoop:
    """Analyze build errors, agree on a fix plan, apply it once and rebuild."""

    def __init__(
        self,
        generator: GenerationAgent,
        consensus: ConsensusRunner,
        builder: BuildRunner,
        project_dir: Path,
        language: LanguageName,
        *,
        verify_attempts: int = 2,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.generator = generator
        self.consensus = consensus
        self.builder = builder
        self.project_dir = project_dir
        self.language = language
        self.verify_attempts = verify_attempts
        self.on_progress = on_progress

    def _progress(self, message: str) -> None:
        report_progress(self.on_progress, "build-fix", message)

    def build_fix_prompt(
        self,
        project_name: str,
        build_output: str,
        paths: list[str],
        report: FileExistenceReport,
        structure: str,
    ) -> str:
        errors = build_output[:4000]
        if report.is_structural:
            error_section = (
                f"## Build Errors (sample: {len(paths)} files with errors, "
                f"{len(report.missing)} missing)\n```\n{errors[:1500]}\n```"
            )
        else:
            error_section = f"## Build Output (errors)\n```\n{errors}\n```"
        missing = "\n".join(f"  - {path}" for path in report.missing[:20])
        existence = f"## File Existence Analysis\n{report.summary}\n" + (
            f"Missing files ({min(len(report.missing), 20)} of {len(report.missing)}):\n{missing}"
            if report.missing
            else "All error files exist on disk."
        )
        sections = [
            "Analyze the following build errors and create a detailed fix plan.",
            error_section,
            f"## Project Structure\n{structure}",
            existence,
        ]
        if report.is_structural:
            sections.append(_STRUCTURAL_GUIDANCE)
        sections.append(f"## Project: {project_name}\n## Language: {self.language}")
        sections.append(
            "Provide:\n"
            "### Root Cause Analysis\nEach distinct build error and its root cause.\n"
            "### Fix Plan\nFor each error: the file and line, the change, and why it fixes it.\n"
            "### Files to Modify\nEach file with the exact changes needed.\n"
            "### Verification\nThe build command that proves the fix.\n\n"
            "Be specific and actionable. Do NOT suggest deleting or gutting files."
        )
        return "\n\n".join(sections)

    async def run(self, project_name: str, build_output: str) -> BuildFixResult:
        paths = parse_error_file_paths(build_output)
        report = analyze_file_existence(self.project_dir, paths)
        kind = classify_build_failure(report)
        self._progress(f"Analyzing build failure: {report.summary} ({kind})")
        if report.is_structural:
            self._progress(
                f"STRUCTURAL ISSUE: {len(report.missing)}/{report.total} error files do not "
                "exist on disk"
            )

        structure = summarize_project_structure(self.project_dir)
        plan_path = self.project_dir / BUILD_FIX_PLAN_DOC
        scope = PlanScope(kind="milestone", milestone_id=BUILD_FIX_MILESTONE)
        plan = self.consensus.checkpoint_plan(scope)
        if plan is None:
            self._progress("Creating build fix plan for consensus review")
            plan_result = await self.generator.execute(
                self.build_fix_prompt(project_name, build_output, paths, report, structure),
                {"phase": "build-fix-analysis"},
                self.project_dir,
            )
            if plan_result.rate_limit_paused:
                self._progress("Build fix paused by rate limit")
                return BuildFixResult(
                    success=False,
                    classification=kind,
                    report=report,
                    error="Build fix paused due to rate limit",
                    rate_limit_paused=True,
                )
            if not plan_result.success:
                self._progress(f"Build fix analysis failed: {plan_result.error}")
                return BuildFixResult(
                    success=False,
                    classification=kind,
                    report=report,
                    error="Build verification failed - could not analyze errors",
                )
            plan = Plan(content=plan_result.response, scope=scope)
            plan_path.parent.mkdir(parents=True, exist_ok=True)
            plan_path.write_text(plan.content, encoding="utf-8")
        else:
            self._progress(f"Resuming build fix consensus at plan r{plan.revision}")

        structural_note = (
            "STRUCTURAL ISSUE: most error files are missing from disk. "
            "This is a missing files problem, not a code bug."
        )
        context = "\n\n".join(
            part
            for part in (
                f"Build fix plan for project: {project_name} ({self.language})",
                f"Error classification: {kind}. {report.summary}",
                structural_note if report.is_structural else "",
                f"Build errors:\n{build_output[: 1500 if report.is_structural else 2000]}",
            )
            if part
        )
        report_progress(self.on_progress, "build-fix-consensus", "Getting consensus on fix plan")
        consensus = await self.consensus.run(plan, context)
        if consensus.rate_limit_paused:
            return BuildFixResult(
                success=False,
                classification=kind,
                report=report,
                error="Build fix paused due to rate limit",
                rate_limit_paused=True,
                consensus=consensus,
            )
        if not consensus.approved:
            report_progress(
                self.on_progress,
                "build-fix-consensus",
                f"Build fix plan not approved ({consensus.final_score:.1f}%)",
            )
            return BuildFixResult(
                success=False,
                classification=kind,
                report=report,
                error=f"Build fix not approved ({consensus.final_score:.1f}%)",
                consensus=consensus,
            )
        plan_path.parent.mkdir(parents=True, exist_ok=True)
        plan_path.write_text(consensus.final_plan.content, encoding="utf-8")

        self._progress("Implementing consensus-approved build fix")
        implementation_context = "\n\n".join(
            [
                f"Build fix for project: {project_name}",
                f"## Project Structure\n{structure}",
                f"File existence: {report.summary}",
            ]
        )
        fix = await self.generator.implement(
            consensus.final_plan.content, implementation_context, self.project_dir
        )
        if fix.rate_limit_paused:
            return BuildFixResult(
                success=False,
                classification=kind,
                report=report,
                error="Build fix paused due to rate limit",
                rate_limit_paused=True,
                consensus=consensus,
            )
        if not fix.success:
            self._progress(f"Build fix implementation failed: {fix.error}")
            return BuildFixResult(
                success=False,
                classification=kind,
                report=report,
                error="Build fix implementation failed",
                consensus=consensus,
            )

        self._progress("Fix applied; re-running build verification")
        build = await build_with_auto_fix(
            self.builder,
            self.generator,
            self.project_dir,
            self.language,
            max_attempts=self.verify_attempts,
            on_progress=self.on_progress,
        )
        if build.rate_limit_paused:
            return BuildFixResult(
                success=False,
                classification=kind,
                report=report,
                error="Build fix paused due to rate limit",
                rate_limit_paused=True,
                consensus=consensus,
                build=build,
            )
        if not build.success:
            self._progress("BLOCKING: build still failing after consensus-approved fix")
            return BuildFixResult(
                success=False,
                classification=kind,
                report=report,
                error=REBUILD_FAILED_ERROR,
                consensus=consensus,
                build=build,
            )
        self._progress("Build passes after consensus-approved fix")
        return BuildFixResult(
            success=True, classification=kind, report=report, consensus=consensus, build=build
        )
