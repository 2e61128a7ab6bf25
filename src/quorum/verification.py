"""Build, test, code-quality and README checks run against the generated project."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

from quorum.agents.generator import GenerationAgent
from quorum.config import LanguageName
from quorum.logging_config import ProgressCallback, report_progress
from quorum.models import BuildResult, CodeQualityResult, TestResult

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
IGNORED_DIRS = frozenset(
    {
        ".git",
        ".quorum",
        ".venv",
        "venv",
        "env",
        "node_modules",
        "__pycache__",
        ".pytest_cache",
        "dist",
        "build",
        "docs",
    }
)

SOURCE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "python": (".py",),
    "typescript": (".ts", ".tsx", ".js", ".jsx"),
}
TEST_PATTERNS: dict[str, tuple[str, ...]] = {
    "python": ("test_", "_test.py", "tests.py"),
    "typescript": (".test.ts", ".test.tsx", ".spec.ts", ".spec.tsx", ".test.js", ".test.jsx"),
}
ENTRY_POINT_NAMES: dict[str, tuple[str, ...]] = {
    "python": ("main.py", "__main__.py", "app.py", "index.py"),
    "typescript": ("index.ts", "index.tsx", "main.ts", "app.ts", "index.js", "main.js"),
}


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    used_shell: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


def run_command(command: str, cwd: Path, *, timeout: float | None = None) -> CommandResult:
    command_text = command.strip()
    if not command_text:
        return CommandResult(command=command, exit_code=1, stderr="Command is empty.")

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    logger.debug("Running %r in %s", command_text, cwd)
    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        stdout = exc.stdout.decode() if isinstance(exc.stdout, bytes) else (exc.stdout or "")
        return CommandResult(
            command=command_text,
            exit_code=124,
            stdout=stdout[-20000:],
            stderr=f"Command timed out after {timeout:g}s",
            used_shell=used_shell,
            timed_out=True,
        )
    except FileNotFoundError as exc:
        return CommandResult(
            command=command_text, exit_code=127, stderr=str(exc), used_shell=used_shell
        )
    return CommandResult(
        command=command_text,
        exit_code=proc.returncode,
        stdout=proc.stdout[-20000:],
        stderr=proc.stderr[-20000:],
        used_shell=used_shell,
    )


def _iter_files(root: Path, extensions: tuple[str, ...]) -> list[Path]:
    found: list[Path] = []
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if any(part in IGNORED_DIRS for part in relative.parts[:-1]):
            continue
        if path.is_file() and path.suffix in extensions:
            found.append(path)
    return found


def is_test_file(relative: Path, language: str) -> bool:
    if {"test", "tests", "__tests__"} & set(relative.parts[:-1]):
        return True
    return any(pattern in relative.name for pattern in TEST_PATTERNS.get(language, ()))


# Test running


def default_test_command(language: LanguageName) -> str:
    if language == "typescript":
        return "npm test"
    return f"{shlex.quote(sys.executable)} -m pytest -v"


_PYTEST_PASSED = re.compile(r"(\d+)\s+passed")
_PYTEST_FAILED = re.compile(r"(\d+)\s+failed")
_PYTEST_FAILED_NAME = re.compile(r"FAILED\s+(\S+)")
_JEST_SUMMARY = re.compile(r"Tests:\s*(?:(\d+)\s+failed,\s*)?(\d+)\s+passed,\s*(\d+)\s+total")
_JEST_FAILED_NAME = re.compile(r"[✕×]\s+(.+)")


def parse_test_output(output: str, language: LanguageName) -> TestResult:
    passed = failed = total = 0
    failed_tests: list[str] = []
    if language == "python":
        if match := _PYTEST_PASSED.search(output):
            passed = int(match.group(1))
        if match := _PYTEST_FAILED.search(output):
            failed = int(match.group(1))
        total = passed + failed
        failed_tests = _PYTEST_FAILED_NAME.findall(output)
    else:
        if match := _JEST_SUMMARY.search(output):
            failed = int(match.group(1) or 0)
            passed = int(match.group(2))
            total = int(match.group(3))
        failed_tests = [name.strip() for name in _JEST_FAILED_NAME.findall(output)]
    return TestResult(
        success=failed == 0,
        passed=passed,
        failed=failed,
        total=total,
        output=output,
        failed_tests=failed_tests,
    )


def has_tests(cwd: Path, language: LanguageName) -> bool:
    if (cwd / "tests").is_dir():
        return True
    if language == "python":
        return any(path.name.startswith("test_") for path in cwd.glob("*.py"))
    if (cwd / "__tests__").is_dir():
        return True
    src = cwd / "src"
    if not src.is_dir():
        return False
    return any(
        path.name.endswith((".test.ts", ".spec.ts"))
        for path in _iter_files(src, SOURCE_EXTENSIONS["typescript"])
    )


def is_test_runner_crash(result: TestResult, failure_floor: int = 20) -> bool:
    """A runner that reports no passes but a flood of failures broke before the tests ran."""
    return result.passed == 0 and result.failed > failure_floor


def summarize_tests(result: TestResult) -> str:
    if result.error:
        return f"Tests failed to run: {result.error}"
    if result.total == 0:
        return "No tests found (OK)"
    status = "PASS" if result.success else "FAIL"
    summary = f"{status}: {result.passed}/{result.total} tests passed"
    if result.failed:
        summary += f" ({result.failed} failed)"
    return summary


class TestRunner:
    __test__ = False

    def __init__(self, *, command: str = "", timeout_seconds: float = 600.0) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds

    async def run(self, cwd: Path, language: LanguageName) -> TestResult:
        command = self.command or default_test_command(language)
        result = await asyncio.to_thread(
            run_command, command, cwd, timeout=self.timeout_seconds
        )
        if result.timed_out or result.exit_code == 127:
            return TestResult(success=False, output=result.output, error=result.stderr)
        parsed = parse_test_output(result.output, language)
        # pytest exits with 5 when it collects no tests.
        no_tests_collected = language == "python" and result.exit_code == 5
        if not result.ok and parsed.total == 0 and not no_tests_collected:
            parsed.success = False
            parsed.error = f"Test command exited with code {result.exit_code}"
        return parsed


# Build


def default_build_command(cwd: Path, language: LanguageName) -> str:
    if language == "typescript":
        package_json = cwd / "package.json"
        if package_json.exists():
            try:
                scripts = json.loads(package_json.read_text(encoding="utf-8")).get("scripts", {})
            except json.JSONDecodeError:
                scripts = {}
            if isinstance(scripts, dict) and "build" in scripts:
                return "npm run build"
        return "npx tsc --noEmit"
    excluded = r"(^|/)(\.?venv|env|node_modules|\.git|\.quorum)/"
    return f"{shlex.quote(sys.executable)} -m compileall -q -x {shlex.quote(excluded)} ."


class BuildRunner:
    def __init__(self, *, command: str = "", timeout_seconds: float = 120.0) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds

    async def run(self, cwd: Path, language: LanguageName) -> BuildResult:
        command = self.command or default_build_command(cwd, language)
        result = await asyncio.to_thread(
            run_command, command, cwd, timeout=self.timeout_seconds
        )
        return BuildResult(success=result.ok, output=result.output, command=command, attempts=1)


async def build_with_auto_fix(
    builder: BuildRunner,
    generator: GenerationAgent,
    cwd: Path,
    language: LanguageName,
    *,
    max_attempts: int = 3,
    on_progress: ProgressCallback | None = None,
) -> BuildResult:
    """Build, and on failure ask the generator to fix the errors up to ``max_attempts`` times."""
    report_progress(on_progress, "build", "Verifying project build")
    result = await builder.run(cwd, language)
    if result.success:
        report_progress(on_progress, "build", "Build passed")
        return result

    for attempt in range(1, max_attempts + 1):
        report_progress(
            on_progress, "build", f"Build failed; auto-fix attempt {attempt}/{max_attempts}"
        )
        fix = await generator.fix_build_errors(result.output, cwd)
        if fix.rate_limit_paused:
            return BuildResult(
                success=False,
                output=result.output,
                command=result.command,
                rate_limit_paused=True,
                attempts=attempt,
            )
        if not fix.success:
            logger.warning("Build auto-fix attempt %d failed: %s", attempt, fix.error)
        rebuilt = await builder.run(cwd, language)
        if rebuilt.success:
            report_progress(on_progress, "build", f"Build passed after auto-fix attempt {attempt}")
            return BuildResult(
                success=True,
                output=rebuilt.output,
                auto_fixed=True,
                command=rebuilt.command,
                attempts=attempt + 1,
            )
        result = rebuilt

    report_progress(on_progress, "build", f"Build still failing after {max_attempts} auto-fixes")
    return BuildResult(
        success=False, output=result.output, command=result.command, attempts=max_attempts + 1
    )


# Code quality


def _code_lines(text: str) -> list[str]:
    lines = []
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith(("#", "//")):
            lines.append(stripped)
    return lines


def verify_code_quality(project_dir: Path, language: LanguageName) -> CodeQualityResult:
    """Catch scaffold-only output before a project is declared finished.

    ``issues`` block completion, ``warnings`` are informational.
    """
    result = CodeQualityResult(passed=False)
    entry_lines: int | None = None
    entry_name = ""
    entry_text = ""

    for path in _iter_files(project_dir, SOURCE_EXTENSIONS.get(language, (".py",))):
        relative = path.relative_to(project_dir)
        if is_test_file(relative, language):
            result.test_file_count += 1
            result.has_tests = True
            continue
        text = path.read_text(encoding="utf-8", errors="replace")
        lines = _code_lines(text)
        result.total_source_files += 1
        result.total_lines_of_code += len(lines)
        if entry_lines is None and path.name in ENTRY_POINT_NAMES.get(language, ()):
            result.has_main_entry_point = True
            entry_lines, entry_name, entry_text = len(lines), path.name, text.lower()

    if entry_lines is not None:
        if entry_lines < 10:
            result.issues.append(
                f"Main entry point ({entry_name}) has only {entry_lines} lines - too minimal"
            )
        elif entry_lines < 30:
            result.warnings.append(
                f"Main entry point ({entry_name}) has only {entry_lines} lines - may be incomplete"
            )
        if (
            "hello" in entry_text
            and ("world" in entry_text or "from" in entry_text)
            and entry_lines < 20
        ):
            result.issues.append('Main entry point appears to be just a "Hello World" placeholder')

    if result.total_source_files == 0:
        result.issues.append("No source files found")
    elif result.total_source_files == 1:
        result.warnings.append("Only 1 source file found - project may be incomplete")

    if result.total_lines_of_code < 30:
        result.issues.append(
            f"Only {result.total_lines_of_code} lines of code - "
            "project appears to be scaffolding only"
        )
    elif result.total_lines_of_code < 100:
        result.warnings.append(
            f"Only {result.total_lines_of_code} lines of code - project may be minimal"
        )

    if not result.has_main_entry_point:
        result.warnings.append("No main entry point file found")
    if not result.has_tests:
        result.warnings.append("No test files found")

    result.passed = not result.issues
    return result


# README


@dataclass(slots=True)
class ReadmeValidation:
    valid: bool
    missing_critical: list[str] = field(default_factory=list)
    missing_recommended: list[str] = field(default_factory=list)


_README_SECTIONS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Installation", ("install", "setup", "getting started")),
    ("Usage", ("usage", "running", "## run", "example")),
)


def validate_readme(project_dir: Path, language: LanguageName) -> ReadmeValidation:
    path = project_dir / "README.md"
    if not path.exists():
        return ReadmeValidation(valid=False, missing_critical=["README.md file not found"])
    content = path.read_text(encoding="utf-8", errors="replace")
    if not content.strip():
        return ReadmeValidation(valid=False, missing_critical=["README.md is empty"])

    lowered = content.lower()
    critical: list[str] = []
    recommended: list[str] = []
    if not re.search(r"^#\s+\S", content, re.MULTILINE):
        critical.append("Title")
    for label, patterns in _README_SECTIONS:
        if not any(pattern in lowered for pattern in patterns):
            critical.append(label)
    if language == "python":
        if "pip install" not in lowered and "requirements.txt" not in lowered:
            critical.append("Python dependency installation")
        if "pytest" not in lowered:
            recommended.append("Test command")
    else:
        if "npm install" not in lowered and "pnpm install" not in lowered:
            critical.append("Dependency installation")
        if "npm test" not in lowered and "npm run test" not in lowered:
            recommended.append("Test command")
    return ReadmeValidation(
        valid=not critical, missing_critical=critical, missing_recommended=recommended
    )
