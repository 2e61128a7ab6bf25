from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

BackendName = Literal["codex", "claude"]
ProviderName = Literal["openai", "codex", "claude"]
LanguageName = Literal["python", "typescript"]
EscalationAction = Literal["pause", "continue", "fail"]

PROVIDER_NAMES: tuple[str, ...] = ("openai", "codex", "claude")


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    language: LanguageName = "python"
    test_command: str = ""
    build_command: str = ""
    lint_command: str = ""


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0
    generator_model: str = ""


@dataclass(slots=True)
class ConsensusConfig:
    threshold: float = 95.0
    max_iterations: int = 10
    reviewer: ProviderName = "openai"
    arbitrator: ProviderName = "claude"
    additional_reviewers: list[str] = field(default_factory=list)
    enable_arbitration: bool = True
    arbitration_threshold: float = 85.0
    stuck_iterations: int = 3
    max_arbitration_attempts: int = 2
    timeout_seconds: float = 900.0
    escalation_action: EscalationAction = "pause"
    temperature: float = 0.3
    max_tokens: int = 4096
    max_parallel_reviews: int = 4
    reviewer_model: str = ""
    arbitrator_model: str = ""
    # Stuck-detector and arbitration constants; tunable, not validated.
    stagnation_range: float = 5.0
    oscillation_deviation: float = 3.0
    oscillation_range: float = 20.0
    oscillation_gain: float = 2.0
    arbitration_accept_score: float = 88.0
    arbitration_exhausted_score: float = 80.0

    def reviewer_names(self) -> list[str]:
        names: list[str] = []
        for name in [self.reviewer, *self.additional_reviewers]:
            if name not in names:
                names.append(name)
        return names


@dataclass(slots=True)
class ExecutionConfig:
    max_task_retries: int = 3
    build_autofix_attempts: int = 3
    build_verify_attempts: int = 2
    test_crash_failure_floor: int = 20
    command_timeout_seconds: float = 600.0
    require_quality_gate: bool = True


@dataclass(slots=True)
class StateConfig:
    directory: str = ".quorum"


_SECTIONS: dict[str, type] = {
    "project": ProjectConfig,
    "backend": BackendConfig,
    "consensus": ConsensusConfig,
    "execution": ExecutionConfig,
    "state": StateConfig,
}


def _section_from_dict(section_type: type, data: Any) -> Any:
    if not isinstance(data, dict):
        return section_type()
    known = {item.name for item in fields(section_type)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(
            f"Unknown keys in [{section_type.__name__}] config section: {', '.join(unknown)}"
        )
    return section_type(**data)


@dataclass(slots=True)
class QuorumConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> QuorumConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> QuorumConfig:
        return cls(
            **{
                name: _section_from_dict(section_type, data.get(name, {}))
                for name, section_type in _SECTIONS.items()
            }
        )

    def to_dict(self) -> dict:
        return {name: asdict(getattr(self, name)) for name in _SECTIONS}

    def validate(self) -> None:
        consensus = self.consensus
        for name in consensus.reviewer_names() + [consensus.arbitrator]:
            if name not in PROVIDER_NAMES:
                raise ValueError(
                    f"Unsupported review provider '{name}'. "
                    f"Expected one of: {', '.join(PROVIDER_NAMES)}"
                )
        if not 0 <= consensus.threshold <= 100:
            raise ValueError("consensus.threshold must be between 0 and 100.")
        if consensus.max_iterations < 1:
            raise ValueError("consensus.max_iterations must be at least 1.")
        if consensus.stuck_iterations < 2:
            raise ValueError("consensus.stuck_iterations must be at least 2.")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: QuorumConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in _SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> QuorumConfig:
    if not path.exists():
        return QuorumConfig.default()
    config = QuorumConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    config.validate()
    return config


def save_config(path: Path, config: QuorumConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
