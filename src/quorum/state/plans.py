from __future__ import annotations

import json
import re
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from quorum.models import (
    CorrectionRecord,
    Plan,
    PlanKind,
    PlanScope,
    PlanStatus,
    ReviewResult,
    _utcnow_iso,
)
from quorum.state.store import JsonStateStore

_FRONT_MATTER = re.compile(r"\A---\n.*?\n---\n\n?", re.DOTALL)
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")
_UNSAFE_NAMESPACE = re.compile(r"[^A-Za-z0-9_-]+")


def _file_stem(scope: PlanScope) -> str:
    return _UNSAFE_NAME.sub("_", scope.key)


def _session_name(scope: PlanScope) -> str:
    return _UNSAFE_NAMESPACE.sub("_", scope.key)


@dataclass(slots=True)
class PlanMetadata:
    id: str
    kind: PlanKind
    version: int = 0
    status: PlanStatus = "draft"
    revision: int = 1
    consensus_score: float | None = None
    total_iterations: int = 0
    corrections: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    approved_at: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PlanMetadata:
        return cls(
            id=str(payload["id"]),
            kind=payload.get("kind", "task"),
            version=int(payload.get("version", 0)),
            status=payload.get("status", "draft"),
            revision=int(payload.get("revision", 1)),
            consensus_score=payload.get("consensus_score"),
            total_iterations=int(payload.get("total_iterations", 0)),
            corrections=list(payload.get("corrections", [])),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            updated_at=str(payload.get("updated_at") or _utcnow_iso()),
            approved_at=payload.get("approved_at"),
        )


class PlanStore:
    """Plan versions, reviewer feedback and consensus checkpoints keyed by scope."""

    def __init__(self, project_dir: Path, *, state_dir_name: str = ".quorum") -> None:
        self.project_dir = project_dir.resolve()
        self.plans_dir = self.project_dir / "docs" / "plans"
        self.sessions = JsonStateStore(self.project_dir / state_dir_name / "consensus")

    def _plan_path(self, scope: PlanScope) -> Path:
        return self.plans_dir / f"{_file_stem(scope)}.md"

    def _metadata_path(self, scope: PlanScope) -> Path:
        return self.plans_dir / f"{_file_stem(scope)}.json"

    def _feedback_dir(self, scope: PlanScope) -> Path:
        return self.plans_dir / "feedback" / _file_stem(scope)

    def load_metadata(self, scope: PlanScope) -> PlanMetadata | None:
        path = self._metadata_path(scope)
        if not path.exists():
            return None
        return PlanMetadata.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def _write_metadata(self, metadata: PlanMetadata, scope: PlanScope) -> PlanMetadata:
        metadata.updated_at = _utcnow_iso()
        self.plans_dir.mkdir(parents=True, exist_ok=True)
        self._metadata_path(scope).write_text(
            json.dumps(asdict(metadata), ensure_ascii=False, indent=2), encoding="utf-8"
        )
        return metadata

    def _metadata_or_new(self, scope: PlanScope) -> PlanMetadata:
        return self.load_metadata(scope) or PlanMetadata(id=scope.key, kind=scope.kind)

    def save_plan(
        self,
        scope: PlanScope,
        plan: Plan,
        *,
        score: float | None = None,
        status: PlanStatus | None = None,
    ) -> PlanMetadata:
        metadata = self._metadata_or_new(scope)
        metadata.version += 1
        metadata.revision = plan.revision
        if score is not None:
            metadata.consensus_score = score
        if status is not None:
            metadata.status = status
        score_text = "" if metadata.consensus_score is None else metadata.consensus_score
        header = "\n".join(
            [
                "---",
                f"id: {scope.key}",
                f"kind: {scope.kind}",
                f"version: {metadata.version}",
                f"revision: {plan.revision}",
                f"status: {metadata.status}",
                f"consensus_score: {score_text}",
                f"updated_at: {_utcnow_iso()}",
                "---",
            ]
        )
        self.plans_dir.mkdir(parents=True, exist_ok=True)
        self._plan_path(scope).write_text(f"{header}\n\n{plan.content}\n", encoding="utf-8")
        return self._write_metadata(metadata, scope)

    def load_plan(self, scope: PlanScope) -> str | None:
        path = self._plan_path(scope)
        if not path.exists():
            return None
        return _FRONT_MATTER.sub("", path.read_text(encoding="utf-8"), count=1).rstrip("\n")

    def save_feedback(self, scope: PlanScope, review: ReviewResult) -> Path:
        feedback_dir = self._feedback_dir(scope)
        feedback_dir.mkdir(parents=True, exist_ok=True)
        name = _UNSAFE_NAME.sub("_", review.reviewer or "reviewer")
        path = feedback_dir / f"{name}.json"
        payload = review.to_dict()
        payload["saved_at"] = _utcnow_iso()
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        return path

    def load_feedback(self, scope: PlanScope) -> list[ReviewResult]:
        feedback_dir = self._feedback_dir(scope)
        if not feedback_dir.exists():
            return []
        return [
            ReviewResult.from_dict(json.loads(path.read_text(encoding="utf-8")))
            for path in sorted(feedback_dir.glob("*.json"))
        ]

    def clear_feedback(self, scope: PlanScope) -> None:
        shutil.rmtree(self._feedback_dir(scope), ignore_errors=True)

    def update_status(self, scope: PlanScope, status: PlanStatus) -> PlanMetadata:
        metadata = self._metadata_or_new(scope)
        metadata.status = status
        if status == "approved":
            metadata.approved_at = _utcnow_iso()
        return self._write_metadata(metadata, scope)

    def record_correction(self, scope: PlanScope, record: CorrectionRecord) -> PlanMetadata:
        metadata = self._metadata_or_new(scope)
        metadata.corrections.append(record.to_dict())
        metadata.total_iterations += 1
        return self._write_metadata(metadata, scope)

    def save_session(self, scope: PlanScope, session: dict[str, Any]) -> None:
        self.sessions.set_json(_session_name(scope), session)

    def load_session(self, scope: PlanScope) -> dict[str, Any] | None:
        session = self.sessions.get_json(_session_name(scope))
        return session if isinstance(session, dict) else None

    def clear_session(self, scope: PlanScope) -> None:
        self.sessions.delete(_session_name(scope))
