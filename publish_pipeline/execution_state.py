"""
Per content-item execution state.

Each content item keeps one ``<item>-pipeline.json`` in the data directory
recording the latest ``StageResult`` per stage id, the verification code
written by the web export, and the verified public URL.

Results are immutable values; a new run replaces the old result wholesale.
Results for stages that were later removed from the pipeline stay in the
file untouched (see ``ExecutionState.orphaned_results``).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from publish_pipeline.storage import load_json, save_json

if TYPE_CHECKING:
    from publish_pipeline.pipeline import Pipeline

logger = logging.getLogger("publish_pipeline.execution_state")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Status & result
# ---------------------------------------------------------------------------


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    WARNING = "warning"
    LOCKED = "locked"  # effective status only, never stored

    @classmethod
    def from_stored(cls, value: Optional[str]) -> StageStatus:
        """Parse a persisted status; unknown or locked values read as pending."""
        try:
            status = cls(str(value).lower())
        except ValueError:
            return cls.PENDING
        return cls.PENDING if status == cls.LOCKED else status


@dataclass(frozen=True)
class StageResult:
    """Outcome of the most recent run of one stage for one content item."""
    status: StageStatus
    message: str = ""
    published_url: Optional[str] = None
    artifact_path: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def pending(cls, message: str = "") -> StageResult:
        return cls(StageStatus.PENDING, message)

    @classmethod
    def in_progress(cls, message: str = "Running") -> StageResult:
        return cls(StageStatus.IN_PROGRESS, message)

    @classmethod
    def completed(
        cls,
        message: str = "",
        published_url: Optional[str] = None,
        artifact_path: Optional[str] = None,
    ) -> StageResult:
        return cls(StageStatus.COMPLETED, message, published_url, artifact_path)

    @classmethod
    def failed(cls, message: str) -> StageResult:
        return cls(StageStatus.FAILED, message)

    @classmethod
    def warning(cls, message: str, artifact_path: Optional[str] = None) -> StageResult:
        return cls(StageStatus.WARNING, message, artifact_path=artifact_path)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value, "timestamp": self.timestamp}
        if self.message:
            data["message"] = self.message
        if self.published_url:
            data["publishedUrl"] = self.published_url
        if self.artifact_path:
            data["artifactPath"] = self.artifact_path
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StageResult:
        return cls(
            status=StageStatus.from_stored(data.get("status")),
            message=data.get("message") or "",
            published_url=data.get("publishedUrl"),
            artifact_path=data.get("artifactPath"),
            timestamp=data.get("timestamp") or _now_iso(),
        )


# ---------------------------------------------------------------------------
# ExecutionState
# ---------------------------------------------------------------------------


@dataclass
class ExecutionState:
    """Stage results and verification data for one content item."""
    content_item_id: str
    pipeline_id: str = ""
    verified_url: Optional[str] = None
    verification_code: Optional[str] = None
    results: Dict[str, StageResult] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)

    def get_result(self, stage_id: str) -> Optional[StageResult]:
        return self.results.get(stage_id)

    def set_result(self, stage_id: str, result: StageResult) -> None:
        """Replace the stored result for *stage_id*."""
        self.results[stage_id] = result

    def orphaned_results(self, pipeline: Pipeline) -> Dict[str, StageResult]:
        """Results whose stage no longer exists in *pipeline*."""
        known = {s.id for s in pipeline.stages}
        return {sid: r for sid, r in self.results.items() if sid not in known}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "contentItemId": self.content_item_id,
            "pipelineId": self.pipeline_id,
            "createdAt": self.created_at,
            "results": {sid: r.to_dict() for sid, r in self.results.items()},
        }
        if self.verified_url:
            data["verifiedUrl"] = self.verified_url
        if self.verification_code:
            data["verificationCode"] = self.verification_code
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ExecutionState:
        results: Dict[str, StageResult] = {}
        for stage_id, raw in (data.get("results") or {}).items():
            if isinstance(raw, dict):
                results[stage_id] = StageResult.from_dict(raw)
        return cls(
            content_item_id=data.get("contentItemId", ""),
            pipeline_id=data.get("pipelineId", ""),
            verified_url=data.get("verifiedUrl"),
            verification_code=data.get("verificationCode"),
            results=results,
            created_at=data.get("createdAt") or _now_iso(),
        )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_item_key(content_item_id: str) -> str:
    """File-name-safe form of a content item id."""
    return _UNSAFE_CHARS.sub("_", content_item_id).strip("._") or "item"


class ExecutionStore:
    """One ``<item>-pipeline.json`` per content item under *data_dir*."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    def path_for(self, content_item_id: str) -> Path:
        return self.data_dir / f"{safe_item_key(content_item_id)}-pipeline.json"

    def load(self, content_item_id: str, pipeline_id: str = "") -> ExecutionState:
        """Load the state for an item, creating a fresh one if absent."""
        raw = load_json(self.path_for(content_item_id), default={})
        if not raw:
            return ExecutionState(content_item_id=content_item_id, pipeline_id=pipeline_id)
        state = ExecutionState.from_dict(raw)
        if not state.content_item_id:
            state.content_item_id = content_item_id
        return state

    def persist(self, state: ExecutionState) -> None:
        save_json(self.path_for(state.content_item_id), state.to_dict())
        logger.debug(
            "Persisted execution state for %s (%d results)",
            state.content_item_id[:24], len(state.results),
        )

    def list_items(self) -> List[str]:
        if not self.data_dir.exists():
            return []
        return sorted(p.name[: -len("-pipeline.json")] for p in self.data_dir.glob("*-pipeline.json"))
