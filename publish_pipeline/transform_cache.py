"""
Two-tier cache for AI-generated platform transforms.

    memory  -- ``TransformCache``, scoped to one open content item, cleared on
               every pipeline edit
    disk    -- ``TransformStore``, one ``<item>-transforms.json`` per item,
               authoritative

Both tiers are keyed by platform identity rather than stage id, so two stages
targeting the same platform share one transform.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from publish_pipeline.execution_state import safe_item_key
from publish_pipeline.storage import load_json, save_json

logger = logging.getLogger("publish_pipeline.transform_cache")


def _now_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class TransformRecord:
    platform_key: str
    text: str
    generated_at_millis: int = 0
    approved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "generatedAtMillis": self.generated_at_millis,
            "approved": self.approved,
        }

    @classmethod
    def from_dict(cls, platform_key: str, data: Dict[str, Any]) -> TransformRecord:
        try:
            generated = int(data.get("generatedAtMillis", 0))
        except (TypeError, ValueError):
            generated = 0
        return cls(
            platform_key=platform_key,
            text=str(data.get("text", "")),
            generated_at_millis=generated,
            approved=bool(data.get("approved", False)),
        )


class TransformStore:
    """Disk tier: ``<data_dir>/<item>-transforms.json``."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    def path_for(self, content_item_id: str) -> Path:
        return self.data_dir / f"{safe_item_key(content_item_id)}-transforms.json"

    def load(self, content_item_id: str) -> Dict[str, TransformRecord]:
        raw = load_json(self.path_for(content_item_id), default={})
        records: Dict[str, TransformRecord] = {}
        if not isinstance(raw, dict):
            return records
        for key, value in raw.items():
            if isinstance(value, dict) and value.get("text"):
                records[key] = TransformRecord.from_dict(key, value)
        return records

    def persist(self, content_item_id: str, records: Dict[str, TransformRecord]) -> None:
        save_json(
            self.path_for(content_item_id),
            {key: rec.to_dict() for key, rec in records.items()},
        )


class TransformCache:
    """Memory tier for one content item, backed by a ``TransformStore``."""

    def __init__(self, content_item_id: str, store: TransformStore) -> None:
        self.content_item_id = content_item_id
        self.store = store
        self._memory: Dict[str, str] = {}

    def get(self, platform_key: str) -> Optional[str]:
        return self._memory.get(platform_key)

    def put(self, platform_key: str, text: str) -> None:
        self._memory[platform_key] = text

    def clear(self) -> None:
        """Drop the memory tier; disk records are left alone."""
        if self._memory:
            logger.debug("Clearing %d cached transforms for %s", len(self._memory), self.content_item_id[:24])
        self._memory.clear()

    def __contains__(self, platform_key: str) -> bool:
        return platform_key in self._memory

    def lookup(self, platform_key: str) -> Optional[str]:
        """Memory first, then disk (filling memory on a disk hit)."""
        text = self.get(platform_key)
        if text is not None:
            return text
        record = self.store.load(self.content_item_id).get(platform_key)
        if record is None:
            return None
        self.put(platform_key, record.text)
        return record.text

    def write_through(self, platform_key: str, text: str, approved: bool = False) -> TransformRecord:
        """Persist to disk, then update memory.

        Raises PersistenceFailure if the disk write fails; memory is then
        left unchanged so the edit does not look saved.
        """
        records = self.store.load(self.content_item_id)
        record = TransformRecord(
            platform_key=platform_key,
            text=text,
            generated_at_millis=_now_millis(),
            approved=approved,
        )
        records[platform_key] = record
        self.store.persist(self.content_item_id, records)
        self.put(platform_key, text)
        return record

    def set_approved(self, platform_key: str, approved: bool = True) -> Optional[TransformRecord]:
        records = self.store.load(self.content_item_id)
        record = records.get(platform_key)
        if record is None:
            return None
        record.approved = approved
        self.store.persist(self.content_item_id, records)
        return record
