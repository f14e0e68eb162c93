"""JSON file helpers shared by the pipeline, execution and transform stores."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from publish_pipeline.errors import PersistenceFailure

logger = logging.getLogger("publish_pipeline.storage")


def load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* when missing or corrupt."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return default
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Could not read %s (%s), using defaults", path, exc)
        return default


def save_json(path: Path, data: Any) -> None:
    """Atomic JSON write: write to .tmp then os.replace().

    Raises PersistenceFailure when the file cannot be written.
    """
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str, ensure_ascii=False)
        os.replace(tmp_path, path)
    except OSError as exc:
        logger.error("Failed to save %s: %s", path, exc)
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                logger.debug("Could not remove temp file %s", tmp_path)
        raise PersistenceFailure(
            f"Could not write {path.name}: {exc.strerror or exc}", path=str(path),
        ) from exc
