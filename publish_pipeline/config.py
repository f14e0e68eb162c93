"""
Configuration for the publishing pipeline engine.

Engine-wide settings come from the environment (``EngineSettings.from_env``).
Per-project settings and publishing profiles are read from JSON files that
live next to the project's ``.pipeline.json``:

    <project>/.project.json   -- url base, export directory, site title
    <project>/.profiles.json  -- publishing profiles (accounts) for social stages
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from publish_pipeline.storage import load_json, save_json

logger = logging.getLogger("publish_pipeline.config")

# ---------------------------------------------------------------------------
# Paths & Constants
# ---------------------------------------------------------------------------

BASE_DIR = Path(os.environ.get("PUBLISH_PIPELINE_HOME", Path.cwd() / ".publish_pipeline"))
DATA_DIR = BASE_DIR / "executions"

PROJECT_SETTINGS_FILE = ".project.json"
PROFILES_FILE = ".profiles.json"

MODEL_SONNET = "claude-sonnet-4-20250514"

DEFAULT_PROBE_TIMEOUT = 30.0
DEFAULT_TRANSFORM_TIMEOUT = 120.0
DEFAULT_PUBLISH_TIMEOUT = 60.0
DEFAULT_MAX_WORKERS = 4


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------


@dataclass
class EngineSettings:
    """Timeouts, worker pool size and storage location for the engine."""
    data_dir: str = str(DATA_DIR)
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    transform_timeout: float = DEFAULT_TRANSFORM_TIMEOUT
    publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    model: str = MODEL_SONNET
    max_transform_tokens: int = 2000

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EngineSettings:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(**filtered)

    @classmethod
    def from_env(cls) -> EngineSettings:
        """Build settings from PUBLISH_PIPELINE_* environment variables."""
        home = os.environ.get("PUBLISH_PIPELINE_HOME")
        data_dir = str(Path(home) / "executions") if home else str(DATA_DIR)
        return cls(
            data_dir=data_dir,
            probe_timeout=_env_float("PUBLISH_PIPELINE_PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT),
            transform_timeout=_env_float(
                "PUBLISH_PIPELINE_TRANSFORM_TIMEOUT", DEFAULT_TRANSFORM_TIMEOUT,
            ),
            publish_timeout=_env_float("PUBLISH_PIPELINE_PUBLISH_TIMEOUT", DEFAULT_PUBLISH_TIMEOUT),
            max_workers=int(_env_float("PUBLISH_PIPELINE_MAX_WORKERS", DEFAULT_MAX_WORKERS)),
            model=os.environ.get("PUBLISH_PIPELINE_MODEL", MODEL_SONNET),
        )


# ---------------------------------------------------------------------------
# Project settings
# ---------------------------------------------------------------------------


@dataclass
class ProjectSettings:
    """Per-project publishing settings."""
    url_base: str = ""
    export_dir: str = "public"
    site_title: str = ""
    template_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ProjectSettings:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(**filtered)

    @classmethod
    def load(cls, project_dir: Path) -> ProjectSettings:
        return cls.from_dict(load_json(Path(project_dir) / PROJECT_SETTINGS_FILE, default={}))

    def save(self, project_dir: Path) -> None:
        save_json(Path(project_dir) / PROJECT_SETTINGS_FILE, self.to_dict())

    def resolve_export_dir(self, project_dir: Path) -> Path:
        path = Path(self.export_dir)
        return path if path.is_absolute() else Path(project_dir) / path

    def build_url(self, uri: str) -> Optional[str]:
        """Join the url base and *uri*; returns None when no base is set."""
        if not self.url_base:
            return None
        base = self.url_base if self.url_base.endswith("/") else self.url_base + "/"
        return base + uri.lstrip("/")


# ---------------------------------------------------------------------------
# Publishing profiles
# ---------------------------------------------------------------------------


@dataclass
class PublishingProfile:
    """An external account that a social stage publishes through."""
    id: str
    name: str = ""
    platform: str = ""
    settings: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PublishingProfile:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        filtered["settings"] = {
            str(k): str(v) for k, v in (filtered.get("settings") or {}).items()
        }
        return cls(**filtered)

    def setting_bool(self, key: str, default: bool = False) -> bool:
        value = self.settings.get(key)
        if value is None:
            return default
        return value.lower() == "true"

    @property
    def includes_url(self) -> bool:
        return self.setting_bool("includeUrl", False)

    @property
    def url_placement(self) -> str:
        return self.settings.get("urlPlacement", "end")


class ProfileRegistry:
    """Lookup of publishing profiles by id."""

    def __init__(self, profiles: Optional[List[PublishingProfile]] = None) -> None:
        self._profiles: Dict[str, PublishingProfile] = {p.id: p for p in profiles or []}

    @classmethod
    def load(cls, project_dir: Path) -> ProfileRegistry:
        raw = load_json(Path(project_dir) / PROFILES_FILE, default=[])
        if isinstance(raw, dict):
            raw = raw.get("profiles", [])
        profiles = []
        for entry in raw:
            if isinstance(entry, dict) and entry.get("id"):
                profiles.append(PublishingProfile.from_dict(entry))
        return cls(profiles)

    def get(self, profile_id: Optional[str]) -> Optional[PublishingProfile]:
        if not profile_id:
            return None
        return self._profiles.get(profile_id)

    def for_platform(self, platform: str) -> List[PublishingProfile]:
        return [p for p in self._profiles.values() if p.platform == platform]

    def all(self) -> List[PublishingProfile]:
        return list(self._profiles.values())
