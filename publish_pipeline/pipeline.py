"""
Pipeline model -- the ordered, user-edited list of stage configurations.

One pipeline per project, stored as ``<project>/.pipeline.json`` and shared
by every content item in that project. All mutations are synchronous and
in-memory; nothing is written until ``PipelineStore.save()`` is called.

Rules enforced here (every rejection raises ConfigurationError before the
pipeline is touched):
    - at most one stage per gatekeeper kind
    - gatekeepers cannot be removed or reordered
    - a gated stage never moves across a gatekeeper
    - reordering swaps two order values; other stages keep theirs
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from publish_pipeline.config import ProfileRegistry
from publish_pipeline.errors import ConfigurationError
from publish_pipeline.stage_catalog import (
    StageDefinition,
    StageKind,
    default_prompt,
    derive_stage_id,
    get_definition,
)
from publish_pipeline.storage import load_json, save_json

logger = logging.getLogger("publish_pipeline.pipeline")

PIPELINE_FILE = ".pipeline.json"


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


# ---------------------------------------------------------------------------
# StageConfig
# ---------------------------------------------------------------------------


@dataclass
class StageConfig:
    """One configured stage within a pipeline."""
    id: str
    kind: StageKind
    order: int = 0
    profile_id: Optional[str] = None
    platform_hint: Optional[str] = None
    prompt: Optional[str] = None
    enabled: bool = True
    settings: Dict[str, str] = field(default_factory=dict)

    @property
    def definition(self) -> StageDefinition:
        return get_definition(self.kind)

    @property
    def is_gatekeeper(self) -> bool:
        return self.definition.is_gatekeeper

    @property
    def platform_key(self) -> str:
        """Platform identity without profile lookup: hint, kind default, stage id."""
        return self.platform_hint or self.definition.default_platform or self.id

    def resolve_platform(self, profiles: Optional[ProfileRegistry] = None) -> str:
        """Identity under which this stage's transform is cached.

        The profile's platform wins, so two stages publishing to the same
        platform through different accounts share one transform.
        """
        profile = profiles.get(self.profile_id) if profiles is not None else None
        if profile is not None and profile.platform:
            return profile.platform.lower()
        return self.platform_key

    @property
    def effective_prompt(self) -> str:
        return self.resolve_prompt()

    def resolve_prompt(self, profiles: Optional[ProfileRegistry] = None) -> str:
        """Custom prompt, else the default for the resolved platform."""
        if self.prompt and self.prompt.strip():
            return self.prompt
        return default_prompt(self.kind, self.resolve_platform(profiles))

    @property
    def display_name(self) -> str:
        name = self.definition.display_name
        target = self.platform_hint or self.profile_id
        if self.kind == StageKind.SOCIAL_PUBLISH and target:
            name = f"{name} ({target})"
        return name

    def setting_bool(self, key: str, default: bool = False) -> bool:
        value = self.settings.get(key)
        if value is None:
            return default
        return value.lower() == "true"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "order": self.order,
            "enabled": self.enabled,
            "settings": dict(self.settings),
        }
        if self.profile_id is not None:
            data["profileId"] = self.profile_id
        if self.platform_hint is not None:
            data["platformHint"] = self.platform_hint
        if self.prompt and self.prompt.strip():
            data["prompt"] = self.prompt
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional[StageConfig]:
        """Rebuild a stage; returns None for unknown kinds."""
        kind = StageKind.parse(data.get("kind") or data.get("type"))
        if kind is None:
            logger.warning("Skipping stage with unknown kind: %r", data.get("kind"))
            return None
        profile_id = data.get("profileId")
        platform_hint = data.get("platformHint")
        try:
            order = int(data.get("order", 0))
        except (TypeError, ValueError):
            order = 0
        settings = data.get("settings") or data.get("stageSettings") or {}
        if not isinstance(settings, dict):
            logger.warning("Ignoring malformed settings for stage %r", data.get("id"))
            settings = {}
        return cls(
            id=data.get("id") or derive_stage_id(kind, profile_id, platform_hint),
            kind=kind,
            order=order,
            profile_id=profile_id,
            platform_hint=platform_hint,
            prompt=data.get("prompt"),
            enabled=_parse_bool(data.get("enabled"), True),
            settings={str(k): str(v) for k, v in settings.items()},
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class Pipeline:
    """Ordered collection of stage configurations for a project."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Default Pipeline"
    stages: List[StageConfig] = field(default_factory=list)

    @classmethod
    def create_default(cls, with_gatekeepers: bool = False) -> Pipeline:
        """New pipeline; optionally seeded with the two gatekeeper stages."""
        pipeline = cls()
        if with_gatekeepers:
            pipeline.add_stage(StageKind.WEB_EXPORT)
            pipeline.add_stage(StageKind.URL_VERIFY, settings={"requireCodeMatch": "true"})
        return pipeline

    # -- Queries -----------------------------------------------------------

    def sorted_stages(self) -> List[StageConfig]:
        return sorted(self.stages, key=lambda s: s.order)

    def enabled_stages(self) -> List[StageConfig]:
        return [s for s in self.sorted_stages() if s.enabled]

    def gatekeeper_stages(self, enabled_only: bool = False) -> List[StageConfig]:
        stages = self.enabled_stages() if enabled_only else self.sorted_stages()
        return [s for s in stages if s.is_gatekeeper]

    def gated_stages(self, enabled_only: bool = False) -> List[StageConfig]:
        stages = self.enabled_stages() if enabled_only else self.sorted_stages()
        return [s for s in stages if not s.is_gatekeeper]

    def get_stage(self, stage_id: str) -> Optional[StageConfig]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def require_stage(self, stage_id: str) -> StageConfig:
        stage = self.get_stage(stage_id)
        if stage is None:
            raise ConfigurationError(f"No stage '{stage_id}' in pipeline", stage_id=stage_id)
        return stage

    def has_kind(self, kind: StageKind) -> bool:
        return any(s.kind == kind for s in self.stages)

    def max_order(self) -> int:
        return max((s.order for s in self.stages), default=-1)

    # -- Mutations ---------------------------------------------------------

    def add_stage(
        self,
        kind: StageKind,
        profile_id: Optional[str] = None,
        platform_hint: Optional[str] = None,
        prompt: Optional[str] = None,
        settings: Optional[Dict[str, str]] = None,
    ) -> StageConfig:
        """Append a stage of *kind* after every existing stage."""
        definition = get_definition(kind)
        if definition.is_gatekeeper and self.has_kind(kind):
            raise ConfigurationError(
                f"{definition.display_name} stage already exists in this pipeline",
            )
        if kind == StageKind.SOCIAL_PUBLISH and not profile_id:
            raise ConfigurationError("No publishing profile selected for social stage")

        stage_id = derive_stage_id(kind, profile_id, platform_hint)
        if self.get_stage(stage_id) is not None:
            raise ConfigurationError(
                f"A stage for this destination already exists ({stage_id})", stage_id=stage_id,
            )

        stage = StageConfig(
            id=stage_id,
            kind=kind,
            order=self.max_order() + 1,
            profile_id=profile_id,
            platform_hint=platform_hint,
            prompt=prompt if prompt and prompt.strip() else None,
            settings=dict(settings or {}),
        )
        self.stages.append(stage)
        logger.info("Added stage %s at order %d", stage.id, stage.order)
        return stage

    def remove_stage(self, stage_id: str) -> StageConfig:
        """Remove a non-gatekeeper stage; remaining order values are kept."""
        stage = self.require_stage(stage_id)
        if stage.is_gatekeeper:
            raise ConfigurationError("Gatekeeper stages cannot be removed", stage_id=stage_id)
        self.stages.remove(stage)
        logger.info("Removed stage %s", stage_id)
        return stage

    def move_up(self, stage_id: str) -> None:
        self._move(stage_id, -1)

    def move_down(self, stage_id: str) -> None:
        self._move(stage_id, 1)

    def _move(self, stage_id: str, direction: int) -> None:
        stage = self.require_stage(stage_id)
        if stage.is_gatekeeper:
            raise ConfigurationError("Gatekeeper stages cannot be reordered", stage_id=stage_id)

        ordered = self.sorted_stages()
        index = ordered.index(stage)
        neighbour_index = index + direction
        if neighbour_index < 0 or neighbour_index >= len(ordered):
            edge = "top" if direction < 0 else "bottom"
            raise ConfigurationError(f"Stage is already at the {edge}", stage_id=stage_id)

        neighbour = ordered[neighbour_index]
        if neighbour.is_gatekeeper:
            where = "above" if direction < 0 else "below"
            raise ConfigurationError(
                f"Cannot move {where} gatekeeper stages", stage_id=stage_id,
            )
        stage.order, neighbour.order = neighbour.order, stage.order

    def set_enabled(self, stage_id: str, enabled: bool) -> StageConfig:
        stage = self.require_stage(stage_id)
        stage.enabled = enabled
        return stage

    def set_prompt(self, stage_id: str, prompt: Optional[str]) -> StageConfig:
        """Override a stage's prompt; None or blank restores the default."""
        stage = self.require_stage(stage_id)
        if not stage.definition.requires_transform:
            raise ConfigurationError(
                f"{stage.definition.display_name} stages have no prompt", stage_id=stage_id,
            )
        stage.prompt = prompt if prompt and prompt.strip() else None
        return stage

    def copy(self) -> Pipeline:
        return copy.deepcopy(self)

    # -- Serialization -----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "stages": [s.to_dict() for s in self.sorted_stages()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Pipeline:
        pipeline = cls(
            id=data.get("id") or str(uuid.uuid4()),
            name=data.get("name") or "Default Pipeline",
        )
        for raw in data.get("stages", []):
            if not isinstance(raw, dict):
                continue
            stage = StageConfig.from_dict(raw)
            if stage is not None:
                pipeline.stages.append(stage)
        return pipeline

    def __str__(self) -> str:
        return f"{self.name} ({len(self.stages)} stages)"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class PipelineStore:
    """Loads and saves the project's pipeline file."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = Path(project_dir)

    @property
    def path(self) -> Path:
        return self.project_dir / PIPELINE_FILE

    def load(self) -> Pipeline:
        """Load the pipeline, creating an empty one on first open."""
        raw = load_json(self.path, default={})
        if not raw:
            logger.info("No pipeline at %s, starting with an empty one", self.path)
            return Pipeline.create_default()
        return Pipeline.from_dict(raw)

    def save(self, pipeline: Pipeline) -> None:
        save_json(self.path, pipeline.to_dict())
        logger.debug("Saved pipeline %s to %s", pipeline.id[:8], self.path)
