"""
Effective status derivation.

``effective_status`` layers the gatekeeper lock and external validity checks
on top of a stage's stored result. It is pure: it reads the pipeline, the
execution state and the supplied ``ExternalChecks`` and never mutates any of
them, so it is safe to call on every refresh.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from publish_pipeline.execution_state import ExecutionState, StageResult, StageStatus
from publish_pipeline.pipeline import Pipeline, StageConfig

logger = logging.getLogger("publish_pipeline.status_resolver")


def _never_running(stage_id: str) -> bool:
    return False


@dataclass
class ExternalChecks:
    """Side-effect-free queries the resolver may consult."""
    file_exists: Callable[[str], bool] = os.path.exists
    is_running: Callable[[str], bool] = field(default=_never_running)


@dataclass
class StageView:
    """A stage as presented to a caller: config, effective status, stored result."""
    stage: StageConfig
    status: StageStatus
    result: Optional[StageResult] = None

    @property
    def stage_id(self) -> str:
        return self.stage.id

    @property
    def action_label(self) -> str:
        return self.stage.definition.action_label

    @property
    def run_label(self) -> str:
        return run_label(self.status)

    def to_dict(self) -> dict:
        return {
            "id": self.stage.id,
            "kind": self.stage.kind.value,
            "name": self.stage.display_name,
            "status": self.status.value,
            "message": self.result.message if self.result else "",
            "publishedUrl": self.result.published_url if self.result else None,
            "action": self.action_label,
            "runLabel": self.run_label,
        }


def _stored_status(
    stage: StageConfig,
    execution: ExecutionState,
    checks: ExternalChecks,
) -> StageStatus:
    """Stored status after validity checks, ignoring the gatekeeper lock."""
    result = execution.get_result(stage.id)
    if result is None:
        return StageStatus.PENDING

    if result.status == StageStatus.COMPLETED and stage.definition.has_artifact:
        artifact = result.artifact_path
        if not artifact or not checks.file_exists(artifact):
            logger.debug("Artifact for %s missing: %s", stage.id, artifact)
            return StageStatus.WARNING

    if result.status == StageStatus.IN_PROGRESS and not checks.is_running(stage.id):
        return StageStatus.PENDING

    return result.status


def gatekeepers_complete(
    pipeline: Pipeline,
    execution: ExecutionState,
    checks: Optional[ExternalChecks] = None,
) -> bool:
    """True when every enabled gatekeeper resolves to COMPLETED."""
    checks = checks or ExternalChecks()
    return all(
        _stored_status(gk, execution, checks) == StageStatus.COMPLETED
        for gk in pipeline.gatekeeper_stages(enabled_only=True)
    )


def effective_status(
    stage: StageConfig,
    pipeline: Pipeline,
    execution: ExecutionState,
    checks: Optional[ExternalChecks] = None,
) -> StageStatus:
    """Status shown to the user for *stage*."""
    checks = checks or ExternalChecks()
    if stage.definition.is_social and not gatekeepers_complete(pipeline, execution, checks):
        return StageStatus.LOCKED
    return _stored_status(stage, execution, checks)


def list_stages(
    pipeline: Pipeline,
    execution: ExecutionState,
    checks: Optional[ExternalChecks] = None,
) -> List[StageView]:
    """Enabled stages, gatekeepers first, each group ordered by ``order``."""
    checks = checks or ExternalChecks()
    ordered = pipeline.gatekeeper_stages(enabled_only=True) + pipeline.gated_stages(enabled_only=True)
    return [
        StageView(
            stage=stage,
            status=effective_status(stage, pipeline, execution, checks),
            result=execution.get_result(stage.id),
        )
        for stage in ordered
    ]


def run_label(status: StageStatus) -> str:
    """Verb offered for running a stage in *status*."""
    if status == StageStatus.COMPLETED:
        return "Re-run"
    if status == StageStatus.FAILED:
        return "Retry"
    if status in (StageStatus.WARNING, StageStatus.IN_PROGRESS):
        return "Continue"
    return "Run"
