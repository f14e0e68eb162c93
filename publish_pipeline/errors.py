"""
Exception hierarchy for the publishing pipeline engine.

Three families, handled differently by the coordinator:

    ConfigurationError   -- rejected synchronously, before any state changes
    ExternalCallFailure  -- raised by collaborators, always folded into a
                            FAILED StageResult, never escapes ``run()``
    PersistenceFailure   -- a disk write failed; in-memory state stays applied
"""

from __future__ import annotations

from typing import Any, Optional


class PipelineEngineError(Exception):
    """Base exception for all publishing pipeline errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(PipelineEngineError):
    """Raised when a pipeline edit or run request violates a stage rule."""

    def __init__(self, message: str, stage_id: Optional[str] = None) -> None:
        self.stage_id = stage_id
        super().__init__(message)


class ExternalCallFailure(PipelineEngineError):
    """Raised by an external collaborator (network, AI provider, publisher)."""
    pass


class TransformError(ExternalCallFailure):
    """Raised when AI transform generation fails."""
    pass


class PublishError(ExternalCallFailure):
    """Raised when a publishing client cannot complete a post."""
    pass


class ProbeError(ExternalCallFailure):
    """Raised when a URL probe cannot be performed at all."""
    pass


class PersistenceFailure(PipelineEngineError):
    """Raised when pipeline, execution or transform state cannot be written.

    ``result`` holds the StageResult that was already applied in memory when
    the failure happened during a stage run, so callers can still show it.
    """

    def __init__(self, message: str, path: str = "", result: Any = None) -> None:
        self.path = path
        self.result = result
        super().__init__(message)
