"""
Execution coordinator -- runs one stage of the pipeline for one content item.

Run protocol (``ExecutionCoordinator.run``):

    1. reject locked / unknown / disabled stages with ConfigurationError
    2. store an IN_PROGRESS placeholder and persist it
    3. dispatch on the stage kind through ``self._actions``
    4. store the final result and persist it

Every action failure, timeout or provider error becomes a FAILED result.
The only exception that escapes a run is PersistenceFailure for the final
write, carrying the result that was already applied in memory.

Threading: the asyncio loop that awaits ``run()`` is the only writer of
execution state, transform caches and progress subscribers. Blocking work
(HTML export, URL probe) runs in a ThreadPoolExecutor; workers only return
values and report progress through ``ProgressChannel.emit_threadsafe``.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from publish_pipeline.collaborators import (
    AnthropicTransformer,
    ContentItem,
    FileHtmlExporter,
    HtmlExporter,
    PlatformPublisher,
    Publisher,
    Transformer,
    UrlProber,
    extract_verification_code,
    generate_verification_code,
    probe_url,
)
from publish_pipeline.config import (
    EngineSettings,
    ProfileRegistry,
    ProjectSettings,
    PublishingProfile,
)
from publish_pipeline.errors import (
    ConfigurationError,
    ExternalCallFailure,
    PersistenceFailure,
    TransformError,
)
from publish_pipeline.execution_state import ExecutionState, ExecutionStore, StageResult, StageStatus
from publish_pipeline.pipeline import Pipeline, PipelineStore, StageConfig
from publish_pipeline.stage_catalog import StageKind
from publish_pipeline.status_resolver import ExternalChecks, StageView, effective_status, list_stages
from publish_pipeline.transform_cache import TransformCache, TransformRecord, TransformStore

logger = logging.getLogger("publish_pipeline.coordinator")


# ---------------------------------------------------------------------------
# Progress channel
# ---------------------------------------------------------------------------


class ProgressPhase(str, Enum):
    STARTED = "started"
    EXPORTING = "exporting"
    PROBING = "probing"
    GENERATING = "generating"
    TRANSFORM_READY = "transform_ready"
    PUBLISHING = "publishing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    WARNING = "warning"
    FAILED = "failed"


@dataclass(frozen=True)
class Progress:
    item_id: str
    stage_id: str
    phase: ProgressPhase
    detail: str = ""


ProgressCallback = Callable[[Progress], None]

_FINAL_PHASES = {
    StageStatus.COMPLETED: ProgressPhase.COMPLETED,
    StageStatus.WARNING: ProgressPhase.WARNING,
    StageStatus.FAILED: ProgressPhase.FAILED,
    StageStatus.PENDING: ProgressPhase.AWAITING_CONFIRMATION,
}


class ProgressChannel:
    """Observer list for run progress. Emit only from the owner loop."""

    def __init__(self) -> None:
        self._subscribers: List[ProgressCallback] = []

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, progress: Progress) -> None:
        logger.debug(
            "[%s/%s] %s %s",
            progress.item_id[:24], progress.stage_id, progress.phase.value, progress.detail,
        )
        for callback in list(self._subscribers):
            try:
                callback(progress)
            except Exception as exc:
                logger.warning("Progress subscriber %r raised: %s", callback, exc)

    def emit_threadsafe(self, loop: asyncio.AbstractEventLoop, progress: Progress) -> None:
        """Hand *progress* to the owner loop from a worker thread."""
        loop.call_soon_threadsafe(self.emit, progress)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class ManualConfirmation(str, Enum):
    COPIED = "copied"
    MARKED_DONE = "done"


@dataclass
class ItemSession:
    """Execution state and transform cache for one open content item."""
    item: ContentItem
    execution: ExecutionState
    cache: TransformCache
    transform_failure: Optional[PersistenceFailure] = None


Mutation = Callable[[Pipeline], Any]
StageAction = Callable[..., Awaitable[StageResult]]


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class ExecutionCoordinator:
    """Runs pipeline stages for content items and owns their state."""

    def __init__(
        self,
        project_dir: Path,
        exporter: HtmlExporter,
        transformer: Transformer,
        publisher: Publisher,
        prober: UrlProber = probe_url,
        settings: Optional[EngineSettings] = None,
        project_settings: Optional[ProjectSettings] = None,
        profiles: Optional[ProfileRegistry] = None,
        file_exists: Callable[[str], bool] = os.path.exists,
        executor: Optional[concurrent.futures.Executor] = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.settings = settings or EngineSettings.from_env()
        self.project_settings = project_settings or ProjectSettings.load(self.project_dir)
        self.profiles = profiles or ProfileRegistry.load(self.project_dir)
        self.exporter = exporter
        self.transformer = transformer
        self.publisher = publisher
        self.prober = prober
        self.file_exists = file_exists
        self.progress = ProgressChannel()

        self.pipeline_store = PipelineStore(self.project_dir)
        self.pipeline: Pipeline = self.pipeline_store.load()
        data_dir = Path(self.settings.data_dir)
        self.execution_store = ExecutionStore(data_dir)
        self.transform_store = TransformStore(data_dir)

        self._owns_executor = executor is None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.max_workers,
            thread_name_prefix="publish-worker",
        )
        self._sessions: Dict[str, ItemSession] = {}
        self._active: Set[Tuple[str, str]] = set()

        self._actions: Dict[StageKind, StageAction] = {
            StageKind.WEB_EXPORT: self._run_web_export,
            StageKind.URL_VERIFY: self._run_url_verify,
            StageKind.SOCIAL_PUBLISH: self._run_publish,
            StageKind.ARTICLE_PUBLISH: self._run_publish,
            StageKind.MANUAL_COPY_PASTE: self._run_manual_copy_paste,
            StageKind.STATIC_EXPORT: self._run_static_export,
        }

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # -- Sessions ----------------------------------------------------------

    def open_item(self, item: ContentItem) -> ItemSession:
        """Load (or create) the execution state and cache for *item*."""
        session = self._sessions.get(item.id)
        if session is None:
            execution = self.execution_store.load(item.id, self.pipeline.id)
            cache = TransformCache(item.id, self.transform_store)
            session = ItemSession(item=item, execution=execution, cache=cache)
            self._sessions[item.id] = session
            logger.debug("Opened %s (%d stored results)", item.id[:24], len(execution.results))
        else:
            session.item = item
        return session

    def close_item(self, item_id: str) -> None:
        self._sessions.pop(item_id, None)

    def is_running(self, item_id: str, stage_id: str) -> bool:
        return (item_id, stage_id) in self._active

    def checks_for(self, item_id: str) -> ExternalChecks:
        return ExternalChecks(
            file_exists=self.file_exists,
            is_running=lambda stage_id: self.is_running(item_id, stage_id),
        )

    # -- Queries -----------------------------------------------------------

    def list_stages(self, item: ContentItem) -> List[StageView]:
        session = self.open_item(item)
        return list_stages(self.pipeline, session.execution, self.checks_for(item.id))

    def stage_status(self, stage_id: str, item: ContentItem) -> StageStatus:
        session = self.open_item(item)
        stage = self.pipeline.require_stage(stage_id)
        return effective_status(stage, self.pipeline, session.execution, self.checks_for(item.id))

    def transform_text(self, stage_id: str, item: ContentItem) -> Optional[str]:
        stage = self._require_transform_stage(stage_id)
        return self.open_item(item).cache.lookup(self._platform(stage))

    # -- Transforms --------------------------------------------------------

    async def generate_transform(
        self, stage_id: str, item: ContentItem, force: bool = False,
    ) -> str:
        """Return the stage's transform, generating it when absent or *force*."""
        stage = self._require_transform_stage(stage_id)
        session = self.open_item(item)
        text = await self._obtain_transform(stage, session, force=force)
        failure, session.transform_failure = session.transform_failure, None
        if failure is not None:
            raise failure
        return text

    def save_transform_edit(self, stage_id: str, item: ContentItem, text: str) -> TransformRecord:
        stage = self._require_transform_stage(stage_id)
        key = self._platform(stage)
        record = self.open_item(item).cache.write_through(key, text)
        logger.info("Saved edited transform for %s/%s", item.id[:24], key)
        return record

    def approve_transform(
        self, stage_id: str, item: ContentItem, approved: bool = True,
    ) -> TransformRecord:
        stage = self._require_transform_stage(stage_id)
        key = self._platform(stage)
        record = self.open_item(item).cache.set_approved(key, approved)
        if record is None:
            raise ConfigurationError(
                f"No transform for {key} to approve yet", stage_id=stage_id,
            )
        return record

    def _require_transform_stage(self, stage_id: str) -> StageConfig:
        stage = self.pipeline.require_stage(stage_id)
        if not stage.definition.requires_transform:
            raise ConfigurationError(
                f"{stage.display_name} does not use a transform", stage_id=stage_id,
            )
        return stage

    # -- Pipeline editing --------------------------------------------------

    def edit_pipeline(self, mutations: Union[Mutation, Iterable[Mutation]]) -> Pipeline:
        """Apply *mutations* to a copy of the pipeline and commit all or none.

        ConfigurationError from any mutation leaves the pipeline untouched.
        On commit every open item's memory cache is cleared and the pipeline
        is saved; a PersistenceFailure from the save leaves the commit applied.
        """
        steps = [mutations] if callable(mutations) else list(mutations)
        draft = self.pipeline.copy()
        for mutate in steps:
            mutate(draft)
        self.pipeline = draft
        for session in self._sessions.values():
            session.cache.clear()
        self.pipeline_store.save(draft)
        logger.info("Pipeline updated: %s", draft)
        return draft

    # -- Run protocol ------------------------------------------------------

    async def run(
        self,
        stage_id: str,
        item: ContentItem,
        confirmation: Optional[ManualConfirmation] = None,
        edited_text: Optional[str] = None,
    ) -> StageResult:
        """Run one stage for *item* and return its recorded result."""
        session = self.open_item(item)
        stage = self.pipeline.get_stage(stage_id)
        if stage is None:
            raise ConfigurationError(f"No stage '{stage_id}' in pipeline", stage_id=stage_id)
        if not stage.enabled:
            raise ConfigurationError(f"{stage.display_name} is disabled", stage_id=stage_id)
        status = effective_status(stage, self.pipeline, session.execution, self.checks_for(item.id))
        if status == StageStatus.LOCKED:
            raise ConfigurationError(
                f"{stage.display_name} is locked until export and URL verification complete",
                stage_id=stage_id,
            )
        if stage.profile_id and self.profiles.get(stage.profile_id) is None:
            raise ConfigurationError(
                f"Publishing profile '{stage.profile_id}' not found", stage_id=stage_id,
            )

        session.transform_failure = None
        key = (item.id, stage.id)
        self._active.add(key)
        try:
            session.execution.set_result(stage.id, StageResult.in_progress())
            try:
                self.execution_store.persist(session.execution)
            except PersistenceFailure as exc:
                logger.warning("In-progress marker for %s not saved: %s", stage.id, exc.message)
            self._emit(session, stage, ProgressPhase.STARTED, stage.definition.action_label)

            action = self._actions[stage.kind]
            try:
                result = await action(
                    stage, session, confirmation=confirmation, edited_text=edited_text,
                )
            except Exception as exc:
                logger.error("[%s/%s] %s failed: %s", item.id[:24], stage.id, stage.kind.value, exc)
                logger.debug("Failure detail", exc_info=True)
                result = StageResult.failed(f"{stage.display_name} failed: {exc}")
        finally:
            self._active.discard(key)

        session.execution.set_result(stage.id, result)
        if result.status == StageStatus.WARNING:
            logger.warning("[%s/%s] %s", item.id[:24], stage.id, result.message)
        else:
            logger.info("[%s/%s] %s: %s", item.id[:24], stage.id, result.status.value, result.message)
        self._emit(session, stage, _FINAL_PHASES.get(result.status, ProgressPhase.COMPLETED), result.message)

        try:
            self.execution_store.persist(session.execution)
        except PersistenceFailure as exc:
            exc.result = result
            raise
        failure, session.transform_failure = session.transform_failure, None
        if failure is not None:
            failure.result = result
            raise failure
        return result

    # -- Helpers -----------------------------------------------------------

    def _emit(self, session: ItemSession, stage: StageConfig, phase: ProgressPhase, detail: str = "") -> None:
        self.progress.emit(Progress(session.item.id, stage.id, phase, detail))

    async def _with_timeout(self, awaitable: Awaitable[Any], timeout: float, what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise ExternalCallFailure(f"{what} timed out after {timeout:g}s") from None

    async def _in_worker(
        self,
        session: ItemSession,
        stage: StageConfig,
        phase: ProgressPhase,
        fn: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
        what: str = "",
    ) -> Any:
        """Run blocking *fn* on the worker pool; progress is posted back to the loop."""
        loop = asyncio.get_running_loop()
        progress = Progress(session.item.id, stage.id, phase, what)

        def _job() -> Any:
            self.progress.emit_threadsafe(loop, progress)
            return fn(*args)

        future = loop.run_in_executor(self._executor, _job)
        if timeout is None:
            return await future
        return await self._with_timeout(future, timeout, what or "Worker call")

    def _platform(self, stage: StageConfig) -> str:
        return stage.resolve_platform(self.profiles)

    def _resolve_profile(self, stage: StageConfig) -> PublishingProfile:
        if stage.profile_id:
            profile = self.profiles.get(stage.profile_id)
            if profile is None:
                raise ConfigurationError(
                    f"Publishing profile '{stage.profile_id}' not found", stage_id=stage.id,
                )
            return profile
        return PublishingProfile(id=stage.id, name=stage.display_name, platform=self._platform(stage))

    def _url_options(self, stage: StageConfig) -> Tuple[bool, str]:
        """(include verified URL, placement) with stage settings over the profile's."""
        profile = self.profiles.get(stage.profile_id)
        include = stage.setting_bool("includeUrl", profile.includes_url if profile else False)
        placement = stage.settings.get("urlPlacement") or (profile.url_placement if profile else "end")
        return include, placement

    def _build_prompt(self, stage: StageConfig, session: ItemSession) -> str:
        prompt = stage.resolve_prompt(self.profiles)
        url = session.execution.verified_url
        include, placement = self._url_options(stage)
        if url and include:
            where = "beginning" if placement == "start" else "end"
            prompt += (
                f"\n\nThe post links to the original article at {url}. "
                f"Place that link at the {where} of the post."
            )
        return prompt + "\n\nReturn only the transformed content."

    async def _obtain_transform(
        self, stage: StageConfig, session: ItemSession, force: bool = False,
    ) -> str:
        """Memory, then disk, then a fresh generation written through both tiers."""
        key = self._platform(stage)
        if not force:
            cached = session.cache.lookup(key)
            if cached is not None:
                logger.debug("Transform cache hit for %s", key)
                return cached

        self._emit(session, stage, ProgressPhase.GENERATING, key)
        text = await self._with_timeout(
            self.transformer.generate_transform(
                self._build_prompt(stage, session), session.item.markdown,
            ),
            self.settings.transform_timeout,
            "Transform generation",
        )
        if not text or not text.strip():
            raise TransformError("Transform generation returned no text")
        text = text.strip()
        self._store_transform(session, key, text)
        self._emit(session, stage, ProgressPhase.TRANSFORM_READY, key)
        return text

    def _store_transform(self, session: ItemSession, key: str, text: str) -> None:
        """Write through; on a disk failure keep the text in memory and defer the error."""
        try:
            session.cache.write_through(key, text)
        except PersistenceFailure as exc:
            logger.warning("Transform %s kept in memory only: %s", key, exc.message)
            session.cache.put(key, text)
            session.transform_failure = exc

    # -- Stage actions -----------------------------------------------------

    async def _run_web_export(self, stage: StageConfig, session: ItemSession, **_: Any) -> StageResult:
        code = generate_verification_code()
        path = await self._in_worker(
            session, stage, ProgressPhase.EXPORTING,
            self.exporter.render_and_write_html, session.item, code,
        )
        session.execution.verification_code = code
        return StageResult.completed(f"Exported to {path}", artifact_path=str(path))

    async def _run_url_verify(self, stage: StageConfig, session: ItemSession, **_: Any) -> StageResult:
        execution = session.execution
        url = execution.verified_url or self.project_settings.build_url(f"{session.item.slug}.html")
        if not url:
            return StageResult.failed("No URL to verify: set url_base in the project settings")

        timeout = self.settings.probe_timeout
        probe = await self._in_worker(
            session, stage, ProgressPhase.PROBING, self.prober, url, timeout,
            timeout=timeout, what=f"Probe of {url}",
        )
        if not probe.live:
            return StageResult.failed(f"{url} is not live: {probe.detail}")

        if stage.setting_bool("requireCodeMatch", True):
            expected = execution.verification_code
            found = extract_verification_code(probe.body)
            if not expected:
                return StageResult.warning(f"{url} is live but no export code is recorded; re-run the web export")
            if found is None:
                return StageResult.warning(f"{url} is live but no verification code found")
            if found != expected:
                return StageResult.warning(
                    f"{url} is live but verification code mismatch (expected {expected}, found {found})",
                )

        execution.verified_url = url
        return StageResult.completed(f"{url} is live", published_url=url)

    async def _run_publish(self, stage: StageConfig, session: ItemSession, **_: Any) -> StageResult:
        profile = self._resolve_profile(stage)
        text = await self._obtain_transform(stage, session)

        url = session.execution.verified_url
        include, placement = self._url_options(stage)
        if url and include and url not in text:
            text = f"{url}\n\n{text}" if placement == "start" else f"{text}\n\n{url}"

        options: Dict[str, str] = {"title": session.item.title}
        if stage.kind == StageKind.ARTICLE_PUBLISH:
            if url and stage.setting_bool("includeCanonical", True):
                options["canonicalUrl"] = url
            options["published"] = "true" if stage.setting_bool("published", True) else "false"
            tags = stage.settings.get("tags") or ",".join(session.item.tags)
            if tags:
                options["tags"] = tags

        platform = profile.platform or self._platform(stage)
        self._emit(session, stage, ProgressPhase.PUBLISHING, platform)
        outcome = await self._with_timeout(
            self.publisher.publish(profile, text, options),
            self.settings.publish_timeout,
            "Publish",
        )
        if not outcome.success:
            return StageResult.failed(f"Publish to {platform} failed: {outcome.message}")
        return StageResult.completed(
            outcome.message or f"Published to {platform}", published_url=outcome.url,
        )

    async def _run_manual_copy_paste(
        self,
        stage: StageConfig,
        session: ItemSession,
        confirmation: Optional[ManualConfirmation] = None,
        edited_text: Optional[str] = None,
        **_: Any,
    ) -> StageResult:
        if edited_text is not None:
            self._store_transform(session, self._platform(stage), edited_text)
        await self._obtain_transform(stage, session)
        if confirmation is None:
            return StageResult.pending("transform ready")
        if ManualConfirmation(confirmation) == ManualConfirmation.COPIED:
            return StageResult.completed("copied to clipboard")
        return StageResult.completed("marked as done")

    async def _run_static_export(self, stage: StageConfig, session: ItemSession, **_: Any) -> StageResult:
        text = await self._obtain_transform(stage, session)
        path = await self._in_worker(
            session, stage, ProgressPhase.EXPORTING,
            self.exporter.write_static_html, session.item, text,
        )
        return StageResult.completed(f"Exported to {path}", artifact_path=str(path))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_coordinator(
    project_dir: Path,
    settings: Optional[EngineSettings] = None,
) -> ExecutionCoordinator:
    """Coordinator wired to the default HTML, AI and publishing clients."""
    settings = settings or EngineSettings.from_env()
    project_settings = ProjectSettings.load(project_dir)
    return ExecutionCoordinator(
        project_dir,
        exporter=FileHtmlExporter(project_dir, project_settings),
        transformer=AnthropicTransformer(model=settings.model, max_tokens=settings.max_transform_tokens),
        publisher=PlatformPublisher(timeout=settings.publish_timeout),
        settings=settings,
        project_settings=project_settings,
    )
