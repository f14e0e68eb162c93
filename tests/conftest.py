"""
Shared fixtures for the publish pipeline test suite.

Provides a temp project, fake collaborators and a wired coordinator so that
all tests run WITHOUT any network or AI provider.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from publish_pipeline.collaborators import (
    ContentItem,
    ProbeResult,
    PublishResult,
    verification_comment,
)
from publish_pipeline.config import EngineSettings, ProfileRegistry, ProjectSettings, PublishingProfile
from publish_pipeline.coordinator import ExecutionCoordinator
from publish_pipeline.stage_catalog import StageKind


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeExporter:
    """Writes small HTML files into the export dir and remembers the code."""

    def __init__(self, export_dir: Path):
        self.export_dir = export_dir
        self.codes: List[str] = []
        self.static_texts: List[str] = []
        self.fail_with: Optional[Exception] = None

    def render_and_write_html(self, item, verification_code):
        if self.fail_with:
            raise self.fail_with
        self.codes.append(verification_code)
        self.export_dir.mkdir(parents=True, exist_ok=True)
        path = self.export_dir / f"{item.slug}.html"
        path.write_text(f"<html>{verification_comment(verification_code)}</html>", encoding="utf-8")
        return str(path)

    def write_static_html(self, item, text):
        self.static_texts.append(text)
        self.export_dir.mkdir(parents=True, exist_ok=True)
        path = self.export_dir / f"{item.slug}.hn.html"
        path.write_text(f"<html>{text}</html>", encoding="utf-8")
        return str(path)


class FakeProber:
    """Serves the last exported page for any URL, unless told otherwise."""

    def __init__(self, exporter: FakeExporter):
        self.exporter = exporter
        self.calls: List[Tuple[str, float]] = []
        self.override: Optional[ProbeResult] = None

    def __call__(self, url, timeout):
        self.calls.append((url, timeout))
        if self.override is not None:
            return self.override
        code = self.exporter.codes[-1] if self.exporter.codes else ""
        body = f"<html>{verification_comment(code)}</html>" if code else "<html></html>"
        return ProbeResult(live=True, detail="HTTP 200", status_code=200, body=body)


class FakeTransformer:
    def __init__(self, text: str = "Transformed post #blogging"):
        self.text = text
        self.generate_transform = AsyncMock(side_effect=self._generate)
        self.prompts: List[str] = []

    async def _generate(self, prompt, content):
        self.prompts.append(prompt)
        return self.text


class FakePublisher:
    def __init__(self):
        self.result = PublishResult(True, url="https://linkedin.test/post/1", message="Posted")
        self.calls: List[Tuple[PublishingProfile, str, Dict[str, str]]] = []
        self.publish = AsyncMock(side_effect=self._publish)

    async def _publish(self, profile, text, options=None):
        self.calls.append((profile, text, dict(options or {})))
        return self.result


# ---------------------------------------------------------------------------
# Project fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def project_dir(tmp_path):
    """A project with url base and a LinkedIn profile configured."""
    project = tmp_path / "project"
    project.mkdir()
    ProjectSettings(url_base="https://x.test", export_dir="public", site_title="X Test").save(project)
    profiles = [
        {"id": "li-main", "name": "Main LinkedIn", "platform": "linkedin",
         "settings": {"includeUrl": "true", "urlPlacement": "end"}},
        {"id": "x-main", "name": "X", "platform": "twitter", "settings": {}},
        {"id": "li-alt", "name": "Alt LinkedIn", "platform": "linkedin", "settings": {}},
    ]
    with open(project / ".profiles.json", "w", encoding="utf-8") as fh:
        json.dump(profiles, fh)
    return project


@pytest.fixture
def engine_settings(tmp_path):
    return EngineSettings(
        data_dir=str(tmp_path / "executions"),
        probe_timeout=2.0,
        transform_timeout=2.0,
        publish_timeout=2.0,
        max_workers=2,
    )


@pytest.fixture
def content_item():
    return ContentItem(id="post", title="Post", markdown="# Post\n\nHello world.")


@pytest.fixture
def exporter(project_dir):
    return FakeExporter(project_dir / "public")


@pytest.fixture
def prober(exporter):
    return FakeProber(exporter)


@pytest.fixture
def transformer():
    return FakeTransformer()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def make_coordinator(project_dir, engine_settings, exporter, prober, transformer, publisher):
    """Factory for coordinators sharing the same project and data dir."""
    created: List[ExecutionCoordinator] = []

    def _make(**overrides):
        kwargs = dict(
            exporter=exporter,
            transformer=transformer,
            publisher=publisher,
            prober=prober,
            settings=engine_settings,
            project_settings=ProjectSettings.load(project_dir),
            profiles=ProfileRegistry.load(project_dir),
        )
        kwargs.update(overrides)
        coordinator = ExecutionCoordinator(project_dir, **kwargs)
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        coordinator.shutdown()


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def linkedin_pipeline(coordinator):
    """[WebExport, UrlVerify, SocialPublish(linkedin)] committed on the coordinator."""
    def _seed(p):
        p.add_stage(StageKind.WEB_EXPORT)
        p.add_stage(StageKind.URL_VERIFY)
        p.add_stage(StageKind.SOCIAL_PUBLISH, profile_id="li-main", platform_hint="linkedin")

    return coordinator.edit_pipeline(_seed)


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text="", headers=None):
        resp = AsyncMock()
        resp.status = status
        resp.json = AsyncMock(return_value=json_data or {})
        resp.text = AsyncMock(return_value=text)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session(mock_aiohttp_response):
    """Create a mock aiohttp ClientSession."""
    session = AsyncMock()
    default_resp = mock_aiohttp_response(200, {"ok": True})
    session.get = MagicMock(return_value=default_resp)
    session.post = MagicMock(return_value=default_resp)
    session.close = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session


@pytest.fixture
def mock_anthropic():
    """Mock AsyncAnthropic client."""
    client = MagicMock()
    response = MagicMock()
    response.content = [MagicMock(text="Generated content here")]
    client.messages.create = AsyncMock(return_value=response)
    return client
