"""
External collaborators consumed by the execution coordinator.

The coordinator only sees the narrow interfaces declared as Protocols below.
Default implementations are provided for running the engine end to end:

    FileHtmlExporter      -- markdown -> HTML through a jinja2 template
    probe_url             -- blocking liveness probe (urllib)
    AnthropicTransformer  -- platform rewrites through the Anthropic API
    PlatformPublisher     -- LinkedIn UGC, X v2 tweets, Dev.to articles (aiohttp)

Tests substitute fakes for all of them.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import urllib.error
import urllib.request
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
import anthropic
import markdown
from jinja2 import Environment, FileSystemLoader

from publish_pipeline.config import MODEL_SONNET, ProjectSettings, PublishingProfile
from publish_pipeline.errors import ProbeError, PublishError, TransformError

logger = logging.getLogger("publish_pipeline.collaborators")

TEMPLATE_DIR = Path(__file__).parent / "templates"
DEFAULT_TEMPLATE = "post.html"
USER_AGENT = "PublishPipeline/1.0"

VERIFICATION_PREFIX = "pipeline-verify"
_VERIFICATION_RE = re.compile(r"<!--\s*pipeline-verify:([A-Za-z0-9]+)\s*-->")


def _slugify(text: str) -> str:
    """Convert text to a URL-friendly slug."""
    slug = text.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def generate_verification_code() -> str:
    return uuid.uuid4().hex[:12]


def verification_comment(code: str) -> str:
    return f"<!-- {VERIFICATION_PREFIX}:{code} -->"


def extract_verification_code(html: str) -> Optional[str]:
    """Return the verification code embedded in *html*, if any."""
    match = _VERIFICATION_RE.search(html or "")
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Content item
# ---------------------------------------------------------------------------


@dataclass
class ContentItem:
    """A post the pipeline runs against."""
    id: str
    title: str
    markdown: str
    slug: str = ""
    source_path: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.slug:
            self.slug = _slugify(self.title) or _slugify(self.id) or "post"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_markdown_file(cls, path: Path) -> ContentItem:
        """Load a markdown post; the title is its first ``#`` heading."""
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        title = path.stem.replace("-", " ").replace("_", " ").strip().title()
        for line in text.splitlines():
            stripped = line.strip()
            if stripped.startswith("# "):
                title = stripped[2:].strip()
                break
        return cls(id=path.stem, title=title, markdown=text, source_path=str(path))


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


@dataclass
class ProbeResult:
    live: bool
    detail: str = ""
    status_code: Optional[int] = None
    body: str = ""


@dataclass
class PublishResult:
    success: bool
    url: Optional[str] = None
    message: str = ""


class HtmlExporter(Protocol):
    def render_and_write_html(self, item: ContentItem, verification_code: str) -> str:
        ...

    def write_static_html(self, item: ContentItem, text: str) -> str:
        ...


class UrlProber(Protocol):
    def __call__(self, url: str, timeout: float) -> ProbeResult:
        ...


class Transformer(Protocol):
    async def generate_transform(self, prompt: str, content: str) -> str:
        ...


class Publisher(Protocol):
    async def publish(
        self,
        profile: PublishingProfile,
        text: str,
        options: Optional[Dict[str, str]] = None,
    ) -> PublishResult:
        ...


# ---------------------------------------------------------------------------
# HTML export
# ---------------------------------------------------------------------------


class FileHtmlExporter:
    """Renders posts to ``<export_dir>/<slug>.html`` with a jinja2 template."""

    STATIC_SUFFIX = ".hn.html"

    def __init__(self, project_dir: Path, settings: Optional[ProjectSettings] = None) -> None:
        self.project_dir = Path(project_dir)
        self.settings = settings or ProjectSettings.load(self.project_dir)
        search_path = [str(TEMPLATE_DIR)]
        template_name = DEFAULT_TEMPLATE
        if self.settings.template_path:
            custom = Path(self.settings.template_path)
            if not custom.is_absolute():
                custom = self.project_dir / custom
            search_path.insert(0, str(custom.parent))
            template_name = custom.name
        self.template_name = template_name
        self.env = Environment(
            loader=FileSystemLoader(search_path),
            autoescape=True,
        )

    @property
    def export_dir(self) -> Path:
        return self.settings.resolve_export_dir(self.project_dir)

    def _render(self, item: ContentItem, body_markdown: str, **extra: Any) -> str:
        body = markdown.markdown(body_markdown, extensions=["fenced_code", "tables"])
        template = self.env.get_template(self.template_name)
        return template.render(
            title=item.title,
            site_title=self.settings.site_title,
            body=body,
            generated_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            **extra,
        )

    def _write(self, filename: str, html: str) -> str:
        out_dir = self.export_dir
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / filename
        path.write_text(html, encoding="utf-8")
        logger.info("Wrote %s (%d bytes)", path, len(html))
        return str(path)

    def render_and_write_html(self, item: ContentItem, verification_code: str) -> str:
        html = self._render(
            item,
            item.markdown,
            verification_comment=verification_comment(verification_code),
            canonical_url=self.settings.build_url(f"{item.slug}.html"),
        )
        return self._write(f"{item.slug}.html", html)

    def write_static_html(self, item: ContentItem, text: str) -> str:
        html = self._render(item, text, verification_comment=None, canonical_url=None)
        return self._write(f"{item.slug}{self.STATIC_SUFFIX}", html)


# ---------------------------------------------------------------------------
# URL probe
# ---------------------------------------------------------------------------


def probe_url(url: str, timeout: float = 30.0) -> ProbeResult:
    """GET *url* and report whether it is live. Blocking; run in a worker.

    Only malformed URLs raise (ProbeError); network failures come back as
    ``live=False`` with the reason in ``detail``.
    """
    if not url.startswith(("http://", "https://")):
        raise ProbeError(f"Not an http(s) URL: {url}")
    req = urllib.request.Request(url, method="GET", headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            status = resp.status
            body = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        return ProbeResult(live=False, detail=f"HTTP {exc.code}", status_code=exc.code)
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, socket.timeout):
            return ProbeResult(live=False, detail=f"timed out after {timeout:g}s")
        return ProbeResult(live=False, detail=f"unreachable: {exc.reason}")
    except (socket.timeout, TimeoutError):
        return ProbeResult(live=False, detail=f"timed out after {timeout:g}s")
    except OSError as exc:
        return ProbeResult(live=False, detail=f"unreachable: {exc}")

    live = 200 <= status < 400
    return ProbeResult(live=live, detail=f"HTTP {status}", status_code=status, body=body)


# ---------------------------------------------------------------------------
# AI transform
# ---------------------------------------------------------------------------


class AnthropicTransformer:
    """Generates platform rewrites with Claude."""

    def __init__(
        self,
        model: str = MODEL_SONNET,
        max_tokens: int = 2000,
        api_key: Optional[str] = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._client: Optional[anthropic.AsyncAnthropic] = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            api_key = self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            if not api_key:
                raise TransformError("ANTHROPIC_API_KEY not set")
            self._client = anthropic.AsyncAnthropic(api_key=api_key)
        return self._client

    async def generate_transform(self, prompt: str, content: str) -> str:
        client = self._get_client()
        sys_block: Dict[str, Any] = {"type": "text", "text": prompt}
        if len(prompt) > 4000:
            sys_block["cache_control"] = {"type": "ephemeral"}
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=[sys_block],
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as exc:
            raise TransformError(f"AI provider error: {exc}") from exc
        text = "\n".join(b.text for b in response.content if hasattr(b, "text")).strip()
        if not text:
            raise TransformError("AI provider returned an empty response")
        logger.debug("Generated %d chars with %s", len(text), self.model)
        return text


# ---------------------------------------------------------------------------
# Publishing clients
# ---------------------------------------------------------------------------


class PlatformPublisher:
    """Posts transform text to the platform named by the profile."""

    def __init__(self, timeout: float = 60.0) -> None:
        self.timeout = timeout

    async def publish(
        self,
        profile: PublishingProfile,
        text: str,
        options: Optional[Dict[str, str]] = None,
    ) -> PublishResult:
        options = options or {}
        platform = (profile.platform or "").lower()
        handlers = {
            "linkedin": self._publish_linkedin,
            "twitter": self._publish_twitter,
            "x": self._publish_twitter,
            "devto": self._publish_devto,
        }
        handler = handlers.get(platform)
        if handler is None:
            return PublishResult(False, message=f"No publishing client for platform '{platform}'")
        try:
            return await handler(profile, text, options)
        except aiohttp.ClientError as exc:
            raise PublishError(f"{platform} request failed: {exc}") from exc

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout)

    async def _publish_linkedin(
        self, profile: PublishingProfile, text: str, options: Dict[str, str],
    ) -> PublishResult:
        """Publish via LinkedIn UGC Posts API v2."""
        token = profile.settings.get("token") or os.environ.get("LINKEDIN_TOKEN")
        person_id = profile.settings.get("personId") or os.environ.get("LINKEDIN_PERSON_ID")
        if not token or not person_id:
            return PublishResult(False, message="LINKEDIN_TOKEN/LINKEDIN_PERSON_ID not set")
        payload = {
            "author": f"urn:li:person:{person_id}",
            "lifecycleState": "PUBLISHED",
            "specificContent": {"com.linkedin.ugc.ShareContent": {
                "shareCommentary": {"text": text[:3000]},
                "shareMediaCategory": "NONE",
            }},
            "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
        }
        async with aiohttp.ClientSession(timeout=self._timeout()) as s:
            async with s.post("https://api.linkedin.com/v2/ugcPosts",
                              headers={"Authorization": f"Bearer {token}",
                                       "Content-Type": "application/json",
                                       "X-Restli-Protocol-Version": "2.0.0"},
                              json=payload) as r:
                if r.status in (200, 201):
                    post_id = r.headers.get("x-restli-id", "")
                    url = f"https://www.linkedin.com/feed/update/{post_id}/" if post_id else None
                    return PublishResult(True, url=url, message="Posted to LinkedIn")
                return PublishResult(False, message=f"LinkedIn {r.status}: {(await r.text())[:200]}")

    async def _publish_twitter(
        self, profile: PublishingProfile, text: str, options: Dict[str, str],
    ) -> PublishResult:
        """Publish tweet via X API v2."""
        bearer = profile.settings.get("token") or os.environ.get("TWITTER_BEARER_TOKEN")
        if not bearer:
            return PublishResult(False, message="TWITTER_BEARER_TOKEN not set")
        async with aiohttp.ClientSession(timeout=self._timeout()) as s:
            async with s.post("https://api.twitter.com/2/tweets",
                              headers={"Authorization": f"Bearer {bearer}",
                                       "Content-Type": "application/json"},
                              json={"text": text[:280]}) as r:
                if r.status in (200, 201):
                    tweet_id = (await r.json()).get("data", {}).get("id", "")
                    url = f"https://x.com/i/web/status/{tweet_id}" if tweet_id else None
                    return PublishResult(True, url=url, message="Posted to X")
                return PublishResult(False, message=f"Twitter {r.status}: {(await r.text())[:200]}")

    async def _publish_devto(
        self, profile: PublishingProfile, text: str, options: Dict[str, str],
    ) -> PublishResult:
        """Create an article through the Dev.to API."""
        api_key = profile.settings.get("apiKey") or os.environ.get("DEVTO_API_KEY")
        if not api_key:
            return PublishResult(False, message="DEVTO_API_KEY not set")
        published = options.get("published", "true").lower() == "true"
        article: Dict[str, Any] = {
            "title": options.get("title", "Untitled"),
            "body_markdown": text,
            "published": published,
        }
        tags = [t.strip().lower().replace(" ", "") for t in options.get("tags", "").split(",") if t.strip()]
        if tags:
            article["tags"] = tags[:4]
        if options.get("canonicalUrl"):
            article["canonical_url"] = options["canonicalUrl"]
        async with aiohttp.ClientSession(timeout=self._timeout()) as s:
            async with s.post("https://dev.to/api/articles",
                              headers={"api-key": api_key,
                                       "Content-Type": "application/json",
                                       "User-Agent": USER_AGENT},
                              json={"article": article}) as r:
                if r.status in (200, 201):
                    data = await r.json()
                    message = "Article published" if published else "Article saved as draft"
                    return PublishResult(True, url=data.get("url"), message=message)
                return PublishResult(False, message=f"Dev.to {r.status}: {(await r.text())[:200]}")
