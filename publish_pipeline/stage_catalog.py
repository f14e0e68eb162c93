"""
Stage catalog -- static metadata for every stage kind.

Stage behaviour is driven by a closed enum plus a facet table rather than
subclasses: gating and status derivation only ever look at the facets, and
the coordinator dispatches actions with one lookup on the kind.

Kinds (in the order the editor offers them):
    WEB_EXPORT         -- gatekeeper, writes the post's HTML
    URL_VERIFY         -- gatekeeper, confirms the public URL is live
    SOCIAL_PUBLISH     -- posts a transform through a publishing profile
    ARTICLE_PUBLISH    -- publishes a long-form transform (Dev.to)
    MANUAL_COPY_PASTE  -- transform handed to the user to paste by hand
    STATIC_EXPORT      -- transform written as an alternate HTML page
"""

from __future__ import annotations

import textwrap
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional


class StageKind(str, Enum):
    """Closed set of stage kinds a pipeline can contain."""
    WEB_EXPORT = "web_export"
    URL_VERIFY = "url_verify"
    SOCIAL_PUBLISH = "social_publish"
    ARTICLE_PUBLISH = "article_publish"
    MANUAL_COPY_PASTE = "manual_copy_paste"
    STATIC_EXPORT = "static_export"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional[StageKind]:
        """Lenient lookup by value or member name; None when unknown."""
        if not value:
            return None
        key = value.strip()
        for kind in cls:
            if key.lower() == kind.value or key.upper() == kind.name:
                return kind
        return None


@dataclass(frozen=True)
class StageDefinition:
    """Fixed facets of a stage kind."""
    kind: StageKind
    display_name: str
    is_gatekeeper: bool
    is_social: bool
    requires_transform: bool
    action_label: str
    default_platform: Optional[str] = None
    has_artifact: bool = False
    fixed_id: Optional[str] = None


STAGE_CATALOG: Dict[StageKind, StageDefinition] = {
    StageKind.WEB_EXPORT: StageDefinition(
        kind=StageKind.WEB_EXPORT,
        display_name="Web Export",
        is_gatekeeper=True,
        is_social=False,
        requires_transform=False,
        action_label="Export HTML",
        has_artifact=True,
        fixed_id="web-export",
    ),
    StageKind.URL_VERIFY: StageDefinition(
        kind=StageKind.URL_VERIFY,
        display_name="URL Liveness Check",
        is_gatekeeper=True,
        is_social=False,
        requires_transform=False,
        action_label="Test Liveness",
        fixed_id="url-verify",
    ),
    StageKind.SOCIAL_PUBLISH: StageDefinition(
        kind=StageKind.SOCIAL_PUBLISH,
        display_name="Social Publish",
        is_gatekeeper=False,
        is_social=True,
        requires_transform=True,
        action_label="Publish Now",
    ),
    StageKind.ARTICLE_PUBLISH: StageDefinition(
        kind=StageKind.ARTICLE_PUBLISH,
        display_name="Dev.to Article",
        is_gatekeeper=False,
        is_social=True,
        requires_transform=True,
        action_label="Publish Article",
        default_platform="devto",
    ),
    StageKind.MANUAL_COPY_PASTE: StageDefinition(
        kind=StageKind.MANUAL_COPY_PASTE,
        display_name="Facebook Copy Pasta",
        is_gatekeeper=False,
        is_social=True,
        requires_transform=True,
        action_label="Generate & Copy",
        default_platform="facebook_copy_pasta",
    ),
    StageKind.STATIC_EXPORT: StageDefinition(
        kind=StageKind.STATIC_EXPORT,
        display_name="Hacker News Export",
        is_gatekeeper=False,
        is_social=True,
        requires_transform=True,
        action_label="Export for HN",
        default_platform="hackernews",
        has_artifact=True,
    ),
}

GATEKEEPER_KINDS: List[StageKind] = [k for k, d in STAGE_CATALOG.items() if d.is_gatekeeper]


def get_definition(kind: StageKind) -> StageDefinition:
    """Return the facet record for *kind*."""
    return STAGE_CATALOG[kind]


# ---------------------------------------------------------------------------
# Default prompts (by platform)
# ---------------------------------------------------------------------------

_LINKEDIN_PROMPT = (
    "Transform this blog post into a professional LinkedIn post. "
    "Keep it engaging and insightful. Use line breaks for readability. "
    "Include 3-5 relevant hashtags at the end. Keep the tone professional but personable."
)

_TWITTER_PROMPT = (
    "Transform this blog post into a compelling tweet or thread. "
    "If the content is substantial, create a thread with numbered tweets. "
    "Keep each tweet under 280 characters. Make it punchy. "
    "Include 2-3 relevant hashtags."
)

_DEVTO_PROMPT = textwrap.dedent("""\
    Transform this blog post for publication on Dev.to, a developer community platform.

    Guidelines:
    - Keep the technical accuracy and depth
    - Use code blocks with language identifiers
    - Add a brief introduction that hooks developers
    - Structure with clear headings (## and ###)
    - End with a conclusion or call-to-action
    - Do not add front matter, just return the markdown content
""")

_FACEBOOK_PROMPT = (
    "Rewrite this blog post as a friendly Facebook post. "
    "Open with a conversational hook, summarise the key points in 2-3 short paragraphs, "
    "and finish with a question that invites comments. No more than 3 hashtags."
)

_HACKERNEWS_PROMPT = textwrap.dedent("""\
    Rewrite this blog post for a Hacker News audience.

    Guidelines:
    - Plain, factual tone with no marketing language or emoji
    - Lead with the technical substance and the trade-offs
    - Keep headings short and the structure flat
    - Return markdown only
""")

_GENERIC_SOCIAL_PROMPT = (
    "Transform this blog post into an engaging social media post for the target platform. "
    "Keep it concise, lead with the most interesting point, and add 2-4 relevant hashtags."
)

DEFAULT_PROMPTS: Dict[str, str] = {
    "linkedin": _LINKEDIN_PROMPT,
    "twitter": _TWITTER_PROMPT,
    "x": _TWITTER_PROMPT,
    "devto": _DEVTO_PROMPT,
    "facebook_copy_pasta": _FACEBOOK_PROMPT,
    "hackernews": _HACKERNEWS_PROMPT,
}


def default_prompt(kind: StageKind, platform: Optional[str] = None) -> str:
    """Default transform prompt for a kind and platform; empty for gatekeepers."""
    definition = STAGE_CATALOG[kind]
    if not definition.requires_transform:
        return ""
    key = (platform or definition.default_platform or "").lower()
    return DEFAULT_PROMPTS.get(key, _GENERIC_SOCIAL_PROMPT)


def derive_stage_id(
    kind: StageKind,
    profile_id: Optional[str] = None,
    platform_hint: Optional[str] = None,
) -> str:
    """Deterministic stage id from kind and profile, so reloads reproduce it."""
    definition = STAGE_CATALOG[kind]
    if definition.fixed_id:
        return definition.fixed_id
    suffix = profile_id or platform_hint or definition.default_platform or "default"
    return f"{kind.value}-{suffix}"
