"""Test stage_catalog -- publish pipeline."""
from __future__ import annotations

import pytest

from publish_pipeline.stage_catalog import (
    DEFAULT_PROMPTS,
    GATEKEEPER_KINDS,
    STAGE_CATALOG,
    StageKind,
    default_prompt,
    derive_stage_id,
    get_definition,
)


# ===========================================================================
# STAGE KINDS & FACETS
# ===========================================================================


class TestStageKind:

    def test_six_kinds(self):
        assert len(list(StageKind)) == 6

    def test_every_kind_has_definition(self):
        assert set(STAGE_CATALOG) == set(StageKind)

    @pytest.mark.parametrize("raw,expected", [
        ("web_export", StageKind.WEB_EXPORT),
        ("WEB_EXPORT", StageKind.WEB_EXPORT),
        (" social_publish ", StageKind.SOCIAL_PUBLISH),
        ("Static_Export", StageKind.STATIC_EXPORT),
    ])
    def test_parse_lenient(self, raw, expected):
        assert StageKind.parse(raw) == expected

    def test_parse_unknown(self):
        assert StageKind.parse("carrier_pigeon") is None
        assert StageKind.parse("") is None
        assert StageKind.parse(None) is None


class TestFacets:

    def test_gatekeepers(self):
        assert GATEKEEPER_KINDS == [StageKind.WEB_EXPORT, StageKind.URL_VERIFY]

    def test_gatekeepers_are_not_social(self):
        for kind in GATEKEEPER_KINDS:
            d = get_definition(kind)
            assert not d.is_social
            assert not d.requires_transform
            assert d.fixed_id

    def test_every_non_gatekeeper_is_gated_and_transforms(self):
        for kind, d in STAGE_CATALOG.items():
            if not d.is_gatekeeper:
                assert d.is_social, kind
                assert d.requires_transform, kind

    def test_artifact_kinds(self):
        with_artifact = {k for k, d in STAGE_CATALOG.items() if d.has_artifact}
        assert with_artifact == {StageKind.WEB_EXPORT, StageKind.STATIC_EXPORT}

    def test_default_platforms(self):
        assert get_definition(StageKind.ARTICLE_PUBLISH).default_platform == "devto"
        assert get_definition(StageKind.MANUAL_COPY_PASTE).default_platform == "facebook_copy_pasta"
        assert get_definition(StageKind.STATIC_EXPORT).default_platform == "hackernews"
        assert get_definition(StageKind.SOCIAL_PUBLISH).default_platform is None

    def test_action_labels(self):
        assert get_definition(StageKind.WEB_EXPORT).action_label == "Export HTML"
        assert get_definition(StageKind.SOCIAL_PUBLISH).action_label == "Publish Now"


# ===========================================================================
# PROMPTS & IDS
# ===========================================================================


class TestDefaultPrompt:

    def test_gatekeepers_have_no_prompt(self):
        assert default_prompt(StageKind.WEB_EXPORT) == ""
        assert default_prompt(StageKind.URL_VERIFY, "linkedin") == ""

    def test_platform_lookup(self):
        assert default_prompt(StageKind.SOCIAL_PUBLISH, "linkedin") == DEFAULT_PROMPTS["linkedin"]
        assert default_prompt(StageKind.SOCIAL_PUBLISH, "LinkedIn") == DEFAULT_PROMPTS["linkedin"]

    def test_kind_default_platform(self):
        assert default_prompt(StageKind.ARTICLE_PUBLISH) == DEFAULT_PROMPTS["devto"]
        assert default_prompt(StageKind.STATIC_EXPORT) == DEFAULT_PROMPTS["hackernews"]

    def test_generic_fallback(self):
        prompt = default_prompt(StageKind.SOCIAL_PUBLISH, "mastodon")
        assert prompt
        assert prompt not in DEFAULT_PROMPTS.values()


class TestDeriveStageId:

    def test_gatekeeper_ids_fixed(self):
        assert derive_stage_id(StageKind.WEB_EXPORT) == "web-export"
        assert derive_stage_id(StageKind.URL_VERIFY, "ignored") == "url-verify"

    def test_profile_wins(self):
        assert derive_stage_id(StageKind.SOCIAL_PUBLISH, "li-main", "linkedin") == "social_publish-li-main"

    def test_platform_hint(self):
        assert derive_stage_id(StageKind.ARTICLE_PUBLISH, None, "hashnode") == "article_publish-hashnode"

    def test_default_platform(self):
        assert derive_stage_id(StageKind.ARTICLE_PUBLISH) == "article_publish-devto"

    def test_deterministic(self):
        a = derive_stage_id(StageKind.SOCIAL_PUBLISH, "x-main")
        b = derive_stage_id(StageKind.SOCIAL_PUBLISH, "x-main")
        assert a == b
