"""Test transform_cache -- publish pipeline."""
from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from publish_pipeline.errors import PersistenceFailure
from publish_pipeline.transform_cache import TransformCache, TransformRecord, TransformStore


@pytest.fixture
def store(tmp_path):
    return TransformStore(tmp_path)


@pytest.fixture
def cache(store):
    return TransformCache("post", store)


class TestTransformStore:

    def test_load_missing(self, store):
        assert store.load("post") == {}

    def test_file_shape(self, store, tmp_path):
        store.persist("post", {"linkedin": TransformRecord("linkedin", "hi", 123, True)})
        raw = json.loads((tmp_path / "post-transforms.json").read_text())
        assert raw == {"linkedin": {"text": "hi", "generatedAtMillis": 123, "approved": True}}

    def test_load_skips_empty_text(self, store, tmp_path):
        (tmp_path / "post-transforms.json").write_text(json.dumps({
            "linkedin": {"text": "", "generatedAtMillis": 1},
            "devto": {"text": "article", "generatedAtMillis": "bad"},
        }))
        records = store.load("post")
        assert list(records) == ["devto"]
        assert records["devto"].generated_at_millis == 0


class TestTransformCache:

    def test_memory_get_put(self, cache):
        assert cache.get("linkedin") is None
        cache.put("linkedin", "hello")
        assert cache.get("linkedin") == "hello"
        assert "linkedin" in cache

    def test_write_through_both_tiers(self, cache, store):
        record = cache.write_through("linkedin", "post text")
        assert cache.get("linkedin") == "post text"
        assert store.load("post")["linkedin"].text == "post text"
        assert record.generated_at_millis > 0
        assert record.approved is False

    def test_clear_keeps_disk(self, cache, store):
        cache.write_through("linkedin", "post text")
        cache.clear()
        assert cache.get("linkedin") is None
        assert store.load("post")["linkedin"].text == "post text"

    def test_lookup_fills_memory_from_disk(self, cache, store):
        store.persist("post", {"devto": TransformRecord("devto", "article", 1)})
        assert cache.get("devto") is None
        assert cache.lookup("devto") == "article"
        assert cache.get("devto") == "article"

    def test_lookup_prefers_memory(self, cache, store):
        store.persist("post", {"devto": TransformRecord("devto", "disk", 1)})
        cache.put("devto", "memory")
        assert cache.lookup("devto") == "memory"

    def test_lookup_miss(self, cache):
        assert cache.lookup("nothing") is None

    def test_write_through_keeps_other_records(self, cache, store):
        cache.write_through("linkedin", "a")
        cache.write_through("twitter", "b")
        assert set(store.load("post")) == {"linkedin", "twitter"}

    def test_failed_disk_write_leaves_memory(self, cache):
        cache.put("linkedin", "old")
        with patch("publish_pipeline.transform_cache.save_json",
                   side_effect=PersistenceFailure("disk full", path="x")):
            with pytest.raises(PersistenceFailure):
                cache.write_through("linkedin", "new")
        assert cache.get("linkedin") == "old"

    def test_set_approved(self, cache, store):
        assert cache.set_approved("linkedin") is None
        cache.write_through("linkedin", "text")
        cache.set_approved("linkedin", True)
        assert store.load("post")["linkedin"].approved is True

    def test_items_are_isolated(self, store):
        a = TransformCache("a", store)
        b = TransformCache("b", store)
        a.write_through("linkedin", "for a")
        assert b.lookup("linkedin") is None
