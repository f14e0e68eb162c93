"""
Publish Pipeline -- per-post execution engine for publishing pipelines.

Export a post to HTML, verify it is live, then transform and publish it to
social and article platforms, one gated stage at a time.

Usage:
    from publish_pipeline.coordinator import build_coordinator
    from publish_pipeline.collaborators import ContentItem

    coordinator = build_coordinator(project_dir)
    item = ContentItem.from_markdown_file(project_dir / "posts" / "moon-water.md")
    result = await coordinator.run("web-export", item)
"""

__version__ = "1.0.0"
