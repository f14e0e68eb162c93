"""Test cli -- publish pipeline."""
from __future__ import annotations

import json

import pytest

from publish_pipeline.cli import build_parser, main
from publish_pipeline.pipeline import PipelineStore
from publish_pipeline.stage_catalog import DEFAULT_PROMPTS


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.setenv("PUBLISH_PIPELINE_HOME", str(tmp_path / "home"))
    project = tmp_path / "blog"
    project.mkdir()
    (project / ".project.json").write_text(json.dumps({"url_base": "https://blog.test"}))
    (project / ".profiles.json").write_text(json.dumps([
        {"id": "li-main", "name": "Main", "platform": "linkedin"},
    ]))
    (project / "moon-water.md").write_text("# Moon Water\n\nA post.\n", encoding="utf-8")
    return project


def _cli(project, *argv):
    return main(["--project", str(project), "-q", *argv])


class TestParser:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 2
        assert "usage" in capsys.readouterr().out.lower()

    def test_run_confirm_choices(self):
        args = build_parser().parse_args(["run", "p.md", "manual", "--confirm", "done"])
        assert args.confirm == "done"
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "p.md", "manual", "--confirm", "maybe"])


class TestPipelineCommands:

    def test_init(self, project, capsys):
        assert _cli(project, "init", "--with-gatekeepers") == 0
        pipeline = PipelineStore(project).load()
        assert [s.id for s in pipeline.sorted_stages()] == ["web-export", "url-verify"]

    def test_init_refuses_overwrite(self, project, capsys):
        _cli(project, "init")
        assert _cli(project, "init") == 1
        assert "--force" in capsys.readouterr().out

    def test_kinds(self, project, capsys):
        assert _cli(project, "kinds") == 0
        out = capsys.readouterr().out
        assert "social_publish" in out
        assert "static_export" in out

    def test_add_fills_platform_from_profile(self, project, capsys):
        _cli(project, "init", "--with-gatekeepers")
        assert _cli(project, "add", "social_publish", "--profile", "li-main") == 0
        stage = PipelineStore(project).load().get_stage("social_publish-li-main")
        assert stage.platform_hint == "linkedin"
        assert stage.platform_key == "linkedin"

    def test_add_unknown_kind(self, project, capsys):
        assert _cli(project, "add", "carrier_pigeon") == 2

    def test_add_rejected_prints_error(self, project, capsys):
        _cli(project, "init", "--with-gatekeepers")
        assert _cli(project, "add", "web_export") == 1
        assert "Error:" in capsys.readouterr().out

    def test_stages_and_toggle(self, project, capsys):
        _cli(project, "init", "--with-gatekeepers")
        _cli(project, "add", "article_publish")
        assert _cli(project, "disable", "article_publish-devto") == 0
        capsys.readouterr()
        _cli(project, "stages")
        out = capsys.readouterr().out
        assert "article_publish-devto" in out
        assert "no" in out.splitlines()[-1]

    def test_prompt_show_set_reset(self, project, capsys):
        _cli(project, "add", "article_publish")
        _cli(project, "prompt", "article_publish-devto", "Keep it short")
        capsys.readouterr()
        _cli(project, "prompt", "article_publish-devto")
        assert capsys.readouterr().out.strip() == "Keep it short"
        _cli(project, "prompt", "article_publish-devto", "--reset")
        assert PipelineStore(project).load().get_stage("article_publish-devto").prompt is None
        capsys.readouterr()
        _cli(project, "prompt", "article_publish-devto")
        assert capsys.readouterr().out.strip() == DEFAULT_PROMPTS["devto"]


class TestExecutionCommands:

    def test_status_shows_locked(self, project, capsys):
        _cli(project, "init", "--with-gatekeepers")
        _cli(project, "add", "social_publish", "--profile", "li-main")
        capsys.readouterr()
        assert _cli(project, "status", str(project / "moon-water.md")) == 0
        out = capsys.readouterr().out
        assert "Moon Water (moon-water)" in out
        assert "locked" in out

    def test_run_web_export(self, project, capsys):
        _cli(project, "init", "--with-gatekeepers")
        assert _cli(project, "run", str(project / "moon-water.md"), "web-export") == 0
        assert "web-export: completed" in capsys.readouterr().out
        html = (project / "public" / "moon-water.html").read_text(encoding="utf-8")
        assert "pipeline-verify:" in html

    def test_run_locked_stage(self, project, capsys):
        _cli(project, "init", "--with-gatekeepers")
        _cli(project, "add", "social_publish", "--profile", "li-main")
        capsys.readouterr()
        assert _cli(project, "run", str(project / "moon-water.md"), "social_publish-li-main") == 1
        assert "locked" in capsys.readouterr().out
