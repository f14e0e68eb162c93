"""
Publish Pipeline CLI

Edit a project's publishing pipeline and run its stages against markdown
posts from the command line.

Usage:
    python -m publish_pipeline [--project DIR] [-v] <command> [options]

Examples:
    python -m publish_pipeline init --with-gatekeepers
    python -m publish_pipeline add social_publish --profile li-main
    python -m publish_pipeline status posts/moon-water.md
    python -m publish_pipeline run posts/moon-water.md web-export
    python -m publish_pipeline run posts/moon-water.md manual_copy_paste-facebook_copy_pasta --confirm done
"""

from __future__ import annotations

import argparse
import asyncio
import concurrent.futures
import logging
import sys
from pathlib import Path
from typing import Any, Coroutine, List, Optional

from publish_pipeline.collaborators import ContentItem
from publish_pipeline.coordinator import (
    ExecutionCoordinator,
    ManualConfirmation,
    Progress,
    build_coordinator,
)
from publish_pipeline.errors import PersistenceFailure, PipelineEngineError
from publish_pipeline.execution_state import StageStatus
from publish_pipeline.pipeline import Pipeline, PipelineStore
from publish_pipeline.stage_catalog import STAGE_CATALOG, StageKind

logger = logging.getLogger("publish_pipeline.cli")

_CONFIRMATIONS = {"copied": ManualConfirmation.COPIED, "done": ManualConfirmation.MARKED_DONE}


def _configure_logging(verbose: bool = False) -> None:
    root = logging.getLogger("publish_pipeline")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _run_sync(coro: Coroutine) -> Any:
    """Run an async coroutine synchronously, handling nested event loops."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    return asyncio.run(coro)


def _truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def _print_progress(progress: Progress) -> None:
    detail = f" {progress.detail}" if progress.detail else ""
    print(f"  .. {progress.stage_id}: {progress.phase.value}{detail}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    store = PipelineStore(args.project)
    if store.path.exists() and not args.force:
        print(f"Pipeline already exists at {store.path} (use --force to replace)")
        return 1
    pipeline = Pipeline.create_default(with_gatekeepers=args.with_gatekeepers)
    store.save(pipeline)
    print(f"Created {store.path}: {pipeline}")
    return 0


def _cmd_kinds(args: argparse.Namespace) -> int:
    print(f"{'Kind':<20s} {'Name':<22s} {'Gate':<6s} {'Transform':<10s} {'Platform':<20s}")
    print("-" * 80)
    for kind, definition in STAGE_CATALOG.items():
        print(
            f"{kind.value:<20s} {definition.display_name:<22s} "
            f"{'yes' if definition.is_gatekeeper else '':<6s} "
            f"{'yes' if definition.requires_transform else '':<10s} "
            f"{definition.default_platform or '':<20s}"
        )
    return 0


def _cmd_stages(args: argparse.Namespace, coordinator: ExecutionCoordinator) -> int:
    stages = coordinator.pipeline.sorted_stages()
    if not stages:
        print("Pipeline has no stages. Add one with 'add KIND'.")
        return 0
    print(f"{'Order':<6s} {'ID':<40s} {'Kind':<18s} {'Enabled':<8s}")
    print("-" * 74)
    for stage in stages:
        print(
            f"{stage.order:<6d} {_truncate(stage.id, 38):<40s} {stage.kind.value:<18s} "
            f"{'yes' if stage.enabled else 'no':<8s}"
        )
    return 0


def _cmd_add(args: argparse.Namespace, coordinator: ExecutionCoordinator) -> int:
    kind = StageKind.parse(args.kind)
    if kind is None:
        print(f"Unknown stage kind: {args.kind}. Run 'kinds' for the list.")
        return 2
    platform = args.platform
    if args.profile and not platform:
        profile = coordinator.profiles.get(args.profile)
        if profile is None:
            print(f"Publishing profile '{args.profile}' not found in .profiles.json")
            return 1
        platform = profile.platform or None

    added: List[str] = []

    def _add(pipeline: Pipeline) -> None:
        stage = pipeline.add_stage(kind, profile_id=args.profile, platform_hint=platform, prompt=args.prompt)
        added.append(stage.id)

    coordinator.edit_pipeline(_add)
    print(f"Added stage {added[0]}")
    return 0


def _cmd_remove(args: argparse.Namespace, coordinator: ExecutionCoordinator) -> int:
    coordinator.edit_pipeline(lambda p: p.remove_stage(args.stage_id))
    print(f"Removed stage {args.stage_id}")
    return 0


def _cmd_move(args: argparse.Namespace, coordinator: ExecutionCoordinator) -> int:
    if args.direction == "up":
        coordinator.edit_pipeline(lambda p: p.move_up(args.stage_id))
    else:
        coordinator.edit_pipeline(lambda p: p.move_down(args.stage_id))
    print(f"Moved {args.stage_id} {args.direction}")
    return 0


def _cmd_toggle(args: argparse.Namespace, coordinator: ExecutionCoordinator) -> int:
    enabled = args.command == "enable"
    coordinator.edit_pipeline(lambda p: p.set_enabled(args.stage_id, enabled))
    print(f"{'Enabled' if enabled else 'Disabled'} {args.stage_id}")
    return 0


def _cmd_prompt(args: argparse.Namespace, coordinator: ExecutionCoordinator) -> int:
    if args.text is None and not args.reset:
        stage = coordinator.pipeline.require_stage(args.stage_id)
        print(stage.resolve_prompt(coordinator.profiles))
        return 0
    text = None if args.reset else args.text
    coordinator.edit_pipeline(lambda p: p.set_prompt(args.stage_id, text))
    print(f"Prompt for {args.stage_id} {'reset' if args.reset else 'updated'}")
    return 0


def _cmd_status(args: argparse.Namespace, coordinator: ExecutionCoordinator) -> int:
    item = ContentItem.from_markdown_file(args.file)
    views = coordinator.list_stages(item)
    print(f"{item.title} ({item.slug})")
    session = coordinator.open_item(item)
    if session.execution.verified_url:
        print(f"Verified URL: {session.execution.verified_url}")
    print(f"{'ID':<40s} {'Status':<12s} {'Action':<10s} {'Message':<40s}")
    print("-" * 104)
    for view in views:
        message = view.result.message if view.result else ""
        print(
            f"{_truncate(view.stage_id, 38):<40s} {view.status.value:<12s} "
            f"{view.run_label:<10s} {_truncate(message, 40):<40s}"
        )
    orphaned = session.execution.orphaned_results(coordinator.pipeline)
    if orphaned:
        print(f"({len(orphaned)} result(s) from removed stages kept: {', '.join(sorted(orphaned))})")
    return 0


def _cmd_run(args: argparse.Namespace, coordinator: ExecutionCoordinator) -> int:
    item = ContentItem.from_markdown_file(args.file)
    confirmation = _CONFIRMATIONS.get(args.confirm) if args.confirm else None
    if not args.quiet:
        coordinator.progress.subscribe(_print_progress)
    try:
        result = _run_sync(coordinator.run(args.stage_id, item, confirmation=confirmation))
    except PersistenceFailure as exc:
        if exc.result is not None:
            print(f"{args.stage_id}: {exc.result.status.value} - {exc.result.message}")
        print(f"Warning: result may not survive restart ({exc.message})")
        return 1
    print(f"{args.stage_id}: {result.status.value} - {result.message}")
    if result.published_url:
        print(f"URL: {result.published_url}")
    if result.status == StageStatus.PENDING:
        text = coordinator.transform_text(args.stage_id, item)
        if text:
            print()
            print(text)
    return 1 if result.status == StageStatus.FAILED else 0


def _cmd_transform(args: argparse.Namespace, coordinator: ExecutionCoordinator) -> int:
    item = ContentItem.from_markdown_file(args.file)
    text = _run_sync(coordinator.generate_transform(args.stage_id, item, force=args.regenerate))
    print(text)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="publish_pipeline",
        description="Publishing pipeline: export, verify, transform and publish posts",
    )
    parser.add_argument("--project", type=Path, default=Path.cwd(), help="Project directory")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--quiet", "-q", action="store_true", help="Hide progress lines")
    subparsers = parser.add_subparsers(dest="command", help="Pipeline commands")

    # --- pipeline editing ---
    p_init = subparsers.add_parser("init", help="Create the project pipeline file")
    p_init.add_argument("--with-gatekeepers", action="store_true", help="Seed export and URL check stages")
    p_init.add_argument("--force", action="store_true", help="Replace an existing pipeline")

    subparsers.add_parser("stages", help="List configured stages")
    subparsers.add_parser("kinds", help="List available stage kinds")

    p_add = subparsers.add_parser("add", help="Add a stage")
    p_add.add_argument("kind", help="Stage kind (see 'kinds')")
    p_add.add_argument("--profile", default=None, help="Publishing profile ID")
    p_add.add_argument("--platform", default=None, help="Platform hint (e.g. linkedin, devto)")
    p_add.add_argument("--prompt", default=None, help="Custom transform prompt")

    p_remove = subparsers.add_parser("remove", help="Remove a stage")
    p_remove.add_argument("stage_id")

    p_move = subparsers.add_parser("move", help="Move a stage up or down")
    p_move.add_argument("stage_id")
    p_move.add_argument("direction", choices=["up", "down"])

    for name in ("enable", "disable"):
        p_toggle = subparsers.add_parser(name, help=f"{name.capitalize()} a stage")
        p_toggle.add_argument("stage_id")

    p_prompt = subparsers.add_parser("prompt", help="Show, set or reset a stage prompt")
    p_prompt.add_argument("stage_id")
    p_prompt.add_argument("text", nargs="?", default=None)
    p_prompt.add_argument("--reset", action="store_true", help="Restore the default prompt")

    # --- execution ---
    p_status = subparsers.add_parser("status", help="Show stage statuses for a post")
    p_status.add_argument("file", type=Path, help="Markdown post")

    p_run = subparsers.add_parser("run", help="Run one stage for a post")
    p_run.add_argument("file", type=Path, help="Markdown post")
    p_run.add_argument("stage_id")
    p_run.add_argument("--confirm", choices=sorted(_CONFIRMATIONS), default=None,
                       help="Confirm a manual copy/paste stage")

    p_transform = subparsers.add_parser("transform", help="Show or regenerate a stage's transform")
    p_transform.add_argument("file", type=Path, help="Markdown post")
    p_transform.add_argument("stage_id")
    p_transform.add_argument("--regenerate", action="store_true", help="Generate a fresh transform")

    return parser


_PROJECT_COMMANDS = {
    "stages": _cmd_stages,
    "add": _cmd_add,
    "remove": _cmd_remove,
    "move": _cmd_move,
    "enable": _cmd_toggle,
    "disable": _cmd_toggle,
    "prompt": _cmd_prompt,
    "status": _cmd_status,
    "run": _cmd_run,
    "transform": _cmd_transform,
}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns an exit code (0 = success, 1 = error, 2 = usage)."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 2
    if args.command == "init":
        return _cmd_init(args)
    if args.command == "kinds":
        return _cmd_kinds(args)

    coordinator = build_coordinator(args.project)
    try:
        return _PROJECT_COMMANDS[args.command](args, coordinator)
    except PipelineEngineError as exc:
        print(f"Error: {exc.message}")
        return 1
    except OSError as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        coordinator.shutdown()


def cli() -> None:
    """Entry point for console_scripts / direct execution."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nAborted.")
        sys.exit(130)


if __name__ == "__main__":
    cli()
