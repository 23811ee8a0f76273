"""CLI entry point for agentboard.

Commands:
- agentboard init: Initialize the project board
- agentboard create / update / list / show: Manage features
- agentboard order / ready: Dependency resolution
- agentboard start / send / stop: Run agents in isolated worktrees
- agentboard diff / commit / archive / restore / delete: Review and finish work
- agentboard auto: Start every ready feature up to the concurrency limit
- agentboard reconcile / events: Maintenance and history

Agent sessions live inside the CLI process, so `start`, `send` and `auto`
stream events until their sessions end. Ctrl-C stops them; the workspace is
kept.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from agentboard import __version__
from agentboard.core.config import load_config, write_default_config
from agentboard.core.controller import FeatureController
from agentboard.core.errors import OrchestrationError
from agentboard.core.lifecycle import allowed_commands
from agentboard.core.models import Feature, FeatureStatus
from agentboard.core.state import Database, Event, EventType
from agentboard.core.utils import state_dir
from agentboard.core.workspace import WorkspaceManager, WorktreeError

console = Console()

STATUS_COLORS = {
    FeatureStatus.BACKLOG: "white",
    FeatureStatus.IN_PROGRESS: "blue",
    FeatureStatus.WAITING_APPROVAL: "yellow",
    FeatureStatus.VERIFIED: "green",
    FeatureStatus.COMPLETED: "dim green",
    FeatureStatus.DELETED: "red",
}

EVENT_COLORS = {
    EventType.FEATURE_STARTED: "cyan",
    EventType.FEATURE_PROGRESS: "dim",
    EventType.FEATURE_TOOL_USE: "magenta",
    EventType.FEATURE_COMPLETED: "green",
    EventType.FEATURE_ERROR: "red",
    EventType.FEATURE_COMMITTED: "green",
    EventType.FEATURE_STOPPED: "yellow",
}


def _status(status: FeatureStatus) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def _event_detail(event: Event) -> str:
    payload = event.payload
    for key in ("content", "error", "summary", "commit", "message"):
        value = payload.get(key)
        if value:
            if isinstance(value, dict):
                value = value.get("commit_sha") or value.get("status") or ""
            return str(value)
    if payload.get("tool"):
        target = (payload.get("input") or {}).get("file_path", "")
        return f"{payload['tool']} {target}".strip()
    return ""


def _print_event(event: Event) -> None:
    color = EVENT_COLORS.get(event.event_type, "white")
    detail = _event_detail(event)
    line = f"[{color}]{event.event_type.value}[/{color}] [bold]{escape(event.feature_id)}[/bold]"
    if detail:
        line += f" {escape(detail.strip())}"
    console.print(line)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(1)


def _project(ctx: click.Context) -> Path:
    return ctx.obj["project"]


def _require_init(project: Path) -> None:
    if not state_dir(project).is_dir():
        console.print("[yellow]Project not initialized. Run 'agentboard init' first.[/yellow]")
        sys.exit(1)


def _run(ctx: click.Context, action: Callable[[FeatureController], Awaitable[Any]]) -> Any:
    """Run an async action against a fresh controller.

    Running sessions are stopped when the action returns or is interrupted.
    """
    project = _project(ctx)
    _require_init(project)

    async def runner() -> Any:
        controller = FeatureController(project)
        try:
            return await action(controller)
        finally:
            await controller.shutdown()

    try:
        return asyncio.run(runner())
    except OrchestrationError as e:
        _fail(str(e))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; running sessions were stopped[/yellow]")
        sys.exit(130)


async def _streaming(
    controller: FeatureController,
    feature_id: str,
    command: Callable[[], Awaitable[Any]],
) -> Feature:
    """Run a session-starting command and print events until the session ends."""
    unsubscribe = controller.bus.subscribe(_print_event)
    try:
        await command()
        await controller.wait_for_session(feature_id)
    finally:
        unsubscribe()
    return controller.get_feature(feature_id)


def _print_feature(feature: Feature) -> None:
    lines = [
        f"[bold]Title:[/] {escape(feature.title or '-')}",
        f"[bold]Status:[/] {_status(feature.status)}",
        f"[bold]Priority:[/] {feature.priority}",
        f"[bold]Category:[/] {escape(feature.category or '-')}",
        f"[bold]Dependencies:[/] {escape(', '.join(feature.dependencies) or '-')}",
        f"[bold]Tags:[/] {escape(', '.join(feature.tags) or '-')}",
        f"[bold]Workspace:[/] {escape(feature.workspace_ref or '-')}",
        f"[bold]Branch history:[/] {escape(', '.join(feature.workspace_history) or '-')}",
    ]
    if feature.last_commit:
        lines.append(f"[bold]Last commit:[/] {feature.last_commit[:12]}")
    if feature.summary:
        lines.append(f"[bold]Summary:[/] {escape(feature.summary)}")
    if feature.error:
        lines.append(f"[bold]Error:[/] [red]{escape(feature.error)}[/red]")
    if feature.description:
        lines += ["", escape(feature.description)]
    commands = ", ".join(c.value for c in allowed_commands(feature.status))
    lines += ["", f"[dim]Allowed: {commands or '-'}[/dim]"]
    console.print(Panel("\n".join(lines), title=f"Feature: {escape(feature.id)}"))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--project",
    "-p",
    type=click.Path(file_okay=False),
    default=".",
    help="Project repository (default: current directory)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, project: str, verbose: bool) -> None:
    """agentboard - run AI agents on a feature board, one git worktree each."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["project"] = Path(project).absolute()


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize the project board."""
    project = _project(ctx)
    written = write_default_config(project)
    Database(state_dir(project) / "state.db")

    if written is None:
        console.print("[yellow]Project already initialized[/yellow]")
    else:
        console.print(f"[green]Initialized agentboard in {escape(str(state_dir(project)))}[/green]")

    try:
        WorkspaceManager.from_config(project, load_config(project)).validate_repo()
    except WorktreeError as e:
        console.print(f"[yellow]Warning:[/yellow] {escape(str(e))}")
    except OrchestrationError as e:
        _fail(str(e))


@main.command()
@click.argument("title")
@click.option("--description", "-d", default="", help="What the feature should do")
@click.option("--category", "-c", default="", help="Free-form category")
@click.option("--priority", type=int, default=None, help="Lower runs first (default 2)")
@click.option("--depends-on", "dependencies", multiple=True, help="Dependency feature id")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--image", "images", multiple=True, type=click.Path(exists=True), help="Image")
@click.option("--id", "feature_id", default=None, help="Explicit feature id")
@click.pass_context
def create(
    ctx: click.Context,
    title: str,
    description: str,
    category: str,
    priority: int | None,
    dependencies: tuple[str, ...],
    tags: tuple[str, ...],
    images: tuple[str, ...],
    feature_id: str | None,
) -> None:
    """Add a feature to the backlog.

    Example:
        agentboard create "Add login endpoint" --depends-on db --priority 1
    """

    async def action(controller: FeatureController) -> Feature:
        return await controller.create_feature(
            title,
            description,
            category=category,
            priority=priority,
            dependencies=list(dependencies),
            tags=list(tags),
            image_paths=list(images),
            feature_id=feature_id,
        )

    feature = _run(ctx, action)
    console.print(f"[green]Created feature[/green] {escape(feature.id)}")


@main.command()
@click.argument("feature_id")
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--category", "-c", default=None)
@click.option("--depends-on", "dependencies", multiple=True, help="Replace dependencies")
@click.option("--clear-dependencies", is_flag=True, help="Remove all dependencies")
@click.option("--tag", "tags", multiple=True, help="Replace tags")
@click.pass_context
def update(
    ctx: click.Context,
    feature_id: str,
    title: str | None,
    description: str | None,
    category: str | None,
    dependencies: tuple[str, ...],
    clear_dependencies: bool,
    tags: tuple[str, ...],
) -> None:
    """Edit a feature that is not running."""
    changes: dict[str, Any] = {}
    if title is not None:
        changes["title"] = title
    if description is not None:
        changes["description"] = description
    if category is not None:
        changes["category"] = category
    if dependencies or clear_dependencies:
        changes["dependencies"] = list(dependencies)
    if tags:
        changes["tags"] = list(tags)
    if not changes:
        console.print("[yellow]Nothing to update[/yellow]")
        return

    async def action(controller: FeatureController) -> Feature:
        return await controller.update_feature(feature_id, **changes)

    _run(ctx, action)
    console.print(f"[green]Updated[/green] {escape(feature_id)}")


@main.command(name="list")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([s.value for s in FeatureStatus if s != FeatureStatus.DELETED]),
    help="Filter by status",
)
@click.pass_context
def list_(ctx: click.Context, statuses: tuple[str, ...]) -> None:
    """List features in board order."""

    async def action(controller: FeatureController) -> list[Feature]:
        return controller.list_features()

    features = _run(ctx, action)
    if statuses:
        features = [f for f in features if f.status.value in statuses]
    if not features:
        console.print("[dim]No features[/dim]")
        return

    table = Table(title="Features")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Depends on")
    for feature in features:
        table.add_row(
            escape(feature.id),
            escape(feature.title),
            _status(feature.status),
            str(feature.priority),
            escape(", ".join(feature.dependencies)),
        )
    console.print(table)


@main.command()
@click.argument("feature_id")
@click.pass_context
def show(ctx: click.Context, feature_id: str) -> None:
    """Show one feature."""

    async def action(controller: FeatureController) -> Feature:
        return controller.get_feature(feature_id)

    _print_feature(_run(ctx, action))


@main.command()
@click.pass_context
def order(ctx: click.Context) -> None:
    """Show the dependency-resolved execution order."""

    async def action(controller: FeatureController):
        return controller.resolve()

    result = _run(ctx, action)
    cyclic = set(result.cyclic_feature_ids)

    table = Table(title="Execution order")
    table.add_column("#", justify="right")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Priority", justify="right")
    table.add_column("Status")
    table.add_column("Notes")
    for position, feature in enumerate(result.ordered_features, start=1):
        notes = []
        if feature.id in cyclic:
            notes.append("[red]cycle[/red]")
        if feature.id in result.blocked_features:
            notes.append(f"blocked by {escape(', '.join(result.blocked_features[feature.id]))}")
        if feature.id in result.missing_dependencies:
            missing = ", ".join(result.missing_dependencies[feature.id])
            notes.append(f"[yellow]missing {escape(missing)}[/yellow]")
        table.add_row(
            str(position),
            escape(feature.id),
            str(feature.priority),
            _status(feature.status),
            "; ".join(notes),
        )
    console.print(table)

    if result.has_cycle:
        console.print(
            f"[red]Dependency cycle between:[/red] {escape(', '.join(result.cyclic_feature_ids))}"
        )
    if result.missing_dependencies:
        console.print(
            "[yellow]Missing dependencies are treated as satisfied; check for typos.[/yellow]"
        )


@main.command()
@click.pass_context
def ready(ctx: click.Context) -> None:
    """List backlog features whose dependencies are satisfied."""

    async def action(controller: FeatureController) -> list[Feature]:
        return controller.ready_features()

    features = _run(ctx, action)
    if not features:
        console.print("[dim]No features ready[/dim]")
        return
    for feature in features:
        console.print(f"  {escape(feature.id)}  {escape(feature.title)}")


@main.command()
@click.argument("feature_id")
@click.pass_context
def start(ctx: click.Context, feature_id: str) -> None:
    """Start the agent on a feature and stream its progress.

    Example:
        agentboard start auth
    """

    async def action(controller: FeatureController) -> Feature:
        return await _streaming(
            controller, feature_id, lambda: controller.start_feature(feature_id)
        )

    feature = _run(ctx, action)
    console.print(f"{escape(feature.id)} is now {_status(feature.status)}")


@main.command()
@click.argument("feature_id")
@click.argument("message")
@click.option("--image", "images", multiple=True, type=click.Path(exists=True), help="Image")
@click.pass_context
def send(ctx: click.Context, feature_id: str, message: str, images: tuple[str, ...]) -> None:
    """Send follow-up instructions to a feature."""

    async def action(controller: FeatureController) -> Feature:
        return await _streaming(
            controller,
            feature_id,
            lambda: controller.send_follow_up(feature_id, message, list(images)),
        )

    feature = _run(ctx, action)
    console.print(f"{escape(feature.id)} is now {_status(feature.status)}")


@main.command()
@click.argument("feature_id")
@click.option("--stat", is_flag=True, help="Only list changed files")
@click.pass_context
def diff(ctx: click.Context, feature_id: str, stat: bool) -> None:
    """Show the changes in a feature's workspace."""

    async def action(controller: FeatureController):
        return await controller.diff(feature_id)

    result = _run(ctx, action)
    if not result.has_changes:
        console.print("[dim]No changes[/dim]")
        return

    table = Table(title=f"Changes: {escape(feature_id)}")
    table.add_column("Status")
    table.add_column("Path", style="cyan")
    for entry in result.files:
        path = entry.path if not entry.old_path else f"{entry.old_path} -> {entry.path}"
        table.add_row(entry.status_text or entry.status, escape(path))
    console.print(table)

    if not stat:
        click.echo(result.diff)
        if result.truncated:
            console.print("[yellow]Diff truncated[/yellow]")


@main.command()
@click.argument("feature_id")
@click.option("--message", "-m", default=None, help="Commit message")
@click.pass_context
def commit(ctx: click.Context, feature_id: str, message: str | None) -> None:
    """Approve a feature: commit its workspace and mark it verified."""

    async def action(controller: FeatureController) -> Feature:
        return await controller.commit_feature(feature_id, message)

    feature = _run(ctx, action)
    sha = (feature.last_commit or "")[:12]
    console.print(f"[green]Committed[/green] {escape(feature.id)} {sha}".rstrip())


@main.command()
@click.argument("feature_id")
@click.pass_context
def stop(ctx: click.Context, feature_id: str) -> None:
    """Force-stop a feature; partial work moves to review."""

    async def action(controller: FeatureController) -> Feature:
        return await controller.stop_feature(feature_id)

    feature = _run(ctx, action)
    console.print(f"{escape(feature.id)} is now {_status(feature.status)}")


@main.command()
@click.argument("feature_id")
@click.pass_context
def archive(ctx: click.Context, feature_id: str) -> None:
    """Move a verified feature to completed."""

    async def action(controller: FeatureController) -> Feature:
        return await controller.archive_feature(feature_id)

    feature = _run(ctx, action)
    console.print(f"{escape(feature.id)} is now {_status(feature.status)}")


@main.command()
@click.argument("feature_id")
@click.pass_context
def restore(ctx: click.Context, feature_id: str) -> None:
    """Move a completed feature back to verified."""

    async def action(controller: FeatureController) -> Feature:
        return await controller.restore_feature(feature_id)

    feature = _run(ctx, action)
    console.print(f"{escape(feature.id)} is now {_status(feature.status)}")


@main.command()
@click.argument("feature_id")
@click.option("--keep-branch", is_flag=True, help="Keep the feature branch")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, feature_id: str, keep_branch: bool, yes: bool) -> None:
    """Delete a feature and reclaim its workspace."""
    if not yes:
        click.confirm(f"Delete feature {feature_id}?", abort=True)

    async def action(controller: FeatureController) -> None:
        await controller.delete_feature(feature_id, delete_branch=False if keep_branch else None)

    _run(ctx, action)
    console.print(f"[green]Deleted[/green] {escape(feature_id)}")


@main.command()
@click.argument("feature_ids", nargs=-1, required=True)
@click.option("--set", "value", type=int, default=None, help="Priority for a single feature")
@click.pass_context
def priority(ctx: click.Context, feature_ids: tuple[str, ...], value: int | None) -> None:
    """Set a feature's priority, or reorder several (first = 1).

    Example:
        agentboard priority auth --set 1
        agentboard priority db auth api
    """

    if value is not None and len(feature_ids) != 1:
        raise click.UsageError("--set takes exactly one feature id")

    async def action(controller: FeatureController) -> list[Feature]:
        if value is not None:
            return [await controller.set_priority(feature_ids[0], value)]
        return await controller.reorder(list(feature_ids))

    for feature in _run(ctx, action):
        console.print(f"  {escape(feature.id)}: priority {feature.priority}")


@main.command()
@click.pass_context
def reconcile(ctx: click.Context) -> None:
    """Repair board state after a crash or manual git changes."""

    async def action(controller: FeatureController):
        return await controller.reconcile()

    report = _run(ctx, action)
    if not report.changed:
        console.print("[green]Board state is consistent[/green]")
        return
    for label, items in (
        ("Cleared stale sessions", report.cleared_sessions),
        ("Cleared missing workspaces", report.cleared_workspaces),
        ("Restored workspaces", report.restored_workspaces),
        ("Dropped registrations", report.dropped_registrations),
        ("Registered branches", report.registered_branches),
        ("Removed directories", report.removed_directories),
    ):
        if items:
            console.print(f"[bold]{label}:[/bold] {escape(', '.join(items))}")


@main.command()
@click.argument("feature_id")
@click.option("--after", type=int, default=0, help="Only events after this id")
@click.pass_context
def events(ctx: click.Context, feature_id: str, after: int) -> None:
    """Replay a feature's event history."""

    async def action(controller: FeatureController) -> list[Event]:
        return controller.events(feature_id, after)

    history = _run(ctx, action)
    if not history:
        console.print("[dim]No events[/dim]")
        return

    table = Table(title=f"Events: {escape(feature_id)}")
    table.add_column("ID", justify="right")
    table.add_column("Time")
    table.add_column("Event")
    table.add_column("Detail")
    for event in history:
        color = EVENT_COLORS.get(event.event_type, "white")
        table.add_row(
            str(event.id),
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            f"[{color}]{event.event_type.value}[/{color}]",
            escape(_event_detail(event)[:80]),
        )
    console.print(table)


@main.command()
@click.option("--once", is_flag=True, help="Start one batch and wait for it only")
@click.option("--limit", type=int, default=None, help="Override max_concurrency")
@click.pass_context
def auto(ctx: click.Context, once: bool, limit: int | None) -> None:
    """Run ready features until nothing is left to start."""

    async def action(controller: FeatureController) -> list[str]:
        unsubscribe = controller.bus.subscribe(_print_event)
        started_all: list[str] = []
        try:
            while True:
                started_all += await controller.run_ready(limit)
                running = controller.supervisor.running_features()
                if not running:
                    break
                await asyncio.gather(*(controller.wait_for_session(fid) for fid in running))
                if once:
                    break
        finally:
            unsubscribe()
        return started_all

    started = _run(ctx, action)
    if not started:
        console.print("[dim]No features ready[/dim]")
        return
    console.print(f"[green]Ran {len(started)} feature(s):[/green] {escape(', '.join(started))}")


if __name__ == "__main__":
    main()
