"""Update and installation status commands."""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from datetime import UTC, datetime

import click
import structlog
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from patchline.core.cancel import CancellationToken
from patchline.core.checkpoint import CheckpointStore
from patchline.core.config import AppConfig
from patchline.core.errors import OperationCancelledError, PatchlineError
from patchline.core.runtime import open_runtime
from patchline.core.types import ProgressEvent, UpdatePlan
from patchline.core.utils import format_size, normalize_branch
from patchline.sources.official import StaticTokenProvider

logger = structlog.get_logger()

EXIT_CANCELLED = 130


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj.get("verbose", False)
    debug: bool = ctx.obj.get("debug", False)
    return config, console, verbose, debug


def _plan_to_dict(plan: UpdatePlan) -> dict[str, object]:
    return {
        "branch": plan.branch,
        "installed": plan.installed_version,
        "target": plan.target_version,
        "full_replace": plan.is_full_replace,
        "steps": [step.label for step in plan.steps],
    }


async def _run_update(
    config: AppConfig,
    branch: str,
    target: int | None,
    token: str | None,
    dry_run: bool,
    progress: Progress | None,
) -> UpdatePlan:
    cancel = CancellationToken()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, cancel.cancel, "interrupted")

    async with open_runtime(config, StaticTokenProvider(token)) as runtime:
        orchestrator = runtime.orchestrator
        if dry_run:
            installed = runtime.checkpoints.get(branch)
            return await orchestrator.plan(branch, installed, target, cancel)

        task_id = progress.add_task("Resolving...", total=100) if progress else None

        def on_progress(event: ProgressEvent) -> None:
            if progress is None or task_id is None:
                return
            label = str(event.args[0]) if event.args else ""
            if event.bytes_total:
                label += f" {format_size(event.bytes_downloaded)}/{format_size(event.bytes_total)}"
            progress.update(
                task_id,
                completed=event.percent,
                description=f"{event.phase} {label}".strip(),
            )

        return await orchestrator.run(branch, target, on_progress, cancel)


@click.command()
@click.option("--branch", "-b", help="Branch to update (default from config)")
@click.option("--target", "-t", type=int, help="Target version (default latest)")
@click.option("--token", envvar="PATCHLINE_TOKEN", help="Access token for the official API")
@click.option("--dry-run", is_flag=True, help="Show the plan without downloading")
@click.pass_context
def update(
    ctx: click.Context,
    branch: str | None,
    target: int | None,
    token: str | None,
    dry_run: bool,
) -> None:
    """Update the installation to a target version."""
    config, console, _, debug = _get_context_objects(ctx)
    branch = normalize_branch(branch or config.default_branch)
    show_progress = config.output_format == "rich" and not dry_run

    try:
        if show_progress:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                plan = asyncio.run(_run_update(config, branch, target, token, dry_run, progress))
        else:
            plan = asyncio.run(_run_update(config, branch, target, token, dry_run, None))
    except OperationCancelledError:
        console.print("[yellow]Update cancelled; progress so far is kept[/yellow]")
        ctx.exit(EXIT_CANCELLED)
    except PatchlineError as e:
        console.print(f"[red]Error: {e}[/red]")
        if debug:
            import traceback
            console.print(traceback.format_exc())
        raise click.Abort() from e

    if config.output_format == "json":
        print(json.dumps(_plan_to_dict(plan), indent=2))
        return

    if not plan.steps:
        console.print(f"[green]{branch} is up to date (v{plan.target_version})[/green]")
        return

    steps = ", ".join(step.label for step in plan.steps)
    if dry_run:
        kind = "full build" if plan.is_full_replace else f"{len(plan.steps)} diff step(s)"
        console.print(f"Plan for [cyan]{branch}[/cyan]: {kind}: {steps}")
    else:
        console.print(f"[green]Updated {branch} to v{plan.target_version}[/green] ({steps})")


@click.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show installed versions per branch."""
    config, console, _, _ = _get_context_objects(ctx)
    entries = CheckpointStore(config.install_dir).all()

    if config.output_format == "json":
        print(json.dumps(entries, indent=2))
        return

    if not entries:
        console.print(f"[yellow]Nothing installed in {config.install_dir}[/yellow]")
        return

    table = Table(title=f"Installation {config.install_dir}")
    table.add_column("Branch", style="cyan")
    table.add_column("Installed", style="green", justify="right")
    table.add_column("Updated", style="dim")

    for branch, entry in sorted(entries.items()):
        updated_at = entry.get("updated_at")
        updated = (
            datetime.fromtimestamp(updated_at, tz=UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
            if isinstance(updated_at, int | float)
            else "-"
        )
        table.add_row(branch, str(entry.get("installed_version", "-")), updated)

    console.print(table)


@click.command()
@click.argument("branch")
@click.confirmation_option(prompt="Forget the installed version of this branch?")
@click.pass_context
def reset(ctx: click.Context, branch: str) -> None:
    """Forget the installed version of a branch (next update starts fresh)."""
    config, console, _, _ = _get_context_objects(ctx)
    CheckpointStore(config.install_dir).clear(branch)
    logger.info("checkpoint_reset", branch=branch)
    console.print(f"[green]Checkpoint for {normalize_branch(branch)} cleared[/green]")
