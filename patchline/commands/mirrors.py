"""Mirror descriptor management commands."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click
import httpx
import structlog
from rich.console import Console
from rich.table import Table

from patchline.core.config import AppConfig
from patchline.core.errors import DescriptorError, PatchlineError
from patchline.core.runtime import open_runtime
from patchline.core.types import ProbeResult
from patchline.sources.descriptor import MirrorDescriptor
from patchline.sources.discovery import DEFAULT_TIMEOUT, DiscoveryResult, MirrorDiscovery
from patchline.sources.loader import delete_descriptor, list_descriptors, save_descriptor

logger = structlog.get_logger()


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj.get("verbose", False)
    debug: bool = ctx.obj.get("debug", False)
    return config, console, verbose, debug


@click.group("mirrors", short_help="Manage mirror descriptors.")
def mirrors_group() -> None:
    """Manage community mirror descriptors.

    Each mirror is one ``<id>.mirror.json`` file in the mirrors directory.
    Only descriptors with ``"enabled": true`` take part in updates.
    """
    pass


@mirrors_group.command("list")
@click.pass_context
def list_mirrors(ctx: click.Context) -> None:
    """List descriptor files and whether they load."""
    config, console, verbose, _ = _get_context_objects(ctx)
    mirrors_dir = config.resolved_mirrors_dir
    entries = list_descriptors(mirrors_dir)

    if config.output_format == "json":
        data = [
            {
                "file": path.name,
                "id": d.id if d else None,
                "name": d.name if d else None,
                "type": d.source_type.value if d else None,
                "priority": d.priority if d else None,
                "enabled": d.enabled if d else False,
                "error": error,
            }
            for path, d, error in entries
        ]
        print(json.dumps(data, indent=2))
        return

    if not entries:
        console.print(f"[yellow]No mirror descriptors in {mirrors_dir}[/yellow]")
        return

    table = Table(title="Mirrors")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type", style="blue")
    table.add_column("Priority", justify="right")
    table.add_column("Status")
    if verbose:
        table.add_column("File", style="dim")

    for path, descriptor, error in entries:
        if descriptor is None:
            row = ["?", "", "", "", f"[red]invalid: {error}[/red]"]
        else:
            status = "[green]enabled[/green]" if descriptor.enabled else "[dim]disabled[/dim]"
            row = [
                descriptor.id,
                descriptor.name,
                descriptor.source_type.value,
                str(descriptor.priority),
                status,
            ]
        if verbose:
            row.append(path.name)
        table.add_row(*row)

    console.print(table)


@mirrors_group.command("add")
@click.argument("descriptor_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--enable/--no-enable", default=True, help="Mark the mirror enabled")
@click.pass_context
def add_mirror(ctx: click.Context, descriptor_file: Path, enable: bool) -> None:
    """Validate a descriptor file and install it into the mirrors directory."""
    config, console, _, _ = _get_context_objects(ctx)

    try:
        descriptor = MirrorDescriptor.from_file(descriptor_file)
    except DescriptorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if enable:
        descriptor.enabled = True

    for _, existing, _ in list_descriptors(config.resolved_mirrors_dir):
        if existing is not None and existing.id == descriptor.id:
            console.print(f"[yellow]Replacing existing mirror '{descriptor.id}'[/yellow]")
            delete_descriptor(config.resolved_mirrors_dir, descriptor.id)
            break

    path = save_descriptor(config.resolved_mirrors_dir, descriptor)
    console.print(f"[green]Added mirror '{descriptor.id}' ({path})[/green]")


@mirrors_group.command("remove")
@click.argument("mirror_id")
@click.pass_context
def remove_mirror(ctx: click.Context, mirror_id: str) -> None:
    """Delete a mirror descriptor."""
    config, console, _, _ = _get_context_objects(ctx)

    if not delete_descriptor(config.resolved_mirrors_dir, mirror_id):
        console.print(f"[red]No mirror with id '{mirror_id}'[/red]")
        raise click.Abort()
    console.print(f"[green]Removed mirror '{mirror_id}'[/green]")


async def _probe(config: AppConfig, force: bool) -> list[ProbeResult]:
    async with open_runtime(config) as runtime:
        return await runtime.resolver.probe_mirrors(force=force)


@mirrors_group.command("probe")
@click.option("--force", is_flag=True, help="Ignore cached probe results")
@click.pass_context
def probe_mirrors(ctx: click.Context, force: bool) -> None:
    """Check connectivity and latency of every enabled mirror."""
    config, console, _, debug = _get_context_objects(ctx)

    try:
        results = asyncio.run(_probe(config, force))
    except PatchlineError as e:
        console.print(f"[red]Error: {e}[/red]")
        if debug:
            import traceback
            console.print(traceback.format_exc())
        raise click.Abort() from e

    if config.output_format == "json":
        print(json.dumps([r.model_dump() for r in results], indent=2))
        return

    if not results:
        console.print("[yellow]No enabled mirrors[/yellow]")
        return

    table = Table(title="Mirror probe")
    table.add_column("ID", style="cyan")
    table.add_column("URL", style="dim")
    table.add_column("Available")
    table.add_column("Latency", justify="right")

    for result in sorted(results, key=lambda r: (not r.available, r.latency_ms or 0)):
        available = "[green]yes[/green]" if result.available else f"[red]no[/red] {result.error or ''}"
        latency = f"{result.latency_ms} ms" if result.latency_ms is not None else "-"
        table.add_row(result.source_id, result.url, available, latency)

    console.print(table)
    logger.debug("mirrors_probed", count=len(results))


async def _discover(config: AppConfig, url: str, timeout: float) -> DiscoveryResult:
    async with httpx.AsyncClient(
        verify=config.download.verify_ssl,
        follow_redirects=True,
        headers={"User-Agent": config.download.user_agent},
    ) as client:
        return await MirrorDiscovery(client, timeout=timeout).discover(url)


@mirrors_group.command("discover")
@click.argument("url")
@click.option("--id", "mirror_id", help="Override the generated mirror id")
@click.option("--save", is_flag=True, help="Install the generated descriptor")
@click.option("--enable/--no-enable", default=True, help="Mark a saved mirror enabled")
@click.option("--timeout", type=float, default=DEFAULT_TIMEOUT, show_default=True, help="Per-request timeout")
@click.pass_context
def discover_mirror(
    ctx: click.Context, url: str, mirror_id: str | None, save: bool, enable: bool, timeout: float
) -> None:
    """Detect the layout of a mirror at URL and print its descriptor.

    Known layouts are tried against URL and each of its parent paths.
    With --save the descriptor is written to the mirrors directory.
    """
    config, console, _, debug = _get_context_objects(ctx)

    try:
        result = asyncio.run(_discover(config, url, timeout))
        descriptor = result.descriptor
        if mirror_id:
            descriptor = MirrorDescriptor.from_dict({**descriptor.to_dict(), "id": mirror_id})
    except PatchlineError as e:
        console.print(f"[red]Error: {e}[/red]")
        if debug:
            import traceback
            console.print(traceback.format_exc())
        raise click.Abort() from e

    path = None
    if save:
        descriptor.enabled = enable
        replaced = delete_descriptor(config.resolved_mirrors_dir, descriptor.id)
        if replaced and config.output_format != "json":
            console.print(f"[yellow]Replacing existing mirror '{descriptor.id}'[/yellow]")
        path = save_descriptor(config.resolved_mirrors_dir, descriptor)

    if config.output_format == "json":
        data = {
            "strategy": result.strategy,
            "base_url": result.base_url,
            "saved": str(path) if path else None,
            "descriptor": descriptor.to_dict(),
        }
        print(json.dumps(data, indent=2))
        return

    console.print(
        f"[green]Detected {descriptor.source_type.value} mirror '{descriptor.id}'[/green] "
        f"at {result.base_url} ({result.strategy})"
    )
    if path:
        console.print(f"[green]Saved {path}[/green]")
    else:
        console.print_json(json.dumps(descriptor.to_dict()))
