"""Version listing command."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from patchline.core.config import AppConfig
from patchline.core.errors import PatchlineError
from patchline.core.runtime import open_runtime
from patchline.core.utils import normalize_branch
from patchline.sources.official import StaticTokenProvider


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj.get("verbose", False)
    debug: bool = ctx.obj.get("debug", False)
    return config, console, verbose, debug


async def _collect_versions(
    config: AppConfig, branch: str, token: str | None, refresh: bool
) -> dict[str, Any]:
    async with open_runtime(config, StaticTokenProvider(token)) as runtime:
        resolver = runtime.resolver
        if refresh:
            by_source = await resolver.refresh(branch)
        else:
            by_source = await resolver.versions_by_source(branch)

        sources = []
        for source in resolver.sources:
            layout = source.layout_info()
            sources.append({
                "id": source.source_id,
                "name": source.display_name,
                "kind": source.kind.value,
                "priority": source.priority,
                "diff_only": source.is_diff_only(branch),
                "versions": by_source.get(source.source_id),
                "full_builds": layout.full_build_location,
                "diffs": layout.diff_location,
                "cache_policy": layout.cache_policy,
            })

        merged = sorted({v for versions in by_source.values() for v in versions})
        return {
            "branch": branch,
            "installed": runtime.checkpoints.get(branch),
            "latest": merged[-1] if merged else None,
            "diff_only": resolver.is_diff_only(branch),
            "official_unreachable": resolver.official_unreachable,
            "sources": sources,
        }


@click.command()
@click.option("--branch", "-b", help="Branch to inspect (default from config)")
@click.option("--refresh", is_flag=True, help="Ignore cached metadata and refetch")
@click.option("--token", envvar="PATCHLINE_TOKEN", help="Access token for the official API")
@click.pass_context
def versions(ctx: click.Context, branch: str | None, refresh: bool, token: str | None) -> None:
    """List versions available from every source."""
    config, console, verbose, debug = _get_context_objects(ctx)
    branch = normalize_branch(branch or config.default_branch)

    try:
        info = asyncio.run(_collect_versions(config, branch, token, refresh))
    except PatchlineError as e:
        console.print(f"[red]Error: {e}[/red]")
        if debug:
            import traceback
            console.print(traceback.format_exc())
        raise click.Abort() from e

    if config.output_format == "json":
        print(json.dumps(info, indent=2, default=str))
        return

    table = Table(title=f"Versions on {branch}")
    table.add_column("Source", style="cyan")
    table.add_column("Kind", style="blue")
    table.add_column("Priority", justify="right")
    table.add_column("Versions", style="green")
    if verbose:
        table.add_column("Full builds", style="dim")
        table.add_column("Diffs", style="dim")
        table.add_column("Cache", style="dim")

    for source in info["sources"]:
        found = source["versions"]
        if found is None:
            listed = "[red]unavailable[/red]"
        elif not found:
            listed = "[dim]none[/dim]"
        else:
            listed = ", ".join(str(v) for v in found)
        if source["diff_only"]:
            listed += " [yellow](diff-only)[/yellow]"

        row = [source["name"], source["kind"], str(source["priority"]), listed]
        if verbose:
            row += [source["full_builds"], source["diffs"], source["cache_policy"]]
        table.add_row(*row)

    console.print(table)
    console.print(f"Installed: [cyan]{info['installed'] if info['installed'] is not None else 'none'}[/cyan]")
    console.print(f"Latest: [green]{info['latest'] if info['latest'] is not None else 'unknown'}[/green]")
    if info["official_unreachable"]:
        console.print("[yellow]Official source unreachable, mirrors only[/yellow]")
