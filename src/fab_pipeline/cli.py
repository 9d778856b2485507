"""
fab-pipeline CLI.

Commands:
    build           Build every pipeline of a package directory
    validate        Parse pipeline files without running them
    inspect-object  Load a composite object document and print its entities
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from fab_pipeline import __version__
from fab_pipeline.asset_cache import AssetCache
from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.errors import FabPipelineError
from fab_pipeline.settings import Settings

console = Console()


@click.group()
@click.version_option(version=__version__)
@click.option("--settings", "-s", "settings_path", type=Path, help="Path to a settings YAML file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, settings_path: Path | None, verbose: bool) -> None:
    """fab-pipeline - 3D asset build pipeline"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    try:
        ctx.obj["settings"] = Settings.load(settings_path)
    except FabPipelineError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.argument("in_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("out_dir", type=click.Path(file_okay=False, path_type=Path))
@click.option("--jobs", "-j", type=int, help="Override max concurrent jobs")
@click.option("--json", "as_json", is_flag=True, help="JSON output")
@click.pass_context
def build(ctx: click.Context, in_dir: Path, out_dir: Path, jobs: int | None, as_json: bool) -> None:
    """Build a package directory into OUT_DIR."""
    from fab_pipeline.pipeline.build import build_package

    settings: Settings = ctx.obj["settings"]
    if jobs is not None:
        settings.max_concurrent_jobs = max(1, jobs)

    try:
        report = asyncio.run(build_package(in_dir, out_dir, settings))
    except FabPipelineError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        table = Table(title="Build output")
        table.add_column("Type", style="cyan")
        table.add_column("Name")
        table.add_column("Hidden")
        table.add_column("Id", style="dim")
        for asset in report.assets:
            table.add_row(asset.type.value, asset.name, "yes" if asset.hidden else "", asset.id)
        console.print(table)
        for failure in report.failures:
            console.print(
                f"[red]✗[/red] {failure.pipeline_file} [{failure.index}]: "
                f"{failure.error_type}: {failure.error}"
            )
        status = "[green]✓[/green]" if report.success else "[yellow]![/yellow]"
        console.print(
            f"{status} {len(report.assets)} assets, {len(report.written)} files, "
            f"{len(report.failures)} failed jobs in {report.duration_ms}ms"
        )

    if not report.success:
        sys.exit(1)


@main.command()
@click.argument("in_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def validate(in_dir: Path) -> None:
    """Parse every pipeline file below IN_DIR."""
    from fab_pipeline.pipeline.config import find_pipeline_files, load_pipeline_file

    paths = find_pipeline_files(in_dir)
    if not paths:
        console.print("[yellow]No pipeline files found[/yellow]")
        return

    failed = False
    for path in paths:
        try:
            pipeline_file = load_pipeline_file(path)
        except FabPipelineError as e:
            console.print(f"[red]✗[/red] {path}: {e}")
            failed = True
            continue
        importers = ", ".join(e.config.importer.type for e in pipeline_file.entries)
        console.print(f"[green]✓[/green] {path} ({len(pipeline_file.entries)} pipelines: {importers})")

    if failed:
        sys.exit(1)


@main.command("inspect-object")
@click.argument("url")
@click.pass_context
def inspect_object(ctx: click.Context, url: str) -> None:
    """Load the object at URL (a package directory, path or URL) and print it."""
    from fab_pipeline.objects.loader import load_object

    settings: Settings = ctx.obj["settings"]
    target = AbsAssetUrl.from_file_path(Path(url)) if Path(url).exists() else url

    async def _load():
        async with AssetCache(settings.http_timeout, settings.user_agent) as assets:
            return await load_object(assets, target)

    try:
        world = asyncio.run(_load())
    except FabPipelineError as e:
        raise click.ClickException(str(e)) from e

    table = Table(title=f"Object: {world.name}")
    table.add_column("Entity", style="cyan")
    table.add_column("Root")
    table.add_column("Components")
    children = set(world.children())
    for entity in world.entities():
        table.add_row(
            str(entity),
            "yes" if entity in children else "",
            json.dumps(world.components(entity), sort_keys=True),
        )
    console.print(table)


if __name__ == "__main__":
    main()
