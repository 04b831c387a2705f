"""
Command-line interface for decant.

Usage:
    decant install [Codex.dmg]
    decant patch /path/to/app.asar -o ./patched
    decant inspect /path/to/app.asar
    decant tools
    decant doctor
"""

from __future__ import annotations

import json
import logging
import platform
import shutil
import sys
import tempfile
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import BarColumn, DownloadColumn, Progress, SpinnerColumn, TextColumn, TransferSpeedColumn
from rich.table import Table

from decant import __version__
from decant.config import PortConfig
from decant.errors import DecantError


console = Console()
err_console = Console(stderr=True)


def _configure_logging(verbose: int, quiet: int) -> None:
    level = logging.INFO
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG

    logger = logging.getLogger("decant")
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()
    logger.addHandler(RichHandler(console=err_console, show_time=False, show_path=False))


def _fail(error: Exception) -> None:
    """Print one classified line and exit non-zero."""
    if isinstance(error, DecantError):
        err_console.print(f"[red]{escape(f'[{error.kind}]')}[/red] {escape(error.message)}", highlight=False)
        if error.hint:
            err_console.print(error.hint, markup=False)
    else:
        err_console.print(f"[red]Error:[/red] {error}")
    sys.exit(1)


@click.group()
@click.version_option(__version__)
@click.option("-v", "--verbose", count=True, help="Show debug output")
@click.option("-q", "--quiet", count=True, help="Only show warnings and errors")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="JSON configuration file")
@click.pass_context
def cli(ctx: click.Context, verbose: int, quiet: int, config_path: Path | None):
    """Decant - port the macOS Codex Desktop app to Linux."""
    _configure_logging(verbose, quiet)
    base = PortConfig.load(config_path) if config_path else None
    ctx.obj = PortConfig.from_env(base=base)


@cli.command()
@click.argument("dmg", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--backend", type=click.Choice(["cli", "native"]), default="cli",
              help="Archive backend: cached asar tool or built-in codec")
@click.pass_obj
def install(config: PortConfig, dmg: Path | None, backend: str):
    """Build a Linux install of Codex Desktop."""
    from decant.installer import Installer

    err_console.rule("Codex Desktop for Linux")
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=err_console,
        ) as progress:
            script = Installer(config, backend=backend).run(dmg_path=dmg, progress=progress)
    except Exception as e:
        _fail(e)

    err_console.print()
    err_console.print("[green]Installation complete![/green]")
    err_console.print(f"  Run:  {script}")


@cli.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-o", "--output", required=True, type=click.Path(file_okay=False, path_type=Path),
              help="Directory for the patched archive")
@click.option("--backend", type=click.Choice(["cli", "native"]), default="cli",
              help="Archive backend: cached asar tool or built-in codec")
@click.pass_obj
def patch(config: PortConfig, archive: Path, output: Path, backend: str):
    """Patch an app.asar for the target Electron runtime."""
    from decant.installer import make_backend
    from decant.patcher import ArchivePatcher
    from decant.rebuild import NativeModuleRebuilder
    from decant.toolchain import ToolchainCache

    try:
        config.npm_cache_dir.mkdir(parents=True, exist_ok=True)
        toolchain = ToolchainCache.from_config(config)
        rebuilder = NativeModuleRebuilder.from_config(config, toolchain)

        with tempfile.TemporaryDirectory(prefix="decant-") as tmp:
            patcher = ArchivePatcher.from_config(config, make_backend(backend, toolchain), rebuilder, tmp)
            result = patcher.patch(archive.resolve())

            output.mkdir(parents=True, exist_ok=True)
            shutil.copy2(result.archive, output / result.archive.name)
            if result.unpacked_dir.is_dir():
                target = output / result.unpacked_dir.name
                if target.exists():
                    shutil.rmtree(target)
                shutil.copytree(result.unpacked_dir, target, symlinks=True)
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/green] Patched archive: {output / archive.name}")
    state = "reused" if result.rebuild.cache_hit else "built"
    console.print(f"  Native build ({state}): {result.rebuild.build_dir}")


@cli.command()
@click.pass_obj
def tools(config: PortConfig):
    """Provision the cached toolchain and show its paths."""
    from decant.toolchain import ToolchainCache

    try:
        config.npm_cache_dir.mkdir(parents=True, exist_ok=True)
        with err_console.status("Preparing toolchain..."):
            paths = ToolchainCache.from_config(config).ensure_tools()
    except Exception as e:
        _fail(e)

    console.print(f"asar:             {paths.asar}")
    console.print(f"electron-rebuild: {paths.electron_rebuild}")


@cli.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def inspect(config: PortConfig, archive: Path):
    """List the members of an asar archive."""
    from decant.asar import AsarArchive, matches_unpack

    try:
        asar = AsarArchive(archive)
        entries = [e for e in asar.entries() if e.kind != "directory"]
    except DecantError as e:
        _fail(e)

    table = Table()
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("Unpacked")

    for entry in entries:
        size = _format_size(entry.size) if entry.kind == "file" else f"-> {entry.link}"
        table.add_row(entry.path, size, "✓" if entry.unpacked else "")
    console.print(table)

    foreign = [
        e.path for e in entries
        if matches_unpack(e.path, config.foreign_files)
        or any(e.path.startswith(f"{d}/") for d in config.foreign_dirs)
    ]
    if foreign:
        console.print()
        console.print("[bold yellow]macOS-only members:[/bold yellow]")
        for path in foreign:
            console.print(f"  [yellow]⚠[/yellow] {path}")

    console.print()
    console.print("[bold]Native modules:[/bold]")
    for module in config.native_modules:
        manifest = module.manifest_path.as_posix()
        try:
            version = json.loads(asar.read(manifest)).get("version", "unknown")
        except (DecantError, ValueError):
            version = "[red]not found[/red]"
        console.print(f"  • {module.name}: {version}")


@cli.command()
def doctor():
    """Check the host for the tools the port needs."""
    from decant.installer import ELECTRON_ARCH, probe_environment

    report = probe_environment()

    table = Table(show_header=False, box=None)
    table.add_column("Tool", style="bold")
    table.add_column("Status")
    for name, path in sorted(report.found.items()):
        table.add_row(name, f"[green]✓[/green] {path}")
    for name in report.missing:
        table.add_row(name, "[red]✗ missing[/red]")
    table.add_row("node version", report.node_version or "Unknown")

    machine = platform.machine()
    table.add_row("architecture", f"{machine} -> {ELECTRON_ARCH.get(machine, '[red]unsupported[/red]')}")
    console.print(table)

    if report.missing:
        sys.exit(1)


def _format_size(size: int) -> str:
    """Format byte size for display."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
