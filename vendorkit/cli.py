"""CLI entry point: vendorkit.

Subcommands:
    vendorkit run                   # vendor every library in vendor.toml
    vendorkit run molinillo thor    # vendor selected top-level libraries
    vendorkit list                  # show declared libraries and dependencies
    vendorkit manifest              # show what is vendored, at which commit
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import NoReturn

import click

from vendorkit.config import DEFAULT_CONFIG, VendorConfig, load_config
from vendorkit.core.logging import setup_logging
from vendorkit.engine import vendor
from vendorkit.exceptions import VendorError
from vendorkit.manifest import load_manifest
from vendorkit.models import LibrarySpec


def _fail(exc: VendorError) -> NoReturn:
    click.echo(f"Error: {exc.describe()}", err=True)
    sys.exit(1)


def _load(ctx: click.Context) -> tuple[VendorConfig, Path]:
    config_path: Path = ctx.obj["config"]
    try:
        return load_config(config_path), config_path.parent
    except VendorError as exc:
        _fail(exc)


def _print_tree(spec: LibrarySpec, depth: int = 0) -> None:
    indent = "  " * depth
    license_note = spec.license_path or "no license"
    click.echo(
        f"{indent}{spec.name} @ {spec.version}  {spec.prefix}::{spec.namespace}  "
        f"-> {spec.destination}  ({license_note})"
    )
    for dep in spec.dependencies:
        _print_tree(dep, depth + 1)


@click.group()
@click.option(
    "-c",
    "--config",
    "config_path",
    default=DEFAULT_CONFIG,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to vendor.toml",
)
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path, verbose: bool) -> None:
    """vendorkit: vendor pinned, namespace-rewritten copies of source libraries."""
    setup_logging("DEBUG" if verbose else None)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config_path


@main.command("run")
@click.argument("names", nargs=-1)
@click.pass_context
def run(ctx: click.Context, names: tuple[str, ...]) -> None:
    """Vendor the named top-level libraries (all of them by default)."""
    config, root = _load(ctx)
    try:
        specs = config.select(names)
        report = asyncio.run(
            vendor(
                specs,
                root=root,
                manifest_path=root / config.manifest,
                declared=config.specs(),
            )
        )
    except VendorError as exc:
        _fail(exc)

    for entry in report.entries:
        click.echo(f"  {entry.name:<24} {entry.commit[:12]}  {entry.destination}")
    click.echo(f"Vendored {len(report.entries)} librar{'y' if len(report.entries) == 1 else 'ies'}.")


@main.command("list")
@click.pass_context
def list_libraries(ctx: click.Context) -> None:
    """Show declared libraries and their dependencies."""
    config, _ = _load(ctx)
    specs = config.specs()
    if not specs:
        click.echo("No libraries declared.")
        return
    for spec in specs:
        _print_tree(spec)


@main.command("manifest")
@click.pass_context
def show_manifest(ctx: click.Context) -> None:
    """Show the vendor manifest."""
    config, root = _load(ctx)
    try:
        entries = load_manifest(root / config.manifest)
    except VendorError as exc:
        _fail(exc)
    if not entries:
        click.echo("Nothing vendored yet.")
        return
    for entry in entries:
        click.echo(
            f"  {entry.name:<24} {entry.commit[:12]}  {entry.prefix:<20} "
            f"{entry.destination}  (fetched {entry.fetched_at})"
        )


if __name__ == "__main__":
    main()
