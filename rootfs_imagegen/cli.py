"""Thin CLI wrapper for rootfs_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape

from rootfs_imagegen import __version__
from rootfs_imagegen.config import get_settings, print_settings_json, setup_logging
from rootfs_imagegen.errors import ImageGenError

app = typer.Typer(
    name="rootfs-imagegen",
    help="Root filesystem image generator - compose variants into btrfs images",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rootfs-imagegen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Root filesystem image generator - compose variants into btrfs images."""
    setup_logging(get_settings().log_level)


def _print_json(data: Any) -> None:
    console.print(json.dumps(data, indent=2), soft_wrap=True)


def _fail(error: ImageGenError) -> typer.Exit:
    console.print(f"[red]Error: {escape(error.message)}[/red]")
    return typer.Exit(code=error.exit_code)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    name_display = settings.name if settings.name else "(generated)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Config directory:    {settings.config_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Scratch directory:   {settings.scratch_dir}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Image name:          {name_display}")
    console.print(f"  Scratch image size:  {settings.scratch_image_size}")
    console.print(f"  Min free on / (GiB): {settings.min_root_free_gib}")
    console.print(f"  Min scratch (GiB):   {settings.min_scratch_free_gib}")
    console.print(f"  Debian suite:        {settings.debian_suite}")
    console.print(f"  Debian mirror:       {settings.debian_mirror}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  No cleanup:          {settings.no_cleanup}")
    console.print(f"  Skip archive:        {settings.skip_archive}")
    console.print(f"  Hooks fatal:         {settings.hooks_fatal}")
    console.print(f"  Transitive deps:     {settings.transitive_dependencies}")
    console.print(f"  Log level:           {settings.log_level}")


variants_app = typer.Typer(help="Inspect variant configuration")
app.add_typer(variants_app, name="variants")


@variants_app.command("list")
def variants_list(
    config_dir: Annotated[
        Path | None,
        typer.Option("--config-dir", "-c", help="Configuration root"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List variants in the configuration root."""
    from rootfs_imagegen.variants.resolver import list_variants

    settings = get_settings()
    root = config_dir or settings.config_dir
    variants = list_variants(root)

    if json_output:
        output = [
            {
                "name": v.name,
                "build_type": v.build_type.value if v.build_type else None,
                "dependencies": list(v.dependencies),
            }
            for v in variants
        ]
        _print_json(output)
        return

    if not variants:
        console.print(f"[yellow]No variants found in {root}[/yellow]")
        return

    console.print(f"[bold]Found {len(variants)} variant(s):[/bold]")
    console.print()
    for v in variants:
        build_type = v.build_type.value if v.build_type else "[red]unset[/red]"
        console.print(f"  [green]{v.name}[/green] ({build_type})")
        if v.dependencies:
            console.print(f"    Depends: {', '.join(v.dependencies)}")


@variants_app.command("show")
def variants_show(
    name: Annotated[str, typer.Argument(help="Variant to resolve")],
    config_dir: Annotated[
        Path | None,
        typer.Option("--config-dir", "-c", help="Configuration root"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a variant's contributors and merged package lists."""
    from rootfs_imagegen.builds.service import describe_variant

    settings = get_settings()
    if config_dir is not None:
        settings = settings.model_copy(update={"config_dir": config_dir})

    try:
        plan = describe_variant(settings, name)
    except ImageGenError as e:
        raise _fail(e) from None

    if json_output:
        data: dict[str, Any] = asdict(plan)
        data["build_type"] = plan.build_type.value if plan.build_type else None
        _print_json(data)
        return

    build_type = plan.build_type.value if plan.build_type else "unset"
    console.print(f"[bold]{plan.name}[/bold] ({build_type})")
    console.print(f"  Contributors: {' -> '.join(plan.contributors)}")
    console.print(f"  Bootstrap packages ({len(plan.bootstrap_packages)}):")
    for pkg in plan.bootstrap_packages:
        console.print(f"    {pkg}")
    console.print(f"  Packages ({len(plan.packages)}):")
    for pkg in plan.packages:
        console.print(f"    {pkg}")


@app.command()
def build(
    name: Annotated[str, typer.Argument(help="Variant to build")],
    config_dir: Annotated[
        Path | None,
        typer.Option("--config-dir", "-c", help="Configuration root"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Output root directory"),
    ] = None,
    image_name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Deterministic image name"),
    ] = None,
    no_cleanup: Annotated[
        bool,
        typer.Option("--no-cleanup", help="Leave scratch state for debugging"),
    ] = False,
    skip_archive: Annotated[
        bool,
        typer.Option("--skip-archive", help="Do not create the .tar.zst archive"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a variant into root, etc and var images."""
    from rootfs_imagegen.builds.service import build_variant

    settings = get_settings()
    overrides: dict[str, Any] = {}
    if config_dir is not None:
        overrides["config_dir"] = config_dir
    if output_dir is not None:
        overrides["output_dir"] = output_dir
    if image_name is not None:
        overrides["name"] = image_name
    if no_cleanup:
        overrides["no_cleanup"] = True
    if skip_archive:
        overrides["skip_archive"] = True
    if overrides:
        settings = settings.model_copy(update=overrides)

    if not json_output:
        console.print(f"[blue]Building {name}...[/blue]")

    try:
        outcome = build_variant(name, settings=settings)
    except ImageGenError as e:
        if settings.no_cleanup:
            console.print(
                f"[yellow]Cleanup disabled; scratch state left in "
                f"{settings.scratch_dir}[/yellow]"
            )
        raise _fail(e) from None

    if json_output:
        output = {
            "image_name": outcome.image_name,
            "build_type": outcome.build_type.value,
            "output_dir": str(outcome.output_dir),
            "archive_path": str(outcome.archive_path) if outcome.archive_path else None,
            "artifacts": [asdict(a) for a in outcome.artifacts],
            "states": [s.value for s in outcome.states],
        }
        _print_json(output)
        return

    console.print(f"[green]✓ Built {outcome.image_name}[/green]")
    console.print(f"  Output: {outcome.output_dir}")
    if outcome.archive_path:
        console.print(f"  Archive: {outcome.archive_path}")
    for artifact in outcome.artifacts:
        console.print(f"    {artifact.relative_path} ({artifact.size_bytes} bytes)")


if __name__ == "__main__":
    app()
