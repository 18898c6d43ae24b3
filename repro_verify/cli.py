"""Thin CLI wrapper for repro_verify.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from repro_verify import __version__
from repro_verify.config import Settings, get_settings, print_settings_json
from repro_verify.errors import PipelineInterrupted, ReproError
from repro_verify.image.source import SourceType, make_source
from repro_verify.types import Arch, BuildIdentity, Platform

app = typer.Typer(
    name="repro-verify",
    help="FreeBSD image reproducibility verifier - rebuild an image from its "
    "recorded source and diff the results",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"repro-verify version {__version__}")
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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """FreeBSD image reproducibility verifier."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


def _fail(error: ReproError) -> typer.Exit:
    """Report a fatal error on stderr and return the matching exit."""
    if isinstance(error, PipelineInterrupted):
        err_console.print(f"[red]{escape(error.message)}[/red]")
        return typer.Exit(code=error.exit_code)
    err_console.print(f"[red]Error ({error.code}):[/red] {escape(error.message)}")
    return typer.Exit(code=1)


def _effective_settings(
    results_dir: Path | None = None,
    keep_work: bool | None = None,
) -> Settings:
    settings = get_settings()
    updates: dict[str, object] = {}
    if results_dir is not None:
        updates["results_dir"] = results_dir
    if keep_work:
        updates["keep_work_dir"] = True
    return settings.model_copy(update=updates) if updates else settings


def _identity_to_dict(identity: BuildIdentity) -> dict[str, str | None]:
    return {
        "platform": identity.platform.value if identity.platform else None,
        "arch": identity.arch.value if identity.arch else None,
        "branch": identity.branch,
        "commit_hash": identity.commit_hash,
    }


SourceTypeOption = Annotated[
    SourceType,
    typer.Option("--type", "-t", help="Image source type", case_sensitive=False),
]
ImageOption = Annotated[
    str,
    typer.Option("--image", "-i", help="Image path, URL or cloud image ID"),
]
PlatformOption = Annotated[
    Platform | None,
    typer.Option("--platform", "-p", help="Machine platform (TARGET)", case_sensitive=False),
]
ArchOption = Annotated[
    Arch | None,
    typer.Option("--arch", "-a", help="Machine architecture (TARGET_ARCH)", case_sensitive=False),
]
BranchOption = Annotated[
    str | None,
    typer.Option("--branch", "-b", help="Source branch (main, stable/N, releng/N.M)"),
]
CommitOption = Annotated[
    str | None,
    typer.Option("--commit", "-c", help="Source commit hash"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


@app.command()
def verify(
    image: ImageOption,
    source_type: SourceTypeOption = SourceType.LOCAL,
    platform: PlatformOption = None,
    arch: ArchOption = None,
    branch: BranchOption = None,
    commit: CommitOption = None,
    results_dir: Annotated[
        Path | None,
        typer.Option("--results-dir", "-o", help="Directory for manifests and diff"),
    ] = None,
    keep_work: Annotated[
        bool,
        typer.Option("--keep-work", help="Keep the source tree and objects"),
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """Rebuild an image from its source revision and diff the contents.

    Exits 0 once the comparison completes, whether or not the image is
    reproducible.
    """
    from repro_verify.pipeline import verify_image

    settings = _effective_settings(results_dir, keep_work)
    try:
        source = make_source(source_type, image)
        identity = BuildIdentity(
            platform=platform, arch=arch, branch=branch, commit_hash=commit
        )
        report = verify_image(source, identity, settings)
    except ReproError as e:
        raise _fail(e) from None

    paths = report.paths
    if paths is None:
        raise _fail(ReproError("Verification finished without writing result files"))
    if json_output:
        output = {
            "reproducible": report.reproducible,
            "added": report.added,
            "removed": report.removed,
            "changed": report.changed,
            "image_manifest": str(paths.image_manifest),
            "obj_manifest": str(paths.obj_manifest),
            "diff": str(paths.diff),
        }
        console.print(json.dumps(output, indent=2), soft_wrap=True)
        return

    if report.reproducible:
        console.print("[bold green]Reproducible:[/bold green] manifests are identical")
    else:
        console.print("[bold red]Not reproducible:[/bold red] manifests differ")
        console.print(f"  Added:   {len(report.added)}")
        console.print(f"  Removed: {len(report.removed)}")
        console.print(f"  Changed: {len(report.changed)}")
    console.print()
    console.print(f"  Image manifest: {paths.image_manifest}", soft_wrap=True)
    console.print(f"  Build manifest: {paths.obj_manifest}", soft_wrap=True)
    console.print(f"  Diff:           {paths.diff}", soft_wrap=True)


@app.command()
def identify(
    image: ImageOption,
    source_type: SourceTypeOption = SourceType.LOCAL,
    platform: PlatformOption = None,
    arch: ArchOption = None,
    branch: BranchOption = None,
    commit: CommitOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the build identity recorded in an image."""
    from repro_verify.pipeline import identify_image

    try:
        source = make_source(source_type, image)
        known = BuildIdentity(
            platform=platform, arch=arch, branch=branch, commit_hash=commit
        )
        identity = identify_image(source, known, get_settings())
    except ReproError as e:
        raise _fail(e) from None

    data = _identity_to_dict(identity)
    if json_output:
        console.print(json.dumps(data, indent=2), soft_wrap=True)
        return
    console.print("[bold]Build identity:[/bold]")
    console.print(f"  Platform: {data['platform']}")
    console.print(f"  Arch:     {data['arch']}")
    console.print(f"  Branch:   {data['branch']}")
    console.print(f"  Commit:   {data['commit_hash']}")


@app.command("hash")
def hash_cmd(
    directory: Annotated[
        Path,
        typer.Argument(help="Directory to hash", exists=True, file_okay=False),
    ],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the manifest to a file"),
    ] = None,
) -> None:
    """Print the path|sha256 manifest of a directory tree."""
    from repro_verify.manifest.hasher import hash_tree

    try:
        manifest = hash_tree(directory)
    except ReproError as e:
        raise _fail(e) from None

    if output is not None:
        manifest.write(output)
        console.print(f"[green]Wrote {len(manifest)} entries to {output}[/green]")
    else:
        typer.echo(manifest.render(), nl=False)


@app.command("compare")
def compare_cmd(
    original: Annotated[
        Path,
        typer.Argument(help="Manifest of the original image", exists=True, dir_okay=False),
    ],
    rebuilt: Annotated[
        Path,
        typer.Argument(help="Manifest of the rebuilt image", exists=True, dir_okay=False),
    ],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the diff to a file"),
    ] = None,
) -> None:
    """Diff two manifest files. Exits 0 whether or not they match."""
    from repro_verify.manifest.compare import compare, write_diff
    from repro_verify.manifest.hasher import Manifest

    try:
        report = compare(
            Manifest.read(original),
            Manifest.read(rebuilt),
            original_label=original.name,
            rebuilt_label=rebuilt.name,
        )
    except (OSError, ValueError) as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(code=1) from None

    if output is not None:
        write_diff(report, output)
    if report.reproducible:
        console.print("[green]Manifests are identical[/green]")
    else:
        typer.echo(report.diff, nl=False)


@app.command()
def config(
    json_output: JsonOption = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Results directory:   {settings.results_dir}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print(f"  Keep work directory: {settings.keep_work_dir}")
        console.print()
        console.print("[bold]Build:[/bold]")
        console.print(f"  Source repository:   {settings.src_repo_url}")
        console.print(f"  Build jobs:          {settings.build_jobs}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Command timeout:     {settings.command_timeout}")


@app.command("help")
def help_cmd(ctx: typer.Context) -> None:
    """Show usage and exit with a non-zero status."""
    root = ctx.parent if ctx.parent is not None else ctx
    typer.echo(root.get_help())
    raise typer.Exit(code=1)


__all__ = ["app", "configure_logging"]


if __name__ == "__main__":
    app()
