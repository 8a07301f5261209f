"""Command line interface for packleech.

Commands:
- ``info``: describe a pack and its files
- ``leech``: download selected files from the pack's webseeds
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from packleech import __version__
from packleech.cli.progress import LeechProgress
from packleech.config.config import ConfigManager, init_config
from packleech.core.metadata import load_metadata
from packleech.models import AbortPolicy, LogLevel, PackMetadata, RunResult, RunStatus
from packleech.piece.file_selection import (
    AllOf,
    GlobPredicate,
    MatchAll,
    PathListPredicate,
    RegexPredicate,
    SelectionPredicate,
    SizePredicate,
)
from packleech.piece.mapper import pieces_for_file
from packleech.session.pipeline import leech, leech_in_batches
from packleech.utils.exceptions import AbortedByUser, PackLeechError
from packleech.utils.formatting import format_size, parse_size
from packleech.utils.logging_config import get_logger

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2
EXIT_INTERRUPTED = 130

_STATUS_EXIT_CODES = {
    RunStatus.SUCCESS: EXIT_OK,
    RunStatus.PARTIAL: EXIT_PARTIAL,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.INTERRUPTED: EXIT_INTERRUPTED,
}


class SizeParamType(click.ParamType):
    """Human readable byte size such as ``700MiB`` or ``1.5 GB``."""

    name = "size"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> int:
        """Convert to a byte count."""
        if isinstance(value, int):
            return value
        try:
            return parse_size(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


SIZE = SizeParamType()


def exit_code_for(results: list[RunResult]) -> int:
    """Process exit code for one or more run results."""
    if not results:
        return EXIT_FAILED
    codes = {_STATUS_EXIT_CODES[r.status] for r in results}
    if codes == {EXIT_OK}:
        return EXIT_OK
    if EXIT_INTERRUPTED in codes:
        return EXIT_INTERRUPTED
    if codes == {EXIT_FAILED}:
        return EXIT_FAILED
    return EXIT_PARTIAL


def build_predicate(
    include: tuple[str, ...],
    regex: str | None,
    min_size: int | None,
    max_size: int | None,
    paths: tuple[str, ...],
) -> SelectionPredicate:
    """Combine the selection options into one predicate."""
    predicates: list[SelectionPredicate] = []
    if include:
        predicates.append(GlobPredicate(tuple(include)))
    if regex:
        predicates.append(RegexPredicate(regex))
    if min_size is not None or max_size is not None:
        predicates.append(SizePredicate(min_size=min_size, max_size=max_size))
    if paths:
        predicates.append(PathListPredicate.of(paths))
    if not predicates:
        return MatchAll()
    if len(predicates) == 1:
        return predicates[0]
    return AllOf(tuple(predicates))


def _error(console: Console, message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/red]")


def _load_pack(ctx: click.Context, metadata_file: str) -> PackMetadata:
    console: Console = ctx.obj["console"]
    try:
        return load_metadata(metadata_file)
    except PackLeechError as e:
        _error(console, str(e))
        ctx.exit(EXIT_FAILED)
    raise AssertionError  # pragma: no cover - ctx.exit raises


def _print_result(console: Console, result: RunResult, title: str = "Result") -> None:
    colour = {
        RunStatus.SUCCESS: "green",
        RunStatus.PARTIAL: "yellow",
        RunStatus.FAILED: "red",
        RunStatus.INTERRUPTED: "yellow",
    }[result.status]
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", f"[{colour}]{result.status.value}[/{colour}]")
    table.add_row("Verified pieces", str(len(result.verified)))
    table.add_row("Downloaded", format_size(result.bytes_downloaded))
    table.add_row("Elapsed", f"{result.elapsed:.1f}s")
    if result.aborted:
        table.add_row("Aborted pieces", ", ".join(map(str, result.aborted)))
    if result.pending:
        table.add_row("Unfinished pieces", str(len(result.pending)))
    if result.affected_files:
        table.add_row("Affected files", escape("\n".join(result.affected_files)))
    console.print(table)


@click.group()
@click.version_option(__version__, prog_name="packleech")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(dir_okay=False),
    help="Configuration file",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.pass_context
def cli(ctx: click.Context, config_file: str | None, verbose: int) -> None:
    """Leech selected files of a content pack from HTTP webseeds."""
    ctx.ensure_object(dict)
    console = Console(stderr=True)
    ctx.obj["console"] = console
    try:
        manager = init_config(config_file)
        if verbose:
            level = LogLevel.DEBUG if verbose > 1 else LogLevel.INFO
            manager.apply_overrides({"observability.log_level": level.value})
    except PackLeechError as e:
        _error(console, str(e))
        ctx.exit(EXIT_FAILED)
    manager.setup_logging(console)
    ctx.obj["config_manager"] = manager


@cli.command()
@click.argument("metadata_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def info(ctx: click.Context, metadata_file: str) -> None:
    """Show pack details and its file list."""
    pack = _load_pack(ctx, metadata_file)
    out = Console()

    summary = Table(show_header=False, box=None)
    summary.add_column("Field", style="cyan")
    summary.add_column("Value")
    summary.add_row("Name", escape(pack.name))
    summary.add_row("Info hash", pack.info_hash.hex())
    summary.add_row("Total size", format_size(pack.total_length))
    summary.add_row(
        "Pieces", f"{pack.num_pieces} x {format_size(pack.piece_length)}"
    )
    summary.add_row("Webseeds", escape("\n".join(pack.webseeds)) or "-")
    if pack.comment:
        summary.add_row("Comment", escape(pack.comment))
    out.print(summary)

    table = Table(title="Files")
    table.add_column("#", justify="right")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("Pieces", justify="right")
    for entry in pack.files:
        pieces = pieces_for_file(pack, entry)
        span = f"{pieces.start}-{pieces.stop - 1}" if pieces else "-"
        path = escape(entry.path) + (" [dim](padding)[/dim]" if entry.is_padding else "")
        table.add_row(str(entry.index), path, format_size(entry.length), span)
    out.print(table)


@cli.command(name="leech")
@click.argument("metadata_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--output",
    "-o",
    "output_dir",
    type=click.Path(file_okay=False),
    required=True,
    help="Output directory",
)
@click.option("--include", "-i", multiple=True, help="Glob pattern (repeatable)")
@click.option("--regex", "-r", help="Regular expression matched against paths")
@click.option("--min-size", type=SIZE, help="Minimum file size")
@click.option("--max-size", type=SIZE, help="Maximum file size")
@click.option("--path", "-p", "paths", multiple=True, help="Exact file path (repeatable)")
@click.option("--webseed", "-w", "webseeds", multiple=True, help="Extra webseed URL (repeatable)")
@click.option("--concurrency", "-n", type=click.IntRange(1, 64), help="Pieces in flight")
@click.option("--batch-size", type=SIZE, help="Leech in batches of at most this size")
@click.option(
    "--batch-percentage",
    type=click.IntRange(1, 100),
    help="Leech in batches of this percentage of free space",
)
@click.option(
    "--abort-policy",
    type=click.Choice([p.value for p in AbortPolicy]),
    help="What to do with unfinished files of a failed run",
)
@click.pass_context
def leech_command(
    ctx: click.Context,
    metadata_file: str,
    output_dir: str,
    include: tuple[str, ...],
    regex: str | None,
    min_size: int | None,
    max_size: int | None,
    paths: tuple[str, ...],
    webseeds: tuple[str, ...],
    concurrency: int | None,
    batch_size: int | None,
    batch_percentage: int | None,
    abort_policy: str | None,
) -> None:
    """Download the selected files of a pack."""
    console: Console = ctx.obj["console"]
    manager: ConfigManager = ctx.obj["config_manager"]
    if batch_size is not None and batch_percentage is not None:
        msg = "--batch-size and --batch-percentage are mutually exclusive"
        raise click.UsageError(msg)

    try:
        config = manager.apply_overrides(
            {
                "network.concurrency": concurrency,
                "network.webseeds": [*manager.config.network.webseeds, *webseeds]
                if webseeds
                else None,
                "disk.abort_policy": abort_policy,
                "selection.max_size_percentage": batch_percentage,
            }
        )
    except PackLeechError as e:
        _error(console, str(e))
        ctx.exit(EXIT_FAILED)

    pack = _load_pack(ctx, metadata_file)
    try:
        predicate = build_predicate(include, regex, min_size, max_size, paths)
    except re.error as e:
        raise click.BadParameter(str(e), param_hint="--regex") from e

    batched = batch_size is not None or batch_percentage is not None
    progress = LeechProgress(console, pack.piece_length)
    results: list[RunResult] = []
    try:
        with progress:
            if batched:
                results = asyncio.run(
                    leech_in_batches(
                        pack,
                        Path(output_dir),
                        predicate,
                        config,
                        listeners=[progress],
                        max_batch_bytes=batch_size,
                    )
                )
            else:
                results = [
                    asyncio.run(
                        leech(
                            pack,
                            Path(output_dir),
                            predicate,
                            config,
                            listeners=[progress],
                        )
                    )
                ]
    except AbortedByUser as e:
        console.print("[yellow]Interrupted; progress saved, run again to resume[/yellow]")
        if e.result is not None:
            _print_result(console, e.result)
        ctx.exit(EXIT_INTERRUPTED)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        ctx.exit(EXIT_INTERRUPTED)
    except PackLeechError as e:
        _error(console, str(e))
        ctx.exit(EXIT_FAILED)

    for number, result in enumerate(results, start=1):
        title = f"Batch {number}" if batched else "Result"
        _print_result(console, result, title)
    ctx.exit(exit_code_for(results))


def main() -> None:
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
