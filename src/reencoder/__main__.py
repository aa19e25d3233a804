"""Command-line entry point for the FLAC reencoder."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from reencoder.config_utils import Settings, load_config, resolve_settings
from reencoder.ledger import BACKENDS, open_ledger
from reencoder.logging_utils import configure_logging, resolve_level
from reencoder.reconciler import ReconcileSummary, clean_ledger, count_pending, reencode_files
from reencoder.scanner import ScanSummary, index_files
from reencoder.tools import check_tools, get_encoder_version
from reencoder.workers import RunContext, install_interrupt_handler, normalize_root

app = typer.Typer(
    help="Index FLAC files and reencode the ones the installed encoder has not touched.",
    no_args_is_help=True,
)
console = Console()
logger = logging.getLogger("reencoder.cli")

PathOption = Annotated[
    Path,
    typer.Option("--path", "-p", help="Folder with files to index and reencode."),
]
FlacOption = Annotated[
    list[str] | None,
    typer.Option(
        "--flac",
        "-a",
        help="Argument passed to flac when reencoding; repeat for several.",
    ),
]
ThreadsOption = Annotated[
    int | None,
    typer.Option("--threads", "-t", min=1, help="Number of parallel reencodes."),
]
ScanWorkersOption = Annotated[
    int | None,
    typer.Option("--scan-workers", min=1, help="Number of parallel indexing workers."),
]


@dataclass
class CliState:
    config: Path | None = None
    database: Path | None = None
    backend: str | None = None
    verbose: bool = False
    debug: bool = False
    log_file: Path | None = None


@app.callback()
def main_options(
    ctx: typer.Context,
    database: Annotated[
        Path | None,
        typer.Option("--database", "-d", help="Path to the ledger file or folder."),
    ] = None,
    backend: Annotated[
        str | None,
        typer.Option(help=f"Ledger backend: {', '.join(sorted(BACKENDS))}."),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option("--config", help="YAML configuration file."),
    ] = None,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Enable verbose logging output.")
    ] = False,
    debug: Annotated[bool, typer.Option(help="Enable debug logging output.")] = False,
    log_file: Annotated[
        Path | None, typer.Option(help="Also write log output to this file.")
    ] = None,
) -> None:
    ctx.obj = CliState(
        config=config,
        database=database,
        backend=backend,
        verbose=verbose,
        debug=debug,
        log_file=log_file,
    )


def _load_settings(state: CliState, **overrides) -> Settings:
    try:
        settings = resolve_settings(
            load_config(state.config),
            database=state.database,
            backend=state.backend,
            log_file=state.log_file,
            **overrides,
        )
    except Exception as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    configure_logging(
        resolve_level(settings.log_level, verbose=state.verbose, debug=state.debug),
        log_file=settings.log_file,
    )
    logger.debug("Effective settings: %s", settings.model_dump(mode="json"))
    return settings


@contextmanager
def _guard(command: str) -> Iterator[None]:
    """Turn failures into a logged error and a non-zero exit code."""
    try:
        yield
    except typer.Exit:
        raise
    except KeyboardInterrupt:
        logger.warning("%s aborted by user", command)
        raise typer.Exit(code=130)
    except Exception as exc:
        logger.error("%s failed: %s", command, exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _build_context(settings: Settings, root: Path | None) -> RunContext:
    target_encoder = get_encoder_version()
    logger.info("Installed flac encoder version: %s", target_encoder)
    return RunContext(
        target_encoder=target_encoder,
        root=root,
        flac_args=settings.flac_args,
        extension=settings.extension,
        scan_workers=settings.scan_workers,
        encode_workers=settings.encode_workers,
    )


def _report_scan(summary: ScanSummary) -> None:
    message = f"Indexed {summary.total} files: {summary.to_process} to reencode"
    if summary.cancelled:
        message += " (stopped early)"
    console.print(message)


def _report_reencode(summary: ReconcileSummary) -> None:
    message = (
        f"Reencoded {summary.encoded} files, {summary.failed} failed, "
        f"{summary.removed} stale records removed"
    )
    if summary.cancelled:
        message += " (stopped early)"
    console.print(message)


@app.command()
def run(
    ctx: typer.Context,
    path: PathOption = Path("."),
    flac: FlacOption = None,
    threads: ThreadsOption = None,
    scan_workers: ScanWorkersOption = None,
) -> None:
    """Index PATH, then reencode every pending file under it."""
    settings = _load_settings(
        ctx.obj, flac_args=flac, encode_workers=threads, scan_workers=scan_workers
    )
    with _guard("run"):
        check_tools()
        context = _build_context(settings, path)
        with install_interrupt_handler(context.cancel_event), open_ledger(
            settings.database, settings.backend
        ) as ledger:
            scan_summary = index_files(context, ledger)
            _report_scan(scan_summary)
            if context.cancelled:
                return
            _report_reencode(reencode_files(context, ledger))


@app.command()
def index(
    ctx: typer.Context,
    path: PathOption = Path("."),
    scan_workers: ScanWorkersOption = None,
) -> None:
    """Only index PATH; nothing is reencoded."""
    settings = _load_settings(ctx.obj, scan_workers=scan_workers)
    with _guard("index"):
        check_tools()
        context = _build_context(settings, path)
        with install_interrupt_handler(context.cancel_event), open_ledger(
            settings.database, settings.backend
        ) as ledger:
            _report_scan(index_files(context, ledger))


@app.command()
def reencode(
    ctx: typer.Context,
    path: Annotated[
        Path | None,
        typer.Option(
            "--path", "-p", help="Only reencode files under this folder."
        ),
    ] = None,
    flac: FlacOption = None,
    threads: ThreadsOption = None,
) -> None:
    """Reencode pending files that were indexed earlier."""
    settings = _load_settings(ctx.obj, flac_args=flac, encode_workers=threads)
    with _guard("reencode"):
        check_tools()
        context = _build_context(settings, path)
        with install_interrupt_handler(context.cancel_event), open_ledger(
            settings.database, settings.backend
        ) as ledger:
            _report_reencode(reencode_files(context, ledger))


@app.command()
def clean(ctx: typer.Context) -> None:
    """Remove ledger records whose files no longer exist."""
    settings = _load_settings(ctx.obj)
    with _guard("clean"):
        context = RunContext(target_encoder="")
        with install_interrupt_handler(context.cancel_event), open_ledger(
            settings.database, settings.backend
        ) as ledger:
            removed = clean_ledger(ledger, context.cancel_event)
        console.print(f"Removed {removed} stale records")


@app.command()
def status(
    ctx: typer.Context,
    path: Annotated[
        Path | None,
        typer.Option("--path", "-p", help="Also count pending files under this folder."),
    ] = None,
) -> None:
    """Show how many files are waiting to be reencoded."""
    settings = _load_settings(ctx.obj)
    with _guard("status"):
        with open_ledger(settings.database, settings.backend) as ledger:
            total = len(ledger)
            pending = count_pending(ledger)
            scoped = None
            if path is not None:
                scoped = count_pending(ledger, normalize_root(path))

        table = Table(title=f"Ledger {settings.database}")
        table.add_column("Records", justify="right")
        table.add_column("Files to reencode", justify="right")
        if scoped is not None:
            table.add_column(f"Under {path}", justify="right")
            table.add_row(str(total), str(pending), str(scoped))
        else:
            table.add_row(str(total), str(pending))
        console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
