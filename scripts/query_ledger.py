#!/usr/bin/env python
# scripts/query_ledger.py
"""A script to query the reencoder ledger."""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.progress import track

# Add the source folder to the path so the script runs from a checkout
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from reencoder.ledger import BACKENDS, DEFAULT_BACKEND, LedgerError, open_ledger  # noqa: E402
from reencoder.schema import Record  # noqa: E402
from reencoder.workers import is_under, normalize_root  # noqa: E402

app = typer.Typer()
console = Console()
error_console = Console(stderr=True)


@app.command()
def query(
    database: Path = typer.Option(
        ...,
        "--database",
        "-d",
        help="Path to the ledger file.",
        exists=True,
        file_okay=True,
        dir_okay=True,
        readable=True,
    ),
    backend: str = typer.Option(
        DEFAULT_BACKEND,
        "--backend",
        help=f"Ledger backend: {', '.join(sorted(BACKENDS))}.",
    ),
    pending: bool = typer.Option(
        False, "--pending", help="Only show files waiting to be reencoded."
    ),
    encoder: Optional[str] = typer.Option(
        None, "--encoder", help="Only show files last written by this encoder."
    ),
    under: Optional[Path] = typer.Option(
        None, "--under", help="Only show files below this folder."
    ),
):
    """
    Query the ledger for records matching all given filters.
    """
    root = normalize_root(under) if under is not None else None

    def matches_criteria(record: Record) -> bool:
        passes_pending_filter = not pending or record.pending
        passes_encoder_filter = encoder is None or record.encoder_identity == encoder
        return (
            passes_pending_filter
            and passes_encoder_filter
            and is_under(record.absolute_path, root)
        )

    try:
        with open_ledger(database, backend) as ledger:
            total = len(ledger)
            entries = [
                (key, record)
                for key, record in track(
                    ledger.iterate_all(),
                    description="Loading records...",
                    total=total,
                    console=error_console,
                )
                if matches_criteria(record)
            ]
    except (LedgerError, ValueError) as e:
        error_console.print(f"[bold red]Error reading ledger: {e}[/bold red]")
        raise typer.Exit(code=1)

    error_console.print(
        f"[green]Filtered to {len(entries)} of {total} records.[/green]"
    )

    output_data: list[dict[str, Any]] = [
        {"key": key, **record.model_dump(mode="json", by_alias=True)}
        for key, record in entries
    ]

    with error_console.status("[bold green]Serializing to JSON..."):
        json_output = json.dumps(output_data, indent=2)

    console.print(json_output, markup=False, highlight=False, soft_wrap=True)


if __name__ == "__main__":
    app()
