"""
CLI Interface
=============
Command-line interface for the Tech Records import engine.

Usage:
    python -m techrecords parse <pdf_path> [options]
    python -m techrecords info <pdf_path>
    python -m techrecords jobs [--db PATH]
    python -m techrecords serve [--host] [--port]
"""

from __future__ import annotations

import json
import os
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .confidence import ConfidenceScorer
from .database import JobStore
from .engine import ImportConfig
from .exceptions import BatchValidationError, TechRecordsError
from .exporters import export_parse_log, export_rows_csv, format_started
from .models import (
    ConfidenceBucket,
    ImportProgress,
    ImportResult,
    ImportStatus,
    LogLevel,
    RowAction,
)
from .session import ImportSession
from .table import COLUMN_TEMPLATES
from .text_extractor import TextExtractor

console = Console()

BUCKET_STYLES = {
    ConfidenceBucket.HIGH: "green",
    ConfidenceBucket.MEDIUM: "yellow",
    ConfidenceBucket.LOW: "red",
}

LEVEL_STYLES = {
    LogLevel.INFO: "dim",
    LogLevel.WARNING: "yellow",
    LogLevel.ERROR: "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="techrecords")
def cli():
    """Tech Records Import — turn Tech Records PDF exports into job records."""
    pass


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
@click.option(
    "--db",
    "db_path",
    default=None,
    help="Job store path (defaults to $TECHRECORDS_DB_PATH)",
)
@click.option(
    "--template", "-t",
    default="tech_records",
    type=click.Choice(sorted(COLUMN_TEMPLATES)),
    help="Column template of the export format",
)
@click.option(
    "--no-header-detection",
    is_flag=True,
    default=False,
    help="Always use the template's fixed column boundaries",
)
@click.option(
    "--page-start",
    default=None,
    type=int,
    help="Start page (1-indexed)",
)
@click.option(
    "--page-end",
    default=None,
    type=int,
    help="End page (1-indexed, inclusive)",
)
@click.option("--csv", "csv_dir", default=None, help="Export parsed rows as CSV into this directory")
@click.option("--log", "log_dir", default=None, help="Export the parse log JSON into this directory")
@click.option(
    "--skip",
    "skip_ids",
    multiple=True,
    help="Row id to leave out of the commit (repeatable)",
)
@click.option(
    "--keep",
    "keep_pairs",
    multiple=True,
    help="Resolve a duplicate WIP as WIP=ROW_ID (repeatable)",
)
@click.option("--commit", is_flag=True, default=False, help="Commit the batch to the job store")
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask before committing")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option(
    "--log-file",
    default=None,
    help="Path to log file",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only the ImportResult JSON to stdout (for programmatic use)",
)
def parse(
    pdf_path: str,
    db_path: str,
    template: str,
    no_header_detection: bool,
    page_start: int,
    page_end: int,
    csv_dir: str,
    log_dir: str,
    skip_ids: tuple,
    keep_pairs: tuple,
    commit: bool,
    yes: bool,
    log_level: str,
    log_file: str,
    json_output: bool,
):
    """Parse a Tech Records PDF, preview the rows, and optionally commit them."""

    if json_output:
        # Suppress console output for JSON mode
        log_level = "ERROR"

    page_range = None
    if page_start is not None or page_end is not None:
        page_range = (page_start or 1, page_end or 99999)

    config = ImportConfig(
        column_template=template,
        detect_header=not no_header_detection,
        page_range=page_range,
        log_level=log_level,
        log_file=log_file,
    )

    try:
        store = JobStore(db_path)
        session = ImportSession(config=config, store=store)

        if json_output:
            result = session.run(pdf_path)
        else:
            console.print()
            console.print(
                Panel.fit(
                    f"[bold cyan]Tech Records Import v{__version__}[/]\n"
                    f"[dim]Parsing: {os.path.basename(pdf_path)}[/]",
                    border_style="cyan",
                )
            )
            console.print()
            result = _run_with_progress(session, pdf_path)

        if session.status == ImportStatus.PREVIEW:
            for pair in keep_pairs:
                wip, _, row_id = pair.partition("=")
                result = _apply(session, lambda: session.resolve_duplicate(wip.strip(), row_id.strip()))
            if skip_ids:
                result = _apply(session, lambda: session.skip_rows(skip_ids))

        if csv_dir:
            path = export_rows_csv(result, csv_dir)
            if not json_output:
                console.print(f"[dim]Rows CSV: {path}[/]")
        if log_dir:
            path = export_parse_log(result, log_dir)
            if not json_output:
                console.print(f"[dim]Parse log: {path}[/]")

        if json_output:
            print(result.model_dump_json(indent=2))
        else:
            _display_result(result, ConfidenceScorer(config.confidence))

        if session.status == ImportStatus.ERROR:
            sys.exit(1)

        if commit:
            _commit(session, yes, quiet=json_output)

    except TechRecordsError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
def info(pdf_path: str):
    """Display PDF file information and text-layer size."""

    extractor = TextExtractor()
    try:
        with extractor.open(pdf_path) as doc:
            page_count = doc.page_count
            metadata = doc.metadata or {}
        fragments = extractor.extract(pdf_path)
    except TechRecordsError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(1)

    console.print()
    table = Table(title="PDF Information", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")

    table.add_row("File", os.path.basename(pdf_path))
    table.add_row("Pages", str(page_count))
    table.add_row(
        "File Size",
        f"{os.path.getsize(pdf_path) / 1024:.1f} KB",
    )

    for key in ["title", "author", "subject", "creator", "producer"]:
        val = metadata.get(key, "")
        if val:
            table.add_row(key.title(), val)

    table.add_row(
        "Text Fragments",
        str(len(fragments)) if fragments else "[red]0 (no text layer)[/]",
    )

    console.print(table)
    console.print()


@cli.command()
@click.option("--db", "db_path", default=None, help="Job store path")
@click.option("--json-output", is_flag=True, default=False, help="Print jobs as JSON")
def jobs(db_path: str, json_output: bool):
    """List the jobs in the job store."""

    store = JobStore(db_path)
    stored = store.get_all()

    if json_output:
        print(json.dumps([j.model_dump(mode="json") for j in stored], indent=2))
        return

    console.print()
    table = Table(title=f"Jobs ({len(stored)})", border_style="cyan")
    table.add_column("WIP", style="bold")
    table.add_column("Reg")
    table.add_column("VHC")
    table.add_column("Description", overflow="fold", max_width=50)
    table.add_column("AWS", justify="right")
    table.add_column("Minutes", justify="right")
    table.add_column("Date")
    table.add_column("Source", style="dim")

    for job in stored:
        when = job.job_date.strftime("%d/%m/%Y") if job.job_date else "-"
        if job.job_time:
            when += " " + job.job_time.strftime("%H:%M")
        table.add_row(
            job.wip_number or "-",
            job.vehicle_registration or "-",
            job.vhc_status.value,
            escape(job.job_description),
            str(job.aw_value),
            str(job.time_in_minutes),
            when,
            job.source_filename,
        )

    console.print(table)
    console.print()


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
def serve(host: str, port: int, debug: bool):
    """Start the HTTP import service."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Tech Records Import Service[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug)


# ─── Session Helpers ──────────────────────────────────────────────────────────


def _run_with_progress(session: ImportSession, pdf_path: str) -> ImportResult:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Starting...", total=None)

        def on_progress(update: ImportProgress):
            progress.update(
                task,
                description=f"[{update.stage.value}] {update.message}",
                completed=update.current_row,
                total=update.total_rows or None,
            )

        session.progress_callback = on_progress
        result = session.run(pdf_path)
        session.progress_callback = None
    return result


def _apply(session: ImportSession, operation) -> ImportResult:
    operation()
    return session.result()


def _commit(session: ImportSession, yes: bool, quiet: bool = False):
    problems = session.commit_problems()
    if problems:
        console.print("[red]Commit blocked:[/]")
        for problem in problems:
            console.print(f"  [red]•[/] {problem}")
        console.print("[dim]Use --keep WIP=ROW_ID or --skip ROW_ID to resolve.[/]")
        sys.exit(1)

    if not yes and not click.confirm("Commit these rows to the job store?", default=False):
        console.print("[yellow]Not committed.[/]")
        return

    try:
        summary = session.commit()
    except BatchValidationError as e:
        for problem in e.problems:
            console.print(f"  [red]•[/] {problem}")
        sys.exit(1)

    if not quiet:
        console.print(
            f"[green]✓ Committed:[/] {summary.created} created, "
            f"{summary.updated} updated, {summary.skipped} skipped"
        )
        console.print()


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_result(result: ImportResult, scorer: ConfidenceScorer):
    """Preview table, summary and notable log entries."""
    console.print()

    table = Table(title=f"Preview: {result.filename}", border_style="cyan")
    table.add_column("Id", style="dim")
    table.add_column("WIP", style="bold")
    table.add_column("Reg")
    table.add_column("VHC")
    table.add_column("Description", overflow="fold", max_width=40)
    table.add_column("AWS", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Date")
    table.add_column("Conf", justify="right")
    table.add_column("Action", justify="center")

    for row in result.rows:
        style = BUCKET_STYLES[scorer.bucket(row.confidence)]
        when = format_started(row, missing="-")
        wip = row.wip_number or "-"
        if row.is_duplicate:
            wip = f"[red]{wip} (dup)[/]"
        table.add_row(
            row.id,
            wip,
            row.vehicle_reg or "-",
            row.vhc_status.value,
            escape(row.job_description),
            str(row.aws),
            f"{row.minutes}m",
            when,
            f"[{style}]{row.confidence:.0%}[/]",
            row.action.value if row.action != RowAction.SKIP else "[dim]Skip[/]",
        )

    console.print(table)
    console.print()

    summary = result.summary
    summary_table = Table(title="Summary", border_style="green")
    summary_table.add_column("Metric", style="bold")
    summary_table.add_column("Value", justify="right")
    summary_table.add_row("Total Rows", str(summary.total_rows))
    summary_table.add_row("Valid", str(summary.valid_rows))
    summary_table.add_row(
        "With Errors",
        f"[red]{summary.invalid_rows}[/]" if summary.invalid_rows else "0",
    )
    summary_table.add_row(
        "Duplicates",
        f"[red]{summary.duplicates}[/]" if summary.duplicates else "0",
    )
    summary_table.add_row("Create / Update / Skip",
                          f"{summary.creates} / {summary.updates} / {summary.skips}")
    console.print(summary_table)
    console.print()

    if summary.already_imported:
        console.print("[yellow]⚠ This file has already been imported; every row is a duplicate.[/]")
    for wip in summary.duplicate_wips:
        console.print(f"[yellow]⚠ Duplicate WIP number {wip}[/]")

    notable = [e for e in result.parse_log if e.level != LogLevel.INFO]
    if notable or not result.rows:
        console.print()
        console.print("[bold]Parse log[/]")
        for entry in notable or result.parse_log:
            style = LEVEL_STYLES[entry.level]
            raw = f" [dim]({escape(repr(entry.raw_data))})[/]" if entry.raw_data else ""
            console.print(f"  [{style}]{entry.level.value:<7}[/] {escape(entry.message)}{raw}")
    console.print()


# ─── Entry point (for python -m techrecords.cli) ──────────────────────────────


if __name__ == "__main__":
    cli()
