"""
CLI Interface
=============
Command-line interface for the extraction pipeline.

Usage:
    python -m pdf_extract extract <pdf_path> [options]
    python -m pdf_extract info <pdf_path>
    python -m pdf_extract serve [options]
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.console import Console
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
from .config import ExtractionConfig, FailurePolicy, setup_logging
from .editor_format import to_editor_value
from .errors import EndpointError, PdfExtractError
from .models import SessionStatus
from .observers import CallbackObserver, InMemoryDocumentStore
from .rasterizer import SourceDocument
from .report import ReportBuilder
from .session import run_extraction

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="pdf-extract")
def cli():
    """PDF Extract — Scanned PDF pages to rich-text document nodes."""
    pass


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
@click.option(
    "--output", "-o",
    default=None,
    help="Write the extracted document to this JSON file",
)
@click.option(
    "--format", "output_format",
    default="native",
    type=click.Choice(["native", "editor"]),
    help="Node format: native document nodes or editor value",
)
@click.option(
    "--concurrency", "-k",
    default=None,
    type=int,
    help="Pages extracted in parallel",
)
@click.option(
    "--timeout",
    default=None,
    type=float,
    help="Per-page timeout in seconds",
)
@click.option(
    "--retries",
    default=None,
    type=int,
    help="Retries per failed page",
)
@click.option(
    "--policy",
    default=FailurePolicy.TOLERATE.value,
    type=click.Choice([p.value for p in FailurePolicy]),
    help="Whether one failed page aborts the run",
)
@click.option(
    "--dpi",
    default=144,
    type=int,
    help="Rasterization resolution",
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
@click.option(
    "--model",
    default=None,
    help="Vision model name",
)
@click.option(
    "--prompt-file",
    default=None,
    type=click.Path(exists=True),
    help="Replace the instruction prompt with this file's contents",
)
@click.option(
    "--page-headers",
    is_flag=True,
    default=False,
    help="Insert a 'Page N' heading and a rule between pages",
)
@click.option(
    "--prefer-native-text",
    is_flag=True,
    default=False,
    help="Use the PDF's own text when a page has enough of it",
)
@click.option(
    "--log-level",
    default="INFO",
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
    help="Output only JSON result to stdout (for programmatic use)",
)
def extract(
    pdf_path: str,
    output: str,
    output_format: str,
    concurrency: int,
    timeout: float,
    retries: int,
    policy: str,
    dpi: int,
    page_start: int,
    page_end: int,
    model: str,
    prompt_file: str,
    page_headers: bool,
    prefer_native_text: bool,
    log_level: str,
    log_file: str,
    json_output: bool,
):
    """Extract a PDF into structured document nodes."""

    if json_output:
        # Suppress console output for JSON mode
        log_level = "ERROR"

    overrides = dict(
        failure_policy=policy,
        dpi=dpi,
        page_headers=page_headers,
        prefer_native_text=prefer_native_text,
        log_level=log_level,
        log_file=log_file,
    )
    if concurrency is not None:
        overrides["concurrency"] = concurrency
    if timeout is not None:
        overrides["page_timeout_s"] = timeout
    if retries is not None:
        overrides["max_retries"] = retries
    if model:
        overrides["model"] = model
    if prompt_file:
        overrides["prompt_override"] = Path(prompt_file).read_text(encoding="utf-8")
    if page_start is not None or page_end is not None:
        overrides["page_range"] = (page_start or 1, page_end or 99999)

    try:
        config = ExtractionConfig.from_env(**overrides)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(2)

    setup_logging(config)

    if not json_output:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]PDF Extract v{__version__}[/]\n"
                f"[dim]Extracting: {os.path.basename(pdf_path)} "
                f"({config.model}, {config.concurrency} worker(s))[/]",
                border_style="cyan",
            )
        )
        console.print()

    store = InMemoryDocumentStore()

    try:
        doc = SourceDocument.from_path(pdf_path)

        if not json_output:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Extracting pages...", total=None)

                def on_progress(current, total):
                    progress.update(task, completed=current, total=total)

                def on_failure(error):
                    progress.console.print(
                        f"[yellow]⚠ page {error.page_index + 1}:[/] "
                        f"{error.kind.value} ({error.reason})"
                    )

                handle = run_extraction(
                    doc,
                    config,
                    store=store,
                    observer=CallbackObserver(on_progress, on_failure),
                )
                progress.update(task, total=handle.progress().total)
                result = _wait_for(handle)
        else:
            handle = run_extraction(doc, config, store=store)
            result = _wait_for(handle)

    except EndpointError as e:
        console.print(f"[red]Endpoint error:[/] {e}")
        sys.exit(1)
    except PdfExtractError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/] {e}")
        if log_level == "DEBUG":
            console.print_exception()
        sys.exit(1)

    report = ReportBuilder().build(result, log=not json_output)
    document = (
        to_editor_value(store.nodes)
        if output_format == "editor"
        else [n.model_dump(mode="json") for n in store.nodes]
    )

    if output:
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        Path(output).write_text(
            json.dumps(document, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )

    if json_output:
        print(json.dumps(
            {
                "status": result.status.value,
                "report": report.model_dump(mode="json"),
                "document": document,
            },
            indent=2,
            ensure_ascii=False,
            default=str,
        ))
    else:
        try:
            _display_report(report)
        except UnicodeEncodeError:
            # Windows console may not support special chars
            print(f"Extraction {result.status.value}: {len(store.nodes)} nodes")
        if output:
            console.print(f"[dim]Document written to {output}[/]")
            console.print()

    if result.status != SessionStatus.COMPLETED:
        if not json_output:
            console.print(f"[red]Error:[/] {result.error or result.status.value}")
        sys.exit(1)


def _wait_for(handle):
    """Wait for the run; Ctrl+C cancels it and waits for the wind-down."""
    try:
        return handle.wait()
    except KeyboardInterrupt:
        console.print("[yellow]Cancelling...[/]")
        handle.cancel()
        return handle.wait()


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
def serve(host: str, port: int, debug: bool):
    """Start the HTTP extraction microservice."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]PDF Extract Microservice[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug)


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
def info(pdf_path: str):
    """Display PDF file information."""

    import fitz

    doc = fitz.open(pdf_path)

    console.print()
    table = Table(title="PDF Information", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")

    table.add_row("File", os.path.basename(pdf_path))
    table.add_row("Pages", str(doc.page_count))
    table.add_row(
        "File Size",
        f"{os.path.getsize(pdf_path) / 1024 / 1024:.2f} MB",
    )

    metadata = doc.metadata or {}
    for key in ["title", "author", "subject", "creator", "producer"]:
        val = metadata.get(key, "")
        if val:
            table.add_row(key.title(), val)

    # Pages the native-text shortcut would handle
    min_chars = ExtractionConfig.native_text_min_chars
    text_pages = sum(
        1 for page in doc if len(page.get_text("text").strip()) >= min_chars
    )
    table.add_row("Pages With Text", f"{text_pages}/{doc.page_count}")

    doc.close()
    console.print(table)
    console.print()


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_report(report):
    """Display the extraction report as rich tables."""
    console.print()

    table = Table(title="Extraction Report", border_style="green")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Status", justify="center")

    def status_icon(count, threshold=0):
        if count <= threshold:
            return "[green]✓[/]"
        return "[red]✗[/]"

    table.add_row("Status", report.status.value, "")
    table.add_row(
        "Pages Succeeded",
        f"{report.pages_succeeded}/{report.total_pages} ({report.success_rate}%)",
        "[green]✓[/]" if report.success_rate >= 90 else "[yellow]⚠[/]",
    )
    table.add_row(
        "Pages Failed", str(report.pages_failed), status_icon(report.pages_failed)
    )
    table.add_row(
        "Pages Cancelled",
        str(report.pages_cancelled),
        status_icon(report.pages_cancelled),
    )
    table.add_row("Native Text Pages", str(len(report.native_text_pages)), "")
    table.add_row("Nodes", str(sum(report.node_breakdown.values())), "")
    table.add_row(
        "Warnings", str(report.warning_count), status_icon(report.warning_count)
    )

    console.print(table)
    console.print()

    if report.failed_pages:
        failed_table = Table(title="Failed Pages", border_style="red")
        failed_table.add_column("Page", justify="right", style="bold")
        failed_table.add_column("Kind")
        failed_table.add_column("Reason")
        for e in report.failed_pages:
            failed_table.add_row(str(e.page_index + 1), e.kind.value, e.reason)
        console.print(failed_table)
        console.print()

    if report.node_breakdown:
        node_table = Table(title="Node Breakdown", border_style="yellow")
        node_table.add_column("Type", style="bold")
        node_table.add_column("Count", justify="right")
        for node_type, count in sorted(report.node_breakdown.items()):
            node_table.add_row(node_type, str(count))
        console.print(node_table)
        console.print()


# ─── Entry point (for python -m pdf_extract.cli) ──────────────────────────────


if __name__ == "__main__":
    cli()
