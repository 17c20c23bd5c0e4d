import asyncio
from collections import Counter
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from rich import print
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from batchmux.analytics import BatchAnalytics, BatchReport
from batchmux.cli.callbacks import load_file_callback, positive_callback
from batchmux.config import BatchManagerConfig
from batchmux.core import BatchManager
from batchmux.exceptions import ConfigurationError, ServerError, is_batch_level_error
from batchmux.models import RequestDescriptor, request_descriptor_list_adapter
from batchmux.utils.files import read_jsonl_file
from batchmux.utils.logging import setup_logging

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main():
    """Replay request workloads through the batching engine."""


async def replay_requests(
    config: BatchManagerConfig,
    descriptors: list[RequestDescriptor],
) -> tuple[BatchReport, Counter[str]]:
    manager = BatchManager(config)
    analytics = BatchAnalytics(manager)
    futures = [
        manager.add(descriptor.endpoint, descriptor.method, descriptor.data, descriptor.priority)
        for descriptor in descriptors
    ]
    results = await asyncio.gather(*futures, return_exceptions=True)
    await manager.close()
    analytics.snapshot()

    outcomes: Counter[str] = Counter()
    for result in results:
        if isinstance(result, ServerError):
            outcomes[f"server error ({result.code})"] += 1
        elif isinstance(result, BaseException):
            outcomes["batch failure" if is_batch_level_error(error=result) else "error"] += 1
        else:
            outcomes["ok"] += 1
    return analytics.get_report(), outcomes


def print_report(report: BatchReport, outcomes: Counter[str]):
    summary = report.summary
    console = Console()

    table = Table(title="Batch summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Logical requests", str(summary.potential_requests))
    table.add_row("Network round trips", str(summary.actual_requests))
    table.add_row("Efficiency", f"{summary.efficiency:.1%}")
    table.add_row("Deduplication rate", f"{summary.deduplication_rate:.1%}")
    table.add_row("Average batch size", f"{summary.average_batch_size:.2f}")
    table.add_row("Requests saved", str(summary.requests_saved))
    table.add_row("Estimated time saved", f"{summary.estimated_time_saved_seconds:.3f}s")
    console.print(table)

    outcome_table = Table(title="Outcomes")
    outcome_table.add_column("Outcome", style="cyan")
    outcome_table.add_column("Count", justify="right")
    for outcome, count in sorted(outcomes.items()):
        outcome_table.add_row(outcome, str(count))
    console.print(outcome_table)

    if report.recommendations:
        values = "\n".join(f"- {recommendation}" for recommendation in report.recommendations)
        console.print(Panel(values, title="Recommendations", expand=False, highlight=True))
    else:
        print("[green]No recommendations, batching looks healthy.[/green]")


@app.command(name="replay")
def replay(
    file_path: Annotated[
        Path,
        typer.Argument(
            help="JSONL file with one request per line (endpoint, method, data, priority)",
            callback=load_file_callback,
        ),
    ],
    batch_endpoint: Annotated[
        str | None,
        typer.Option("--batch-endpoint", help="Batch endpoint path or URL"),
    ] = None,
    base_url: Annotated[
        str | None,
        typer.Option("--base-url", help="Base URL for relative endpoints"),
    ] = None,
    window_ms: Annotated[
        float | None,
        typer.Option("--window", help="Batch window in milliseconds", callback=positive_callback),
    ] = None,
    max_window_ms: Annotated[
        float | None,
        typer.Option(
            "--max-window", help="Maximum batch window in milliseconds", callback=positive_callback
        ),
    ] = None,
    max_batch_size: Annotated[
        int | None,
        typer.Option("--max-batch-size", help="Flush once this many requests are queued"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Resolve requests locally without any network call"),
    ] = False,
    verbose: Annotated[bool, typer.Option("-v", "--verbose", help="Enable debug logs")] = False,
):
    """Send every request of FILE_PATH through a BatchManager and print the analytics report."""
    load_dotenv()
    if verbose:
        setup_logging()
    try:
        descriptors = request_descriptor_list_adapter.validate_python(read_jsonl_file(file_path))
    except (ValidationError, ValueError) as error:
        raise typer.BadParameter(
            message=f"invalid request file: {error}", param_hint="FILE_PATH"
        ) from error
    try:
        config = BatchManagerConfig.from_env(
            batch_endpoint=batch_endpoint,
            base_url=base_url,
            batch_window_seconds=window_ms / 1000 if window_ms is not None else None,
            max_batch_window_seconds=max_window_ms / 1000 if max_window_ms is not None else None,
            max_batch_size=max_batch_size,
            dry_run=True if dry_run else None,
        )
    except ConfigurationError as error:
        raise typer.BadParameter(message=str(error)) from error

    if not descriptors:
        print("[yellow]No requests to replay.[/yellow]")
        raise typer.Exit()

    report, outcomes = asyncio.run(replay_requests(config=config, descriptors=descriptors))
    print_report(report=report, outcomes=outcomes)
