"""CLI commands for inspecting host record files."""

from pathlib import Path
from typing import Dict

import click
from rich.console import Console
from rich.table import Table

from ...foundation.config import get_config_manager
from ...foundation.errors import CrawlHostError, ErrorContext, handle_error
from ...foundation.logging import get_logger
from ...foundation.metrics import get_metrics_collector
from ...hostdb import HostRecord, read_records

console = Console()
logger = get_logger(__name__)


@click.group()
def hostdb():
    """Inspect host database record files.

    A record file holds encoded host records back to back.

    Examples:

        # Print one report line per host
        crawlhost hostdb dump hosts.bin

        # Show counter totals
        crawlhost hostdb summary hosts.bin
    """
    pass


@hostdb.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--timezone",
    "tz",
    default=None,
    help="Timezone for the last-check column (defaults to hostdb.report_timezone)"
)
def dump(path, tz):
    """Print the report line of every record in PATH."""
    if tz is None:
        tz = get_config_manager().get_setting("hostdb.report_timezone", "UTC")

    try:
        with get_metrics_collector().timer("hostdb.dump"), open(path, "rb") as f:
            count = 0
            for record in read_records(f):
                click.echo(record.format_report(tz))
                count += 1
    except (CrawlHostError, ValueError) as e:
        handle_error(e, ErrorContext(operation="hostdb.dump", metadata={"path": str(path)}))
        raise click.ClickException(f"Failed to read {path}: {e}")

    logger.info(f"Dumped {count} records from {path}")


@hostdb.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def summary(path):
    """Show record count and counter totals for PATH."""
    totals: Dict[str, int] = {
        name: 0 for name in HostRecord.OUTCOME_FIELDS + HostRecord.FAILURE_FIELDS
    }
    records = 0
    empty = 0
    with_metadata = 0

    try:
        with open(path, "rb") as f:
            for record in read_records(f):
                records += 1
                if record.is_empty():
                    empty += 1
                if record.has_metadata():
                    with_metadata += 1
                for name in totals:
                    totals[name] += getattr(record, name)
    except CrawlHostError as e:
        handle_error(e, ErrorContext(operation="hostdb.summary", metadata={"path": str(path)}))
        raise click.ClickException(f"Failed to read {path}: {e}")

    table = Table(title=f"Host records in {path.name}")
    table.add_column("Statistic", style="cyan")
    table.add_column("Value", justify="right", style="green")

    table.add_row("hosts", str(records))
    table.add_row("never checked", str(empty))
    table.add_row("with metadata", str(with_metadata))
    for name, value in totals.items():
        table.add_row(name, str(value))
    table.add_row("total records", str(sum(totals[n] for n in HostRecord.OUTCOME_FIELDS)))
    table.add_row("total failures", str(sum(totals[n] for n in HostRecord.FAILURE_FIELDS)))

    console.print(table)
