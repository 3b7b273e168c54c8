"""Main CLI entry point for crawlhost."""

import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console

from ..foundation.config import get_config_manager
from ..foundation.errors import CrawlHostError
from ..foundation.logging import setup_logging
from ..version import __version__
from .commands import hostdb

err_console = Console(stderr=True)


def cli_log_level(verbose: int, quiet: bool) -> Optional[str]:
    """Log level for the flags given; None keeps ``global.log_level``."""
    if quiet:
        return "ERROR"
    if verbose <= 0:
        return None
    return "INFO" if verbose == 1 else "DEBUG"


def handle_cli_error(error: Exception, debug: bool = False) -> int:
    """Print ``error`` for a terminal user and return the exit code."""
    if isinstance(error, click.ClickException):
        error.show()
        return error.exit_code

    if isinstance(error, CrawlHostError):
        err_console.print(f"[red]Error:[/red] {error.message}")
        if error.details:
            err_console.print(f"Details: {error.details}")
    elif debug:
        err_console.print_exception()
    else:
        err_console.print(f"[red]Unexpected error:[/red] {error}")
        err_console.print("Use --verbose for more details")
    return 1


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file path"
)
@click.option("--verbose", "-v", count=True, help="Increase verbosity (use -v, -vv)")
@click.option("--quiet", "-q", is_flag=True, help="Only log errors")
@click.version_option(version=__version__, prog_name="crawlhost")
@click.pass_context
def cli(ctx, config, verbose, quiet):
    """crawlhost - host statistics and crawl job tooling."""
    if config:
        manager = get_config_manager()
        manager.config_path = config
        manager.reload_config()

    setup_logging(level=cli_log_level(verbose, quiet))
    ctx.obj = {"verbose": verbose, "quiet": quiet, "config_path": config}


cli.add_command(hostdb)


def main(args: Optional[List[str]] = None) -> int:
    """Console script entry point; returns the process exit code."""
    if args is None:
        args = sys.argv[1:]

    try:
        result = cli(args, standalone_mode=False)
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        return 130
    except click.exceptions.Abort:
        return 1
    except Exception as e:
        debug = any(arg in ("--verbose", "-vv") or arg.startswith("-v") for arg in args)
        return handle_cli_error(e, debug)
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    sys.exit(main())
