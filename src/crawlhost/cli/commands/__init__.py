"""CLI commands for the crawlhost system."""

from .hostdb import hostdb

__all__ = [
    "hostdb",
]
