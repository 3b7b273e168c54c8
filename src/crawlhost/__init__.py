"""
crawlhost - host statistics records and batch job control for crawl pipelines.

The package provides two independent building blocks:
1. HostRecord - per-host reputation, failure and fetch-outcome statistics with
   a binary format compatible with Hadoop-based host databases
2. JobController - progress, status and stop/kill control for long-running
   jobs executed by an external engine
"""

from .version import __version__
from .hostdb import HostRecord, read_records, write_records
from .core import JobController, JobHandle, JobState, KillOnStopMixin, ProgressReading

__all__ = [
    "__version__",
    "HostRecord",
    "read_records",
    "write_records",
    "JobController",
    "JobHandle",
    "JobState",
    "KillOnStopMixin",
    "ProgressReading",
]
