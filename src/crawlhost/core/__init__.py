"""Core layer components for the crawlhost system."""

from .jobs import (
    JobController,
    JobHandle,
    JobState,
    KillOnStopMixin,
    ProgressReading,
    SynchronizedDict,
    STAT_PROGRESS,
)

__all__ = [
    "JobController",
    "JobHandle",
    "JobState",
    "KillOnStopMixin",
    "ProgressReading",
    "SynchronizedDict",
    "STAT_PROGRESS",
]
