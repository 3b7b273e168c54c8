"""Lifecycle control for long-running, externally executed batch jobs."""

import threading
from abc import ABC, abstractmethod
from collections.abc import MutableMapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Protocol, runtime_checkable

from ..foundation.config import get_config_manager
from ..foundation.errors import ErrorContext, JobError, handle_error
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector

STAT_PROGRESS = "progress"
STAT_PROGRESS_KNOWN = "progress_known"


@runtime_checkable
class JobHandle(Protocol):
    """What a controller needs from the execution engine's job object.

    Every call may block on the engine; timeouts belong to the handle.
    """

    def map_progress(self) -> float:
        """Completion of the map phase in [0, 1]."""
        ...

    def reduce_progress(self) -> float:
        """Completion of the reduce phase in [0, 1]."""
        ...

    def is_complete(self) -> bool:
        ...

    def kill_job(self) -> None:
        ...


class JobState(str, Enum):
    """Lifecycle states of a controller."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class ProgressReading:
    """One progress poll.

    ``known`` is False when the job handle failed to report; ``value`` is
    then the degraded figure (0 for the current phase) and ``error`` holds
    the exception.
    """
    value: float
    known: bool = True
    error: Optional[BaseException] = None


class SynchronizedDict(MutableMapping):
    """Dict guarded by a lock, safe to read from a monitoring thread."""

    def __init__(self, *args, **kwargs):
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = dict(*args, **kwargs)

    def __getitem__(self, key):
        with self._lock:
            return self._data[key]

    def __setitem__(self, key, value):
        with self._lock:
            self._data[key] = value

    def __delitem__(self, key):
        with self._lock:
            del self._data[key]

    def __iter__(self) -> Iterator[str]:
        # Iterate over a copy so writers never invalidate the iterator
        with self._lock:
            keys = list(self._data)
        return iter(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key) -> bool:
        with self._lock:
            return key in self._data

    def update(self, *args, **kwargs) -> None:
        """Apply all changes under one lock hold, so readers see none or all."""
        with self._lock:
            self._data.update(*args, **kwargs)

    def snapshot(self) -> Dict[str, Any]:
        """Consistent point-in-time copy."""
        with self._lock:
            return dict(self._data)

    def __repr__(self) -> str:
        return f"SynchronizedDict({self.snapshot()!r})"


class JobController(ABC):
    """Drives one or more sequential job phases on an external engine.

    Subclasses implement :meth:`run`, attach each phase's handle with
    :meth:`attach_job`, and decide how :meth:`stop_job` behaves (see
    :class:`KillOnStopMixin` for the kill-based fallback).
    """

    def __init__(self, num_jobs: int = 1, name: Optional[str] = None):
        if num_jobs < 0:
            raise ValueError(f"num_jobs must not be negative: {num_jobs}")

        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()
        self.name = name or self.__class__.__name__

        self.results: Dict[str, Any] = {}
        self.status = SynchronizedDict({STAT_PROGRESS: 0.0})
        self.current_job: Optional[JobHandle] = None
        self.num_jobs = num_jobs
        self.current_job_num = 0

        self._stop_requested = False
        self._finished = False

    @abstractmethod
    def run(self, args: Dict[str, Any], crawl_id: str) -> Dict[str, Any]:
        """Run the tool.

        Args:
            args: Tool arguments
            crawl_id: Crawl the run belongs to

        Returns:
            Results of the run
        """

    @abstractmethod
    def stop_job(self) -> bool:
        """Stop the current job so that it can be resumed later.

        Returns:
            True if the stop request was accepted
        """

    def execute(self, args: Dict[str, Any], crawl_id: str) -> Dict[str, Any]:
        """Call :meth:`run` and keep its results.

        Raises:
            JobError: If ``run`` raised; the original exception is chained
        """
        self.logger.info(f"Starting {self.name} for crawl {crawl_id}")
        try:
            results = self.run(args, crawl_id)
        except Exception as e:
            self._record_counter("job_controller.run.failed")
            handle_error(e, self._context("run", crawl_id))
            raise JobError(
                f"{self.name} failed: {e}", job_name=self.name, crawl_id=crawl_id
            ) from e
        finally:
            self._finished = True

        self.results.clear()
        self.results.update(results or {})
        self.logger.info(f"{self.name} finished for crawl {crawl_id}")
        return self.results

    def attach_job(self, job: JobHandle, job_num: Optional[int] = None) -> None:
        """Make ``job`` the in-flight phase; ``job_num`` is its 0-based index."""
        if job_num is not None:
            if job_num < 0 or (self.num_jobs and job_num >= self.num_jobs):
                raise ValueError(
                    f"job_num {job_num} outside 0..{max(self.num_jobs - 1, 0)}"
                )
            self.current_job_num = job_num

        self.current_job = job
        self._stop_requested = False
        self._finished = False
        self.logger.debug(
            f"{self.name}: attached phase {self.current_job_num + 1}/{max(self.num_jobs, 1)}"
        )

    def detach_job(self) -> None:
        self.current_job = None

    def poll_progress(self) -> ProgressReading:
        """Compute overall progress in [0, 1] and publish it in :attr:`status`.

        Never raises; a failing job handle yields an unknown reading.
        """
        value = 0.0
        known = True
        error: Optional[BaseException] = None

        job = self.current_job
        if job is not None:
            try:
                value = (job.map_progress() + job.reduce_progress()) / 2.0
            except Exception as e:
                value = 0.0
                known = False
                error = e
                handle_error(e, self._context("poll_progress"))
                self._record_counter("job_controller.progress.unknown")

        if self.num_jobs > 1:
            value = (self.current_job_num + value) / float(self.num_jobs)

        self.status.update({STAT_PROGRESS: value, STAT_PROGRESS_KNOWN: known})
        if self._metrics_enabled():
            self.metrics.set_gauge("job_controller.progress", value, tags={"job": self.name})

        return ProgressReading(value=value, known=known, error=error)

    def get_progress(self) -> float:
        """Overall progress in [0, 1]; 0 for the current phase when unknown."""
        return self.poll_progress().value

    def get_status(self) -> SynchronizedDict:
        """The live status mapping, not a copy."""
        return self.status

    def kill_job(self) -> bool:
        """Kill the current job immediately.

        Whatever the job produced so far should be treated as missing or
        inconsistent.

        Returns:
            True if a kill was sent, False if there was nothing to kill or
            the kill request failed
        """
        job = self.current_job
        if job is None:
            return False

        try:
            if job.is_complete():
                return False
            self._record_counter("job_controller.kill.requested")
            job.kill_job()
        except Exception as e:
            self._record_counter("job_controller.kill.failed")
            handle_error(e, self._context("kill_job"))
            return False

        self._stop_requested = True
        self.logger.info(f"{self.name}: kill requested")
        return True

    @property
    def state(self) -> JobState:
        """Lifecycle state, read lazily from the job handle."""
        if self.current_job is None:
            return JobState.TERMINAL if self._finished else JobState.IDLE

        try:
            complete = self.current_job.is_complete()
        except Exception as e:
            handle_error(e, self._context("state"))
            complete = False

        if complete or self._finished:
            return JobState.TERMINAL
        if self._stop_requested:
            return JobState.STOPPING
        return JobState.RUNNING

    def _context(self, operation: str, crawl_id: Optional[str] = None) -> ErrorContext:
        return ErrorContext(
            operation=operation,
            job_name=self.name,
            crawl_id=crawl_id,
            metadata={"phase": self.current_job_num, "phases": self.num_jobs}
        )

    def _metrics_enabled(self) -> bool:
        return bool(get_config_manager().get_setting("jobs.record_metrics", True))

    def _record_counter(self, name: str) -> None:
        if self._metrics_enabled():
            self.metrics.increment_counter(name, tags={"job": self.name})


class KillOnStopMixin:
    """Adapter for controllers whose engine cannot pause: stopping kills.

    List it before :class:`JobController` in the bases::

        class InjectJob(KillOnStopMixin, JobController):
            ...
    """

    def stop_job(self) -> bool:
        return self.kill_job()
