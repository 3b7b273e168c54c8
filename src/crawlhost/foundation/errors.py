"""Error taxonomy and central error tracking for crawlhost.

Every failure that crawlhost recovers from locally (a progress query that
raised, a kill request the engine refused) still passes through
:func:`handle_error`, so it is logged once and counted.
"""

import logging
import traceback
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Deque, Dict, List, Optional, Union

from .logging import get_logger


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorCategory(str, Enum):
    """Categories of errors that can occur in the system."""
    VALIDATION = "validation"
    SERIALIZATION = "serialization"
    JOB = "job"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.ERROR,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}

# First match wins; UnicodeDecodeError is also a ValueError.
_GENERIC_CATEGORIES = (
    ((EOFError, UnicodeDecodeError), ErrorCategory.SERIALIZATION, ErrorSeverity.MEDIUM),
    ((ValueError, TypeError), ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ((MemoryError,), ErrorCategory.SYSTEM, ErrorSeverity.HIGH),
)


@dataclass
class ErrorContext:
    """Where an error happened: the operation plus job or host identifiers."""
    operation: str
    job_name: Optional[str] = None
    crawl_id: Optional[str] = None
    host: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "job_name": self.job_name,
            "crawl_id": self.crawl_id,
            "host": self.host,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None
        }

    def describe(self) -> str:
        """Short ``(operation: x, job: y)`` suffix for log lines."""
        parts = [f"operation: {self.operation}"]
        for label, value in (("job", self.job_name), ("crawl", self.crawl_id), ("host", self.host)):
            if value:
                parts.append(f"{label}: {value}")
        return "(" + ", ".join(parts) + ")"


@dataclass
class ErrorInfo:
    """A handled error, normalized from any exception type."""
    error_type: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    context: Optional[ErrorContext] = None
    traceback: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def key(self) -> str:
        return f"{self.category.value}:{self.error_type}"

    def to_record(self) -> Dict[str, Any]:
        """Plain-dict form kept in the handler's recent history."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "context": self.context.to_dict() if self.context else None,
            "timestamp": self.timestamp.isoformat(),
        }


def _format_traceback(error: BaseException) -> Optional[str]:
    if error.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


class CrawlHostError(Exception):
    """Base exception class for all crawlhost errors.

    Subclasses set ``default_category``, ``default_severity`` and
    ``default_code``; the constructor arguments override them.
    """

    default_category = ErrorCategory.SYSTEM
    default_severity = ErrorSeverity.MEDIUM
    default_code: Optional[str] = None

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[ErrorContext] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.severity = severity or self.default_severity
        self.error_code = error_code or self.default_code
        self.details = details
        self.context = context
        self.timestamp = _utcnow()

    def _attach(self, **fields: Any) -> None:
        present = {name: value for name, value in fields.items() if value is not None}
        if present:
            self.details = {**(self.details or {}), **present}

    def to_error_info(self) -> ErrorInfo:
        return ErrorInfo(
            error_type=type(self).__name__,
            message=self.message,
            category=self.category,
            severity=self.severity,
            code=self.error_code,
            details=dict(self.details or {}),
            context=self.context,
            traceback=_format_traceback(self),
            timestamp=self.timestamp
        )


class ValidationError(CrawlHostError):
    """A value is outside its allowed domain, e.g. a negative counter."""

    default_category = ErrorCategory.VALIDATION
    default_severity = ErrorSeverity.LOW
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self._attach(field=field)


class RecordFormatError(CrawlHostError):
    """Bytes that cannot be decoded, or a value that cannot be encoded.

    ``offset`` is the stream position of the failed read, when known.
    """

    default_category = ErrorCategory.SERIALIZATION
    default_code = "RECORD_FORMAT_ERROR"

    def __init__(self, message: str, offset: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.offset = offset
        self._attach(offset=offset)


class JobError(CrawlHostError):
    """A job ran and failed.

    The original exception is available as ``__cause__``.
    """

    default_category = ErrorCategory.JOB
    default_severity = ErrorSeverity.HIGH
    default_code = "JOB_ERROR"

    def __init__(self, message: str, job_name: Optional[str] = None, crawl_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.job_name = job_name
        self.crawl_id = crawl_id
        self._attach(job_name=job_name, crawl_id=crawl_id)


class ConfigurationError(CrawlHostError):
    """Configuration that cannot be read or does not validate."""

    default_category = ErrorCategory.CONFIGURATION
    default_severity = ErrorSeverity.HIGH
    default_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.config_key = config_key
        self._attach(config_key=config_key)


class ErrorHandler:
    """Logs handled errors and keeps counts plus a bounded recent history.

    Nothing here retries; callers decide what a handled error means.
    """

    def __init__(self, max_recent_errors: int = 100):
        self.max_recent_errors = max_recent_errors
        self.error_count = 0
        self.error_counts: Counter = Counter()
        self.last_errors: Dict[str, datetime] = {}
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=max_recent_errors)
        self._lock = Lock()
        self.logger = get_logger(__name__)

    @property
    def recent_errors(self) -> List[Dict[str, Any]]:
        """Recent errors, newest first."""
        with self._lock:
            return list(self._recent)

    def handle_error(
        self,
        error: Union[Exception, ErrorInfo],
        context: Optional[ErrorContext] = None
    ) -> ErrorInfo:
        """Normalize, record and log an error.

        Args:
            error: Exception or an already built ErrorInfo
            context: Used when the error carries no context of its own

        Returns:
            The ErrorInfo that was recorded
        """
        if isinstance(error, ErrorInfo):
            info = error
        elif isinstance(error, CrawlHostError):
            info = error.to_error_info()
        else:
            info = self._from_exception(error)

        if info.context is None:
            info.context = context

        self._record(info)
        self._log(info)
        return info

    def _from_exception(self, error: BaseException) -> ErrorInfo:
        category, severity = ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM
        for types, mapped_category, mapped_severity in _GENERIC_CATEGORIES:
            if isinstance(error, types):
                category, severity = mapped_category, mapped_severity
                break

        return ErrorInfo(
            error_type=type(error).__name__,
            message=str(error),
            category=category,
            severity=severity,
            traceback=_format_traceback(error)
        )

    def _record(self, info: ErrorInfo) -> None:
        with self._lock:
            self.error_count += 1
            self._recent.appendleft(info.to_record())
            self.error_counts[info.key] += 1
            self.last_errors[info.key] = info.timestamp

    def _log(self, info: ErrorInfo) -> None:
        message = f"{info.error_type}: {info.message}"
        if info.context:
            message += " " + info.context.describe()

        self.logger.log(_LOG_LEVELS[info.severity], message)
        if info.traceback:
            self.logger.debug(f"Traceback for {info.error_type}:\n{info.traceback}")

    def get_error_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "error_counts": dict(self.error_counts),
                "last_errors": {key: ts.isoformat() for key, ts in self.last_errors.items()},
                "total_errors": self.error_count
            }

    def clear_errors(self) -> None:
        with self._lock:
            self.error_count = 0
            self._recent.clear()
            self.error_counts.clear()
            self.last_errors.clear()

    def get_recent_errors_by_type(self, error_type: str) -> List[Dict[str, Any]]:
        return [record for record in self.recent_errors if record["error_type"] == error_type]


_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance."""
    global _error_handler
    if _error_handler is None:
        _error_handler = ErrorHandler()
    return _error_handler


def handle_error(
    error: Union[Exception, ErrorInfo, str],
    context: Optional[ErrorContext] = None
) -> ErrorInfo:
    """Record an error on the global handler; a bare string becomes a CrawlHostError."""
    if isinstance(error, str):
        error = CrawlHostError(error)
    return get_error_handler().handle_error(error, context or ErrorContext(operation="unknown"))
