"""Per-host statistics record persisted in the host database."""

import copy
import io
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Annotated, Any, BinaryIO, Dict, Iterable, Iterator, Mapping, Optional, Union

from pydantic import Field, StrictStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..foundation.config import get_config_manager, resolve_timezone
from ..foundation.errors import RecordFormatError, ValidationError
from .writable import (
    EMPTY_MAP_BYTES,
    DataInput,
    DataOutput,
    java_float_text,
    read_map,
    render_value,
    to_float32,
    write_map,
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

REPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
METADATA_SEPARATOR = "|||"

CounterValue = Annotated[int, Field(ge=0, strict=True)]

_COUNTER = TypeAdapter(CounterValue)
_TIMESTAMP = TypeAdapter(Annotated[datetime, Field(strict=True)])
_URL = TypeAdapter(StrictStr)


def _validate(adapter: TypeAdapter, field: str, value: Any) -> Any:
    try:
        return adapter.validate_python(value)
    except PydanticValidationError as e:
        reason = e.errors()[0]["msg"]
        raise ValidationError(f"Invalid {field} {value!r}: {reason}", field=field) from e


def _wire_timestamp(value: datetime) -> datetime:
    """UTC, truncated to the millisecond resolution of the wire format."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def _to_millis(value: datetime) -> int:
    return (value - EPOCH) // timedelta(milliseconds=1)


def _from_millis(millis: int) -> datetime:
    try:
        return EPOCH + timedelta(milliseconds=millis)
    except OverflowError as e:
        raise RecordFormatError(f"Timestamp out of range: {millis} ms") from e


class _Counter:
    """Non-negative integer field, validated on assignment."""

    def __set_name__(self, owner, name):
        self.name = name
        self.attr = "_" + name

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return getattr(instance, self.attr)

    def __set__(self, instance, value):
        setattr(instance, self.attr, _validate(_COUNTER, self.name, value))


class HostRecord:
    """Reputation, fetch statistics and metadata of one host.

    ``score`` is kept as a float32 and ``last_check`` in whole UTC
    milliseconds, so a decoded record equals the one that was encoded.

    Counters are plain Python ints and never wrap; a counter that no longer
    fits a signed 64-bit integer makes :meth:`write` raise
    :class:`RecordFormatError`.

    Metadata is materialized on first access. :meth:`get_metadata` hands out
    the live dict, so callers holding it see later changes, including the
    in-place refill done by :meth:`read_fields`.
    """

    dns_failures = _Counter()
    connection_failures = _Counter()

    unfetched = _Counter()
    fetched = _Counter()
    not_modified = _Counter()
    redir_temp = _Counter()
    redir_perm = _Counter()
    gone = _Counter()

    OUTCOME_FIELDS = ("unfetched", "fetched", "not_modified", "redir_temp", "redir_perm", "gone")
    FAILURE_FIELDS = ("dns_failures", "connection_failures")

    def __init__(
        self,
        score: float = 0.0,
        last_check: Optional[datetime] = None,
        homepage_url: str = ""
    ):
        self.score = score
        self.last_check = last_check if last_check is not None else EPOCH
        self.homepage_url = homepage_url

        for name in self.FAILURE_FIELDS + self.OUTCOME_FIELDS:
            setattr(self, name, 0)

        self._metadata: Optional[Dict[Any, Any]] = None

    @classmethod
    def create(
        cls,
        score: float,
        last_check: Optional[datetime] = None,
        homepage_url: str = ""
    ) -> "HostRecord":
        """Build a scored record, stamped with the current time unless given one."""
        if last_check is None:
            last_check = datetime.now(timezone.utc)
        return cls(score, last_check, homepage_url)

    # Scalar fields

    @property
    def score(self) -> float:
        return self._score

    @score.setter
    def score(self, value: float) -> None:
        # Held at the precision the wire keeps
        self._score = to_float32(float(value))

    def set_score(self, value: float) -> None:
        self.score = value

    def get_score(self) -> float:
        return self.score

    @property
    def last_check(self) -> datetime:
        return self._last_check

    @last_check.setter
    def last_check(self, value: datetime) -> None:
        """Naive values are taken as UTC; sub-millisecond parts are dropped."""
        self._last_check = _wire_timestamp(_validate(_TIMESTAMP, "last_check", value))

    def set_last_check(self, value: Optional[datetime] = None) -> None:
        """Set the last check time; defaults to now."""
        self.last_check = value if value is not None else datetime.now(timezone.utc)

    def get_last_check(self) -> datetime:
        return self.last_check

    def is_empty(self) -> bool:
        """A record is empty until it has been checked at least once."""
        return self.last_check == EPOCH

    @property
    def homepage_url(self) -> str:
        return self._homepage_url

    @homepage_url.setter
    def homepage_url(self, value: str) -> None:
        self._homepage_url = _validate(_URL, "homepage_url", value)

    def set_homepage_url(self, value: str) -> None:
        self.homepage_url = value

    def get_homepage_url(self) -> str:
        return self.homepage_url

    def has_homepage_url(self) -> bool:
        return self.homepage_url != ""

    # Counters

    def inc_dns_failures(self) -> None:
        self.dns_failures += 1

    def inc_connection_failures(self) -> None:
        self.connection_failures += 1

    def reset_failures(self) -> None:
        self.dns_failures = 0
        self.connection_failures = 0

    def reset_statistics(self) -> None:
        for name in self.OUTCOME_FIELDS:
            setattr(self, name, 0)

    @property
    def total_failures(self) -> int:
        return self.dns_failures + self.connection_failures

    @property
    def total_records(self) -> int:
        return sum(getattr(self, name) for name in self.OUTCOME_FIELDS)

    # Metadata

    def get_metadata(self) -> Dict[Any, Any]:
        """Live metadata dict, created empty on first access."""
        if self._metadata is None:
            self._metadata = {}
        return self._metadata

    @property
    def metadata(self) -> Dict[Any, Any]:
        return self.get_metadata()

    def set_metadata(self, other: Mapping[Any, Any]) -> None:
        """Replace metadata with a deep copy of ``other``."""
        self._metadata = copy.deepcopy(dict(other))

    def put_all_metadata(self, other: "HostRecord") -> None:
        """Merge ``other``'s metadata into ours; its values win on collision."""
        if other.has_metadata():
            self.get_metadata().update(other.get_metadata())

    def has_metadata(self) -> bool:
        return bool(self._metadata)

    # Serialization

    def write(self, stream: BinaryIO) -> None:
        """Encode this record onto ``stream``.

        The record is fully encoded before anything is written, so an
        encoding error leaves ``stream`` untouched.
        """
        stream.write(self.to_bytes())

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        out = DataOutput(buffer)

        out.write_float(self.score)
        out.write_long(_to_millis(self.last_check))
        out.write_text(self.homepage_url)

        for name in self.FAILURE_FIELDS + self.OUTCOME_FIELDS:
            out.write_long(getattr(self, name))

        if self.has_metadata():
            write_map(out, self._metadata)
        else:
            out.write(EMPTY_MAP_BYTES)

        return buffer.getvalue()

    def read_fields(self, source: Union[BinaryIO, DataInput]) -> None:
        """Replace every field with the next record read from ``source``.

        The whole record is decoded before any field changes, so a malformed
        or truncated record leaves this one as it was. An existing metadata
        dict is cleared and refilled rather than replaced.
        """
        inp = source if isinstance(source, DataInput) else DataInput(source)

        score = inp.read_float()
        last_check = _from_millis(inp.read_long())
        homepage_url = inp.read_text()

        counters = {}
        for name in self.FAILURE_FIELDS + self.OUTCOME_FIELDS:
            value = inp.read_long()
            if value < 0:
                raise RecordFormatError(f"Negative {name} counter: {value}", offset=inp.offset)
            counters[name] = value

        entries = read_map(inp)

        self.score = score
        self.last_check = last_check
        self.homepage_url = homepage_url
        for name, value in counters.items():
            setattr(self, name, value)

        metadata = self.get_metadata()
        metadata.clear()
        metadata.update(entries)

    @classmethod
    def from_bytes(cls, data: bytes) -> "HostRecord":
        inp = DataInput(data)
        record = cls()
        record.read_fields(inp)
        if inp.has_more():
            raise RecordFormatError("Trailing bytes after record", offset=inp.offset)
        return record

    # Duplication

    def clone(self, share_metadata: bool = False) -> "HostRecord":
        """Copy this record.

        Metadata is deep-copied unless ``share_metadata`` is set, in which
        case both records use the same dict.
        """
        result = HostRecord(self.score, self.last_check, self.homepage_url)
        for name in self.FAILURE_FIELDS + self.OUTCOME_FIELDS:
            setattr(result, name, getattr(self, name))

        if share_metadata or self._metadata is None:
            result._metadata = self._metadata
        else:
            result._metadata = copy.deepcopy(self._metadata)
        return result

    def __copy__(self) -> "HostRecord":
        return self.clone(share_metadata=True)

    def __deepcopy__(self, memo) -> "HostRecord":
        return self.clone()

    # Rendering

    def format_report(self, tz: Optional[Union[str, tzinfo]] = None) -> str:
        """Tab-separated report line.

        Column order: unfetched, fetched, gone, redir_temp, redir_perm,
        not_modified, total_records, dns_failures, connection_failures,
        total_failures, score, last_check, homepage_url, then one
        ``key:value|||`` chunk per metadata entry.
        """
        if tz is None:
            tz = get_config_manager().get_setting("hostdb.report_timezone", "UTC")
        if isinstance(tz, str):
            tz = resolve_timezone(tz)

        columns = [
            str(self.unfetched),
            str(self.fetched),
            str(self.gone),
            str(self.redir_temp),
            str(self.redir_perm),
            str(self.not_modified),
            str(self.total_records),
            str(self.dns_failures),
            str(self.connection_failures),
            str(self.total_failures),
            java_float_text(self.score),
            self.last_check.astimezone(tz).strftime(REPORT_DATE_FORMAT),
            self.homepage_url,
        ]
        line = "\t".join(columns) + "\t"

        if self.has_metadata():
            line += "".join(
                f"{render_value(key)}:{render_value(value)}{METADATA_SEPARATOR}"
                for key, value in self._metadata.items()
            )
        return line

    def __str__(self) -> str:
        return self.format_report()

    def __repr__(self) -> str:
        return (
            f"HostRecord("
            f"score={self.score!r}, "
            f"last_check={self.last_check.isoformat()}, "
            f"homepage_url={self.homepage_url!r}, "
            f"failures={self.total_failures}, "
            f"records={self.total_records}, "
            f"metadata={len(self._metadata or {})}"
            f")"
        )

    def _state(self):
        return (
            self.score,
            self.last_check,
            self.homepage_url,
            tuple(getattr(self, name) for name in self.FAILURE_FIELDS + self.OUTCOME_FIELDS),
            self._metadata or {},
        )

    def __eq__(self, other):
        if not isinstance(other, HostRecord):
            return NotImplemented
        return self._state() == other._state()

    __hash__ = None


def read_records(stream: BinaryIO) -> Iterator[HostRecord]:
    """Yield records from a stream of back-to-back encoded records."""
    inp = DataInput(stream)
    while inp.has_more():
        record = HostRecord()
        record.read_fields(inp)
        yield record


def write_records(stream: BinaryIO, records: Iterable[HostRecord]) -> int:
    """Write records back to back; returns how many were written."""
    count = 0
    for record in records:
        record.write(stream)
        count += 1
    return count
