"""Host database records."""

from .record import HostRecord, read_records, write_records
from .writable import (
    EMPTY_MAP_BYTES,
    DataInput,
    DataOutput,
    FloatValue,
    IntValue,
    VIntValue,
    VLongValue,
)

__all__ = [
    "HostRecord",
    "read_records",
    "write_records",
    "EMPTY_MAP_BYTES",
    "DataInput",
    "DataOutput",
    "FloatValue",
    "IntValue",
    "VIntValue",
    "VLongValue",
]
