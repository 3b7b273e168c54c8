"""Binary primitives for host records.

Everything here is big-endian and byte-compatible with Hadoop's
``DataOutput``/``Writable`` encodings, so records written by a JVM crawler
can be read back and vice versa:

* fixed-width integers and IEEE floats (``>b``, ``>i``, ``>q``, ``>f``, ``>d``)
* zero-compressed variable-length longs (``WritableUtils.writeVLong``)
* strings as a variable-length byte count followed by UTF-8 (``Text``)
* typed key/value maps (``MapWritable``)

Map layout::

    byte   number of extra classes in the class table
    repeat:   byte class id, modified-UTF-8 class name
    int32  number of entries
    repeat:   byte key type id, key payload, byte value type id, value payload
"""

import io
import math
import struct
from typing import Any, BinaryIO, Callable, Dict, List, Mapping, Optional, Union

from ..foundation.errors import RecordFormatError

LONG_MIN = -(1 << 63)
LONG_MAX = (1 << 63) - 1
INT_MIN = -(1 << 31)
INT_MAX = (1 << 31) - 1

_BYTE = struct.Struct(">b")
_SHORT = struct.Struct(">H")
_INT = struct.Struct(">i")
_LONG = struct.Struct(">q")
_FLOAT = struct.Struct(">f")
_DOUBLE = struct.Struct(">d")

# Type ids Hadoop's AbstractMapWritable registers for every map
BOOLEAN_ID = -126
BYTES_ID = -125
FLOAT_ID = -124
INT_ID = -123
LONG_ID = -122
MAP_ID = -121
NULL_ID = -119
TEXT_ID = -116
VINT_ID = -114
VLONG_ID = -113

# Not predefined; announced per map in the class table
DOUBLE_CLASS = "org.apache.hadoop.io.DoubleWritable"

PREDEFINED_IDS = frozenset({
    BOOLEAN_ID, BYTES_ID, FLOAT_ID, INT_ID, LONG_ID, MAP_ID,
    NULL_ID, TEXT_ID, VINT_ID, VLONG_ID,
})


def to_float32(value: float) -> float:
    """Round a Python float to the nearest IEEE single.

    Magnitudes beyond the single range become infinities, which is what a
    narrowing cast does on the JVM.
    """
    try:
        return _FLOAT.unpack(_FLOAT.pack(value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _java_text(value: float, narrow: Callable[[float], float]) -> str:
    # Shortest digits that survive ``narrow``, plain in [1e-3, 1e7), else d.dddEn
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == 0:
        return "-0.0" if math.copysign(1.0, value) < 0 else "0.0"

    for precision in range(17):
        text = f"{value:.{precision}e}"
        if narrow(float(text)) == value:
            break

    mantissa, exponent_text = text.split("e")
    exponent = int(exponent_text)
    sign = "-" if mantissa.startswith("-") else ""
    digits = mantissa.lstrip("-").replace(".", "").rstrip("0") or "0"

    if 1e-3 <= abs(value) < 1e7:
        if exponent >= 0:
            whole = digits[:exponent + 1].ljust(exponent + 1, "0")
            fraction = digits[exponent + 1:] or "0"
        else:
            whole = "0"
            fraction = "0" * (-exponent - 1) + digits
        return f"{sign}{whole}.{fraction}"

    return f"{sign}{digits[0]}.{digits[1:] or '0'}E{exponent}"


def java_float_text(value: float) -> str:
    """Render a single-precision float like ``Float.toString``."""
    return _java_text(to_float32(value), to_float32)


def java_double_text(value: float) -> str:
    """Render a double like ``Double.toString``."""
    return _java_text(float(value), float)


class IntValue(int):
    """Integer carried on the wire as ``IntWritable`` (4 bytes)."""
    __slots__ = ()


class VIntValue(int):
    """Integer carried on the wire as ``VIntWritable``."""
    __slots__ = ()


class VLongValue(int):
    """Integer carried on the wire as ``VLongWritable``."""
    __slots__ = ()


class FloatValue(float):
    """Single-precision float carried on the wire as ``FloatWritable``.

    The value is rounded to float32 on construction.
    """
    __slots__ = ()

    def __new__(cls, value: float = 0.0):
        return super().__new__(cls, to_float32(float(value)))


def encode_modified_utf8(text: str) -> bytes:
    """Encode ``text`` the way ``DataOutput.writeUTF`` does (without the length)."""
    utf16 = text.encode("utf-16-be", "surrogatepass")
    out = bytearray()
    for i in range(0, len(utf16), 2):
        unit = (utf16[i] << 8) | utf16[i + 1]
        if 0 < unit < 0x80:
            out.append(unit)
        elif unit < 0x800:
            out += bytes((0xC0 | (unit >> 6), 0x80 | (unit & 0x3F)))
        else:
            out += bytes((
                0xE0 | (unit >> 12),
                0x80 | ((unit >> 6) & 0x3F),
                0x80 | (unit & 0x3F),
            ))
    return bytes(out)


def decode_modified_utf8(data: bytes) -> str:
    """Inverse of :func:`encode_modified_utf8`."""
    # Surrogate pairs arrive as two 3-byte sequences; rejoin them via UTF-16
    text = data.replace(b"\xc0\x80", b"\x00").decode("utf-8", "surrogatepass")
    return text.encode("utf-16-be", "surrogatepass").decode("utf-16-be")


class DataOutput:
    """Big-endian writer over a binary stream."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def write(self, data: bytes) -> None:
        self.stream.write(data)

    def write_byte(self, value: int) -> None:
        # Accepts both signed and unsigned byte values
        if not -128 <= value <= 255:
            raise RecordFormatError(f"Byte value out of range: {value}")
        self.stream.write(bytes((value & 0xFF,)))

    def write_boolean(self, value: bool) -> None:
        self.write_byte(1 if value else 0)

    def write_int(self, value: int) -> None:
        if not INT_MIN <= value <= INT_MAX:
            raise RecordFormatError(f"Value does not fit in 32 bits: {value}")
        self.stream.write(_INT.pack(value))

    def write_long(self, value: int) -> None:
        if not LONG_MIN <= value <= LONG_MAX:
            raise RecordFormatError(f"Value does not fit in 64 bits: {value}")
        self.stream.write(_LONG.pack(value))

    def write_float(self, value: float) -> None:
        self.stream.write(_FLOAT.pack(to_float32(value)))

    def write_double(self, value: float) -> None:
        self.stream.write(_DOUBLE.pack(value))

    def write_vlong(self, value: int) -> None:
        """Zero-compressed encoding: one byte for -112..127, else a length marker."""
        if not LONG_MIN <= value <= LONG_MAX:
            raise RecordFormatError(f"Value does not fit in 64 bits: {value}")
        if -112 <= value <= 127:
            self.write_byte(value)
            return

        marker = -112
        if value < 0:
            value = ~value
            marker = -120

        tmp = value
        while tmp != 0:
            tmp >>= 8
            marker -= 1
        self.write_byte(marker)

        size = -(marker + 120) if marker < -120 else -(marker + 112)
        self.stream.write(value.to_bytes(size, "big"))

    def write_vint(self, value: int) -> None:
        if not INT_MIN <= value <= INT_MAX:
            raise RecordFormatError(f"Value does not fit in 32 bits: {value}")
        self.write_vlong(value)

    def write_text(self, value: str) -> None:
        """Length-prefixed UTF-8 string."""
        try:
            data = value.encode("utf-8")
        except UnicodeEncodeError as e:
            raise RecordFormatError(f"String is not encodable as UTF-8: {e}") from e
        self.write_vint(len(data))
        self.stream.write(data)

    def write_utf(self, value: str) -> None:
        """Java ``writeUTF``: unsigned 16-bit length then modified UTF-8."""
        data = encode_modified_utf8(value)
        if len(data) > 0xFFFF:
            raise RecordFormatError(f"Encoded string too long: {len(data)} bytes")
        self.stream.write(_SHORT.pack(len(data)))
        self.stream.write(data)


class DataInput:
    """Big-endian reader over a binary stream.

    Tracks the number of bytes consumed so format errors can say where they
    happened, and supports a one-shot look-ahead for end-of-stream checks
    between records.
    """

    def __init__(self, source: Union[BinaryIO, bytes, bytearray]):
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(source)
        self.stream = source
        self.offset = 0
        self._pushback = b""

    def has_more(self) -> bool:
        """True if at least one more byte can be read."""
        if not self._pushback:
            self._pushback = self.stream.read(1)
        return bool(self._pushback)

    def read_fully(self, size: int) -> bytes:
        if size < 0:
            raise RecordFormatError(f"Negative length: {size}", offset=self.offset)

        data = self._pushback[:size]
        self._pushback = self._pushback[size:]
        while len(data) < size:
            chunk = self.stream.read(size - len(data))
            if not chunk:
                raise RecordFormatError(
                    f"Unexpected end of stream: wanted {size} bytes, got {len(data)}",
                    offset=self.offset
                )
            data += chunk

        self.offset += size
        return data

    def read_byte(self) -> int:
        return _BYTE.unpack(self.read_fully(1))[0]

    def read_boolean(self) -> bool:
        return self.read_byte() != 0

    def read_int(self) -> int:
        return _INT.unpack(self.read_fully(4))[0]

    def read_long(self) -> int:
        return _LONG.unpack(self.read_fully(8))[0]

    def read_float(self) -> float:
        return _FLOAT.unpack(self.read_fully(4))[0]

    def read_double(self) -> float:
        return _DOUBLE.unpack(self.read_fully(8))[0]

    def read_vlong(self) -> int:
        first = self.read_byte()
        if first >= -112:
            return first

        negative = first < -120
        size = (-119 - first) if negative else (-111 - first)
        value = int.from_bytes(self.read_fully(size - 1), "big")
        return ~value if negative else value

    def read_vint(self) -> int:
        value = self.read_vlong()
        if not INT_MIN <= value <= INT_MAX:
            raise RecordFormatError(f"Value does not fit in 32 bits: {value}", offset=self.offset)
        return value

    def read_text(self) -> str:
        size = self.read_vint()
        data = self.read_fully(size)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise RecordFormatError(f"Invalid UTF-8 in string: {e}", offset=self.offset) from e

    def read_utf(self) -> str:
        size = _SHORT.unpack(self.read_fully(2))[0]
        data = self.read_fully(size)
        try:
            return decode_modified_utf8(data)
        except UnicodeError as e:
            raise RecordFormatError(f"Invalid modified UTF-8: {e}", offset=self.offset) from e


def _needs_double(mapping: Mapping) -> bool:
    return any(
        isinstance(item, float) and not isinstance(item, FloatValue)
        for pair in mapping.items()
        for item in pair
    )


def _write_typed(out: DataOutput, value: Any, class_ids: Dict[str, int]) -> None:
    # Wire-typed wrappers first; they are also plain ints and floats
    if isinstance(value, IntValue):
        out.write_byte(INT_ID)
        out.write_int(value)
    elif isinstance(value, VIntValue):
        out.write_byte(VINT_ID)
        out.write_vint(value)
    elif isinstance(value, VLongValue):
        out.write_byte(VLONG_ID)
        out.write_vlong(value)
    elif isinstance(value, FloatValue):
        out.write_byte(FLOAT_ID)
        out.write_float(value)
    elif isinstance(value, bool):
        out.write_byte(BOOLEAN_ID)
        out.write_boolean(value)
    elif isinstance(value, int):
        out.write_byte(LONG_ID)
        out.write_long(value)
    elif isinstance(value, float):
        out.write_byte(class_ids[DOUBLE_CLASS])
        out.write_double(value)
    elif isinstance(value, str):
        out.write_byte(TEXT_ID)
        out.write_text(value)
    elif isinstance(value, (bytes, bytearray)):
        out.write_byte(BYTES_ID)
        out.write_int(len(value))
        out.write(bytes(value))
    elif value is None:
        out.write_byte(NULL_ID)
    elif isinstance(value, Mapping):
        out.write_byte(MAP_ID)
        write_map(out, value)
    else:
        raise RecordFormatError(
            f"Unsupported metadata type: {type(value).__name__}"
        )


def write_map(out: DataOutput, mapping: Optional[Mapping]) -> None:
    """Write ``mapping`` as a self-describing typed map; None writes an empty one."""
    mapping = mapping or {}

    class_ids: Dict[str, int] = {}
    if _needs_double(mapping):
        class_ids[DOUBLE_CLASS] = 1

    out.write_byte(len(class_ids))
    for name, class_id in class_ids.items():
        out.write_byte(class_id)
        out.write_utf(name)

    out.write_int(len(mapping))
    for key, value in mapping.items():
        _write_typed(out, key, class_ids)
        _write_typed(out, value, class_ids)


def _read_typed(inp: DataInput, classes: Dict[int, str]) -> Any:
    type_id = inp.read_byte()

    if type_id == BOOLEAN_ID:
        return inp.read_boolean()
    if type_id == BYTES_ID:
        return inp.read_fully(inp.read_int())
    if type_id == FLOAT_ID:
        return FloatValue(inp.read_float())
    if type_id == INT_ID:
        return IntValue(inp.read_int())
    if type_id == LONG_ID:
        return inp.read_long()
    if type_id == MAP_ID:
        return read_map(inp)
    if type_id == NULL_ID:
        return None
    if type_id == TEXT_ID:
        return inp.read_text()
    if type_id == VINT_ID:
        return VIntValue(inp.read_vint())
    if type_id == VLONG_ID:
        return VLongValue(inp.read_vlong())
    if classes.get(type_id) == DOUBLE_CLASS:
        return inp.read_double()

    name = classes.get(type_id)
    raise RecordFormatError(
        f"Unsupported metadata type id {type_id}" + (f" ({name})" if name else ""),
        offset=inp.offset
    )


def read_map(inp: DataInput, into: Optional[Dict[Any, Any]] = None) -> Dict[Any, Any]:
    """Read a typed map, adding its entries to ``into`` when given.

    Entries are collected first, so ``into`` is left untouched if the map
    is malformed. ``into`` is not cleared; callers that want replace
    semantics clear it themselves.
    """
    classes: Dict[int, str] = {}
    for _ in range(inp.read_byte()):
        class_id = inp.read_byte()
        name = inp.read_utf()
        if class_id in PREDEFINED_IDS:
            raise RecordFormatError(
                f"Class table redefines reserved id {class_id}", offset=inp.offset
            )
        classes[class_id] = name

    size = inp.read_int()
    if size < 0:
        raise RecordFormatError(f"Negative map size: {size}", offset=inp.offset)

    entries: Dict[Any, Any] = {}
    for _ in range(size):
        key = _read_typed(inp, classes)
        value = _read_typed(inp, classes)
        try:
            entries[key] = value
        except TypeError as e:
            raise RecordFormatError(f"Unhashable metadata key: {e}", offset=inp.offset) from e

    if into is None:
        return entries
    into.update(entries)
    return into


def encode_map(mapping: Optional[Mapping]) -> bytes:
    buffer = io.BytesIO()
    write_map(DataOutput(buffer), mapping)
    return buffer.getvalue()


def decode_map(data: bytes) -> Dict[Any, Any]:
    return read_map(DataInput(data))


EMPTY_MAP_BYTES = encode_map({})


def render_value(value: Any) -> str:
    """Text form of a metadata key or value as the JVM tools print it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "(null)"
    if isinstance(value, FloatValue):
        return java_float_text(value)
    if isinstance(value, float):
        return java_double_text(value)
    if isinstance(value, int):
        return str(int(value))
    if isinstance(value, (bytes, bytearray)):
        return " ".join(f"{b:02x}" for b in value)
    if isinstance(value, Mapping):
        items: List[str] = [
            f"{render_value(k)}={render_value(v)}" for k, v in value.items()
        ]
        return "{" + ", ".join(items) + "}"
    return str(value)
