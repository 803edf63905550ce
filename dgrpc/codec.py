"""
Wire codec for dgrpc.

Converts primitive values to and from big-endian byte sequences. Every
decoder takes ``(buf, offset)`` and returns ``(value, consumed)`` so that
callers can walk a packed payload of mixed fields with a cursor.

Encoded sizes:
    int / uint / float: 4 bytes
    short:              2 bytes
    byte / bool:        1 byte
    string:             2-byte unsigned length + UTF-8 bytes
"""

from __future__ import annotations

import struct
from typing import Optional, Tuple

from .exceptions import CodecError


INT_SIZE = 4
SHORT_SIZE = 2
FLOAT_SIZE = 4
BYTE_SIZE = 1
STRING_LEN_SIZE = 2
MAX_STRING_BYTES = 0xFFFF

_INT = struct.Struct(">i")
_UINT = struct.Struct(">I")
_SHORT = struct.Struct(">h")
_USHORT = struct.Struct(">H")
_FLOAT = struct.Struct(">f")
_BYTE = struct.Struct(">B")


def _check_bounds(buf: bytes, offset: int, size: int, what: str) -> None:
    if offset < 0 or offset + size > len(buf):
        raise CodecError(
            f"Cannot read {what} at offset {offset}: need {size} bytes, "
            f"buffer has {max(len(buf) - offset, 0)}"
        )


def _pack(fmt: struct.Struct, value, what: str) -> bytes:
    try:
        return fmt.pack(value)
    except (struct.error, OverflowError) as e:
        raise CodecError(f"Cannot encode {what} {value!r}: {e}")


# ---------------- Integers ----------------


def encode_int(value: int) -> bytes:
    """Encode a signed 32-bit integer."""
    return _pack(_INT, value, "int")


def decode_int(buf: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a signed 32-bit integer."""
    _check_bounds(buf, offset, INT_SIZE, "int")
    return _INT.unpack_from(buf, offset)[0], INT_SIZE


def encode_uint(value: int) -> bytes:
    """Encode an unsigned 32-bit integer."""
    return _pack(_UINT, value, "uint")


def decode_uint(buf: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode an unsigned 32-bit integer."""
    _check_bounds(buf, offset, INT_SIZE, "uint")
    return _UINT.unpack_from(buf, offset)[0], INT_SIZE


def encode_short(value: int) -> bytes:
    """Encode a signed 16-bit integer."""
    return _pack(_SHORT, value, "short")


def decode_short(buf: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a signed 16-bit integer."""
    _check_bounds(buf, offset, SHORT_SIZE, "short")
    return _SHORT.unpack_from(buf, offset)[0], SHORT_SIZE


# ---------------- Float ----------------


def encode_float(value: float) -> bytes:
    """
    Encode a float as the big-endian bit pattern of its IEEE-754
    single-precision form.

    Values outside the single-precision range raise CodecError rather
    than overflowing to infinity.
    """
    return _pack(_FLOAT, value, "float")


def decode_float(buf: bytes, offset: int = 0) -> Tuple[float, int]:
    """Decode an IEEE-754 single-precision float."""
    _check_bounds(buf, offset, FLOAT_SIZE, "float")
    return _FLOAT.unpack_from(buf, offset)[0], FLOAT_SIZE


# ---------------- Byte / Bool ----------------


def encode_byte(value: int) -> bytes:
    """Encode an unsigned byte (0-255)."""
    return _pack(_BYTE, value, "byte")


def decode_byte(buf: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode an unsigned byte."""
    _check_bounds(buf, offset, BYTE_SIZE, "byte")
    return buf[offset], BYTE_SIZE


def encode_bool(value: bool) -> bytes:
    """Encode a boolean as one byte (1 or 0)."""
    return b"\x01" if value else b"\x00"


def decode_bool(buf: bytes, offset: int = 0) -> Tuple[bool, int]:
    """Decode a boolean; any nonzero byte is true."""
    _check_bounds(buf, offset, BYTE_SIZE, "bool")
    return buf[offset] != 0, BYTE_SIZE


# ---------------- String ----------------


def string_size(value: Optional[str]) -> int:
    """Encoded size of a string (length prefix included)."""
    if not value:
        return STRING_LEN_SIZE
    return STRING_LEN_SIZE + len(value.encode("utf-8"))


def encode_string(value: Optional[str]) -> bytes:
    """
    Encode a string as a 16-bit unsigned length followed by UTF-8 bytes.

    None and the empty string both encode as a zero length with no body.

    Raises:
        CodecError: If the UTF-8 form is longer than 65535 bytes
    """
    if not value:
        return _USHORT.pack(0)
    data = value.encode("utf-8")
    if len(data) > MAX_STRING_BYTES:
        raise CodecError(
            f"String of {len(data)} bytes exceeds maximum {MAX_STRING_BYTES}"
        )
    return _USHORT.pack(len(data)) + data


def decode_string(buf: bytes, offset: int = 0) -> Tuple[str, int]:
    """
    Decode a length-prefixed UTF-8 string.

    Returns:
        Tuple of (value, 2 + length)
    """
    _check_bounds(buf, offset, STRING_LEN_SIZE, "string length")
    length = _USHORT.unpack_from(buf, offset)[0]
    if length == 0:
        return "", STRING_LEN_SIZE
    start = offset + STRING_LEN_SIZE
    _check_bounds(buf, start, length, "string body")
    try:
        value = bytes(buf[start:start + length]).decode("utf-8")
    except UnicodeDecodeError as e:
        raise CodecError(f"Invalid UTF-8 in string at offset {offset}: {e}")
    return value, STRING_LEN_SIZE + length


# ---------------- Cursor Helpers ----------------


class PayloadWriter:
    """
    Append-only builder for packed payloads.

    Each method returns the writer so fields can be chained:

        payload = PayloadWriter().string(name).int(acct).float(amount).getvalue()
    """

    def __init__(self):
        self._parts: list[bytes] = []
        self._size = 0

    def _append(self, data: bytes) -> "PayloadWriter":
        self._parts.append(data)
        self._size += len(data)
        return self

    def int(self, value: int) -> "PayloadWriter":
        return self._append(encode_int(value))

    def uint(self, value: int) -> "PayloadWriter":
        return self._append(encode_uint(value))

    def short(self, value: int) -> "PayloadWriter":
        return self._append(encode_short(value))

    def float(self, value: float) -> "PayloadWriter":
        return self._append(encode_float(value))

    def byte(self, value: int) -> "PayloadWriter":
        return self._append(encode_byte(value))

    def bool(self, value: bool) -> "PayloadWriter":
        return self._append(encode_bool(value))

    def string(self, value: Optional[str]) -> "PayloadWriter":
        return self._append(encode_string(value))

    def raw(self, data: bytes) -> "PayloadWriter":
        return self._append(bytes(data))

    def __len__(self) -> int:
        return self._size

    def getvalue(self) -> bytes:
        return b"".join(self._parts)


class PayloadReader:
    """
    Cursor over a packed payload.

    Raises CodecError from any read that would run past the end.
    """

    def __init__(self, data: bytes, offset: int = 0):
        self._data = bytes(data)
        self.offset = offset

    def _read(self, decoder):
        value, consumed = decoder(self._data, self.offset)
        self.offset += consumed
        return value

    def int(self) -> int:
        return self._read(decode_int)

    def uint(self) -> int:
        return self._read(decode_uint)

    def short(self) -> int:
        return self._read(decode_short)

    def float(self) -> float:
        return self._read(decode_float)

    def byte(self) -> int:
        return self._read(decode_byte)

    def bool(self) -> bool:
        return self._read(decode_bool)

    def string(self) -> str:
        return self._read(decode_string)

    @property
    def remaining(self) -> int:
        """Bytes left after the cursor."""
        return len(self._data) - self.offset
