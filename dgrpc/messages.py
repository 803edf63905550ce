"""
Message framing for dgrpc.

Defines Scapy header structures for the request and reply frames and the
helpers that turn whole datagrams into Request/Reply values and back.

Request:  requestId:u32 opCode:u8 callerId:u32 payloadLen:u16 semantics:u8 payload
Reply:    requestId:u32 status:u8 payloadLen:u16 reserved:u8 payload
Callback: Reply layout with requestId fixed at 0
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from scapy.packet import Packet
from scapy.fields import (
    ByteEnumField,
    ByteField,
    IntField,
    ShortField,
)

from .codec import decode_string, encode_string, decode_uint
from .config import (
    CALLBACK_REQUEST_ID,
    MAX_DATAGRAM_SIZE,
    REPLY_HEADER_SIZE,
    REQUEST_HEADER_SIZE,
    SEMANTICS_AT_LEAST_ONCE,
    SEMANTICS_AT_MOST_ONCE,
    STATUS_INVALID_REQUEST,
    STATUS_SUCCESS,
    UINT32_MAX,
    parse_semantics,
)
from .exceptions import (
    CodecError,
    FrameDecodeError,
    PayloadTooLargeError,
    ValidationError,
)


class Semantics(IntEnum):
    """Invocation guarantee requested by the caller."""
    AT_LEAST_ONCE = SEMANTICS_AT_LEAST_ONCE
    AT_MOST_ONCE = SEMANTICS_AT_MOST_ONCE

    @classmethod
    def parse(cls, value) -> "Semantics":
        """Accept a Semantics, a wire value, or a name like 'atmost'."""
        if isinstance(value, cls):
            return value
        return cls(parse_semantics(value))

    @property
    def label(self) -> str:
        return "at-most-once" if self is Semantics.AT_MOST_ONCE else "at-least-once"


SEMANTICS_NAMES = {
    SEMANTICS_AT_LEAST_ONCE: "at-least-once",
    SEMANTICS_AT_MOST_ONCE: "at-most-once",
}


class RequestHeader(Packet):
    """
    Fixed 12-byte request header.

    Fields:
        request_id: Caller-chosen id, reused verbatim across retries
        op_code: Operation selector, opaque to the codec
        caller_id: Chosen once per client process
        payload_len: Bytes of payload following the header
        semantics: 0 = at-least-once, 1 = at-most-once
    """

    name = "RequestHeader"
    fields_desc = [
        IntField("request_id", 0),
        ByteField("op_code", 0),
        IntField("caller_id", 0),
        ShortField("payload_len", 0),
        ByteEnumField("semantics", SEMANTICS_AT_LEAST_ONCE, SEMANTICS_NAMES),
    ]


class ReplyHeader(Packet):
    """
    Fixed 8-byte reply/callback header.

    The reserved byte is written as 0 and ignored on read.
    """

    name = "ReplyHeader"
    fields_desc = [
        IntField("request_id", 0),
        ByteField("status", STATUS_SUCCESS),
        ShortField("payload_len", 0),
        ByteField("reserved", 0),
    ]


@dataclass(frozen=True)
class Request:
    """A decoded request frame."""
    request_id: int
    op_code: int
    caller_id: int
    semantics: Semantics = Semantics.AT_LEAST_ONCE
    payload: bytes = b""

    @property
    def key(self) -> tuple:
        """Duplicate-suppression key."""
        return (self.caller_id, self.request_id)


@dataclass(frozen=True)
class Reply:
    """A decoded reply or callback frame."""
    request_id: int
    status: int = STATUS_SUCCESS
    payload: bytes = b""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def is_callback(self) -> bool:
        return self.request_id == CALLBACK_REQUEST_ID

    @property
    def detail(self) -> str:
        """Human-readable error detail carried by a failed reply."""
        if not self.payload:
            return ""
        try:
            value, _ = decode_string(self.payload)
        except CodecError:
            return self.payload.hex()
        return value


# ---------------- Builders ----------------


def make_success_reply(request_id: int, payload: bytes = b"") -> Reply:
    """Create a success reply for a request."""
    return Reply(request_id=request_id, status=STATUS_SUCCESS, payload=payload or b"")


def make_error_reply(request_id: int, status: int, detail: str = "") -> Reply:
    """Create an error reply whose payload is an encoded detail string."""
    payload = encode_string(detail) if detail else b""
    return Reply(request_id=request_id, status=status, payload=payload)


def make_invalid_request_reply(request_id: int, detail: str = "") -> Reply:
    """Create the core's invalid-request reply."""
    return make_error_reply(request_id, STATUS_INVALID_REQUEST, detail)


def make_callback(payload: bytes) -> Reply:
    """Create a callback frame (request id 0, status success)."""
    return Reply(request_id=CALLBACK_REQUEST_ID, status=STATUS_SUCCESS, payload=payload)


# ---------------- Encode / Decode ----------------


def _check_range(name: str, value: int, maximum: int) -> None:
    if not isinstance(value, int) or not 0 <= value <= maximum:
        raise ValidationError(f"{name} {value!r} outside 0..{maximum}")


def _check_size(header_size: int, payload: bytes) -> None:
    total = header_size + len(payload)
    if total > MAX_DATAGRAM_SIZE:
        raise PayloadTooLargeError(len(payload), MAX_DATAGRAM_SIZE - header_size)


def _extract_payload(data: bytes, header_size: int, declared: int) -> bytes:
    if declared == 0 or len(data) <= header_size:
        return b""
    end = header_size + declared
    if end > len(data):
        raise FrameDecodeError(
            f"Frame declares {declared} payload bytes but only "
            f"{len(data) - header_size} follow the header",
            len(data),
        )
    return bytes(data[header_size:end])


def encode_request(request: Request) -> bytes:
    """
    Encode a request frame.

    Raises:
        ValidationError: If a header field is out of range
        PayloadTooLargeError: If the frame would exceed MAX_DATAGRAM_SIZE
    """
    _check_range("request_id", request.request_id, UINT32_MAX)
    _check_range("op_code", request.op_code, 0xFF)
    _check_range("caller_id", request.caller_id, UINT32_MAX)
    _check_size(REQUEST_HEADER_SIZE, request.payload)

    header = RequestHeader(
        request_id=request.request_id,
        op_code=request.op_code,
        caller_id=request.caller_id,
        payload_len=len(request.payload),
        semantics=int(request.semantics),
    )
    return bytes(header) + bytes(request.payload)


def decode_request(data: bytes) -> Request:
    """
    Decode a request frame.

    The op code is not checked here; unknown codes are rejected by the
    dispatch layer.

    Raises:
        FrameDecodeError: If the datagram is shorter than the header,
            the payload is truncated, or the semantics byte is unknown
    """
    if len(data) < REQUEST_HEADER_SIZE:
        raise FrameDecodeError(
            f"Request frame too short: {len(data)} < {REQUEST_HEADER_SIZE} bytes",
            len(data),
        )

    header = RequestHeader(bytes(data[:REQUEST_HEADER_SIZE]))
    try:
        semantics = Semantics(header.semantics)
    except ValueError:
        raise FrameDecodeError(f"Unknown semantics value {header.semantics}", len(data))

    return Request(
        request_id=header.request_id,
        op_code=header.op_code,
        caller_id=header.caller_id,
        semantics=semantics,
        payload=_extract_payload(data, REQUEST_HEADER_SIZE, header.payload_len),
    )


def encode_reply(reply: Reply) -> bytes:
    """
    Encode a reply or callback frame.

    Raises:
        ValidationError: If a header field is out of range
        PayloadTooLargeError: If the frame would exceed MAX_DATAGRAM_SIZE
    """
    _check_range("request_id", reply.request_id, UINT32_MAX)
    _check_range("status", reply.status, 0xFF)
    _check_size(REPLY_HEADER_SIZE, reply.payload)

    header = ReplyHeader(
        request_id=reply.request_id,
        status=reply.status,
        payload_len=len(reply.payload),
        reserved=0,
    )
    return bytes(header) + bytes(reply.payload)


def decode_reply(data: bytes) -> Reply:
    """
    Decode a reply or callback frame.

    Raises:
        FrameDecodeError: If the datagram is shorter than the header or
            the payload is truncated
    """
    if len(data) < REPLY_HEADER_SIZE:
        raise FrameDecodeError(
            f"Reply frame too short: {len(data)} < {REPLY_HEADER_SIZE} bytes",
            len(data),
        )

    header = ReplyHeader(bytes(data[:REPLY_HEADER_SIZE]))
    return Reply(
        request_id=header.request_id,
        status=header.status,
        payload=_extract_payload(data, REPLY_HEADER_SIZE, header.payload_len),
    )


def peek_request_id(data: bytes) -> int:
    """
    Read the request id from the first four bytes of a frame.

    Used to answer frames too damaged to decode; returns 0 when fewer than
    four bytes arrived.
    """
    if len(data) < 4:
        return 0
    value, _ = decode_uint(data, 0)
    return value
