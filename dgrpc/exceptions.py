"""
Custom exceptions for dgrpc.

Provides specific exception types for better error handling and debugging.
"""


class DgrpcError(Exception):
    """Base exception for all dgrpc errors."""
    pass


# ---------------- Protocol Errors ----------------

class ProtocolError(DgrpcError):
    """Base class for wire-format errors."""
    pass


class CodecError(ProtocolError):
    """A primitive value could not be encoded or decoded."""
    pass


class FrameDecodeError(ProtocolError):
    """A datagram does not hold a well-formed frame."""

    def __init__(self, message: str, length: int = 0):
        super().__init__(message)
        self.length = length


# ---------------- Network Errors ----------------

class NetworkError(DgrpcError):
    """Base class for network-related errors."""
    pass


class PayloadTooLargeError(NetworkError):
    """Payload exceeds maximum datagram size."""

    def __init__(self, size: int, max_size: int):
        super().__init__(f"Payload size {size} exceeds maximum {max_size}")
        self.size = size
        self.max_size = max_size


class TransportError(NetworkError):
    """Transport endpoint error."""
    pass


class TransportTimeout(TransportError):
    """No datagram arrived within the receive window."""
    pass


class TransportClosedError(TransportError):
    """Operation on a closed transport endpoint."""
    pass


# ---------------- Invocation Errors ----------------

class InvocationError(DgrpcError):
    """Base class for client-side invocation failures."""
    pass


class RemoteError(InvocationError):
    """The server answered with a nonzero status."""

    def __init__(self, status: int, detail: str = ""):
        message = f"Remote status {status}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.status = status
        self.detail = detail


class StreamBusyError(InvocationError):
    """The endpoint is still reading a subscription stream."""
    pass


class RetryExhaustedError(InvocationError):
    """No usable reply arrived within the retry budget."""

    def __init__(self, request_id: int, attempts: int):
        super().__init__(
            f"No reply for request {request_id} after {attempts} attempts"
        )
        self.request_id = request_id
        self.attempts = attempts


# ---------------- Input Validation Errors ----------------

class ValidationError(DgrpcError):
    """Input validation failed."""
    pass


class InvalidConfigError(ValidationError):
    """Configuration value out of range or unparseable."""
    pass


class InvalidAddressError(ValidationError):
    """Invalid transport address."""

    def __init__(self, value):
        super().__init__(f"Invalid address: {value!r}")
        self.value = value
