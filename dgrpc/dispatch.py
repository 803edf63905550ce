"""
Operation dispatch contract for dgrpc.

The server core knows nothing about what an operation does. A service
registers one handler per op code; the registry turns each request into an
OperationResult, answering unknown codes and unparseable payloads with the
core's invalid-request status.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .codec import encode_string
from .config import STATUS_INVALID_REQUEST, STATUS_SUCCESS
from .exceptions import CodecError, ValidationError
from .messages import Request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationResult:
    """What a handler produced: a status and an opaque payload."""
    status: int
    payload: bytes = b""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    @classmethod
    def success(cls, payload: bytes = b"") -> "OperationResult":
        return cls(STATUS_SUCCESS, payload)

    @classmethod
    def failure(cls, status: int, detail: str = "") -> "OperationResult":
        """A failed result whose payload is the encoded detail string."""
        if status == STATUS_SUCCESS:
            raise ValidationError("Failure status must be nonzero")
        return cls(status, encode_string(detail) if detail else b"")


Handler = Callable[[int, bytes], OperationResult]


@dataclass(frozen=True)
class OperationDescriptor:
    """
    One registered operation.

    ``idempotent`` is informative only; duplicate suppression treats every
    operation the same way.
    """
    op_code: int
    name: str
    idempotent: bool = False
    handler: Optional[Handler] = None

    @property
    def is_subscription(self) -> bool:
        return self.handler is None


class OperationRegistry:
    """
    Maps op codes to handlers.

    Handlers are called as handler(caller_id, payload) and must return an
    OperationResult.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._operations: Dict[int, OperationDescriptor] = {}

    def register(
        self,
        op_code: int,
        name: str,
        handler: Handler,
        idempotent: bool = False,
    ) -> OperationDescriptor:
        """
        Register a handler.

        Raises:
            ValidationError: If the op code is out of range or taken
        """
        return self._add(OperationDescriptor(op_code, name, idempotent, handler))

    def register_subscription(self, op_code: int, name: str = "SUBSCRIBE") -> OperationDescriptor:
        """
        Reserve the op code that the listener routes to the monitor registry.

        It has no handler; dispatching it here is an invalid request.
        """
        return self._add(OperationDescriptor(op_code, name, True, None))

    def _add(self, descriptor: OperationDescriptor) -> OperationDescriptor:
        if not 0 <= descriptor.op_code <= 0xFF:
            raise ValidationError(f"Op code {descriptor.op_code} outside 0..255")
        with self._lock:
            if descriptor.op_code in self._operations:
                raise ValidationError(
                    f"Op code {descriptor.op_code} already registered "
                    f"as {self._operations[descriptor.op_code].name}"
                )
            self._operations[descriptor.op_code] = descriptor
        return descriptor

    def is_known(self, op_code: int) -> bool:
        with self._lock:
            return op_code in self._operations

    def describe(self, op_code: int) -> Optional[OperationDescriptor]:
        with self._lock:
            return self._operations.get(op_code)

    def operations(self) -> List[OperationDescriptor]:
        with self._lock:
            return sorted(self._operations.values(), key=lambda d: d.op_code)

    def dispatch(self, request: Request) -> OperationResult:
        """
        Run the handler for a request.

        Returns:
            The handler's result, or an invalid-request failure for unknown
            op codes, payloads the handler cannot parse, and handler errors
        """
        descriptor = self.describe(request.op_code)
        if descriptor is None:
            return OperationResult.failure(
                STATUS_INVALID_REQUEST, f"Unknown operation code {request.op_code}"
            )
        if descriptor.handler is None:
            return OperationResult.failure(
                STATUS_INVALID_REQUEST, f"{descriptor.name} is not a dispatchable operation"
            )

        try:
            result = descriptor.handler(request.caller_id, request.payload)
        except CodecError as e:
            logger.warning(f"[DISPATCH] Malformed {descriptor.name} payload: {e}")
            return OperationResult.failure(
                STATUS_INVALID_REQUEST, f"Malformed {descriptor.name} payload"
            )
        except Exception as e:
            logger.exception(f"[DISPATCH] Handler error for {descriptor.name}: {e}")
            return OperationResult.failure(
                STATUS_INVALID_REQUEST, f"{descriptor.name} failed: {e}"
            )

        if not isinstance(result, OperationResult):
            raise TypeError(
                f"Handler for {descriptor.name} returned {type(result).__name__}, "
                "expected OperationResult"
            )
        return result
