"""
Typed account client over a ClientDispatcher.
"""

from __future__ import annotations

from typing import Callable, Optional

from ..client import ClientDispatcher, SubscriptionStream
from ..codec import decode_float, decode_int, decode_string
from ..exceptions import RemoteError
from ..monitor import UpdateEvent
from .payloads import CredentialsRequest, FundsRequest, OpenAccountRequest, TransferRequest
from .types import CurrencyType, OperationCode, status_message


class BankOperationError(RemoteError):
    """The account service rejected an operation."""

    def __init__(self, status: int, detail: str = ""):
        super().__init__(status, detail or status_message(status))


class BankClient:
    """
    One method per account operation.

    Methods return the decoded reply value and raise BankOperationError
    for any nonzero status. Retry exhaustion propagates as
    RetryExhaustedError.
    """

    def __init__(self, dispatcher: ClientDispatcher):
        self.dispatcher = dispatcher

    def _call(self, op: OperationCode, payload: bytes, semantics=None) -> bytes:
        reply = self.dispatcher.invoke(int(op), payload, semantics=semantics)
        if not reply.ok:
            raise BankOperationError(reply.status, reply.detail)
        return reply.payload

    def open_account(
        self,
        holder_name: str,
        password: str,
        currency=CurrencyType.USD,
        initial_balance: float = 0.0,
        semantics=None,
    ) -> int:
        """Open an account. Returns the new account number."""
        payload = OpenAccountRequest(
            holder_name, password, int(CurrencyType.parse(currency)), initial_balance
        ).encode()
        value, _ = decode_int(self._call(OperationCode.OPEN_ACCOUNT, payload, semantics))
        return value

    def close_account(self, holder_name: str, account_number: int, password: str,
                      semantics=None) -> str:
        payload = CredentialsRequest(holder_name, account_number, password).encode()
        value, _ = decode_string(self._call(OperationCode.CLOSE_ACCOUNT, payload, semantics))
        return value

    def deposit(self, holder_name: str, account_number: int, password: str,
                currency, amount: float, semantics=None) -> float:
        """Deposit into an account. Returns the new balance."""
        payload = FundsRequest(
            holder_name, account_number, password, int(CurrencyType.parse(currency)), amount
        ).encode()
        value, _ = decode_float(self._call(OperationCode.DEPOSIT, payload, semantics))
        return value

    def withdraw(self, holder_name: str, account_number: int, password: str,
                 currency, amount: float, semantics=None) -> float:
        """Withdraw from an account. Returns the new balance."""
        payload = FundsRequest(
            holder_name, account_number, password, int(CurrencyType.parse(currency)), amount
        ).encode()
        value, _ = decode_float(self._call(OperationCode.WITHDRAW, payload, semantics))
        return value

    def statement(self, holder_name: str, account_number: int, password: str,
                  semantics=None) -> str:
        payload = CredentialsRequest(holder_name, account_number, password).encode()
        value, _ = decode_string(self._call(OperationCode.BANK_STATEMENT, payload, semantics))
        return value

    def transfer(self, holder_name: str, from_account: int, password: str,
                 to_account: int, amount: float, semantics=None) -> float:
        """Move funds between accounts. Returns the source balance."""
        payload = TransferRequest(
            holder_name, from_account, password, to_account, amount
        ).encode()
        value, _ = decode_float(self._call(OperationCode.TRANSFER, payload, semantics))
        return value

    def subscribe(self, duration: int) -> SubscriptionStream:
        return self.dispatcher.subscribe(duration)

    def monitor(self, duration: int, handler: Callable[[UpdateEvent], None]) -> int:
        return self.dispatcher.monitor(duration, handler)

    def close(self) -> None:
        self.dispatcher.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def describe_event(event: UpdateEvent) -> str:
    """One-line rendering of an account update event."""
    try:
        currency: Optional[str] = CurrencyType(event.category).name
    except ValueError:
        currency = str(event.category)
    return (
        f"{event.event_type}: #{event.subject_id} {event.subject_label} "
        f"balance {event.value:.2f} {currency}"
    )
