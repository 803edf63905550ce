"""
Account service types.

Op codes, currencies, status codes and the in-memory account record.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List

from ..config import STATUS_INVALID_REQUEST, STATUS_SUCCESS, SUBSCRIBE_OP_CODE


PASSWORD_MAX_LENGTH = 16
FIRST_ACCOUNT_NUMBER = 1000
ACCOUNT_NUMBER_LIMIT = 0x7FFFFFFF  # Account numbers travel as signed 32-bit
BALANCE_LIMIT = 3.4028234663852886e38  # Largest value a wire float can carry
STATEMENT_HISTORY_LIMIT = 40  # Newest entries shown, so a statement fits one datagram


class OperationCode(IntEnum):
    OPEN_ACCOUNT = 0
    CLOSE_ACCOUNT = 1
    DEPOSIT = 2
    WITHDRAW = 3
    MONITOR = SUBSCRIBE_OP_CODE
    BANK_STATEMENT = 5
    TRANSFER = 6

    @property
    def idempotent(self) -> bool:
        return self in (
            OperationCode.CLOSE_ACCOUNT,
            OperationCode.MONITOR,
            OperationCode.BANK_STATEMENT,
        )


class CurrencyType(IntEnum):
    USD = 0
    EUR = 1
    GBP = 2
    SGD = 3
    JPY = 4

    @property
    def display_name(self) -> str:
        return CURRENCY_NAMES[self]

    @classmethod
    def parse(cls, value) -> "CurrencyType":
        """Accept a CurrencyType, its code, or its name ('usd', 'EUR')."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown currency: {value!r}")


CURRENCY_NAMES = {
    CurrencyType.USD: "US Dollar",
    CurrencyType.EUR: "Euro",
    CurrencyType.GBP: "British Pound",
    CurrencyType.SGD: "Singapore Dollar",
    CurrencyType.JPY: "Japanese Yen",
}


class BankStatus(IntEnum):
    SUCCESS = STATUS_SUCCESS
    ACCOUNT_NOT_FOUND = 1
    WRONG_PASSWORD = 2
    INSUFFICIENT_BALANCE = 3
    ACCOUNT_NAME_MISMATCH = 4
    INVALID_AMOUNT = 5
    INVALID_CURRENCY = 6
    DUPLICATE_ACCOUNT = 7
    INTERNAL_ERROR = 8
    INVALID_REQUEST = STATUS_INVALID_REQUEST
    SAME_ACCOUNT_TRANSFER = 10

    @property
    def message(self) -> str:
        return STATUS_MESSAGES[self]


STATUS_MESSAGES = {
    BankStatus.SUCCESS: "Success",
    BankStatus.ACCOUNT_NOT_FOUND: "Account not found",
    BankStatus.WRONG_PASSWORD: "Incorrect password",
    BankStatus.INSUFFICIENT_BALANCE: "Insufficient balance",
    BankStatus.ACCOUNT_NAME_MISMATCH: "Account does not belong to this user",
    BankStatus.INVALID_AMOUNT: "Invalid amount specified",
    BankStatus.INVALID_CURRENCY: "Invalid currency type",
    BankStatus.DUPLICATE_ACCOUNT: "Account already exists",
    BankStatus.INTERNAL_ERROR: "Internal server error",
    BankStatus.INVALID_REQUEST: "Invalid request format",
    BankStatus.SAME_ACCOUNT_TRANSFER: "Cannot transfer to the same account",
}


def status_message(code: int) -> str:
    """Human-readable text for any status code, known or not."""
    try:
        return BankStatus(code).message
    except ValueError:
        return f"Unknown error (code: {code})"


class TransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"


@dataclass(frozen=True)
class Transaction:
    """One entry of an account's history."""
    kind: TransactionType
    amount: float
    balance_after: float
    description: str
    timestamp: float


@dataclass
class Account:
    """An open account held in memory by the service."""
    number: int
    holder_name: str
    password: str
    currency: CurrencyType
    balance: float = 0.0
    transactions: List[Transaction] = field(default_factory=list)

    def verify_password(self, candidate: str) -> bool:
        return hmac.compare_digest(
            self.password.encode("utf-8"), (candidate or "").encode("utf-8")
        )

    def record(self, kind: TransactionType, amount: float, description: str, timestamp: float) -> None:
        self.transactions.append(
            Transaction(kind, amount, self.balance, description, timestamp)
        )

    def __str__(self) -> str:
        return (
            f"Account[#{self.number}, {self.holder_name}, "
            f"{self.balance:.2f} {self.currency.name}]"
        )
