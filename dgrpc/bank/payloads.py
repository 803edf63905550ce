"""
Request payload layouts for the account operations.

Each request type encodes its fields in wire order with the dgrpc codec.
Reply payloads are a single value: an account number (int), a balance
(float) or a message (string).
"""

from __future__ import annotations

from dataclasses import dataclass

from ..codec import PayloadReader, PayloadWriter


@dataclass(frozen=True)
class OpenAccountRequest:
    """name, password, currency byte, initial balance float."""
    holder_name: str
    password: str
    currency: int
    initial_balance: float

    def encode(self) -> bytes:
        return (
            PayloadWriter()
            .string(self.holder_name)
            .string(self.password)
            .byte(self.currency)
            .float(self.initial_balance)
            .getvalue()
        )

    @classmethod
    def decode(cls, payload: bytes) -> "OpenAccountRequest":
        reader = PayloadReader(payload)
        return cls(reader.string(), reader.string(), reader.byte(), reader.float())


@dataclass(frozen=True)
class CredentialsRequest:
    """name, account int, password. Used by CLOSE_ACCOUNT and BANK_STATEMENT."""
    holder_name: str
    account_number: int
    password: str

    def encode(self) -> bytes:
        return (
            PayloadWriter()
            .string(self.holder_name)
            .int(self.account_number)
            .string(self.password)
            .getvalue()
        )

    @classmethod
    def decode(cls, payload: bytes) -> "CredentialsRequest":
        reader = PayloadReader(payload)
        return cls(reader.string(), reader.int(), reader.string())


@dataclass(frozen=True)
class FundsRequest:
    """name, account int, password, currency byte, amount float. DEPOSIT and WITHDRAW."""
    holder_name: str
    account_number: int
    password: str
    currency: int
    amount: float

    def encode(self) -> bytes:
        return (
            PayloadWriter()
            .string(self.holder_name)
            .int(self.account_number)
            .string(self.password)
            .byte(self.currency)
            .float(self.amount)
            .getvalue()
        )

    @classmethod
    def decode(cls, payload: bytes) -> "FundsRequest":
        reader = PayloadReader(payload)
        return cls(
            reader.string(), reader.int(), reader.string(), reader.byte(), reader.float()
        )


@dataclass(frozen=True)
class TransferRequest:
    """name, source int, password, destination int, amount float."""
    holder_name: str
    from_account: int
    password: str
    to_account: int
    amount: float

    def encode(self) -> bytes:
        return (
            PayloadWriter()
            .string(self.holder_name)
            .int(self.from_account)
            .string(self.password)
            .int(self.to_account)
            .float(self.amount)
            .getvalue()
        )

    @classmethod
    def decode(cls, payload: bytes) -> "TransferRequest":
        reader = PayloadReader(payload)
        return cls(
            reader.string(), reader.int(), reader.string(), reader.int(), reader.float()
        )
