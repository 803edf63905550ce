"""
In-memory account service.

Holds every open account and applies the six account operations. Each
state change is reported to the registered update listeners after the
service lock has been released.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple, Union

from ..sequence import SequenceGenerator
from .types import (
    ACCOUNT_NUMBER_LIMIT,
    BALANCE_LIMIT,
    FIRST_ACCOUNT_NUMBER,
    PASSWORD_MAX_LENGTH,
    STATEMENT_HISTORY_LIMIT,
    Account,
    BankStatus,
    CurrencyType,
    TransactionType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Outcome of one service call: a status plus a value or a message."""
    status: BankStatus
    value: Union[int, float, str, None] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == BankStatus.SUCCESS

    @classmethod
    def error(cls, status: BankStatus, message: str = "") -> "ServiceResult":
        return cls(status, None, message or status.message)


UpdateListener = Callable[[str, Account], None]


class BankService:
    """
    Thread-safe account store.

    Args:
        numbers: Account number generator (starts at 1000 when omitted)
        clock: Wall clock for transaction timestamps
    """

    def __init__(
        self,
        numbers: Optional[SequenceGenerator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._lock = RLock()
        self._accounts: Dict[int, Account] = {}
        self._numbers = numbers or SequenceGenerator(
            start=FIRST_ACCOUNT_NUMBER, limit=ACCOUNT_NUMBER_LIMIT
        )
        self._clock = clock
        self._listeners: List[UpdateListener] = []

    def add_listener(self, listener: UpdateListener) -> None:
        """Register a callable invoked as listener(event_type, account)."""
        self._listeners.append(listener)

    # ---------------- Operations ----------------

    def open_account(
        self,
        holder_name: str,
        password: str,
        currency: CurrencyType,
        initial_balance: float,
    ) -> ServiceResult:
        if not holder_name or not holder_name.strip():
            return ServiceResult.error(BankStatus.INVALID_REQUEST, "Holder name cannot be empty")
        if not password or len(password) > PASSWORD_MAX_LENGTH:
            return ServiceResult.error(
                BankStatus.INVALID_REQUEST,
                f"Password must be 1-{PASSWORD_MAX_LENGTH} characters",
            )
        if not math.isfinite(initial_balance) or not 0 <= initial_balance <= BALANCE_LIMIT:
            return ServiceResult.error(
                BankStatus.INVALID_AMOUNT, "Initial balance cannot be negative"
            )

        with self._lock:
            number = self._numbers.next()
            account = Account(number, holder_name, password, CurrencyType(currency), initial_balance)
            if initial_balance > 0:
                account.record(
                    TransactionType.DEPOSIT, initial_balance, "Initial deposit", self._clock()
                )
            self._accounts[number] = account

        logger.info(f"[BANK] Opened {account}")
        self._notify("ACCOUNT_OPENED", account)
        return ServiceResult(BankStatus.SUCCESS, number)

    def close_account(self, holder_name: str, number: int, password: str) -> ServiceResult:
        with self._lock:
            account, failure = self._authorise(holder_name, number, password)
            if failure:
                return failure
            del self._accounts[number]
            final_balance = account.balance

        logger.info(f"[BANK] Closed account #{number} (final balance {final_balance:.2f})")
        self._notify("ACCOUNT_CLOSED", account)
        return ServiceResult(
            BankStatus.SUCCESS,
            f"Account #{number} closed. Final balance: {final_balance:.2f}",
        )

    def deposit(
        self,
        holder_name: str,
        number: int,
        password: str,
        currency: CurrencyType,
        amount: float,
    ) -> ServiceResult:
        with self._lock:
            account, failure = self._authorise(holder_name, number, password)
            if failure:
                return failure
            failure = self._check_funds_request(account, currency, amount)
            if failure:
                return failure
            if account.balance + amount > BALANCE_LIMIT:
                return ServiceResult.error(BankStatus.INVALID_AMOUNT, "Balance limit exceeded")
            account.balance += amount
            account.record(TransactionType.DEPOSIT, amount, "Deposit", self._clock())
            balance = account.balance

        logger.info(f"[BANK] Deposited {amount:.2f} to #{number}, balance {balance:.2f}")
        self._notify("DEPOSIT", account)
        return ServiceResult(BankStatus.SUCCESS, balance)

    def withdraw(
        self,
        holder_name: str,
        number: int,
        password: str,
        currency: CurrencyType,
        amount: float,
    ) -> ServiceResult:
        with self._lock:
            account, failure = self._authorise(holder_name, number, password)
            if failure:
                return failure
            failure = self._check_funds_request(account, currency, amount)
            if failure:
                return failure
            if amount > account.balance:
                return ServiceResult.error(
                    BankStatus.INSUFFICIENT_BALANCE,
                    f"Insufficient balance. Available: {account.balance:.2f}",
                )
            account.balance -= amount
            account.record(TransactionType.WITHDRAW, amount, "Withdraw", self._clock())
            balance = account.balance

        logger.info(f"[BANK] Withdrew {amount:.2f} from #{number}, balance {balance:.2f}")
        self._notify("WITHDRAW", account)
        return ServiceResult(BankStatus.SUCCESS, balance)

    def statement(self, holder_name: str, number: int, password: str) -> ServiceResult:
        """Render the account's balance and history. Read-only."""
        with self._lock:
            account, failure = self._authorise(holder_name, number, password)
            if failure:
                return failure
            lines = [
                f"=== Bank Statement for Account #{number} ===",
                f"Holder: {account.holder_name}",
                f"Currency: {account.currency.display_name}",
                f"Current Balance: {account.balance:.2f}",
                "",
                "--- Transaction History ---",
            ]
            for tx in account.transactions[-STATEMENT_HISTORY_LIMIT:]:
                stamp = datetime.fromtimestamp(tx.timestamp).strftime("%Y-%m-%d %H:%M:%S")
                lines.append(
                    f"[{stamp}] {tx.description}: {tx.amount:.2f} -> Balance: {tx.balance_after:.2f}"
                )

        return ServiceResult(BankStatus.SUCCESS, "\n".join(lines) + "\n")

    def transfer(
        self,
        holder_name: str,
        from_number: int,
        password: str,
        to_number: int,
        amount: float,
    ) -> ServiceResult:
        if from_number == to_number:
            return ServiceResult.error(BankStatus.SAME_ACCOUNT_TRANSFER)

        with self._lock:
            source = self._accounts.get(from_number)
            target = self._accounts.get(to_number)
            if source is None:
                return ServiceResult.error(BankStatus.ACCOUNT_NOT_FOUND, "Source account not found")
            if target is None:
                return ServiceResult.error(
                    BankStatus.ACCOUNT_NOT_FOUND, "Destination account not found"
                )
            if source.holder_name != holder_name:
                return ServiceResult.error(
                    BankStatus.ACCOUNT_NAME_MISMATCH,
                    "Source account does not belong to this user",
                )
            if not source.verify_password(password):
                return ServiceResult.error(BankStatus.WRONG_PASSWORD)
            if not math.isfinite(amount) or amount <= 0:
                return ServiceResult.error(BankStatus.INVALID_AMOUNT, "Amount must be positive")
            if amount > source.balance:
                return ServiceResult.error(
                    BankStatus.INSUFFICIENT_BALANCE,
                    f"Insufficient balance. Available: {source.balance:.2f}",
                )
            if target.balance + amount > BALANCE_LIMIT:
                return ServiceResult.error(BankStatus.INVALID_AMOUNT, "Balance limit exceeded")

            # No currency conversion between accounts
            now = self._clock()
            source.balance -= amount
            source.record(
                TransactionType.TRANSFER_OUT, amount, f"Transfer to account {to_number}", now
            )
            target.balance += amount
            target.record(
                TransactionType.TRANSFER_IN, amount, f"Transfer from account {from_number}", now
            )
            balance = source.balance

        logger.info(f"[BANK] Transferred {amount:.2f} from #{from_number} to #{to_number}")
        self._notify("TRANSFER_OUT", source)
        self._notify("TRANSFER_IN", target)
        return ServiceResult(BankStatus.SUCCESS, balance)

    # ---------------- Queries ----------------

    def get_account(self, number: int) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(number)

    def __len__(self) -> int:
        with self._lock:
            return len(self._accounts)

    # ---------------- Helpers ----------------

    def _authorise(
        self, holder_name: str, number: int, password: str
    ) -> Tuple[Optional[Account], Optional[ServiceResult]]:
        account = self._accounts.get(number)
        if account is None:
            return None, ServiceResult.error(BankStatus.ACCOUNT_NOT_FOUND)
        if account.holder_name != holder_name:
            return None, ServiceResult.error(BankStatus.ACCOUNT_NAME_MISMATCH)
        if not account.verify_password(password):
            return None, ServiceResult.error(BankStatus.WRONG_PASSWORD)
        return account, None

    @staticmethod
    def _check_funds_request(
        account: Account, currency: CurrencyType, amount: float
    ) -> Optional[ServiceResult]:
        if account.currency != currency:
            return ServiceResult.error(
                BankStatus.INVALID_CURRENCY,
                f"Currency mismatch. Account uses {account.currency.name}",
            )
        if not math.isfinite(amount) or amount <= 0:
            return ServiceResult.error(BankStatus.INVALID_AMOUNT, "Amount must be positive")
        return None

    def _notify(self, event_type: str, account: Account) -> None:
        for listener in list(self._listeners):
            try:
                listener(event_type, account)
            except Exception:
                logger.exception(f"[BANK] Update listener failed for {event_type}")
