"""
Account service served over dgrpc.

The core treats this package as an opaque collaborator: it only sees op
codes, payload bytes and status codes.
"""

from .client import BankClient, BankOperationError, describe_event
from .handlers import account_event, create_bank_listener, register_bank_operations
from .service import BankService, ServiceResult
from .types import (
    Account,
    BankStatus,
    CurrencyType,
    OperationCode,
    status_message,
)

__all__ = [
    "Account",
    "BankClient",
    "BankOperationError",
    "BankService",
    "BankStatus",
    "CurrencyType",
    "OperationCode",
    "ServiceResult",
    "account_event",
    "create_bank_listener",
    "describe_event",
    "register_bank_operations",
    "status_message",
]
