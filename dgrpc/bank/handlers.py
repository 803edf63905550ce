"""
Wires the account service into the dgrpc operation registry.

Each handler decodes its request payload, calls the service, and turns the
ServiceResult into an OperationResult. Payloads that fail to decode raise
CodecError, which the registry answers as an invalid request.
"""

from __future__ import annotations

import logging
import random
from typing import Optional

from ..codec import encode_float, encode_int, encode_string
from ..config import RuntimeConfig
from ..dispatch import OperationRegistry, OperationResult
from ..messages import Semantics
from ..monitor import UpdateEvent
from ..server import ServerListener
from ..stats import StatsCollector
from ..transport import DatagramTransport
from .payloads import CredentialsRequest, FundsRequest, OpenAccountRequest, TransferRequest
from .service import BankService, ServiceResult
from .types import Account, BankStatus, CurrencyType, OperationCode

logger = logging.getLogger(__name__)


def account_event(event_type: str, account: Account) -> UpdateEvent:
    """Describe an account change as a generic update event."""
    return UpdateEvent(
        event_type=event_type,
        subject_id=account.number,
        subject_label=account.holder_name,
        category=int(account.currency),
        value=account.balance,
    )


def _currency(code: int) -> Optional[CurrencyType]:
    try:
        return CurrencyType(code)
    except ValueError:
        return None


def _invalid_currency(code: int) -> OperationResult:
    return OperationResult.failure(
        BankStatus.INVALID_CURRENCY, f"Invalid currency code: {code}"
    )


def _to_operation_result(result: ServiceResult, encode) -> OperationResult:
    if not result.ok:
        return OperationResult.failure(result.status, result.message)
    return OperationResult.success(encode(result.value))


class BankHandlers:
    """Payload-level handlers bound to one BankService."""

    def __init__(self, service: BankService):
        self.service = service

    def open_account(self, caller_id: int, payload: bytes) -> OperationResult:
        request = OpenAccountRequest.decode(payload)
        currency = _currency(request.currency)
        if currency is None:
            return _invalid_currency(request.currency)
        result = self.service.open_account(
            request.holder_name, request.password, currency, request.initial_balance
        )
        return _to_operation_result(result, encode_int)

    def close_account(self, caller_id: int, payload: bytes) -> OperationResult:
        request = CredentialsRequest.decode(payload)
        result = self.service.close_account(
            request.holder_name, request.account_number, request.password
        )
        return _to_operation_result(result, encode_string)

    def deposit(self, caller_id: int, payload: bytes) -> OperationResult:
        request = FundsRequest.decode(payload)
        currency = _currency(request.currency)
        if currency is None:
            return _invalid_currency(request.currency)
        result = self.service.deposit(
            request.holder_name, request.account_number, request.password,
            currency, request.amount,
        )
        return _to_operation_result(result, encode_float)

    def withdraw(self, caller_id: int, payload: bytes) -> OperationResult:
        request = FundsRequest.decode(payload)
        currency = _currency(request.currency)
        if currency is None:
            return _invalid_currency(request.currency)
        result = self.service.withdraw(
            request.holder_name, request.account_number, request.password,
            currency, request.amount,
        )
        return _to_operation_result(result, encode_float)

    def statement(self, caller_id: int, payload: bytes) -> OperationResult:
        request = CredentialsRequest.decode(payload)
        result = self.service.statement(
            request.holder_name, request.account_number, request.password
        )
        return _to_operation_result(result, encode_string)

    def transfer(self, caller_id: int, payload: bytes) -> OperationResult:
        request = TransferRequest.decode(payload)
        result = self.service.transfer(
            request.holder_name, request.from_account, request.password,
            request.to_account, request.amount,
        )
        return _to_operation_result(result, encode_float)


def register_bank_operations(
    registry: OperationRegistry, service: BankService
) -> OperationRegistry:
    """Register every account operation on registry."""
    handlers = BankHandlers(service)
    table = [
        (OperationCode.OPEN_ACCOUNT, handlers.open_account),
        (OperationCode.CLOSE_ACCOUNT, handlers.close_account),
        (OperationCode.DEPOSIT, handlers.deposit),
        (OperationCode.WITHDRAW, handlers.withdraw),
        (OperationCode.BANK_STATEMENT, handlers.statement),
        (OperationCode.TRANSFER, handlers.transfer),
    ]
    for op, handler in table:
        registry.register(int(op), op.name, handler, idempotent=op.idempotent)
    registry.register_subscription(int(OperationCode.MONITOR), OperationCode.MONITOR.name)
    return registry


def create_bank_listener(
    transport: DatagramTransport,
    service: Optional[BankService] = None,
    config: Optional[RuntimeConfig] = None,
    semantics_override: Optional[Semantics] = None,
    rng: Optional[random.Random] = None,
    stats: Optional[StatsCollector] = None,
) -> ServerListener:
    """
    Build a ServerListener serving the account operations.

    Every service update is published to the listener's monitor registry.

    Args:
        transport: Endpoint to serve on
        service: Account store (a fresh one when omitted)
        config: Runtime configuration (cache policy, loss rate, workers)
        semantics_override: Force one semantics for every request
        rng: Random source for loss simulation
        stats: Shared statistics collector
    """
    if service is None:
        service = BankService()
    registry = register_bank_operations(OperationRegistry(), service)

    if config is not None:
        listener = ServerListener.from_config(
            transport, registry, config,
            semantics_override=semantics_override, rng=rng, stats=stats,
        )
    else:
        listener = ServerListener(
            transport, registry, semantics_override=semantics_override, stats=stats
        )

    def publish_update(event_type: str, account: Account) -> None:
        sent = listener.publish(account_event(event_type, account))
        logger.debug(f"[MONITOR] {event_type} #{account.number} pushed to {sent} subscriber(s)")

    service.add_listener(publish_update)
    return listener
