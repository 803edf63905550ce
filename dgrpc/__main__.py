"""
Entry point for dgrpc.

Run with:
    python -m dgrpc server --port 8888 --semantics atmost
    python -m dgrpc client --host 127.0.0.1 open alice secret --balance 100
"""

from __future__ import annotations

import argparse
import atexit
import signal
import sys
import threading

from .config import (
    CACHE_POLICIES,
    CONFIG_FILE,
    DEFAULT_BIND_HOST,
    RuntimeConfig,
    apply_config_file,
    load_config_file,
    save_default_config,
)
from .bank import (
    BankClient,
    BankOperationError,
    CurrencyType,
    create_bank_listener,
    describe_event,
)
from .client import ClientDispatcher
from .exceptions import DgrpcError, InvalidConfigError, RetryExhaustedError
from .logging_setup import format_block, log, setup_logging
from .messages import Semantics
from .transport import UdpTransport


def _setup_signal_handlers(stop_event: threading.Event) -> None:
    """Configure signal handlers for graceful shutdown."""

    def _shutdown_handler(signum: int, frame) -> None:
        sig_name = signal.Signals(signum).name if hasattr(signal, 'Signals') else str(signum)
        log(f"[SHUTDOWN] Received {sig_name}, stopping...")
        stop_event.set()

    signal.signal(signal.SIGTERM, _shutdown_handler)
    signal.signal(signal.SIGINT, _shutdown_handler)


def _cleanup() -> None:
    log("[CLEANUP] dgrpc shutting down...")


CURRENCIES = [c.name for c in CurrencyType]


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="dgrpc",
        description="dgrpc - request/reply over UDP with at-least-once or at-most-once semantics",
    )
    ap.add_argument("--config", help=f"Path to config file (default: {CONFIG_FILE})")
    ap.add_argument(
        "--init-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    ap.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    ap.add_argument("--log-file", action="store_true", help="Also log to the rotating log file")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--port", type=int, help="Server UDP port (default: 8888)")
    common.add_argument(
        "--loss-rate",
        type=float,
        help="Simulated datagram loss probability, 0.0-1.0",
    )

    sub = ap.add_subparsers(dest="command")

    server = sub.add_parser("server", parents=[common], help="Run the account server")
    server.add_argument(
        "--bind",
        default=DEFAULT_BIND_HOST,
        help=f"Address to bind (default: {DEFAULT_BIND_HOST})",
    )
    server.add_argument(
        "--semantics",
        help="Force at-least-once or at-most-once for every request "
             "(default: honour each request)",
    )
    server.add_argument("--workers", type=int, help="Handler threads (default: 1)")
    server.add_argument("--cache-policy", choices=CACHE_POLICIES, help="Duplicate cache eviction")
    server.add_argument("--cache-ttl", type=float, help="Seconds a cached reply is kept (ttl)")
    server.add_argument("--cache-size", type=int, help="Cached replies kept (lru)")

    client = sub.add_parser("client", parents=[common], help="Invoke an account operation")
    client.add_argument("--host", help="Server host (default: 127.0.0.1)")
    client.add_argument("--semantics", help="at-least-once or at-most-once")
    client.add_argument("--timeout", type=float, help="Seconds to wait per attempt")
    client.add_argument("--retries", type=int, help="Attempts per request")

    ops = client.add_subparsers(dest="operation")

    op = ops.add_parser("open", help="Open an account")
    op.add_argument("name")
    op.add_argument("password")
    op.add_argument("--currency", default="USD", type=str.upper, choices=CURRENCIES)
    op.add_argument("--balance", type=float, default=0.0)

    op = ops.add_parser("close", help="Close an account")
    op.add_argument("name")
    op.add_argument("account", type=int)
    op.add_argument("password")

    for name in ("deposit", "withdraw"):
        op = ops.add_parser(name, help=f"{name.capitalize()} funds")
        op.add_argument("name")
        op.add_argument("account", type=int)
        op.add_argument("password")
        op.add_argument("amount", type=float)
        op.add_argument("--currency", default="USD", type=str.upper, choices=CURRENCIES)

    op = ops.add_parser("statement", help="Print an account statement")
    op.add_argument("name")
    op.add_argument("account", type=int)
    op.add_argument("password")

    op = ops.add_parser("transfer", help="Transfer funds between accounts")
    op.add_argument("name")
    op.add_argument("from_account", type=int)
    op.add_argument("password")
    op.add_argument("to_account", type=int)
    op.add_argument("amount", type=float)

    op = ops.add_parser("monitor", help="Print account updates for a while")
    op.add_argument("duration", type=int, help="Seconds to listen")

    return ap


def load_runtime_config(args: argparse.Namespace) -> RuntimeConfig:
    """Defaults, then the config file, then command-line arguments."""
    config = RuntimeConfig()
    apply_config_file(config, load_config_file(args.config))

    overrides = {
        "host": getattr(args, "host", None),
        "port": getattr(args, "port", None),
        "timeout": getattr(args, "timeout", None),
        "max_retries": getattr(args, "retries", None),
        "loss_rate": getattr(args, "loss_rate", None),
        "workers": getattr(args, "workers", None),
        "cache_policy": getattr(args, "cache_policy", None),
        "cache_ttl": getattr(args, "cache_ttl", None),
        "cache_max_entries": getattr(args, "cache_size", None),
        "log_level": args.log_level,
    }
    # The server flag forces semantics, the client flag picks its default
    semantics_key = "server_semantics" if args.command == "server" else "semantics"
    overrides[semantics_key] = getattr(args, "semantics", None)
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    if args.log_file:
        config.log_to_file = True
    config.validate()
    return config


def run_server(args: argparse.Namespace, config: RuntimeConfig) -> int:
    semantics_override = (
        Semantics.parse(config.server_semantics) if config.server_semantics is not None else None
    )
    transport = UdpTransport(args.bind, config.port)
    listener = create_bank_listener(
        transport, config=config, semantics_override=semantics_override
    )

    log(format_block("SERVER", [
        f"listening : {args.bind}:{transport.address[1]}",
        f"semantics : {semantics_override.label if semantics_override is not None else 'per request'}",
        f"loss rate : {config.loss_rate:g}",
        f"workers   : {config.workers}",
        f"cache     : {listener.cache.policy.describe()}",
    ]))

    stop_event = threading.Event()
    _setup_signal_handlers(stop_event)
    atexit.register(_cleanup)

    try:
        if config.workers > 1:
            listener.start()
            stop_event.wait()
            listener.stop()
        else:
            listener.serve_forever(stop_event)
    finally:
        transport.close()
        log(format_block("STATS", [
            f"{k}: {v}" for k, v in listener.stats.get_stats().items() if v
        ]))
    return 0


def run_client(args: argparse.Namespace, config: RuntimeConfig) -> int:
    if not args.operation:
        print("No operation given (open, close, deposit, withdraw, statement, transfer, monitor)")
        return 2

    transport = UdpTransport("0.0.0.0", 0)
    dispatcher = ClientDispatcher.from_config(transport, config)
    bank = BankClient(dispatcher)
    log(f"[CLIENT] caller={dispatcher.caller_id} "
        f"{Semantics(config.semantics_value).label} -> {config.host}:{config.port}")

    try:
        if args.operation == "open":
            number = bank.open_account(args.name, args.password, args.currency, args.balance)
            print(f"Opened account #{number}")
        elif args.operation == "close":
            print(bank.close_account(args.name, args.account, args.password))
        elif args.operation == "deposit":
            balance = bank.deposit(args.name, args.account, args.password, args.currency, args.amount)
            print(f"New balance: {balance:.2f}")
        elif args.operation == "withdraw":
            balance = bank.withdraw(args.name, args.account, args.password, args.currency, args.amount)
            print(f"New balance: {balance:.2f}")
        elif args.operation == "statement":
            print(bank.statement(args.name, args.account, args.password), end="")
        elif args.operation == "transfer":
            balance = bank.transfer(
                args.name, args.from_account, args.password, args.to_account, args.amount
            )
            print(f"Transfer complete. Source balance: {balance:.2f}")
        elif args.operation == "monitor":
            count = bank.monitor(args.duration, lambda event: print(describe_event(event)))
            print(f"Monitoring ended ({count} update(s))")
    except BankOperationError as e:
        print(f"Error: {e.detail} (status {e.status})")
        return 1
    except RetryExhaustedError as e:
        print(f"Error: {e}")
        return 1
    finally:
        bank.close()
    return 0


def main(argv=None) -> int:
    """Main entry point for dgrpc."""
    ap = build_parser()
    args = ap.parse_args(argv)

    if args.init_config:
        config_path = args.config or CONFIG_FILE
        if save_default_config(config_path):
            print(f"Default configuration saved to: {config_path}")
            return 0
        print(f"Failed to save configuration to: {config_path}")
        return 1

    if not args.command:
        ap.error("a command is required (server or client)")

    try:
        config = load_runtime_config(args)
    except InvalidConfigError as e:
        print(f"Configuration error: {e}")
        return 2

    setup_logging(
        log_to_file=config.log_to_file,
        log_level=config.log_level,
    )

    try:
        if args.command == "server":
            return run_server(args, config)
        return run_client(args, config)
    except DgrpcError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
