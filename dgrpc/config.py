"""
Configuration constants for dgrpc.

All protocol constants, paths, and tunable parameters are centralized here.
"""

from __future__ import annotations

import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

import yaml

from .exceptions import InvalidConfigError


# ---------------- Protocol Constants ----------------

MAX_DATAGRAM_SIZE = 4096  # Upper bound on any single datagram
REQUEST_HEADER_SIZE = 12  # requestId(4) opCode(1) callerId(4) payloadLen(2) semantics(1)
REPLY_HEADER_SIZE = 8     # requestId(4) status(1) payloadLen(2) reserved(1)

MAX_REQUEST_PAYLOAD = MAX_DATAGRAM_SIZE - REQUEST_HEADER_SIZE
MAX_REPLY_PAYLOAD = MAX_DATAGRAM_SIZE - REPLY_HEADER_SIZE

# Invocation semantics (wire values)
SEMANTICS_AT_LEAST_ONCE = 0
SEMANTICS_AT_MOST_ONCE = 1

# Status codes produced by the core itself
STATUS_SUCCESS = 0
STATUS_INVALID_REQUEST = 9

CALLBACK_REQUEST_ID = 0  # Callbacks answer no request
SUBSCRIBE_OP_CODE = 4    # Op code routed to the monitor registry

UINT32_MAX = 0xFFFFFFFF


# ---------------- Invocation Defaults ----------------

DEFAULT_HOST = "127.0.0.1"
DEFAULT_BIND_HOST = "0.0.0.0"
DEFAULT_PORT = 8888
DEFAULT_TIMEOUT = 3.0       # Seconds to wait for one reply
DEFAULT_MAX_RETRIES = 3     # Attempts per logical request
MONITOR_POLL_INTERVAL = 1.0  # Receive poll while a subscription is open
LISTENER_POLL_INTERVAL = 0.5  # Server loop wakes this often to check for stop
INBOUND_QUEUE_SIZE = 1024   # Datagrams buffered between receiver and workers


# ---------------- Duplicate Cache ----------------

CACHE_POLICIES = ("none", "ttl", "lru")
DEFAULT_CACHE_TTL = 300.0
DEFAULT_CACHE_MAX_ENTRIES = 10000


# ---------------- File Paths ----------------

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".dgrpc")
LOG_DIR = os.path.join(CONFIG_DIR, "logs")
CONFIG_FILE = os.path.join(CONFIG_DIR, "config.yaml")


# ---------------- Logging Configuration ----------------

LOG_FILE = os.path.join(LOG_DIR, "dgrpc.log")
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB per log file
LOG_BACKUP_COUNT = 5  # Keep 5 rotated log files


_SEMANTICS_NAMES = {
    "atleast": SEMANTICS_AT_LEAST_ONCE,
    "at-least-once": SEMANTICS_AT_LEAST_ONCE,
    "at_least_once": SEMANTICS_AT_LEAST_ONCE,
    "0": SEMANTICS_AT_LEAST_ONCE,
    "atmost": SEMANTICS_AT_MOST_ONCE,
    "at-most-once": SEMANTICS_AT_MOST_ONCE,
    "at_most_once": SEMANTICS_AT_MOST_ONCE,
    "1": SEMANTICS_AT_MOST_ONCE,
}


def parse_semantics(value) -> int:
    """
    Parse a semantics name or wire value.

    Raises:
        InvalidConfigError: If the value names no known semantics
    """
    if isinstance(value, bool):
        raise InvalidConfigError(f"Unknown semantics: {value!r}")
    if isinstance(value, int):
        if value in (SEMANTICS_AT_LEAST_ONCE, SEMANTICS_AT_MOST_ONCE):
            return value
        raise InvalidConfigError(f"Unknown semantics: {value!r}")
    key = str(value).strip().lower()
    if key not in _SEMANTICS_NAMES:
        raise InvalidConfigError(f"Unknown semantics: {value!r}")
    return _SEMANTICS_NAMES[key]


def validate_loss_rate(rate: float) -> float:
    """Check that a loss probability lies in [0, 1]."""
    try:
        rate = float(rate)
    except (TypeError, ValueError):
        raise InvalidConfigError(f"Loss rate must be a number, got {rate!r}")
    if not 0.0 <= rate <= 1.0:
        raise InvalidConfigError(f"Loss rate {rate} outside [0, 1]")
    return rate


@dataclass
class RuntimeConfig:
    """Runtime configuration shared by the server and client entry points."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    semantics: str = "at-least-once"
    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    loss_rate: float = 0.0
    workers: int = 1
    server_semantics: Optional[str] = None
    cache_policy: str = "none"
    cache_ttl: float = DEFAULT_CACHE_TTL
    cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    log_to_file: bool = False
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()
        if self.log_to_file:
            Path(LOG_DIR).mkdir(parents=True, exist_ok=True)

    def validate(self) -> None:
        """
        Check every field.

        Raises:
            InvalidConfigError: On the first invalid field
        """
        if not 0 <= int(self.port) <= 65535:
            raise InvalidConfigError(f"Invalid port number: {self.port}")
        parse_semantics(self.semantics)
        if self.timeout <= 0:
            raise InvalidConfigError(f"Timeout must be positive, got {self.timeout}")
        if self.max_retries < 1:
            raise InvalidConfigError(f"Retry count must be at least 1, got {self.max_retries}")
        self.loss_rate = validate_loss_rate(self.loss_rate)
        if self.workers < 1:
            raise InvalidConfigError(f"Worker count must be at least 1, got {self.workers}")
        if self.server_semantics is not None:
            parse_semantics(self.server_semantics)
        if self.cache_policy not in CACHE_POLICIES:
            raise InvalidConfigError(
                f"Unknown cache policy {self.cache_policy!r} (expected one of {CACHE_POLICIES})"
            )
        if self.cache_ttl <= 0:
            raise InvalidConfigError(f"Cache TTL must be positive, got {self.cache_ttl}")
        if self.cache_max_entries < 1:
            raise InvalidConfigError(
                f"Cache size must be at least 1, got {self.cache_max_entries}"
            )

    @property
    def semantics_value(self) -> int:
        """Wire value of the configured semantics."""
        return parse_semantics(self.semantics)


def ensure_config_dir() -> None:
    """Create the configuration directory if it doesn't exist."""
    Path(CONFIG_DIR).mkdir(parents=True, exist_ok=True)


def load_config_file(path: Optional[str] = None) -> dict:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        Configuration dict (empty if file doesn't exist)

    Raises:
        InvalidConfigError: If the file is not valid YAML
    """
    config_path = path or CONFIG_FILE

    if not os.path.exists(config_path):
        return {}

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidConfigError(f"Cannot parse {config_path}: {e}")
    return data if isinstance(data, dict) else {}


DEFAULT_CONFIG_TEXT = """\
# dgrpc configuration

network:
  host: 127.0.0.1
  port: 8888

# Invocation settings
invocation:
  # Client default: at-least-once or at-most-once
  semantics: at-least-once
  # Seconds to wait for each reply
  timeout: 3.0
  # Attempts per request
  max_retries: 3
  # Simulated datagram loss probability (0.0 - 1.0)
  loss_rate: 0.0

# Server settings
server:
  workers: 1
  # Force one semantics for every request (default: honour each request)
  # semantics: at-most-once
  cache:
    # none, ttl or lru
    policy: none
    ttl: 300
    max_entries: 10000

# Logging settings
logging:
  to_file: false
  # Log level: DEBUG, INFO, WARNING, ERROR
  level: INFO
"""


def save_default_config(path: Optional[str] = None) -> bool:
    """
    Save default configuration file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        True if saved successfully
    """
    config_path = path or CONFIG_FILE

    try:
        Path(config_path).parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(DEFAULT_CONFIG_TEXT)
        return True
    except OSError:
        return False


def apply_config_file(runtime_config: RuntimeConfig, file_config: dict) -> None:
    """
    Apply file configuration to runtime config.

    File values replace the dataclass defaults; the caller applies CLI
    arguments afterwards so that they take precedence.
    """
    network = file_config.get("network") or {}
    if "host" in network:
        runtime_config.host = str(network["host"])
    if "port" in network:
        runtime_config.port = int(network["port"])

    invocation = file_config.get("invocation") or {}
    if "semantics" in invocation:
        runtime_config.semantics = str(invocation["semantics"])
    if "timeout" in invocation:
        runtime_config.timeout = float(invocation["timeout"])
    if "max_retries" in invocation:
        runtime_config.max_retries = int(invocation["max_retries"])
    if "loss_rate" in invocation:
        runtime_config.loss_rate = float(invocation["loss_rate"])

    server = file_config.get("server") or {}
    if "workers" in server:
        runtime_config.workers = int(server["workers"])
    if server.get("semantics") is not None:
        runtime_config.server_semantics = str(server["semantics"])
    cache = server.get("cache") or {}
    if "policy" in cache:
        runtime_config.cache_policy = str(cache["policy"])
    if "ttl" in cache:
        runtime_config.cache_ttl = float(cache["ttl"])
    if "max_entries" in cache:
        runtime_config.cache_max_entries = int(cache["max_entries"])

    logging_config = file_config.get("logging") or {}
    if "to_file" in logging_config:
        runtime_config.log_to_file = bool(logging_config["to_file"])
    if "level" in logging_config:
        runtime_config.log_level = str(logging_config["level"])

    runtime_config.validate()
