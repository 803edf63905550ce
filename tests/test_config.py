"""
Tests for dgrpc.config and dgrpc.logging_setup modules.
"""

import pytest
import logging

from dgrpc.config import (
    SEMANTICS_AT_LEAST_ONCE,
    SEMANTICS_AT_MOST_ONCE,
    RuntimeConfig,
    apply_config_file,
    load_config_file,
    parse_semantics,
    save_default_config,
    validate_loss_rate,
)
from dgrpc.exceptions import InvalidConfigError
from dgrpc.logging_setup import format_block, reset_logging, setup_logging


class TestParseSemantics:
    """Tests for semantics names."""

    @pytest.mark.parametrize("name", ["atleast", "at-least-once", "AT_LEAST_ONCE", "0", 0])
    def test_at_least_once(self, name):
        assert parse_semantics(name) == SEMANTICS_AT_LEAST_ONCE

    @pytest.mark.parametrize("name", ["atmost", " at-most-once ", "1", 1])
    def test_at_most_once(self, name):
        assert parse_semantics(name) == SEMANTICS_AT_MOST_ONCE

    @pytest.mark.parametrize("bad", ["exactly-once", 2, True, None])
    def test_unknown(self, bad):
        with pytest.raises(InvalidConfigError):
            parse_semantics(bad)


class TestRuntimeConfig:
    """Tests for RuntimeConfig validation."""

    def test_defaults(self):
        """Test the defaults are valid."""
        config = RuntimeConfig()
        assert config.port == 8888
        assert config.timeout == 3.0
        assert config.max_retries == 3
        assert config.semantics_value == SEMANTICS_AT_LEAST_ONCE

    @pytest.mark.parametrize("field, value", [
        ("port", 70000),
        ("timeout", 0),
        ("max_retries", 0),
        ("loss_rate", 1.5),
        ("workers", 0),
        ("cache_policy", "fifo"),
        ("cache_ttl", -1),
        ("cache_max_entries", 0),
        ("semantics", "sometimes"),
        ("server_semantics", "sometimes"),
    ])
    def test_invalid_field(self, field, value):
        """Test each field is checked."""
        with pytest.raises(InvalidConfigError):
            RuntimeConfig(**{field: value})

    def test_loss_rate(self):
        """Test loss rates are coerced to float."""
        assert validate_loss_rate("0.25") == 0.25
        with pytest.raises(InvalidConfigError):
            validate_loss_rate("lots")


class TestConfigFile:
    """Tests for YAML configuration files."""

    def test_missing_file(self, tmp_path):
        """Test a missing file yields an empty dict."""
        assert load_config_file(str(tmp_path / "absent.yaml")) == {}

    def test_default_file_round_trip(self, tmp_path):
        """Test the written default file loads back to the defaults."""
        path = str(tmp_path / "conf" / "config.yaml")
        assert save_default_config(path)

        config = RuntimeConfig()
        apply_config_file(config, load_config_file(path))

        assert config == RuntimeConfig()

    def test_apply_sections(self, tmp_path):
        """Test each section lands on its fields."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "network:\n"
            "  host: 10.0.0.5\n"
            "  port: 9000\n"
            "invocation:\n"
            "  semantics: at-most-once\n"
            "  timeout: 1.5\n"
            "  max_retries: 5\n"
            "  loss_rate: 0.2\n"
            "server:\n"
            "  workers: 4\n"
            "  cache:\n"
            "    policy: lru\n"
            "    max_entries: 50\n"
        )
        config = RuntimeConfig()
        apply_config_file(config, load_config_file(str(path)))

        assert config.host == "10.0.0.5"
        assert config.port == 9000
        assert config.semantics_value == SEMANTICS_AT_MOST_ONCE
        assert config.timeout == 1.5
        assert config.max_retries == 5
        assert config.loss_rate == 0.2
        assert config.workers == 4
        assert config.cache_policy == "lru"
        assert config.cache_max_entries == 50

    def test_server_semantics(self, tmp_path):
        """Test the server section forces semantics apart from the client default."""
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  semantics: atmost\n")
        config = RuntimeConfig()
        apply_config_file(config, load_config_file(str(path)))

        assert config.server_semantics == "atmost"
        assert config.semantics_value == SEMANTICS_AT_LEAST_ONCE
        assert RuntimeConfig().server_semantics is None

    def test_invalid_values_rejected(self, tmp_path):
        """Test applying a bad value raises."""
        path = tmp_path / "config.yaml"
        path.write_text("invocation:\n  loss_rate: 3\n")

        with pytest.raises(InvalidConfigError):
            apply_config_file(RuntimeConfig(), load_config_file(str(path)))

    def test_malformed_yaml(self, tmp_path):
        """Test unparsable YAML raises InvalidConfigError."""
        path = tmp_path / "config.yaml"
        path.write_text("network: [unclosed\n")

        with pytest.raises(InvalidConfigError):
            load_config_file(str(path))

    def test_non_mapping(self, tmp_path):
        """Test a YAML scalar is treated as empty."""
        path = tmp_path / "config.yaml"
        path.write_text("just a string\n")
        assert load_config_file(str(path)) == {}


class TestLogging:
    """Tests for logging setup."""

    @pytest.fixture(autouse=True)
    def clean_logging(self):
        reset_logging()
        yield
        reset_logging()

    def test_file_logging(self, tmp_path):
        """Test records reach the rotating log file."""
        path = tmp_path / "logs" / "dgrpc.log"
        logger = setup_logging(log_to_file=True, log_to_console=False, log_file=str(path))

        logging.getLogger("dgrpc.server").info("[LISTEN] hello")
        for handler in logger.handlers:
            handler.flush()

        assert "[LISTEN] hello" in path.read_text()

    def test_setup_is_idempotent(self):
        """Test a second setup returns the same logger untouched."""
        first = setup_logging(log_to_console=True)
        second = setup_logging(log_to_console=True)

        assert first is second
        assert len(first.handlers) == 1

    def test_level(self):
        """Test the level string is applied."""
        logger = setup_logging(log_level="debug", log_to_console=False)
        assert logger.level == logging.DEBUG

    def test_format_block(self):
        assert format_block("SERVER", ["a", "b"]) == "[SERVER]\n  a\n  b"
