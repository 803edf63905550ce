"""
Tests for the command-line entry point.
"""

import pytest

from dgrpc.__main__ import build_parser, load_runtime_config, main


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "network:\n"
        "  port: 9100\n"
        "invocation:\n"
        "  timeout: 2.0\n"
        "  max_retries: 4\n"
    )
    return str(path)


class TestParser:
    """Tests for argument parsing."""

    def test_client_operation(self):
        args = build_parser().parse_args(
            ["client", "--host", "10.0.0.2", "deposit", "alice", "1000", "pw", "25.5", "--currency", "eur"]
        )

        assert args.command == "client"
        assert args.operation == "deposit"
        assert args.account == 1000
        assert args.amount == 25.5
        assert args.currency == "EUR"

    def test_server_options(self):
        args = build_parser().parse_args(
            ["server", "--port", "9999", "--semantics", "atmost", "--workers", "4", "--cache-policy", "lru"]
        )

        assert args.port == 9999
        assert args.workers == 4
        assert args.cache_policy == "lru"

    def test_bad_currency(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["client", "open", "a", "b", "--currency", "XYZ"])


class TestRuntimeConfig:
    """Tests for config precedence."""

    def test_file_then_cli(self, config_file):
        """Test CLI arguments override file values, which override defaults."""
        args = build_parser().parse_args(
            ["--config", config_file, "client", "--timeout", "0.5", "statement", "a", "1000", "pw"]
        )
        config = load_runtime_config(args)

        assert config.port == 9100
        assert config.max_retries == 4
        assert config.timeout == 0.5
        assert config.host == "127.0.0.1"

    def test_server_semantics_from_file(self, tmp_path):
        """Test the server takes forced semantics from the file unless the flag overrides it."""
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  semantics: at-most-once\n")

        from_file = load_runtime_config(build_parser().parse_args(["--config", str(path), "server"]))
        from_flag = load_runtime_config(
            build_parser().parse_args(["--config", str(path), "server", "--semantics", "atleast"])
        )

        assert from_file.server_semantics == "at-most-once"
        assert from_flag.server_semantics == "atleast"
        assert from_file.semantics == from_flag.semantics == "at-least-once"

    def test_client_semantics_flag(self, config_file):
        """Test the client flag sets the client default and leaves the server alone."""
        args = build_parser().parse_args(
            ["--config", config_file, "client", "--semantics", "atmost", "statement", "a", "1000", "pw"]
        )
        config = load_runtime_config(args)

        assert config.semantics == "atmost"
        assert config.server_semantics is None

    def test_invalid_cli_value(self, config_file, capsys):
        """Test a bad loss rate is reported with exit status 2."""
        code = main(["--config", config_file, "client", "--loss-rate", "2", "statement", "a", "1", "p"])

        assert code == 2
        assert "Configuration error" in capsys.readouterr().out

    def test_init_config(self, tmp_path, capsys):
        path = tmp_path / "new" / "config.yaml"

        assert main(["--config", str(path), "--init-config"]) == 0
        assert path.exists()
        assert "saved" in capsys.readouterr().out
