"""Tests for calmirror.config: TOML loading, env resolution and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from calmirror.config import (
    AppConfig,
    ConfigError,
    GoogleConfig,
    ServerConfig,
    config_from_env,
    is_production_url,
    load_config,
    mask_value,
    parse_config,
    resolve_env_vars,
    validate_config,
)

pytestmark = pytest.mark.unit

_STRONG_SECRET = "s" * 40

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(tmp_path: Path, content: str) -> Path:
    """Write *content* to calmirror.toml inside *tmp_path* and return the directory."""
    (tmp_path / "calmirror.toml").write_text(content)
    return tmp_path


def _valid_config(**server) -> AppConfig:
    return AppConfig(
        server=ServerConfig(**server),
        google=GoogleConfig(client_id="cid", client_secret="csecret"),
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_full_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GOOGLE_SECRET", "from-env")
        config_dir = _write_toml(
            tmp_path,
            """
[server]
base_url = "https://sync.example.com"
port = 9000
cron_secret = "abc"

[google]
client_id = "cid"
client_secret = "${GOOGLE_SECRET}"

[database]
url = "postgres://u:p@db:5432/cal"

[logging]
level = "debug"
format = "JSON"

[sync]
initial_window_months = 6
fanout_concurrency = 2
""",
        )

        config = load_config(config_dir)

        assert config.server.base_url == "https://sync.example.com"
        assert config.server.port == 9000
        assert config.google.client_secret == "from-env"
        assert config.database.url == "postgres://u:p@db:5432/cal"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.sync.initial_window_months == 6
        assert config.sync.fanout_concurrency == 2

    def test_defaults(self, tmp_path):
        config = load_config(
            _write_toml(tmp_path, '[google]\nclient_id = "a"\nclient_secret = "b"\n')
        )

        assert config.server.port == 8000
        assert config.server.base_url is None
        assert config.sync.initial_window_months == 3
        assert config.sync.fanout_concurrency == 5
        assert config.logging.format == "text"

    def test_accepts_file_path(self, tmp_path):
        path = tmp_path / "custom.toml"
        path.write_text('[google]\nclient_id = "a"\nclient_secret = "b"\n')

        assert load_config(path).google.client_id == "a"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path)

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write_toml(tmp_path, "[google\n"))

    def test_missing_google_section(self, tmp_path):
        with pytest.raises(ConfigError, match=r"\[google\]"):
            load_config(_write_toml(tmp_path, "[server]\nport = 1\n"))

    def test_missing_client_secret(self):
        with pytest.raises(ConfigError, match="google.client_secret"):
            parse_config({"google": {"client_id": "a"}})

    @pytest.mark.parametrize("value", [0, -1, "many"])
    def test_rejects_non_positive_concurrency(self, value):
        with pytest.raises(ConfigError, match="fanout_concurrency"):
            parse_config(
                {
                    "google": {"client_id": "a", "client_secret": "b"},
                    "sync": {"fanout_concurrency": value},
                }
            )

    def test_rejects_unknown_log_format(self):
        with pytest.raises(ConfigError, match="logging.format"):
            parse_config(
                {"google": {"client_id": "a", "client_secret": "b"}, "logging": {"format": "xml"}}
            )

    def test_section_must_be_table(self):
        with pytest.raises(ConfigError, match="must be a TOML table"):
            parse_config({"google": {"client_id": "a", "client_secret": "b"}, "sync": 3})


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch):
        monkeypatch.setenv("DB_PASS", "s3cret")

        assert resolve_env_vars({"db": ["x-${DB_PASS}", 5]}) == {"db": ["x-s3cret", 5]}

    def test_reports_every_missing_variable(self, monkeypatch):
        monkeypatch.delenv("MISSING_A", raising=False)
        monkeypatch.delenv("MISSING_B", raising=False)

        with pytest.raises(ConfigError, match="MISSING_A, MISSING_B"):
            resolve_env_vars("${MISSING_A}:${MISSING_B}")


class TestConfigFromEnv:
    def test_reads_variables(self):
        config = config_from_env(
            {
                "CALMIRROR_BASE_URL": "https://sync.example.com",
                "CALMIRROR_PORT": "8080",
                "WEBHOOK_SECRET": "legacy-secret",
                "GOOGLE_CLIENT_ID": "cid",
                "GOOGLE_CLIENT_SECRET": "csecret",
                "DATABASE_URL": "postgres://x/y",
                "CALMIRROR_LOG_FORMAT": "json",
            }
        )

        assert config.server.base_url == "https://sync.example.com"
        assert config.server.port == 8080
        assert config.server.cron_secret == "legacy-secret"
        assert config.google.client_id == "cid"
        assert config.database.url == "postgres://x/y"
        assert config.logging.format == "json"

    def test_cron_secret_wins_over_webhook_secret(self):
        config = config_from_env({"CRON_SECRET": "primary", "WEBHOOK_SECRET": "legacy"})

        assert config.server.cron_secret == "primary"

    def test_empty_environment_leaves_credentials_blank(self):
        config = config_from_env({})

        assert config.google.client_id == ""
        assert config.server.cron_secret is None


class TestValidateConfig:
    def test_valid_development_config(self):
        assert validate_config(_valid_config(base_url="http://localhost:3000")) == []

    def test_missing_everything(self):
        errors = validate_config(AppConfig())

        assert any("google.client_id" in e for e in errors)
        assert any("google.client_secret" in e for e in errors)
        assert any("server.base_url" in e for e in errors)

    def test_malformed_base_url(self):
        errors = validate_config(_valid_config(base_url="ftp:/nowhere"))

        assert "server.base_url must be a valid URL" in errors

    def test_production_requires_strong_secret(self):
        errors = validate_config(_valid_config(base_url="https://sync.example.com"))
        assert "server.cron_secret is required in production" in errors

        errors = validate_config(
            _valid_config(base_url="https://sync.example.com", cron_secret="short")
        )
        assert any("at least 32 characters" in e for e in errors)

    def test_production_rejects_plain_http_and_local_hosts(self):
        errors = validate_config(
            _valid_config(
                base_url="http://localhost:3000",
                environment="production",
                cron_secret=_STRONG_SECRET,
            )
        )

        assert "server.base_url must use HTTPS in production" in errors
        assert "server.base_url cannot be a local address in production" in errors

    def test_valid_production_config(self):
        config = _valid_config(base_url="https://sync.example.com", cron_secret=_STRONG_SECRET)

        assert config.is_production
        assert validate_config(config) == []

    def test_explicit_environment_overrides_url(self):
        config = _valid_config(base_url="https://sync.example.com", environment="development")

        assert not config.is_production


class TestHelpers:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://sync.example.com", True),
            ("https://8.8.8.8", True),
            ("http://localhost:3000", False),
            ("http://127.0.0.1", False),
            ("http://10.0.0.4", False),
            ("http://192.168.1.5", False),
            ("http://printer.local", False),
            (None, False),
            ("", False),
            ("not a url", False),
        ],
    )
    def test_is_production_url(self, url, expected):
        assert is_production_url(url) is expected

    def test_mask_value(self):
        assert mask_value(None) == "not set"
        assert mask_value("short") == "***"
        assert mask_value("abcdefgh12345678XYZ") == "abcdefgh...45678XYZ"
