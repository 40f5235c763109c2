"""Integration tests for configuration module."""

from pathlib import Path

import pytest
import yaml

from brokerwatch.config import (
    ConfigurationError,
    LogFormat,
    load_config,
    parse_app_config,
    validate_config_file,
)
from brokerwatch.config.duration import DurationParseError, parse_duration, validate_duration_range
from brokerwatch.config.environment import DEFAULT_DATABASE_URL, load_environment_config
from brokerwatch.config.validators import check_for_warnings

EXAMPLE_CONFIG = Path(__file__).resolve().parents[1] / "config.example.yaml"

ENV_VARS = ["DATABASE_URL", "LOG_LEVEL", "ENVIRONMENT", "SERVICE_AUTH_TOKEN", "BROKERWATCH_DRIVER"]

MINIMAL_PROFILE = {
    "names": [{"first": "Jane", "last": "Doe"}],
    "addresses": [{"city": "Dallas", "state": "TX"}],
    "birth_year": 1985,
}


def write_config(tmp_path, config_dict):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config_dict), encoding="utf-8")
    return path


class TestConfigurationLoading:
    """Test configuration loading from YAML files."""

    def test_load_example_config(self, clean_env):
        """Test the shipped example configuration loads with its values."""
        app_config, env_config = load_config(EXAMPLE_CONFIG)

        assert len(app_config.profile.names) == 2
        assert app_config.profile.names[1].middle == "Q"
        assert app_config.scan_interval_seconds == 3600
        assert app_config.engine.max_retries == 3
        assert app_config.scheduling.max_concurrency == 4
        assert app_config.services.captcha_base_url == "https://captcha.example.net/api"
        assert app_config.logging.format == "key-value"
        assert env_config.database_url == DEFAULT_DATABASE_URL

    def test_load_minimal_config(self, tmp_path, clean_env):
        """Test a profile-only configuration gets defaults."""
        path = write_config(tmp_path, {"profile": MINIMAL_PROFILE})

        with pytest.warns(UserWarning):
            app_config, _ = load_config(path)

        assert app_config.brokers_dir == "broker_definitions"
        assert app_config.scan_interval_seconds == 3600
        assert app_config.services.captcha_base_url is None
        assert app_config.scheduling.defaults().maintenance_scan_hours == 120
        assert app_config.logging.format == LogFormat.KEY_VALUE.value

    def test_config_file_not_found(self, clean_env):
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(Path("nonexistent.yaml"))

        assert "not found" in str(exc_info.value)

    def test_invalid_yaml_syntax(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text("profile: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(path)

        assert "Failed to parse YAML" in str(exc_info.value)

    def test_empty_file(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="empty"):
            load_config(path)


class TestConfigurationValidation:
    """Test schema validation errors."""

    def test_missing_profile(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_app_config({"scan_interval": "1h"})

        assert "Missing required field: profile" in exc_info.value.errors

    def test_profile_needs_a_name(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_app_config({"profile": {**MINIMAL_PROFILE, "names": []}})

        assert any("names" in error for error in exc_info.value.errors)

    def test_whitespace_only_name_is_rejected(self):
        profile = {**MINIMAL_PROFILE, "names": [{"first": "   ", "last": "Doe"}]}

        with pytest.raises(ConfigurationError):
            parse_app_config({"profile": profile})

    def test_scan_interval_too_short(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_app_config({"profile": MINIMAL_PROFILE, "scan_interval": "30s"})

        assert any("too short" in error for error in exc_info.value.errors)

    def test_invalid_app_version(self):
        with pytest.raises(ConfigurationError):
            parse_app_config({"profile": MINIMAL_PROFILE, "app_version": "latest"})

    def test_action_timeout_cannot_exceed_job_timeout(self):
        engine = {"action_timeout_seconds": 120, "job_timeout_seconds": 60}

        with pytest.raises(ConfigurationError):
            parse_app_config({"profile": MINIMAL_PROFILE, "engine": engine})

    def test_service_url_scheme(self):
        services = {"captcha_base_url": "captcha.example.net"}

        with pytest.raises(ConfigurationError):
            parse_app_config({"profile": MINIMAL_PROFILE, "services": services})

    def test_blank_service_url_means_disabled(self):
        config = parse_app_config(
            {"profile": MINIMAL_PROFILE, "services": {"email_base_url": "  ", "captcha_base_url": "https://c.example/"}}
        )

        assert config.services.email_base_url is None
        assert config.services.captcha_base_url == "https://c.example"

    def test_error_report_lists_errors_and_suggestions(self):
        error = ConfigurationError("Bad config", errors=["first", "second"], suggestions=["fix it"])

        text = str(error)

        assert "  1. first" in text
        assert "  2. second" in text
        assert "  - fix it" in text


class TestConfigurationWarnings:
    """Test non-fatal configuration checks."""

    def test_example_config_has_no_warnings(self):
        config_dict = yaml.safe_load(EXAMPLE_CONFIG.read_text(encoding="utf-8"))

        assert check_for_warnings(config_dict) == []

    def test_warnings_for_risky_settings(self):
        messages = check_for_warnings(
            {
                "profile": {"names": [{}] * 10, "addresses": [{}] * 6},
                "engine": {"pacing_delay_seconds": 0, "max_retries": 0},
                "scheduling": {"max_concurrency": 16},
            }
        )

        assert len(messages) == 6
        assert any("60 queries" in m for m in messages)
        assert any("email" in m for m in messages)


class TestDurationParsing:
    """Test duration parsing utilities."""

    @pytest.mark.parametrize(
        "text,seconds",
        [("15m", 900), ("1h", 3600), ("30s", 30), ("2d", 172800), ("1h30m", 5400), ("1h 30m", 5400)],
    )
    def test_parse_human_readable(self, text, seconds):
        assert parse_duration(text) == seconds

    @pytest.mark.parametrize(
        "text,seconds",
        [("PT15M", 900), ("PT1H", 3600), ("PT1H30M", 5400), ("P1D", 86400), ("P1DT6H", 108000)],
    )
    def test_parse_iso8601(self, text, seconds):
        assert parse_duration(text) == seconds

    @pytest.mark.parametrize("text", ["", "15", "15x", "m15", "P", "PT", "0m"])
    def test_parse_invalid(self, text):
        with pytest.raises(DurationParseError):
            parse_duration(text)

    def test_validate_duration_range(self):
        validate_duration_range(900)

        with pytest.raises(DurationParseError, match="too short"):
            validate_duration_range(60)
        with pytest.raises(DurationParseError, match="too long"):
            validate_duration_range(172800)


class TestEnvironmentVariables:
    """Test environment variable loading."""

    def test_defaults(self, clean_env):
        env_config = load_environment_config()

        assert env_config.database_url == DEFAULT_DATABASE_URL
        assert env_config.log_level is None
        assert env_config.environment == "development"
        assert env_config.driver is None

    def test_values_are_read(self, monkeypatch, clean_env):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/test.db")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("SERVICE_AUTH_TOKEN", "s3cret")
        monkeypatch.setenv("BROKERWATCH_DRIVER", "drivers.playwright:create")

        env_config = load_environment_config()

        assert env_config.database_url == "sqlite:///tmp/test.db"
        assert env_config.log_level == "DEBUG"
        assert env_config.driver == "drivers.playwright:create"
        assert "s3cret" not in repr(env_config)

    def test_invalid_values_are_collected(self, monkeypatch, clean_env):
        monkeypatch.setenv("DATABASE_URL", "postgresql://db/brokers")
        monkeypatch.setenv("LOG_LEVEL", "LOUD")
        monkeypatch.setenv("BROKERWATCH_DRIVER", "no-colon")

        with pytest.raises(ConfigurationError) as exc_info:
            load_environment_config()

        assert len(exc_info.value.errors) == 3


class TestConfigurationHelpers:
    """Test helper utilities."""

    def test_validate_config_file_utility(self, tmp_path, capsys):
        assert validate_config_file(EXAMPLE_CONFIG) is True

        invalid_path = write_config(tmp_path, {"scan_interval": "1h"})
        assert validate_config_file(invalid_path) is False
        assert "validation failed" in capsys.readouterr().out


# Pytest fixtures
@pytest.fixture
def clean_env(monkeypatch):
    """Remove brokerwatch environment variables for the test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
