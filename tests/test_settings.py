"""
Tests for settings loading and error classification.
"""

import pytest
from unittest.mock import patch

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import (
    ConfigError,
    ErrorKind,
    OrganizerError,
    StorageError,
    classify_error,
    is_permanent,
    kind_for_status,
)
from settings import DEFAULT_SETTINGS, Settings, load_config


class TestLoadConfig:
    """Tests for config resolution."""

    def test_defaults(self, temp_dir):
        """An empty config file leaves the defaults in place."""
        config_file = temp_dir / "config.yaml"
        config_file.write_text("")

        config = load_config(str(config_file))
        assert config["max_gemini_concurrent"] == 3
        assert config["batch_size"] == 100
        assert config["sheet_name"] == "ProcessedFiles"

    def test_yaml_values(self, temp_dir):
        """YAML keys override defaults and are coerced to the default's type."""
        config_file = temp_dir / "config.yaml"
        config_file.write_text("batch_size: '25'\nPROCESSING_DELAY: 5\nunknown_key: 1\n")

        config = load_config(str(config_file))
        assert config["batch_size"] == 25
        assert config["processing_delay"] == 5.0
        assert "unknown_key" not in config

    def test_env_wins_over_yaml(self, temp_dir, monkeypatch):
        """Environment variables take precedence over the file."""
        config_file = temp_dir / "config.yaml"
        config_file.write_text("batch_size: 25\n")
        monkeypatch.setenv("BATCH_SIZE", "50")
        monkeypatch.setenv("AUTO_STOP_WHEN_COMPLETE", "true")

        config = load_config(str(config_file))
        assert config["batch_size"] == 50
        assert config["auto_stop_when_complete"] is True

    def test_missing_explicit_file(self, temp_dir):
        """An explicit path that does not exist is an error."""
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(temp_dir / "missing.yaml"))

    def test_invalid_number(self, temp_dir, monkeypatch):
        """Non-numeric values for numeric settings are rejected."""
        config_file = temp_dir / "config.yaml"
        config_file.write_text("")
        monkeypatch.setenv("BATCH_SIZE", "lots")

        with pytest.raises(ConfigError, match="BATCH_SIZE"):
            load_config(str(config_file))


class TestSettings:
    """Tests for the Settings object."""

    @pytest.fixture
    def config_file(self, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text("google_drive_folder_id: src\n")
        return str(path)

    def test_require_lists_missing_keys(self, config_file):
        """require() names every unset key."""
        settings = Settings(config_file)
        with pytest.raises(ConfigError) as exc:
            settings.require("google_drive_folder_id", "spreadsheet_id", "project_id")
        assert "SPREADSHEET_ID" in str(exc.value)
        assert "PROJECT_ID" in str(exc.value)
        assert "GOOGLE_DRIVE_FOLDER_ID" not in str(exc.value)

    def test_overrides(self, config_file):
        """Overrides are coerced like any other source."""
        settings = Settings(config_file, overrides={"max_concurrent_processing": "0", "ledger_mode": "immediate"})
        assert settings.max_concurrent_processing == 1
        assert not settings.batched_ledger

    @patch("settings.get_secure_value", return_value="from-keychain")
    def test_api_key_falls_back_to_keychain(self, mock_keychain, config_file):
        """The provider's API key is read from the keychain when unset."""
        settings = Settings(config_file)
        assert settings.ai_provider == "gemini"
        assert settings.api_key == "from-keychain"
        mock_keychain.assert_called_with("gemini_api_key")

    def test_to_dict_masks_secrets(self, config_file):
        """Secrets are masked in exported settings."""
        settings = Settings(config_file, overrides={"openai_api_key": "sk-secret"})
        exported = settings.to_dict()
        assert exported["openai_api_key"] == "***"
        assert exported["google_drive_folder_id"] == "src"
        assert set(exported) == set(DEFAULT_SETTINGS)


class TestErrorKinds:
    """Tests for error classification."""

    @pytest.mark.parametrize("status,kind", [
        (404, ErrorKind.NOT_FOUND),
        (413, ErrorKind.PAYLOAD_TOO_LARGE),
        (408, ErrorKind.TIMEOUT),
        (504, ErrorKind.TIMEOUT),
        (429, ErrorKind.RATE_LIMITED),
        (400, ErrorKind.BAD_REQUEST),
        (500, ErrorKind.TRANSIENT),
        (None, ErrorKind.TRANSIENT),
    ])
    def test_kind_for_status(self, status, kind):
        """HTTP statuses map onto error kinds."""
        assert kind_for_status(status) == kind

    def test_permanent_kinds(self):
        """Only size, timeout, bad request and rate limit are permanent."""
        assert is_permanent(ErrorKind.RATE_LIMITED)
        assert is_permanent(ErrorKind.PAYLOAD_TOO_LARGE)
        assert not is_permanent(ErrorKind.TRANSIENT)
        assert not is_permanent(ErrorKind.NOT_FOUND)

    def test_classify_error(self):
        """Organizer errors keep their kind; timeouts and others are mapped."""
        assert classify_error(StorageError("gone", kind=ErrorKind.NOT_FOUND)) == ErrorKind.NOT_FOUND
        assert classify_error(OrganizerError("boom")) == ErrorKind.TRANSIENT
        assert classify_error(TimeoutError()) == ErrorKind.TIMEOUT
        assert classify_error(RuntimeError("x")) == ErrorKind.TRANSIENT
