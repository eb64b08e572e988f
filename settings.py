#!/usr/bin/env python3
"""
Settings management for the Property Drawing Organizer.

Configuration is resolved in this order (later wins):
1. Built-in defaults (DEFAULT_SETTINGS)
2. config.yaml / config.local.yaml next to this file, or an explicit --config path
3. Environment variables (a .env file is loaded first if present)

The LLM API key may also live in the OS keychain; the environment still wins.
"""

import os
import logging
from pathlib import Path
from typing import Optional

import keyring
import yaml
from dotenv import load_dotenv
from keyring.errors import KeyringError

from errors import ConfigError

# Load environment variables from .env file (if it exists and is accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    pass  # .env not accessible, rely on the real environment

# Service name for keychain storage
KEYCHAIN_SERVICE = "PropertyDrawingOrganizer"

# Keys that may be stored in keychain instead of the environment
SECURE_KEYS = {"gemini_api_key", "anthropic_api_key", "openai_api_key"}

LOGGER_NAME = "drawing_organizer"


# ==============================================================================
# DEFAULTS
# ==============================================================================

DEFAULT_SETTINGS = {
    # Google Drive
    "google_drive_folder_id": "",
    "destination_folder_name": "Ordered Property Drawings",
    "destination_folder_id": "",
    "google_application_credentials": "service-account.json",
    "impersonate_user_email": "",

    # Google Sheets
    "spreadsheet_id": "",
    "sheet_name": "ProcessedFiles",
    "property_sheet_name": "Properties",

    # Pub/Sub
    "project_id": "",
    "pubsub_topic_name": "",
    "pubsub_subscription": "",

    # AI Provider settings
    "ai_provider": "gemini",  # gemini, anthropic, openai
    "gemini_api_key": "",
    "anthropic_api_key": "",
    "openai_api_key": "",
    "classifier_model": "",  # empty: provider default
    "year_model": "",
    "year_timeout": 15.0,

    # Concurrency
    "max_gemini_concurrent": 3,
    "max_concurrent_processing": 3,
    "dispatch_workers": 16,

    # Batch scan
    "batch_size": 100,
    "processing_delay": 2.0,
    "progress_file": "",
    "auto_stop_when_complete": False,

    # Ledger writes
    "ledger_mode": "batched",  # batched, immediate
    "sheet_batch_size": 5,
    "sheet_batch_delay": 15.0,

    # HTTP / poller
    "port": 8081,
    "poll_interval": 300.0,

    # Logging
    "log_level": "INFO",
    "log_file": "",
}

_BOOL_TRUE = {"1", "true", "yes", "on"}


def _coerce(key: str, value):
    """Coerce a raw (string) value to the type of its default."""
    default = DEFAULT_SETTINGS.get(key)
    if value is None or isinstance(default, str):
        return value
    if isinstance(value, str):
        value = value.strip()
    try:
        if isinstance(default, bool):
            return value if isinstance(value, bool) else str(value).lower() in _BOOL_TRUE
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key.upper()}: {value!r}") from e
    return value


# ==============================================================================
# CONFIGURATION LOADING
# ==============================================================================

def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML, with environment variables taking precedence."""
    config = DEFAULT_SETTINGS.copy()

    if config_path:
        config_paths = [Path(config_path)]
    else:
        config_paths = [
            Path(__file__).parent / "config.local.yaml",  # Local overrides first
            Path(__file__).parent / "config.yaml",
        ]

    for path in config_paths:
        if not path.exists():
            if config_path:
                raise ConfigError(f"Config file not found: {path}")
            continue
        try:
            with open(path, "r") as f:
                yaml_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            raise ConfigError(f"Could not load {path}: {e}") from e
        for key, value in yaml_config.items():
            key = str(key).lower()
            if key in DEFAULT_SETTINGS and value is not None:
                config[key] = _coerce(key, value)
        break  # Use first found config

    for key in DEFAULT_SETTINGS:
        env_value = os.environ.get(key.upper())
        if env_value is not None and env_value != "":
            config[key] = _coerce(key, env_value)

    return config


def get_secure_value(key: str) -> Optional[str]:
    """Get a secure value from OS keychain."""
    try:
        value = keyring.get_password(KEYCHAIN_SERVICE, key)
    except KeyringError:
        return None
    return value if value else None


class Settings:
    """Resolved application settings.

    Plain values come from load_config(); API keys fall back to the keychain.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[dict] = None):
        self._settings = load_config(config_path)
        for key, value in (overrides or {}).items():
            self._settings[key] = _coerce(key, value)

    def get(self, key: str, default=None):
        """Get a setting value. Secure keys fall back to the keychain."""
        value = self._settings.get(key, default)
        if key in SECURE_KEYS and not value:
            return get_secure_value(key) or default
        return value

    def require(self, *keys: str):
        """Raise ConfigError listing every required key that is unset."""
        missing = [key.upper() for key in keys if not self.get(key)]
        if missing:
            raise ConfigError(
                f"Missing required configuration: {', '.join(missing)}. "
                "Check your .env file or config.yaml."
            )

    @property
    def source_folder_id(self) -> str:
        return self._settings["google_drive_folder_id"]

    @property
    def ai_provider(self) -> str:
        return self._settings["ai_provider"].lower()

    @property
    def api_key(self) -> Optional[str]:
        """API key for the configured AI provider."""
        return self.get(f"{self.ai_provider}_api_key")

    @property
    def max_gemini_concurrent(self) -> int:
        return max(1, self._settings["max_gemini_concurrent"])

    @property
    def max_concurrent_processing(self) -> int:
        return max(1, self._settings["max_concurrent_processing"])

    @property
    def batched_ledger(self) -> bool:
        return self._settings["ledger_mode"].lower() != "immediate"

    def to_dict(self) -> dict:
        """Export settings with secrets masked."""
        return {
            k: ("***" if k in SECURE_KEYS and v else v)
            for k, v in self._settings.items()
        }


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings(config_path: Optional[str] = None) -> Settings:
    """Force reload settings from disk and environment."""
    global _settings
    _settings = Settings(config_path)
    return _settings


# ==============================================================================
# LOGGING CONFIGURATION
# ==============================================================================

def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Configure the application logger from settings or explicit arguments."""
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_file = log_file if log_file is not None else os.getenv("LOG_FILE", "")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Prevent duplicate handlers on reimport
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)
    console_format = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_format = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d - %(message)s"
        )
        file_handler.setFormatter(file_format)
        logger.addHandler(file_handler)

    return logger


def get_logger(component: str) -> logging.Logger:
    """Child logger of the application logger."""
    return logging.getLogger(f"{LOGGER_NAME}.{component}")
