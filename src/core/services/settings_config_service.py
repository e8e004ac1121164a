"""
Settings Configuration Service for the exam preparation engine

This module provides centralized configuration management using properties files.
It handles loading, parsing, and providing access to engine thresholds and
infrastructure settings.

Configuration files:
- env.properties: Production configuration (default)
- env-test.properties: Test configuration (used when EXAMPREP_TEST_MODE=1)
"""

import os
import configparser
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union


DEFAULTS: Dict[str, Dict[str, str]] = {
    "scheduling": {
        "max_daily_hours": "4",
        "min_chunk_minutes": "30",
        "review_duration_minutes": "30",
        "default_start_hour": "9",
        "default_end_hour": "17",
        "slot_search_step_minutes": "30",
    },
    "readiness": {
        "weak_threshold": "65",
        "strong_threshold": "80",
    },
    "monitor": {
        "missed_ratio_threshold": "0.2",
        "missed_ratio_high": "0.3",
        "low_performance_threshold": "60",
        "low_performance_high": "50",
        "readiness_threshold": "65",
    },
    "cleanup": {
        "max_general_alerts": "3",
    },
    "rate_limits": {
        "remediation_seconds": "300",
        "monitor_seconds": "600",
        "default_seconds": "60",
    },
    "agent_scheduler": {
        "stale_claim_minutes": "15",
        "standard_interval_minutes": "1440",
        "priority_interval_minutes": "240",
        "priority_window_days": "14",
    },
    "summarizer": {
        "enabled": "false",
        "provider": "ollama",
        "url": "http://localhost:11434",
        "model": "llama3",
        "api_key": "",
        "timeout_seconds": "30",
    },
    "logging": {
        "default_level": "INFO",
        "levels": "DEBUG,INFO,WARNING,ERROR,CRITICAL",
    },
    "database": {
        "path": "exam_prep.db",
    },
}


def get_config_file_path() -> str:
    """
    Determine the appropriate configuration file based on environment.

    Priority:
    1. EXAMPREP_CONFIG_FILE environment variable (explicit override)
    2. env-test.properties (when EXAMPREP_TEST_MODE=1)
    3. env.properties (production default)
    """
    explicit_config = os.environ.get("EXAMPREP_CONFIG_FILE")
    if explicit_config and os.path.exists(explicit_config):
        return explicit_config

    search_paths = [
        Path.cwd(),
        Path(__file__).parent.parent.parent.parent,  # src/core/services -> root
    ]

    for base_path in search_paths:
        if os.environ.get("EXAMPREP_TEST_MODE") == "1":
            test_config = base_path / "env-test.properties"
            if test_config.exists():
                return str(test_config)

        prod_config = base_path / "env.properties"
        if prod_config.exists():
            return str(prod_config)

    return "env.properties"


class SettingsConfigService:
    """Service for managing application settings from properties files."""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize the settings configuration service.

        Args:
            config_file: Optional path to config file. If None, auto-detects based on environment.
        """
        self.config_file = config_file or get_config_file_path()
        self.config = configparser.ConfigParser()
        self.logger = logging.getLogger(__name__)
        self._load_config()

    def _load_config(self):
        """Load defaults, then overlay the properties file if present."""
        self.config.read_dict(DEFAULTS)

        if not os.path.exists(self.config_file):
            self.logger.info(
                f"Config file {self.config_file} not found, using defaults"
            )
            return

        try:
            self.config.read(self.config_file, encoding="utf-8")
            self.logger.info(f"Configuration loaded from {self.config_file}")
        except configparser.Error as e:
            self.logger.error(f"Failed to load configuration: {e}")

    def get(self, section: str, key: str, fallback: Optional[str] = None) -> str:
        """Get a configuration value."""
        try:
            return self.config.get(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Configuration not found: {section}.{key}")
            return ""

    def getint(self, section: str, key: str, fallback: Optional[int] = None) -> int:
        """Get an integer configuration value."""
        try:
            return self.config.getint(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Integer configuration not found: {section}.{key}")
            return 0

    def getfloat(
        self, section: str, key: str, fallback: Optional[float] = None
    ) -> float:
        """Get a float configuration value."""
        try:
            return self.config.getfloat(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Float configuration not found: {section}.{key}")
            return 0.0

    def getboolean(
        self, section: str, key: str, fallback: Optional[bool] = None
    ) -> bool:
        """Get a boolean configuration value."""
        try:
            return self.config.getboolean(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Boolean configuration not found: {section}.{key}")
            return False

    def get_list(self, section: str, key: str, fallback: Optional[list] = None) -> list:
        """Get a list configuration value (comma-separated)."""
        value = self.get(section, key, "")
        if value:
            return [item.strip() for item in value.split(",")]
        return fallback or []

    def set(self, section: str, key: str, value: Union[str, int, float, bool]):
        """Set a configuration value."""
        if not self.config.has_section(section):
            self.config.add_section(section)
        self.config.set(section, key, str(value))

    def get_monitor_thresholds(self) -> Dict[str, float]:
        """Get monitor alert thresholds."""
        return {
            "missed_ratio_threshold": self.getfloat("monitor", "missed_ratio_threshold"),
            "missed_ratio_high": self.getfloat("monitor", "missed_ratio_high"),
            "low_performance_threshold": self.getfloat(
                "monitor", "low_performance_threshold"
            ),
            "low_performance_high": self.getfloat("monitor", "low_performance_high"),
            "readiness_threshold": self.getfloat("monitor", "readiness_threshold"),
        }

    def get_summarizer_defaults(self) -> Dict[str, Any]:
        """Get summarizer configuration with environment variable override."""
        provider = os.environ.get(
            "EXAMPREP_SUMMARIZER_PROVIDER", self.get("summarizer", "provider")
        )
        return {
            "enabled": self.getboolean("summarizer", "enabled", False),
            "provider": provider,
            "url": self.get("summarizer", "url"),
            "model": self.get("summarizer", "model"),
            "api_key": self.get("summarizer", "api_key", ""),
            "timeout_seconds": self.getfloat("summarizer", "timeout_seconds", 30.0),
        }

    def get_logging_defaults(self) -> Dict[str, Any]:
        """Get logging configuration defaults."""
        return {
            "default_level": self.get("logging", "default_level"),
            "levels": self.get_list("logging", "levels"),
        }


# Global instance
_settings_service = None


def get_settings_service(config_file: Optional[str] = None) -> SettingsConfigService:
    """
    Get the global settings service instance.

    Args:
        config_file: Optional path to config file. If None, auto-detects:
                    - env-test.properties when EXAMPREP_TEST_MODE=1
                    - env.properties for production

    Returns:
        SettingsConfigService instance
    """
    global _settings_service
    if _settings_service is None:
        _settings_service = SettingsConfigService(config_file)
    return _settings_service


def reset_settings_service():
    """Reset the global settings service instance. Useful for testing."""
    global _settings_service
    _settings_service = None
