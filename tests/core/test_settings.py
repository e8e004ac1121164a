"""
Tests for properties-file settings
"""

from src.core.services.settings_config_service import (
    SettingsConfigService,
    get_config_file_path,
)


def test_defaults_without_file(tmp_path):
    settings = SettingsConfigService(str(tmp_path / "missing.properties"))

    assert settings.getint("scheduling", "min_chunk_minutes") == 30
    assert settings.getfloat("monitor", "missed_ratio_high") == 0.3
    assert settings.getboolean("summarizer", "enabled") is False
    assert settings.get_list("logging", "levels")[0] == "DEBUG"


def test_file_overrides_defaults(tmp_path):
    config = tmp_path / "env.properties"
    config.write_text("[readiness]\nweak_threshold = 70\n", encoding="utf-8")

    settings = SettingsConfigService(str(config))

    assert settings.getfloat("readiness", "weak_threshold") == 70
    assert settings.getfloat("readiness", "strong_threshold") == 80


def test_missing_keys_use_fallback(tmp_path):
    settings = SettingsConfigService(str(tmp_path / "missing.properties"))

    assert settings.getint("nowhere", "nothing", 7) == 7
    assert settings.get("nowhere", "nothing") == ""


def test_monitor_thresholds(tmp_path):
    settings = SettingsConfigService(str(tmp_path / "missing.properties"))

    assert settings.get_monitor_thresholds() == {
        "missed_ratio_threshold": 0.2,
        "missed_ratio_high": 0.3,
        "low_performance_threshold": 60,
        "low_performance_high": 50,
        "readiness_threshold": 65,
    }


def test_explicit_config_file(tmp_path, monkeypatch):
    config = tmp_path / "custom.properties"
    config.write_text("[database]\npath = custom.db\n", encoding="utf-8")
    monkeypatch.setenv("EXAMPREP_CONFIG_FILE", str(config))

    assert get_config_file_path() == str(config)
