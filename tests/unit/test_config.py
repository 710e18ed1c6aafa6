"""
Unit tests for server configuration: environment parsing and CLI overrides.
"""

from nas_server.__main__ import build_settings, parse_args
from nas_server.config import Settings


class TestFromEnv:
    """Test suite for Settings.from_env."""

    def test_defaults(self):
        settings = Settings.from_env({})

        assert settings.data_dir == "/data"
        assert settings.port == 13000
        assert settings.port_range_start == 13001
        assert settings.port_range_end == 13999
        assert settings.build_timeout == 1800.0
        assert settings.db_path == "/data/controller.db"

    def test_values(self):
        settings = Settings.from_env(
            {
                "NAS_DATA_DIR": "/srv/nas",
                "NAS_PORT": "8000",
                "NAS_PORT_RANGE_START": "14001",
                "NAS_PORT_RANGE_END": "14010",
                "NAS_BUILD_TIMEOUT": "90.5",
            }
        )

        assert settings.data_dir == "/srv/nas"
        assert settings.port == 8000
        assert (settings.port_range_start, settings.port_range_end) == (14001, 14010)
        assert settings.build_timeout == 90.5

    def test_invalid_numbers_fall_back(self):
        settings = Settings.from_env({"NAS_PORT": "abc", "NAS_BUILD_TIMEOUT": "-5"})

        assert settings.port == 13000
        assert settings.build_timeout == 1800.0

    def test_inverted_range_falls_back(self):
        settings = Settings.from_env({"NAS_PORT_RANGE_START": "15000", "NAS_PORT_RANGE_END": "14000"})

        assert (settings.port_range_start, settings.port_range_end) == (13001, 13999)


class TestCommandLine:
    """Test suite for command-line overrides."""

    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("NAS_DATA_DIR", "/from/env")
        monkeypatch.setenv("NAS_PORT", "9000")

        settings = build_settings(parse_args(["--data-dir", "/from/flag", "--build-timeout", "60"]))

        assert settings.data_dir == "/from/flag"
        assert settings.port == 9000
        assert settings.build_timeout == 60.0

    def test_non_positive_timeout_ignored(self, monkeypatch):
        monkeypatch.delenv("NAS_BUILD_TIMEOUT", raising=False)

        settings = build_settings(parse_args(["--build-timeout", "0"]))

        assert settings.build_timeout == 1800.0
