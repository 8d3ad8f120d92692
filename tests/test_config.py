"""
Tests for configuration loading.
"""

import pytest

from streamarchiver.config import as_bool, as_int, create_example_config, load_config


def write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    """Test load_config()."""

    def test_minimal_config_gets_defaults(self, tmp_path):
        path = write(tmp_path, """
twitch:
  client_id: abc
  client_secret: def
  channels: [SomeStreamer]
""")
        config = load_config(str(path))

        assert config.twitch.channels == ["somestreamer"]
        assert config.processing.max_concurrent_downloads == 1
        assert config.processing.retry_cooldown == 600
        assert config.processing.download_max_attempts == 5
        assert config.processing.download_backoff_base == 2.0
        assert config.circuit.failure_threshold == 5
        assert config.circuit.open_cooldown == 300
        assert config.reconcile.initial_delay == 60
        assert config.reconcile.window == 900
        assert config.reconcile.poll_interval == 30
        assert config.reconcile.match_tolerance == 600
        assert config.publish.enabled is False
        assert config.database.url.startswith("sqlite+aiosqlite:///")

    def test_overrides_are_coerced(self, tmp_path):
        path = write(tmp_path, """
twitch:
  client_id: abc
  client_secret: def
  channels: streamer
processing:
  max_concurrent_downloads: "3"
  download_backoff_base: "0,5"
  bandwidth_limit: 5M
chat:
  enabled: "off"
""")
        config = load_config(str(path))

        assert config.twitch.channels == ["streamer"]
        assert config.processing.max_concurrent_downloads == 3
        assert config.processing.download_backoff_base == 0.5
        assert config.processing.bandwidth_limit == "5M"
        assert config.chat.enabled is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_empty_file(self, tmp_path):
        with pytest.raises(ValueError, match="empty"):
            load_config(str(write(tmp_path, "")))

    def test_missing_twitch_credentials(self, tmp_path):
        path = write(tmp_path, "twitch:\n  client_id: abc\n")
        with pytest.raises(ValueError, match="client_secret"):
            load_config(str(path))

    def test_publish_requires_telegram_fields(self, tmp_path):
        path = write(tmp_path, """
twitch:
  client_id: abc
  client_secret: def
publish:
  enabled: true
  api_id: 123
""")
        with pytest.raises(ValueError, match="publish.api_hash"):
            load_config(str(path))

    def test_example_config_is_loadable(self, tmp_path):
        path = tmp_path / "config.example.yaml"
        create_example_config(str(path))

        config = load_config(str(path))

        assert config.twitch.channels == ["channel1"]
        assert config.publish.enabled is False


class TestCoercion:
    def test_as_bool(self):
        assert as_bool("yes", False) is True
        assert as_bool("0", True) is False
        assert as_bool("maybe", True) is True
        assert as_bool(None, False) is False

    def test_as_int(self):
        assert as_int("7", 0) == 7
        assert as_int("2.9", 0) == 2
        assert as_int("", 5) == 5
        assert as_int("abc", 5) == 5
