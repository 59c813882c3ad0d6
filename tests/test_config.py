"""Tests for configuration and sync tunables."""

import json
import stat
from pathlib import Path

import pytest

from bbbab_messenger.utils.config import Config, SyncSettings, ws_url_for


class TestSyncSettings:
    """Test reconnect backoff and close classification."""

    def test_backoff_doubles_up_to_cap(self) -> None:
        settings = SyncSettings()
        delays = [settings.backoff_delay(n) for n in range(8)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]
        assert delays == sorted(delays)

    def test_custom_backoff(self) -> None:
        settings = SyncSettings(reconnect_base_delay=0.5, reconnect_max_delay=3.0)
        assert [settings.backoff_delay(n) for n in range(4)] == [0.5, 1.0, 2.0, 3.0]

    @pytest.mark.parametrize("code", [1008, 4001, 4003, 4401, 4403])
    def test_auth_close_codes(self, code: int) -> None:
        assert SyncSettings().is_auth_failure(code)

    @pytest.mark.parametrize("reason", ["Unauthorized", "FORBIDDEN", "invalid token", "session expired"])
    def test_auth_close_reasons(self, reason: str) -> None:
        assert SyncSettings().is_auth_failure(1011, reason)

    def test_handshake_status(self) -> None:
        settings = SyncSettings()
        assert settings.is_auth_failure(1006, "HTTP 401", http_status=401)
        assert not settings.is_auth_failure(1006, "HTTP 502", http_status=502)

    def test_transient_close_is_not_auth(self) -> None:
        assert not SyncSettings().is_auth_failure(1006, "connection reset")


class TestConfig:
    """Test the JSON config file and file-based token fallback."""

    def test_defaults(self, tmp_path: Path) -> None:
        config = Config(config_dir=tmp_path, use_keyring=False)
        assert config.api_base_url is None
        assert config.ws_base_url is None
        assert not config.is_configured
        assert config.sync_settings == SyncSettings()

    def test_ws_url_derived_from_api_url(self, tmp_path: Path) -> None:
        config = Config(config_dir=tmp_path, use_keyring=False)
        config.api_base_url = "https://chat.example.com/api/"
        assert config.api_base_url == "https://chat.example.com/api"
        assert config.ws_base_url == "wss://chat.example.com/api"

        config.api_base_url = "http://localhost:8080/api"
        assert config.ws_base_url == "ws://localhost:8080/api"

        config.ws_base_url = "ws://realtime.local/api"
        assert config.ws_base_url == "ws://realtime.local/api"

    @pytest.mark.parametrize(
        ("api", "ws"),
        [
            ("https://chat.example.com/api", "wss://chat.example.com/api"),
            ("http://localhost:8080/api", "ws://localhost:8080/api"),
            ("ws://already.ws/api", "ws://already.ws/api"),
        ],
    )
    def test_ws_url_for(self, api: str, ws: str) -> None:
        assert ws_url_for(api) == ws

    def test_values_persist(self, tmp_path: Path) -> None:
        config = Config(config_dir=tmp_path, use_keyring=False)
        config.api_base_url = "http://localhost:8080/api"
        config.user_id = 7
        config.set("sync", {"typing_quiet_period": 5.0, "unknown_key": 1})

        reloaded = Config(config_dir=tmp_path, use_keyring=False)
        assert reloaded.user_id == 7
        assert reloaded.sync_settings.typing_quiet_period == 5.0
        assert json.loads((tmp_path / "config.json").read_text())["user_id"] == 7

    def test_token_file_fallback(self, tmp_path: Path) -> None:
        config = Config(config_dir=tmp_path, use_keyring=False)
        config.api_base_url = "http://localhost:8080/api"
        config.set_token("secret-token")

        secrets_file = tmp_path / "secrets.json"
        assert "secret-token" not in secrets_file.read_text()
        assert stat.S_IMODE(secrets_file.stat().st_mode) == 0o600

        reloaded = Config(config_dir=tmp_path, use_keyring=False)
        assert reloaded.get_token() == "secret-token"
        assert reloaded.is_configured
        assert not reloaded.using_secure_storage

        reloaded.clear_token()
        assert reloaded.get_token() is None

    def test_corrupt_config_ignored(self, tmp_path: Path) -> None:
        (tmp_path / "config.json").write_text("{not json")
        config = Config(config_dir=tmp_path, use_keyring=False)
        assert config.get("api_base_url") is None
