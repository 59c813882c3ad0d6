"""Configuration management for BBBAB Messenger."""

from __future__ import annotations

import base64
import json
import os
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict

APP_ID = "bbbab-messenger"
CONFIG_DIR = Path.home() / ".config" / "bbbab-messenger"
TOKEN_KEY = "auth_token"


class TokenProvider(Protocol):
    """Source of the current bearer token."""

    def get_token(self) -> str | None: ...

    def clear_token(self) -> None: ...


class SyncSettings(BaseModel):
    """Tunables of the realtime sync core."""

    model_config = ConfigDict(extra="ignore")

    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_max_attempts: int = 10
    typing_quiet_period: float = 3.0
    profile_ttl: float = 300.0
    history_page_size: int = 50

    # Close codes after which the server is assumed to have closed on purpose.
    normal_close_codes: frozenset[int] = frozenset({1000})
    auth_close_codes: frozenset[int] = frozenset({1008, 4001, 4003, 4401, 4403})
    auth_http_statuses: frozenset[int] = frozenset({401, 403})
    auth_close_keywords: tuple[str, ...] = ("unauth", "forbidden", "token", "expired")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt + 1``."""
        return min(self.reconnect_max_delay, self.reconnect_base_delay * (2**attempt))

    def is_auth_failure(self, code: int, reason: str = "", http_status: int | None = None) -> bool:
        """Classify a close as a non-recoverable authorization failure."""
        if code in self.auth_close_codes:
            return True
        if http_status is not None and http_status in self.auth_http_statuses:
            return True
        lowered = reason.lower()
        return any(k in lowered for k in self.auth_close_keywords)


def ws_url_for(api_url: str) -> str:
    """Websocket root matching a REST API root (http -> ws, https -> wss)."""
    if api_url.startswith("https://"):
        return "wss://" + api_url[len("https://"):]
    if api_url.startswith("http://"):
        return "ws://" + api_url[len("http://"):]
    return api_url


def _keyring_available() -> bool:
    """Check if a working keyring backend is available."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        backend = keyring.get_keyring()
        return not isinstance(backend, FailKeyring)
    except Exception:
        return False


class Config:
    """Manages application configuration with secure token storage."""

    def __init__(self, config_dir: Path | None = None, use_keyring: bool | None = None) -> None:
        self.config_dir = config_dir or CONFIG_DIR
        self.config_file = self.config_dir / "config.json"
        self.secrets_file = self.config_dir / "secrets.json"  # Fallback when keyring unavailable
        self._config: dict[str, Any] = {}
        self._secrets: dict[str, str] = {}
        self._use_keyring = _keyring_available() if use_keyring is None else use_keyring
        self._load()

    def _load(self) -> None:
        """Load configuration from disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)

        if self.config_file.exists():
            try:
                self._config = json.loads(self.config_file.read_text())
            except json.JSONDecodeError:
                self._config = {}
        else:
            self._config = {}

        if not self._use_keyring and self.secrets_file.exists():
            try:
                self._secrets = json.loads(self.secrets_file.read_text())
            except json.JSONDecodeError:
                self._secrets = {}

    def _save(self) -> None:
        """Save configuration to disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(json.dumps(self._config, indent=2))

    def _save_secrets(self) -> None:
        """Save secrets to fallback file (when keyring unavailable)."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.secrets_file.write_text(json.dumps(self._secrets, indent=2))
        os.chmod(self.secrets_file, 0o600)

    @property
    def api_base_url(self) -> str | None:
        """Get the REST API base URL."""
        return self._config.get("api_base_url")

    @api_base_url.setter
    def api_base_url(self, value: str) -> None:
        self._config["api_base_url"] = value.rstrip("/")
        self._save()

    @property
    def ws_base_url(self) -> str | None:
        """Get the websocket base URL, derived from the API URL when unset."""
        explicit = self._config.get("ws_base_url")
        if explicit:
            return explicit
        api = self.api_base_url
        return ws_url_for(api) if api else None

    @ws_base_url.setter
    def ws_base_url(self, value: str) -> None:
        self._config["ws_base_url"] = value.rstrip("/")
        self._save()

    @property
    def user_id(self) -> int | None:
        """Get the id of the signed-in user."""
        value = self._config.get("user_id")
        return int(value) if value is not None else None

    @user_id.setter
    def user_id(self, value: int | None) -> None:
        self._config["user_id"] = value
        self._save()

    @property
    def sync_settings(self) -> SyncSettings:
        """Build the sync tunables from the ``sync`` section."""
        return SyncSettings.model_validate(self._config.get("sync", {}))

    # Token storage (TokenProvider)

    def get_token(self) -> str | None:
        """Get the auth token from secure storage."""
        if self._use_keyring:
            import keyring

            return keyring.get_password(APP_ID, TOKEN_KEY)
        encoded = self._secrets.get(TOKEN_KEY)
        if encoded:
            try:
                return base64.b64decode(encoded).decode("utf-8")
            except (ValueError, UnicodeDecodeError):
                return None
        return None

    def set_token(self, value: str) -> None:
        """Store the auth token."""
        if self._use_keyring:
            import keyring

            keyring.set_password(APP_ID, TOKEN_KEY, value)
        else:
            # Fallback: base64 encode and store in file
            self._secrets[TOKEN_KEY] = base64.b64encode(value.encode("utf-8")).decode("ascii")
            self._save_secrets()

    def clear_token(self) -> None:
        """Remove the stored token."""
        if self._use_keyring:
            import keyring

            try:
                keyring.delete_password(APP_ID, TOKEN_KEY)
            except keyring.errors.PasswordDeleteError:
                pass
        else:
            self._secrets.pop(TOKEN_KEY, None)
            self._save_secrets()

    @property
    def is_configured(self) -> bool:
        """Check if the app has a server and a token."""
        return bool(self.api_base_url and self.get_token())

    @property
    def using_secure_storage(self) -> bool:
        return self._use_keyring

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value."""
        self._config[key] = value
        self._save()
