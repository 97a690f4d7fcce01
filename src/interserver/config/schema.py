"""Config schema and accessor."""

from __future__ import annotations

import os
from typing import Any

from loguru import logger

from interserver.core.constants import DEFAULT_CORRESPONDENCE_TTL, DEFAULT_MAX_ATTACHMENT_BYTES
from interserver.core.errors import ConfigurationError

DEFAULTS: dict[str, Any] = {
    "store_path": "groups.json",
    "correspondence_ttl_seconds": DEFAULT_CORRESPONDENCE_TTL,
    "correspondence_max_entries": 50_000,
    "sweep_interval_seconds": 300,
    "webhook_cache_ttl_seconds": 86_400,
    "webhook_cache_max_entries": 500,
    "webhook_negative_ttl_seconds": 60,
    "max_attachment_bytes": DEFAULT_MAX_ATTACHMENT_BYTES,
    "mention_mode": "escape",
    "max_mention_substitutions": 10,
    "persist_debounce_seconds": 2.0,
    "persist_interval_seconds": 300,
    "delivery_timeout_seconds": 15.0,
    "delivery_retries": 1,
    "ban_scope": "user",
    "reaction_mirror": "origin",
    "single_group_per_guild": False,
    "announce_startup": False,
    "command_prefix": "!",
}

# Env keys that override config (loaded once per reload)
_ENV_OVERRIDE_KEYS = (
    "RELAY_STORE_PATH",
    "RELAY_MENTION_MODE",
    "RELAY_BAN_SCOPE",
    "RELAY_REACTION_MIRROR",
)

_CHOICES: dict[str, tuple[str, ...]] = {
    "mention_mode": ("escape", "resolve"),
    "ban_scope": ("user", "guild"),
    "reaction_mirror": ("origin", "both"),
}

_POSITIVE_NUMBERS = (
    "correspondence_ttl_seconds",
    "correspondence_max_entries",
    "sweep_interval_seconds",
    "webhook_cache_ttl_seconds",
    "webhook_cache_max_entries",
    "webhook_negative_ttl_seconds",
    "max_attachment_bytes",
    "persist_interval_seconds",
    "delivery_timeout_seconds",
)


def _load_env_overrides() -> dict[str, str]:
    """Load env overrides once per reload."""
    return {k: os.environ.get(k, "") for k in _ENV_OVERRIDE_KEYS}


class Config:
    """Config accessor with attribute-style access for known keys."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data = data or {}
        self._env: dict[str, str] = _load_env_overrides()

    def reload(self, data: dict[str, Any], *, validate: bool = True) -> None:
        """Replace config data (e.g. on SIGHUP reload). Invalid data leaves the old values in place."""
        previous = (self._data, self._env)
        self._data = data or {}
        self._env = _load_env_overrides()
        if validate:
            try:
                self._validate()
            except ConfigurationError:
                self._data, self._env = previous
                raise
        logger.debug("Config reloaded: store={} mention_mode={}", self.store_path, self.mention_mode)

    def _validate(self) -> None:
        """Validate config values; raise ConfigurationError on failure."""
        for key, allowed in _CHOICES.items():
            value = getattr(self, key)
            if value not in allowed:
                raise ConfigurationError(
                    f"{key} must be one of {', '.join(allowed)}",
                    code=f"invalid_{key}",
                    details={"value": value},
                )
        for key in _POSITIVE_NUMBERS:
            try:
                value = float(self._value(key))
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(
                    f"{key} must be a number",
                    code="invalid_number",
                    details={"key": key},
                    original_error=exc,
                ) from exc
            if value <= 0:
                raise ConfigurationError(
                    f"{key} must be positive",
                    code="invalid_number",
                    details={"key": key, "value": value},
                )
        if int(self._value("delivery_retries")) < 0:
            raise ConfigurationError("delivery_retries must be >= 0", code="invalid_number")

    def _value(self, key: str) -> Any:
        return self._data.get(key, DEFAULTS[key])

    @property
    def raw(self) -> dict[str, Any]:
        """Raw config dict."""
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Get value by dot-separated path."""
        parts = key.split(".")
        obj: Any = self._data
        for part in parts:
            if isinstance(obj, dict) and part in obj:
                obj = obj[part]
            else:
                return default
        return obj

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    @property
    def store_path(self) -> str:
        return self._env.get("RELAY_STORE_PATH") or str(self._value("store_path"))

    @property
    def correspondence_ttl_seconds(self) -> float:
        return float(self._value("correspondence_ttl_seconds"))

    @property
    def correspondence_max_entries(self) -> int:
        return int(self._value("correspondence_max_entries"))

    @property
    def sweep_interval_seconds(self) -> float:
        return float(self._value("sweep_interval_seconds"))

    @property
    def webhook_cache_ttl_seconds(self) -> float:
        return float(self._value("webhook_cache_ttl_seconds"))

    @property
    def webhook_cache_max_entries(self) -> int:
        return int(self._value("webhook_cache_max_entries"))

    @property
    def webhook_negative_ttl_seconds(self) -> float:
        return float(self._value("webhook_negative_ttl_seconds"))

    @property
    def max_attachment_bytes(self) -> int:
        return int(self._value("max_attachment_bytes"))

    @property
    def mention_mode(self) -> str:
        return (self._env.get("RELAY_MENTION_MODE") or str(self._value("mention_mode"))).lower()

    @property
    def max_mention_substitutions(self) -> int:
        return int(self._value("max_mention_substitutions"))

    @property
    def persist_debounce_seconds(self) -> float:
        return float(self._value("persist_debounce_seconds"))

    @property
    def persist_interval_seconds(self) -> float:
        return float(self._value("persist_interval_seconds"))

    @property
    def delivery_timeout_seconds(self) -> float:
        return float(self._value("delivery_timeout_seconds"))

    @property
    def delivery_retries(self) -> int:
        return int(self._value("delivery_retries"))

    @property
    def ban_scope(self) -> str:
        return (self._env.get("RELAY_BAN_SCOPE") or str(self._value("ban_scope"))).lower()

    @property
    def reaction_mirror(self) -> str:
        return (self._env.get("RELAY_REACTION_MIRROR") or str(self._value("reaction_mirror"))).lower()

    @property
    def single_group_per_guild(self) -> bool:
        return bool(self._value("single_group_per_guild"))

    @property
    def announce_startup(self) -> bool:
        return bool(self._value("announce_startup"))

    @property
    def command_prefix(self) -> str:
        return str(self._value("command_prefix"))


cfg: Config = Config({})
