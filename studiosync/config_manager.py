from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from studiosync.feed_client import normalize_feed_url
from studiosync.models import AppConfig, FeedConfig, default_app_config

SECRET_FIELDS = (
    ("remote", "password"),
    ("server", "password"),
    ("server", "session_secret"),
)

# Environment variables win over the YAML file so secrets can stay out of it.
SECRET_ENV_OVERRIDES = {
    ("remote", "password"): "STUDIOSYNC_REMOTE_PASSWORD",
    ("server", "password"): "STUDIOSYNC_SERVER_PASSWORD",
    ("server", "session_secret"): "STUDIOSYNC_SESSION_SECRET",
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    for (section, key), variable in SECRET_ENV_OVERRIDES.items():
        value = os.getenv(variable)
        if value:
            data.setdefault(section, {})[key] = value
    return data


class ConfigManager:
    """YAML-backed settings for the sync service.

    The file is created with defaults on first use. Writes go through a
    temporary file and an atomic rename, falling back to an in-place write
    when the target is a bind-mounted file.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
        return data if isinstance(data, dict) else {}

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(_apply_env_overrides(self._read_file()))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            document = config.to_dict()
            staging = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _write_yaml(staging, document)
            try:
                staging.replace(self.config_path)
            except OSError as exc:
                if exc.errno != errno.EBUSY:
                    raise
                _write_yaml(self.config_path, document)
                staging.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            # Merge against the file, not the env-overridden view, so env secrets are never persisted.
            config = AppConfig.from_dict(_deep_merge(self._read_file(), payload))
            self.save(config)
            return self.load()

    def add_feed(self, name: str, url: str) -> AppConfig:
        normalized = normalize_feed_url(url)
        with self._lock:
            config = AppConfig.from_dict(self._read_file())
            if not any(normalize_feed_url(feed.url) == normalized for feed in config.feeds):
                config.feeds.append(FeedConfig.from_dict({"name": name, "url": normalized}))
                self.save(config)
            return self.load()

    def remove_feed(self, url: str) -> bool:
        normalized = normalize_feed_url(url)
        with self._lock:
            config = AppConfig.from_dict(self._read_file())
            remaining = [feed for feed in config.feeds if normalize_feed_url(feed.url) != normalized]
            if len(remaining) == len(config.feeds):
                return False
            config.feeds = remaining
            self.save(config)
            return True

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = "***"
        return config
