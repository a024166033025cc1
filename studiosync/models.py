from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def safe_parse_iso_datetime(value: Any) -> datetime | None:
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError):
        return None


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


@dataclass
class RemoteConfig:
    base_url: str = ""
    password: str = ""
    timeout_seconds: int = 30
    beacon_timeout_seconds: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip().rstrip("/"),
            password=str(data.get("password", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            beacon_timeout_seconds=max(1, int(data.get("beacon_timeout_seconds", 3))),
        )


@dataclass
class FeedConfig:
    name: str = ""
    url: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | str | None) -> "FeedConfig":
        if isinstance(data, str):
            return cls(name=data.strip(), url=data.strip())
        data = data or {}
        url = str(data.get("url", "")).strip()
        return cls(name=str(data.get("name", "")).strip() or url, url=url)


@dataclass
class SyncConfig:
    timezone: str = "UTC"
    data_interval_seconds: int = 300
    feed_interval_seconds: int = 900
    cooldown_seconds: float = 30.0
    local_grace_seconds: float = 15.0
    debounce_seconds: float = 1.0
    window_days_before: int = 7
    window_days_after: int = 90
    status_display_seconds: float = 2.0
    failure_warning_threshold: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            data_interval_seconds=max(30, int(data.get("data_interval_seconds", 300))),
            feed_interval_seconds=max(60, int(data.get("feed_interval_seconds", 900))),
            cooldown_seconds=max(0.0, float(data.get("cooldown_seconds", 30.0))),
            local_grace_seconds=max(0.0, float(data.get("local_grace_seconds", 15.0))),
            debounce_seconds=max(0.0, float(data.get("debounce_seconds", 1.0))),
            window_days_before=max(0, int(data.get("window_days_before", 7))),
            window_days_after=max(1, int(data.get("window_days_after", 90))),
            status_display_seconds=max(0.0, float(data.get("status_display_seconds", 2.0))),
            failure_warning_threshold=max(1, int(data.get("failure_warning_threshold", 3))),
        )

    @property
    def tzinfo(self) -> tzinfo:
        return resolve_timezone(self.timezone)


@dataclass
class StorageConfig:
    read_cache_ttl_ms: int = 500
    max_local_bytes: int = 5 * 1024 * 1024

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(
            read_cache_ttl_ms=max(0, int(data.get("read_cache_ttl_ms", 500))),
            max_local_bytes=max(1024, int(data.get("max_local_bytes", 5 * 1024 * 1024))),
        )


@dataclass
class ServerConfig:
    password: str = ""
    session_secret: str = ""
    max_payload_bytes: int = 6 * 1024 * 1024

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ServerConfig":
        data = data or {}
        return cls(
            password=str(data.get("password", "")).strip(),
            session_secret=str(data.get("session_secret", "")).strip(),
            max_payload_bytes=max(1024, int(data.get("max_payload_bytes", 6 * 1024 * 1024))),
        )


@dataclass
class AppConfig:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    feeds: list[FeedConfig] = field(default_factory=list)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_feeds = data.get("feeds") or []
        feeds = [FeedConfig.from_dict(item) for item in raw_feeds if isinstance(item, (dict, str))]
        return cls(
            remote=RemoteConfig.from_dict(data.get("remote")),
            feeds=[feed for feed in feeds if feed.url],
            sync=SyncConfig.from_dict(data.get("sync")),
            storage=StorageConfig.from_dict(data.get("storage")),
            server=ServerConfig.from_dict(data.get("server")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"
    OFFLINE = "offline"


@dataclass
class SyncWarning:
    id: str
    kind: str
    message: str
    retryable: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    merged: Any = None
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "merged": self.merged is not None,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def occurrence_window(today: date, days_before: int = 7, days_after: int = 90) -> tuple[date, date]:
    return today - timedelta(days=max(0, days_before)), today + timedelta(days=max(1, days_after))
