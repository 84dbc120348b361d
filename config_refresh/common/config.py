"""
Configuration Dataclasses

Type-safe structures for the refresh coordinator:
- ConfigEntry / Sentinel - the remote configuration data model
- RefreshSettings - coordinator settings, read once at startup
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .exceptions import ConfigError

# Key prefix that marks an entry as a feature flag
FEATURE_FLAG_PREFIX = ".appconfig.featureflag/"

# Label value for entries stored without a label
NULL_LABEL = ""


class StartupPolicy(str, Enum):
    """What to do when the initial snapshot load fails"""
    FAIL = "fail"        # Abort startup (serving an empty snapshot is unsafe)
    EMPTY = "empty"      # Start with an empty snapshot, keep polling
    CACHED = "cached"    # Fall back to the last-known-good snapshot on disk


@dataclass(frozen=True)
class ConfigEntry:
    """A single key/value pair, scoped by label"""
    key: str
    value: str
    label: str = NULL_LABEL
    etag: str | None = None
    content_type: str | None = None

    @property
    def is_feature_flag(self) -> bool:
        return self.key.startswith(FEATURE_FLAG_PREFIX)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "label": self.label,
            "etag": self.etag,
            "content_type": self.content_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfigEntry":
        """Build an entry from a REST item or a cached record"""
        if "key" not in data:
            raise ConfigError(f"Entry without key: {data!r}")
        return cls(
            key=data["key"],
            value="" if data.get("value") is None else str(data["value"]),
            label=data.get("label") or NULL_LABEL,
            etag=data.get("etag"),
            content_type=data.get("content_type"),
        )


@dataclass
class Sentinel:
    """Key whose value change signals that a full refresh is needed"""
    key: str
    label: str = NULL_LABEL
    last_observed: str | None = None
    # False until a value has been observed (None is a valid observation)
    observed: bool = False

    def has_changed(self, value: str | None) -> bool:
        """Exact equality against the last observed value"""
        if not self.observed:
            return True
        return value != self.last_observed

    def observe(self, value: str | None) -> None:
        self.last_observed = value
        self.observed = True


@dataclass
class RefreshSettings:
    """Coordinator settings (supplied at startup, not re-read)"""
    sentinel_key: str
    endpoint: str = ""
    label_filter: str = NULL_LABEL
    key_filter: str = "*"
    sentinel_label: str = NULL_LABEL
    headers: dict[str, str] = field(default_factory=dict)
    request_timeout_s: float = 10.0

    # Polling
    tick_interval_s: float = 30.0
    cache_expiration_s: float = 30.0
    startup_policy: StartupPolicy = StartupPolicy.FAIL

    # Last-known-good cache
    cache_dir: Path = Path("/var/lib/config-refresh/snapshots")
    max_cached_versions: int = 5

    # Health / settings HTTP server
    health_host: str = "127.0.0.1"
    health_port: int = 8090

    def validate(self) -> None:
        """Raise ConfigError on unusable settings"""
        errors: list[str] = []

        if not self.sentinel_key:
            errors.append("Missing refresh.sentinel_key")
        if self.tick_interval_s <= 0:
            errors.append(f"refresh.tick_interval_s must be > 0 (got {self.tick_interval_s})")
        if self.request_timeout_s <= 0:
            errors.append(f"source.request_timeout_s must be > 0 (got {self.request_timeout_s})")
        if self.max_cached_versions < 1:
            errors.append(f"cache.max_versions must be >= 1 (got {self.max_cached_versions})")
        if not 0 < self.health_port < 65536:
            errors.append(f"server.port out of range: {self.health_port}")

        if errors:
            raise ConfigError("; ".join(errors), recoverable=False)


def load_refresh_settings(data: dict) -> RefreshSettings:
    """Load RefreshSettings from dictionary (e.g., from YAML file)"""
    source = data.get("source") or {}
    refresh = data.get("refresh") or {}
    cache = data.get("cache") or {}
    server = data.get("server") or {}

    try:
        startup_policy = StartupPolicy(
            str(refresh.get("startup_policy", StartupPolicy.FAIL.value)).lower()
        )
    except ValueError:
        valid = ", ".join(p.value for p in StartupPolicy)
        raise ConfigError(
            f"Invalid refresh.startup_policy {refresh.get('startup_policy')!r} (expected: {valid})",
            recoverable=False,
        )

    try:
        settings = RefreshSettings(
            endpoint=source.get("endpoint") or os.environ.get("CONFIG_REFRESH_ENDPOINT", ""),
            headers=dict(source.get("headers") or {}),
            request_timeout_s=float(source.get("request_timeout_s", 10.0)),
            label_filter=str(
                refresh.get("label_filter") or os.environ.get("CONFIG_REFRESH_LABEL", NULL_LABEL)
            ),
            key_filter=str(refresh.get("key_filter", "*")),
            sentinel_key=str(refresh.get("sentinel_key") or ""),
            sentinel_label=str(refresh.get("sentinel_label") or NULL_LABEL),
            tick_interval_s=float(refresh.get("tick_interval_s", 30.0)),
            cache_expiration_s=float(refresh.get("cache_expiration_s", 30.0)),
            startup_policy=startup_policy,
            cache_dir=Path(cache.get("dir", "/var/lib/config-refresh/snapshots")),
            max_cached_versions=int(cache.get("max_versions", 5)),
            health_host=str(server.get("host", "127.0.0.1")),
            health_port=int(server.get("port", 8090)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid setting value: {e}", recoverable=False) from e

    settings.validate()
    return settings
