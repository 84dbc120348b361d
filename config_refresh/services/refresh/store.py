"""
Snapshot Store

Holds the current configuration snapshot.

Snapshots are immutable and replaced wholesale: replace() builds a new
Snapshot and publishes it with a single reference assignment, so a
reader sees either the old snapshot or the new one, never a mix.
Reads never block on refresh activity.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from config_refresh.common.config import ConfigEntry, FEATURE_FLAG_PREFIX
from config_refresh.common.exceptions import ConfigError, NotFoundError
from config_refresh.common.logging_setup import get_service_logger

logger = get_service_logger("refresh.store")


@dataclass(frozen=True)
class Snapshot:
    """Internally consistent set of entries valid at a point in time"""
    entries: Mapping[tuple[str, str], ConfigEntry]
    by_key: Mapping[str, ConfigEntry]
    version: str | None = None
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def build(
        cls,
        entries: Iterable[ConfigEntry],
        version: str | None = None,
        loaded_at: datetime | None = None,
    ) -> "Snapshot":
        """
        Build a snapshot from entries in fetch order.

        When a key appears under several labels, the entry that comes
        later wins the label-less lookup.

        Raises:
            ConfigError: if a (key, label) pair appears twice
        """
        scoped: dict[tuple[str, str], ConfigEntry] = {}
        by_key: dict[str, ConfigEntry] = {}

        for entry in entries:
            scope = (entry.key, entry.label)
            if scope in scoped:
                raise ConfigError(
                    f"Duplicate entry for key {entry.key!r} with label {entry.label!r}"
                )
            scoped[scope] = entry
            by_key[entry.key] = entry

        return cls(
            entries=MappingProxyType(scoped),
            by_key=MappingProxyType(by_key),
            version=version,
            loaded_at=loaded_at or datetime.now(timezone.utc),
        )

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls.build([])

    def __len__(self) -> int:
        return len(self.entries)

    def lookup(self, key: str, label: str | None = None) -> ConfigEntry | None:
        if label is None:
            return self.by_key.get(key)
        return self.entries.get((key, label))


class SnapshotStore:
    """
    Current configuration snapshot.

    Single writer (the refresh coordinator), many readers.
    """

    def __init__(self, snapshot: Snapshot | None = None):
        self._snapshot = snapshot or Snapshot.empty()

    @property
    def snapshot(self) -> Snapshot:
        """Current snapshot (safe to keep; it never changes)"""
        return self._snapshot

    @property
    def version(self) -> str | None:
        return self._snapshot.version

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, key: object) -> bool:
        return key in self._snapshot.by_key

    def replace(
        self,
        entries: Iterable[ConfigEntry],
        version: str | None = None,
    ) -> Snapshot:
        """
        Atomically swap in a new snapshot.

        The new snapshot is fully built before it is published; if
        building fails the current snapshot stays in place.

        Returns:
            The newly published snapshot
        """
        snapshot = Snapshot.build(entries, version=version)
        self._snapshot = snapshot

        logger.debug(
            f"Snapshot replaced: {len(snapshot)} entries (version: {version})",
            extra={"entry_count": len(snapshot), "version": version},
        )
        return snapshot

    def restore(self, snapshot: Snapshot) -> None:
        """Publish an already built snapshot (e.g., from the disk cache)"""
        self._snapshot = snapshot

    def get(self, key: str, label: str | None = None) -> str:
        """
        Look up a value in the current snapshot.

        Args:
            key: Configuration key
            label: Exact label to match; None resolves by label precedence

        Raises:
            NotFoundError: if the key is absent
        """
        entry = self._snapshot.lookup(key, label)
        if entry is None:
            raise NotFoundError(key, label)
        return entry.value

    def get_value(self, key: str, label: str | None = None, default: Any = None) -> Any:
        """Look up a value, returning default when the key is absent"""
        entry = self._snapshot.lookup(key, label)
        return default if entry is None else entry.value

    def feature_flags(self, label: str | None = None) -> dict[str, bool]:
        """All feature flags in the current snapshot, by flag name"""
        snapshot = self._snapshot
        if label is None:
            candidates = snapshot.by_key.values()
        else:
            candidates = [e for e in snapshot.entries.values() if e.label == label]

        return {
            entry.key[len(FEATURE_FLAG_PREFIX):]: self._flag_enabled(entry)
            for entry in candidates
            if entry.is_feature_flag
        }

    def is_feature_enabled(self, name: str, label: str | None = None) -> bool:
        """Missing or malformed flags are treated as disabled"""
        entry = self._snapshot.lookup(f"{FEATURE_FLAG_PREFIX}{name}", label)
        if entry is None:
            return False
        return self._flag_enabled(entry)

    @staticmethod
    def _flag_enabled(entry: ConfigEntry) -> bool:
        try:
            data = json.loads(entry.value)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Malformed feature flag {entry.key!r}: {e}")
            return False

        if not isinstance(data, dict):
            logger.warning(f"Malformed feature flag {entry.key!r}: not an object")
            return False
        return data.get("enabled") is True
