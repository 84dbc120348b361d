"""
Snapshot Cache

Local file cache of last-known-good snapshots.
Lets the service start from the previous snapshot when the remote
source is unreachable at startup, and keeps a short version history.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from config_refresh.common.config import ConfigEntry
from config_refresh.common.exceptions import ConfigError
from config_refresh.common.logging_setup import get_service_logger

from .store import Snapshot

logger = get_service_logger("refresh.cache")


class SnapshotCache:
    """
    Local snapshot cache.

    Stores the last `max_versions` applied snapshots as JSON files,
    newest first by filename.
    """

    def __init__(
        self,
        cache_dir: Path | None = None,
        max_versions: int = 5,
    ):
        self.cache_dir = Path(cache_dir or "/var/lib/config-refresh/snapshots")
        self.max_versions = max_versions

        # Ensure directory exists
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def __call__(self, snapshot: Snapshot) -> None:
        """Coordinator listener hook"""
        self.save(snapshot)

    def save(self, snapshot: Snapshot) -> Path:
        """
        Save a snapshot to the cache.

        Returns:
            Path of the written version file
        """
        cached_at = datetime.now(timezone.utc)
        data = {
            "version": snapshot.version,
            "loaded_at": snapshot.loaded_at.isoformat(),
            "cached_at": cached_at.isoformat(),
            "entries": [entry.to_dict() for entry in snapshot.entries.values()],
        }

        # Timestamp filenames sort chronologically
        version_file = self.cache_dir / f"v_{cached_at.strftime('%Y%m%dT%H%M%S%f')}.json"
        temp_file = version_file.with_suffix(".tmp")

        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        temp_file.replace(version_file)

        logger.info(
            f"Snapshot saved to cache (version: {snapshot.version})",
            extra={"version": snapshot.version, "file": version_file.name},
        )

        self._cleanup_old_versions()
        return version_file

    def load(self) -> Snapshot | None:
        """
        Load the newest readable snapshot.

        Returns:
            Cached snapshot, or None if nothing usable is cached
        """
        for version_file in self._version_files():
            try:
                return self._read(version_file)
            except (json.JSONDecodeError, OSError, KeyError, ValueError, ConfigError) as e:
                logger.error(f"Error loading cached snapshot {version_file.name}: {e}")

        return None

    def get_versions(self) -> list[dict[str, Any]]:
        """
        Get list of available cached versions.

        Returns:
            List of version info dicts with version, cached_at and file
        """
        versions = []
        for version_file in self._version_files():
            try:
                with open(version_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                versions.append({
                    "version": data.get("version"),
                    "cached_at": data.get("cached_at", ""),
                    "entry_count": len(data.get("entries", [])),
                    "file": version_file.name,
                })
            except (json.JSONDecodeError, OSError):
                continue

        return versions

    def clear(self) -> None:
        """Clear all cached snapshots"""
        for version_file in self.cache_dir.glob("v_*.json"):
            version_file.unlink()

        logger.info("Snapshot cache cleared")

    def _version_files(self) -> list[Path]:
        return sorted(self.cache_dir.glob("v_*.json"), reverse=True)

    def _read(self, version_file: Path) -> Snapshot:
        with open(version_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        return Snapshot.build(
            (ConfigEntry.from_dict(item) for item in data["entries"]),
            version=data.get("version"),
            loaded_at=datetime.fromisoformat(data["loaded_at"]),
        )

    def _cleanup_old_versions(self) -> None:
        """Remove old version files beyond max_versions"""
        version_files = self._version_files()

        if len(version_files) > self.max_versions:
            for old_file in version_files[self.max_versions:]:
                old_file.unlink()
                logger.debug(f"Removed old cached snapshot: {old_file.name}")
