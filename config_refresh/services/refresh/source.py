"""
Remote Configuration Sources

The coordinator talks to the remote store through RemoteSource:
- fetch_sentinel(key, label) - current value/version of the sentinel key
- fetch_all(label_filter) - every entry matching the label filter

Any failure is raised as FetchError.

Implementations:
- InMemoryRemoteSource - local stub for development and tests
- HttpRemoteSource - key-value REST endpoint over httpx

Label filter syntax (comma-separated, in precedence order):
    "production"        entries labelled "production"
    "base,production"   both; "production" wins on key conflicts
    "dev*"              any label starting with "dev"
    "*"                 every label
    "" or "\\0"         entries without a label
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Iterable
from urllib.parse import quote

import httpx

from config_refresh.common.config import ConfigEntry, NULL_LABEL
from config_refresh.common.exceptions import ConfigError, FetchError
from config_refresh.common.logging_setup import get_service_logger

logger = get_service_logger("refresh.source")

# Query value the REST API uses for "no label"
NULL_LABEL_QUERY = "\0"


def parse_label_filter(label_filter: str | None) -> list[str]:
    """Split a label filter into patterns, in precedence order"""
    if not label_filter:
        return [NULL_LABEL]

    patterns = []
    for item in label_filter.split(","):
        item = item.strip()
        if item in ("", "\\0", "\0"):
            item = NULL_LABEL
        if item not in patterns:
            patterns.append(item)
    return patterns


def matches_pattern(value: str, pattern: str) -> bool:
    """Exact match, "*" for anything, trailing "*" for prefix"""
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return value.startswith(pattern[:-1])
    return value == pattern


def merge_in_order(batches: Iterable[Iterable[ConfigEntry]]) -> list[ConfigEntry]:
    """
    Flatten per-label batches, keeping each (key, label) once.

    An entry matched by several patterns keeps the position of its
    last match, so later labels keep their precedence.
    """
    ordered: dict[tuple[str, str], ConfigEntry] = {}
    for batch in batches:
        for entry in batch:
            scope = (entry.key, entry.label)
            ordered.pop(scope, None)
            ordered[scope] = entry
    return list(ordered.values())


class RemoteSource(ABC):
    """Abstract remote configuration store"""

    @abstractmethod
    async def fetch_sentinel(self, key: str, label: str = NULL_LABEL) -> str | None:
        """
        Fetch the sentinel's current value or version tag.

        Returns:
            The value/version tag, or None if the sentinel does not exist

        Raises:
            FetchError: on any remote failure
        """

    @abstractmethod
    async def fetch_all(self, label_filter: str = NULL_LABEL) -> list[ConfigEntry]:
        """
        Fetch all entries matching the label filter, in precedence order.

        Raises:
            FetchError: on any remote failure
        """

    async def close(self) -> None:
        """Release any held resources"""


class InMemoryRemoteSource(RemoteSource):
    """
    In-process stand-in for the remote store.

    Supports injecting failures (fail_next) and latency (delay_s),
    and counts calls for observability.
    """

    def __init__(
        self,
        entries: Iterable[ConfigEntry] | None = None,
        key_filter: str = "*",
        delay_s: float = 0.0,
    ):
        self._entries: dict[tuple[str, str], ConfigEntry] = {}
        self.key_filter = key_filter
        self.delay_s = delay_s
        self._revision = 0
        self._failures_pending = 0
        self._failure_message = "Remote source unavailable"

        self.sentinel_calls = 0
        self.fetch_all_calls = 0

        for entry in entries or []:
            self._entries[(entry.key, entry.label)] = entry

    def set(self, key: str, value: str, label: str = NULL_LABEL) -> ConfigEntry:
        """Create or update an entry (bumps its etag)"""
        self._revision += 1
        entry = ConfigEntry(key=key, value=value, label=label, etag=f"rev-{self._revision}")
        self._entries[(key, label)] = entry
        return entry

    def delete(self, key: str, label: str = NULL_LABEL) -> None:
        self._entries.pop((key, label), None)

    def fail_next(self, count: int = 1, message: str = "Remote source unavailable") -> None:
        """Make the next `count` calls raise FetchError"""
        self._failures_pending = count
        self._failure_message = message

    async def _call(self, operation: str) -> None:
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        if self._failures_pending > 0:
            self._failures_pending -= 1
            raise FetchError(self._failure_message, operation=operation)

    async def fetch_sentinel(self, key: str, label: str = NULL_LABEL) -> str | None:
        self.sentinel_calls += 1
        await self._call("fetch_sentinel")

        entry = self._entries.get((key, label))
        return entry.value if entry else None

    async def fetch_all(self, label_filter: str = NULL_LABEL) -> list[ConfigEntry]:
        self.fetch_all_calls += 1
        await self._call("fetch_all")

        key_patterns = [p.strip() for p in self.key_filter.split(",") if p.strip()] or ["*"]
        batches = []
        for pattern in parse_label_filter(label_filter):
            batch = [
                entry
                for (key, label), entry in sorted(self._entries.items())
                if matches_pattern(label, pattern)
                and any(matches_pattern(key, kp) for kp in key_patterns)
            ]
            batches.append(batch)
        return merge_in_order(batches)


class HttpRemoteSource(RemoteSource):
    """
    Key-value REST source.

    Endpoints:
    - GET {endpoint}/kv?key=...&label=...  -> {"items": [...], "@nextLink": ...}
    - GET {endpoint}/kv/{key}?label=...    -> single item, 404 if absent

    The sentinel's version tag is the item's etag when present,
    otherwise its value.
    """

    def __init__(
        self,
        endpoint: str,
        key_filter: str = "*",
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.key_filter = key_filter
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._transport = transport
        # Reusable HTTP client - avoids connection overhead per request
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.endpoint,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch_sentinel(self, key: str, label: str = NULL_LABEL) -> str | None:
        client = await self._get_client()
        try:
            response = await client.get(
                f"/kv/{quote(key, safe='')}",
                params={"label": label or NULL_LABEL_QUERY},
            )
        except httpx.HTTPError as e:
            raise FetchError(f"HTTP error fetching sentinel {key!r}: {e}", operation="fetch_sentinel") from e

        if response.status_code == 404:
            logger.debug(f"Sentinel {key!r} not found (label: {label!r})")
            return None

        item = self._decode(response, "fetch_sentinel")
        if not isinstance(item, dict):
            raise FetchError("Unexpected sentinel payload", operation="fetch_sentinel")
        return item.get("etag") or item.get("value")

    async def fetch_all(self, label_filter: str = NULL_LABEL) -> list[ConfigEntry]:
        client = await self._get_client()

        batches = []
        for pattern in parse_label_filter(label_filter):
            batches.append(await self._fetch_label(client, pattern))

        entries = merge_in_order(batches)
        logger.debug(
            f"Fetched {len(entries)} entries (label filter: {label_filter!r})",
            extra={"entry_count": len(entries), "label_filter": label_filter},
        )
        return entries

    async def _fetch_label(self, client: httpx.AsyncClient, pattern: str) -> list[ConfigEntry]:
        """Fetch every page for one label pattern"""
        entries: list[ConfigEntry] = []
        url: str | None = "/kv"
        params: dict[str, str] | None = {
            "key": self.key_filter,
            "label": pattern or NULL_LABEL_QUERY,
        }

        while url:
            try:
                response = await client.get(url, params=params)
            except httpx.HTTPError as e:
                raise FetchError(f"HTTP error fetching entries: {e}", operation="fetch_all") from e

            data = self._decode(response, "fetch_all")
            if not isinstance(data, dict):
                raise FetchError("Unexpected entries payload", operation="fetch_all")

            try:
                entries.extend(ConfigEntry.from_dict(item) for item in data.get("items", []))
            except ConfigError as e:
                raise FetchError(str(e), operation="fetch_all") from e

            # nextLink already carries the query string
            url = data.get("@nextLink")
            params = None

        return entries

    @staticmethod
    def _decode(response: httpx.Response, operation: str):
        if response.is_error:
            raise FetchError(
                f"{response.status_code} from {response.request.url}",
                operation=operation,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON response: {e}", operation=operation) from e
