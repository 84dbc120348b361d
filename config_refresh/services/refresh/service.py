"""
Refresh Service - Configuration Snapshot Management

Responsible for:
- Wiring the remote source, snapshot store, cache and coordinator
- Initial snapshot load before serving (per startup policy)
- Periodic sentinel polling (every tick interval)
- Health, manual refresh and single-value lookup HTTP endpoints
"""

import asyncio
import os
import signal
from datetime import datetime, timezone
from pathlib import Path

import yaml
from aiohttp import web

from config_refresh.common.config import RefreshSettings, load_refresh_settings
from config_refresh.common.exceptions import ConfigError, NotFoundError
from config_refresh.common.logging_setup import get_service_logger

from .cache import SnapshotCache
from .coordinator import RefreshCoordinator, RefreshOutcome
from .source import HttpRemoteSource, RemoteSource
from .store import SnapshotStore

logger = get_service_logger("refresh")

CONFIG_PATH_ENV = "CONFIG_REFRESH_CONFIG"


def find_config_path(explicit: str | None = None) -> Path:
    """Find the settings file (explicit path, env var, then well-known paths)"""
    if explicit:
        return Path(explicit)

    if os.environ.get(CONFIG_PATH_ENV):
        return Path(os.environ[CONFIG_PATH_ENV])

    possible_paths = [
        Path("/etc/config-refresh/config.yaml"),
        Path.cwd() / "config.yaml",
    ]

    for path in possible_paths:
        if path.exists():
            return path

    return possible_paths[0]


def load_settings_file(path: Path) -> RefreshSettings:
    """
    Load settings from a YAML file.

    Raises:
        ConfigError: if the file is missing, unparsable or invalid
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}", recoverable=False)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing config {path}: {e}", recoverable=False) from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping", recoverable=False)

    return load_refresh_settings(data)


class RefreshService:
    """
    Refresh Service

    Keeps the snapshot store current with:
    - Sentinel-based change detection every tick
    - Last-known-good snapshot cache on disk
    - HTTP endpoints for health, manual refresh and value lookup
    """

    def __init__(
        self,
        settings: RefreshSettings,
        source: RemoteSource | None = None,
        cache: SnapshotCache | None = None,
    ):
        self.settings = settings

        if source is None:
            if not settings.endpoint:
                raise ConfigError("Missing source.endpoint", recoverable=False)
            source = HttpRemoteSource(
                settings.endpoint,
                key_filter=settings.key_filter,
                headers=settings.headers,
                timeout=settings.request_timeout_s,
            )

        self.source = source
        self.store = SnapshotStore()
        self.cache = cache or SnapshotCache(settings.cache_dir, settings.max_cached_versions)
        self.coordinator = RefreshCoordinator(
            source=self.source,
            store=self.store,
            sentinel_key=settings.sentinel_key,
            sentinel_label=settings.sentinel_label,
            label_filter=settings.label_filter,
            tick_interval_s=settings.tick_interval_s,
            cache_expiration_s=settings.cache_expiration_s,
            startup_policy=settings.startup_policy,
            cache=self.cache,
        )
        self.coordinator.add_listener(self.cache)

        self._start_time = datetime.now(timezone.utc)

        # Health server
        self._health_app: web.Application | None = None
        self._health_runner: web.AppRunner | None = None

        # State
        self._running = False
        self._shutdown_event = asyncio.Event()

    @classmethod
    def from_config_file(cls, config_path: str | None = None) -> "RefreshService":
        return cls(load_settings_file(find_config_path(config_path)))

    async def start(self) -> None:
        """
        Load the initial snapshot, then start polling and the HTTP server.

        Raises:
            StartupFetchError: initial load failed under the startup policy
        """
        logger.info(
            "Starting Refresh Service",
            extra={
                "sentinel_key": self.settings.sentinel_key,
                "label_filter": self.settings.label_filter,
                "startup_policy": self.settings.startup_policy.value,
            },
        )

        await self.coordinator.start()
        await self._start_health_server()

        self._running = True
        logger.info(
            f"Refresh Service started ({len(self.store)} entries, "
            f"version: {self.store.version})"
        )

    async def run(self) -> None:
        """Start and serve until a shutdown signal arrives"""
        await self.start()
        self._setup_signal_handlers()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the service; an in-flight refresh is allowed to finish"""
        logger.info("Stopping Refresh Service")

        self._running = False

        await self.coordinator.stop()
        await self._stop_health_server()
        await self.source.close()

        logger.info("Refresh Service stopped")

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_post("/refresh", self._refresh_handler)
        app.router.add_get("/settings/{key}", self._settings_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_app = self.build_app()

        self._health_runner = web.AppRunner(self._health_app)
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, self.settings.health_host, self.settings.health_port)
        await site.start()

        logger.info(
            f"Health server started on {self.settings.health_host}:{self.settings.health_port}"
        )

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return web.json_response({
            "status": "healthy" if self._running and self.coordinator.is_running else "unhealthy",
            "service": "refresh",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "config_version": self.store.version,
            "coordinator": self.coordinator.get_stats(),
        })

    async def _refresh_handler(self, request: web.Request) -> web.Response:
        """Handle forced refresh requests"""
        outcome = await self.coordinator.try_refresh_once()

        return web.json_response({
            "success": outcome is not RefreshOutcome.ERROR,
            "outcome": outcome.value,
            "config_version": self.store.version,
            "error": self.coordinator.last_error,
        })

    async def _settings_handler(self, request: web.Request) -> web.Response:
        """Return a single configuration value as plain text"""
        key = request.match_info["key"]
        label = request.query.get("label")

        try:
            value = self.store.get(key, label)
        except NotFoundError as e:
            raise web.HTTPNotFound(text=str(e))

        return web.Response(text=value, content_type="text/plain")

