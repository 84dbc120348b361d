#!/usr/bin/env python3
"""
Config Refresh Coordinator - Entry Point

Keeps an in-process configuration snapshot in sync with a remote
key-value store and serves single values over HTTP.

Usage:
    config-refresh                       # Start with default config
    config-refresh --config my.yaml      # Use custom config file
    config-refresh --dry-run             # Print settings and exit
    config-refresh --verbose             # Enable debug logging
"""

import argparse
import asyncio
import logging
import os
import sys

from config_refresh.common.exceptions import ConfigError, StartupFetchError
from config_refresh.common.logging_setup import reconfigure_service_loggers, setup_logging
from config_refresh.services.refresh.service import (
    RefreshService,
    find_config_path,
    load_settings_file,
)


def print_startup_banner(settings, config_path) -> None:
    """Print startup information."""
    print()
    print("=" * 60)
    print("  CONFIG REFRESH COORDINATOR")
    print("=" * 60)
    print()
    print(f"  Config file:      {config_path}")
    print(f"  Endpoint:         {settings.endpoint or 'not set'}")
    print(f"  Label filter:     {settings.label_filter!r}")
    print(f"  Key filter:       {settings.key_filter!r}")
    print(f"  Sentinel:         {settings.sentinel_key} (label: {settings.sentinel_label!r})")
    print(f"  Tick interval:    {settings.tick_interval_s}s")
    print(f"  Cache expiration: {settings.cache_expiration_s}s")
    print(f"  Startup policy:   {settings.startup_policy.value}")
    print(f"  Snapshot cache:   {settings.cache_dir}")
    print(f"  HTTP server:      http://{settings.health_host}:{settings.health_port}")
    print()
    print("=" * 60)
    print()


async def main_async(service: RefreshService) -> None:
    """Run the service until shutdown."""
    try:
        await service.run()
    finally:
        await service.stop()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Config Refresh Coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    config-refresh                       # Start with default config
    config-refresh --config my.yaml      # Use custom config file
    config-refresh --dry-run             # Validate config and exit
    config-refresh -v                    # Enable debug logging

Endpoints:
    GET  /health          Service and coordinator status
    POST /refresh         Force a sentinel check now
    GET  /settings/{key}  Single value as plain text (?label=...)
        """
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: $CONFIG_REFRESH_CONFIG or /etc/config-refresh/config.yaml)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without starting"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging (plain text format)"
    )

    args = parser.parse_args(argv)

    if args.verbose:
        # Plain text in verbose/debug mode
        reconfigure_service_loggers("DEBUG", json_format=False)
        setup_logging("main", log_level="DEBUG", json_format=False)
    else:
        setup_logging(
            "main",
            log_level=os.environ.get("CONFIG_REFRESH_LOG_LEVEL", "INFO"),
            json_format=os.environ.get("CONFIG_REFRESH_LOG_FORMAT", "json").lower() == "json",
        )
    logger = logging.getLogger("config_refresh.main")

    config_path = find_config_path(args.config)
    try:
        settings = load_settings_file(config_path)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    print_startup_banner(settings, config_path)

    if args.dry_run:
        print("Configuration valid (dry run, not starting)")
        return 0

    try:
        service = RefreshService(settings)
        asyncio.run(main_async(service))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except (ConfigError, StartupFetchError, OSError) as e:
        logger.critical(f"Startup failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
