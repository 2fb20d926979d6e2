"""CLI entry point for the Token Alert Hub.

Usage:
    python -m token_alert_hub [options]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.config
import sys
from typing import NoReturn

from pydantic import ValidationError

from token_alert_hub import __version__
from token_alert_hub.config import Settings, clear_settings_cache, get_settings
from token_alert_hub.pipeline import Pipeline
from token_alert_hub.rules.models import RuleValidationError
from token_alert_hub.rules.store import InMemoryRuleStore
from token_alert_hub.shutdown import GracefulShutdown

# Application info
APP_NAME = "Token Alert Hub"
APP_VERSION = __version__

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="token-alert-hub",
        description="Evaluate alert rules against token and wallet events and deliver the alerts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m token_alert_hub                    Run full pipeline
  python -m token_alert_hub --config-check     Validate config and exit
  python -m token_alert_hub --dry-run          Evaluate rules without sending alerts
  python -m token_alert_hub --log-level DEBUG  Enable debug logging
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {APP_VERSION}",
    )

    parser.add_argument(
        "--config-check",
        action="store_true",
        help="Validate configuration and exit without running pipeline",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level (default: from settings)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate rules but don't send or broadcast alerts",
    )

    parser.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="Override health check port (default: from settings)",
    )

    return parser


def configure_logging(level: str) -> None:
    """Configure logging for the application."""
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": (
                    "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "detailed" if level == "DEBUG" else "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        # Quieter logging for noisy libraries
        "loggers": {
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
            "websockets": {"level": "WARNING"},
            "aiohttp.access": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
        },
    }
    logging.config.dictConfig(config)


def print_banner() -> None:
    banner = f"""
╔══════════════════════════════════════════════════════════════╗
║                                                              ║
║   {APP_NAME:^56}   ║
║   {"v" + APP_VERSION:^56}   ║
║                                                              ║
╚══════════════════════════════════════════════════════════════╝
"""
    print(banner)


def _enabled(value: object) -> str:
    return "enabled" if value == "True" else "disabled"


def print_config_summary(settings: Settings, dry_run: bool) -> None:
    """Print a summary of the configuration."""
    summary = settings.redacted_summary()
    hub = summary["hub"]
    assert isinstance(hub, dict)
    print("Configuration:")
    print(f"  Database: {summary['database_url']}")
    print(f"  Redis: {summary['redis_url']}")
    print(f"  Event Stream: {summary['event_stream']}")
    print(f"  Log Level: {summary['log_level']}")
    print(f"  Health Port: {summary['health_port']}")
    print(f"  Dry Run: {dry_run}")
    print(f"  Discord: {_enabled(summary['discord_enabled'])}")
    print(f"  Telegram: {_enabled(summary['telegram_enabled'])}")
    print(f"  Webhook: {_enabled(summary['webhook_enabled'])}")
    print(f"  Hub: {_enabled(hub['enabled'])} ({hub['address']})")
    print()


def validate_config() -> Settings | None:
    """Validate and load configuration.

    Returns:
        Settings instance if valid, None if invalid.
    """
    try:
        clear_settings_cache()
        return get_settings()
    except ValidationError as e:
        print("Configuration validation failed:", file=sys.stderr)
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            msg = error["msg"]
            print(f"  {field}: {msg}", file=sys.stderr)
        return None


def run_config_check(settings: Settings) -> int:
    """Run configuration check.

    Returns:
        Exit code (0 for success, 2 if the rules file is unusable).
    """
    print("Configuration is valid!")
    print()
    print_config_summary(settings, dry_run=False)

    print("Checking component availability...")
    print(f"  Discord: {'configured' if settings.discord.enabled else 'not configured'}")
    print(f"  Telegram: {'configured' if settings.telegram.enabled else 'not configured'}")
    print(f"  Webhook: {'configured' if settings.webhook.enabled else 'not configured'}")
    print(f"  Hub API keys: {'configured' if settings.hub.api_keys else 'not configured'}")

    rules_file = settings.alerting.rules_file
    if rules_file and not settings.database.enabled:
        try:
            store = InMemoryRuleStore.from_file(rules_file)
        except (OSError, ValueError, RuleValidationError) as e:
            print(f"  Rules file: invalid ({e})", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        print(f"  Rules file: {len(store.all())} rules")

    print()
    print("All checks passed. Ready to run.")
    return EXIT_SUCCESS


async def run_pipeline(
    settings: Settings,
    dry_run: bool,
    *,
    health_port: int | None = None,
    shutdown_timeout: float = 30.0,
) -> int:
    """Run the pipeline until a shutdown signal arrives.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)
    shutdown = GracefulShutdown(timeout=shutdown_timeout)

    try:
        async with shutdown:
            pipeline = Pipeline(settings, dry_run=dry_run)
            shutdown.register_cleanup("pipeline", pipeline.stop)

            logger.info("Starting pipeline...")
            await pipeline.start(health_port=health_port)
            logger.info("Pipeline running. Press Ctrl+C to stop.")

            await shutdown.wait()
            logger.info("Shutdown signal received, stopping pipeline...")

        return EXIT_SUCCESS
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception("Pipeline failed: %s", e)
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    settings = validate_config()
    if settings is None:
        sys.exit(EXIT_CONFIG_ERROR)

    log_level = args.log_level or settings.log_level
    configure_logging(log_level)

    print_banner()

    if args.config_check:
        sys.exit(run_config_check(settings))

    dry_run = args.dry_run or settings.dry_run
    print_config_summary(settings, dry_run)

    exit_code = asyncio.run(run_pipeline(settings, dry_run, health_port=args.health_port))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
