"""Main entry point for the brokerwatch service."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional, Tuple

from brokerwatch.brokers import BrokerUpdater, load_broker_definitions
from brokerwatch.config.environment import EnvironmentConfig
from brokerwatch.config.exceptions import ConfigurationError
from brokerwatch.config.loader import load_config
from brokerwatch.config.models import AppConfig
from brokerwatch.engine import DriverFactory, JobEngine, load_driver_factory
from brokerwatch.logging import get_logger
from brokerwatch.logging.config import configure_logging
from brokerwatch.notifications import LoggingHooks
from brokerwatch.persistence.database import close_database, init_database
from brokerwatch.profiles import ProfileService
from brokerwatch.scheduler import OperationRunner, SchedulerService
from brokerwatch.services import HTTPCaptchaService, HTTPEmailService

logger = get_logger(__name__, component="cli")


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str], brokers_dir: Optional[Path]
) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load configuration and apply command-line overrides.

    Log level priority: CLI > environment > config file.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    if brokers_dir is not None:
        app_config.brokers_dir = str(brokers_dir)

    if log_level_override:
        env_config.log_level = log_level_override
    elif not env_config.log_level:
        env_config.log_level = app_config.logging.level

    return app_config, env_config


def resolve_driver_factory(app_config: AppConfig, env_config: EnvironmentConfig) -> DriverFactory:
    """
    Resolve the automation driver factory, preferring BROKERWATCH_DRIVER.

    Raises:
        ConfigurationError: If no driver is configured or it cannot be imported
    """
    reference = env_config.driver or app_config.engine.driver
    if not reference:
        raise ConfigurationError(
            "No automation driver configured",
            suggestions=[
                "Set BROKERWATCH_DRIVER=package.module:factory in .env",
                "Or set engine.driver in config.yaml",
            ],
        )
    try:
        return load_driver_factory(reference)
    except (ImportError, ValueError) as e:
        raise ConfigurationError(
            f"Cannot load automation driver {reference!r}: {e}",
            suggestions=["Check that the module is installed and the factory name is correct"],
        ) from e


def build_engine(
    app_config: AppConfig, env_config: EnvironmentConfig, cancel_event: threading.Event
) -> JobEngine:
    """Create the job engine with the HTTP captcha and email clients that are configured."""
    services = app_config.services
    client_options = dict(
        auth_token=env_config.service_auth_token,
        timeout=services.http_request_timeout,
        user_agent=services.user_agent,
        poll_interval=services.poll_interval_seconds,
        max_poll_attempts=services.max_poll_attempts,
        stop_event=cancel_event,
    )

    captcha_service = None
    if services.captcha_base_url:
        captcha_service = HTTPCaptchaService(services.captcha_base_url, **client_options)

    email_service = None
    if services.email_base_url:
        email_service = HTTPEmailService(services.email_base_url, **client_options)

    logger.info(
        "Services initialized",
        extra={
            "event": "services.initialized",
            "captcha_service": captcha_service is not None,
            "email_service": email_service is not None,
        },
    )
    return JobEngine(
        app_config.engine,
        captcha_service=captcha_service,
        email_service=email_service,
        cancel_event=cancel_event,
    )


def validate_setup(config_path: Optional[Path], brokers_dir: Optional[Path]) -> int:
    """Check the configuration file and every broker definition, then exit.

    Nothing is written: no database, driver or services are touched.

    Returns:
        0 if everything is valid, 1 otherwise
    """
    try:
        app_config, _ = load_runtime_config(config_path, None, brokers_dir)
    except ConfigurationError as e:
        print(f"✗ Configuration validation failed:\n{e}")
        return 1
    print("✓ Configuration is valid")

    result = load_broker_definitions(app_config.brokers_dir)
    for failure in result.failures:
        print(f"✗ {failure}")
    if not result.brokers and not result.had_failures:
        print(f"✗ No broker definitions found in {app_config.brokers_dir}")
        return 1

    print(f"✓ {len(result.brokers)} broker definition(s) loaded from {app_config.brokers_dir}")
    return 1 if result.had_failures else 0


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    parser = argparse.ArgumentParser(
        description="brokerwatch - scans people-search sites and submits opt-out requests"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml or config/config.yaml)",
    )
    parser.add_argument(
        "--manual-run",
        action="store_true",
        help="Run a single scheduler tick immediately and exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )
    parser.add_argument(
        "--brokers-dir",
        type=Path,
        default=None,
        help="Directory of broker definition JSON files (overrides config)",
    )

    parser.add_argument(
        "--validate",
        action="store_true",
        help="Check the configuration and broker definitions, then exit",
    )

    args = parser.parse_args(argv)

    if args.validate:
        return validate_setup(args.config, args.brokers_dir)

    try:
        app_config, env_config = load_runtime_config(args.config, args.log_level, args.brokers_dir)

        configure_logging(
            level=env_config.log_level,
            format_type=app_config.logging.format,
            environment=env_config.environment,
        )

        logger.info(
            "brokerwatch starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "manual_run": args.manual_run,
            },
        )

        driver_factory = resolve_driver_factory(app_config, env_config)

        init_database(env_config.database_url)

        logger.info(
            "Configuration loaded",
            extra={
                "event": "config.loaded",
                "brokers_dir": app_config.brokers_dir,
                "scan_interval_seconds": app_config.scan_interval_seconds,
                "max_concurrency": app_config.scheduling.max_concurrency,
            },
        )

        ProfileService().save_profile(app_config.profile)
        updater = BrokerUpdater(app_config.brokers_dir)
        updater.check_for_updates(app_config.app_version)

        cancel_event = threading.Event()
        engine = build_engine(app_config, env_config, cancel_event)
        runner = OperationRunner(
            app_config=app_config,
            engine=engine,
            driver_factory=driver_factory,
            hooks=LoggingHooks(),
            updater=updater,
        )

        if args.manual_run:
            logger.info("Executing manual run", extra={"event": "service.manual_run.starting"})
            result = runner.run_once()

            logger.info(
                f"Manual run completed: "
                f"{result.scans_run} scans, "
                f"{result.opt_outs_run} opt-outs, "
                f"{result.matches_found} matches, "
                f"{result.profiles_removed} removed, "
                f"{result.failed} failed",
                extra={
                    "event": "service.manual_run.completed",
                    "duration_seconds": result.total_duration_seconds,
                    "had_errors": result.had_errors,
                },
            )

            close_database()
            logger.info(
                "brokerwatch stopped",
                extra={
                    "event": "service.stopping",
                    "uptime_seconds": round(time.time() - start_time, 2),
                },
            )
            return 1 if result.had_errors else 0

        stopped = threading.Event()
        scheduler_service = SchedulerService(
            tick=runner.run_once,
            interval_seconds=app_config.scan_interval_seconds,
            shutdown_event=cancel_event,
        )

        def signal_handler(signum, frame):
            logger.info(
                f"Received signal {signum}, shutting down",
                extra={"event": "service.signal_received", "signal": signum},
            )
            stopped.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        scheduler_service.start()
        logger.info(
            "Scheduler started. Press Ctrl+C to stop",
            extra={"event": "service.daemon_mode.started"},
        )

        try:
            stopped.wait()
        except KeyboardInterrupt:
            logger.info(
                "Keyboard interrupt received, shutting down",
                extra={"event": "service.keyboard_interrupt"},
            )

        # Drivers of cancelled jobs are released before the database closes.
        scheduler_service.shutdown(wait=True)
        close_database()

        logger.info(
            "brokerwatch stopped",
            extra={
                "event": "service.stopping",
                "uptime_seconds": round(time.time() - start_time, 2),
            },
        )
        return 0

    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        logger.error(
            f"Configuration error: {e}",
            extra={"event": "config.error", "error_type": "ConfigurationError"},
        )
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error during startup",
            extra={
                "event": "service.startup.failed",
                "error_type": type(e).__name__,
                "error": str(e),
            },
            exc_info=True,
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
