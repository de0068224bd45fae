"""sitewatch - website availability monitor with chat and email escalation."""

import argparse
import logging
import signal
import sys
from functools import partial
from threading import Event

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Event | None = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the monitoring service."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("sitewatch %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db, lookup_owner_email
    from .notifier import Notifier
    from .scheduler import Scheduler

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info(
            "Configuration loaded (tick: %ds, window reset: %ds)",
            config.monitor.tick_interval,
            config.monitor.reset_interval,
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    notifier = Notifier(config.chat, config.smtp)
    notifier.info("Starting script..")

    # 2. Open the store
    try:
        db_conn = init_db(config.database.path)
        logger.info("Database initialized at %s", config.database.path)
    except DatabaseError as e:
        logger.error("Database error: %s", e)
        notifier.notify_chat("WARNING --> Database connection error")
        sys.exit(1)

    notifier.set_owner_lookup(partial(lookup_owner_email, db_conn))
    notifier.info("Database connected \nMONITOR --> Script started")

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Start the scheduler
    scheduler = Scheduler(config, db_conn, notifier)

    try:
        scheduler.start()
        logger.info("Monitoring started, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup
        logger.info("Shutting down...")

        scheduler.stop()

        db_conn.close()
        logger.info("Database connection closed")

        logger.info("Shutdown complete")


def main() -> None:
    """Main entry point for the sitewatch package."""
    parser = argparse.ArgumentParser(description="sitewatch - website availability monitor")
    parser.add_argument(
        "--version",
        action="version",
        version=f"sitewatch {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser(
        "run",
        help="Start the monitoring service (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default=None,
        help="Optional YAML configuration file; environment variables override it",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
