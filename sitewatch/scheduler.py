"""Check scheduler: tick timer, dedup window reset timer and per-URL pipeline."""

import logging
import sqlite3
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime
from enum import Enum
from threading import Event, Thread

from .certs import inspect_certificate
from .config import Config
from .database import (
    DatabaseError,
    FetchError,
    cleanup_old_samples,
    list_monitored_urls,
    record_certificate,
    record_latency_sample,
    record_status,
)
from .dedup import DedupWindow
from .models import CertUnavailable, CheckOutcome, NotificationEvent, Severity, Success
from .notifier import Notifier
from .probe import probe

logger = logging.getLogger(__name__)

# Run latency sample cleanup every N ticks.
# At the default 600s tick this is roughly once every 16 hours.
CLEANUP_INTERVAL_TICKS = 100


class SchedulerState(Enum):
    BOOTSTRAPPING = "bootstrapping"
    RUNNING = "running"
    STOPPED = "stopped"


class Scheduler:
    """Periodically checks every monitored URL at most once per dedup window.

    Two background threads share one stop event: the tick thread performs an
    immediate full pass and then a check pass every ``tick_interval`` seconds,
    and the reset thread clears the dedup window every ``reset_interval``
    seconds on its own clock.

    Example:
        scheduler = Scheduler(config, db_conn, notifier)
        scheduler.start()
        # ... later ...
        scheduler.stop()
    """

    def __init__(
        self,
        config: Config,
        db_conn: sqlite3.Connection,
        notifier: Notifier,
        window: DedupWindow | None = None,
        on_check: Callable[[str, CheckOutcome], None] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config: Application configuration.
            db_conn: Store connection for the URL list and results.
            notifier: Chat and email notifier.
            window: Dedup window to use; a new empty one by default.
            on_check: Optional callback invoked after each URL pipeline completes.
        """
        self._config = config
        self._db_conn = db_conn
        self._notifier = notifier
        self._window = window if window is not None else DedupWindow()
        self._on_check = on_check
        self._stop_event = Event()
        self._tick_thread: Thread | None = None
        self._reset_thread: Thread | None = None
        self._tick_count = 0
        self._state = SchedulerState.BOOTSTRAPPING

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def window(self) -> DedupWindow:
        return self._window

    def start(self) -> None:
        """Start the tick and reset loops in background threads."""
        if self.is_running():
            logger.warning("Scheduler already running")
            return

        self._stop_event.clear()
        self._reset_thread = Thread(target=self._reset_loop, daemon=True, name="scheduler-reset")
        self._tick_thread = Thread(target=self._run_loop, daemon=True, name="scheduler-tick")
        self._reset_thread.start()
        self._tick_thread.start()
        logger.info(
            "Scheduler started (tick: %ds, window reset: %ds, workers: %d)",
            self._config.monitor.tick_interval,
            self._config.monitor.reset_interval,
            self._config.monitor.workers,
        )

    def stop(self, timeout: float = 10.0) -> None:
        """Stop both loops and wait for them to exit.

        A check in progress finishes first; each external call is bounded by
        its own timeout.

        Args:
            timeout: Maximum seconds to wait for each thread.
        """
        if not self.is_running():
            return

        logger.info("Stopping scheduler...")
        self._stop_event.set()

        for thread in (self._tick_thread, self._reset_thread):
            if thread is not None:
                thread.join(timeout=timeout)
                if thread.is_alive():
                    logger.warning("Thread %s did not stop within timeout", thread.name)

        self._state = SchedulerState.STOPPED
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        threads = (self._tick_thread, self._reset_thread)
        return any(thread is not None and thread.is_alive() for thread in threads)

    def run_initial_pass(self) -> None:
        """Check every URL once, regardless of the dedup window."""
        urls = self._fetch_urls()
        if urls is None:
            return
        self._check_urls(urls, respect_window=False)

    def run_tick(self) -> None:
        """Check every URL not yet checked in the current window."""
        urls = self._fetch_urls()
        if urls is None:
            return

        self._check_urls(urls, respect_window=True)

        self._tick_count += 1
        if self._tick_count >= CLEANUP_INTERVAL_TICKS:
            self._run_cleanup()
            self._tick_count = 0

    def check_url(self, url: str) -> CheckOutcome:
        """Probe one URL, persist the result and escalate failures.

        Store failures are logged and do not stop the pipeline.
        """
        outcome = probe(url, timeout=self._config.monitor.request_timeout)

        if isinstance(outcome, Success):
            self._record(record_status, url, outcome.status_label, outcome.response_time_ms)
            self._record(record_latency_sample, url, outcome.response_time_ms)
            logger.debug("%s: UP (%dms)", url, outcome.response_time_ms)
            self._check_certificate(url)
        else:
            self._record(record_status, url, outcome.status_label, 0)
            logger.warning("WEBSITE DOWN --> %s: %s", url, outcome.status_label)
            self._notifier.escalate(url, outcome)

        if self._on_check is not None:
            try:
                self._on_check(url, outcome)
            except Exception as e:
                logger.error("Check callback failed: %s", e)

        return outcome

    def _run_loop(self) -> None:
        """Tick loop - runs in background thread."""
        self._state = SchedulerState.RUNNING
        logger.debug("Tick loop started")

        self.run_initial_pass()

        interval = self._config.monitor.tick_interval
        next_tick = time.monotonic() + interval

        # Use wait() so we can be interrupted by stop_event
        while not self._stop_event.wait(timeout=max(0.0, next_tick - time.monotonic())):
            self.run_tick()
            next_tick += interval
            now = time.monotonic()
            if next_tick < now:
                # Ticks missed while checking are dropped, not queued
                next_tick = now + interval

        logger.debug("Tick loop exited")

    def _reset_loop(self) -> None:
        """Window reset loop - runs in background thread."""
        interval = self._config.monitor.reset_interval
        while not self._stop_event.wait(timeout=interval):
            self._window.reset()
            logger.debug("Dedup window reset")

    def _fetch_urls(self) -> list[str] | None:
        try:
            return list_monitored_urls(self._db_conn)
        except FetchError as e:
            logger.error("Error fetching website URLs, skipping tick: %s", e)
            return None

    def _check_urls(self, urls: list[str], respect_window: bool) -> None:
        """Run the pipeline for each distinct URL, in list order unless a pool is configured."""
        distinct = list(dict.fromkeys(urls))
        workers = self._config.monitor.workers

        if workers <= 1 or len(distinct) <= 1:
            for url in distinct:
                if self._stop_event.is_set():
                    return
                self._process(url, respect_window)
            return

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._process, url, respect_window): url for url in distinct}
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception as e:
                    logger.error("Failed to check %s: %s", futures[future], e)

    def _process(self, url: str, respect_window: bool) -> None:
        # Pool workers pick up queued URLs after stop() was requested
        if self._stop_event.is_set():
            return

        if respect_window and not self._window.should_check(url):
            logger.debug("%s already checked in this window, skipping", url)
            return

        try:
            self.check_url(url)
        except Exception:
            logger.exception("Failed to check %s", url)
        finally:
            self._window.mark_checked(url)

    def _check_certificate(self, url: str) -> None:
        result = inspect_certificate(url, timeout=self._config.monitor.request_timeout)

        if isinstance(result, CertUnavailable):
            if result.reason is not None:
                logger.error("Certificate check failed for %s: %s", url, result.reason)
                self._notifier.notify(
                    NotificationEvent(
                        severity=Severity.ATTENTION,
                        url=url,
                        message=f"Certificate check failed for website {url}. Status: {result.reason}",
                        timestamp=datetime.now(UTC),
                    )
                )
            return

        self._record(record_certificate, url, result.issuer, result.not_after_formatted)

        expires_in_days = result.expires_in_days(datetime.now(UTC))
        warning_days = self._config.monitor.ssl_warning_days
        if expires_in_days < 0:
            logger.warning("%s: SSL certificate expired %d days ago", url, -expires_in_days)
        elif expires_in_days <= warning_days:
            logger.warning(
                "%s: SSL certificate expires in %d days (threshold: %d)",
                url,
                expires_in_days,
                warning_days,
            )

    def _record(self, write: Callable[..., None], url: str, *args: object) -> None:
        """Run a store write, logging failures instead of raising."""
        try:
            write(self._db_conn, url, *args)
        except DatabaseError as e:
            logger.error("%s", e)

    def _run_cleanup(self) -> None:
        """Run periodic cleanup of old latency samples."""
        retention_days = self._config.database.retention_days
        try:
            deleted = cleanup_old_samples(self._db_conn, retention_days)
            if deleted > 0:
                logger.info("Cleaned up %d old response time samples", deleted)
        except DatabaseError as e:
            logger.error("Cleanup failed: %s", e)
