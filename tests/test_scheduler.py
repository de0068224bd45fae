"""Tests for the check scheduler."""

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from functools import partial
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from sitewatch.config import ChatConfig, Config, DatabaseConfig, MonitorConfig, SmtpConfig
from sitewatch.database import DatabaseError, FetchError, init_db, lookup_owner_email
from sitewatch.dedup import DedupWindow
from sitewatch.models import (
    REASON_NO_SUCH_HOST,
    CertificateInfo,
    CertUnavailable,
    HTTPFailure,
    Severity,
    Success,
    TransportFailure,
)
from sitewatch.notifier import Notifier
from sitewatch.scheduler import Scheduler, SchedulerState

WEBHOOK_URL = "https://hooks.example.com/services/T000/B000/XXXX"


def _make_config(db_path: str, workers: int = 1, reset_interval: int = 300) -> Config:
    return Config(
        chat=ChatConfig(webhook_url=WEBHOOK_URL),
        smtp=SmtpConfig(host="smtp.example.com", from_addr="monitor@example.com"),
        monitor=MonitorConfig(
            tick_interval=600,
            reset_interval=reset_interval,
            request_timeout=5,
            workers=workers,
        ),
        database=DatabaseConfig(path=db_path),
    )


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "test.db")


@pytest.fixture
def config(db_path: str) -> Config:
    return _make_config(db_path)


@pytest.fixture
def db_conn(db_path: str) -> sqlite3.Connection:
    conn = init_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def seed(db_conn: sqlite3.Connection) -> Callable[..., None]:
    """Insert monitored URLs, optionally owned by a client with an email."""

    def _seed(*urls: str, owner_email: str | None = None) -> None:
        client_id = None
        if owner_email is not None:
            client_id = db_conn.execute("INSERT INTO users (email) VALUES (?)", (owner_email,)).lastrowid
        for url in urls:
            db_conn.execute("INSERT INTO websites (website_url, client) VALUES (?, ?)", (url, client_id))
        db_conn.commit()

    return _seed


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock(spec=Notifier)


@pytest.fixture
def outcomes() -> dict:
    """Probe outcome per URL; unknown URLs answer Success(200, 100)."""
    return {}


@pytest.fixture
def mock_probe(outcomes: dict):
    def _probe(url: str, timeout: int):
        return outcomes.get(url, Success(200, 100))

    with patch("sitewatch.scheduler.probe", side_effect=_probe) as mock:
        yield mock


@pytest.fixture
def mock_cert():
    info = CertificateInfo(issuer="CN=R3,O=Let's Encrypt,C=US", not_after=datetime.now(UTC) + timedelta(days=90))
    with patch("sitewatch.scheduler.inspect_certificate", return_value=info) as mock:
        yield mock


def _website_row(conn: sqlite3.Connection, url: str) -> sqlite3.Row:
    return conn.execute("SELECT * FROM websites WHERE website_url = ?", (url,)).fetchone()


def _probed_urls(mock_probe: MagicMock) -> list[str]:
    return [c.args[0] for c in mock_probe.call_args_list]


class TestCheckUrl:
    """Tests for the per-URL pipeline."""

    def test_success_records_status_latency_and_certificate(
        self, config, db_conn, seed, notifier, outcomes, mock_probe, mock_cert
    ) -> None:
        seed("https://ok.test")
        outcomes["https://ok.test"] = Success(200, 120)
        scheduler = Scheduler(config, db_conn, notifier)

        scheduler.check_url("https://ok.test")

        row = _website_row(db_conn, "https://ok.test")
        assert row["website_status"] == "Up"
        assert row["response_time_ms"] == 120
        assert row["ssl_issuer"] == "CN=R3,O=Let's Encrypt,C=US"
        assert row["ssl_expired_date"].endswith("UTC")
        samples = db_conn.execute("SELECT response_time_ms FROM response_times").fetchall()
        assert [s[0] for s in samples] == [120]
        mock_probe.assert_called_once_with("https://ok.test", timeout=5)
        mock_cert.assert_called_once_with("https://ok.test", timeout=5)
        notifier.escalate.assert_not_called()

    def test_no_such_host_warns_chat_and_emails_owner(
        self, config, db_conn, seed, outcomes, mock_probe, mock_cert
    ) -> None:
        seed("https://down.test", owner_email="owner@client.test")
        outcomes["https://down.test"] = TransportFailure(
            REASON_NO_SUCH_HOST, "dial tcp: lookup down.test: no such host"
        )
        notifier = Notifier(config.chat, config.smtp, owner_lookup=partial(lookup_owner_email, db_conn))
        scheduler = Scheduler(config, db_conn, notifier)

        with patch("sitewatch.notifier.requests.post") as mock_post, patch(
            "sitewatch.notifier.smtplib.SMTP"
        ) as mock_smtp:
            mock_post.return_value = MagicMock(status_code=200)
            scheduler.check_url("https://down.test")

        text = mock_post.call_args.kwargs["json"]["text"]
        assert text.startswith("WARNING: Website https://down.test could be down.")
        server = mock_smtp.return_value.__enter__.return_value
        _, to_addrs, message = server.sendmail.call_args.args
        assert to_addrs == ["owner@client.test"]
        assert "no such host" in message

        row = _website_row(db_conn, "https://down.test")
        assert row["website_status"] == "dial tcp: lookup down.test: no such host"
        assert row["response_time_ms"] == 0
        assert db_conn.execute("SELECT COUNT(*) FROM response_times").fetchone()[0] == 0
        mock_cert.assert_not_called()

    def test_http_failure_records_status_code_and_escalates(
        self, config, db_conn, seed, notifier, outcomes, mock_probe, mock_cert
    ) -> None:
        seed("https://slow.test", owner_email="owner@client.test")
        outcomes["https://slow.test"] = HTTPFailure(503, 40)
        scheduler = Scheduler(config, db_conn, notifier)

        scheduler.check_url("https://slow.test")

        row = _website_row(db_conn, "https://slow.test")
        assert row["website_status"] == "Down (Status Code: 503)"
        assert row["response_time_ms"] == 0
        notifier.escalate.assert_called_once_with("https://slow.test", HTTPFailure(503, 40))
        mock_cert.assert_not_called()

    def test_store_write_failure_does_not_abort_pipeline(
        self, config, db_conn, seed, notifier, mock_probe, mock_cert
    ) -> None:
        seed("https://ok.test")
        scheduler = Scheduler(config, db_conn, notifier)

        with patch("sitewatch.scheduler.record_status", side_effect=DatabaseError("disk full")):
            outcome = scheduler.check_url("https://ok.test")

        assert outcome == Success(200, 100)
        assert db_conn.execute("SELECT COUNT(*) FROM response_times").fetchone()[0] == 1
        mock_cert.assert_called_once()

    def test_certificate_failure_sends_attention(
        self, config, db_conn, seed, notifier, mock_probe, mock_cert
    ) -> None:
        seed("https://badcert.test")
        mock_cert.return_value = CertUnavailable("SSL connection timeout")
        scheduler = Scheduler(config, db_conn, notifier)

        scheduler.check_url("https://badcert.test")

        event = notifier.notify.call_args.args[0]
        assert event.severity == Severity.ATTENTION
        assert event.url == "https://badcert.test"
        assert "SSL connection timeout" in event.message
        assert _website_row(db_conn, "https://badcert.test")["ssl_issuer"] is None
        assert _website_row(db_conn, "https://badcert.test")["website_status"] == "Up"

    def test_plain_http_has_no_certificate_and_no_alert(
        self, config, db_conn, seed, notifier, mock_probe, mock_cert
    ) -> None:
        seed("http://plain.test")
        mock_cert.return_value = CertUnavailable(None)
        scheduler = Scheduler(config, db_conn, notifier)

        scheduler.check_url("http://plain.test")

        notifier.notify.assert_not_called()
        assert _website_row(db_conn, "http://plain.test")["ssl_issuer"] is None

    def test_expiring_certificate_logs_warning(
        self, config, db_conn, seed, notifier, mock_probe, mock_cert, caplog
    ) -> None:
        seed("https://soon.test")
        mock_cert.return_value = CertificateInfo(issuer="CN=R3", not_after=datetime.now(UTC) + timedelta(days=5, hours=1))
        scheduler = Scheduler(config, db_conn, notifier)

        with caplog.at_level(logging.WARNING, logger="sitewatch.scheduler"):
            scheduler.check_url("https://soon.test")

        assert "SSL certificate expires in 5 days" in caplog.text
        assert _website_row(db_conn, "https://soon.test")["ssl_issuer"] == "CN=R3"

    def test_on_check_callback(self, config, db_conn, seed, notifier, mock_probe, mock_cert) -> None:
        seed("https://ok.test")
        on_check = MagicMock()
        scheduler = Scheduler(config, db_conn, notifier, on_check=on_check)

        scheduler.check_url("https://ok.test")

        on_check.assert_called_once_with("https://ok.test", Success(200, 100))

    def test_failing_callback_is_logged(self, config, db_conn, seed, notifier, mock_probe, mock_cert) -> None:
        seed("https://ok.test")
        scheduler = Scheduler(config, db_conn, notifier, on_check=MagicMock(side_effect=RuntimeError("boom")))

        assert scheduler.check_url("https://ok.test") == Success(200, 100)


class TestTicks:
    """Tests for tick passes and the dedup window."""

    def test_second_tick_in_same_window_probes_nothing(
        self, config, db_conn, seed, notifier, mock_probe, mock_cert
    ) -> None:
        seed("https://a.test", "https://b.test")
        scheduler = Scheduler(config, db_conn, notifier)

        scheduler.run_tick()
        scheduler.run_tick()

        assert _probed_urls(mock_probe) == ["https://a.test", "https://b.test"]

    def test_reset_allows_probing_again(self, config, db_conn, seed, notifier, mock_probe, mock_cert) -> None:
        seed("https://a.test")
        scheduler = Scheduler(config, db_conn, notifier)

        scheduler.run_tick()
        scheduler.window.reset()
        scheduler.run_tick()

        assert mock_probe.call_count == 2

    def test_initial_pass_ignores_window_and_marks_urls(
        self, config, db_conn, seed, notifier, mock_probe, mock_cert
    ) -> None:
        seed("https://a.test", "https://b.test")
        window = DedupWindow()
        window.mark_checked("https://a.test")
        scheduler = Scheduler(config, db_conn, notifier, window=window)

        scheduler.run_initial_pass()
        assert _probed_urls(mock_probe) == ["https://a.test", "https://b.test"]

        scheduler.run_tick()
        assert mock_probe.call_count == 2

    def test_fetch_error_skips_tick(self, config, db_conn, notifier, mock_probe, mock_cert) -> None:
        scheduler = Scheduler(config, db_conn, notifier)

        with patch("sitewatch.scheduler.list_monitored_urls", side_effect=FetchError("gone")):
            scheduler.run_tick()
            scheduler.run_initial_pass()

        mock_probe.assert_not_called()
        assert len(scheduler.window) == 0

    def test_probe_exception_does_not_stop_other_urls(
        self, config, db_conn, seed, notifier, mock_cert
    ) -> None:
        seed("https://a.test", "https://broken.test", "https://c.test")

        def _probe(url: str, timeout: int):
            if url == "https://broken.test":
                raise RuntimeError("unexpected")
            return Success(200, 50)

        scheduler = Scheduler(config, db_conn, notifier)
        with patch("sitewatch.scheduler.probe", side_effect=_probe) as mock_probe:
            scheduler.run_tick()

        assert _probed_urls(mock_probe) == ["https://a.test", "https://broken.test", "https://c.test"]
        assert "https://broken.test" in scheduler.window
        assert _website_row(db_conn, "https://c.test")["website_status"] == "Up"

    def test_duplicate_urls_are_checked_once(self, config, db_conn, notifier, mock_probe, mock_cert) -> None:
        scheduler = Scheduler(config, db_conn, notifier)
        urls = ["https://a.test", "https://a.test", "https://b.test"]

        with patch("sitewatch.scheduler.list_monitored_urls", return_value=urls):
            scheduler.run_tick()

        assert _probed_urls(mock_probe) == ["https://a.test", "https://b.test"]

    def test_worker_pool_checks_each_url_once(self, db_path, db_conn, seed, notifier, mock_probe, mock_cert) -> None:
        urls = [f"https://site{i}.test" for i in range(6)]
        seed(*urls)
        scheduler = Scheduler(_make_config(db_path, workers=4), db_conn, notifier)

        scheduler.run_tick()
        scheduler.run_tick()

        assert sorted(_probed_urls(mock_probe)) == sorted(urls)
        assert all(url in scheduler.window for url in urls)

    def test_cleanup_runs_every_n_ticks(self, config, db_conn, notifier, mock_probe, mock_cert) -> None:
        scheduler = Scheduler(config, db_conn, notifier)

        with patch("sitewatch.scheduler.CLEANUP_INTERVAL_TICKS", 2), patch(
            "sitewatch.scheduler.cleanup_old_samples", return_value=3
        ) as mock_cleanup:
            scheduler.run_tick()
            mock_cleanup.assert_not_called()
            scheduler.run_tick()

        mock_cleanup.assert_called_once_with(db_conn, 30)

    def test_cleanup_failure_is_logged(self, config, db_conn, notifier, mock_probe, mock_cert) -> None:
        scheduler = Scheduler(config, db_conn, notifier)

        with patch("sitewatch.scheduler.CLEANUP_INTERVAL_TICKS", 1), patch(
            "sitewatch.scheduler.cleanup_old_samples", side_effect=DatabaseError("locked")
        ):
            scheduler.run_tick()


class TestSchedulerLifecycle:
    """Tests for start/stop and the background threads."""

    def test_start_runs_initial_pass_then_stops(
        self, config, db_conn, seed, notifier, mock_probe, mock_cert
    ) -> None:
        seed("https://a.test", "https://b.test")
        checked = threading.Event()
        seen: list[str] = []

        def on_check(url, outcome) -> None:
            seen.append(url)
            if len(seen) == 2:
                checked.set()

        scheduler = Scheduler(config, db_conn, notifier, on_check=on_check)
        assert scheduler.state == SchedulerState.BOOTSTRAPPING

        scheduler.start()
        try:
            assert checked.wait(timeout=5)
            assert scheduler.is_running() is True
            assert scheduler.state == SchedulerState.RUNNING
        finally:
            scheduler.stop()

        assert scheduler.is_running() is False
        assert scheduler.state == SchedulerState.STOPPED
        assert seen == ["https://a.test", "https://b.test"]

    def test_start_twice_is_noop(self, config, db_conn, notifier, mock_probe, mock_cert) -> None:
        scheduler = Scheduler(config, db_conn, notifier)

        scheduler.start()
        try:
            first_thread = scheduler._tick_thread
            scheduler.start()
            assert scheduler._tick_thread is first_thread
        finally:
            scheduler.stop()

    def test_stop_without_start(self, config, db_conn, notifier) -> None:
        scheduler = Scheduler(config, db_conn, notifier)

        scheduler.stop()

        assert scheduler.state == SchedulerState.BOOTSTRAPPING

    def test_stop_cancels_queued_urls_in_worker_pool(
        self, db_path, db_conn, seed, notifier, mock_cert
    ) -> None:
        urls = [f"https://site{i}.test" for i in range(10)]
        seed(*urls)
        started = threading.Event()

        def _slow_probe(url: str, timeout: int):
            started.set()
            time.sleep(0.3)
            return Success(200, 300)

        scheduler = Scheduler(_make_config(db_path, workers=2), db_conn, notifier)

        with patch("sitewatch.scheduler.probe", side_effect=_slow_probe) as mock_probe:
            scheduler.start()
            try:
                assert started.wait(timeout=5)
            finally:
                scheduler.stop()

            assert scheduler.is_running() is False
            assert mock_probe.call_count <= 2
            unchecked = [url for url in urls if url not in scheduler.window]
            assert len(unchecked) >= 8

    def test_reset_thread_clears_window(self, db_path, db_conn, seed, notifier, mock_probe, mock_cert) -> None:
        seed("https://a.test")
        scheduler = Scheduler(_make_config(db_path, reset_interval=1), db_conn, notifier)

        scheduler.start()
        try:
            assert _wait_for(lambda: "https://a.test" in scheduler.window)
            assert _wait_for(lambda: len(scheduler.window) == 0)
            assert mock_probe.call_count == 1
        finally:
            scheduler.stop()
