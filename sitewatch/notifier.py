"""Best-effort chat webhook and client email notifications."""

import logging
import smtplib
from collections.abc import Callable
from datetime import UTC, datetime
from email.mime.text import MIMEText
from urllib.parse import urlparse

import requests

from .config import ChatConfig, SmtpConfig
from .database import DatabaseError, OwnerNotFoundError
from .models import (
    REASON_NO_SUCH_HOST,
    REASON_TLS_HANDSHAKE_TIMEOUT,
    CheckOutcome,
    HTTPFailure,
    NotificationEvent,
    Severity,
    Success,
    TransportFailure,
)

logger = logging.getLogger(__name__)


def escalation_for(outcome: CheckOutcome) -> tuple[Severity | None, bool]:
    """Return the chat severity (None for no chat message) and whether to email the client.

    | Outcome                                  | Chat      | Email |
    |------------------------------------------|-----------|-------|
    | TransportFailure(tls_handshake_timeout)  | Warning   | no    |
    | TransportFailure(no_such_host)           | Warning   | yes   |
    | TransportFailure(other)                  | Attention | yes   |
    | HTTPFailure                              | Warning   | yes   |
    | Success                                  | -         | no    |
    """
    if isinstance(outcome, Success):
        return None, False
    if isinstance(outcome, HTTPFailure):
        return Severity.WARNING, True
    if outcome.reason == REASON_TLS_HANDSHAKE_TIMEOUT:
        return Severity.WARNING, False
    if outcome.reason == REASON_NO_SUCH_HOST:
        return Severity.WARNING, True
    return Severity.ATTENTION, True


def _alert_message(url: str, outcome: TransportFailure | HTTPFailure) -> str:
    if isinstance(outcome, HTTPFailure):
        return f"Website {url} is down. Status: {outcome.status_label}"
    if outcome.reason == REASON_TLS_HANDSHAKE_TIMEOUT:
        return f"Website {url} could be down, please check. Status: {outcome.message}"
    if outcome.reason == REASON_NO_SUCH_HOST:
        return f"Website {url} could be down. Status: {outcome.message}"
    return f"Website {url} is down. Status: {outcome.message}"


class Notifier:
    """Sends chat messages to the team webhook and alert emails to URL owners.

    Both channels are best-effort: failures are logged and never retried,
    and a failure on one channel does not affect the other.
    """

    def __init__(
        self,
        chat: ChatConfig,
        smtp: SmtpConfig,
        owner_lookup: Callable[[str], str] | None = None,
    ) -> None:
        """Initialize the notifier.

        Args:
            chat: Chat webhook configuration.
            smtp: Mail relay configuration.
            owner_lookup: Resolves the owner email of a URL. Raises
                OwnerNotFoundError when the URL has no owner.
        """
        self._chat = chat
        self._smtp = smtp
        self._owner_lookup = owner_lookup

    def set_owner_lookup(self, owner_lookup: Callable[[str], str]) -> None:
        """Attach the owner lookup once the store is available."""
        self._owner_lookup = owner_lookup

    def notify_chat(self, message: str) -> bool:
        """POST a message to the chat webhook.

        Returns:
            True if the webhook answered with a 2xx status.
        """
        try:
            response = requests.post(
                self._chat.webhook_url,
                json={"text": message},
                timeout=self._chat.timeout,
            )
        except requests.RequestException as e:
            # The exception text carries the full webhook path
            logger.error(
                "Error sending chat message to %s: %s",
                self._masked_webhook_url(),
                e.__class__.__name__,
            )
            return False

        if not 200 <= response.status_code < 300:
            logger.error("Chat webhook returned non-OK status: %d", response.status_code)
            return False

        logger.debug("Chat message sent")
        return True

    def notify(self, event: NotificationEvent) -> bool:
        """Render an event and send it to the chat channel."""
        return self.notify_chat(event.render())

    def info(self, message: str) -> bool:
        """Send an INFO lifecycle message."""
        return self.notify(NotificationEvent(Severity.INFO, None, message, datetime.now(UTC)))

    def notify_email(self, recipient: str, subject: str, body: str) -> bool:
        """Send a plain-text email through the configured relay.

        Returns:
            True if the relay accepted the message.
        """
        smtp = self._smtp

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = smtp.from_addr
        msg["To"] = recipient

        try:
            with smtplib.SMTP(smtp.host, smtp.port, timeout=smtp.timeout) as server:
                if smtp.use_tls:
                    server.starttls()
                if smtp.username and smtp.password:
                    server.login(smtp.username, smtp.password)
                server.sendmail(smtp.from_addr, [recipient], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error sending email to %s: %s", recipient, e)
            return False

        logger.info("Alert email sent to %s", recipient)
        return True

    def notify_client(self, url: str, status: str) -> bool:
        """Email the owner of a URL that it is down.

        A missing owner skips the email only.
        """
        if self._owner_lookup is None:
            logger.warning("No owner lookup configured, skipping email for %s", url)
            return False

        try:
            recipient = self._owner_lookup(url)
        except OwnerNotFoundError as e:
            logger.warning("Error getting client email for %s: %s", url, e)
            return False
        except DatabaseError as e:
            logger.error("Error getting client email for %s: %s", url, e)
            return False

        subject = f"ALERT!!!: Website {url} is Down"
        body = (
            f"Dear user,\n\nThe website {url} is currently down.\n\n"
            f"Status:\n {status}\n\nPlease check it ASAP"
        )
        return self.notify_email(recipient, subject, body)

    def escalate(self, url: str, outcome: CheckOutcome) -> None:
        """Route a probe outcome to chat and/or email according to its severity."""
        severity, send_email = escalation_for(outcome)
        if severity is None:
            return

        event = NotificationEvent(
            severity=severity,
            url=url,
            message=_alert_message(url, outcome),
            timestamp=datetime.now(UTC),
        )
        self.notify(event)

        if send_email:
            self.notify_client(url, outcome.status_label)

    def _masked_webhook_url(self) -> str:
        """Webhook URL with its secret path masked for logging."""
        parsed = urlparse(self._chat.webhook_url)
        if parsed.path and len(parsed.path) > 10:
            return f"{parsed.scheme}://{parsed.netloc}{parsed.path[:3]}***"
        return f"{parsed.scheme}://{parsed.netloc}"
