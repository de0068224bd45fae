"""Data models for probe outcomes, certificates and notifications."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

# Transport failure categories recognised by the probe.
REASON_TLS_HANDSHAKE_TIMEOUT = "tls_handshake_timeout"
REASON_NO_SUCH_HOST = "no_such_host"
REASON_OTHER = "other"


@dataclass(frozen=True)
class Success:
    """The URL answered with HTTP 200.

    Attributes:
        status_code: HTTP status code (always 200).
        response_time_ms: Time from request start to response headers.
    """

    status_code: int
    response_time_ms: int

    @property
    def status_label(self) -> str:
        return "Up"


@dataclass(frozen=True)
class TransportFailure:
    """The request failed before any HTTP response was received.

    Attributes:
        reason: One of the REASON_* categories.
        message: Raw error text reported by the transport.
        response_time_ms: Always 0, latency is not meaningful without a response.
    """

    reason: str
    message: str
    response_time_ms: int = 0

    @property
    def status_label(self) -> str:
        return self.message


@dataclass(frozen=True)
class HTTPFailure:
    """The URL answered with a status other than 200."""

    status_code: int
    response_time_ms: int

    @property
    def status_label(self) -> str:
        return f"Down (Status Code: {self.status_code})"


CheckOutcome = Success | TransportFailure | HTTPFailure


@dataclass(frozen=True)
class CertificateInfo:
    """TLS certificate details of the leaf certificate.

    Attributes:
        issuer: Distinguished name of the issuer (e.g. "CN=R3,O=Let's Encrypt,C=US").
        not_after: Expiration timestamp (UTC).
    """

    issuer: str
    not_after: datetime

    @property
    def not_after_formatted(self) -> str:
        """Expiry in RFC 850 layout, e.g. "Monday, 02-Jan-06 15:04:05 UTC"."""
        return self.not_after.strftime("%A, %d-%b-%y %H:%M:%S UTC")

    def expires_in_days(self, now: datetime) -> int:
        """Days until expiration, negative if already expired."""
        return (self.not_after - now).days


@dataclass(frozen=True)
class CertUnavailable:
    """Certificate could not be inspected.

    A reason of None means the endpoint does not use TLS, which is not an error.
    """

    reason: str | None = None


class Severity(Enum):
    """Notification severity, in increasing order of urgency."""

    INFO = "info"
    WARNING = "warning"
    ATTENTION = "attention"


@dataclass(frozen=True)
class NotificationEvent:
    """A message for the chat channel."""

    severity: Severity
    url: str | None
    message: str
    timestamp: datetime

    def render(self) -> str:
        """Render the chat text for this event."""
        if self.severity is Severity.INFO:
            return f"MONITOR --> {self.message}"
        time_string = self.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        return f"{self.severity.name}: {self.message} \n Time: {time_string}"
