"""Single reachability probe with outcome classification."""

import http.client
import logging
import socket
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request

from .models import (
    REASON_NO_SUCH_HOST,
    REASON_OTHER,
    REASON_TLS_HANDSHAKE_TIMEOUT,
    CheckOutcome,
    HTTPFailure,
    Success,
    TransportFailure,
)

logger = logging.getLogger(__name__)

USER_AGENT = "sitewatch/0.1"

# Fallback text markers, consulted only when the exception type does not
# identify the failure. Different resolvers and TLS stacks word these differently.
_NO_SUCH_HOST_MARKERS = (
    "no such host",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
)
_TLS_HANDSHAKE_TIMEOUT_MARKERS = (
    "tls handshake timeout",
    "handshake operation timed out",
)


class _RedirectHandler(urllib.request.HTTPRedirectHandler):
    """Redirect handler that also follows 307 and 308 redirects."""

    def http_error_307(self, req, fp, code, msg, headers):
        return self._do_redirect(req, fp, code, msg, headers)

    def http_error_308(self, req, fp, code, msg, headers):
        return self._do_redirect(req, fp, code, msg, headers)

    def _do_redirect(self, req, fp, code, msg, headers):
        """Follow redirect preserving the original method."""
        new_url = headers.get("Location")
        if new_url:
            new_req = urllib.request.Request(
                urllib.parse.urljoin(req.full_url, new_url),
                method=req.get_method(),
                headers=dict(req.headers),
            )
            return self.parent.open(new_req, timeout=req.timeout)
        return None


_opener = urllib.request.build_opener(_RedirectHandler())


def classify_transport_error(cause: object) -> str:
    """Map the underlying cause of a transport failure to a REASON_* category.

    The exception type decides first: ``socket.gaierror`` means the hostname
    did not resolve, and a timeout raised by the TLS layer while the handshake
    is in progress is a handshake timeout. The error text is matched only for
    causes the type does not settle.
    """
    text = str(cause).lower()

    if isinstance(cause, (TimeoutError, ssl.SSLError)) and "handshake" in text:
        return REASON_TLS_HANDSHAKE_TIMEOUT
    if isinstance(cause, socket.gaierror):
        return REASON_NO_SUCH_HOST

    if any(marker in text for marker in _TLS_HANDSHAKE_TIMEOUT_MARKERS):
        return REASON_TLS_HANDSHAKE_TIMEOUT
    if any(marker in text for marker in _NO_SUCH_HOST_MARKERS):
        return REASON_NO_SUCH_HOST
    return REASON_OTHER


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def probe(url: str, timeout: float) -> CheckOutcome:
    """Perform a single GET against a URL and classify the outcome.

    No retries are made; a failed probe is retried only by the next tick.

    Args:
        url: Absolute URL to check.
        timeout: Socket timeout in seconds for connect, handshake and read.

    Returns:
        Success for HTTP 200, HTTPFailure for any other status, or
        TransportFailure when no response was received.
    """
    start = time.monotonic()

    try:
        request = urllib.request.Request(url, method="GET", headers={"User-Agent": USER_AGENT})
        with _opener.open(request, timeout=timeout) as response:
            # urllib returns once the status line and headers are read
            elapsed_ms = _elapsed_ms(start)
            status_code = response.status

    except urllib.error.HTTPError as e:
        elapsed_ms = _elapsed_ms(start)
        e.close()
        return HTTPFailure(status_code=e.code, response_time_ms=elapsed_ms)

    except urllib.error.URLError as e:
        cause = e.reason
        message = str(cause) if cause else "Connection failed"
        logger.debug("Transport failure for %s: %s", url, message)
        return TransportFailure(reason=classify_transport_error(cause), message=message)

    except (OSError, http.client.HTTPException, ValueError) as e:
        message = str(e) or e.__class__.__name__
        return TransportFailure(reason=classify_transport_error(e), message=message)

    if status_code == 200:
        return Success(status_code=status_code, response_time_ms=elapsed_ms)
    return HTTPFailure(status_code=status_code, response_time_ms=elapsed_ms)
