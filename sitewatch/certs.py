"""TLS certificate inspection for successfully probed URLs."""

import logging
import socket
import ssl
from datetime import UTC, datetime
from urllib.parse import urlparse

from .models import CertificateInfo, CertUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TLS_PORT = 443

# Short attribute names used when rendering a distinguished name.
_DN_SHORT_NAMES = {
    "commonName": "CN",
    "organizationName": "O",
    "organizationalUnitName": "OU",
    "countryName": "C",
    "localityName": "L",
    "stateOrProvinceName": "ST",
    "streetAddress": "STREET",
    "postalCode": "POSTALCODE",
    "serialNumber": "SERIALNUMBER",
}


def format_distinguished_name(name: tuple) -> str:
    """Render a certificate name as a DN string, most specific component first.

    ``ssl.SSLSocket.getpeercert()`` returns relative distinguished names from
    the root (country) down; the DN string lists them in reverse, e.g.
    ``CN=R3,O=Let's Encrypt,C=US``.
    """
    parts: list[str] = []
    for rdn in reversed(name):
        if not isinstance(rdn, tuple):
            continue
        attrs = []
        for item in rdn:
            if isinstance(item, tuple) and len(item) == 2:
                key, value = item
                attrs.append(f"{_DN_SHORT_NAMES.get(str(key), str(key))}={value}")
        if attrs:
            parts.append("+".join(attrs))
    return ",".join(parts)


def inspect_certificate(url: str, timeout: float) -> CertificateInfo | CertUnavailable:
    """Fetch issuer and expiry of the certificate served for a URL.

    The host is taken from the URL with its scheme stripped and the connection
    is verified against that hostname. Failures never raise: they are returned
    as ``CertUnavailable`` with the reason so the caller can report them.

    Args:
        url: The URL that was successfully probed.
        timeout: Connection and handshake timeout in seconds.

    Returns:
        CertificateInfo, or CertUnavailable. Non-HTTPS URLs yield
        ``CertUnavailable(None)`` without any connection attempt.
    """
    parsed = urlparse(url)

    if parsed.scheme != "https":
        return CertUnavailable()

    hostname = parsed.hostname
    if not hostname:
        return CertUnavailable("Invalid URL: no hostname")

    try:
        port = parsed.port or DEFAULT_TLS_PORT
    except ValueError as e:
        return CertUnavailable(f"Invalid URL: {e}")

    try:
        context = ssl.create_default_context()
        with socket.create_connection((hostname, port), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=hostname) as ssl_sock:
                cert = ssl_sock.getpeercert()
    except ssl.SSLCertVerificationError as e:
        return CertUnavailable(f"Hostname or certificate verification failed: {e}")
    except ssl.SSLError as e:
        return CertUnavailable(f"Server doesn't support SSL certificate: {e}")
    except TimeoutError:
        return CertUnavailable("SSL connection timeout")
    except socket.gaierror as e:
        return CertUnavailable(f"DNS resolution failed: {e}")
    except OSError as e:
        return CertUnavailable(f"Connection failed: {e}")

    if not cert:
        return CertUnavailable("No certificate returned by server")

    not_after_raw = cert.get("notAfter")
    if not not_after_raw or not isinstance(not_after_raw, str):
        return CertUnavailable("Certificate missing expiration date")

    try:
        # notAfter is in the form 'Mon DD HH:MM:SS YYYY GMT'
        not_after = datetime.strptime(not_after_raw, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=UTC)
    except ValueError:
        return CertUnavailable(f"Unparseable expiration date: {not_after_raw}")

    issuer = cert.get("issuer", ())
    issuer_dn = format_distinguished_name(issuer) if isinstance(issuer, tuple) else ""

    logger.debug("Certificate for %s issued by %s, expires %s", hostname, issuer_dn, not_after.isoformat())
    return CertificateInfo(issuer=issuer_dn, not_after=not_after)
