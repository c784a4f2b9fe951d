"""Fetch and cache PayPal's webhook signing certificates."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import urlparse

import httpx
from cryptography import x509

from partners.billing.errors import VerificationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedCertificate:
    """A parsed certificate bundle and when to stop trusting the cached copy."""

    chain: tuple[x509.Certificate, ...]
    expires_at: datetime

    @property
    def leaf(self) -> x509.Certificate:
        return self.chain[0]


def is_paypal_cert_url(url: str) -> bool:
    """Only https URLs on paypal.com (or a subdomain) may serve signing certs."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    host = (parsed.hostname or "").lower()
    return parsed.scheme == "https" and (host == "paypal.com" or host.endswith(".paypal.com"))


def load_trusted_roots(value: str) -> list[x509.Certificate]:
    """Parse trusted roots from PEM text or from a path to a PEM file."""
    if not value:
        return []
    text = value
    if "-----BEGIN" not in value:
        text = Path(value).expanduser().read_text(encoding="utf-8")
    return x509.load_pem_x509_certificates(text.encode("utf-8"))


class CertificateCache:
    """Per-process cache of PEM bundles keyed by ``cert_url``.

    Concurrent misses for the same URL may both fetch; the second write simply
    overwrites the first with an equivalent entry.
    """

    def __init__(
        self,
        ttl_seconds: int = 24 * 60 * 60,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_http = http_client is None
        self._entries: dict[str, CachedCertificate] = {}

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def entries(self) -> dict[str, CachedCertificate]:
        return dict(self._entries)

    async def get_chain(self, cert_url: str) -> tuple[x509.Certificate, ...]:
        """Return the certificate chain at ``cert_url``, leaf first."""
        if not is_paypal_cert_url(cert_url):
            logger.error("Rejected certificate URL outside paypal.com: %s", cert_url)
            raise VerificationError("Certificate URL is not a PayPal https URL")

        now = datetime.now(timezone.utc)
        cached = self._entries.get(cert_url)
        if cached is not None and cached.expires_at > now:
            logger.debug("Using cached PayPal certificate for %s", cert_url)
            return cached.chain

        logger.info("Fetching PayPal certificate from %s", cert_url)
        entry = await self._fetch(cert_url, now)
        self._entries[cert_url] = entry
        return entry.chain

    async def _fetch(self, cert_url: str, now: datetime) -> CachedCertificate:
        try:
            response = await self._http.get(cert_url)
        except httpx.HTTPError as e:
            logger.error("Error fetching PayPal certificate from %s: %s", cert_url, type(e).__name__)
            raise VerificationError("Could not fetch signing certificate") from e

        if response.status_code != 200:
            logger.error(
                "Failed to fetch PayPal certificate from %s, status %s",
                cert_url,
                response.status_code,
            )
            raise VerificationError("Could not fetch signing certificate")

        try:
            chain = tuple(x509.load_pem_x509_certificates(response.content))
        except ValueError as e:
            logger.error("Unparseable PEM bundle at %s", cert_url)
            raise VerificationError("Signing certificate is not valid PEM") from e

        expires_at = min(chain[0].not_valid_after_utc, now + self.ttl)
        logger.info("Cached PayPal certificate from %s until %s", cert_url, expires_at.isoformat())
        return CachedCertificate(chain=chain, expires_at=expires_at)
