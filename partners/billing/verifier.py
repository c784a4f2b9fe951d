"""Verify that inbound webhooks were signed by PayPal.

PayPal signs ``transmission_id|transmission_time|webhook_id|crc32(body)`` with
the private key of the certificate published at ``PAYPAL-CERT-URL``. We check
that certificate (dates, issuing chain, subject) and then the signature over
the exact bytes received. Any failure raises :class:`VerificationError`.
"""

import base64
import binascii
import json
import logging
import zlib
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from partners.billing.certificates import CertificateCache
from partners.billing.errors import VerificationError

logger = logging.getLogger(__name__)

HEADER_TRANSMISSION_ID = "paypal-transmission-id"
HEADER_TRANSMISSION_TIME = "paypal-transmission-time"
HEADER_CERT_URL = "paypal-cert-url"
HEADER_TRANSMISSION_SIG = "paypal-transmission-sig"
HEADER_AUTH_ALGO = "paypal-auth-algo"

DIGESTS = {
    "SHA256withRSA": hashes.SHA256,
    "SHA512withRSA": hashes.SHA512,
}


@dataclass(frozen=True)
class WebhookHeaders:
    """Signing inputs taken from the request headers plus our webhook id."""

    transmission_id: str
    transmission_time: str
    cert_url: str
    signature: str
    webhook_id: str
    auth_algo: str = "SHA256withRSA"

    @classmethod
    def from_request(cls, headers: Mapping[str, str], webhook_id: str) -> "WebhookHeaders":
        """Pick the PayPal headers out of a (case-insensitive) header mapping."""
        values = {
            name: headers.get(name) or headers.get(name.upper())
            for name in (
                HEADER_TRANSMISSION_ID,
                HEADER_TRANSMISSION_TIME,
                HEADER_CERT_URL,
                HEADER_TRANSMISSION_SIG,
            )
        }
        missing = [name for name, value in values.items() if not value]
        if missing:
            raise VerificationError(f"Missing webhook headers: {', '.join(missing)}")
        if not webhook_id:
            raise VerificationError("PayPal webhook id is not configured")
        return cls(
            transmission_id=values[HEADER_TRANSMISSION_ID],
            transmission_time=values[HEADER_TRANSMISSION_TIME],
            cert_url=values[HEADER_CERT_URL],
            signature=values[HEADER_TRANSMISSION_SIG],
            webhook_id=webhook_id,
            auth_algo=(
                headers.get(HEADER_AUTH_ALGO)
                or headers.get(HEADER_AUTH_ALGO.upper())
                or "SHA256withRSA"
            ),
        )


@dataclass(frozen=True)
class VerifiedEvent:
    """Raw webhook body whose signature checked out."""

    raw_body: bytes
    transmission_id: str

    def json(self) -> dict[str, Any]:
        """Decode the verified body; raises ``ValueError`` if it is not a JSON object."""
        payload = json.loads(self.raw_body)
        if not isinstance(payload, dict):
            raise ValueError("Webhook body is not a JSON object")
        return payload


def crc32_string(raw_body: bytes) -> str:
    """Unsigned CRC32 of the body as a decimal string."""
    return str(zlib.crc32(raw_body) & 0xFFFFFFFF)


def signing_string(headers: WebhookHeaders, raw_body: bytes) -> bytes:
    return (
        f"{headers.transmission_id}|{headers.transmission_time}|"
        f"{headers.webhook_id}|{crc32_string(raw_body)}"
    ).encode("utf-8")


def _common_name(cert: x509.Certificate) -> str:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else ""


class WebhookVerifier:
    """Authenticates PayPal webhook deliveries."""

    def __init__(
        self,
        certificates: CertificateCache,
        trusted_roots: list[x509.Certificate] | None = None,
        expected_cn_suffix: str = "paypal.com",
    ):
        self.certificates = certificates
        self.trusted_roots = list(trusted_roots or [])
        self.expected_cn_suffix = expected_cn_suffix

    async def verify(self, raw_body: bytes, headers: WebhookHeaders) -> VerifiedEvent:
        if not raw_body:
            raise VerificationError("Empty webhook body")

        digest = DIGESTS.get(headers.auth_algo)
        if digest is None:
            logger.error("Unsupported PayPal auth algorithm: %s", headers.auth_algo)
            raise VerificationError(f"Unsupported auth algorithm {headers.auth_algo}")

        try:
            signature = base64.b64decode(headers.signature, validate=True)
        except (binascii.Error, ValueError) as e:
            raise VerificationError("Transmission signature is not valid base64") from e

        chain = await self.certificates.get_chain(headers.cert_url)
        self._check_chain(chain)

        public_key = chain[0].public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise VerificationError("Signing certificate does not carry an RSA key")

        try:
            public_key.verify(
                signature,
                signing_string(headers, raw_body),
                padding.PKCS1v15(),
                digest(),
            )
        except InvalidSignature as e:
            logger.warning(
                "PayPal webhook signature mismatch (transmission %s)", headers.transmission_id
            )
            raise VerificationError("Webhook signature mismatch") from e

        logger.debug("PayPal webhook %s verified", headers.transmission_id)
        return VerifiedEvent(raw_body=raw_body, transmission_id=headers.transmission_id)

    def _check_chain(self, chain: tuple[x509.Certificate, ...]) -> None:
        leaf = chain[0]
        now = datetime.now(timezone.utc)
        if not (leaf.not_valid_before_utc <= now <= leaf.not_valid_after_utc):
            logger.error("PayPal signing certificate outside its validity window")
            raise VerificationError("Signing certificate expired or not yet valid")

        cn = _common_name(leaf).lower()
        if not (cn == self.expected_cn_suffix or cn.endswith("." + self.expected_cn_suffix)):
            logger.error("Unexpected signing certificate subject: %s", cn)
            raise VerificationError("Signing certificate subject is not PayPal")

        try:
            for child, issuer in zip(chain, chain[1:]):
                child.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise VerificationError("Certificate bundle is not a valid chain") from e

        if self.trusted_roots and not any(
            self._anchored(chain[-1], root) for root in self.trusted_roots
        ):
            logger.error("PayPal certificate chain does not end at a trusted root")
            raise VerificationError("Certificate chain is not anchored at a trusted root")

    @staticmethod
    def _anchored(top: x509.Certificate, root: x509.Certificate) -> bool:
        if top == root:
            return True
        try:
            top.verify_directly_issued_by(root)
        except (ValueError, TypeError, InvalidSignature):
            return False
        return True
