"""Shared test configuration and fixtures.

Everything runs in-process:
- Attempts live in the in-memory store (database store tests opt in via
  ``TEST_DATABASE_URL``).
- PayPal is an ``AsyncMock`` of :class:`PayPalClient`; client tests use
  ``httpx.MockTransport`` instead.
- Webhook signatures come from a throwaway CA minted once per test session.
"""

import base64
import uuid
import zlib
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from httpx import ASGITransport, AsyncClient

from partners.auth.jwt import create_access_token
from partners.billing.certificates import CertificateCache
from partners.billing.event_bus import EventBus
from partners.billing.paypal_client import CreatedSubscription, PayPalClient
from partners.billing.reconciliation import ReconciliationTimer
from partners.billing.runtime import BillingRuntime
from partners.billing.state_machine import SubscriptionStateMachine
from partners.billing.verifier import WebhookVerifier
from partners.config import Settings
from partners.main import app
from partners.services.attempt_store import InMemoryAttemptStore

USER_ID = "user-42"
PLAN_ID = "P-TRIAL-PLAN"
WEBHOOK_ID = "WH-TEST-0123456789"
CERT_URL = "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42-fca2a594-a5cafa77"
LEAF_CN = "messageverificationcerts.sandbox.paypal.com"


# ---------------------------------------------------------------------------
# Throwaway PayPal PKI
# ---------------------------------------------------------------------------


class PayPalSigner:
    """Mints a CA and a PayPal-looking leaf, and signs webhook bodies with it."""

    def __init__(self):
        now = datetime.now(timezone.utc)
        self.ca_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test PayPal Root CA")])
        self.ca_cert = (
            x509.CertificateBuilder()
            .subject_name(ca_name)
            .issuer_name(ca_name)
            .public_key(self.ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.ca_key, hashes.SHA256())
        )
        self.leaf_key, self.leaf_cert = self.issue(LEAF_CN)

    def issue(
        self,
        common_name: str,
        *,
        not_before: datetime | None = None,
        not_after: datetime | None = None,
        issuer_key: rsa.RSAPrivateKey | None = None,
        issuer_cert: x509.Certificate | None = None,
    ) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
        now = datetime.now(timezone.utc)
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        issuer_key = issuer_key or self.ca_key
        issuer_cert = issuer_cert or self.ca_cert
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .issuer_name(issuer_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before or now - timedelta(hours=1))
            .not_valid_after(not_after or now + timedelta(days=30))
            .sign(issuer_key, hashes.SHA256())
        )
        return key, cert

    def bundle(self, leaf: x509.Certificate | None = None, *chain: x509.Certificate) -> bytes:
        certs = [leaf or self.leaf_cert, *(chain or (self.ca_cert,))]
        return b"".join(cert.public_bytes(serialization.Encoding.PEM) for cert in certs)

    def sign(
        self,
        body: bytes,
        *,
        webhook_id: str = WEBHOOK_ID,
        transmission_id: str | None = None,
        transmission_time: str = "2026-10-18T09:30:00Z",
        cert_url: str = CERT_URL,
        auth_algo: str = "SHA256withRSA",
        key: rsa.RSAPrivateKey | None = None,
    ) -> dict[str, str]:
        """Headers PayPal would send with ``body``."""
        transmission_id = transmission_id or str(uuid.uuid4())
        message = (
            f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(body) & 0xFFFFFFFF}"
        ).encode()
        digest = hashes.SHA512() if auth_algo == "SHA512withRSA" else hashes.SHA256()
        signature = (key or self.leaf_key).sign(message, padding.PKCS1v15(), digest)
        return {
            "PAYPAL-TRANSMISSION-ID": transmission_id,
            "PAYPAL-TRANSMISSION-TIME": transmission_time,
            "PAYPAL-CERT-URL": cert_url,
            "PAYPAL-TRANSMISSION-SIG": base64.b64encode(signature).decode(),
            "PAYPAL-AUTH-ALGO": auth_algo,
        }


@pytest.fixture(scope="session")
def signer() -> PayPalSigner:
    return PayPalSigner()


@pytest.fixture
def cert_requests() -> list[str]:
    """URLs the certificate cache fetched during the test."""
    return []


@pytest_asyncio.fixture
async def certificate_cache(
    signer: PayPalSigner, cert_requests: list[str]
) -> AsyncGenerator[CertificateCache, None]:
    """Certificate cache whose HTTP fetches are served from the test CA."""

    def handler(request: httpx.Request) -> httpx.Response:
        cert_requests.append(str(request.url))
        if str(request.url) == CERT_URL:
            return httpx.Response(200, content=signer.bundle())
        return httpx.Response(404)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    yield CertificateCache(ttl_seconds=3600, http_client=http)
    await http.aclose()


@pytest.fixture
def verifier(certificate_cache: CertificateCache, signer: PayPalSigner) -> WebhookVerifier:
    return WebhookVerifier(certificate_cache, trusted_roots=[signer.ca_cert])


# ---------------------------------------------------------------------------
# State machine wiring
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryAttemptStore:
    return InMemoryAttemptStore()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def timer() -> AsyncGenerator[ReconciliationTimer, None]:
    timer = ReconciliationTimer(delay_seconds=60)
    yield timer
    await timer.shutdown()


@pytest.fixture
def paypal() -> AsyncMock:
    """PayPal client double; configure return values per test."""
    return AsyncMock(spec=PayPalClient)


@pytest.fixture
def machine(store, bus, timer, paypal) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(store, bus, timer, paypal)


@pytest.fixture
def created() -> Callable[..., CreatedSubscription]:
    """Factory for PayPal create-subscription results."""

    def _created(subscription_id: str = "SUB-1") -> CreatedSubscription:
        return CreatedSubscription(
            processor_subscription_id=subscription_id,
            approval_url=f"https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token=BA-{subscription_id}",
            raw={"id": subscription_id, "status": "APPROVAL_PENDING"},
        )

    return _created


@pytest.fixture
def webhook_payload() -> Callable[..., dict[str, Any]]:
    """Factory for PayPal webhook bodies."""

    def _payload(
        event_type: str,
        resource_id: str = "SUB-1",
        custom_id: str | None = USER_ID,
        status: str | None = None,
        **resource: Any,
    ) -> dict[str, Any]:
        body_resource: dict[str, Any] = {"id": resource_id, "plan_id": PLAN_ID, **resource}
        if custom_id is not None:
            body_resource["custom_id"] = custom_id
        if status is not None:
            body_resource["status"] = status
        return {
            "id": f"WH-{uuid.uuid4().hex[:12].upper()}",
            "event_version": "1.0",
            "create_time": "2026-10-18T09:30:00.000Z",
            "resource_type": "subscription",
            "event_type": event_type,
            "summary": f"{event_type} test event",
            "resource": body_resource,
        }

    return _payload


# ---------------------------------------------------------------------------
# HTTP client against the app
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        paypal_client_id="client-id",
        paypal_secret="client-secret",
        paypal_plan_id=PLAN_ID,
        paypal_webhook_id=WEBHOOK_ID,
        reconciliation_delay_seconds=60,
    )


@pytest.fixture
def runtime(
    test_settings, store, bus, timer, paypal, certificate_cache, verifier, machine
) -> BillingRuntime:
    return BillingRuntime(
        settings=test_settings,
        store=store,
        bus=bus,
        timer=timer,
        client=paypal,
        certificates=certificate_cache,
        verifier=verifier,
        machine=machine,
    )


@pytest_asyncio.fixture
async def client(runtime: BillingRuntime) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test billing runtime."""
    previous = getattr(app.state, "billing", None)
    app.state.billing = runtime

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.state.billing = previous


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Return Authorization headers for the test user."""
    token = create_access_token({"sub": USER_ID})
    return {"Authorization": f"Bearer {token}"}
