"""Process-wide billing components, built once at startup and kept on ``app.state``."""

import logging
from dataclasses import dataclass

import httpx

from partners.billing.certificates import CertificateCache, load_trusted_roots
from partners.billing.event_bus import EventBus
from partners.billing.paypal_client import PayPalClient
from partners.billing.reconciliation import ReconciliationTimer
from partners.billing.state_machine import SubscriptionStateMachine
from partners.billing.verifier import WebhookVerifier
from partners.config import Settings, settings
from partners.services.attempt_store import AttemptStore, InMemoryAttemptStore, SqlAttemptStore

logger = logging.getLogger(__name__)


@dataclass
class BillingRuntime:
    settings: Settings
    store: AttemptStore
    bus: EventBus
    timer: ReconciliationTimer
    client: PayPalClient
    certificates: CertificateCache
    verifier: WebhookVerifier
    machine: SubscriptionStateMachine

    async def shutdown(self) -> None:
        await self.timer.shutdown()
        await self.client.aclose()
        await self.certificates.aclose()


def build_store(config: Settings) -> AttemptStore:
    if config.attempt_store_backend == "database":
        from partners.database import async_session_factory

        return SqlAttemptStore(async_session_factory)
    return InMemoryAttemptStore()


def build_runtime(
    config: Settings = settings,
    *,
    store: AttemptStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> BillingRuntime:
    """Wire the billing components from settings.

    ``store`` and ``http_client`` can be injected (tests, custom deployments);
    otherwise the store follows ``attempt_store_backend`` and each network
    component owns its own client.
    """
    store = store or build_store(config)
    bus = EventBus()
    timer = ReconciliationTimer(config.reconciliation_delay_seconds)
    client = PayPalClient.from_settings(config, http_client=http_client)
    certificates = CertificateCache(
        ttl_seconds=config.paypal_cert_cache_ttl_seconds,
        timeout=config.paypal_timeout_seconds,
        http_client=http_client,
    )
    trusted_roots = load_trusted_roots(config.paypal_root_ca_pem) if config.paypal_root_ca_pem else []
    if not trusted_roots:
        logger.warning(
            "No PAYPAL_ROOT_CA_PEM configured: webhook certificate chains are not anchored"
        )
    verifier = WebhookVerifier(certificates, trusted_roots=trusted_roots)
    machine = SubscriptionStateMachine(store, bus, timer, client)

    logger.info(
        "Billing runtime ready (store=%s, paypal=%s, trusted roots=%d)",
        type(store).__name__,
        config.paypal_mode,
        len(trusted_roots),
    )
    return BillingRuntime(
        settings=config,
        store=store,
        bus=bus,
        timer=timer,
        client=client,
        certificates=certificates,
        verifier=verifier,
        machine=machine,
    )
