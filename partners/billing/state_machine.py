"""Subscription state machine: the single writer of attempt status.

Inputs are verified PayPal webhooks, the result of creating a subscription,
and the reconciliation poll. Terminal states are sticky: the first terminal
transition wins and any later contradictory input is logged and dropped.
There are no locks; every transition re-checks its precondition against the
stored attempt immediately before writing.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from partners.billing.errors import OrphanEvent, ProcessorApiError, TransitionConflict
from partners.billing.event_bus import EventBus, user_topic
from partners.billing.events import (
    INFORMATIONAL_EVENTS,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_PAYMENT_FAILED,
    WebhookEvent,
)
from partners.billing.paypal_client import CreatedSubscription, PayPalClient, StatusSnapshot
from partners.billing.reconciliation import ReconciliationTimer
from partners.models.subscription_attempt import AttemptStatus, SubscriptionAttempt
from partners.services.attempt_store import AttemptStore

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "superseded"
POLL_SOURCE = "reconciliation_poll"

# Webhook event type -> terminal status it drives an attempt to.
TERMINAL_EVENTS: dict[str, AttemptStatus] = {
    SUBSCRIPTION_ACTIVATED: AttemptStatus.ACTIVE,
    SUBSCRIPTION_CANCELLED: AttemptStatus.CANCELLED,
    SUBSCRIPTION_EXPIRED: AttemptStatus.CANCELLED,
    SUBSCRIPTION_PAYMENT_FAILED: AttemptStatus.FAILED,
}


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    NOOP = "noop"
    IGNORED = "ignored"
    CONFLICT = "conflict"
    ORPHAN = "orphan"
    UNRECOGNIZED = "unrecognized"


@dataclass
class TransitionResult:
    outcome: Outcome
    attempt: SubscriptionAttempt | None = None
    previous_status: AttemptStatus | None = None

    @property
    def status(self) -> AttemptStatus | None:
        return self.attempt.attempt_status if self.attempt is not None else None

    @property
    def changed(self) -> bool:
        return (
            self.outcome == Outcome.APPLIED
            and self.attempt is not None
            and self.previous_status != self.attempt.attempt_status
        )


class SubscriptionStateMachine:
    def __init__(
        self,
        store: AttemptStore,
        bus: EventBus,
        timer: ReconciliationTimer,
        client: PayPalClient | None = None,
    ):
        self.store = store
        self.bus = bus
        self.timer = timer
        self.client = client

    # ------------------------------------------------------------------
    # Creation (session-driven)
    # ------------------------------------------------------------------

    async def begin_attempt(self, user_id: str, plan_id: str | None = None) -> SubscriptionAttempt:
        """Start a new attempt, superseding any non-terminal one for the user."""
        prior = await self.store.find_by_user(user_id)
        if prior is not None and prior.attempt_status in (
            AttemptStatus.PENDING_CREATION,
            AttemptStatus.APPROVAL_PENDING,
        ):
            self.timer.disarm(prior.id)
            prior.mark(AttemptStatus.NONE, SUPERSEDED_REASON)
            await self.store.put(prior)
            logger.info("Attempt %s for user %s superseded", prior.id, user_id)

        attempt = SubscriptionAttempt.new(user_id, plan_id)
        attempt = await self.store.put(attempt)
        logger.info("Attempt %s started for user %s", attempt.id, user_id)
        return attempt

    async def record_creation(
        self, attempt_id: uuid.UUID, created: CreatedSubscription
    ) -> TransitionResult:
        """PayPal accepted the subscription: store its id and approval link, arm the timer."""
        attempt = await self.store.get(attempt_id)
        if attempt is None:
            raise LookupError(f"Unknown attempt {attempt_id}")

        previous = attempt.attempt_status
        superseded = previous == AttemptStatus.NONE and attempt.failure_reason == SUPERSEDED_REASON
        if previous not in (AttemptStatus.PENDING_CREATION, AttemptStatus.NONE) or superseded:
            logger.info(
                "Ignoring creation result for attempt %s in state %s", attempt_id, previous.value
            )
            return TransitionResult(Outcome.IGNORED, attempt, previous)

        attempt.processor_subscription_id = created.processor_subscription_id
        attempt.approval_url = created.approval_url
        attempt.failure_reason = None
        attempt.mark(AttemptStatus.APPROVAL_PENDING)
        attempt = await self.store.put(attempt)
        logger.info(
            "Attempt %s awaiting approval of PayPal subscription %s",
            attempt.id,
            attempt.processor_subscription_id,
        )
        self._publish(attempt, "creation", created.raw)
        self.timer.arm(attempt.id, self.reconcile)
        return TransitionResult(Outcome.APPLIED, attempt, previous)

    async def record_creation_failure(self, attempt_id: uuid.UUID, reason: str) -> TransitionResult:
        """Creation call failed locally; the attempt is abandoned, never ``failed``."""
        attempt = await self.store.get(attempt_id)
        if attempt is None:
            raise LookupError(f"Unknown attempt {attempt_id}")
        previous = attempt.attempt_status
        if previous != AttemptStatus.PENDING_CREATION:
            return TransitionResult(Outcome.IGNORED, attempt, previous)
        attempt.mark(AttemptStatus.NONE, reason)
        attempt = await self.store.put(attempt)
        return TransitionResult(Outcome.APPLIED, attempt, previous)

    async def consume_approval_url(self, attempt_id: uuid.UUID) -> SubscriptionAttempt | None:
        """Clear the approval link once the user has come back from PayPal."""
        attempt = await self.store.get(attempt_id)
        if attempt is None or attempt.approval_url is None:
            return attempt
        attempt.approval_url = None
        return await self.store.put(attempt)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_event(self, event: WebhookEvent) -> TransitionResult:
        """Apply a verified webhook. Never raises for business outcomes."""
        attempt = await self.store.find_by_resource(event.resource_id)
        if attempt is None:
            orphan = OrphanEvent(event.resource_id)
            logger.warning("Orphan %s webhook dropped: %s", event.event_type, orphan)
            return TransitionResult(Outcome.ORPHAN)

        if event.user_id and event.user_id != attempt.user_id:
            logger.warning(
                "Webhook custom_id %s does not match attempt owner %s for %s",
                event.user_id,
                attempt.user_id,
                event.resource_id,
            )

        if event.event_type == SUBSCRIPTION_CREATED:
            return await self._confirm_created(attempt, event)

        target = TERMINAL_EVENTS.get(event.event_type)
        if target is not None:
            reason = None
            if target != AttemptStatus.ACTIVE:
                reason = event.failure_reason()
                if event.event_type == SUBSCRIPTION_EXPIRED:
                    reason = reason or "expired"
            return await self._to_terminal(
                attempt, target, event.event_type, event.resource_snapshot(), reason
            )

        if event.event_type in INFORMATIONAL_EVENTS:
            logger.info(
                "Received %s for attempt %s (no transition)", event.event_type, attempt.id
            )
            return TransitionResult(Outcome.IGNORED, attempt, attempt.attempt_status)

        logger.info("Unrecognized PayPal event type %s for %s", event.event_type, event.resource_id)
        return TransitionResult(Outcome.UNRECOGNIZED, attempt, attempt.attempt_status)

    async def _confirm_created(
        self, attempt: SubscriptionAttempt, event: WebhookEvent
    ) -> TransitionResult:
        previous = attempt.attempt_status
        if previous != AttemptStatus.APPROVAL_PENDING:
            logger.info(
                "Late %s for attempt %s already %s", event.event_type, attempt.id, previous.value
            )
            return TransitionResult(Outcome.IGNORED, attempt, previous)

        self.timer.arm(attempt.id, self.reconcile)
        self._publish(attempt, event.event_type, event.resource_snapshot())
        return TransitionResult(Outcome.APPLIED, attempt, previous)

    async def _to_terminal(
        self,
        attempt: SubscriptionAttempt,
        target: AttemptStatus,
        source: str,
        snapshot: dict[str, Any] | None,
        reason: str | None = None,
    ) -> TransitionResult:
        previous = attempt.attempt_status
        if previous == target:
            logger.debug("Attempt %s already %s, %s is a no-op", attempt.id, target.value, source)
            return TransitionResult(Outcome.NOOP, attempt, previous)

        if previous.is_terminal:
            conflict = TransitionConflict(previous.value, target.value)
            logger.warning("Transition conflict on attempt %s from %s: %s", attempt.id, source, conflict)
            return TransitionResult(Outcome.CONFLICT, attempt, previous)

        if previous != AttemptStatus.APPROVAL_PENDING:
            logger.info(
                "Ignoring %s for attempt %s in state %s", source, attempt.id, previous.value
            )
            return TransitionResult(Outcome.IGNORED, attempt, previous)

        attempt.mark(target, reason)
        attempt = await self.store.put(attempt)
        self.timer.disarm(attempt.id)
        logger.info(
            "Attempt %s: %s -> %s via %s", attempt.id, previous.value, target.value, source
        )
        self._publish(attempt, source, snapshot)
        return TransitionResult(Outcome.APPLIED, attempt, previous)

    # ------------------------------------------------------------------
    # Reconciliation fallback
    # ------------------------------------------------------------------

    async def reconcile(self, attempt_id: uuid.UUID) -> TransitionResult:
        """Timer callback: poll PayPal if the attempt is still awaiting approval."""
        attempt = await self.store.get(attempt_id)
        if attempt is None or attempt.attempt_status != AttemptStatus.APPROVAL_PENDING:
            return TransitionResult(
                Outcome.IGNORED, attempt, attempt.attempt_status if attempt else None
            )
        if self.client is None or not attempt.processor_subscription_id:
            logger.warning("Cannot poll PayPal for attempt %s", attempt_id)
            return TransitionResult(Outcome.IGNORED, attempt, attempt.attempt_status)

        try:
            snapshot = await self.client.get_subscription_status(attempt.processor_subscription_id)
        except ProcessorApiError as e:
            logger.warning("Reconciliation poll failed for attempt %s: %s", attempt_id, e)
            return TransitionResult(Outcome.IGNORED, attempt, attempt.attempt_status)

        return await self.apply_poll(attempt_id, snapshot)

    async def apply_poll(self, attempt_id: uuid.UUID, snapshot: StatusSnapshot) -> TransitionResult:
        """Feed a polled PayPal status through the transition table."""
        attempt = await self.store.get(attempt_id)
        if attempt is None:
            return TransitionResult(Outcome.ORPHAN)

        previous = attempt.attempt_status
        resource = {"id": snapshot.subscription_id, "status": snapshot.status, "custom_id": snapshot.custom_id}
        if snapshot.status == "ACTIVE":
            return await self._to_terminal(attempt, AttemptStatus.ACTIVE, POLL_SOURCE, resource)

        if previous != AttemptStatus.APPROVAL_PENDING:
            return TransitionResult(Outcome.IGNORED, attempt, previous)

        attempt.mark(AttemptStatus.NONE, f"PayPal reported {snapshot.status} after timeout")
        attempt = await self.store.put(attempt)
        self.timer.disarm(attempt.id)
        logger.info(
            "Attempt %s abandoned: PayPal status %s after reconciliation timeout",
            attempt.id,
            snapshot.status,
        )
        self._publish(attempt, POLL_SOURCE, resource)
        return TransitionResult(Outcome.APPLIED, attempt, previous)

    # ------------------------------------------------------------------

    def _publish(
        self, attempt: SubscriptionAttempt, source: str, snapshot: dict[str, Any] | None
    ) -> None:
        message = {
            "status": attempt.status,
            "attempt_id": str(attempt.id),
            "user_id": attempt.user_id,
            "event_type": source,
            "failure_reason": attempt.failure_reason,
            "resource_snapshot": snapshot or {},
        }
        self.bus.publish(user_topic(attempt.user_id), message)
