"""Per-session view of a user's trial subscription.

A presenter is created for each live session (an SSE stream or a single API
request). It never writes attempt status: status comes from the attempt store
and from bus messages published by the state machine. What it owns is the
UI-only state around the PayPal round trip (transferring, returned, backed
out at PayPal, local errors).
"""

import enum
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass
from typing import Any

from partners.billing.errors import ProcessorApiError
from partners.billing.event_bus import BusSubscription, user_topic
from partners.billing.paypal_client import PayPalClient
from partners.billing.state_machine import SUPERSEDED_REASON, SubscriptionStateMachine
from partners.models.subscription_attempt import AttemptStatus, SubscriptionAttempt
from partners.services import subscription_service

logger = logging.getLogger(__name__)


class View(str, enum.Enum):
    START_TRIAL = "start_trial"
    TRANSFERRING = "transferring"
    APPROVAL_PENDING = "approval_pending"
    PROCESSING = "processing"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    FAILED = "failed"
    PAYPAL_CANCELLED = "paypal_cancelled"
    ERROR = "error"


PAGE_TITLES = {
    View.START_TRIAL: "Subscription Plans",
    View.TRANSFERRING: "New Subscription",
    View.APPROVAL_PENDING: "New Subscription",
    View.PROCESSING: "Subscription Status",
    View.ACTIVE: "Subscription Status",
    View.CANCELLED: "Subscription Status",
    View.FAILED: "Subscription Status",
    View.PAYPAL_CANCELLED: "Subscription Cancelled",
    View.ERROR: "New Subscription",
}

MESSAGES = {
    View.PROCESSING: "Processing your subscription...",
    View.ACTIVE: "Your subscription is active! You now have a 7-day free trial.",
    View.CANCELLED: "Your subscription has been cancelled.",
    View.FAILED: "Subscription activation failed. Please try again.",
    View.PAYPAL_CANCELLED: "Subscription setup was cancelled.",
}

TIMEOUT_MESSAGE = "We could not confirm your PayPal subscription. Please start your trial again."


@dataclass
class ViewState:
    view: View
    page_title: str
    subscription_status: str
    attempt_id: str | None = None
    approval_url: str | None = None
    message: str | None = None
    error_message: str | None = None
    transferring_to_paypal: bool = False
    retry: bool = False
    paypal_subscription_id: str | None = None
    paypal_token: str | None = None
    paypal_ba_token: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["view"] = self.view.value
        return data


class SessionPresenter:
    def __init__(
        self,
        user_id: str,
        machine: SubscriptionStateMachine,
        client: PayPalClient,
        plan_id: str,
    ):
        self.user_id = user_id
        self.machine = machine
        self.client = client
        self.plan_id = plan_id
        self.attempt: SubscriptionAttempt | None = None
        self.subscription: BusSubscription | None = None

        self.transferring = False
        self.returned = False
        self.paypal_cancelled = False
        self.error_message: str | None = None
        self.retry = False
        self.approval_url: str | None = None
        self.return_params: dict[str, str | None] = {}

    @property
    def store(self):
        return self.machine.store

    async def mount(self) -> ViewState:
        """Subscribe to the user's topic, then load the last known attempt.

        Subscribing first means a transition that lands while the store is
        being read is still delivered; merging it twice is harmless.
        """
        if self.subscription is None:
            self.subscription = self.machine.bus.subscribe(user_topic(self.user_id))
        self.attempt = await self.store.find_by_user(self.user_id)
        return self.view_state()

    async def request_approval(self, retry: bool = False) -> ViewState:
        """Start (or retry) a trial and hand back the PayPal approval URL."""
        self._forget_round_trip()
        self.transferring = True

        try:
            attempt = await subscription_service.start_trial(
                self.machine, self.client, self.user_id, self.plan_id
            )
        except ProcessorApiError as e:
            self.transferring = False
            self.error_message = f"Failed to prepare PayPal: {e.user_message()}"
            self.retry = True
            self.attempt = await self.store.find_by_user(self.user_id)
            return self.view_state()

        if retry:
            logger.info("User %s retried trial sign-up as attempt %s", self.user_id, attempt.id)
        self.attempt = attempt
        self.approval_url = attempt.approval_url
        self.transferring = False
        return self.view_state()

    async def handle_return(self, params: dict[str, Any]) -> ViewState:
        """User came back from PayPal after approving; wait for the webhook."""
        self._store_params(params)
        self.returned = True
        self.paypal_cancelled = False
        await self._consume_approval_url()

        returned_id = self.return_params.get("subscription_id")
        if (
            returned_id
            and self.attempt is not None
            and self.attempt.processor_subscription_id
            and returned_id != self.attempt.processor_subscription_id
        ):
            logger.warning(
                "PayPal returned subscription %s but attempt %s tracks %s",
                returned_id,
                self.attempt.id,
                self.attempt.processor_subscription_id,
            )
        return self.view_state()

    async def handle_cancel(self, params: dict[str, Any]) -> ViewState:
        """User backed out at PayPal. Status is left to webhooks and the timer."""
        self._store_params(params)
        self.paypal_cancelled = True
        self.returned = False
        await self._consume_approval_url()
        return self.view_state()

    def restore_return(self, saved: dict[str, Any]) -> None:
        """Re-apply a PayPal redirect remembered in the cookie session.

        Skipped when the redirect named a different PayPal subscription than
        the one the current attempt tracks.
        """
        if self.attempt is None:
            return
        subscription_id = saved.get("subscription_id")
        if subscription_id and subscription_id != self.attempt.processor_subscription_id:
            return
        self._store_params(saved)
        self.returned = saved.get("outcome") == "success"
        self.paypal_cancelled = saved.get("outcome") == "cancel"

    async def apply_message(self, message: dict[str, Any]) -> ViewState | None:
        """Merge a bus message. Returns the new view, or None if it was ignored.

        A message for the tracked attempt refreshes it until it is terminal.
        A message for another attempt is adopted only when that attempt is
        the user's current one (the user restarted the trial from another
        session); messages for older attempts are dropped.
        """
        attempt_id = message.get("attempt_id")
        if not attempt_id:
            return None
        try:
            incoming = uuid.UUID(attempt_id)
        except ValueError:
            logger.warning("Bus message carried an invalid attempt id %r", attempt_id)
            return None

        if self.attempt is not None and incoming == self.attempt.id:
            if self.attempt.is_terminal:
                return None
            attempt = await self.store.get(incoming)
        else:
            attempt = await self.store.find_by_user(self.user_id)
            if attempt is None or attempt.id != incoming:
                logger.debug("Ignoring message for stale attempt %s", incoming)
                return None
            if self.attempt is not None:
                logger.info(
                    "Session for user %s moved from attempt %s to %s",
                    self.user_id,
                    self.attempt.id,
                    attempt.id,
                )
                self._forget_round_trip()
        if attempt is None:
            return None

        self.attempt = attempt
        if attempt.is_terminal:
            self.transferring = False
            self.error_message = None
        return self.view_state()

    async def check_status(self) -> ViewState:
        """Re-read the store; used when the client suspects it missed a message."""
        self.attempt = await self.store.find_by_user(self.user_id)
        return self.view_state()

    async def updates(self) -> AsyncIterator[ViewState]:
        """Current view followed by one view per merged bus message."""
        if self.subscription is None:
            yield await self.mount()
        else:
            yield self.view_state()
        async for message in self.subscription:
            state = await self.apply_message(message)
            if state is not None:
                yield state

    def close(self) -> None:
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None

    # ------------------------------------------------------------------

    def _forget_round_trip(self) -> None:
        self.transferring = False
        self.returned = False
        self.paypal_cancelled = False
        self.error_message = None
        self.retry = False
        self.approval_url = None
        self.return_params = {}

    def _store_params(self, params: dict[str, Any]) -> None:
        self.return_params = {
            "subscription_id": params.get("subscription_id"),
            "token": params.get("token"),
            "ba_token": params.get("ba_token"),
        }

    async def _consume_approval_url(self) -> None:
        self.approval_url = None
        if self.attempt is None:
            self.attempt = await self.store.find_by_user(self.user_id)
        if self.attempt is not None:
            self.attempt = await self.machine.consume_approval_url(self.attempt.id)

    def _current_view(self, status: AttemptStatus) -> View:
        if self.transferring:
            return View.TRANSFERRING
        if self.error_message:
            return View.ERROR
        if status == AttemptStatus.ACTIVE:
            return View.ACTIVE
        if status == AttemptStatus.CANCELLED:
            return View.CANCELLED
        if status == AttemptStatus.FAILED:
            return View.FAILED
        if self.paypal_cancelled:
            return View.PAYPAL_CANCELLED
        if status == AttemptStatus.APPROVAL_PENDING:
            return View.PROCESSING if self.returned else View.APPROVAL_PENDING
        if status == AttemptStatus.PENDING_CREATION:
            # Another session of the same user is mid-creation.
            return View.TRANSFERRING
        return View.START_TRIAL

    def view_state(self) -> ViewState:
        status = self.attempt.attempt_status if self.attempt else AttemptStatus.NONE
        view = self._current_view(status)

        message = MESSAGES.get(view)
        if (
            view == View.START_TRIAL
            and self.attempt is not None
            and self.attempt.processor_subscription_id
            and self.attempt.failure_reason
            and self.attempt.failure_reason != SUPERSEDED_REASON
        ):
            message = TIMEOUT_MESSAGE

        approval_url = None
        if view == View.APPROVAL_PENDING:
            approval_url = self.approval_url or (self.attempt.approval_url if self.attempt else None)

        return ViewState(
            view=view,
            page_title=PAGE_TITLES[view],
            subscription_status=status.value,
            attempt_id=str(self.attempt.id) if self.attempt else None,
            approval_url=approval_url,
            message=message,
            error_message=self.error_message if view == View.ERROR else None,
            transferring_to_paypal=view == View.TRANSFERRING,
            retry=self.retry and view == View.ERROR,
            paypal_subscription_id=self.return_params.get("subscription_id"),
            paypal_token=self.return_params.get("token"),
            paypal_ba_token=self.return_params.get("ba_token"),
        )
