"""Subscription service: trial sign-up and cancellation on top of the state machine."""

import logging

from partners.billing.errors import ProcessorApiError
from partners.billing.paypal_client import PayPalClient
from partners.billing.state_machine import SubscriptionStateMachine
from partners.models.subscription_attempt import AttemptStatus, SubscriptionAttempt
from partners.services.attempt_store import AttemptStore

logger = logging.getLogger(__name__)


async def get_current_attempt(store: AttemptStore, user_id: str) -> SubscriptionAttempt | None:
    """Latest attempt for the user, or None if they never started one."""
    return await store.find_by_user(user_id)


async def start_trial(
    machine: SubscriptionStateMachine,
    client: PayPalClient,
    user_id: str,
    plan_id: str,
) -> SubscriptionAttempt:
    """Create a PayPal trial subscription for the user.

    Supersedes any unfinished attempt, then asks PayPal for a subscription and
    records its id and approval link. Processor errors abandon the new attempt
    (back to ``none``) and are re-raised for the caller to show.
    """
    attempt = await machine.begin_attempt(user_id, plan_id)

    try:
        created = await client.create_subscription(user_id, plan_id)
    except ProcessorApiError as e:
        logger.warning(
            "PayPal subscription creation failed for user %s: %s", user_id, e.user_message()
        )
        await machine.record_creation_failure(attempt.id, e.user_message())
        raise

    result = await machine.record_creation(attempt.id, created)
    return result.attempt


async def request_cancellation(
    client: PayPalClient,
    store: AttemptStore,
    user_id: str,
    reason: str = "Customer requested cancellation",
) -> SubscriptionAttempt | None:
    """Ask PayPal to cancel the user's subscription.

    Returns None when there is nothing to cancel. The local attempt is not
    touched here. An attempt awaiting approval is cancelled by PayPal's
    webhook; an active one keeps its status because active is terminal.
    """
    attempt = await store.find_by_user(user_id)
    if attempt is None or not attempt.processor_subscription_id:
        return None
    if attempt.attempt_status not in (AttemptStatus.APPROVAL_PENDING, AttemptStatus.ACTIVE):
        return None

    await client.cancel_subscription(attempt.processor_subscription_id, reason)
    logger.info(
        "Cancellation requested for PayPal subscription %s (user %s)",
        attempt.processor_subscription_id,
        user_id,
    )
    return attempt
