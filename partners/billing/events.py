"""PayPal webhook event types and payload parsing."""

from dataclasses import dataclass, field
from typing import Any

from partners.billing.errors import MalformedEvent

SUBSCRIPTION_CREATED = "BILLING.SUBSCRIPTION.CREATED"
SUBSCRIPTION_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
SUBSCRIPTION_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
SUBSCRIPTION_EXPIRED = "BILLING.SUBSCRIPTION.EXPIRED"
SUBSCRIPTION_PAYMENT_FAILED = "BILLING.SUBSCRIPTION.PAYMENT.FAILED"

# Recognised, logged, never transition an attempt.
INFORMATIONAL_EVENTS = frozenset(
    {
        "BILLING.SUBSCRIPTION.UPDATED",
        "BILLING.SUBSCRIPTION.SUSPENDED",
        "BILLING.SUBSCRIPTION.PAYMENT.SUCCEEDED",
        "PAYMENT.SALE.COMPLETED",
    }
)


@dataclass(frozen=True)
class WebhookEvent:
    """A verified, parsed PayPal notification."""

    event_type: str
    resource_id: str
    user_id: str | None
    event_id: str | None = None
    resource_status: str | None = None
    create_time: str | None = None
    summary: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def resource(self) -> dict[str, Any]:
        resource = self.raw_payload.get("resource")
        return resource if isinstance(resource, dict) else {}

    def failure_reason(self) -> str | None:
        """Best-effort reason text for cancel / failure events."""
        resource = self.resource
        for key in ("status_change_note", "reason", "status_update_reason"):
            if resource.get(key):
                return str(resource[key])
        return self.summary

    def resource_snapshot(self) -> dict[str, Any]:
        return {
            "id": self.resource_id,
            "status": self.resource_status,
            "custom_id": self.user_id,
            "plan_id": self.resource.get("plan_id"),
        }


def extract_user_id(resource: dict[str, Any]) -> str | None:
    """Correlation id we stored as ``custom_id`` when creating the subscription."""
    custom_id = resource.get("custom_id")
    if isinstance(custom_id, str) and custom_id:
        return custom_id
    nested = resource.get("subscription")
    if isinstance(nested, dict):
        custom_id = nested.get("custom_id")
        if isinstance(custom_id, str) and custom_id:
            return custom_id
    return None


def parse_webhook_event(payload: dict[str, Any]) -> WebhookEvent:
    """Turn a decoded webhook body into a :class:`WebhookEvent`.

    Raises:
        MalformedEvent: ``event_type`` or ``resource.id`` is missing.
    """
    event_type = payload.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("Webhook has no event_type")

    resource = payload.get("resource")
    if not isinstance(resource, dict):
        raise MalformedEvent(f"{event_type} webhook has no resource object")

    resource_id = resource.get("id")
    if not isinstance(resource_id, str) or not resource_id:
        raise MalformedEvent(f"{event_type} webhook has no resource.id")

    # Sale events reference the subscription through billing_agreement_id.
    if event_type.startswith("PAYMENT.SALE.") and resource.get("billing_agreement_id"):
        resource_id = resource["billing_agreement_id"]

    return WebhookEvent(
        event_type=event_type,
        resource_id=resource_id,
        user_id=extract_user_id(resource),
        event_id=payload.get("id"),
        resource_status=resource.get("status"),
        create_time=payload.get("create_time"),
        summary=payload.get("summary"),
        raw_payload=payload,
    )
