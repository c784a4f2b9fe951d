"""Pydantic v2 request/response schemas for subscription endpoints."""

from pydantic import BaseModel

# --- Request schemas ---


class TrialRequest(BaseModel):
    """Start (or retry) a PayPal trial."""

    retry: bool = False


class ReturnParams(BaseModel):
    """Query parameters PayPal appends to the return / cancel URLs."""

    subscription_id: str | None = None
    token: str | None = None
    ba_token: str | None = None


class CancelRequest(BaseModel):
    """Ask PayPal to cancel the current subscription."""

    reason: str = "Customer requested cancellation"


# --- Response schemas ---


class ViewStateResponse(BaseModel):
    """What the subscription page should show."""

    view: str
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


class TrialResponse(BaseModel):
    """Approval link for the new attempt plus the resulting view."""

    approval_url: str
    state: ViewStateResponse


class CancelResponse(BaseModel):
    status: str
    processor_subscription_id: str | None = None
    attempt_status: str | None = None
    detail: str | None = None


class PlanResponse(BaseModel):
    """PayPal billing plan details."""

    plan_id: str
    name: str | None
    status: str | None
    product_id: str | None = None


class WebhookResponse(BaseModel):
    status: str
