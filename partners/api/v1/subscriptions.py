"""Subscription endpoints: PayPal trial sign-up, redirects and live status."""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from sse_starlette.sse import EventSourceResponse

from partners.api.deps import build_presenter, get_current_user_id, get_runtime
from partners.billing.errors import InvalidPlan, ProcessorApiError
from partners.billing.presenter import SessionPresenter, View, ViewState
from partners.billing.runtime import BillingRuntime
from partners.config import settings
from partners.models.subscription_attempt import AttemptStatus
from partners.schemas.billing import (
    CancelRequest,
    CancelResponse,
    PlanResponse,
    ReturnParams,
    TrialRequest,
    TrialResponse,
    ViewStateResponse,
)
from partners.services import subscription_service

logger = logging.getLogger(__name__)

# Cookie-session key holding the last PayPal redirect
PAYPAL_RETURN_KEY = "paypal_return"

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])

# Browser-facing PayPal return / cancel URLs (no bearer token on these)
redirect_router = APIRouter(prefix="/subscriptions/paypal", tags=["subscriptions"])


def _to_response(state: ViewState) -> ViewStateResponse:
    return ViewStateResponse(**state.as_dict())


def _remember(request: Request, outcome: str, params: dict[str, Any]) -> None:
    request.session[PAYPAL_RETURN_KEY] = {
        "outcome": outcome,
        "subscription_id": params.get("subscription_id"),
        "token": params.get("token"),
        "ba_token": params.get("ba_token"),
    }


async def get_session_presenter(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    runtime: BillingRuntime = Depends(get_runtime),
):
    """Mounted presenter for this request, with any remembered PayPal redirect applied."""
    presenter = build_presenter(user_id, runtime)
    await presenter.mount()
    saved = request.session.get(PAYPAL_RETURN_KEY)
    if saved:
        presenter.restore_return(saved)
    try:
        yield presenter
    finally:
        presenter.close()


# ---------------------------------------------------------------------------
# PayPal browser redirects
# ---------------------------------------------------------------------------


@redirect_router.get("/success")
async def paypal_success(request: Request) -> RedirectResponse:
    """PayPal sends the user here after approval."""
    params = dict(request.query_params)
    logger.info("Received PayPal subscription success return (subscription=%s)", params.get("subscription_id"))
    _remember(request, "success", params)
    return RedirectResponse(
        url=f"{settings.frontend_url}/subscriptions?outcome=success",
        status_code=status.HTTP_303_SEE_OTHER,
    )


@redirect_router.get("/cancel")
async def paypal_cancel(request: Request) -> RedirectResponse:
    """PayPal sends the user here when they back out."""
    params = dict(request.query_params)
    logger.info("Received PayPal subscription cancel return")
    _remember(request, "cancel", params)
    return RedirectResponse(
        url=f"{settings.frontend_url}/subscriptions?outcome=cancel",
        status_code=status.HTTP_303_SEE_OTHER,
    )


# ---------------------------------------------------------------------------
# Authenticated API
# ---------------------------------------------------------------------------


@router.get("/current", response_model=ViewStateResponse)
async def get_current(
    presenter: SessionPresenter = Depends(get_session_presenter),
) -> ViewStateResponse:
    """Current subscription view for the authenticated user."""
    return _to_response(presenter.view_state())


@router.post("/trial", response_model=TrialResponse)
async def start_trial(
    request: Request,
    body: TrialRequest | None = None,
    presenter: SessionPresenter = Depends(get_session_presenter),
) -> TrialResponse:
    """Create a PayPal trial subscription and return its approval link."""
    request.session.pop(PAYPAL_RETURN_KEY, None)
    state = await presenter.request_approval(retry=bool(body and body.retry))

    if state.view == View.ERROR or not state.approval_url:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=state.error_message or "Failed to prepare PayPal",
        )
    return TrialResponse(approval_url=state.approval_url, state=_to_response(state))


@router.post("/return", response_model=ViewStateResponse)
async def handle_return(
    request: Request,
    params: ReturnParams,
    presenter: SessionPresenter = Depends(get_session_presenter),
) -> ViewStateResponse:
    """Record that the user came back from PayPal after approving."""
    data = params.model_dump()
    _remember(request, "success", data)
    return _to_response(await presenter.handle_return(data))


@router.post("/cancel-return", response_model=ViewStateResponse)
async def handle_cancel_return(
    request: Request,
    params: ReturnParams,
    presenter: SessionPresenter = Depends(get_session_presenter),
) -> ViewStateResponse:
    """Record that the user backed out at PayPal."""
    data = params.model_dump()
    _remember(request, "cancel", data)
    return _to_response(await presenter.handle_cancel(data))


@router.post("/check", response_model=ViewStateResponse)
async def check_status(
    presenter: SessionPresenter = Depends(get_session_presenter),
) -> ViewStateResponse:
    """Re-read the stored attempt."""
    return _to_response(await presenter.check_status())


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    body: CancelRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    runtime: BillingRuntime = Depends(get_runtime),
) -> CancelResponse:
    """Ask PayPal to cancel the user's subscription.

    An attempt still awaiting approval moves to ``cancelled`` when PayPal's
    CANCELLED webhook arrives. An ``active`` attempt stays ``active``: active
    is terminal, so that webhook is logged as a conflict and dropped.
    """
    reason = body.reason if body else CancelRequest().reason
    try:
        attempt = await subscription_service.request_cancellation(
            runtime.client, runtime.store, user_id, reason
        )
    except ProcessorApiError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"PayPal cancellation failed: {e.user_message()}",
        ) from e

    if attempt is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No subscription to cancel",
        )
    if attempt.attempt_status == AttemptStatus.ACTIVE:
        detail = "PayPal will stop billing; the local subscription record stays active."
    else:
        detail = "The local subscription record updates when PayPal confirms the cancellation."
    return CancelResponse(
        status="cancellation_requested",
        processor_subscription_id=attempt.processor_subscription_id,
        attempt_status=attempt.status,
        detail=detail,
    )


@router.get("/events")
async def stream_events(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    runtime: BillingRuntime = Depends(get_runtime),
) -> EventSourceResponse:
    """Stream view-state updates for the user via SSE."""
    saved = request.session.get(PAYPAL_RETURN_KEY)

    async def event_generator():
        presenter = build_presenter(user_id, runtime)
        await presenter.mount()
        if saved:
            presenter.restore_return(saved)
        try:
            async for state in presenter.updates():
                if await request.is_disconnected():
                    break
                yield json.dumps(state.as_dict())
        finally:
            presenter.close()
            logger.debug("Subscription event stream closed for user %s", user_id)

    return EventSourceResponse(event_generator())


@router.get("/plan", response_model=PlanResponse)
async def get_plan(
    _user_id: str = Depends(get_current_user_id),
    runtime: BillingRuntime = Depends(get_runtime),
) -> PlanResponse:
    """Look up the configured PayPal plan."""
    plan_id = runtime.settings.paypal_plan_id
    if not plan_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No PayPal plan configured",
        )
    try:
        plan = await runtime.client.get_plan(plan_id)
    except InvalidPlan as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"PayPal plan {plan_id} not found",
        ) from e
    except ProcessorApiError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"PayPal plan lookup failed: {e.user_message()}",
        ) from e

    return PlanResponse(
        plan_id=plan.plan_id,
        name=plan.name,
        status=plan.status,
        product_id=plan.product_id,
    )
