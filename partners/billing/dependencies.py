"""FastAPI dependencies exposing the billing runtime to routers."""

from fastapi import HTTPException, Request, status

from partners.billing.presenter import SessionPresenter
from partners.billing.runtime import BillingRuntime


def get_runtime(request: Request) -> BillingRuntime:
    runtime: BillingRuntime | None = getattr(request.app.state, "billing", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing is not initialised",
        )
    return runtime


def build_presenter(user_id: str, runtime: BillingRuntime) -> SessionPresenter:
    return SessionPresenter(
        user_id=user_id,
        machine=runtime.machine,
        client=runtime.client,
        plan_id=runtime.settings.paypal_plan_id,
    )
