"""Async PayPal REST wrapper for trial subscriptions."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from partners.billing.errors import (
    AuthError,
    InvalidPlan,
    MalformedResponse,
    NetworkError,
    ProcessorApiError,
)
from partners.config import Settings, settings

logger = logging.getLogger(__name__)

# Refresh the OAuth token this many seconds before PayPal says it expires.
_TOKEN_EXPIRY_MARGIN_SECONDS = 60

# PayPal issue codes that mean the plan itself is the problem.
_INVALID_PLAN_ISSUES = {"INVALID_RESOURCE_ID", "RESOURCE_NOT_FOUND", "PLAN_STATUS_INVALID"}


@dataclass(frozen=True)
class CreatedSubscription:
    """Result of creating a subscription at PayPal."""

    processor_subscription_id: str
    approval_url: str
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class StatusSnapshot:
    """Current PayPal view of a subscription."""

    subscription_id: str
    status: str
    custom_id: str | None = None
    plan_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class PlanSnapshot:
    """PayPal billing plan details."""

    plan_id: str
    name: str | None
    status: str | None
    product_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def find_approve_url(body: dict[str, Any]) -> str | None:
    """Return the ``href`` of the link whose ``rel`` is exactly ``approve``."""
    links = body.get("links") if isinstance(body, dict) else None
    if not isinstance(links, list):
        return None
    for link in links:
        if isinstance(link, dict) and link.get("rel") == "approve" and link.get("href"):
            return link["href"]
    return None


def _issues(body: Any) -> set[str]:
    if not isinstance(body, dict):
        return set()
    found = {body.get("name")} if body.get("name") else set()
    for detail in body.get("details") or []:
        if isinstance(detail, dict) and detail.get("issue"):
            found.add(detail["issue"])
    return found


def _mentions_plan(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    for detail in body.get("details") or []:
        if isinstance(detail, dict) and "plan_id" in str(detail.get("field", "")):
            return True
    return False


def _plan_snapshot(body: Any) -> PlanSnapshot:
    if not isinstance(body, dict) or not body.get("id"):
        raise MalformedResponse("PayPal plan response has no id", body=body)
    return PlanSnapshot(
        plan_id=body["id"],
        name=body.get("name"),
        status=body.get("status"),
        product_id=body.get("product_id"),
        raw=body,
    )


class PayPalClient:
    """Thin client over the PayPal billing API.

    Holds no state besides the cached OAuth access token. Every request is
    bounded by ``timeout``; transport failures surface as :class:`NetworkError`
    and are never retried here.
    """

    def __init__(
        self,
        client_id: str,
        secret: str,
        base_url: str,
        timeout: float = 10.0,
        *,
        return_url_base: str = "http://localhost:8000",
        trial_period_days: int = 7,
        brand_name: str = "Loving Partners",
        locale: str = "en-AU",
        http_client: httpx.AsyncClient | None = None,
    ):
        self._client_id = client_id
        self._secret = secret
        self.base_url = base_url.rstrip("/")
        self.return_url_base = return_url_base.rstrip("/")
        self.trial_period_days = trial_period_days
        self.brand_name = brand_name
        self.locale = locale
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_http = http_client is None
        self._token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(
        cls, config: Settings = settings, http_client: httpx.AsyncClient | None = None
    ) -> "PayPalClient":
        return cls(
            client_id=config.paypal_client_id,
            secret=config.paypal_secret,
            base_url=config.paypal_api_base_url,
            timeout=config.paypal_timeout_seconds,
            return_url_base=config.paypal_return_url_base,
            trial_period_days=config.paypal_trial_period_days,
            brand_name=config.paypal_brand_name,
            locale=config.paypal_locale,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        """Return a cached client-credentials token, fetching a new one if stale."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        if not self._client_id or not self._secret:
            logger.error("PayPal client id or secret is not configured")
            raise AuthError("PayPal credentials are not configured")

        try:
            response = await self._http.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self._client_id, self._secret),
                headers={"Accept": "application/json"},
                data={"grant_type": "client_credentials"},
            )
        except httpx.TimeoutException as e:
            logger.error("PayPal token request timed out")
            raise NetworkError("Timed out requesting PayPal access token") from e
        except httpx.HTTPError as e:
            logger.error("PayPal token request failed: %s", type(e).__name__)
            raise NetworkError("Could not reach PayPal") from e

        if response.status_code != 200:
            logger.error("PayPal authentication failed with status %s", response.status_code)
            raise AuthError(
                "PayPal authentication failed",
                status_code=response.status_code,
                body=self._json_or_none(response),
            )

        body = self._json_or_none(response) or {}
        token = body.get("access_token")
        if not token:
            raise MalformedResponse("PayPal token response had no access_token", body=body)

        expires_in = int(body.get("expires_in") or 0)
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        logger.info("PayPal authentication succeeded")
        return token

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @staticmethod
    def _json_or_none(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[int, Any]:
        token = await self.get_access_token()
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        request_headers.update(headers or {})

        try:
            response = await self._http.request(
                method, f"{self.base_url}{path}", json=json, headers=request_headers
            )
        except httpx.TimeoutException as e:
            logger.error("PayPal %s %s timed out", method, path)
            raise NetworkError(f"PayPal {method} {path} timed out") from e
        except httpx.HTTPError as e:
            logger.error("PayPal %s %s failed: %s", method, path, type(e).__name__)
            raise NetworkError(f"PayPal {method} {path} failed") from e

        body = self._json_or_none(response)
        if response.status_code in (401, 403):
            # Token revoked or expired early; drop it so the next call re-authenticates.
            self._token = None
            logger.error("PayPal %s %s rejected credentials (%s)", method, path, response.status_code)
            raise AuthError(
                "PayPal rejected the access token", status_code=response.status_code, body=body
            )
        if response.status_code >= 300:
            logger.error(
                "PayPal API error: %s %s returned %s - %s",
                method,
                path,
                response.status_code,
                body,
            )
        return response.status_code, body

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def build_subscription_payload(
        self, user_id: str, plan_id: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """Build the create-subscription body with the user id as ``custom_id``."""
        now = now or datetime.now(timezone.utc)
        start_time = (now + timedelta(days=self.trial_period_days)).strftime("%Y-%m-%dT%H:%M:%SZ")
        return {
            "plan_id": plan_id,
            "start_time": start_time,
            "custom_id": user_id,
            "application_context": {
                "brand_name": self.brand_name,
                "locale": self.locale,
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "payment_method": {
                    "payer_selected": "PAYPAL",
                    "payee_preferred": "IMMEDIATE_PAYMENT_REQUIRED",
                },
                "return_url": f"{self.return_url_base}/subscriptions/paypal/success",
                "cancel_url": f"{self.return_url_base}/subscriptions/paypal/cancel",
            },
        }

    async def create_subscription(self, user_id: str, plan_id: str) -> CreatedSubscription:
        """Create a subscription for ``user_id`` and return its id and approval link."""
        if not plan_id:
            raise InvalidPlan("No PayPal plan id configured")

        logger.info("Creating PayPal subscription for user %s on plan %s", user_id, plan_id)
        status_code, body = await self._request(
            "POST",
            "/v1/billing/subscriptions",
            json=self.build_subscription_payload(user_id, plan_id),
            headers={"Prefer": "return=representation"},
        )

        if status_code == 404 or (
            status_code in (400, 422)
            and (_issues(body) & _INVALID_PLAN_ISSUES or _mentions_plan(body))
        ):
            raise InvalidPlan(f"PayPal rejected plan {plan_id}", status_code=status_code, body=body)
        if status_code >= 300:
            raise ProcessorApiError(
                "PayPal subscription creation failed", status_code=status_code, body=body
            )

        if not isinstance(body, dict):
            raise MalformedResponse("PayPal returned a non-JSON subscription", status_code=status_code)
        subscription_id = body.get("id")
        if not isinstance(subscription_id, str) or not subscription_id:
            raise MalformedResponse("PayPal subscription response has no id", body=body)
        approval_url = find_approve_url(body)
        if approval_url is None:
            raise MalformedResponse("PayPal subscription response has no approve link", body=body)

        logger.info("Created PayPal subscription %s for user %s", subscription_id, user_id)
        return CreatedSubscription(
            processor_subscription_id=subscription_id, approval_url=approval_url, raw=body
        )

    async def get_subscription_status(self, subscription_id: str) -> StatusSnapshot:
        """Fetch the current PayPal status of a subscription."""
        status_code, body = await self._request("GET", f"/v1/billing/subscriptions/{subscription_id}")
        if status_code >= 300:
            raise ProcessorApiError(
                f"Could not fetch PayPal subscription {subscription_id}",
                status_code=status_code,
                body=body,
            )
        if not isinstance(body, dict) or not body.get("status"):
            raise MalformedResponse("PayPal subscription response has no status", body=body)
        return StatusSnapshot(
            subscription_id=body.get("id") or subscription_id,
            status=body["status"],
            custom_id=body.get("custom_id"),
            plan_id=body.get("plan_id"),
            raw=body,
        )

    async def get_plan(self, plan_id: str) -> PlanSnapshot:
        """Fetch a billing plan by id."""
        status_code, body = await self._request("GET", f"/v1/billing/plans/{plan_id}")
        if status_code == 404:
            raise InvalidPlan(f"PayPal plan {plan_id} not found", status_code=404, body=body)
        if status_code >= 300:
            raise ProcessorApiError(
                f"Could not fetch PayPal plan {plan_id}", status_code=status_code, body=body
            )
        return _plan_snapshot(body)

    async def cancel_subscription(
        self, subscription_id: str, reason: str = "Customer requested cancellation"
    ) -> None:
        status_code, body = await self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            json={"reason": reason},
        )
        if status_code >= 300:
            raise ProcessorApiError(
                f"PayPal cancel failed for {subscription_id}",
                status_code=status_code,
                body=body,
            )
        logger.info("PayPal subscription %s: cancel requested", subscription_id)

    # ------------------------------------------------------------------
    # Catalog (plan provisioning)
    # ------------------------------------------------------------------

    async def create_product(
        self, name: str, description: str, product_type: str = "SERVICE"
    ) -> str:
        """Create a catalog product and return its id."""
        status_code, body = await self._request(
            "POST",
            "/v1/catalogs/products",
            json={"name": name, "description": description, "type": product_type},
            headers={"Prefer": "return=representation"},
        )
        if status_code >= 300:
            raise ProcessorApiError(
                "PayPal product creation failed", status_code=status_code, body=body
            )
        if not isinstance(body, dict) or not body.get("id"):
            raise MalformedResponse("PayPal product response has no id", body=body)
        logger.info("Created PayPal product %s", body["id"])
        return body["id"]

    async def create_plan(self, payload: dict[str, Any]) -> PlanSnapshot:
        """Create a billing plan from a payload built by :func:`build_plan_payload`."""
        status_code, body = await self._request(
            "POST",
            "/v1/billing/plans",
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if status_code in (400, 404, 422) and "INVALID_RESOURCE_ID" in _issues(body):
            raise InvalidPlan(
                f"PayPal rejected product {payload.get('product_id')}",
                status_code=status_code,
                body=body,
            )
        if status_code >= 300:
            raise ProcessorApiError("PayPal plan creation failed", status_code=status_code, body=body)
        plan = _plan_snapshot(body)
        logger.info("Created PayPal plan %s for product %s", plan.plan_id, plan.product_id)
        return plan


def build_plan_payload(
    product_id: str,
    *,
    name: str = "Loving Partners Monthly Subscription",
    description: str = "Premium monthly subscription to Loving Partners dating service",
    price: str = "19.00",
    currency: str = "AUD",
    tax_percentage: str = "10",
) -> dict[str, Any]:
    """Monthly plan: one free trial cycle, then ``price`` every month until cancelled.

    Tax is inclusive. PayPal retries a failed payment up to three times
    before suspending the subscription.
    """
    monthly = {"interval_unit": "MONTH", "interval_count": 1}
    return {
        "product_id": product_id,
        "name": name,
        "description": description,
        "status": "ACTIVE",
        "billing_cycles": [
            {
                "frequency": monthly,
                "tenure_type": "TRIAL",
                "sequence": 1,
                "total_cycles": 1,
                "pricing_scheme": {"fixed_price": {"value": "0.00", "currency_code": currency}},
            },
            {
                "frequency": monthly,
                "tenure_type": "REGULAR",
                "sequence": 2,
                "total_cycles": 0,
                "pricing_scheme": {"fixed_price": {"value": price, "currency_code": currency}},
            },
        ],
        "payment_preferences": {
            "auto_bill_outstanding": True,
            "setup_fee": {"value": "0.00", "currency_code": currency},
            "setup_fee_failure_action": "CONTINUE",
            "payment_failure_threshold": 3,
        },
        "taxes": {"percentage": tax_percentage, "inclusive": True},
    }
