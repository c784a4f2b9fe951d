"""Tests for the subscription API and the PayPal browser redirects."""

from partners.billing.errors import InvalidPlan, NetworkError, ProcessorApiError
from partners.billing.events import (
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
    parse_webhook_event,
)
from partners.billing.paypal_client import PlanSnapshot
from partners.billing.state_machine import Outcome
from partners.config import settings

API = "/api/v1/subscriptions"


class TestCurrent:
    async def test_requires_auth(self, client):
        response = await client.get(f"{API}/current")
        assert response.status_code in (401, 403)

    async def test_fresh_user(self, client, auth_headers):
        response = await client.get(f"{API}/current", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["view"] == "start_trial"
        assert data["subscription_status"] == "none"
        assert data["attempt_id"] is None

    async def test_active_user(self, client, auth_headers, machine, created, webhook_payload):
        attempt = await machine.begin_attempt("user-42", "P-TRIAL-PLAN")
        await machine.record_creation(attempt.id, created())
        await machine.handle_event(parse_webhook_event(webhook_payload(SUBSCRIPTION_ACTIVATED)))

        response = await client.get(f"{API}/current", headers=auth_headers)

        data = response.json()
        assert data["view"] == "active"
        assert data["attempt_id"] == str(attempt.id)

    async def test_runtime_missing_returns_503(self, client, auth_headers):
        from partners.main import app

        saved = app.state.billing
        app.state.billing = None
        try:
            response = await client.get(f"{API}/current", headers=auth_headers)
        finally:
            app.state.billing = saved

        assert response.status_code == 503


class TestStartTrial:
    async def test_returns_approval_url(self, client, auth_headers, paypal, created):
        paypal.create_subscription.return_value = created()

        response = await client.post(f"{API}/trial", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["approval_url"].endswith("ba_token=BA-SUB-1")
        assert data["state"]["view"] == "approval_pending"
        paypal.create_subscription.assert_awaited_once_with("user-42", "P-TRIAL-PLAN")

    async def test_processor_failure_returns_502(self, client, auth_headers, paypal, store):
        paypal.create_subscription.side_effect = NetworkError("PayPal request timed out")

        response = await client.post(f"{API}/trial", headers=auth_headers, json={"retry": True})

        assert response.status_code == 502
        assert response.json()["detail"] == "Failed to prepare PayPal: PayPal request timed out"
        attempt = await store.find_by_user("user-42")
        assert attempt.attempt_status.value == "none"

    async def test_second_trial_supersedes_first(self, client, auth_headers, paypal, created, store):
        paypal.create_subscription.side_effect = [created("SUB-1"), created("SUB-2")]

        await client.post(f"{API}/trial", headers=auth_headers)
        first = await store.find_by_resource("SUB-1")
        await client.post(f"{API}/trial", headers=auth_headers)

        assert first.attempt_status.value == "none"
        assert first.failure_reason == "superseded"
        assert (await store.find_by_user("user-42")).processor_subscription_id == "SUB-2"


class TestPayPalReturn:
    async def _start(self, client, auth_headers, paypal, created):
        paypal.create_subscription.return_value = created()
        await client.post(f"{API}/trial", headers=auth_headers)

    async def test_return_shows_processing(self, client, auth_headers, paypal, created):
        await self._start(client, auth_headers, paypal, created)

        response = await client.post(
            f"{API}/return",
            headers=auth_headers,
            json={"subscription_id": "SUB-1", "token": "EC-1", "ba_token": "BA-SUB-1"},
        )

        data = response.json()
        assert data["view"] == "processing"
        assert data["paypal_subscription_id"] == "SUB-1"
        assert data["approval_url"] is None

    async def test_return_is_remembered_across_requests(self, client, auth_headers, paypal, created):
        await self._start(client, auth_headers, paypal, created)
        await client.post(f"{API}/return", headers=auth_headers, json={"subscription_id": "SUB-1"})

        response = await client.get(f"{API}/current", headers=auth_headers)

        assert response.json()["view"] == "processing"

    async def test_cancel_return(self, client, auth_headers, paypal, created):
        await self._start(client, auth_headers, paypal, created)

        response = await client.post(
            f"{API}/cancel-return", headers=auth_headers, json={"token": "EC-1"}
        )

        data = response.json()
        assert data["view"] == "paypal_cancelled"
        assert data["page_title"] == "Subscription Cancelled"
        assert data["subscription_status"] == "approval_pending"

    async def test_browser_success_redirect(self, client, auth_headers, paypal, created):
        await self._start(client, auth_headers, paypal, created)

        response = await client.get(
            "/subscriptions/paypal/success",
            params={"subscription_id": "SUB-1", "token": "EC-1", "ba_token": "BA-SUB-1"},
        )

        assert response.status_code == 303
        assert response.headers["location"] == f"{settings.frontend_url}/subscriptions?outcome=success"

        current = await client.get(f"{API}/current", headers=auth_headers)
        assert current.json()["view"] == "processing"
        assert current.json()["paypal_ba_token"] == "BA-SUB-1"

    async def test_browser_cancel_redirect(self, client, auth_headers, paypal, created):
        await self._start(client, auth_headers, paypal, created)

        response = await client.get("/subscriptions/paypal/cancel", params={"token": "EC-1"})

        assert response.status_code == 303
        assert response.headers["location"].endswith("outcome=cancel")
        current = await client.get(f"{API}/current", headers=auth_headers)
        assert current.json()["view"] == "paypal_cancelled"

    async def test_new_trial_forgets_previous_redirect(self, client, auth_headers, paypal, created):
        paypal.create_subscription.side_effect = [created("SUB-1"), created("SUB-2")]
        await client.post(f"{API}/trial", headers=auth_headers)
        await client.get("/subscriptions/paypal/cancel", params={"token": "EC-1"})

        response = await client.post(f"{API}/trial", headers=auth_headers)

        assert response.json()["state"]["view"] == "approval_pending"


class TestCheck:
    async def test_check_reflects_webhook(
        self, client, auth_headers, paypal, created, machine, webhook_payload
    ):
        paypal.create_subscription.return_value = created()
        await client.post(f"{API}/trial", headers=auth_headers)
        await machine.handle_event(parse_webhook_event(webhook_payload(SUBSCRIPTION_ACTIVATED)))

        response = await client.post(f"{API}/check", headers=auth_headers)

        data = response.json()
        assert data["view"] == "active"
        assert data["message"] == "Your subscription is active! You now have a 7-day free trial."


class TestCancel:
    async def test_nothing_to_cancel(self, client, auth_headers, paypal):
        response = await client.post(f"{API}/cancel", headers=auth_headers)

        assert response.status_code == 404
        paypal.cancel_subscription.assert_not_awaited()

    async def test_cancel_requests_paypal_only(
        self, client, auth_headers, paypal, created, machine, webhook_payload, store
    ):
        paypal.create_subscription.return_value = created()
        await client.post(f"{API}/trial", headers=auth_headers)
        await machine.handle_event(parse_webhook_event(webhook_payload(SUBSCRIPTION_ACTIVATED)))

        response = await client.post(
            f"{API}/cancel", headers=auth_headers, json={"reason": "Not needed"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "cancellation_requested"
        assert data["processor_subscription_id"] == "SUB-1"
        assert data["attempt_status"] == "active"
        assert "stays active" in data["detail"]
        paypal.cancel_subscription.assert_awaited_once_with("SUB-1", "Not needed")
        assert (await store.find_by_user("user-42")).attempt_status.value == "active"

    async def test_active_record_survives_cancelled_webhook(
        self, client, auth_headers, paypal, created, machine, webhook_payload, store
    ):
        paypal.create_subscription.return_value = created()
        await client.post(f"{API}/trial", headers=auth_headers)
        await machine.handle_event(parse_webhook_event(webhook_payload(SUBSCRIPTION_ACTIVATED)))
        await client.post(f"{API}/cancel", headers=auth_headers)

        result = await machine.handle_event(
            parse_webhook_event(webhook_payload(SUBSCRIPTION_CANCELLED))
        )

        assert result.outcome == Outcome.CONFLICT
        assert (await store.find_by_user("user-42")).attempt_status.value == "active"

    async def test_cancel_before_approval_waits_for_webhook(
        self, client, auth_headers, paypal, created
    ):
        paypal.create_subscription.return_value = created()
        await client.post(f"{API}/trial", headers=auth_headers)

        response = await client.post(f"{API}/cancel", headers=auth_headers)

        data = response.json()
        assert data["attempt_status"] == "approval_pending"
        assert "when PayPal confirms" in data["detail"]

    async def test_paypal_failure_returns_502(self, client, auth_headers, paypal, created):
        paypal.create_subscription.return_value = created()
        paypal.cancel_subscription.side_effect = ProcessorApiError(
            "PayPal request failed",
            status_code=422,
            body={"name": "UNPROCESSABLE_ENTITY", "message": "Subscription status is invalid."},
        )
        await client.post(f"{API}/trial", headers=auth_headers)

        response = await client.post(f"{API}/cancel", headers=auth_headers)

        assert response.status_code == 502
        assert "Subscription status is invalid." in response.json()["detail"]


class TestPlan:
    async def test_plan_details(self, client, auth_headers, paypal):
        paypal.get_plan.return_value = PlanSnapshot("P-TRIAL-PLAN", "Trial", "ACTIVE", "PROD-1")

        response = await client.get(f"{API}/plan", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {
            "plan_id": "P-TRIAL-PLAN",
            "name": "Trial",
            "status": "ACTIVE",
            "product_id": "PROD-1",
        }

    async def test_unknown_plan(self, client, auth_headers, paypal):
        paypal.get_plan.side_effect = InvalidPlan("PayPal plan not found", status_code=404)

        response = await client.get(f"{API}/plan", headers=auth_headers)

        assert response.status_code == 404

    async def test_no_plan_configured(self, client, auth_headers, runtime):
        runtime.settings.paypal_plan_id = ""

        response = await client.get(f"{API}/plan", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["detail"] == "No PayPal plan configured"


class TestHealth:
    async def test_health_reports_billing_ready(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["attempt_store"] == "memory"
