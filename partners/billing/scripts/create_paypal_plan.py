"""Create the Loving Partners trial plan in PayPal.

Run once per PayPal environment (sandbox or live, from PAYPAL_MODE):
    python -m partners.billing.scripts.create_paypal_plan

Needs PAYPAL_CLIENT_ID and PAYPAL_SECRET in .env. Nothing is created when
PAYPAL_PLAN_ID already names a plan PayPal knows about. PAYPAL_PRODUCT_ID, if
set, reuses that catalog product instead of creating a new one.

Outputs the ids to set in .env:
    PAYPAL_PRODUCT_ID=PROD-xxx
    PAYPAL_PLAN_ID=P-xxx
"""

import asyncio

from partners.billing.errors import InvalidPlan, ProcessorApiError
from partners.billing.paypal_client import PayPalClient, PlanSnapshot, build_plan_payload
from partners.config import Settings, settings

PRODUCT_NAME = "Loving Partners Premium"
PRODUCT_DESCRIPTION = "Premium access to Loving Partners dating service"


async def maybe_create_plan(
    client: PayPalClient, config: Settings = settings
) -> tuple[PlanSnapshot, bool]:
    """Return the configured plan, creating it (and its product) if PayPal has none.

    The flag is True when a new plan was created.
    """
    if config.paypal_plan_id:
        try:
            return await client.get_plan(config.paypal_plan_id), False
        except InvalidPlan:
            print(f"Plan {config.paypal_plan_id} not found in PayPal, creating a new one")

    product_id = config.paypal_product_id
    if not product_id:
        product_id = await client.create_product(PRODUCT_NAME, PRODUCT_DESCRIPTION)
        print(f"Created product: {PRODUCT_NAME} ({product_id})")

    plan = await client.create_plan(
        build_plan_payload(
            product_id,
            price=config.paypal_plan_price,
            currency=config.paypal_currency,
            tax_percentage=config.paypal_tax_percentage,
        )
    )
    return plan, True


async def main() -> None:
    if not settings.paypal_client_id or not settings.paypal_secret:
        print("ERROR: PAYPAL_CLIENT_ID and PAYPAL_SECRET must be set in .env")
        return

    client = PayPalClient.from_settings(settings)
    try:
        plan, created = await maybe_create_plan(client)
    except ProcessorApiError as e:
        print(f"ERROR: {e.user_message()}")
        return
    finally:
        await client.aclose()

    if not created:
        print(f"Plan already exists: {plan.name} ({plan.plan_id}, {plan.status})")
        return

    print(f"Created plan: {plan.name} ({plan.plan_id})")
    print(f"  Price: {settings.paypal_plan_price} {settings.paypal_currency}/mo after a free trial month")

    print("\n--- Add these to your .env ---")
    print(f"PAYPAL_PRODUCT_ID={plan.product_id}")
    print(f"PAYPAL_PLAN_ID={plan.plan_id}")


if __name__ == "__main__":
    asyncio.run(main())
