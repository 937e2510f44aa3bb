# payments.py

import os
import json
import logging
from dotenv import load_dotenv
import stripe

logger = logging.getLogger("sharewheel.payments")

# Stripe has no PKR pricing for this account, prices are charged in USD
CURRENCY = "usd"

RECURRING = {
    "monthly":   {"interval": "month"},
    "quarterly": {"interval": "month", "interval_count": 3},
    "yearly":    {"interval": "year"},
}


class WebhookVerificationError(ValueError):
    """The webhook payload or its signature could not be trusted."""


def load_api_key():
    """Load STRIPE_SECRET_KEY from .env and return it."""
    load_dotenv()
    key = os.getenv("STRIPE_SECRET_KEY")
    if not key:
        raise RuntimeError("Missing STRIPE_SECRET_KEY in environment variables")
    return key

def pkr_to_usd_cents(amount_pkr: float) -> int:
    rate = float(os.getenv("PKR_PER_USD", "280"))
    return int(round(amount_pkr / rate * 100))

def create_checkout_session(user_id: int, plan_type: str,
                            plan_price: float, base_url: str) -> dict:
    """
    Creates a hosted Stripe Checkout session in subscription mode and
    returns {"sessionId": str, "url": str}.

    The user id and plan travel as metadata on both the session and the
    subscription it creates, so later subscription/invoice events can be
    tied back to the user.
    """
    metadata = {
        "userId": str(user_id),
        "planType": plan_type,
        "planPrice": str(plan_price),
    }
    base_url = base_url.rstrip("/")
    session = stripe.checkout.Session.create(
        api_key=load_api_key(),
        payment_method_types=["card"],
        line_items=[{
            "price_data": {
                "currency": CURRENCY,
                "product_data": {
                    "name": f"{plan_type.capitalize()} Subscription Plan",
                    "description": (
                        f"Carpool platform subscription - {plan_type} plan "
                        f"(PKR {plan_price})"
                    ),
                },
                "unit_amount": pkr_to_usd_cents(plan_price),
                "recurring": RECURRING[plan_type],
            },
            "quantity": 1,
        }],
        mode="subscription",
        success_url=(
            f"{base_url}/dashboard/subscription"
            "?success=true&session_id={CHECKOUT_SESSION_ID}"
        ),
        cancel_url=f"{base_url}/dashboard/subscription?canceled=true",
        client_reference_id=str(user_id),
        metadata=metadata,
        subscription_data={"metadata": metadata},
    )
    logger.info("Checkout session %s created for user %s (%s)",
                session.id, user_id, plan_type)
    return {"sessionId": session.id, "url": session.url}

def verify_webhook(payload: bytes, sig_header: str, secret: str) -> dict:
    """
    Checks the Stripe-Signature header against the raw body and returns the
    event as a plain dict.
    """
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, secret, stripe.Webhook.DEFAULT_TOLERANCE
        )
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError(str(e)) from e
    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise WebhookVerificationError(f"Invalid payload: {e}") from e
    if not isinstance(event, dict) or "type" not in event:
        raise WebhookVerificationError("Invalid payload: not an event")
    return event

def retrieve_subscription(subscription_id: str) -> dict:
    """Fetch a subscription from Stripe as a plain dict."""
    sub = stripe.Subscription.retrieve(subscription_id, api_key=load_api_key())
    return sub.to_dict()
