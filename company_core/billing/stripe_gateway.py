"""Thin wrapper over the Stripe API used by the invoice bridge.

Every call takes an explicit idempotency key where Stripe supports one and
translates Stripe errors into billing error kinds, so callers never see a
``stripe.StripeError``.
"""
import logging
from functools import lru_cache

import stripe
from django.conf import settings

from .exceptions import ExternalServiceError, ExternalServiceTimeout

logger = logging.getLogger(__name__)


class StripeGateway:
    def __init__(self, api_key, *, currency="usd", timeout=20):
        if not api_key:
            raise ExternalServiceError("Stripe is not configured", service="stripe")
        self.currency = currency
        self._client = stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=0,
        )

    def _call(self, action, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.APIConnectionError as exc:
            logger.error("Stripe %s failed to connect: %s", action, exc)
            raise ExternalServiceTimeout(f"Stripe {action} timed out", service="stripe") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", action, exc)
            message = getattr(exc, "user_message", None) or f"Stripe {action} failed"
            raise ExternalServiceError(message, service="stripe") from exc

    def create_customer(self, *, name, email, client_id, idempotency_key):
        customer = self._call(
            "customer create",
            self._client.customers.create,
            params={"name": name, "email": email, "metadata": {"clientId": str(client_id)}},
            options={"idempotency_key": idempotency_key},
        )
        logger.info("Stripe customer created: %s", customer["id"])
        return customer["id"]

    def create_invoice_item(self, *, customer_id, amount_cents, description, idempotency_key):
        return self._call(
            "invoice item create",
            self._client.invoice_items.create,
            params={
                "customer": customer_id,
                "amount": int(amount_cents),
                "currency": self.currency,
                "description": description,
            },
            options={"idempotency_key": idempotency_key},
        )

    def create_draft_invoice(self, *, customer_id, days_until_due, memo, idempotency_key):
        params = {
            "customer": customer_id,
            "collection_method": "send_invoice",
            "days_until_due": int(days_until_due),
            # Notifications are ours, never Stripe's.
            "auto_advance": False,
            "pending_invoice_items_behavior": "include",
            "payment_settings": {"payment_method_types": ["card"]},
        }
        if memo:
            params["description"] = memo
        invoice = self._call(
            "invoice create",
            self._client.invoices.create,
            params=params,
            options={"idempotency_key": idempotency_key},
        )
        logger.info("Stripe draft invoice created: %s", invoice["id"])
        return invoice

    def finalize_invoice(self, stripe_invoice_id):
        return self._call(
            "invoice finalize",
            self._client.invoices.finalize_invoice,
            stripe_invoice_id,
            params={"auto_advance": False},
        )

    def void_invoice(self, stripe_invoice_id):
        return self._call(
            "invoice void",
            self._client.invoices.void_invoice,
            stripe_invoice_id,
        )


@lru_cache(maxsize=1)
def get_stripe_gateway():
    """Process-wide gateway built from settings."""
    return StripeGateway(
        settings.STRIPE_SECRET_KEY,
        currency=getattr(settings, "STRIPE_CURRENCY", "usd"),
        timeout=getattr(settings, "STRIPE_TIMEOUT_SECONDS", 20),
    )


def construct_webhook_event(payload, signature, secret=None):
    """Verify the Stripe-Signature header and parse the event.

    Raises ``stripe.SignatureVerificationError`` or ``ValueError``; the caller
    answers 400 for both.
    """
    secret = secret or getattr(settings, "STRIPE_WEBHOOK_SECRET", None)
    if not secret:
        raise ExternalServiceError("Stripe webhook secret is not configured", service="stripe")
    return stripe.Webhook.construct_event(payload, signature, secret)
