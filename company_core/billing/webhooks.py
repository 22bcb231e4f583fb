"""Reconcile Stripe webhook events into local invoice and subscription state.

Stripe delivers at least once and out of order. Every handler matches by the
Stripe id and is safe to replay.
"""
import enum
import logging

from django.db import transaction

from crm.subscriptions import (
    cancel_stripe_subscription,
    record_checkout_subscription,
    sync_stripe_subscription_status,
)

from .invoices import stripe_timestamp, apply_invoice_status
from .models import InvoiceMirror
from .state import InvoiceStatus

logger = logging.getLogger(__name__)


class WebhookEventKind(enum.Enum):
    INVOICE_FINALIZED = "invoice.finalized"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_VOIDED = "invoice.voided"
    INVOICE_MARKED_UNCOLLECTIBLE = "invoice.marked_uncollectible"
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type):
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


def _reconcile_invoice(data, target):
    stripe_invoice_id = data.get("id")
    with transaction.atomic():
        mirror = (
            InvoiceMirror.objects.select_for_update()
            .filter(stripe_invoice_id=stripe_invoice_id)
            .first()
        )
        if mirror is None:
            logger.info("No local invoice for Stripe invoice %s; ignoring", stripe_invoice_id)
            return None
        finalized_at = stripe_timestamp((data.get("status_transitions") or {}).get("finalized_at"))
        apply_invoice_status(
            mirror,
            target,
            hosted_invoice_url=data.get("hosted_invoice_url"),
            finalized_at=finalized_at,
        )
    return mirror


def handle_invoice_finalized(data):
    return _reconcile_invoice(data, InvoiceStatus.OPEN)


def handle_invoice_paid(data):
    return _reconcile_invoice(data, InvoiceStatus.PAID)


def handle_invoice_payment_failed(data):
    # Observational only; the invoice stays open and payable.
    logger.warning(
        "Payment failed for Stripe invoice %s (attempt %s)",
        data.get("id"),
        data.get("attempt_count"),
    )
    return None


def handle_invoice_voided(data):
    return _reconcile_invoice(data, InvoiceStatus.VOID)


def handle_invoice_marked_uncollectible(data):
    return _reconcile_invoice(data, InvoiceStatus.UNCOLLECTIBLE)


def handle_checkout_session_completed(data):
    return record_checkout_subscription(data)


def handle_subscription_updated(data):
    return sync_stripe_subscription_status(data.get("id"), data.get("status"))


def handle_subscription_deleted(data):
    ended_at = stripe_timestamp(data.get("ended_at") or data.get("canceled_at"))
    return cancel_stripe_subscription(data.get("id"), ended_on=ended_at)


EVENT_HANDLERS = {
    WebhookEventKind.INVOICE_FINALIZED: handle_invoice_finalized,
    WebhookEventKind.INVOICE_PAID: handle_invoice_paid,
    WebhookEventKind.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    WebhookEventKind.INVOICE_VOIDED: handle_invoice_voided,
    WebhookEventKind.INVOICE_MARKED_UNCOLLECTIBLE: handle_invoice_marked_uncollectible,
    WebhookEventKind.CHECKOUT_SESSION_COMPLETED: handle_checkout_session_completed,
    WebhookEventKind.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    WebhookEventKind.SUBSCRIPTION_DELETED: handle_subscription_deleted,
}


def handle_stripe_event(event):
    """Dispatch a verified event. Returns the event kind that was handled."""
    event_type = event["type"]
    data = event["data"]["object"]
    kind = WebhookEventKind.from_type(event_type)
    if kind is WebhookEventKind.UNKNOWN:
        logger.warning("Unhandled Stripe event type %s (%s)", event_type, event.get("id"))
        return kind
    EVENT_HANDLERS[kind](data)
    return kind
