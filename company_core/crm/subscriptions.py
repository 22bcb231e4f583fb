"""Manual subscription bookkeeping. Nothing here charges anyone."""
import datetime
from decimal import Decimal, InvalidOperation
import logging

from dateutil.relativedelta import relativedelta
from django.utils import timezone

from .models import Client, Subscription

logger = logging.getLogger(__name__)

CADENCE_STEPS = {
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "annual": relativedelta(years=1),
}

# Stripe subscription status -> local status
STRIPE_STATUS_MAP = {
    "active": Subscription.STATUS_ACTIVE,
    "past_due": Subscription.STATUS_ACTIVE,
    "trialing": Subscription.STATUS_ACTIVE,
    "unpaid": Subscription.STATUS_PAUSED,
    "incomplete": Subscription.STATUS_PAUSED,
    "paused": Subscription.STATUS_PAUSED,
    "canceled": Subscription.STATUS_CANCELLED,
    "incomplete_expired": Subscription.STATUS_CANCELLED,
}


def compute_next_billing(start_date, cadence):
    """Next billing date one cadence step after ``start_date`` (monthly when unknown)."""
    step = CADENCE_STEPS.get(cadence or "", CADENCE_STEPS["monthly"])
    return start_date + step


def map_stripe_status(stripe_status):
    return STRIPE_STATUS_MAP.get(stripe_status or "", Subscription.STATUS_ACTIVE)


def record_checkout_subscription(session):
    """Create the local subscription row for a completed Stripe checkout session.

    Returns the subscription, or None when the session does not carry the
    metadata the public checkout attaches (client, plan and subscription ids).
    """
    metadata = session.get("metadata") or {}
    client_id = metadata.get("clientId") or metadata.get("client_id")
    plan_id = metadata.get("planId") or metadata.get("plan_id")
    stripe_subscription_id = session.get("subscription")
    stripe_customer_id = session.get("customer")
    if not (client_id and plan_id and stripe_subscription_id):
        logger.info("Checkout session %s has no subscription metadata; ignoring", session.get("id"))
        return None

    try:
        client_pk = int(client_id)
    except (TypeError, ValueError):
        logger.warning("Checkout session %s has a malformed client id %r; ignoring", session.get("id"), client_id)
        return None

    client = Client.objects.filter(pk=client_pk).first()
    if client is None:
        logger.warning("Checkout session %s references unknown client %s", session.get("id"), client_id)
        return None

    existing = Subscription.objects.filter(stripe_subscription_id=stripe_subscription_id).first()
    if existing:
        return existing

    if stripe_customer_id and client.stripe_customer_id != stripe_customer_id:
        client.stripe_customer_id = stripe_customer_id
        client.save(update_fields=["stripe_customer_id", "updated_at"])

    cadence = metadata.get("billingCadence") or Subscription.CADENCE_MONTHLY
    if cadence not in CADENCE_STEPS:
        cadence = Subscription.CADENCE_MONTHLY
    plan_name = metadata.get("planName") or "Subscription"
    plan_tier = metadata.get("planTier") or None
    today = timezone.localdate()
    try:
        amount = Decimal(str(metadata.get("monthlyFee") or "0")).quantize(Decimal("0.01"))
    except InvalidOperation:
        amount = Decimal("0.00")

    subscription = Subscription.objects.create(
        client=client,
        name=plan_name,
        description=f"{plan_name} ({plan_tier})" if plan_tier else plan_name,
        amount=amount,
        billing_cadence=cadence,
        status=Subscription.STATUS_ACTIVE,
        start_date=today,
        next_billing=compute_next_billing(today, cadence),
        stripe_subscription_id=stripe_subscription_id,
        stripe_customer_id=stripe_customer_id,
        plan_id=plan_id,
        plan_tier=plan_tier,
        addons=metadata.get("addons") or None,
        setup_paid=True,
    )
    logger.info("Recorded subscription %s for client %s from checkout", subscription.pk, client.pk)
    return subscription


def sync_stripe_subscription_status(stripe_subscription_id, stripe_status):
    status = map_stripe_status(stripe_status)
    updated = Subscription.objects.filter(stripe_subscription_id=stripe_subscription_id).update(
        status=status,
        updated_at=timezone.now(),
    )
    logger.info("Subscription %s -> %s (%s rows)", stripe_subscription_id, status, updated)
    return updated


def cancel_stripe_subscription(stripe_subscription_id, ended_on=None):
    ended_on = ended_on or timezone.localdate()
    if isinstance(ended_on, datetime.datetime):
        ended_on = ended_on.date()
    updated = Subscription.objects.filter(stripe_subscription_id=stripe_subscription_id).update(
        status=Subscription.STATUS_CANCELLED,
        end_date=ended_on,
        updated_at=timezone.now(),
    )
    logger.info("Subscription %s cancelled (%s rows)", stripe_subscription_id, updated)
    return updated
