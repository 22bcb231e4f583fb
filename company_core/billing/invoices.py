"""Mirror a locked quote into Stripe and keep the local mirror in step with it."""
import datetime
import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .billables import ensure_unbilled, mark_billables_billed, release_billables
from .exceptions import ConflictError, NotFoundError, ValidationError
from .models import InvoiceMirror
from .pricing import line_total_cents
from .quotes import get_quote
from .state import (
    ISSUED_INVOICE_STATUSES,
    InvoiceStatus,
    QuoteStatus,
    can_transition_invoice,
    ensure_invoice_transition,
    ensure_quote_transition,
)
from .stripe_gateway import get_stripe_gateway

logger = logging.getLogger(__name__)


def get_invoice(mirror_id, *, for_update=False):
    queryset = InvoiceMirror.objects.select_related("client", "quote")
    if for_update:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(pk=mirror_id)
    except InvoiceMirror.DoesNotExist:
        raise NotFoundError("Invoice not found")


def _mirror_summary(mirror):
    return {
        "id": mirror.pk,
        "status": mirror.status,
        "stripe_invoice_id": mirror.stripe_invoice_id,
    }


def build_invoice_items(lines):
    """Stripe invoice items for quote lines: regular lines first, then negative discounts."""
    items = []
    for line in lines:
        if line.is_discount:
            continue
        items.append({
            "title": line.title,
            "description": line.notes_client or line.description,
            "amount_cents": line_total_cents(line),
        })
    for line in lines:
        if not line.is_discount:
            continue
        items.append({
            "title": f"Discount: {line.title}",
            "description": line.notes_client or line.description,
            "amount_cents": -line_total_cents(line),
        })
    return items


def _item_description(item):
    if item["description"]:
        return f"{item['title']} - {item['description']}"
    return item["title"]


def days_until_due(quote, today=None):
    if quote.due_date:
        today = today or timezone.localdate()
        return max(1, (quote.due_date - today).days)
    return quote.net_terms_days or getattr(settings, "DEFAULT_NET_TERMS_DAYS", 30)


def _resolve_customer(client, email, idempotency_key, gateway):
    if client.stripe_customer_id:
        return client.stripe_customer_id
    customer_id = gateway.create_customer(
        name=client.name,
        email=email,
        client_id=client.pk,
        idempotency_key=f"cust_{idempotency_key}",
    )
    client.stripe_customer_id = customer_id
    client.save(update_fields=["stripe_customer_id", "updated_at"])
    return customer_id


def create_invoice_from_quote(quote_id, gateway=None):
    """Create the Stripe customer, items and draft invoice, then the local mirror.

    Runs in one transaction: if any Stripe call fails nothing local is kept
    and the quote stays locked. Retrying reuses the same idempotency keys.
    """
    with transaction.atomic():
        quote = get_quote(quote_id, for_update=True)
        existing = InvoiceMirror.objects.filter(quote=quote).first()
        if existing:
            raise ConflictError(
                "Invoice already exists for this quote",
                payload={"invoice": _mirror_summary(existing)},
            )
        if quote.status != QuoteStatus.LOCKED:
            raise ConflictError(
                "Quote must be locked before creating an invoice",
                payload={"status": quote.status},
            )

        client = quote.client
        recipient = client.invoice_recipient
        if not recipient:
            raise ValidationError("Client has no billing email")

        ensure_unbilled(quote.billable_project_ids, quote.billable_expense_ids, lock=True)

        gateway = gateway or get_stripe_gateway()
        key = quote.idempotency_key
        customer_id = _resolve_customer(client, recipient, key, gateway)

        for index, item in enumerate(build_invoice_items(quote.quote_lines)):
            gateway.create_invoice_item(
                customer_id=customer_id,
                amount_cents=item["amount_cents"],
                description=_item_description(item),
                idempotency_key=f"{key}_item_{index}",
            )

        stripe_invoice = gateway.create_draft_invoice(
            customer_id=customer_id,
            days_until_due=days_until_due(quote),
            memo=quote.client_memo,
            idempotency_key=f"{key}_invoice",
        )

        mirror = InvoiceMirror.objects.create(
            client=client,
            quote=quote,
            stripe_invoice_id=stripe_invoice["id"],
            stripe_customer_id=customer_id,
            status=InvoiceStatus.DRAFT,
            subtotal=quote.subtotal,
            total=quote.total,
            idempotency_key=key,
        )
        ensure_quote_transition(quote, QuoteStatus.INVOICED)
        quote.status = QuoteStatus.INVOICED
        quote.save(update_fields=["status", "updated_at"])

    logger.info(
        "Invoice %s (%s) created from quote %s",
        mirror.pk,
        mirror.stripe_invoice_id,
        quote.pk,
    )
    return mirror


def stripe_timestamp(value):
    if not value:
        return None
    return datetime.datetime.fromtimestamp(int(value), tz=datetime.timezone.utc)


def apply_invoice_status(mirror, target, *, hosted_invoice_url=None, finalized_at=None):
    """Move ``mirror`` to ``target`` and apply the billable side effects.

    Leaving draft for an issued status claims the quote's billables and
    voiding releases them. Re-applying the current status only fills a
    missing hosted URL. Transitions outside the table are ignored. Returns
    True when the status changed. Expects ``mirror`` locked by the caller.
    """
    update_fields = []
    if hosted_invoice_url and not mirror.hosted_invoice_url:
        mirror.hosted_invoice_url = hosted_invoice_url
        update_fields.append("hosted_invoice_url")

    if mirror.status == target:
        if update_fields:
            mirror.save(update_fields=update_fields + ["updated_at"])
        logger.info("Invoice %s already %s", mirror.pk, target)
        return False

    if not can_transition_invoice(mirror.status, target):
        logger.warning(
            "Ignoring stale transition for invoice %s: %s -> %s",
            mirror.pk,
            mirror.status,
            target,
        )
        if update_fields:
            mirror.save(update_fields=update_fields + ["updated_at"])
        return False

    previous = mirror.status
    mirror.status = target
    update_fields.append("status")
    if target in ISSUED_INVOICE_STATUSES and not mirror.finalized_at:
        mirror.finalized_at = finalized_at or timezone.now()
        update_fields.append("finalized_at")
    mirror.save(update_fields=update_fields + ["updated_at"])
    logger.info("Invoice %s: %s -> %s", mirror.pk, previous, target)

    if previous == InvoiceStatus.DRAFT and target in ISSUED_INVOICE_STATUSES:
        mark_billables_billed(mirror)
    if target == InvoiceStatus.VOID:
        release_billables(mirror)
    return True


def finalize_invoice(mirror_id, gateway=None):
    with transaction.atomic():
        mirror = get_invoice(mirror_id, for_update=True)
        # Only draft -> open is in the table.
        ensure_invoice_transition(mirror, InvoiceStatus.OPEN)

        gateway = gateway or get_stripe_gateway()
        stripe_invoice = gateway.finalize_invoice(mirror.stripe_invoice_id)
        finalized_at = stripe_timestamp(
            (stripe_invoice.get("status_transitions") or {}).get("finalized_at")
        )
        apply_invoice_status(
            mirror,
            InvoiceStatus.OPEN,
            hosted_invoice_url=stripe_invoice.get("hosted_invoice_url"),
            finalized_at=finalized_at,
        )
    return mirror


def void_invoice(mirror_id, gateway=None):
    """Void an issued invoice in Stripe and release its billables."""
    with transaction.atomic():
        mirror = get_invoice(mirror_id, for_update=True)
        ensure_invoice_transition(mirror, InvoiceStatus.VOID)
        if mirror.status == InvoiceStatus.DRAFT:
            raise ConflictError(
                "Draft invoices cannot be voided; finalize it first",
                payload={"status": mirror.status},
            )

        gateway = gateway or get_stripe_gateway()
        gateway.void_invoice(mirror.stripe_invoice_id)
        apply_invoice_status(mirror, InvoiceStatus.VOID)
    return mirror
