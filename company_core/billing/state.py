"""Status enums and the single transition table for each billing entity."""
from django.db import models

from .exceptions import ConflictError


class QuoteStatus(models.TextChoices):
    PROPOSED = "proposed", "Proposed"
    LOCKED = "locked", "Locked"
    INVOICED = "invoiced", "Invoiced"


class InvoiceStatus(models.TextChoices):
    DRAFT = "draft", "Draft"
    OPEN = "open", "Open"
    PAID = "paid", "Paid"
    VOID = "void", "Void"
    UNCOLLECTIBLE = "uncollectible", "Uncollectible"


QUOTE_TRANSITIONS = {
    QuoteStatus.PROPOSED: frozenset({QuoteStatus.LOCKED}),
    QuoteStatus.LOCKED: frozenset({QuoteStatus.INVOICED}),
    QuoteStatus.INVOICED: frozenset(),
}

# Includes transitions only Stripe can drive (webhooks may skip "open" when
# events arrive out of order). paid and void are terminal.
INVOICE_TRANSITIONS = {
    InvoiceStatus.DRAFT: frozenset({
        InvoiceStatus.OPEN,
        InvoiceStatus.PAID,
        InvoiceStatus.VOID,
        InvoiceStatus.UNCOLLECTIBLE,
    }),
    InvoiceStatus.OPEN: frozenset({
        InvoiceStatus.PAID,
        InvoiceStatus.VOID,
        InvoiceStatus.UNCOLLECTIBLE,
    }),
    InvoiceStatus.UNCOLLECTIBLE: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}

# Statuses in which the invoice has been issued to the customer and the
# underlying work counts as billed.
ISSUED_INVOICE_STATUSES = frozenset({
    InvoiceStatus.OPEN,
    InvoiceStatus.PAID,
    InvoiceStatus.UNCOLLECTIBLE,
})


def can_transition_quote(current, target):
    return target in QUOTE_TRANSITIONS.get(current, frozenset())


def can_transition_invoice(current, target):
    return target in INVOICE_TRANSITIONS.get(current, frozenset())


def ensure_quote_transition(quote, target):
    if not can_transition_quote(quote.status, target):
        raise ConflictError(
            f"Quote is already {quote.status}",
            payload={"status": quote.status},
        )


def ensure_invoice_transition(mirror, target):
    if not can_transition_invoice(mirror.status, target):
        raise ConflictError(
            f"Invoice is already {mirror.status}",
            payload={"status": mirror.status},
        )
