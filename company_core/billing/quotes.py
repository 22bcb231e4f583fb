"""Quote lifecycle: create with the double-billing guard, edit while proposed, lock."""
import logging

from django.db import transaction

from .billables import ensure_unbilled
from .exceptions import ConflictError, NotFoundError, ValidationError
from .models import Quote
from .pricing import cents_to_dollars, compute_totals, serialize_lines
from .state import QuoteStatus, ensure_quote_transition

logger = logging.getLogger(__name__)

# Fields PUT may replace; omitted (None) values keep the stored one.
UPDATABLE_FIELDS = ("due_date", "net_terms_days", "client_memo", "internal_memo")


def get_quote(quote_id, *, for_update=False):
    queryset = Quote.objects.select_related("client")
    if for_update:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(pk=quote_id)
    except Quote.DoesNotExist:
        raise NotFoundError("Quote not found")


def _apply_lines(quote, lines):
    totals = compute_totals(lines)
    quote.lines = serialize_lines(lines)
    quote.subtotal = cents_to_dollars(totals.subtotal)
    quote.discount = cents_to_dollars(totals.discount)
    quote.total = cents_to_dollars(totals.total)
    return totals


def _unique_ids(ids):
    seen = []
    for value in ids or []:
        if value not in seen:
            seen.append(value)
    return seen


def create_quote(
    client,
    lines,
    *,
    created_by=None,
    due_date=None,
    net_terms_days=None,
    client_memo=None,
    internal_memo=None,
    billable_project_ids=None,
    billable_expense_ids=None,
):
    project_ids = _unique_ids(billable_project_ids)
    expense_ids = _unique_ids(billable_expense_ids)

    with transaction.atomic():
        ensure_unbilled(project_ids, expense_ids, lock=True)
        quote = Quote(
            client=client,
            created_by=created_by,
            status=QuoteStatus.PROPOSED,
            due_date=due_date,
            net_terms_days=net_terms_days,
            client_memo=client_memo,
            internal_memo=internal_memo,
            billable_project_ids=project_ids,
            billable_expense_ids=expense_ids,
        )
        totals = _apply_lines(quote, lines)
        quote.save()

    logger.info(
        "Quote %s created for client %s: %s lines, total %s cents",
        quote.pk,
        client.pk,
        len(lines),
        totals.total,
    )
    return quote


def update_quote(quote_id, lines, **fields):
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(details={name: ["This field cannot be updated."] for name in sorted(unknown)})

    with transaction.atomic():
        quote = get_quote(quote_id, for_update=True)
        if quote.status != QuoteStatus.PROPOSED:
            raise ConflictError(
                "Only proposed quotes can be edited",
                payload={"status": quote.status},
            )
        _apply_lines(quote, lines)
        for name, value in fields.items():
            if value is not None:
                setattr(quote, name, value)
        quote.save()

    logger.info("Quote %s updated (%s lines)", quote.pk, len(lines))
    return quote


def lock_quote(quote_id):
    with transaction.atomic():
        quote = get_quote(quote_id, for_update=True)
        ensure_quote_transition(quote, QuoteStatus.LOCKED)

        lines = quote.quote_lines
        if not lines:
            raise ValidationError("Quote must have at least one line item")
        # Recompute rather than trust the cached dollar columns.
        if compute_totals(lines).total <= 0:
            raise ValidationError("Quote total must be greater than zero")

        quote.status = QuoteStatus.LOCKED
        quote.save(update_fields=["status", "updated_at"])

    logger.info("Quote %s locked", quote.pk)
    return quote
