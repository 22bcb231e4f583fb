import logging
import smtplib

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.db import transaction
from django.template.loader import render_to_string
from django.utils import timezone
from django.utils.html import strip_tags

from .exceptions import ConflictError, ExternalServiceError, ExternalServiceTimeout, ValidationError
from .invoices import get_invoice
from .pricing import dollars_to_cents, format_currency, group_lines_by_key, line_total_cents

logger = logging.getLogger(__name__)

INVOICE_TEMPLATE = "billing/emails/invoice.html"


def format_due_date(value):
    if not value:
        return None
    return f"{value:%B} {value.day}, {value.year}"


def _line_row(line):
    quantity = line.quantity
    if isinstance(quantity, float) and quantity.is_integer():
        quantity = int(quantity)
    return {
        "title": line.title,
        "notes_client": line.notes_client,
        "quantity": quantity,
        "unit_label": line.unit_label,
        "rate": format_currency(line.unit_amount_cents),
        "amount": format_currency(line_total_cents(line)),
    }


def build_invoice_email_context(mirror):
    quote = mirror.quote
    lines = quote.quote_lines
    grouped = group_lines_by_key([line for line in lines if not line.is_discount])
    discount_cents = dollars_to_cents(quote.discount)
    return {
        "brand_name": getattr(settings, "BILLING_BRAND_NAME", "OpsDesk"),
        "client_name": mirror.client.name,
        "invoice_number": mirror.invoice_number,
        "groups": [
            {"name": name, "rows": [_line_row(line) for line in group]}
            for name, group in grouped.items()
        ],
        "discount_rows": [
            {"title": line.title, "amount": format_currency(line_total_cents(line))}
            for line in lines
            if line.is_discount
        ],
        "subtotal": format_currency(dollars_to_cents(mirror.subtotal)),
        "discount": format_currency(discount_cents) if discount_cents > 0 else None,
        "total": format_currency(dollars_to_cents(mirror.total)),
        "due_date": format_due_date(quote.due_date),
        "memo": quote.client_memo,
        "hosted_invoice_url": mirror.hosted_invoice_url,
    }


def invoice_email_subject(mirror):
    return f"Invoice for {mirror.client.name} - {mirror.invoice_number}"


def render_invoice_email(mirror):
    return render_to_string(INVOICE_TEMPLATE, build_invoice_email_context(mirror))


def preview_invoice_email(mirror_id):
    """Render exactly what ``send_invoice_email`` would send, without sending."""
    mirror = get_invoice(mirror_id)
    if not mirror.is_finalized:
        raise ValidationError("Invoice must be finalized before previewing email")
    return {
        "subject": invoice_email_subject(mirror),
        "html": render_invoice_email(mirror),
        "to": mirror.client.invoice_recipient,
    }


def send_invoice_email(mirror_id, connection=None):
    """Send the invoice email at most once.

    The row stays locked while the message goes out, and ``email_sent_at`` is
    written only after the backend accepted it.
    """
    with transaction.atomic():
        mirror = get_invoice(mirror_id, for_update=True)
        if not mirror.is_finalized:
            raise ValidationError("Invoice must be finalized before sending email")
        if mirror.email_sent_at:
            raise ConflictError(
                "Email has already been sent for this invoice",
                payload={
                    "email_sent_at": mirror.email_sent_at.isoformat(),
                    "email_recipient": mirror.email_recipient,
                },
            )
        recipient = mirror.client.invoice_recipient
        if not recipient:
            raise ValidationError("Client has no email address")

        html_content = render_invoice_email(mirror)
        brand = getattr(settings, "BILLING_BRAND_NAME", "OpsDesk")
        from_email = getattr(settings, "BILLING_FROM_EMAIL", None) or settings.DEFAULT_FROM_EMAIL
        email_message = EmailMultiAlternatives(
            subject=invoice_email_subject(mirror),
            body=strip_tags(html_content),
            from_email=f"{brand} Billing <{from_email}>",
            to=[recipient],
            connection=connection,
        )
        email_message.attach_alternative(html_content, "text/html")
        try:
            sent = email_message.send()
        except TimeoutError as exc:
            logger.error("Invoice %s email timed out: %s", mirror.pk, exc)
            raise ExternalServiceTimeout("Email delivery timed out", service="email") from exc
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Invoice %s email failed: %s", mirror.pk, exc)
            raise ExternalServiceError("Failed to send invoice email", service="email") from exc
        if not sent:
            raise ExternalServiceError("Email backend did not accept the message", service="email")

        mirror.email_sent_at = timezone.now()
        mirror.email_recipient = recipient
        mirror.save(update_fields=["email_sent_at", "email_recipient", "updated_at"])

    logger.info("Invoice %s emailed to %s", mirror.pk, recipient)
    return mirror
