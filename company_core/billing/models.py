from decimal import Decimal

from django.conf import settings
from django.db import models

from .pricing import deserialize_lines, dollars_to_cents
from .state import InvoiceStatus, QuoteStatus


class Quote(models.Model):
    client = models.ForeignKey("crm.Client", on_delete=models.PROTECT, related_name="quotes")
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="quotes",
    )
    lines = models.JSONField(default=list, blank=True)
    # Cached in dollars; always recomputed from ``lines``.
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    status = models.CharField(
        max_length=20,
        choices=QuoteStatus.choices,
        default=QuoteStatus.PROPOSED,
        db_index=True,
    )
    due_date = models.DateField(null=True, blank=True)
    net_terms_days = models.PositiveIntegerField(null=True, blank=True)
    client_memo = models.TextField(null=True, blank=True)
    internal_memo = models.TextField(null=True, blank=True)
    billable_project_ids = models.JSONField(default=list, blank=True)
    billable_expense_ids = models.JSONField(default=list, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"Quote #{self.pk} for {self.client}"

    @property
    def idempotency_key(self):
        return f"quote_{self.pk}"

    @property
    def quote_lines(self):
        return deserialize_lines(self.lines)

    @property
    def totals_cents(self):
        return {
            "subtotal": dollars_to_cents(self.subtotal),
            "discount": dollars_to_cents(self.discount),
            "total": dollars_to_cents(self.total),
        }


class InvoiceMirror(models.Model):
    client = models.ForeignKey("crm.Client", on_delete=models.PROTECT, related_name="invoices")
    quote = models.OneToOneField(Quote, on_delete=models.PROTECT, related_name="invoice_mirror")
    stripe_invoice_id = models.CharField(max_length=255, unique=True)
    stripe_customer_id = models.CharField(max_length=255)
    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.DRAFT,
        db_index=True,
    )
    hosted_invoice_url = models.URLField(max_length=500, null=True, blank=True)
    finalized_at = models.DateTimeField(null=True, blank=True)
    email_sent_at = models.DateTimeField(null=True, blank=True)
    email_recipient = models.EmailField(null=True, blank=True)
    # Snapshot of the quote at creation time.
    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    total = models.DecimalField(max_digits=12, decimal_places=2)
    idempotency_key = models.CharField(max_length=100, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"{self.invoice_number} ({self.status})"

    @property
    def invoice_number(self):
        return f"INV-{self.stripe_invoice_id[-8:].upper()}"

    @property
    def is_finalized(self):
        return bool(self.hosted_invoice_url)
