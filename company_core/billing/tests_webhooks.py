import datetime
from decimal import Decimal

from django.test import TestCase

from crm.models import BILLING_STATUS_BILLED, BILLING_STATUS_UNBILLED, Client, Expense, Project, Subscription

from .invoices import create_invoice_from_quote
from .models import InvoiceMirror
from .quotes import create_quote, lock_quote
from .state import InvoiceStatus, QuoteStatus
from .tests import STRIPE_INVOICE_ID, AcmeFixtureMixin, line
from .webhooks import WebhookEventKind, handle_stripe_event


def stripe_event(event_type, obj, event_id="evt_test"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def invoice_event(event_type, stripe_invoice_id=STRIPE_INVOICE_ID, **fields):
    obj = {"id": stripe_invoice_id, "object": "invoice"}
    obj.update(fields)
    return stripe_event(event_type, obj)


class InvoiceWebhookTests(AcmeFixtureMixin, TestCase):
    def draft_invoice(self):
        quote = lock_quote(self.create_acme_quote().pk)
        return create_invoice_from_quote(quote.pk, gateway=self.gateway)

    def assert_billed(self, mirror, *items):
        for item in items:
            item.refresh_from_db()
            self.assertEqual(item.billing_status, BILLING_STATUS_BILLED)
            self.assertEqual(item.billed_invoice_id, mirror.pk)

    def assert_unbilled(self, *items):
        for item in items:
            item.refresh_from_db()
            self.assertEqual(item.billing_status, BILLING_STATUS_UNBILLED)
            self.assertIsNone(item.billed_invoice_id)

    def test_quote_to_paid_end_to_end(self):
        quote = self.create_acme_quote()
        self.assertEqual(quote.totals_cents["subtotal"], 505000)
        lock_quote(quote.pk)
        mirror = create_invoice_from_quote(quote.pk, gateway=self.gateway)
        self.assert_unbilled(self.project, self.expense)

        kind = handle_stripe_event(invoice_event(
            "invoice.finalized",
            hosted_invoice_url="https://invoice.stripe.com/i/acme",
            status_transitions={"finalized_at": 1767225600},
        ))
        self.assertEqual(kind, WebhookEventKind.INVOICE_FINALIZED)
        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.OPEN)
        self.assertEqual(mirror.hosted_invoice_url, "https://invoice.stripe.com/i/acme")
        self.assertEqual(
            mirror.finalized_at,
            datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc),
        )
        self.assert_billed(mirror, self.project, self.expense)

        handle_stripe_event(invoice_event("invoice.paid"))
        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.PAID)
        quote.refresh_from_db()
        self.assertEqual(quote.status, QuoteStatus.INVOICED)
        self.assert_billed(mirror, self.project, self.expense)

    def test_paid_from_draft_claims_billables(self):
        mirror = self.draft_invoice()
        handle_stripe_event(invoice_event("invoice.paid"))
        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.PAID)
        self.assertIsNotNone(mirror.finalized_at)
        self.assert_billed(mirror, self.project, self.expense)

    def test_void_releases_only_that_invoices_items(self):
        other_project = Project.objects.create(
            client=self.client_record,
            name="Acme Automations",
            status=Project.STATUS_COMPLETED,
        )
        other_quote = create_quote(
            self.client_record,
            [line(cents=150000)],
            billable_project_ids=[other_project.pk],
        )
        lock_quote(other_quote.pk)
        other_mirror = InvoiceMirror.objects.create(
            client=self.client_record,
            quote=other_quote,
            stripe_invoice_id="in_other",
            stripe_customer_id="cus_test_acme",
            subtotal=Decimal("1500.00"),
            total=Decimal("1500.00"),
            idempotency_key=other_quote.idempotency_key,
        )
        handle_stripe_event(invoice_event("invoice.finalized", stripe_invoice_id="in_other"))

        mirror = self.draft_invoice()
        handle_stripe_event(invoice_event("invoice.finalized"))
        self.assert_billed(mirror, self.project, self.expense)

        handle_stripe_event(invoice_event("invoice.voided"))

        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.VOID)
        self.assert_unbilled(self.project, self.expense)
        self.assert_billed(other_mirror, other_project)

    def test_replayed_event_is_a_no_op(self):
        mirror = self.draft_invoice()
        event = invoice_event("invoice.paid")
        handle_stripe_event(event)
        mirror.refresh_from_db()
        first_update = mirror.updated_at

        handle_stripe_event(event)

        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.PAID)
        self.assertEqual(mirror.updated_at, first_update)
        self.assert_billed(mirror, self.project, self.expense)

    def test_stale_finalized_after_paid_is_ignored(self):
        mirror = self.draft_invoice()
        handle_stripe_event(invoice_event("invoice.paid"))

        with self.assertLogs("billing.invoices", level="WARNING"):
            handle_stripe_event(invoice_event("invoice.finalized"))

        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.PAID)

    def test_void_after_paid_is_ignored(self):
        mirror = self.draft_invoice()
        handle_stripe_event(invoice_event("invoice.paid"))
        handle_stripe_event(invoice_event("invoice.voided"))
        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.PAID)
        self.assert_billed(mirror, self.project, self.expense)

    def test_uncollectible_then_paid(self):
        mirror = self.draft_invoice()
        handle_stripe_event(invoice_event("invoice.finalized"))
        handle_stripe_event(invoice_event("invoice.marked_uncollectible"))
        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.UNCOLLECTIBLE)
        self.assert_billed(mirror, self.project)

        handle_stripe_event(invoice_event("invoice.paid"))
        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.PAID)

    def test_payment_failed_changes_nothing(self):
        mirror = self.draft_invoice()
        handle_stripe_event(invoice_event("invoice.finalized"))

        with self.assertLogs("billing.webhooks", level="WARNING"):
            kind = handle_stripe_event(invoice_event("invoice.payment_failed", attempt_count=1))

        self.assertEqual(kind, WebhookEventKind.INVOICE_PAYMENT_FAILED)
        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.OPEN)

    def test_event_for_unknown_invoice_is_ignored(self):
        mirror = self.draft_invoice()
        kind = handle_stripe_event(invoice_event("invoice.paid", stripe_invoice_id="in_not_ours"))
        self.assertEqual(kind, WebhookEventKind.INVOICE_PAID)
        mirror.refresh_from_db()
        self.assertEqual(mirror.status, InvoiceStatus.DRAFT)

    def test_unknown_event_type(self):
        with self.assertLogs("billing.webhooks", level="WARNING"):
            kind = handle_stripe_event(stripe_event("charge.refunded", {"id": "ch_1"}))
        self.assertEqual(kind, WebhookEventKind.UNKNOWN)


class SubscriptionWebhookTests(TestCase):
    def setUp(self):
        self.client_record = Client.objects.create(name="Bright Dental", email="office@bright.test")

    def checkout_session(self, **metadata):
        base = {
            "clientId": str(self.client_record.pk),
            "planId": "momentum",
            "planName": "Momentum System",
            "monthlyFee": "297",
        }
        base.update(metadata)
        return {
            "id": "cs_test_1",
            "object": "checkout.session",
            "customer": "cus_bright",
            "subscription": "sub_bright",
            "metadata": base,
        }

    def test_checkout_creates_subscription_once(self):
        event = stripe_event("checkout.session.completed", self.checkout_session())
        handle_stripe_event(event)
        handle_stripe_event(event)

        subscription = Subscription.objects.get()
        self.assertEqual(subscription.stripe_subscription_id, "sub_bright")
        self.assertEqual(subscription.amount, Decimal("297.00"))
        self.assertEqual(subscription.plan_id, "momentum")
        self.assertTrue(subscription.setup_paid)
        self.client_record.refresh_from_db()
        self.assertEqual(self.client_record.stripe_customer_id, "cus_bright")

    def test_checkout_without_metadata_is_ignored(self):
        session = self.checkout_session()
        session["metadata"] = {}
        handle_stripe_event(stripe_event("checkout.session.completed", session))
        self.assertFalse(Subscription.objects.exists())

    def test_checkout_with_malformed_client_id_is_acknowledged(self):
        event = stripe_event("checkout.session.completed", self.checkout_session(clientId="not-a-number"))
        self.assertEqual(handle_stripe_event(event), WebhookEventKind.CHECKOUT_SESSION_COMPLETED)
        self.assertFalse(Subscription.objects.exists())

    def test_subscription_status_and_cancellation(self):
        handle_stripe_event(stripe_event("checkout.session.completed", self.checkout_session()))

        handle_stripe_event(stripe_event(
            "customer.subscription.updated",
            {"id": "sub_bright", "status": "unpaid"},
        ))
        self.assertEqual(Subscription.objects.get().status, Subscription.STATUS_PAUSED)

        handle_stripe_event(stripe_event(
            "customer.subscription.deleted",
            {"id": "sub_bright", "status": "canceled", "ended_at": 1767225600},
        ))
        subscription = Subscription.objects.get()
        self.assertEqual(subscription.status, Subscription.STATUS_CANCELLED)
        self.assertEqual(subscription.end_date, datetime.date(2026, 1, 1))
