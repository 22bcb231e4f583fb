import datetime
import smtplib
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
from unittest import mock

import httpx
import openai
import stripe
from django.contrib.auth.models import User
from django.core import mail
from django.core.management import CommandError, call_command
from django.test import SimpleTestCase, TestCase
from django.test.utils import override_settings

from crm.models import BILLING_STATUS_BILLED, BILLING_STATUS_UNBILLED, Client, Expense, Project

from .billables import get_client_billables
from .exceptions import ConflictError, ExternalServiceError, ExternalServiceTimeout, NotFoundError, ValidationError
from .invoice_email import format_due_date, preview_invoice_email, send_invoice_email
from .invoices import build_invoice_items, create_invoice_from_quote, finalize_invoice, void_invoice
from .models import InvoiceMirror, Quote
from .pricing import (
    QuoteLine,
    compute_totals,
    deserialize_lines,
    format_currency,
    group_lines_by_key,
    serialize_lines,
)
from .pricing_ai import build_pricing_prompt, parse_suggestion, suggest_pricing
from .pricing_catalog import (
    PLAN_TASKS,
    PLANS,
    describe_catalog,
    get_addon,
    get_addon_pricing,
    get_plan,
    get_plan_pricing,
    plan_setup_fee,
)
from .quotes import create_quote, lock_quote, update_quote
from .state import INVOICE_TRANSITIONS, InvoiceStatus, QuoteStatus, can_transition_invoice, can_transition_quote
from .stripe_gateway import StripeGateway


STRIPE_INVOICE_ID = "in_test_acme0001abcd"


class FakeStripeGateway:
    """Records every call; ``fail_on`` names a method that raises instead."""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.calls = []

    def _record(self, method, /, **kwargs):
        self.calls.append((method, kwargs))
        if self.fail_on == method:
            raise ExternalServiceError(f"Stripe {method} failed", service="stripe")

    def calls_named(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    def create_customer(self, **kwargs):
        self._record("create_customer", **kwargs)
        return "cus_test_acme"

    def create_invoice_item(self, **kwargs):
        self._record("create_invoice_item", **kwargs)
        return {"id": f"ii_{len(self.calls)}"}

    def create_draft_invoice(self, **kwargs):
        self._record("create_draft_invoice", **kwargs)
        return {"id": STRIPE_INVOICE_ID, "status": "draft"}

    def finalize_invoice(self, stripe_invoice_id):
        self._record("finalize_invoice", stripe_invoice_id=stripe_invoice_id)
        return {
            "id": stripe_invoice_id,
            "status": "open",
            "hosted_invoice_url": f"https://invoice.stripe.com/i/{stripe_invoice_id}",
            "status_transitions": {"finalized_at": 1767225600},
        }

    def void_invoice(self, stripe_invoice_id):
        self._record("void_invoice", stripe_invoice_id=stripe_invoice_id)
        return {"id": stripe_invoice_id, "status": "void"}


def line(kind="project", title="Website", quantity=1, cents=100000, group="Build", **extra):
    return QuoteLine(
        kind=kind,
        title=title,
        quantity=quantity,
        unit_label="fixed",
        unit_amount_cents=cents,
        group_key=group,
        **extra,
    )


class AcmeFixtureMixin:
    """Client "Acme" with one completed $5,000 project and one $50 at-cost expense."""

    def setUp(self):
        super().setUp()
        self.user = User.objects.create_user(username="owner", password="p")
        self.client_record = Client.objects.create(
            name="Acme",
            email="hello@acme.test",
            billing_email="ap@acme.test",
        )
        self.project = Project.objects.create(
            client=self.client_record,
            name="Acme Website",
            type="Website Build",
            status=Project.STATUS_COMPLETED,
            budget=Decimal("5000.00"),
        )
        self.expense = Expense.objects.create(
            client=self.client_record,
            category="Hosting",
            amount=Decimal("50.00"),
            description="Hosting setup",
            date=datetime.date(2026, 1, 15),
            pass_through_policy=Expense.POLICY_AT_COST,
        )
        self.gateway = FakeStripeGateway()

    def acme_lines(self):
        return [
            line("project", "Acme Website", cents=500000, group="Acme Website", source_id=str(self.project.pk)),
            line("expense", "Hosting setup", cents=5000, group="Hosting", source_id=str(self.expense.pk)),
        ]

    def create_acme_quote(self, **kwargs):
        kwargs.setdefault("billable_project_ids", [self.project.pk])
        kwargs.setdefault("billable_expense_ids", [self.expense.pk])
        return create_quote(self.client_record, self.acme_lines(), created_by=self.user, **kwargs)

    def create_open_invoice(self, **kwargs):
        quote = self.create_acme_quote(**kwargs)
        lock_quote(quote.pk)
        mirror = create_invoice_from_quote(quote.pk, gateway=self.gateway)
        return finalize_invoice(mirror.pk, gateway=self.gateway)


class PricingEngineTests(SimpleTestCase):
    def test_empty_lines_total_zero(self):
        totals = compute_totals([])
        self.assertEqual((totals.subtotal, totals.discount, totals.total), (0, 0, 0))

    def test_discount_is_subtracted(self):
        totals = compute_totals([
            line(cents=100000, quantity=2),
            line("expense", cents=2500),
            line("discount", "Loyalty", cents=10000),
        ])
        self.assertEqual(totals.subtotal, 202500)
        self.assertEqual(totals.discount, 10000)
        self.assertEqual(totals.total, 192500)

    def test_total_never_negative(self):
        totals = compute_totals([line(cents=1000), line("discount", cents=5000)])
        self.assertEqual(totals.total, 0)
        self.assertEqual(totals.discount, 5000)

    def test_fractional_quantity_rounds_half_up(self):
        totals = compute_totals([line(quantity=1.5, cents=333)])
        self.assertEqual(totals.subtotal, 500)

    def test_group_lines_keeps_insertion_order(self):
        lines = [
            line(title="A", group="Build"),
            line(title="B", group="Hosting"),
            line(title="C", group="Build"),
            line(title="D", group=""),
        ]
        groups = group_lines_by_key(lines)
        self.assertEqual(list(groups), ["Build", "Hosting", "Other"])
        self.assertEqual([l.title for l in groups["Build"]], ["A", "C"])

    def test_serialized_lines_round_trip(self):
        lines = [
            line("retainer", "Support", quantity=3, cents=29700, group="Monthly",
                 description="Ongoing", notes_internal="internal", notes_client="Billed monthly"),
            line("project", "Build", source_id="12"),
        ]
        restored = deserialize_lines(serialize_lines(lines))
        self.assertEqual(restored, lines)

    def test_format_currency(self):
        self.assertEqual(format_currency(505000), "$5,050.00")
        self.assertEqual(format_currency(4999), "$49.99")


class PricingCatalogTests(SimpleTestCase):
    def test_plan_lookup_by_name(self):
        plan, setup_fee, monthly_fee = get_plan_pricing("Momentum System rollout")
        self.assertEqual(plan["id"], "momentum")
        self.assertEqual((setup_fee, monthly_fee), (6500, 297))

    def test_tiered_plan_uses_first_tier(self):
        _, setup_fee, monthly_fee = get_plan_pricing("command")
        self.assertEqual((setup_fee, monthly_fee), (9500, 497))

    def test_unknown_names(self):
        self.assertIsNone(get_plan_pricing("Something else"))
        self.assertIsNone(get_addon_pricing(""))
        self.assertEqual(get_addon_pricing("AI Voice Receptionist")["id"], "ai-voice")

    def test_exact_lookup_and_tier_fee(self):
        command = get_plan("command")
        self.assertEqual(plan_setup_fee(command, "Enterprise"), 12500)
        self.assertIsNone(plan_setup_fee(command, "Platinum"))
        self.assertEqual(plan_setup_fee(get_plan("momentum"), "Advanced"), 6500)
        self.assertIsNone(get_plan("Command System"))
        self.assertEqual(get_addon("ai-voice")["name"], "AI Voice Receptionist")
        self.assertIsNone(get_addon("voice"))

    def test_every_plan_has_an_onboarding_checklist(self):
        for plan in PLANS:
            self.assertEqual(PLAN_TASKS[plan["id"]][-1], "Launch & QA")

    def test_catalog_description_is_deterministic(self):
        text = describe_catalog()
        self.assertEqual(text, describe_catalog())
        self.assertIn("Foundation System (id: foundation): setup $3500, monthly $197", text)
        self.assertIn("Annual prepay: 10% off monthly fees", text)


class StateTableTests(SimpleTestCase):
    def test_quote_moves_forward_only(self):
        self.assertTrue(can_transition_quote(QuoteStatus.PROPOSED, QuoteStatus.LOCKED))
        self.assertTrue(can_transition_quote(QuoteStatus.LOCKED, QuoteStatus.INVOICED))
        self.assertFalse(can_transition_quote(QuoteStatus.LOCKED, QuoteStatus.PROPOSED))
        self.assertFalse(can_transition_quote(QuoteStatus.INVOICED, QuoteStatus.PROPOSED))

    def test_paid_and_void_are_terminal(self):
        self.assertEqual(INVOICE_TRANSITIONS[InvoiceStatus.PAID], frozenset())
        self.assertEqual(INVOICE_TRANSITIONS[InvoiceStatus.VOID], frozenset())
        self.assertFalse(can_transition_invoice(InvoiceStatus.OPEN, InvoiceStatus.DRAFT))
        self.assertTrue(can_transition_invoice(InvoiceStatus.UNCOLLECTIBLE, InvoiceStatus.PAID))


class BillableAggregatorTests(AcmeFixtureMixin, TestCase):
    def test_returns_completed_unbilled_projects_and_unbilled_expenses(self):
        Project.objects.create(client=self.client_record, name="Still building", status="in_progress")
        Project.objects.create(
            client=self.client_record,
            name="Already billed",
            status=Project.STATUS_COMPLETED,
            billing_status=BILLING_STATUS_BILLED,
        )
        loose_expense = Expense.objects.create(
            client=self.client_record,
            category="Software",
            amount=Decimal("9.99"),
            description="No project",
            date=datetime.date(2026, 1, 2),
        )
        other = Client.objects.create(name="Other")
        Project.objects.create(client=other, name="Not ours", status=Project.STATUS_COMPLETED)

        billables = get_client_billables(self.client_record.pk)

        self.assertEqual(billables["projects"], [self.project])
        self.assertCountEqual(billables["expenses"], [self.expense, loose_expense])

    def test_unknown_client(self):
        with self.assertRaises(NotFoundError):
            get_client_billables(999999)


class QuoteLifecycleTests(AcmeFixtureMixin, TestCase):
    def test_create_computes_totals_in_dollars(self):
        quote = self.create_acme_quote()
        self.assertEqual(quote.status, QuoteStatus.PROPOSED)
        self.assertEqual(quote.subtotal, Decimal("5050.00"))
        self.assertEqual(quote.discount, Decimal("0.00"))
        self.assertEqual(quote.total, Decimal("5050.00"))
        self.assertEqual(quote.billable_project_ids, [self.project.pk])
        self.assertEqual(quote.quote_lines, self.acme_lines())

    def test_create_rejects_already_billed_project(self):
        self.project.billing_status = BILLING_STATUS_BILLED
        self.project.save()
        other = Client.objects.create(name="Someone else", billing_email="x@y.test")

        with self.assertRaises(ConflictError) as ctx:
            create_quote(other, [line()], billable_project_ids=[self.project.pk])

        self.assertIn("Acme Website", ctx.exception.message)
        self.assertEqual(ctx.exception.payload["conflicts"][0]["id"], self.project.pk)
        self.assertEqual(Quote.objects.count(), 0)

    def test_create_rejects_unknown_billable_ids(self):
        with self.assertRaises(ValidationError) as ctx:
            create_quote(self.client_record, [line()], billable_expense_ids=[424242])
        self.assertIn("billable_expense_ids", ctx.exception.details)

    def test_update_recomputes_and_keeps_omitted_fields(self):
        quote = self.create_acme_quote(client_memo="Thanks!", net_terms_days=15)
        updated = update_quote(quote.pk, [line(cents=250000)], internal_memo="check scope")

        self.assertEqual(updated.total, Decimal("2500.00"))
        self.assertEqual(updated.client_memo, "Thanks!")
        self.assertEqual(updated.net_terms_days, 15)
        self.assertEqual(updated.internal_memo, "check scope")

    def test_update_rejected_once_locked(self):
        quote = self.create_acme_quote()
        lock_quote(quote.pk)
        with self.assertRaises(ConflictError):
            update_quote(quote.pk, [line()])

    def test_lock_requires_lines(self):
        quote = create_quote(self.client_record, [])
        with self.assertRaises(ValidationError):
            lock_quote(quote.pk)
        quote.refresh_from_db()
        self.assertEqual(quote.status, QuoteStatus.PROPOSED)

    def test_lock_requires_positive_total(self):
        quote = create_quote(self.client_record, [line(cents=1000), line("discount", cents=1000)])
        with self.assertRaises(ValidationError):
            lock_quote(quote.pk)

    def test_lock_succeeds_once(self):
        quote = self.create_acme_quote()
        self.assertEqual(lock_quote(quote.pk).status, QuoteStatus.LOCKED)
        with self.assertRaises(ConflictError) as ctx:
            lock_quote(quote.pk)
        self.assertEqual(ctx.exception.message, "Quote is already locked")

    def test_lock_unknown_quote(self):
        with self.assertRaises(NotFoundError):
            lock_quote(123456)


class InvoiceBridgeTests(AcmeFixtureMixin, TestCase):
    def locked_quote(self, **kwargs):
        quote = self.create_acme_quote(**kwargs)
        return lock_quote(quote.pk)

    def test_create_mirrors_quote_into_draft_invoice(self):
        quote = self.locked_quote(client_memo="Thank you", net_terms_days=14)
        mirror = create_invoice_from_quote(quote.pk, gateway=self.gateway)

        self.assertEqual(mirror.status, InvoiceStatus.DRAFT)
        self.assertEqual(mirror.stripe_invoice_id, STRIPE_INVOICE_ID)
        self.assertEqual(mirror.total, Decimal("5050.00"))
        self.assertEqual(mirror.idempotency_key, f"quote_{quote.pk}")
        quote.refresh_from_db()
        self.assertEqual(quote.status, QuoteStatus.INVOICED)

        customer = self.gateway.calls_named("create_customer")[0]
        self.assertEqual(customer["name"], "Acme")
        self.assertEqual(customer["email"], "ap@acme.test")
        self.assertEqual(customer["idempotency_key"], f"cust_quote_{quote.pk}")
        items = self.gateway.calls_named("create_invoice_item")
        self.assertEqual(
            [item["idempotency_key"] for item in items],
            [f"quote_{quote.pk}_item_0", f"quote_{quote.pk}_item_1"],
        )
        self.assertEqual([item["amount_cents"] for item in items], [500000, 5000])
        invoice = self.gateway.calls_named("create_draft_invoice")[0]
        self.assertEqual(invoice["idempotency_key"], f"quote_{quote.pk}_invoice")
        self.assertEqual(invoice["days_until_due"], 14)
        self.assertEqual(invoice["memo"], "Thank you")

        self.client_record.refresh_from_db()
        self.assertEqual(self.client_record.stripe_customer_id, "cus_test_acme")
        # Billables are only spent at finalize.
        self.project.refresh_from_db()
        self.assertEqual(self.project.billing_status, BILLING_STATUS_UNBILLED)

    def test_create_twice_returns_conflict_with_existing_mirror(self):
        quote = self.locked_quote()
        mirror = create_invoice_from_quote(quote.pk, gateway=self.gateway)

        with self.assertRaises(ConflictError) as ctx:
            create_invoice_from_quote(quote.pk, gateway=self.gateway)

        self.assertEqual(ctx.exception.payload["invoice"]["id"], mirror.pk)
        self.assertEqual(InvoiceMirror.objects.count(), 1)
        self.assertEqual(len(self.gateway.calls_named("create_draft_invoice")), 1)

    def test_create_requires_locked_quote(self):
        quote = self.create_acme_quote()
        with self.assertRaises(ConflictError):
            create_invoice_from_quote(quote.pk, gateway=self.gateway)
        self.assertEqual(self.gateway.calls, [])

    def test_create_rechecks_billables_before_touching_stripe(self):
        quote = self.locked_quote()
        self.project.billing_status = BILLING_STATUS_BILLED
        self.project.save()

        with self.assertRaises(ConflictError) as ctx:
            create_invoice_from_quote(quote.pk, gateway=self.gateway)

        self.assertIn("Acme Website", ctx.exception.message)
        self.assertEqual(
            ctx.exception.payload["conflicts"],
            [{"type": "project", "id": self.project.pk, "name": "Acme Website"}],
        )
        self.assertEqual(self.gateway.calls, [])
        self.assertFalse(InvoiceMirror.objects.exists())
        quote.refresh_from_db()
        self.assertEqual(quote.status, QuoteStatus.LOCKED)

    def test_create_requires_billing_email(self):
        self.client_record.billing_email = ""
        self.client_record.email = None
        self.client_record.save()
        quote = self.locked_quote()
        with self.assertRaises(ValidationError):
            create_invoice_from_quote(quote.pk, gateway=self.gateway)

    def test_cached_customer_is_reused(self):
        self.client_record.stripe_customer_id = "cus_existing"
        self.client_record.save()
        quote = self.locked_quote()
        mirror = create_invoice_from_quote(quote.pk, gateway=self.gateway)
        self.assertEqual(mirror.stripe_customer_id, "cus_existing")
        self.assertEqual(self.gateway.calls_named("create_customer"), [])

    def test_stripe_failure_leaves_nothing_behind(self):
        quote = self.locked_quote()
        gateway = FakeStripeGateway(fail_on="create_draft_invoice")

        with self.assertRaises(ExternalServiceError):
            create_invoice_from_quote(quote.pk, gateway=gateway)

        self.assertFalse(InvoiceMirror.objects.exists())
        quote.refresh_from_db()
        self.assertEqual(quote.status, QuoteStatus.LOCKED)
        self.client_record.refresh_from_db()
        self.assertIsNone(self.client_record.stripe_customer_id)

    def test_discount_lines_become_negative_items(self):
        items = build_invoice_items([
            line("discount", "Launch", cents=5000, notes_client="Thanks for your business"),
            line("project", "Build", cents=100000, description="Pages"),
        ])
        self.assertEqual(items[0], {"title": "Build", "description": "Pages", "amount_cents": 100000})
        self.assertEqual(items[1]["title"], "Discount: Launch")
        self.assertEqual(items[1]["amount_cents"], -5000)
        self.assertEqual(items[1]["description"], "Thanks for your business")

    def test_finalize_marks_billables_billed(self):
        mirror = self.create_open_invoice()

        self.assertEqual(mirror.status, InvoiceStatus.OPEN)
        self.assertEqual(mirror.hosted_invoice_url, f"https://invoice.stripe.com/i/{STRIPE_INVOICE_ID}")
        self.assertIsNotNone(mirror.finalized_at)
        for item in (self.project, self.expense):
            item.refresh_from_db()
            self.assertEqual(item.billing_status, BILLING_STATUS_BILLED)
            self.assertEqual(item.billed_invoice_id, mirror.pk)

    def test_finalize_only_from_draft(self):
        mirror = self.create_open_invoice()
        with self.assertRaises(ConflictError) as ctx:
            finalize_invoice(mirror.pk, gateway=self.gateway)
        self.assertEqual(ctx.exception.message, "Invoice is already open")
        self.assertEqual(len(self.gateway.calls_named("finalize_invoice")), 1)

    def test_void_releases_billables(self):
        mirror = self.create_open_invoice()
        mirror = void_invoice(mirror.pk, gateway=self.gateway)

        self.assertEqual(mirror.status, InvoiceStatus.VOID)
        for item in (self.project, self.expense):
            item.refresh_from_db()
            self.assertEqual(item.billing_status, BILLING_STATUS_UNBILLED)
            self.assertIsNone(item.billed_invoice_id)

    def test_void_rejects_draft(self):
        quote = self.locked_quote()
        mirror = create_invoice_from_quote(quote.pk, gateway=self.gateway)
        with self.assertRaises(ConflictError):
            void_invoice(mirror.pk, gateway=self.gateway)
        self.assertEqual(self.gateway.calls_named("void_invoice"), [])


class InvoiceEmailTests(AcmeFixtureMixin, TestCase):
    def test_preview_renders_invoice(self):
        mirror = self.create_open_invoice(due_date=datetime.date(2026, 1, 5), client_memo="Net 30")
        preview = preview_invoice_email(mirror.pk)

        self.assertEqual(preview["subject"], "Invoice for Acme - INV-0001ABCD")
        self.assertEqual(preview["to"], "ap@acme.test")
        html = preview["html"]
        self.assertIn("Pay Invoice", html)
        self.assertIn(mirror.hosted_invoice_url, html)
        self.assertIn("$5,050.00", html)
        self.assertIn("January 5, 2026", html)
        self.assertIn("Net 30", html)
        self.assertEqual(len(mail.outbox), 0)

    def test_preview_requires_finalized_invoice(self):
        quote = lock_quote(self.create_acme_quote().pk)
        mirror = create_invoice_from_quote(quote.pk, gateway=self.gateway)
        with self.assertRaises(ValidationError):
            preview_invoice_email(mirror.pk)

    def test_discount_rows_are_negated(self):
        quote = create_quote(self.client_record, [line(cents=100000), line("discount", "Loyalty", cents=10000)])
        lock_quote(quote.pk)
        mirror = create_invoice_from_quote(quote.pk, gateway=self.gateway)
        finalize_invoice(mirror.pk, gateway=self.gateway)

        html = preview_invoice_email(mirror.pk)["html"]
        self.assertIn("-$100.00", html)
        self.assertIn("$900.00", html)

    @override_settings(BILLING_FROM_EMAIL="billing@opsdesk.test")
    def test_send_is_at_most_once(self):
        mirror = self.create_open_invoice()
        sent = send_invoice_email(mirror.pk)

        self.assertEqual(len(mail.outbox), 1)
        message = mail.outbox[0]
        self.assertEqual(message.to, ["ap@acme.test"])
        self.assertEqual(message.subject, "Invoice for Acme - INV-0001ABCD")
        self.assertIn("billing@opsdesk.test", message.from_email)
        self.assertIsNotNone(sent.email_sent_at)
        self.assertEqual(sent.email_recipient, "ap@acme.test")

        with self.assertRaises(ConflictError):
            send_invoice_email(mirror.pk)
        self.assertEqual(len(mail.outbox), 1)

    def test_send_falls_back_to_general_email(self):
        self.client_record.billing_email = None
        self.client_record.save()
        mirror = self.create_open_invoice()
        self.assertEqual(send_invoice_email(mirror.pk).email_recipient, "hello@acme.test")

    def test_send_requires_finalized_invoice(self):
        quote = lock_quote(self.create_acme_quote().pk)
        mirror = create_invoice_from_quote(quote.pk, gateway=self.gateway)
        with self.assertRaises(ValidationError):
            send_invoice_email(mirror.pk)
        self.assertEqual(len(mail.outbox), 0)

    def test_failed_send_is_not_recorded(self):
        mirror = self.create_open_invoice()
        connection = mock.Mock()
        connection.send_messages.side_effect = smtplib.SMTPException("relay refused")

        with self.assertRaises(ExternalServiceError):
            send_invoice_email(mirror.pk, connection=connection)

        mirror.refresh_from_db()
        self.assertIsNone(mirror.email_sent_at)
        send_invoice_email(mirror.pk)
        self.assertEqual(len(mail.outbox), 1)

    def test_format_due_date(self):
        self.assertEqual(format_due_date(datetime.date(2026, 3, 9)), "March 9, 2026")
        self.assertIsNone(format_due_date(None))


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class PricingSuggesterTests(SimpleTestCase):
    projects = [{"id": "p1", "name": "Acme Website", "type": "Website Build", "budget": Decimal("5000.00")}]
    expenses = [{
        "id": "e1",
        "category": "Software",
        "amount": Decimal("99.00"),
        "description": "Zapier plan",
        "vendor": "Zapier",
        "pass_through_policy": "markup_percent",
        "markup_percent": Decimal("15.00"),
    }]

    def fake_client(self, content=None, error=None):
        client = mock.Mock()
        if error is not None:
            client.chat.completions.create.side_effect = error
        else:
            client.chat.completions.create.return_value = _completion(content)
        return client

    def test_prompt_includes_catalog_and_items(self):
        system_prompt, user_prompt = build_pricing_prompt("Acme", self.projects, self.expenses)
        self.assertIn("Foundation System", system_prompt)
        self.assertIn('Generate pricing for client "Acme"', user_prompt)
        self.assertIn("Budget: $5000.00", user_prompt)
        self.assertIn("Markup: 15.00%", user_prompt)

    def test_suggestion_is_normalized(self):
        content = (
            "```json\n"
            '[{"kind": "project", "source_id": "p1", "title": "Acme Website", "quantity": 1,'
            ' "unit_label": "fixed", "unit_amount_cents": 500000.4, "taxable": true, "group_key": "Acme Website"},'
            ' {"kind": "bogus", "unitAmountCents": 11385}]\n'
            "```"
        )
        client = self.fake_client(content)
        lines = suggest_pricing("Acme", self.projects, self.expenses, openai_client=client)

        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[0].unit_amount_cents, 500000)
        self.assertFalse(lines[0].taxable)
        self.assertEqual(lines[1].kind, "project")
        self.assertEqual(lines[1].title, "Untitled")
        self.assertEqual(lines[1].unit_label, "fixed")
        self.assertEqual(lines[1].group_key, "General")
        self.assertEqual(lines[1].quantity, 1)
        self.assertEqual(lines[1].unit_amount_cents, 11385)
        kwargs = client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["temperature"], 0.3)

    def test_non_array_is_rejected(self):
        with self.assertRaises(ExternalServiceError):
            parse_suggestion('{"kind": "project"}')
        with self.assertRaises(ExternalServiceError):
            parse_suggestion("Sure! Here are your lines.")

    def test_non_object_items_reject_the_whole_response(self):
        content = '[{"kind": "project", "title": "Build", "unit_amount_cents": 1000}, "garbage", 42]'
        with self.assertRaises(ExternalServiceError) as ctx:
            parse_suggestion(content)
        self.assertEqual(ctx.exception.message, "AI response contains a non-object item")

    def test_non_finite_amount_is_coerced(self):
        lines = parse_suggestion('[{"kind": "project", "title": "Build", "quantity": 1, "unit_amount_cents": NaN}]')
        self.assertEqual(lines[0].unit_amount_cents, 0)
        self.assertEqual(lines[0].total_cents, 0)

    def test_non_finite_quantity_is_coerced(self):
        lines = parse_suggestion(
            '[{"kind": "project", "title": "Build", "quantity": Infinity, "unit_amount_cents": 2500},'
            ' {"kind": "expense", "title": "Hosting", "quantity": -Infinity, "unit_amount_cents": Infinity}]'
        )
        self.assertEqual(lines[0].quantity, 1)
        self.assertEqual(lines[0].total_cents, 2500)
        self.assertEqual(lines[1].quantity, 1)
        self.assertEqual(compute_totals(lines).total, 2500)

    def test_timeout_is_distinct(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        client = self.fake_client(error=openai.APITimeoutError(request=request))
        with self.assertRaises(ExternalServiceTimeout):
            suggest_pricing("Acme", self.projects, [], openai_client=client)


class StripeGatewayTests(SimpleTestCase):
    def setUp(self):
        self.gateway = StripeGateway("sk_test_123")
        self.gateway._client = mock.Mock()

    def test_requires_api_key(self):
        with self.assertRaises(ExternalServiceError):
            StripeGateway("")

    def test_calls_carry_idempotency_keys(self):
        self.gateway._client.customers.create.return_value = {"id": "cus_1"}
        self.assertEqual(
            self.gateway.create_customer(name="Acme", email="ap@acme.test", client_id=7, idempotency_key="cust_quote_1"),
            "cus_1",
        )
        kwargs = self.gateway._client.customers.create.call_args.kwargs
        self.assertEqual(kwargs["options"], {"idempotency_key": "cust_quote_1"})
        self.assertEqual(kwargs["params"]["metadata"], {"clientId": "7"})

        self.gateway._client.invoices.create.return_value = {"id": "in_1"}
        self.gateway.create_draft_invoice(customer_id="cus_1", days_until_due=30, memo=None, idempotency_key="quote_1_invoice")
        params = self.gateway._client.invoices.create.call_args.kwargs["params"]
        self.assertEqual(params["collection_method"], "send_invoice")
        self.assertFalse(params["auto_advance"])
        self.assertNotIn("description", params)

    def test_connection_errors_are_timeouts(self):
        self.gateway._client.invoices.finalize_invoice.side_effect = stripe.APIConnectionError("unreachable")
        with self.assertRaises(ExternalServiceTimeout):
            self.gateway.finalize_invoice("in_1")

    def test_api_errors_are_external_errors(self):
        self.gateway._client.invoice_items.create.side_effect = stripe.InvalidRequestError("No such customer", "customer")
        with self.assertRaises(ExternalServiceError) as ctx:
            self.gateway.create_invoice_item(customer_id="cus_x", amount_cents=100, description="x", idempotency_key="k")
        self.assertNotIsInstance(ctx.exception, ExternalServiceTimeout)
        self.assertEqual(ctx.exception.service, "stripe")


class SeedBillingDemoTests(TestCase):
    def test_seed_is_idempotent(self):
        out = StringIO()
        call_command("seed_billing_demo", stdout=out)
        call_command("seed_billing_demo", stdout=out)

        self.assertEqual(Client.objects.count(), 2)
        self.assertEqual(Project.objects.filter(status=Project.STATUS_COMPLETED).count(), 3)
        self.assertEqual(Expense.objects.count(), 4)
        self.assertIn("0 new projects, 0 new expenses", out.getvalue())
        billables = get_client_billables(Client.objects.get(name="Retail Innovations").pk)
        self.assertEqual(len(billables["projects"]), 1)
        self.assertEqual(len(billables["expenses"]), 2)

    def test_unknown_user(self):
        with self.assertRaises(CommandError):
            call_command("seed_billing_demo", username="nobody")
