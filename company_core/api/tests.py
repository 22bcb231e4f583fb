import datetime
import json
from decimal import Decimal
from unittest import mock

from django.contrib.auth.models import User
from django.core import mail
from django.test import TestCase
from django.test.utils import override_settings
from rest_framework.authtoken.models import Token
from rest_framework.test import APIClient

from billing.exceptions import ExternalServiceTimeout
from billing.models import InvoiceMirror, Quote
from billing.pricing import QuoteLine
from billing.tests import STRIPE_INVOICE_ID, FakeStripeGateway
from crm.models import BILLING_STATUS_BILLED, BILLING_STATUS_UNBILLED, Client, Expense, Note, Project, Subscription, Task


def line_payload(**overrides):
    payload = {
        "kind": "project",
        "source_id": None,
        "title": "Acme Website",
        "quantity": 1,
        "unit_label": "fixed",
        "unit_amount_cents": 500000,
        "taxable": False,
        "group_key": "Acme Website",
    }
    payload.update(overrides)
    return payload


class ApiTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="owner", password="p")
        self.api = APIClient()
        self.api.force_authenticate(user=self.user)
        self.client_record = Client.objects.create(name="Acme", billing_email="ap@acme.test")
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
        )
        self.gateway = FakeStripeGateway()
        patcher = mock.patch("billing.invoices.get_stripe_gateway", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def quote_payload(self, **overrides):
        payload = {
            "client": self.client_record.pk,
            "lines": [
                line_payload(source_id=str(self.project.pk)),
                line_payload(
                    kind="expense",
                    source_id=str(self.expense.pk),
                    title="Hosting setup",
                    unit_amount_cents=5000,
                    group_key="Hosting",
                ),
            ],
            "billable_project_ids": [self.project.pk],
            "billable_expense_ids": [self.expense.pk],
        }
        payload.update(overrides)
        return payload

    def create_quote(self, **overrides):
        response = self.api.post("/api/quotes/", self.quote_payload(**overrides), format="json")
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()


class AuthenticationTests(ApiTestCase):
    def test_anonymous_requests_are_rejected(self):
        response = APIClient().get("/api/quotes/")
        self.assertIn(response.status_code, (401, 403))
        self.assertIn("error", response.json())

    def test_token_login(self):
        response = APIClient().post(
            "/api/auth/login-token/",
            {"username": "owner", "password": "p"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["token"], Token.objects.get(user=self.user).key)


class CrmApiTests(ApiTestCase):
    def test_client_create_records_owner(self):
        response = self.api.post("/api/clients/", {"name": "Bright Dental"}, format="json")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(Client.objects.get(name="Bright Dental").created_by, self.user)

    def test_projects_filter_by_client(self):
        other = Client.objects.create(name="Other")
        Project.objects.create(client=other, name="Not ours")
        response = self.api.get("/api/projects/", {"client": self.client_record.pk})
        self.assertEqual([p["name"] for p in response.json()], ["Acme Website"])

    def test_billing_status_is_read_only(self):
        response = self.api.patch(
            f"/api/projects/{self.project.pk}/",
            {"billing_status": BILLING_STATUS_BILLED},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.project.refresh_from_db()
        self.assertEqual(self.project.billing_status, BILLING_STATUS_UNBILLED)

    def test_subscription_next_billing_is_computed(self):
        response = self.api.post(
            "/api/subscriptions/",
            {
                "client": self.client_record.pk,
                "name": "Momentum",
                "amount": "297.00",
                "billing_cadence": "quarterly",
                "start_date": "2026-01-15",
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201, response.content)
        self.assertEqual(response.json()["next_billing"], "2026-04-15")
        self.assertEqual(Subscription.objects.get().next_billing, datetime.date(2026, 4, 15))

    def test_billables(self):
        Project.objects.create(client=self.client_record, name="In flight", status="in_progress")
        response = self.api.get(f"/api/clients/{self.client_record.pk}/billables/")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual([p["id"] for p in body["projects"]], [self.project.pk])
        self.assertEqual([e["id"] for e in body["expenses"]], [self.expense.pk])

    def test_billables_unknown_client(self):
        response = self.api.get("/api/clients/999999/billables/")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Client not found"})


class QuoteApiTests(ApiTestCase):
    def test_create_quote(self):
        body = self.create_quote(client_memo="Thanks!")
        self.assertEqual(body["status"], "proposed")
        self.assertEqual(body["total"], "5050.00")
        self.assertEqual(body["totals_cents"], {"subtotal": 505000, "discount": 0, "total": 505000})
        self.assertEqual(body["client"]["name"], "Acme")
        self.assertIsNone(body["invoice_mirror"])
        self.assertEqual(body["lines"][1]["unit_amount_cents"], 5000)
        self.assertEqual(Quote.objects.get().created_by, self.user)

    def test_create_rejects_malformed_lines(self):
        response = self.api.post(
            "/api/quotes/",
            self.quote_payload(lines=[line_payload(kind="gift", unit_amount_cents=-5)]),
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body["error"], "Validation failed")
        self.assertIn("lines", body["details"])

    def test_double_billing_conflict(self):
        self.project.billing_status = BILLING_STATUS_BILLED
        self.project.save()
        response = self.api.post("/api/quotes/", self.quote_payload(), format="json")
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertIn("Acme Website", body["error"])
        self.assertEqual(body["conflicts"][0]["type"], "project")

    def test_update_then_lock(self):
        quote = self.create_quote(client_memo="Thanks!")
        response = self.api.put(
            f"/api/quotes/{quote['id']}/",
            {"lines": [line_payload(unit_amount_cents=250000)], "internal_memo": "trimmed"},
            format="json",
        )
        self.assertEqual(response.status_code, 200, response.content)
        self.assertEqual(response.json()["total"], "2500.00")
        self.assertEqual(response.json()["client_memo"], "Thanks!")

        response = self.api.post(f"/api/quotes/{quote['id']}/lock/")
        self.assertEqual(response.json()["status"], "locked")

        response = self.api.put(
            f"/api/quotes/{quote['id']}/",
            {"lines": [line_payload()]},
            format="json",
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "Only proposed quotes can be edited")

    def test_lock_empty_quote(self):
        quote = self.create_quote(lines=[], billable_project_ids=[], billable_expense_ids=[])
        response = self.api.post(f"/api/quotes/{quote['id']}/lock/")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "Quote must have at least one line item")

    def test_list_loads_invoice_summaries_in_one_query(self):
        invoiced = self.create_quote()
        self.api.post(f"/api/quotes/{invoiced['id']}/lock/")
        invoice = self.api.post("/api/invoices/", {"quote": invoiced["id"]}, format="json").json()
        self.create_quote(billable_project_ids=[], billable_expense_ids=[])
        self.create_quote(billable_project_ids=[], billable_expense_ids=[])

        with self.assertNumQueries(1):
            response = self.api.get("/api/quotes/")

        mirrors = {quote["id"]: quote["invoice_mirror"] for quote in response.json()}
        self.assertEqual(len(mirrors), 3)
        self.assertEqual(mirrors[invoiced["id"]]["id"], invoice["id"])
        self.assertEqual(sum(mirror is None for mirror in mirrors.values()), 2)

    def test_quotes_cannot_be_deleted(self):
        quote = self.create_quote()
        response = self.api.delete(f"/api/quotes/{quote['id']}/")
        self.assertEqual(response.status_code, 405)

    def test_suggest(self):
        suggested = [QuoteLine(
            kind="project",
            title="Acme Website",
            quantity=1,
            unit_label="fixed",
            unit_amount_cents=500000,
            group_key="Acme Website",
            source_id="p1",
        )]
        payload = {
            "client_name": "Acme",
            "projects": [{"id": "p1", "name": "Acme Website", "type": "Website Build", "budget": "5000.00"}],
        }
        with mock.patch("api.views.suggest_pricing", return_value=suggested) as suggest:
            response = self.api.post("/api/quotes/suggest/", payload, format="json")

        self.assertEqual(response.status_code, 200, response.content)
        self.assertEqual(response.json()["lines"][0]["unit_amount_cents"], 500000)
        client_name, projects, expenses = suggest.call_args.args
        self.assertEqual(client_name, "Acme")
        self.assertEqual(projects[0]["budget"], Decimal("5000.00"))
        self.assertEqual(expenses, [])

    def test_suggest_timeout(self):
        error = ExternalServiceTimeout("AI pricing request timed out", service="openai")
        with mock.patch("api.views.suggest_pricing", side_effect=error):
            response = self.api.post(
                "/api/quotes/suggest/",
                {"client_name": "Acme", "projects": []},
                format="json",
            )
        self.assertEqual(response.status_code, 504)
        self.assertEqual(response.json(), {"error": "AI pricing request timed out"})


class InvoiceApiTests(ApiTestCase):
    def locked_quote(self):
        quote = self.create_quote()
        self.api.post(f"/api/quotes/{quote['id']}/lock/")
        return quote

    def test_invoice_lifecycle(self):
        quote = self.locked_quote()

        response = self.api.post("/api/invoices/", {"quote": quote["id"]}, format="json")
        self.assertEqual(response.status_code, 201, response.content)
        invoice = response.json()
        self.assertEqual(invoice["status"], "draft")
        self.assertEqual(invoice["stripe_invoice_id"], STRIPE_INVOICE_ID)
        self.assertEqual(invoice["invoice_number"], "INV-0001ABCD")

        response = self.api.get(f"/api/quotes/{quote['id']}/")
        self.assertEqual(response.json()["status"], "invoiced")
        self.assertEqual(response.json()["invoice_mirror"]["id"], invoice["id"])

        response = self.api.post(f"/api/invoices/{invoice['id']}/finalize/")
        self.assertEqual(response.json()["status"], "open")
        self.project.refresh_from_db()
        self.assertEqual(self.project.billing_status, BILLING_STATUS_BILLED)

        response = self.api.get(f"/api/invoices/{invoice['id']}/email-preview/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["to"], "ap@acme.test")
        self.assertIn("Pay Invoice", response.json()["html"])

        response = self.api.post(f"/api/invoices/{invoice['id']}/send-email/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["email_recipient"], "ap@acme.test")
        self.assertEqual(len(mail.outbox), 1)

        response = self.api.post(f"/api/invoices/{invoice['id']}/send-email/")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["email_recipient"], "ap@acme.test")
        self.assertEqual(len(mail.outbox), 1)

        response = self.api.post(f"/api/invoices/{invoice['id']}/void/")
        self.assertEqual(response.json()["status"], "void")
        self.project.refresh_from_db()
        self.assertEqual(self.project.billing_status, BILLING_STATUS_UNBILLED)

    def test_second_invoice_for_quote_conflicts(self):
        quote = self.locked_quote()
        first = self.api.post("/api/invoices/", {"quote": quote["id"]}, format="json").json()
        response = self.api.post("/api/invoices/", {"quote": quote["id"]}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["invoice"]["id"], first["id"])

    def test_invoice_for_proposed_quote_conflicts(self):
        quote = self.create_quote()
        response = self.api.post("/api/invoices/", {"quote": quote["id"]}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertFalse(InvoiceMirror.objects.exists())

    def test_stripe_failure_maps_to_bad_gateway(self):
        quote = self.locked_quote()
        self.gateway.fail_on = "create_invoice_item"
        response = self.api.post("/api/invoices/", {"quote": quote["id"]}, format="json")
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json(), {"error": "Stripe create_invoice_item failed"})
        self.assertEqual(Quote.objects.get().status, "locked")

    def test_unknown_invoice(self):
        response = self.api.post("/api/invoices/424242/finalize/")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Invoice not found"})

    def test_preview_before_finalize(self):
        quote = self.locked_quote()
        invoice = self.api.post("/api/invoices/", {"quote": quote["id"]}, format="json").json()
        response = self.api.get(f"/api/invoices/{invoice['id']}/email-preview/")
        self.assertEqual(response.status_code, 400)


class StripeWebhookViewTests(ApiTestCase):
    url = "/api/stripe/webhook/"

    def post_event(self, event, signature="t=123,v1=abc"):
        headers = {"HTTP_STRIPE_SIGNATURE": signature} if signature else {}
        return self.client.post(self.url, data=json.dumps(event), content_type="application/json", **headers)

    def test_missing_signature(self):
        response = self.post_event({"id": "evt_1"}, signature=None)
        self.assertEqual(response.status_code, 400)

    @override_settings(STRIPE_WEBHOOK_SECRET="whsec_test")
    def test_bad_signature(self):
        response = self.post_event({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid signature"})

    @override_settings(STRIPE_WEBHOOK_SECRET="")
    def test_unconfigured_secret(self):
        response = self.post_event({"id": "evt_1"})
        self.assertEqual(response.status_code, 502)

    def test_verified_event_is_reconciled(self):
        quote = self.create_quote()
        self.api.post(f"/api/quotes/{quote['id']}/lock/")
        self.api.post("/api/invoices/", {"quote": quote["id"]}, format="json")
        event = {
            "id": "evt_paid",
            "type": "invoice.paid",
            "data": {"object": {"id": STRIPE_INVOICE_ID, "hosted_invoice_url": "https://invoice.stripe.com/i/x"}},
        }

        with mock.patch("api.views.construct_webhook_event", return_value=event):
            response = self.post_event(event)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"received": True, "handled": "invoice.paid"})
        mirror = InvoiceMirror.objects.get()
        self.assertEqual(mirror.status, "paid")
        self.assertEqual(mirror.hosted_invoice_url, "https://invoice.stripe.com/i/x")

    def test_unknown_event_is_acknowledged(self):
        event = {"id": "evt_x", "type": "payout.created", "data": {"object": {"id": "po_1"}}}
        with mock.patch("api.views.construct_webhook_event", return_value=event):
            response = self.post_event(event)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["handled"], "unknown")

    def test_handler_failure_asks_for_redelivery(self):
        event = {"id": "evt_y", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}}
        with mock.patch("api.views.construct_webhook_event", return_value=event), \
                mock.patch("api.views.handle_stripe_event", side_effect=RuntimeError("db down")):
            response = self.post_event(event)
        self.assertEqual(response.status_code, 500)


@override_settings(EXTERNAL_API_KEY="lead-key")
class ExternalLeadApiTests(TestCase):
    url = "/api/external/lead/"

    def setUp(self):
        self.owner = User.objects.create_user(username="owner", password="p")
        self.api = APIClient()

    def lead_payload(self, **overrides):
        payload = {
            "plan_id": "command",
            "plan_tier": "Advanced",
            "addons": [{"id": "ai-voice", "tier": "Med"}, {"id": "crm-migration"}],
            "business_name": "Northside Roofing",
            "contact_name": "Dana Reyes",
            "email": "dana@northside.test",
            "phone": "555-0142",
            "industry": "Roofing",
            "notes": "Wants to start next month.",
        }
        payload.update(overrides)
        return payload

    def post_lead(self, payload=None, key="lead-key"):
        headers = {"HTTP_X_API_KEY": key} if key else {}
        return self.api.post(self.url, payload or self.lead_payload(), format="json", **headers)

    def test_missing_key_is_unauthorized(self):
        response = self.post_lead(key=None)
        self.assertEqual(response.status_code, 401)
        self.assertFalse(Client.objects.exists())

    def test_wrong_key_is_unauthorized(self):
        response = self.post_lead(key="guess")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Unauthorized"})
        self.assertFalse(Client.objects.exists())

    @override_settings(EXTERNAL_API_KEY="")
    def test_unconfigured_key_rejects_everything(self):
        response = self.post_lead(key="lead-key")
        self.assertEqual(response.status_code, 401)

    def test_lead_creates_client_project_tasks_and_notes(self):
        response = self.post_lead()

        self.assertEqual(response.status_code, 201, response.content)
        body = response.json()
        client = Client.objects.get(pk=body["client_id"])
        self.assertEqual(client.name, "Northside Roofing")
        self.assertEqual(client.invoice_recipient, "dana@northside.test")
        self.assertEqual(client.created_by, self.owner)

        project = Project.objects.get(pk=body["project_id"])
        self.assertEqual(project.client, client)
        self.assertEqual(project.name, "Command System (Advanced)")
        self.assertEqual(project.status, "planning")
        self.assertEqual(project.type, "Custom")
        self.assertEqual(project.budget, Decimal("11000.00"))
        self.assertIn("Contact: Dana Reyes", project.description)

        titles = list(Task.objects.filter(project=project).order_by("id").values_list("title", flat=True))
        self.assertEqual(titles[0], "Setup CRM & pipeline")
        self.assertIn("Build advanced dashboards", titles)
        self.assertEqual(
            titles[-2:],
            ["Setup: AI Voice Receptionist (Med)", "Setup: CRM Migration / Rebuild"],
        )

        notes = set(Note.objects.filter(client=client).values_list("content", flat=True))
        self.assertEqual(notes, {
            "Selected add-ons: AI Voice Receptionist (Med), CRM Migration / Rebuild",
            "Lead notes: Wants to start next month.",
        })

    def test_unknown_plan_is_rejected(self):
        response = self.post_lead(self.lead_payload(plan_id="platinum"))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "Invalid plan ID")
        self.assertFalse(Client.objects.exists())

    def test_invalid_body_is_rejected(self):
        response = self.post_lead(self.lead_payload(email="not-an-email", business_name=""))
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body["error"], "Validation failed")
        self.assertIn("email", body["details"])
        self.assertIn("business_name", body["details"])
