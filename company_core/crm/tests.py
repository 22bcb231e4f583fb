import datetime
from decimal import Decimal

from django.contrib.auth.models import User
from django.test import TestCase

from billing.exceptions import ValidationError
from billing.pricing_catalog import PLAN_TASKS

from .leads import create_lead
from .models import Client, Note, Subscription, Task
from .subscriptions import (
    cancel_stripe_subscription,
    compute_next_billing,
    map_stripe_status,
    record_checkout_subscription,
    sync_stripe_subscription_status,
)


class ClientRecipientTests(TestCase):
    def test_billing_email_preferred(self):
        client = Client(name="A", email="info@a.test", billing_email="ap@a.test")
        self.assertEqual(client.invoice_recipient, "ap@a.test")

    def test_falls_back_to_general_email(self):
        client = Client(name="A", email="info@a.test", billing_email="  ")
        self.assertEqual(client.invoice_recipient, "info@a.test")
        self.assertIsNone(Client(name="B").invoice_recipient)


class NextBillingTests(TestCase):
    def test_cadences(self):
        start = datetime.date(2026, 1, 31)
        self.assertEqual(compute_next_billing(start, "monthly"), datetime.date(2026, 2, 28))
        self.assertEqual(compute_next_billing(start, "quarterly"), datetime.date(2026, 4, 30))
        self.assertEqual(compute_next_billing(start, "annual"), datetime.date(2027, 1, 31))

    def test_unknown_cadence_is_monthly(self):
        self.assertEqual(
            compute_next_billing(datetime.date(2026, 3, 1), None),
            datetime.date(2026, 4, 1),
        )

    def test_stripe_status_mapping(self):
        self.assertEqual(map_stripe_status("past_due"), Subscription.STATUS_ACTIVE)
        self.assertEqual(map_stripe_status("unpaid"), Subscription.STATUS_PAUSED)
        self.assertEqual(map_stripe_status("canceled"), Subscription.STATUS_CANCELLED)
        self.assertEqual(map_stripe_status(None), Subscription.STATUS_ACTIVE)


class StripeSubscriptionSyncTests(TestCase):
    def setUp(self):
        self.client_record = Client.objects.create(name="Harbor Plumbing")

    def session(self, **metadata):
        return {
            "id": "cs_1",
            "customer": "cus_harbor",
            "subscription": "sub_harbor",
            "metadata": {
                "clientId": str(self.client_record.pk),
                "planId": "command",
                "planName": "Command System",
                "planTier": "Advanced",
                "billingCadence": "annual",
                "monthlyFee": "647",
                "addons": "ai-voice",
                **metadata,
            },
        }

    def test_checkout_records_subscription(self):
        subscription = record_checkout_subscription(self.session())

        self.assertEqual(subscription.client, self.client_record)
        self.assertEqual(subscription.description, "Command System (Advanced)")
        self.assertEqual(subscription.billing_cadence, "annual")
        self.assertEqual(subscription.amount, Decimal("647.00"))
        self.assertEqual(subscription.addons, "ai-voice")
        self.assertEqual(
            subscription.next_billing,
            compute_next_billing(subscription.start_date, "annual"),
        )

    def test_bad_amount_and_cadence_fall_back(self):
        subscription = record_checkout_subscription(
            self.session(monthlyFee="lots", billingCadence="weekly")
        )
        self.assertEqual(subscription.amount, Decimal("0.00"))
        self.assertEqual(subscription.billing_cadence, Subscription.CADENCE_MONTHLY)

    def test_unknown_client_is_ignored(self):
        self.assertIsNone(record_checkout_subscription(self.session(clientId="999999")))
        self.assertFalse(Subscription.objects.exists())

    def test_malformed_client_id_is_ignored(self):
        with self.assertLogs("crm.subscriptions", level="WARNING"):
            self.assertIsNone(record_checkout_subscription(self.session(clientId="acme-42")))
        self.assertFalse(Subscription.objects.exists())

    def test_status_sync_and_cancel_by_stripe_id(self):
        record_checkout_subscription(self.session())

        self.assertEqual(sync_stripe_subscription_status("sub_harbor", "paused"), 1)
        self.assertEqual(Subscription.objects.get().status, Subscription.STATUS_PAUSED)
        self.assertEqual(sync_stripe_subscription_status("sub_missing", "active"), 0)

        cancel_stripe_subscription("sub_harbor", ended_on=datetime.date(2026, 6, 30))
        subscription = Subscription.objects.get()
        self.assertEqual(subscription.status, Subscription.STATUS_CANCELLED)
        self.assertEqual(subscription.end_date, datetime.date(2026, 6, 30))


class LeadIntakeTests(TestCase):
    def lead(self, **fields):
        data = {
            "plan_id": "foundation",
            "business_name": "Maple Dental",
            "contact_name": "Sam Ortiz",
            "email": "sam@maple.test",
        }
        data.update(fields)
        return data

    def test_flat_plan_without_extras(self):
        client, project = create_lead(self.lead())

        self.assertIsNone(client.created_by)
        self.assertEqual(project.name, "Foundation System")
        self.assertEqual(project.type, "Automation Build")
        self.assertEqual(project.budget, Decimal("3500"))
        self.assertEqual(
            list(Task.objects.filter(project=project).order_by("id").values_list("title", flat=True)),
            PLAN_TASKS["foundation"],
        )
        self.assertFalse(Note.objects.exists())

    def test_tiered_plan_without_tier_has_no_budget(self):
        _, project = create_lead(self.lead(plan_id="command"))
        self.assertEqual(project.name, "Command System")
        self.assertIsNone(project.budget)

    def test_oldest_user_owns_the_lead(self):
        first = User.objects.create_user(username="first")
        User.objects.create_user(username="second")
        client, _ = create_lead(self.lead(notes="Call after 3pm"))
        self.assertEqual(client.created_by, first)
        self.assertEqual(Note.objects.get().created_by, first)

    def test_unknown_plan_creates_nothing(self):
        with self.assertRaises(ValidationError):
            create_lead(self.lead(plan_id="Foundation"))
        self.assertFalse(Client.objects.exists())
