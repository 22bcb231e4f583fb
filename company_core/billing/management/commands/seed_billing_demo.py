import datetime
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from crm.models import Client, Expense, Project

DEMO_CLIENTS = [
    {
        "name": "TechCorp Solutions",
        "email": "hello@techcorp.com",
        "billing_email": "billing@techcorp.com",
        "industry": "Technology",
        "projects": [
            {
                "name": "Landing Page Redesign",
                "description": "Complete redesign of marketing landing pages with A/B testing",
                "type": "Website Build",
                "budget": Decimal("5000.00"),
                "start_date": datetime.date(2025, 11, 1),
                "end_date": datetime.date(2025, 12, 15),
            },
            {
                "name": "CRM Integration",
                "description": "Custom API integration with client CRM system",
                "type": "Automation Build",
                "budget": Decimal("3500.00"),
                "start_date": datetime.date(2025, 12, 1),
                "end_date": datetime.date(2026, 1, 10),
            },
        ],
        "expenses": [
            {
                "category": "Software",
                "amount": Decimal("49.99"),
                "description": "VAPI voice AI monthly subscription",
                "vendor": "VAPI",
                "date": datetime.date(2026, 1, 15),
                "pass_through_policy": Expense.POLICY_AT_COST,
            },
            {
                "category": "Hosting",
                "amount": Decimal("29.00"),
                "description": "Vercel Pro hosting for client site",
                "vendor": "Vercel",
                "date": datetime.date(2026, 1, 1),
                "pass_through_policy": Expense.POLICY_AT_COST,
            },
        ],
    },
    {
        "name": "Retail Innovations",
        "email": "team@retailinnovations.com",
        "billing_email": "billing@retailinnovations.com",
        "industry": "Retail",
        "projects": [
            {
                "name": "Inventory Automation",
                "description": "Automated inventory sync between POS and e-commerce",
                "type": "Automation Build",
                "budget": Decimal("7500.00"),
                "start_date": datetime.date(2025, 10, 15),
                "end_date": datetime.date(2026, 1, 5),
            },
        ],
        "expenses": [
            {
                "category": "Domain",
                "amount": Decimal("14.99"),
                "description": "Domain renewal - retailinnovations.com",
                "vendor": "Cloudflare",
                "date": datetime.date(2026, 1, 20),
                "pass_through_policy": Expense.POLICY_AT_COST,
            },
            {
                "category": "Software",
                "amount": Decimal("99.00"),
                "description": "Zapier automation plan for inventory sync",
                "vendor": "Zapier",
                "date": datetime.date(2026, 1, 10),
                "pass_through_policy": Expense.POLICY_MARKUP,
                "markup_percent": Decimal("15.00"),
            },
        ],
    },
]


class Command(BaseCommand):
    help = "Seed demo clients with completed projects and unbilled expenses for the billing flow."

    def add_arguments(self, parser):
        parser.add_argument(
            "--username",
            help="User recorded as creator of the demo clients.",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        username = options.get("username")
        user = None
        if username:
            UserModel = get_user_model()
            try:
                user = UserModel.objects.get(username=username)
            except UserModel.DoesNotExist as exc:
                raise CommandError(f"User '{username}' does not exist.") from exc

        created_projects = 0
        created_expenses = 0
        for demo in DEMO_CLIENTS:
            client, _ = Client.objects.get_or_create(
                name=demo["name"],
                defaults={
                    "email": demo["email"],
                    "industry": demo["industry"],
                    "created_by": user,
                },
            )
            if client.billing_email != demo["billing_email"]:
                client.billing_email = demo["billing_email"]
                client.save(update_fields=["billing_email", "updated_at"])

            for project in demo["projects"]:
                _, created = Project.objects.get_or_create(
                    client=client,
                    name=project["name"],
                    defaults={**project, "status": Project.STATUS_COMPLETED},
                )
                created_projects += int(created)

            for expense in demo["expenses"]:
                _, created = Expense.objects.get_or_create(
                    client=client,
                    description=expense["description"],
                    defaults={**expense, "who_paid": "you_paid"},
                )
                created_expenses += int(created)

        self.stdout.write(
            self.style.SUCCESS(
                f"Billing demo ready: {len(DEMO_CLIENTS)} clients, "
                f"{created_projects} new projects, {created_expenses} new expenses."
            )
        )
