"""Turn a plan selection from the public pricing site into CRM records."""
import logging

from django.contrib.auth import get_user_model
from django.db import transaction

from billing.exceptions import ValidationError
from billing.pricing_catalog import PLAN_TASKS, get_addon, get_plan, plan_setup_fee

from .models import Client, Note, Project, Task

logger = logging.getLogger(__name__)

AUTOMATION_PLANS = {"foundation", "momentum"}


def _lead_owner():
    # Leads arrive without a session; the oldest account owns them.
    return get_user_model().objects.order_by("date_joined", "id").first()


def _addon_label(selection):
    addon = get_addon(selection["id"])
    name = addon["name"] if addon else selection["id"]
    tier = selection.get("tier")
    return f"{name} ({tier})" if tier else name


@transaction.atomic
def create_lead(data):
    """Create the client, a planning project, its onboarding tasks and notes.

    ``data`` holds validated lead fields. Returns ``(client, project)``.
    """
    plan = get_plan(data["plan_id"])
    if plan is None:
        raise ValidationError("Invalid plan ID", details={"plan_id": data["plan_id"]})

    tier = data.get("plan_tier") or None
    owner = _lead_owner()
    client = Client.objects.create(
        name=data["business_name"],
        email=data["email"],
        billing_email=data["email"],
        phone=data.get("phone") or None,
        industry=data.get("industry") or None,
        created_by=owner,
    )

    setup_fee = plan_setup_fee(plan, tier)
    project = Project.objects.create(
        client=client,
        name=f"{plan['name']} ({tier})" if tier else plan["name"],
        description=f"{plan['outcomes']} - Contact: {data['contact_name']}",
        type="Automation Build" if plan["id"] in AUTOMATION_PLANS else "Custom",
        status="planning",
        budget=setup_fee or None,
    )

    titles = list(PLAN_TASKS.get(plan["id"], []))
    addon_labels = [_addon_label(selection) for selection in data.get("addons") or []]
    titles.extend(f"Setup: {label}" for label in addon_labels)
    Task.objects.bulk_create(
        Task(title=title, client=client, project=project) for title in titles
    )

    if addon_labels:
        Note.objects.create(
            content=f"Selected add-ons: {', '.join(addon_labels)}",
            client=client,
            project=project,
            created_by=owner,
        )
    notes = (data.get("notes") or "").strip()
    if notes:
        Note.objects.create(
            content=f"Lead notes: {notes}",
            client=client,
            project=project,
            created_by=owner,
        )

    logger.info("Lead %s created client %s with project %s (%s)", data["email"], client.pk, project.pk, plan["id"])
    return client, project
