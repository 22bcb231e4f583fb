"""Which projects and expenses can still be billed, and the billed/unbilled flips."""
import logging

from django.utils import timezone

from crm.models import (
    BILLING_STATUS_BILLED,
    BILLING_STATUS_UNBILLED,
    Client,
    Expense,
    Project,
)

from .exceptions import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def get_client_billables(client_id):
    """Completed unbilled projects and every unbilled expense for one client."""
    if not Client.objects.filter(pk=client_id).exists():
        raise NotFoundError("Client not found")

    projects = Project.objects.filter(
        client_id=client_id,
        status=Project.STATUS_COMPLETED,
        billing_status=BILLING_STATUS_UNBILLED,
    ).order_by("-updated_at", "-id")
    expenses = Expense.objects.filter(
        client_id=client_id,
        billing_status=BILLING_STATUS_UNBILLED,
    ).select_related("project").order_by("-date", "-id")
    return {"projects": list(projects), "expenses": list(expenses)}


def _expense_label(expense):
    return f"{expense.category}: {expense.description}"


def ensure_unbilled(project_ids, expense_ids, *, lock=False):
    """Raise ConflictError naming every referenced item that is already billed.

    With ``lock`` the rows are locked with SELECT ... FOR UPDATE, so the
    caller must already be inside a transaction.
    """
    project_ids = list(project_ids or [])
    expense_ids = list(expense_ids or [])

    projects = Project.objects.filter(pk__in=project_ids)
    expenses = Expense.objects.filter(pk__in=expense_ids)
    if lock:
        projects = projects.select_for_update()
        expenses = expenses.select_for_update()
    projects = list(projects)
    expenses = list(expenses)

    missing_projects = sorted(set(project_ids) - {p.pk for p in projects})
    missing_expenses = sorted(set(expense_ids) - {e.pk for e in expenses})
    if missing_projects or missing_expenses:
        details = {}
        if missing_projects:
            details["billable_project_ids"] = [f"Unknown project id {pk}" for pk in missing_projects]
        if missing_expenses:
            details["billable_expense_ids"] = [f"Unknown expense id {pk}" for pk in missing_expenses]
        raise ValidationError(details=details)

    conflicts = []
    for project in projects:
        if project.billing_status != BILLING_STATUS_UNBILLED:
            conflicts.append({"type": "project", "id": project.pk, "name": project.name})
    for expense in expenses:
        if expense.billing_status != BILLING_STATUS_UNBILLED:
            conflicts.append({"type": "expense", "id": expense.pk, "name": _expense_label(expense)})

    if conflicts:
        names = ", ".join(item["name"] for item in conflicts)
        raise ConflictError(
            f"Some items are already billed: {names}",
            payload={"conflicts": conflicts},
        )


def mark_billables_billed(mirror):
    """Point the quote's still-unbilled items at ``mirror``. Returns (projects, expenses) counts."""
    quote = mirror.quote
    now = timezone.now()
    projects = Project.objects.filter(
        pk__in=quote.billable_project_ids or [],
        billing_status=BILLING_STATUS_UNBILLED,
    ).update(billing_status=BILLING_STATUS_BILLED, billed_invoice=mirror, updated_at=now)
    expenses = Expense.objects.filter(
        pk__in=quote.billable_expense_ids or [],
        billing_status=BILLING_STATUS_UNBILLED,
    ).update(billing_status=BILLING_STATUS_BILLED, billed_invoice=mirror, updated_at=now)
    logger.info(
        "Invoice %s: marked %s projects and %s expenses billed",
        mirror.pk,
        projects,
        expenses,
    )
    return projects, expenses


def release_billables(mirror):
    """Return every item billed under ``mirror`` to the unbilled pool."""
    now = timezone.now()
    projects = Project.objects.filter(billed_invoice=mirror).update(
        billing_status=BILLING_STATUS_UNBILLED,
        billed_invoice=None,
        updated_at=now,
    )
    expenses = Expense.objects.filter(billed_invoice=mirror).update(
        billing_status=BILLING_STATUS_UNBILLED,
        billed_invoice=None,
        updated_at=now,
    )
    logger.info(
        "Invoice %s: released %s projects and %s expenses back to unbilled",
        mirror.pk,
        projects,
        expenses,
    )
    return projects, expenses
