import json
import logging
import math
import os
import re
from functools import lru_cache

import openai
from django.conf import settings
from openai import OpenAI

from .exceptions import ExternalServiceError, ExternalServiceTimeout
from .pricing import LINE_KINDS, QuoteLine
from .pricing_catalog import describe_catalog

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$")

SYSTEM_PROMPT = """You are a pricing assistant for a digital services agency. Given completed projects and expenses for a client, generate structured pricing line items.

Service catalog:
{catalog}

Rules:
- Each project should become a quote line with kind "project"
- Each expense should become a quote line with kind "expense"
- If a project name matches a catalog plan, use that plan's exact setup fee (and add a retainer line for its monthly fee)
- Otherwise use the project budget as the fixed price if one is given
- Otherwise price within the typical range for the project type
- For expenses with pass_through_at_cost policy, use the exact expense amount
- For expenses with markup_percent policy, apply the markup to the amount
- Skip expenses with the absorbed policy
- All amounts must be in USD cents (integer). $100 = 10000 cents
- quantity should be 1 for fixed-price items
- unit_label should be "fixed" for project deliverables, or describe the unit
- group_key should be the project name or expense category
- Be reasonable with pricing - don't inflate or deflate significantly

You MUST respond with ONLY a valid JSON array of quote line objects. No markdown, no explanation, just the JSON array.

Each object must have exactly these fields:
- kind: "project" | "expense" | "retainer" | "discount" | "adjustment"
- source_id: the original item ID (string) or null
- title: descriptive title (string)
- description: optional detail (string or omit)
- quantity: number (>= 0)
- unit_label: string (e.g. "fixed", "hours", "months")
- unit_amount_cents: integer (>= 0)
- taxable: false
- group_key: string for grouping
- notes_internal: optional internal note (string or omit)
- notes_client: optional client-facing note (string or omit)"""


def _resolve_openai_setting(name):
    value = getattr(settings, name, None) or os.getenv(name)
    if isinstance(value, str):
        value = value.strip()
    return value or None


@lru_cache(maxsize=1)
def _openai_client():
    client_kwargs = {"timeout": float(getattr(settings, "OPENAI_TIMEOUT_SECONDS", 30))}
    api_key = _resolve_openai_setting("OPENAI_API_KEY")
    if api_key:
        client_kwargs["api_key"] = api_key
    base_url = _resolve_openai_setting("OPENAI_BASE_URL")
    if base_url:
        client_kwargs["base_url"] = base_url
    org = _resolve_openai_setting("OPENAI_ORG")
    if org:
        client_kwargs["organization"] = org
    project = _resolve_openai_setting("OPENAI_PROJECT")
    if project:
        client_kwargs["project"] = project
    return OpenAI(**client_kwargs)


def _describe_project(project):
    parts = [
        f"- ID: {project.get('id')}",
        f'Name: "{project.get("name")}"',
        f"Type: {project.get('type') or 'Custom'}",
    ]
    if project.get("budget"):
        parts.append(f"Budget: ${project['budget']}")
    if project.get("description"):
        parts.append(f"Description: {project['description']}")
    tasks = [t for t in (project.get("tasks") or []) if t]
    if tasks:
        parts.append(f"Tasks: {'; '.join(tasks)}")
    return ", ".join(parts)


def _describe_expense(expense):
    parts = [
        f"- ID: {expense.get('id')}",
        f"Category: {expense.get('category')}",
        f"Amount: ${expense.get('amount')}",
        f'Description: "{expense.get("description")}"',
    ]
    if expense.get("vendor"):
        parts.append(f"Vendor: {expense['vendor']}")
    parts.append(f"Policy: {expense.get('pass_through_policy')}")
    if expense.get("markup_percent") and float(expense["markup_percent"]) > 0:
        parts.append(f"Markup: {expense['markup_percent']}%")
    return ", ".join(parts)


def build_pricing_prompt(client_name, projects, expenses):
    """Return (system, user) prompt strings. Deterministic for the same input."""
    project_lines = "\n".join(_describe_project(p) for p in projects) or "No projects"
    expense_lines = "\n".join(_describe_expense(e) for e in expenses) or "No expenses"
    user_prompt = (
        f'Generate pricing for client "{client_name}":\n\n'
        f"Projects:\n{project_lines}\n\n"
        f"Expenses:\n{expense_lines}\n\n"
        "Return ONLY the JSON array."
    )
    return SYSTEM_PROMPT.format(catalog=describe_catalog()), user_prompt


def _pick(raw, *keys):
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    # json.loads accepts NaN and Infinity.
    if isinstance(value, float) and math.isfinite(value):
        return value
    return None


def normalize_suggested_line(raw):
    """Coerce one model-produced object into a QuoteLine."""
    kind = _pick(raw, "kind")
    if kind not in LINE_KINDS:
        kind = "project"
    quantity = _as_number(raw.get("quantity"))
    if quantity is None or quantity < 0:
        quantity = 1
    unit_amount = _as_number(_pick(raw, "unit_amount_cents", "unitAmountCents"))
    unit_amount_cents = max(0, int(round(unit_amount))) if unit_amount is not None else 0
    source_id = _pick(raw, "source_id", "sourceId")
    return QuoteLine(
        kind=kind,
        source_id=str(source_id) if source_id is not None else None,
        title=str(_pick(raw, "title") or "Untitled"),
        description=_pick(raw, "description"),
        quantity=quantity,
        unit_label=str(_pick(raw, "unit_label", "unitLabel") or "fixed"),
        unit_amount_cents=unit_amount_cents,
        taxable=False,
        group_key=str(_pick(raw, "group_key", "groupKey") or "General"),
        notes_internal=_pick(raw, "notes_internal", "notesInternal"),
        notes_client=_pick(raw, "notes_client", "notesClient"),
    )


def parse_suggestion(content):
    """Parse the completion text into QuoteLines. Anything but a JSON array is an error."""
    cleaned = (content or "").strip()
    if not cleaned:
        raise ExternalServiceError("No response from AI", service="openai")
    if cleaned.startswith("```"):
        cleaned = _FENCE_PATTERN.sub("", cleaned).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ExternalServiceError("AI response was not valid JSON", service="openai") from exc
    if not isinstance(parsed, list):
        raise ExternalServiceError("AI response is not an array", service="openai")
    if not all(isinstance(item, dict) for item in parsed):
        raise ExternalServiceError("AI response contains a non-object item", service="openai")
    return [normalize_suggested_line(item) for item in parsed]


def suggest_pricing(client_name, projects, expenses, openai_client=None):
    system_prompt, user_prompt = build_pricing_prompt(client_name, projects, expenses)
    model = getattr(settings, "OPENAI_PRICING_MODEL", None) or "gpt-4o-mini"
    try:
        client = openai_client or _openai_client()
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=0.3,
            max_tokens=2000,
        )
    except openai.APITimeoutError as exc:
        logger.warning("Pricing suggestion timed out for %s: %s", client_name, exc)
        raise ExternalServiceTimeout("AI pricing request timed out", service="openai") from exc
    except openai.OpenAIError as exc:
        logger.error("Pricing suggestion failed for %s: %s", client_name, exc)
        raise ExternalServiceError("Failed to suggest pricing", service="openai") from exc

    choices = getattr(response, "choices", None) or []
    content = choices[0].message.content if choices else None
    lines = parse_suggestion(content)
    logger.info("AI suggested %s lines for %s", len(lines), client_name)
    return lines
