"""Service catalog used to anchor quote pricing. Amounts are whole US dollars."""

PLANS = [
    {
        "id": "foundation",
        "name": "Foundation System",
        "setup_fee": 3500,
        "monthly_fee": 197,
        "support_minutes": 60,
        "outcomes": "Capture every lead, route instantly, book automatically.",
        "includes": [
            "Missed-call capture",
            "Instant lead routing",
            "Basic CRM / pipeline",
            "Calendar booking & reminders",
            "Basic reporting",
        ],
    },
    {
        "id": "momentum",
        "name": "Momentum System",
        "setup_fee": 6500,
        "monthly_fee": 297,
        "support_minutes": 120,
        "outcomes": "Nurture leads on autopilot and close more deals.",
        "includes": [
            "Everything in Foundation",
            "Smart nurturing (SMS / email)",
            "Tagging & source tracking",
            "Staff assignment rules",
            "Hot lead escalation",
            "Monthly optimization",
        ],
    },
    {
        "id": "command",
        "name": "Command System",
        "setup_fee": None,
        "monthly_fee": None,
        "setup_tiers": [
            {"label": "Standard", "fee": 9500},
            {"label": "Advanced", "fee": 11000},
            {"label": "Enterprise", "fee": 12500},
        ],
        "monthly_tiers": [
            {"label": "Standard", "fee": 497},
            {"label": "Advanced", "fee": 647},
            {"label": "Enterprise", "fee": 797},
        ],
        "support_minutes": 240,
        "outcomes": "Full operational command center with strategic planning.",
        "includes": [
            "Everything in Momentum",
            "Multi-workflow ops automations",
            "Advanced dashboards",
            "Quarterly roadmap planning",
        ],
    },
]

ADDONS = [
    {
        "id": "ai-voice",
        "name": "AI Voice Receptionist",
        "setup_fee": 2500,
        "monthly_tiers": [
            {"label": "Low", "fee": 250, "desc": "Up to 100 calls/mo"},
            {"label": "Med", "fee": 450, "desc": "Up to 500 calls/mo"},
            {"label": "High", "fee": 650, "desc": "Unlimited calls"},
        ],
    },
    {
        "id": "billing-automation",
        "name": "Billing Automation",
        "setup_fee": 1500,
        "monthly_tiers": [
            {"label": "Low", "fee": 99, "desc": "Basic invoicing"},
            {"label": "Med", "fee": 149, "desc": "+ Payment reminders"},
            {"label": "High", "fee": 199, "desc": "+ Advanced reporting"},
        ],
    },
    {
        "id": "managed-website",
        "name": "Managed Website Build",
        "setup_tiers": [
            {"label": "Low", "fee": 5500, "desc": "5-page site"},
            {"label": "Med", "fee": 7500, "desc": "10-page + blog"},
            {"label": "High", "fee": 9500, "desc": "Full custom site"},
        ],
        "monthly_tiers": [
            {"label": "Low", "fee": 197, "desc": "Hosting + minor edits"},
            {"label": "Med", "fee": 297, "desc": "+ Monthly updates"},
            {"label": "High", "fee": 397, "desc": "+ SEO & content"},
        ],
    },
    {
        "id": "crm-migration",
        "name": "CRM Migration / Rebuild",
        "one_time_tiers": [
            {"label": "Low", "fee": 2000, "desc": "Simple migration"},
            {"label": "Med", "fee": 4000, "desc": "Complex migration"},
            {"label": "High", "fee": 6000, "desc": "Full rebuild"},
        ],
    },
    {
        "id": "extra-support",
        "name": "Extra Support Hours",
        "hourly_rate": 125,
        "monthly_bundle": {"hours": 3, "fee": 300},
    },
]

DISCOUNTS = {
    "prepay_setup_percent": 5,
    "annual_prepay_percent": 10,
}

# Fallback ranges when a project matches no plan and carries no budget.
PROJECT_TYPE_RANGES = {
    "Website Build": (2500, 9500),
    "Automation Build": (1500, 7500),
    "Custom": (1000, 10000),
}

_FOUNDATION_TASKS = [
    "Setup CRM & pipeline",
    "Configure lead routing",
    "Setup calendar booking & reminders",
    "Configure basic reporting",
]
_MOMENTUM_TASKS = _FOUNDATION_TASKS + [
    "Setup SMS/email nurturing sequences",
    "Configure tagging & source tracking",
    "Setup staff assignment rules",
    "Configure hot lead escalation",
]

# Onboarding checklist created for a new lead, keyed by plan id.
PLAN_TASKS = {
    "foundation": _FOUNDATION_TASKS + ["Launch & QA"],
    "momentum": _MOMENTUM_TASKS + ["Monthly optimization kickoff", "Launch & QA"],
    "command": _MOMENTUM_TASKS + [
        "Setup multi-workflow ops automations",
        "Build advanced dashboards",
        "Quarterly roadmap planning session",
        "Monthly optimization kickoff",
        "Launch & QA",
    ],
}


def _first_tier_fee(tiers):
    return tiers[0]["fee"] if tiers else 0


def get_plan(plan_id):
    return next((plan for plan in PLANS if plan["id"] == plan_id), None)


def get_addon(addon_id):
    return next((addon for addon in ADDONS if addon["id"] == addon_id), None)


def plan_setup_fee(plan, tier=None):
    """Flat setup fee, or the fee of the tier whose label matches ``tier``."""
    if plan.get("setup_fee") is not None:
        return plan["setup_fee"]
    for entry in plan.get("setup_tiers") or []:
        if tier and entry["label"] == tier:
            return entry["fee"]
    return None


def get_plan_pricing(plan_name):
    """Fuzzy-match a plan by id or name. Returns (plan, setup_fee, monthly_fee) or None."""
    lower = (plan_name or "").lower()
    if not lower:
        return None
    for plan in PLANS:
        if plan["id"] in lower or plan["name"].lower() in lower:
            setup_fee = plan.get("setup_fee")
            if setup_fee is None:
                setup_fee = _first_tier_fee(plan.get("setup_tiers"))
            monthly_fee = plan.get("monthly_fee")
            if monthly_fee is None:
                monthly_fee = _first_tier_fee(plan.get("monthly_tiers"))
            return plan, setup_fee, monthly_fee
    return None


def get_addon_pricing(addon_name):
    lower = (addon_name or "").lower()
    if not lower:
        return None
    for addon in ADDONS:
        if addon["id"] in lower or addon["name"].lower() in lower:
            return addon
    return None


def _describe_tiers(tiers):
    parts = []
    for tier in tiers:
        label = f"{tier['label']} ${tier['fee']}"
        if tier.get("desc"):
            label += f" ({tier['desc']})"
        parts.append(label)
    return ", ".join(parts)


def describe_catalog():
    """Deterministic plain-text rendering of the catalog for prompts."""
    lines = ["Plans:"]
    for plan in PLANS:
        if plan.get("setup_fee") is not None:
            fees = f"setup ${plan['setup_fee']}, monthly ${plan['monthly_fee']}"
        else:
            fees = (
                f"setup tiers: {_describe_tiers(plan.get('setup_tiers') or [])}; "
                f"monthly tiers: {_describe_tiers(plan.get('monthly_tiers') or [])}"
            )
        lines.append(f"- {plan['name']} (id: {plan['id']}): {fees}")

    lines.append("Add-ons:")
    for addon in ADDONS:
        parts = []
        if addon.get("setup_fee") is not None:
            parts.append(f"setup ${addon['setup_fee']}")
        if addon.get("setup_tiers"):
            parts.append(f"setup tiers: {_describe_tiers(addon['setup_tiers'])}")
        if addon.get("monthly_tiers"):
            parts.append(f"monthly tiers: {_describe_tiers(addon['monthly_tiers'])}")
        if addon.get("one_time_tiers"):
            parts.append(f"one-time tiers: {_describe_tiers(addon['one_time_tiers'])}")
        if addon.get("hourly_rate") is not None:
            parts.append(f"${addon['hourly_rate']}/hour")
        if addon.get("monthly_bundle"):
            bundle = addon["monthly_bundle"]
            parts.append(f"{bundle['hours']} hours/month bundle ${bundle['fee']}")
        lines.append(f"- {addon['name']} (id: {addon['id']}): {'; '.join(parts)}")

    lines.append("Discounts:")
    lines.append(f"- Prepaid setup: {DISCOUNTS['prepay_setup_percent']}% off setup")
    lines.append(f"- Annual prepay: {DISCOUNTS['annual_prepay_percent']}% off monthly fees")

    lines.append("Typical ranges when no plan or budget applies:")
    for project_type, (low, high) in PROJECT_TYPE_RANGES.items():
        lines.append(f"- {project_type}: ${low}-${high}")
    return "\n".join(lines)
