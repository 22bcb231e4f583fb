"""Quote line schema and deterministic totals. Pure functions, no I/O."""
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP

LINE_KINDS = ("project", "expense", "retainer", "discount", "adjustment")
DISCOUNT_KIND = "discount"
DEFAULT_GROUP = "Other"

_CENT = Decimal("1")
_HUNDRED = Decimal("100")


@dataclass
class QuoteLine:
    kind: str
    title: str
    quantity: float
    unit_label: str
    unit_amount_cents: int
    group_key: str
    source_id: str | None = None
    description: str | None = None
    taxable: bool = False
    notes_internal: str | None = None
    notes_client: str | None = None

    @property
    def is_discount(self):
        return self.kind == DISCOUNT_KIND

    @property
    def total_cents(self):
        return line_total_cents(self)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        return cls(
            kind=data["kind"],
            title=data["title"],
            quantity=data["quantity"],
            unit_label=data["unit_label"],
            unit_amount_cents=int(data["unit_amount_cents"]),
            group_key=data.get("group_key") or "",
            source_id=data.get("source_id"),
            description=data.get("description"),
            taxable=bool(data.get("taxable", False)),
            notes_internal=data.get("notes_internal"),
            notes_client=data.get("notes_client"),
        )


@dataclass(frozen=True)
class QuoteTotals:
    subtotal: int
    discount: int
    total: int


def line_total_cents(line):
    """quantity * unit amount, rounded half-up to whole cents."""
    amount = Decimal(str(line.quantity)) * Decimal(int(line.unit_amount_cents))
    return int(amount.quantize(_CENT, rounding=ROUND_HALF_UP))


def compute_totals(lines):
    """Subtotal of non-discount lines, discount magnitude, and total floored at zero."""
    subtotal = 0
    discount = 0
    for line in lines:
        if line.is_discount:
            discount += line_total_cents(line)
        else:
            subtotal += line_total_cents(line)
    return QuoteTotals(subtotal=subtotal, discount=discount, total=max(0, subtotal - discount))


def group_lines_by_key(lines):
    """Stable grouping by ``group_key``; groups and lines keep first-seen order."""
    groups = {}
    for line in lines:
        groups.setdefault(line.group_key or DEFAULT_GROUP, []).append(line)
    return groups


def cents_to_dollars(cents):
    return (Decimal(int(cents)) / _HUNDRED).quantize(Decimal("0.01"))


def dollars_to_cents(dollars):
    if dollars is None:
        return 0
    return int((Decimal(str(dollars)) * _HUNDRED).quantize(_CENT, rounding=ROUND_HALF_UP))


def format_currency(cents):
    amount = cents_to_dollars(cents)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def serialize_lines(lines):
    return [line.to_dict() for line in lines]


def deserialize_lines(raw):
    return [QuoteLine.from_dict(item) for item in (raw or [])]
