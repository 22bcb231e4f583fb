from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models


BILLING_STATUS_UNBILLED = "unbilled"
BILLING_STATUS_BILLED = "billed"
BILLING_STATUS_CHOICES = [
    (BILLING_STATUS_UNBILLED, "Unbilled"),
    (BILLING_STATUS_BILLED, "Billed"),
]


class Client(models.Model):
    STATUS_ACTIVE = "active"
    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        ("inactive", "Inactive"),
        ("at_risk", "At risk"),
        ("churned", "Churned"),
    ]

    name = models.CharField(max_length=200)
    email = models.EmailField(null=True, blank=True)
    billing_email = models.EmailField(
        null=True,
        blank=True,
        help_text="Preferred address for invoices. Falls back to the general email.",
    )
    phone = models.CharField(max_length=40, null=True, blank=True)
    website = models.URLField(null=True, blank=True)
    industry = models.CharField(max_length=100, null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    health_score = models.PositiveSmallIntegerField(
        default=100,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
    )
    stripe_customer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Cached Stripe customer so repeat invoices reuse it.",
    )
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="clients",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return self.name

    @property
    def invoice_recipient(self):
        """Billing email first, general email otherwise."""
        return (self.billing_email or "").strip() or (self.email or "").strip() or None


class Project(models.Model):
    TYPE_CHOICES = [
        ("Website Build", "Website Build"),
        ("Automation Build", "Automation Build"),
        ("Custom", "Custom"),
    ]
    STATUS_COMPLETED = "completed"
    STATUS_CHOICES = [
        ("planning", "Planning"),
        ("in_progress", "In progress"),
        ("review", "Review"),
        (STATUS_COMPLETED, "Completed"),
        ("on_hold", "On hold"),
        ("at_risk", "At risk"),
    ]

    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name="projects")
    name = models.CharField(max_length=200)
    description = models.TextField(null=True, blank=True)
    type = models.CharField(max_length=40, choices=TYPE_CHOICES, default="Custom")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="planning")
    budget = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    start_date = models.DateField(null=True, blank=True)
    due_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    billing_status = models.CharField(
        max_length=20,
        choices=BILLING_STATUS_CHOICES,
        default=BILLING_STATUS_UNBILLED,
        db_index=True,
    )
    billed_invoice = models.ForeignKey(
        "billing.InvoiceMirror",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="billed_projects",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-updated_at"]

    def __str__(self):
        return self.name


class Task(models.Model):
    STATUS_CHOICES = [
        ("todo", "To do"),
        ("in_progress", "In progress"),
        ("done", "Done"),
    ]
    PRIORITY_CHOICES = [
        ("low", "Low"),
        ("medium", "Medium"),
        ("high", "High"),
    ]

    title = models.CharField(max_length=200)
    description = models.TextField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="todo")
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default="medium")
    due_date = models.DateField(null=True, blank=True)
    client = models.ForeignKey(Client, on_delete=models.CASCADE, null=True, blank=True, related_name="tasks")
    project = models.ForeignKey(Project, on_delete=models.CASCADE, null=True, blank=True, related_name="tasks")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["due_date", "id"]

    def __str__(self):
        return self.title


class Expense(models.Model):
    POLICY_AT_COST = "pass_through_at_cost"
    POLICY_MARKUP = "markup_percent"
    POLICY_ABSORBED = "absorbed"
    PASS_THROUGH_CHOICES = [
        (POLICY_AT_COST, "Pass through at cost"),
        (POLICY_MARKUP, "Pass through with markup"),
        (POLICY_ABSORBED, "Absorbed (not billed)"),
    ]
    WHO_PAID_CHOICES = [
        ("you_paid", "We paid"),
        ("client_paid", "Client paid"),
    ]

    category = models.CharField(max_length=100)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    description = models.CharField(max_length=255)
    vendor = models.CharField(max_length=100, null=True, blank=True)
    date = models.DateField()
    who_paid = models.CharField(max_length=20, choices=WHO_PAID_CHOICES, default="you_paid")
    pass_through_policy = models.CharField(
        max_length=30,
        choices=PASS_THROUGH_CHOICES,
        default=POLICY_AT_COST,
    )
    markup_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal("0.00"),
        validators=[MinValueValidator(Decimal("0.00"))],
    )
    client = models.ForeignKey(Client, on_delete=models.CASCADE, null=True, blank=True, related_name="expenses")
    project = models.ForeignKey(Project, on_delete=models.SET_NULL, null=True, blank=True, related_name="expenses")
    billing_status = models.CharField(
        max_length=20,
        choices=BILLING_STATUS_CHOICES,
        default=BILLING_STATUS_UNBILLED,
        db_index=True,
    )
    billed_invoice = models.ForeignKey(
        "billing.InvoiceMirror",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="billed_expenses",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-date", "-id"]

    def __str__(self):
        return f"{self.category}: {self.description}"


class Note(models.Model):
    content = models.TextField()
    client = models.ForeignKey(Client, on_delete=models.CASCADE, null=True, blank=True, related_name="notes")
    project = models.ForeignKey(Project, on_delete=models.CASCADE, null=True, blank=True, related_name="notes")
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return (self.content or "")[:50]


class Subscription(models.Model):
    CADENCE_MONTHLY = "monthly"
    CADENCE_CHOICES = [
        (CADENCE_MONTHLY, "Monthly"),
        ("quarterly", "Quarterly"),
        ("annual", "Annual"),
    ]
    STATUS_ACTIVE = "active"
    STATUS_PAUSED = "paused"
    STATUS_CANCELLED = "cancelled"
    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_PAUSED, "Paused"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name="subscriptions")
    name = models.CharField(max_length=200)
    description = models.TextField(null=True, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    billing_cadence = models.CharField(max_length=20, choices=CADENCE_CHOICES, default=CADENCE_MONTHLY)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    start_date = models.DateField()
    next_billing = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    stripe_subscription_id = models.CharField(max_length=255, null=True, blank=True, unique=True)
    stripe_customer_id = models.CharField(max_length=255, null=True, blank=True)
    plan_id = models.CharField(max_length=50, null=True, blank=True)
    plan_tier = models.CharField(max_length=50, null=True, blank=True)
    addons = models.CharField(max_length=255, null=True, blank=True)
    setup_paid = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.name} ({self.get_billing_cadence_display()})"
