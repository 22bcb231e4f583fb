from rest_framework import serializers
from rest_framework.fields import CreateOnlyDefault, CurrentUserDefault, HiddenField

from billing.models import InvoiceMirror, Quote
from billing.pricing import LINE_KINDS, QuoteLine
from crm.models import Client, Expense, Note, Project, Subscription, Task


class ClientSerializer(serializers.ModelSerializer):
    created_by = HiddenField(default=CreateOnlyDefault(CurrentUserDefault()))

    class Meta:
        model = Client
        fields = '__all__'
        read_only_fields = ('stripe_customer_id',)


class ProjectSerializer(serializers.ModelSerializer):
    class Meta:
        model = Project
        fields = '__all__'
        # Only the billing pipeline moves work between unbilled and billed.
        read_only_fields = ('billing_status', 'billed_invoice')


class TaskSerializer(serializers.ModelSerializer):
    class Meta:
        model = Task
        fields = '__all__'


class ExpenseSerializer(serializers.ModelSerializer):
    class Meta:
        model = Expense
        fields = '__all__'
        read_only_fields = ('billing_status', 'billed_invoice')


class NoteSerializer(serializers.ModelSerializer):
    created_by = HiddenField(default=CreateOnlyDefault(CurrentUserDefault()))

    class Meta:
        model = Note
        fields = '__all__'


class SubscriptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Subscription
        fields = '__all__'
        read_only_fields = ('next_billing', 'stripe_subscription_id', 'stripe_customer_id')


class QuoteLineSerializer(serializers.Serializer):
    kind = serializers.ChoiceField(choices=LINE_KINDS)
    source_id = serializers.CharField(required=False, allow_null=True, default=None)
    title = serializers.CharField()
    description = serializers.CharField(required=False, allow_null=True, allow_blank=True, default=None)
    quantity = serializers.FloatField(min_value=0)
    unit_label = serializers.CharField()
    unit_amount_cents = serializers.IntegerField(min_value=0)
    taxable = serializers.BooleanField(default=False)
    group_key = serializers.CharField(allow_blank=True, default="")
    notes_internal = serializers.CharField(required=False, allow_null=True, allow_blank=True, default=None)
    notes_client = serializers.CharField(required=False, allow_null=True, allow_blank=True, default=None)

    def to_internal_value(self, data):
        return QuoteLine(**super().to_internal_value(data))

    def to_representation(self, instance):
        if isinstance(instance, QuoteLine):
            return instance.to_dict()
        return super().to_representation(instance)


class QuoteUpdateSerializer(serializers.Serializer):
    lines = QuoteLineSerializer(many=True)
    due_date = serializers.DateField(required=False, allow_null=True)
    net_terms_days = serializers.IntegerField(required=False, allow_null=True, min_value=0)
    client_memo = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    internal_memo = serializers.CharField(required=False, allow_null=True, allow_blank=True)


class QuoteCreateSerializer(QuoteUpdateSerializer):
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all())
    billable_project_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), default=list)
    billable_expense_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), default=list)


class InvoiceSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceMirror
        fields = ('id', 'status', 'stripe_invoice_id')


class ClientSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Client
        fields = ('id', 'name', 'email', 'billing_email')


class QuoteSerializer(serializers.ModelSerializer):
    client = ClientSummarySerializer(read_only=True)
    invoice_mirror = serializers.SerializerMethodField()
    totals_cents = serializers.ReadOnlyField()

    class Meta:
        model = Quote
        fields = (
            'id', 'client', 'created_by', 'lines', 'subtotal', 'discount', 'total',
            'totals_cents', 'status', 'due_date', 'net_terms_days', 'client_memo',
            'internal_memo', 'billable_project_ids', 'billable_expense_ids',
            'invoice_mirror', 'created_at', 'updated_at',
        )
        read_only_fields = fields

    def get_invoice_mirror(self, obj):
        try:
            mirror = obj.invoice_mirror
        except InvoiceMirror.DoesNotExist:
            return None
        return InvoiceSummarySerializer(mirror).data


class InvoiceMirrorSerializer(serializers.ModelSerializer):
    client = ClientSummarySerializer(read_only=True)
    invoice_number = serializers.ReadOnlyField()

    class Meta:
        model = InvoiceMirror
        fields = (
            'id', 'invoice_number', 'client', 'quote', 'stripe_invoice_id', 'stripe_customer_id',
            'status', 'hosted_invoice_url', 'finalized_at', 'email_sent_at', 'email_recipient',
            'subtotal', 'total', 'idempotency_key', 'created_at', 'updated_at',
        )
        read_only_fields = fields


class InvoiceCreateSerializer(serializers.Serializer):
    quote = serializers.IntegerField(min_value=1)


class SuggestProjectSerializer(serializers.Serializer):
    id = serializers.CharField()
    name = serializers.CharField()
    type = serializers.CharField()
    description = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    budget = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    tasks = serializers.ListField(child=serializers.CharField(), required=False, default=list)


class SuggestExpenseSerializer(serializers.Serializer):
    id = serializers.CharField()
    category = serializers.CharField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    description = serializers.CharField()
    vendor = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    pass_through_policy = serializers.CharField()
    markup_percent = serializers.DecimalField(max_digits=5, decimal_places=2, default=0)


class SuggestPricingSerializer(serializers.Serializer):
    client_name = serializers.CharField()
    projects = SuggestProjectSerializer(many=True)
    expenses = SuggestExpenseSerializer(many=True, required=False, default=list)


class BillablesSerializer(serializers.Serializer):
    projects = ProjectSerializer(many=True)
    expenses = ExpenseSerializer(many=True)


class LeadAddonSerializer(serializers.Serializer):
    id = serializers.CharField()
    tier = serializers.CharField(required=False, allow_blank=True)


class LeadSerializer(serializers.Serializer):
    plan_id = serializers.CharField()
    plan_tier = serializers.CharField(required=False, allow_blank=True)
    addons = LeadAddonSerializer(many=True, required=False, default=list)
    business_name = serializers.CharField(max_length=200)
    contact_name = serializers.CharField()
    email = serializers.EmailField()
    phone = serializers.CharField(required=False, allow_blank=True, max_length=40)
    industry = serializers.CharField(required=False, allow_blank=True, max_length=100)
    notes = serializers.CharField(required=False, allow_blank=True)
