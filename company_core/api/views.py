# api/views.py
import logging

import stripe
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action, api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from billing.billables import get_client_billables
from billing.exceptions import BillingError
from billing.invoice_email import preview_invoice_email, send_invoice_email
from billing.invoices import create_invoice_from_quote, finalize_invoice, void_invoice
from billing.models import InvoiceMirror, Quote
from billing.pricing import serialize_lines
from billing.pricing_ai import suggest_pricing
from billing.quotes import create_quote, lock_quote, update_quote
from billing.stripe_gateway import construct_webhook_event
from billing.webhooks import handle_stripe_event
from crm.leads import create_lead
from crm.models import Client, Expense, Note, Project, Subscription, Task
from crm.subscriptions import compute_next_billing

from .authentication import ExternalApiKeyAuthentication, HasExternalApiKey
from .serializers import (
    BillablesSerializer,
    ClientSerializer,
    ExpenseSerializer,
    InvoiceCreateSerializer,
    InvoiceMirrorSerializer,
    LeadSerializer,
    NoteSerializer,
    ProjectSerializer,
    QuoteCreateSerializer,
    QuoteSerializer,
    QuoteUpdateSerializer,
    SubscriptionSerializer,
    SuggestPricingSerializer,
    TaskSerializer,
)

logger = logging.getLogger(__name__)


class ClientViewSet(viewsets.ModelViewSet):
    queryset = Client.objects.all()
    serializer_class = ClientSerializer

    @action(detail=True, methods=['get'])
    def billables(self, request, pk=None):
        """Completed unbilled projects and unbilled expenses, ready to quote."""
        serializer = BillablesSerializer(get_client_billables(pk))
        return Response(serializer.data)


class ProjectViewSet(viewsets.ModelViewSet):
    queryset = Project.objects.select_related('client')
    serializer_class = ProjectSerializer

    def get_queryset(self):
        queryset = super().get_queryset()
        client_id = self.request.query_params.get('client')
        if client_id:
            queryset = queryset.filter(client_id=client_id)
        return queryset


class TaskViewSet(viewsets.ModelViewSet):
    queryset = Task.objects.all()
    serializer_class = TaskSerializer


class ExpenseViewSet(viewsets.ModelViewSet):
    queryset = Expense.objects.select_related('client', 'project')
    serializer_class = ExpenseSerializer


class NoteViewSet(viewsets.ModelViewSet):
    queryset = Note.objects.all()
    serializer_class = NoteSerializer


class SubscriptionViewSet(viewsets.ModelViewSet):
    queryset = Subscription.objects.select_related('client')
    serializer_class = SubscriptionSerializer

    def perform_create(self, serializer):
        data = serializer.validated_data
        serializer.save(next_billing=compute_next_billing(data['start_date'], data.get('billing_cadence')))


class QuoteViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """Quotes are created, edited while proposed, and locked. Never deleted."""

    queryset = Quote.objects.select_related('client', 'invoice_mirror')
    serializer_class = QuoteSerializer

    def create(self, request):
        serializer = QuoteCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        quote = create_quote(
            data['client'],
            data['lines'],
            created_by=request.user,
            due_date=data.get('due_date'),
            net_terms_days=data.get('net_terms_days'),
            client_memo=data.get('client_memo'),
            internal_memo=data.get('internal_memo'),
            billable_project_ids=data['billable_project_ids'],
            billable_expense_ids=data['billable_expense_ids'],
        )
        return Response(QuoteSerializer(quote).data, status=status.HTTP_201_CREATED)

    def update(self, request, pk=None):
        serializer = QuoteUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        lines = data.pop('lines')
        quote = update_quote(pk, lines, **data)
        return Response(QuoteSerializer(quote).data)

    @action(detail=True, methods=['post'])
    def lock(self, request, pk=None):
        quote = lock_quote(pk)
        return Response(QuoteSerializer(quote).data)

    @action(detail=False, methods=['post'])
    def suggest(self, request):
        serializer = SuggestPricingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        lines = suggest_pricing(data['client_name'], data['projects'], data['expenses'])
        return Response({'lines': serialize_lines(lines)})


class InvoiceViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = InvoiceMirror.objects.select_related('client', 'quote')
    serializer_class = InvoiceMirrorSerializer

    def create(self, request):
        serializer = InvoiceCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        mirror = create_invoice_from_quote(serializer.validated_data['quote'])
        return Response(InvoiceMirrorSerializer(mirror).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'])
    def finalize(self, request, pk=None):
        mirror = finalize_invoice(pk)
        return Response(InvoiceMirrorSerializer(mirror).data)

    @action(detail=True, methods=['post'])
    def void(self, request, pk=None):
        mirror = void_invoice(pk)
        return Response(InvoiceMirrorSerializer(mirror).data)

    @action(detail=True, methods=['post'], url_path='send-email')
    def send_email(self, request, pk=None):
        mirror = send_invoice_email(pk)
        return Response(InvoiceMirrorSerializer(mirror).data)

    @action(detail=True, methods=['get'], url_path='email-preview')
    def email_preview(self, request, pk=None):
        return Response(preview_invoice_email(pk))


@csrf_exempt
@require_POST
def stripe_webhook(request):
    payload = request.body
    sig_header = request.META.get('HTTP_STRIPE_SIGNATURE', '')
    if not sig_header:
        logger.error("Stripe webhook without Stripe-Signature header")
        return JsonResponse({'error': 'Missing signature'}, status=400)

    try:
        event = construct_webhook_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.error("Invalid Stripe webhook signature: %s", e)
        return JsonResponse({'error': 'Invalid signature'}, status=400)
    except ValueError as e:
        logger.error("Invalid Stripe webhook payload: %s", e)
        return JsonResponse({'error': 'Invalid payload'}, status=400)
    except BillingError as e:
        logger.error("Stripe webhook rejected: %s", e.message)
        return JsonResponse(e.as_dict(), status=e.status_code)

    logger.info("Verified Stripe event %s (%s)", event['id'], event['type'])
    try:
        kind = handle_stripe_event(event)
    except Exception:
        # Non-2xx makes Stripe redeliver; every handler is replay-safe.
        logger.exception("Error processing Stripe event %s", event['id'])
        return JsonResponse({'error': 'Handler error'}, status=500)

    return JsonResponse({'received': True, 'handled': kind.value})


@api_view(['POST'])
@authentication_classes([ExternalApiKeyAuthentication])
@permission_classes([HasExternalApiKey])
def external_lead(request):
    """Lead intake for the public pricing site."""
    serializer = LeadSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    client, project = create_lead(serializer.validated_data)
    return Response({'client_id': client.pk, 'project_id': project.pk}, status=status.HTTP_201_CREATED)
