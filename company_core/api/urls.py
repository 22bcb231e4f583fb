# api/urls.py
from django.urls import path, include
from rest_framework.authtoken.views import obtain_auth_token
from rest_framework.routers import DefaultRouter
from .views import (
    ClientViewSet,
    ExpenseViewSet,
    InvoiceViewSet,
    NoteViewSet,
    ProjectViewSet,
    QuoteViewSet,
    SubscriptionViewSet,
    TaskViewSet,
    external_lead,
    stripe_webhook,
)

router = DefaultRouter()
router.register(r'clients', ClientViewSet)
router.register(r'projects', ProjectViewSet)
router.register(r'tasks', TaskViewSet)
router.register(r'expenses', ExpenseViewSet)
router.register(r'notes', NoteViewSet)
router.register(r'subscriptions', SubscriptionViewSet)
router.register(r'quotes', QuoteViewSet)
router.register(r'invoices', InvoiceViewSet)

urlpatterns = [
    path('auth/login-token/', obtain_auth_token, name='api_token_auth'),
    path('stripe/webhook/', stripe_webhook, name='stripe_webhook'),
    path('external/lead/', external_lead, name='external_lead'),
    path('', include(router.urls)),
]
