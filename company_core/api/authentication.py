import hmac

from django.conf import settings
from django.contrib.auth.models import AnonymousUser
from rest_framework import exceptions
from rest_framework.authentication import BaseAuthentication
from rest_framework.permissions import BasePermission


class ExternalApiKeyAuthentication(BaseAuthentication):
    """Shared-secret auth for the public intake site (``X-Api-Key`` header)."""

    header = 'X-Api-Key'

    def authenticate(self, request):
        provided = request.META.get('HTTP_X_API_KEY')
        if not provided:
            return None
        expected = settings.EXTERNAL_API_KEY
        if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
            raise exceptions.AuthenticationFailed('Unauthorized')
        return AnonymousUser(), provided

    def authenticate_header(self, request):
        return self.header


class HasExternalApiKey(BasePermission):
    def has_permission(self, request, view):
        return request.auth is not None
