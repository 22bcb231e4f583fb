from rest_framework import exceptions
from rest_framework.response import Response
from rest_framework.views import exception_handler

from billing.exceptions import BillingError


def billing_exception_handler(exc, context):
    """Render billing and DRF errors as ``{"error": ..., "details": ...}``."""
    if isinstance(exc, BillingError):
        return Response(exc.as_dict(), status=exc.status_code)

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, exceptions.ValidationError):
        response.data = {"error": "Validation failed", "details": response.data}
    elif isinstance(response.data, dict) and "detail" in response.data:
        response.data = {"error": str(response.data["detail"])}
    return response
