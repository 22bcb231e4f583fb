"""Error kinds raised by the billing pipeline.

Each error carries the HTTP status the API layer should answer with, a
human-readable message and optional structured details.
"""


class BillingError(Exception):
    status_code = 500
    default_message = "Billing operation failed"

    def __init__(self, message=None, *, details=None, payload=None):
        self.message = message or self.default_message
        self.details = details
        self.payload = payload or {}
        super().__init__(self.message)

    def as_dict(self):
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        body.update(self.payload)
        return body


class ValidationError(BillingError):
    """Malformed input, rejected before any side effect."""

    status_code = 400
    default_message = "Validation failed"


class NotFoundError(BillingError):
    status_code = 404
    default_message = "Not found"


class ConflictError(BillingError):
    """State-machine violation: locked quote, double invoicing, double billing, resend."""

    status_code = 409
    default_message = "Conflict"


class ExternalServiceError(BillingError):
    """Stripe, email or LLM call failed. Local state was not partially committed."""

    status_code = 502
    default_message = "External service request failed"

    def __init__(self, message=None, *, service=None, **kwargs):
        self.service = service
        super().__init__(message, **kwargs)


class ExternalServiceTimeout(ExternalServiceError):
    """The external service could not be reached or did not answer in time."""

    status_code = 504
    default_message = "External service timed out"
