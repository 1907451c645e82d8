"""
Domain errors raised by the business modules.

The API layer maps them to HTTP status codes in one exception handler.
"""


class BusinessRuleError(Exception):
    """Base class for domain errors (HTTP 400)."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(BusinessRuleError):
    """Input rejected by a business rule."""

    status_code = 400


class NotFoundError(BusinessRuleError):
    """Row absent in the current tenant."""

    status_code = 404


class ConflictError(BusinessRuleError):
    """Row is in a state that forbids the operation (locked entry, issued invoice, duplicate code)."""

    status_code = 409


class PermissionDeniedError(BusinessRuleError):
    status_code = 403
