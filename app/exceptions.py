"""
Error taxonomy of the payments core.

Every error carries the HTTP status it maps to, so the API registers a
single handler for PaymentCoreError in main.py.
"""


class PaymentCoreError(Exception):
    """Base exception for all payments-core errors."""

    status_code: int = 500
    message: str = "Internal payments error"

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.message
        super().__init__(self.message)


class NotFoundError(PaymentCoreError):
    """A merchant or transaction does not exist for the tenant."""

    status_code = 404
    message = "Resource not found"


class InvalidStateError(PaymentCoreError):
    """The entity is not in a state from which the operation is legal."""

    status_code = 409
    message = "Operation not allowed in the current state"


class InvalidArgumentError(PaymentCoreError):
    """The request is well-formed but violates a business rule."""

    status_code = 400
    message = "Invalid argument"


class TransientError(PaymentCoreError):
    """Store or collaborator I/O failed; the caller may retry."""

    status_code = 503
    message = "Temporary storage failure"
