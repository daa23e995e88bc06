# taskmarket/errors.py
"""Error taxonomy shared by the billing core and the HTTP layer.

Every error carries a machine code, an HTTP status and a ``reason`` that
tells the caller which action to take:

* ``invalid_input``  - fix the form / request
* ``nothing_to_pay`` - refresh the cart, the invoices were billed elsewhere
* ``provider_error`` - retry the payment
* ``not_found`` / ``forbidden`` / ``conflict``
"""
from __future__ import annotations

from typing import Any


class MarketError(Exception):
    code = "MARKET_ERROR"
    status_code = 400
    reason = "invalid_input"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "reason": self.reason,
            "message": self.message,
            "details": self.details,
        }


# --- Validation ---

class ValidationFailed(MarketError):
    code = "VALIDATION_FAILED"


class UnsupportedPaymentMethod(ValidationFailed):
    code = "UNSUPPORTED_PAYMENT_METHOD"


# --- Lookups ---

class NotFound(MarketError):
    code = "NOT_FOUND"
    status_code = 404
    reason = "not_found"


class InvoiceNotFound(NotFound):
    code = "INVOICE_NOT_FOUND"


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"


class AssignmentNotFound(NotFound):
    code = "ASSIGNMENT_NOT_FOUND"


class StatusNotFound(NotFound):
    code = "STATUS_NOT_FOUND"


class NotAllowed(MarketError):
    code = "NOT_ALLOWED"
    status_code = 403
    reason = "forbidden"


# --- Lost races ---

class AlreadyBilled(MarketError):
    code = "ALREADY_BILLED"
    status_code = 409
    reason = "nothing_to_pay"


class NoBillableInvoices(MarketError):
    code = "NO_BILLABLE_INVOICES"
    status_code = 409
    reason = "nothing_to_pay"


class AlreadyPaid(MarketError):
    code = "ALREADY_PAID"
    status_code = 409
    reason = "nothing_to_pay"


# --- Provider ---

class ProviderError(MarketError):
    code = "PROVIDER_ERROR"
    status_code = 502
    reason = "provider_error"
    retryable = False


class ProviderUnavailable(ProviderError):
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    retryable = True


class PaymentIncomplete(ProviderError):
    """The provider has not (yet) completed the capture."""
    code = "PAYMENT_INCOMPLETE"
    status_code = 409
    retryable = True


class AmountMismatch(ProviderError):
    code = "AMOUNT_MISMATCH"
    status_code = 422


class ReferenceMismatch(ProviderError):
    code = "REFERENCE_MISMATCH"
    status_code = 422


class InvalidSignature(ProviderError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class AlreadyCaptured(ProviderError):
    """Raised by a gateway when the capture already happened.

    Not a failure: the engine finalises the payment with ``confirmation``.
    """
    code = "ALREADY_CAPTURED"
    status_code = 200

    def __init__(self, confirmation, message: str = "Payment already captured"):
        super().__init__(message)
        self.confirmation = confirmation


# --- Assignment status ---

class InvalidStatusTransition(MarketError):
    code = "INVALID_STATUS_TRANSITION"
    status_code = 409
    reason = "conflict"
