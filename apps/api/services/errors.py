"""Error taxonomy shared by the payment, ledger and report services."""

from __future__ import annotations

from typing import Optional


class ReconciliationError(Exception):
    """Base class; `status_code` is the HTTP status the API maps it to."""

    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(ReconciliationError):
    status_code = 400
    default_detail = "Invalid request"


class SignatureVerificationError(ReconciliationError):
    status_code = 400
    default_detail = "Webhook signature verification failed"


class NotFoundError(ReconciliationError):
    status_code = 404
    default_detail = "Not found"


class AccessDenied(ReconciliationError):
    status_code = 403
    default_detail = "Access denied"


class InsufficientCredits(ReconciliationError):
    status_code = 400
    default_detail = "Insufficient credits"

    def __init__(self, required: int = 1, available: int = 0):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}.")


class ProviderNotConfigured(ReconciliationError):
    status_code = 503
    default_detail = "Payment provider is not configured"


class ProviderUnavailable(ReconciliationError):
    status_code = 503
    default_detail = "Payment provider is unavailable. Try again shortly."


class PartialReconciliationFailure(ReconciliationError):
    """Payment reached `succeeded` but a downstream step failed; repairable via sync."""

    status_code = 500
    default_detail = "Payment saved but entitlement application failed"

    def __init__(self, payment_record_id: str, detail: Optional[str] = None):
        self.payment_record_id = payment_record_id
        super().__init__(detail)
