from typing import Any, Dict


class BillingError(Exception):
    """Base class for self-pay billing failures surfaced to API callers."""
    code = "billing_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "retryable": self.retryable}


class ValidationError(BillingError):
    """Malformed input, or a selection with nothing payable in it."""
    code = "validation_error"
    status_code = 400


class AmountMismatchError(BillingError):
    """The client's claimed total disagrees with the server-computed total."""
    code = "amount_mismatch"
    status_code = 409

    def __init__(self, message: str, expected_cents: int, claimed_cents: int):
        super().__init__(message)
        self.expected_cents = expected_cents
        self.claimed_cents = claimed_cents


class UnauthorizedError(BillingError):
    """The session patient does not own the payment being applied."""
    code = "unauthorized"
    status_code = 403


class ExternalProcessorError(BillingError):
    code = "processor_error"
    status_code = 502
    retryable = True

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(BillingError):
    """
    The charge succeeded but recording it failed and was rolled back. The
    webhook or a retried confirmation will reconcile it.
    """
    code = "persistence_error"
    status_code = 503
    retryable = True


class WebhookSignatureError(BillingError):
    code = "invalid_signature"
    status_code = 400
