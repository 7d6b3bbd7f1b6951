"""Engine error taxonomy.

Every error the commerce core raises on purpose derives from BillingError,
which carries a stable machine code and the HTTP status the JSON layer
answers with. The app factory registers a single handler for the base class.

- Validation:  DiscountRejected (reason is one of DiscountRejection)
- Lookup:      NotFound
- State:       InvalidState, AlreadyInvoiced
- Collaborator: PaymentDeclined (definitive), ProcessorError (transient /
  unknown outcome)
- Fatal:       InvariantViolation
"""

from enum import Enum


class DiscountRejection(str, Enum):
    NOT_FOUND = "NotFound"
    INACTIVE = "Inactive"
    OUT_OF_WINDOW = "OutOfWindow"
    BELOW_MINIMUM = "BelowMinimum"
    EXHAUSTED_TOTAL = "ExhaustedTotal"
    EXHAUSTED_PER_USER = "ExhaustedPerUser"
    NOT_APPLICABLE = "NotApplicable"


class BillingError(Exception):
    code = "billing_error"
    http_status = 400

    def __init__(self, message=None):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class DiscountRejected(BillingError):
    code = "discount_rejected"
    http_status = 422

    def __init__(self, reason, message=None):
        self.reason = DiscountRejection(reason)
        super().__init__(message or f"Discount code rejected: {self.reason.value}")

    def to_dict(self):
        data = super().to_dict()
        data["reason"] = self.reason.value
        return data


class NotFound(BillingError):
    code = "not_found"
    http_status = 404


class InvalidState(BillingError):
    code = "invalid_state"
    http_status = 409


class AlreadyInvoiced(BillingError):
    code = "already_invoiced"
    http_status = 409


class PaymentDeclined(BillingError):
    code = "payment_declined"
    http_status = 402


class ProcessorError(BillingError):
    """Processor unreachable, timed out or answered with an unexpected error.

    The outcome of the call is unknown; callers must not assume failure.
    """

    code = "processor_error"
    http_status = 502


class InvariantViolation(BillingError):
    code = "invariant_violation"
    http_status = 500
