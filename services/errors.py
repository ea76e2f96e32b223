"""Exception taxonomy of the billing engine."""


class BillingError(Exception):
    """Base class for billing engine errors."""


class ExternalCallFailure(BillingError):
    """Stripe (or another remote collaborator) was unreachable or rejected a call."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class PaymentDeclined(ExternalCallFailure):
    """Stripe refused to charge the customer's payment method."""


class NotFound(BillingError):
    """A subscription, license or account referenced by an event is missing."""


class InvalidBillingContext(NotFound):
    """Invoice metadata could not be parsed into a billing context."""


class InvalidEventSignature(BillingError):
    """Webhook payload failed signature verification."""


class DuplicateEvent(BillingError):
    """The invoice has already been reconciled."""


class DiscountConflict(BillingError):
    """A discount was bound or consumed by someone else between read and write."""


class JobAlreadyRunning(BillingError):
    """Another run of the same job holds an unexpired lease."""
