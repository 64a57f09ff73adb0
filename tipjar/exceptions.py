"""
Tipjar Exceptions

Error types raised by the tip payment lifecycle. Input validation uses
Django's ValidationError (see validators.py); everything here describes
failures of the payment flow itself.
"""


class PaymentError(Exception):
    """Base class for tip payment failures."""


class GatewayError(PaymentError):
    """
    The Lightning payment processor could not be reached or refused the call.

    Attributes:
        status_code: HTTP status returned by the processor, if any
    """

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class TipNotFound(PaymentError):
    """No tip matches the given identifier."""


class TipConflict(PaymentError):
    """A status transition was attempted on a tip that is no longer pending."""


class TipPersistenceError(PaymentError):
    """A charge was created but the pending tip could not be stored."""


class WebhookSignatureError(PaymentError):
    """Webhook body signature is missing or does not match."""
