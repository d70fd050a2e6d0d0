"""Custom exceptions for payments and pricing."""


class InvalidAmountError(Exception):
    """Raised when a price or payment amount is not a non-negative whole number of cents."""
    pass


class MalformedPaymentEventError(Exception):
    """Raised when a payment event is missing its reference or booking identifier."""
    pass


class PaymentGatewayError(Exception):
    """Raised when the card processor cannot be reached or returns an error."""
    pass
