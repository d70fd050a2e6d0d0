"""
Payments service - reconciliation and pricing.

This module handles:
    - Applying processor payment events idempotently
    - Polling the processor for payments a webhook missed
    - Computing fee-aware price breakdowns
"""

from .events import PaymentEvent
from .pricing import PriceBreakdown, compute_breakdown, format_breakdown, net_after_card_fee

from .exceptions import (
    InvalidAmountError,
    MalformedPaymentEventError,
    PaymentGatewayError,
)

__all__ = [
    # Events
    "PaymentEvent",
    # Pricing
    "PriceBreakdown",
    "compute_breakdown",
    "format_breakdown",
    "net_after_card_fee",
    # Exceptions
    "InvalidAmountError",
    "MalformedPaymentEventError",
    "PaymentGatewayError",
]
