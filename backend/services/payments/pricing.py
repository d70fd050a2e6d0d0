"""
Fee-aware price computation.

Commission and app fee are rounded half-up on their own. The card fee is
grossed up with a ceiling so the chauffeur side still receives the full
subtotal after the processor takes its percentage plus fixed fee.
"""

import math
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from fractions import Fraction
from typing import Dict, Optional

from django.conf import settings

from .exceptions import InvalidAmountError


@dataclass(frozen=True)
class PriceBreakdown:
    base_estimate_cents: int
    dispatcher_fee_cents: int
    app_fee_cents: int
    subtotal_cents: int
    card_fee_cents: int
    total_cents: int

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def _rates() -> Dict[str, object]:
    pricing = getattr(settings, 'PRICING', {})
    return {
        'dispatcher': Decimal(str(pricing.get('DISPATCHER_FEE_RATE', '0.20'))),
        'app': Decimal(str(pricing.get('APP_FEE_RATE', '0.10'))),
        'card': str(pricing.get('CARD_FEE_RATE', '0.029')),
        'card_fixed': int(pricing.get('CARD_FEE_FIXED_CENTS', 30)),
    }


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _check_cents(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidAmountError(f"Amount must be a non-negative whole number of cents, got {value!r}")
    return value


def gross_up(subtotal_cents: int, rate: Optional[str] = None, fixed_cents: Optional[int] = None) -> int:
    """Smallest total whose processor payout covers ``subtotal_cents``."""
    rates = _rates()
    rate = Fraction(rates['card'] if rate is None else rate)
    fixed_cents = rates['card_fixed'] if fixed_cents is None else fixed_cents
    return math.ceil(Fraction(subtotal_cents + fixed_cents) / (1 - rate))


def compute_breakdown(base_estimate_cents: int) -> PriceBreakdown:
    """
    Price a ride from its base estimate.

    Example with the default rates: a base of 2500 gives fees of 500 and 250,
    a subtotal of 3250 and a total of 3378, of which 128 is the card fee.
    """
    base = _check_cents(base_estimate_cents)
    rates = _rates()

    dispatcher_fee = round_half_up(Decimal(base) * rates['dispatcher'])
    app_fee = round_half_up(Decimal(base) * rates['app'])
    subtotal = base + dispatcher_fee + app_fee
    total = gross_up(subtotal, rates['card'], rates['card_fixed'])

    return PriceBreakdown(
        base_estimate_cents=base,
        dispatcher_fee_cents=dispatcher_fee,
        app_fee_cents=app_fee,
        subtotal_cents=subtotal,
        card_fee_cents=total - subtotal,
        total_cents=total,
    )


def net_after_card_fee(total_cents: int) -> int:
    """What is left of ``total_cents`` after the processor deducts its fee."""
    total = _check_cents(total_cents)
    rates = _rates()
    fee = round_half_up(Decimal(total) * Decimal(rates['card']))
    return total - fee - rates['card_fixed']


def _dollars(cents: int) -> str:
    return f"${Decimal(cents) / 100:.2f}"


def format_breakdown(breakdown: PriceBreakdown) -> Dict[str, object]:
    """Dollar strings for display, plus the total in cents for checkout."""
    return {
        'baseEstimate': _dollars(breakdown.base_estimate_cents),
        'dispatcherFee': _dollars(breakdown.dispatcher_fee_cents),
        'appFee': _dollars(breakdown.app_fee_cents),
        'subtotal': _dollars(breakdown.subtotal_cents),
        'cardFee': _dollars(breakdown.card_fee_cents),
        'total': _dollars(breakdown.total_cents),
        'totalCents': breakdown.total_cents,
    }
