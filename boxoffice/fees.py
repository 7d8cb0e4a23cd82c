"""
Fee computation shared by the price preview and the final settlement.

All amounts are integer cents. The processing fee uses the pass-through
formula so that the organiser nets exactly ticket price + platform fee:

    total = (subtotal + fixed) / (1 - percentage)
    processing_fee = total - subtotal

Everything here is pure: the same (subtotal, method, percent) always yields
the same breakdown.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any

PLATFORM_FEE_PERCENT = 2.0

# rail -> percentage, fixed (cents), label
PROCESSING_FEES: Dict[str, Dict[str, Any]] = {
    "paynow": {"percentage": "0", "fixed": 0, "label": "none"},
    "card": {"percentage": "3.4", "fixed": 50, "label": "3.4% + $0.50"},
    "apple_pay": {"percentage": "3.4", "fixed": 50, "label": "3.4% + $0.50"},
    "google_pay": {"percentage": "3.4", "fixed": 50,
                   "label": "3.4% + $0.50"},
    "grabpay": {"percentage": "3.3", "fixed": 0, "label": "3.3%"},
    "paynow_stripe": {"percentage": "1.3", "fixed": 0, "label": "1.3%"},
}

MANUAL_RAILS = frozenset({"paynow"})


@dataclass(frozen=True)
class FeeBreakdown:
    method: str
    ticket_price: int
    platform_fee: int
    platform_fee_label: str
    subtotal: int
    stripe_fee: int
    stripe_fee_label: str
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _pct_label(percent: float) -> str:
    d = Decimal(str(percent)).normalize()
    return f"{d:f}%"


def is_known_method(method: str) -> bool:
    return method in PROCESSING_FEES


def order_payment_method(method: str) -> str:
    """Orders only distinguish manual transfers from provider rails."""
    return "paynow" if method in MANUAL_RAILS else "card"


def calculate_platform_fee(
    amount: int, percent: float = PLATFORM_FEE_PERCENT
) -> int:
    if amount < 0:
        raise ValueError("amount must be >= 0")
    return _cents(Decimal(amount) * Decimal(str(percent)) / Decimal(100))


def fee_breakdown(
    amount: int, method: str, percent: float = PLATFORM_FEE_PERCENT
) -> FeeBreakdown:
    if method not in PROCESSING_FEES:
        raise ValueError(f"unknown payment method: {method}")
    fee = PROCESSING_FEES[method]

    platform_fee = calculate_platform_fee(amount, percent)
    want = amount + platform_fee

    pct = Decimal(fee["percentage"]) / Decimal(100)
    fixed = int(fee["fixed"])
    if pct == 0 and fixed == 0:
        total = want
    else:
        total = _cents((Decimal(want) + Decimal(fixed)) / (Decimal(1) - pct))

    return FeeBreakdown(
        method=method,
        ticket_price=amount,
        platform_fee=platform_fee,
        platform_fee_label=_pct_label(percent),
        subtotal=want,
        stripe_fee=total - want,
        stripe_fee_label=fee["label"],
        total=total,
    )
