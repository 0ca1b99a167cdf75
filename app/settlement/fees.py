"""
Fee & settlement-amount arithmetic.

The platform fee is charged on top of what the recipient receives:

    total            = what is debited (local-currency value of the USDC)
    recipient_amount = floor(total / (1 + rate))      at the currency quantum
    fee              = total - recipient_amount

so ``recipient_amount + fee == total`` holds exactly. The split is computed
once, from the total actually charged, and persisted on the Order; nothing
downstream re-derives it.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal

from app.config import settings

# Local currencies are disbursed in whole units.
DEFAULT_QUANTUM = Decimal("1")


@dataclass(frozen=True)
class FeeSplit:
    total: Decimal
    recipient_amount: Decimal
    fee: Decimal
    rate: Decimal

    def as_dict(self) -> dict:
        return {
            "total": str(self.total),
            "recipient_amount": str(self.recipient_amount),
            "fee": str(self.fee),
            "rate": str(self.rate),
        }


def _check_rate(rate: Decimal) -> Decimal:
    rate = Decimal(str(rate))
    if rate < 0:
        raise ValueError("Fee rate cannot be negative")
    return rate


def split_total(
    total: Decimal,
    rate: Decimal | None = None,
    quantum: Decimal = DEFAULT_QUANTUM,
) -> FeeSplit:
    """Split a total debit into recipient amount and fee."""
    rate = _check_rate(settings.PLATFORM_FEE_RATE if rate is None else rate)
    total = Decimal(str(total))
    if total <= 0:
        raise ValueError("Total amount must be positive")

    recipient = (total / (1 + rate)).quantize(quantum, rounding=ROUND_FLOOR)
    fee = total - recipient
    return FeeSplit(total=total, recipient_amount=recipient, fee=fee, rate=rate)


def split_for_recipient(
    recipient_amount: Decimal,
    rate: Decimal | None = None,
    quantum: Decimal = DEFAULT_QUANTUM,
) -> FeeSplit:
    """
    Find the total to debit so the recipient receives *recipient_amount*.

    The total is rounded up, then split through ``split_total`` so both
    directions share one computation.
    """
    rate = _check_rate(settings.PLATFORM_FEE_RATE if rate is None else rate)
    recipient_amount = Decimal(str(recipient_amount))
    if recipient_amount <= 0:
        raise ValueError("Recipient amount must be positive")

    total = (recipient_amount * (1 + rate)).quantize(quantum, rounding=ROUND_CEILING)
    return split_total(total, rate, quantum)


def local_total_from_stablecoin(
    amount: Decimal,
    exchange_rate: Decimal,
    quantum: Decimal = DEFAULT_QUANTUM,
) -> Decimal:
    """Local-currency value of a stablecoin amount, rounded half up."""
    amount = Decimal(str(amount))
    exchange_rate = Decimal(str(exchange_rate))
    if amount <= 0 or exchange_rate <= 0:
        raise ValueError("Amount and exchange rate must be positive")
    return (amount * exchange_rate).quantize(quantum, rounding=ROUND_HALF_UP)
