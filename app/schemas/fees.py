"""
Pydantic schemas for fee quotes.
"""

from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from app.models.order import LocalCurrency, Provider


class FeeQuoteRequest(BaseModel):
    """
    Quote the recipient/fee split from exactly one starting amount:

    - ``total``: local-currency amount to be debited
    - ``recipient_amount``: what the recipient should receive
    - ``source_amount``: USDC in; converted at ``exchange_rate`` or at the
      provider's current rate
    """
    local_currency: LocalCurrency = Field(..., examples=["KES"])
    total: Decimal | None = Field(None, gt=0)
    recipient_amount: Decimal | None = Field(None, gt=0)
    source_amount: Decimal | None = Field(None, gt=0)
    exchange_rate: Decimal | None = Field(None, gt=0)
    provider: Provider | None = None
    rate: Decimal | None = Field(None, ge=0, le=1, description="Fee rate; platform default when omitted")

    @model_validator(mode="after")
    def check_one_amount(self):
        given = [f for f in ("total", "recipient_amount", "source_amount") if getattr(self, f) is not None]
        if len(given) != 1:
            raise ValueError("Provide exactly one of total, recipient_amount, source_amount")
        if self.source_amount is not None and self.exchange_rate is None and self.provider is None:
            raise ValueError("source_amount needs an exchange_rate or a provider to quote from")
        return self


class FeeQuoteResponse(BaseModel):
    local_currency: LocalCurrency
    total: Decimal
    recipient_amount: Decimal
    fee: Decimal
    rate: Decimal
    exchange_rate: Decimal | None = None
