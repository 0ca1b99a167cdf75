"""
Fee quote endpoint — preview the recipient/fee split before ordering.
"""

from fastapi import APIRouter, Depends

from app.api.deps import get_provider_registry
from app.core.exceptions import ValidationRejected
from app.providers.registry import ProviderRegistry
from app.schemas.fees import FeeQuoteRequest, FeeQuoteResponse
from app.settlement.fees import (
    local_total_from_stablecoin,
    split_for_recipient,
    split_total,
)

router = APIRouter()


@router.post("/quote", response_model=FeeQuoteResponse)
async def quote_fee(
    payload: FeeQuoteRequest,
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    """Split a total, gross up a recipient amount, or convert USDC and split."""
    exchange_rate = payload.exchange_rate
    try:
        if payload.recipient_amount is not None:
            split = split_for_recipient(payload.recipient_amount, payload.rate)
        else:
            total = payload.total
            if total is None:
                if exchange_rate is None:
                    adapter = registry.get(payload.provider)
                    exchange_rate = await adapter.fetch_rate(payload.local_currency, payload.source_amount)
                total = local_total_from_stablecoin(payload.source_amount, exchange_rate)
            split = split_total(total, payload.rate)
    except ValueError as exc:
        raise ValidationRejected(str(exc))

    return FeeQuoteResponse(
        local_currency=payload.local_currency,
        total=split.total,
        recipient_amount=split.recipient_amount,
        fee=split.fee,
        rate=split.rate,
        exchange_rate=exchange_rate,
    )
