from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from flint.dependencies import get_current_user_id, get_trading_service
from flint.services.providers.snaptrade import CryptoOrderRequest, OrderRequest
from flint.services.trading_service import TradingService

router = APIRouter()


class OrderBody(BaseModel):
    account_id: str
    action: str
    order_type: str
    units: Decimal
    symbol: str | None = None
    universal_symbol_id: str | None = None
    time_in_force: str = "Day"
    price: Decimal | None = None
    stop: Decimal | None = None


class CryptoOrderBody(BaseModel):
    account_id: str
    symbol: str
    side: str
    type: str
    amount: str
    time_in_force: str = "GTC"
    limit_price: str | None = None
    stop_price: str | None = None
    post_only: bool | None = None
    expiration_date: str | None = None


@router.post("/orders")
async def place_order(
    body: OrderBody,
    user_id: str = Depends(get_current_user_id),
    service: TradingService = Depends(get_trading_service),
) -> dict:
    return await service.place_order(user_id, OrderRequest(**body.model_dump()))


@router.delete("/accounts/{account_id}/orders/{order_id}")
async def cancel_order(
    account_id: str,
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    service: TradingService = Depends(get_trading_service),
) -> dict:
    return await service.cancel_order(user_id, account_id, order_id)


@router.get("/accounts/{account_id}/orders/{order_id}")
async def get_order_status(
    account_id: str,
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    service: TradingService = Depends(get_trading_service),
) -> dict:
    return await service.get_order_status(user_id, account_id, order_id)


@router.get("/accounts/{account_id}/symbols")
async def search_symbols(
    account_id: str,
    q: str = Query(..., min_length=1, description="Search query"),
    user_id: str = Depends(get_current_user_id),
    service: TradingService = Depends(get_trading_service),
) -> list[dict]:
    return await service.search_symbols(user_id, account_id, q)


@router.get("/accounts/{account_id}/crypto/pairs")
async def search_crypto_pairs(
    account_id: str,
    base: str | None = None,
    quote: str | None = None,
    user_id: str = Depends(get_current_user_id),
    service: TradingService = Depends(get_trading_service),
) -> list[dict]:
    return await service.search_crypto_pairs(user_id, account_id, base=base, quote=quote)


@router.get("/accounts/{account_id}/crypto/quote")
async def get_crypto_quote(
    account_id: str,
    pair: str,
    user_id: str = Depends(get_current_user_id),
    service: TradingService = Depends(get_trading_service),
) -> dict:
    return await service.get_crypto_quote(user_id, account_id, pair)


@router.post("/crypto/preview")
async def preview_crypto_order(
    body: CryptoOrderBody,
    user_id: str = Depends(get_current_user_id),
    service: TradingService = Depends(get_trading_service),
) -> dict:
    return await service.preview_crypto_order(user_id, CryptoOrderRequest(**body.model_dump()))


@router.post("/crypto/orders")
async def place_crypto_order(
    body: CryptoOrderBody,
    user_id: str = Depends(get_current_user_id),
    service: TradingService = Depends(get_trading_service),
) -> dict:
    return await service.place_crypto_order(user_id, CryptoOrderRequest(**body.model_dump()))
