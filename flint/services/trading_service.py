"""Order placement and lookup on SnapTrade accounts."""

import logging

from sqlalchemy.orm import sessionmaker

from flint.exceptions import ValidationError
from flint.logging_config import mask_identifier
from flint.models import Account, Order
from flint.models.base import utcnow
from flint.services.providers.snaptrade import (
    CryptoOrderRequest,
    OrderRequest,
    SnapTradeAdapter,
)
from flint.services.recovery import RecoveryCoordinator
from flint.services.sync import persistence
from flint.services.sync.snaptrade_parser import parse_order

logger = logging.getLogger(__name__)

ORDER_ACTIONS = ("BUY", "SELL")
ORDER_TYPES = ("Market", "Limit", "Stop", "StopLimit")


def validate_order(request: OrderRequest) -> None:
    if request.action not in ORDER_ACTIONS:
        raise ValidationError(f"action must be one of {ORDER_ACTIONS}", field="action")
    if request.order_type not in ORDER_TYPES:
        raise ValidationError(f"order_type must be one of {ORDER_TYPES}", field="order_type")
    if request.units is None or request.units <= 0:
        raise ValidationError("units must be positive", field="units")
    if not request.symbol and not request.universal_symbol_id:
        raise ValidationError("symbol or universal_symbol_id is required", field="symbol")
    if request.order_type in ("Limit", "StopLimit") and request.price is None:
        raise ValidationError("price is required for limit orders", field="price")
    if request.order_type in ("Stop", "StopLimit") and request.stop is None:
        raise ValidationError("stop is required for stop orders", field="stop")


class TradingService:
    def __init__(
        self,
        session_factory: sessionmaker,
        adapter: SnapTradeAdapter,
        recovery: RecoveryCoordinator,
    ):
        self._session_factory = session_factory
        self._adapter = adapter
        self._recovery = recovery

    async def place_order(self, local_user_id: str, request: OrderRequest) -> dict:
        """Place an equity order and record it in the mirror."""
        validate_order(request)
        body = await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._adapter.place_order(c.remote_user_id, c.secret, request),
        )
        self._record_order(request.account_id, body, fallback_symbol=request.symbol)
        return body

    async def cancel_order(self, local_user_id: str, account_id: str, order_id: str) -> dict:
        """
        Cancel an open order.

        Orders that already filled or that the brokerage does not know
        surface as ProviderValidationError / OrderNotFoundError.
        """
        body = await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._adapter.cancel_order(c.remote_user_id, c.secret, account_id, order_id),
        )
        with self._session_factory() as db:
            order = db.get(Order, order_id)
            if order is not None:
                order.status = "CANCELLED"
                order.cancelled_at = utcnow()
                db.commit()
        logger.info("Cancelled order %s", mask_identifier(order_id))
        return body

    async def get_order_status(self, local_user_id: str, account_id: str, order_id: str) -> dict:
        order = await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._adapter.get_order_status(c.remote_user_id, c.secret, account_id, order_id),
        )
        self._record_order(account_id, order)
        return order

    async def search_symbols(self, local_user_id: str, account_id: str, query: str) -> list[dict]:
        return await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._adapter.search_symbols(c.remote_user_id, c.secret, account_id, query),
        )

    async def search_crypto_pairs(
        self, local_user_id: str, account_id: str, base: str | None = None, quote: str | None = None
    ) -> list[dict]:
        return await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._adapter.search_crypto_pairs(
                c.remote_user_id, c.secret, account_id, base=base, quote=quote
            ),
        )

    async def get_crypto_quote(self, local_user_id: str, account_id: str, pair: str) -> dict:
        return await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._adapter.get_crypto_quote(c.remote_user_id, c.secret, account_id, pair),
        )

    async def preview_crypto_order(self, local_user_id: str, request: CryptoOrderRequest) -> dict:
        return await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._adapter.preview_crypto_order(c.remote_user_id, c.secret, request),
        )

    async def place_crypto_order(self, local_user_id: str, request: CryptoOrderRequest) -> dict:
        body = await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._adapter.place_crypto_order(c.remote_user_id, c.secret, request),
        )
        order = body.get("order") if isinstance(body.get("order"), dict) else body
        self._record_order(request.account_id, order, fallback_symbol=request.symbol)
        return body

    def _record_order(self, account_id: str, data: dict, fallback_symbol: str | None = None) -> None:
        """Upsert the order if the account is mirrored; unknown accounts are left alone."""
        fields = parse_order(data)
        if not fields["id"]:
            return
        if not fields["symbol"]:
            fields["symbol"] = fallback_symbol or ""
        with self._session_factory() as db:
            if db.get(Account, account_id) is None:
                return
            persistence.upsert_orders(db, account_id, [fields])
            db.commit()
