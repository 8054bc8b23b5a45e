"""Typed wrapper around the SnapTrade SDK."""

import asyncio
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from snaptrade_client import SnapTrade
from snaptrade_client.exceptions import ApiException
from snaptrade_client.schemas import BoolClass, NoneClass, Unset

from flint.config import Settings
from flint.exceptions import (
    AlreadyRegisteredError,
    AuthInvalidError,
    ConfigurationError,
    ConnectionDisabledError,
    OrderNotFoundError,
    ProviderError,
    UserNotFoundError,
)
from flint.logging_config import mask_identifier
from flint.services.providers.errors import classify_snaptrade_error
from flint.services.transport import ResilientTransport, RetryPolicy

logger = logging.getLogger(__name__)

ACTIVITIES_PAGE_SIZE = 1000
CRYPTO_EXCHANGES = ("coinbase", "kraken", "binance")

# Errors no alternate holdings endpoint can fix
_POSITION_TERMINAL_ERRORS = (AuthInvalidError, UserNotFoundError, ConnectionDisabledError)


@dataclass(frozen=True)
class RegisteredUser:
    remote_user_id: str
    secret: str

    def __repr__(self) -> str:
        return f"RegisteredUser(remote_user_id={self.remote_user_id!r}, secret=<{len(self.secret)} chars>)"


@dataclass
class OrderRequest:
    account_id: str
    action: str  # BUY, SELL
    order_type: str  # Market, Limit, StopLimit, Stop
    units: Decimal
    symbol: str | None = None
    universal_symbol_id: str | None = None
    time_in_force: str = "Day"
    price: Decimal | None = None
    stop: Decimal | None = None


@dataclass
class CryptoOrderRequest:
    account_id: str
    symbol: str  # Trading pair, e.g. "BTC-USD"
    side: str  # BUY, SELL
    type: str  # MARKET, LIMIT, ...
    amount: str
    time_in_force: str = "GTC"
    limit_price: str | None = None
    stop_price: str | None = None
    post_only: bool | None = None
    expiration_date: str | None = None


def base_symbol(pair: str) -> str:
    """Crypto endpoints address the base currency: "XLM-USD" -> "XLM"."""
    return re.split(r"[-/]", pair.strip(), maxsplit=1)[0]


def is_crypto_exchange(institution_name: str | None) -> bool:
    if not institution_name:
        return False
    lowered = institution_name.lower()
    return any(exchange in lowered for exchange in CRYPTO_EXCHANGES)


def to_plain(value: Any) -> Any:
    """Convert SDK schema objects (frozendict/tuple/str subclasses) to plain types."""
    if isinstance(value, (Unset, NoneClass)):
        return None
    if isinstance(value, BoolClass):
        return bool(value)
    if isinstance(value, Mapping):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, str):
        return str(value)
    if isinstance(value, Decimal):
        return Decimal(value)
    return value


def _matches_order(order: Mapping, order_id: str) -> bool:
    return order_id in (order.get("brokerage_order_id"), order.get("id"))


class SnapTradeAdapter:
    """
    Capability surface for SnapTrade, one pinned SDK version.

    SDK calls are synchronous; each one runs in a worker thread through the
    shared ResilientTransport so it is retried and its failures normalized.
    """

    provider = "snaptrade"

    def __init__(
        self,
        client: SnapTrade,
        transport: ResilientTransport | None = None,
        *,
        connection_type: str = "trade-if-available",
        max_registration_suffix: int = 5,
    ):
        self.client = client
        self.transport = transport or ResilientTransport(self.provider, classify_snaptrade_error)
        self.connection_type = connection_type
        self.max_registration_suffix = max_registration_suffix

    @classmethod
    def from_settings(cls, settings: Settings) -> "SnapTradeAdapter":
        if not settings.snaptrade_client_id or not settings.snaptrade_consumer_key:
            raise ConfigurationError("SnapTrade client id and consumer key must be configured")
        client = SnapTrade(
            consumer_key=settings.snaptrade_consumer_key,
            client_id=settings.snaptrade_client_id,
        )
        transport = ResilientTransport(
            cls.provider, classify_snaptrade_error, RetryPolicy.from_settings(settings)
        )
        return cls(
            client,
            transport,
            connection_type=settings.snaptrade_connection_type,
            max_registration_suffix=settings.snaptrade_max_registration_suffix,
        )

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *,
        user_scoped: bool = False,
        **kwargs,
    ) -> Any:
        """
        Run one SDK call through the transport.

        user_scoped marks endpoints addressed only by the remote user, where a
        404 can only mean the user is gone. Elsewhere a 404 names an account,
        authorization or order.
        """
        params = {k: v for k, v in kwargs.items() if v is not None}

        async def run(correlation_id: str) -> Any:
            logger.debug("snaptrade %s (correlation %s)", operation, correlation_id)
            try:
                response = await asyncio.to_thread(func, **params)
            except ApiException as e:
                raise classify_snaptrade_error(e, user_scoped=user_scoped) from e
            return to_plain(response.body)

        return await self.transport.execute(operation, run)

    # -- users ---------------------------------------------------------------

    async def check_api_status(self) -> bool:
        """Validate partner credentials; failures are logged, never raised."""
        try:
            body = await self._call("api_status.check", self.client.api_status.check)
        except ProviderError as e:
            logger.error("SnapTrade API credentials check failed: %s", e)
            return False
        online = bool(body and body.get("online"))
        logger.info("SnapTrade API status: %s", "online" if online else "offline")
        return online

    async def register_user(self, local_user_id: str, *, try_suffixes: bool = True) -> RegisteredUser:
        """
        Register a remote user for a local user.

        If the id is taken by an earlier registration, versioned ids
        (`<id>-v2`, `<id>-v3`, ...) are tried up to max_registration_suffix.
        With try_suffixes off only the given id is registered, and a taken id
        raises AlreadyRegisteredError.
        """
        candidates = [local_user_id]
        if try_suffixes:
            candidates += [f"{local_user_id}-v{n}" for n in range(2, self.max_registration_suffix + 1)]
        last_error: AlreadyRegisteredError | None = None
        for candidate in candidates:
            try:
                body = await self._call(
                    "authentication.register_snap_trade_user",
                    self.client.authentication.register_snap_trade_user,
                    user_id=candidate,
                )
            except AlreadyRegisteredError as e:
                logger.warning("SnapTrade user id %s already registered", mask_identifier(candidate))
                last_error = e
                continue

            secret = (body or {}).get("userSecret")
            if not secret:
                raise ProviderError("registration response missing userSecret", self.provider)
            remote_user_id = (body or {}).get("userId") or candidate
            logger.info(
                "Registered SnapTrade user %s (secret length %d)",
                mask_identifier(remote_user_id),
                len(secret),
            )
            return RegisteredUser(remote_user_id=remote_user_id, secret=secret)

        assert last_error is not None
        raise last_error

    async def delete_user(self, remote_user_id: str) -> None:
        await self._call(
            "authentication.delete_snap_trade_user",
            self.client.authentication.delete_snap_trade_user,
            user_id=remote_user_id,
        )

    async def create_login_url(
        self,
        remote_user_id: str,
        secret: str,
        redirect_uri: str,
        reconnect_authorization_id: str | None = None,
        broker: str | None = None,
    ) -> str:
        """Connection portal URL; with reconnect set, repairs that authorization."""
        body = await self._call(
            "authentication.login_snap_trade_user",
            self.client.authentication.login_snap_trade_user,
            user_scoped=True,
            user_id=remote_user_id,
            user_secret=secret,
            broker=broker,
            immediate_redirect=True,
            custom_redirect=redirect_uri,
            reconnect=reconnect_authorization_id,
            connection_type=self.connection_type,
        )
        url = (body or {}).get("redirectURI") or (body or {}).get("url")
        if not url:
            raise ProviderError("login response missing redirect URI", self.provider)
        return url

    # -- connections ---------------------------------------------------------

    async def list_connections(self, remote_user_id: str, secret: str) -> list[dict]:
        body = await self._call(
            "connections.list_brokerage_authorizations",
            self.client.connections.list_brokerage_authorizations,
            user_scoped=True,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return list(body or [])

    async def get_connection_detail(
        self, remote_user_id: str, secret: str, authorization_id: str
    ) -> dict:
        body = await self._call(
            "connections.detail_brokerage_authorization",
            self.client.connections.detail_brokerage_authorization,
            authorization_id=authorization_id,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return body or {}

    async def refresh_connection(self, remote_user_id: str, secret: str, authorization_id: str) -> dict:
        body = await self._call(
            "connections.refresh_brokerage_authorization",
            self.client.connections.refresh_brokerage_authorization,
            authorization_id=authorization_id,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return body or {}

    async def disable_connection(self, remote_user_id: str, secret: str, authorization_id: str) -> dict:
        body = await self._call(
            "connections.disable_brokerage_authorization",
            self.client.connections.disable_brokerage_authorization,
            authorization_id=authorization_id,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return body or {}

    async def remove_connection(self, remote_user_id: str, secret: str, authorization_id: str) -> None:
        await self._call(
            "connections.remove_brokerage_authorization",
            self.client.connections.remove_brokerage_authorization,
            authorization_id=authorization_id,
            user_id=remote_user_id,
            user_secret=secret,
        )

    # -- accounts ------------------------------------------------------------

    async def list_accounts(self, remote_user_id: str, secret: str) -> list[dict]:
        body = await self._call(
            "account_information.list_user_accounts",
            self.client.account_information.list_user_accounts,
            user_scoped=True,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return list(body or [])

    async def get_account_detail(self, remote_user_id: str, secret: str, account_id: str) -> dict:
        body = await self._call(
            "account_information.get_user_account_details",
            self.client.account_information.get_user_account_details,
            account_id=account_id,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return body or {}

    async def get_balances(self, remote_user_id: str, secret: str, account_id: str) -> list[dict]:
        body = await self._call(
            "account_information.get_user_account_balance",
            self.client.account_information.get_user_account_balance,
            account_id=account_id,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return list(body or [])

    async def get_positions(self, remote_user_id: str, secret: str, account_id: str) -> list[dict]:
        """
        Positions for one account.

        Prefers the per-account positions endpoint; only when it fails falls
        back to the (slower, more rate limited) all-holdings endpoint filtered
        to the account, then to the single-account holdings endpoint. An empty
        list is a valid answer. Raises only for credential problems or when
        every endpoint failed at the transport level.
        """
        fetchers = (
            ("positions", self._fetch_account_positions),
            ("all_holdings", self._fetch_positions_from_all_holdings),
            ("holdings", self._fetch_positions_from_account_holdings),
        )
        last_error: ProviderError | None = None
        for name, fetch in fetchers:
            try:
                return await fetch(remote_user_id, secret, account_id)
            except _POSITION_TERMINAL_ERRORS:
                raise
            except ProviderError as e:
                logger.warning(
                    "SnapTrade %s lookup failed for account %s: %s",
                    name,
                    mask_identifier(account_id),
                    e.code.value,
                )
                last_error = e

        if last_error is not None and last_error.retryable:
            raise last_error
        logger.warning("All position endpoints failed for account %s", mask_identifier(account_id))
        return []

    async def _fetch_account_positions(self, remote_user_id: str, secret: str, account_id: str) -> list[dict]:
        body = await self._call(
            "account_information.get_user_account_positions",
            self.client.account_information.get_user_account_positions,
            account_id=account_id,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return list(body or [])

    async def _fetch_positions_from_all_holdings(
        self, remote_user_id: str, secret: str, account_id: str
    ) -> list[dict]:
        body = await self._call(
            "account_information.get_all_user_holdings",
            self.client.account_information.get_all_user_holdings,
            user_id=remote_user_id,
            user_secret=secret,
        )
        for holding in body or []:
            if (holding.get("account") or {}).get("id") == account_id:
                return list(holding.get("positions") or [])
        return []

    async def _fetch_positions_from_account_holdings(
        self, remote_user_id: str, secret: str, account_id: str
    ) -> list[dict]:
        body = await self._call(
            "account_information.get_user_holdings",
            self.client.account_information.get_user_holdings,
            account_id=account_id,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return list((body or {}).get("positions") or [])

    async def list_activities(
        self,
        remote_user_id: str,
        secret: str,
        account_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[dict]:
        """All activities for an account, following offset pagination."""
        activities: list[dict] = []
        offset = 0

        while True:
            body = await self._call(
                "account_information.get_account_activities",
                self.client.account_information.get_account_activities,
                account_id=account_id,
                user_id=remote_user_id,
                user_secret=secret,
                start_date=start_date,
                end_date=end_date,
                offset=offset,
                limit=ACTIVITIES_PAGE_SIZE,
            )
            page = (body or {}).get("data") or []
            activities.extend(page)
            if len(page) < ACTIVITIES_PAGE_SIZE:
                break
            offset += ACTIVITIES_PAGE_SIZE

        return activities

    # -- orders --------------------------------------------------------------

    async def list_orders(
        self, remote_user_id: str, secret: str, account_id: str, state: str = "all", days: int | None = None
    ) -> list[dict]:
        body = await self._call(
            "account_information.get_user_account_orders",
            self.client.account_information.get_user_account_orders,
            account_id=account_id,
            user_id=remote_user_id,
            user_secret=secret,
            state=state,
            days=days,
        )
        return list(body or [])

    async def list_recent_orders(self, remote_user_id: str, secret: str, account_id: str) -> list[dict]:
        body = await self._call(
            "account_information.get_user_account_recent_orders",
            self.client.account_information.get_user_account_recent_orders,
            account_id=account_id,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return list((body or {}).get("orders") or [])

    async def place_order(self, remote_user_id: str, secret: str, request: OrderRequest) -> dict:
        logger.info(
            "Placing %s %s order for %s on account %s",
            request.action,
            request.order_type,
            request.symbol or request.universal_symbol_id,
            mask_identifier(request.account_id),
        )
        body = await self._call(
            "trading.place_force_order",
            self.client.trading.place_force_order,
            account_id=request.account_id,
            action=request.action,
            order_type=request.order_type,
            time_in_force=request.time_in_force,
            user_id=remote_user_id,
            user_secret=secret,
            symbol=request.symbol,
            universal_symbol_id=request.universal_symbol_id,
            units=request.units,
            price=request.price,
            stop=request.stop,
        )
        return body or {}

    async def cancel_order(self, remote_user_id: str, secret: str, account_id: str, order_id: str) -> dict:
        body = await self._call(
            "trading.cancel_user_account_order",
            self.client.trading.cancel_user_account_order,
            account_id=account_id,
            brokerage_order_id=order_id,
            user_id=remote_user_id,
            user_secret=secret,
        )
        return body or {}

    async def get_order_status(self, remote_user_id: str, secret: str, account_id: str, order_id: str) -> dict:
        """Look an order up in recent orders, then in the full order history."""
        for order in await self.list_recent_orders(remote_user_id, secret, account_id):
            if _matches_order(order, order_id):
                return order
        for order in await self.list_orders(remote_user_id, secret, account_id, state="all"):
            if _matches_order(order, order_id):
                return order
        raise OrderNotFoundError(f"order {mask_identifier(order_id)} not found", self.provider)

    async def search_symbols(self, remote_user_id: str, secret: str, account_id: str, query: str) -> list[dict]:
        body = await self._call(
            "reference_data.symbol_search_user_account",
            self.client.reference_data.symbol_search_user_account,
            account_id=account_id,
            user_id=remote_user_id,
            user_secret=secret,
            substring=query,
        )
        return list(body or [])

    # -- crypto --------------------------------------------------------------

    async def search_crypto_pairs(
        self,
        remote_user_id: str,
        secret: str,
        account_id: str,
        base: str | None = None,
        quote: str | None = None,
    ) -> list[dict]:
        body = await self._call(
            "trading.search_cryptocurrency_pair_instruments",
            self.client.trading.search_cryptocurrency_pair_instruments,
            account_id=account_id,
            user_id=remote_user_id,
            user_secret=secret,
            base=base,
            quote=quote,
        )
        return list((body or {}).get("items") or [])

    def _crypto_order_params(self, remote_user_id: str, secret: str, request: CryptoOrderRequest) -> dict:
        return {
            "account_id": request.account_id,
            "user_id": remote_user_id,
            "user_secret": secret,
            "instrument": {"symbol": base_symbol(request.symbol), "type": "CRYPTOCURRENCY"},
            "side": request.side,
            "type": request.type,
            "time_in_force": request.time_in_force,
            "amount": request.amount,
            "limit_price": request.limit_price,
            "stop_price": request.stop_price,
            "post_only": request.post_only,
            "expiration_date": request.expiration_date,
        }

    async def preview_crypto_order(self, remote_user_id: str, secret: str, request: CryptoOrderRequest) -> dict:
        body = await self._call(
            "trading.preview_crypto_order",
            self.client.trading.preview_crypto_order,
            **self._crypto_order_params(remote_user_id, secret, request),
        )
        return body or {}

    async def place_crypto_order(self, remote_user_id: str, secret: str, request: CryptoOrderRequest) -> dict:
        logger.info(
            "Placing crypto %s %s for %s on account %s",
            request.side,
            request.type,
            base_symbol(request.symbol),
            mask_identifier(request.account_id),
        )
        body = await self._call(
            "trading.place_crypto_order",
            self.client.trading.place_crypto_order,
            **self._crypto_order_params(remote_user_id, secret, request),
        )
        return body or {}

    async def get_crypto_quote(self, remote_user_id: str, secret: str, account_id: str, pair: str) -> dict:
        body = await self._call(
            "trading.get_cryptocurrency_pair_quote",
            self.client.trading.get_cryptocurrency_pair_quote,
            account_id=account_id,
            user_id=remote_user_id,
            user_secret=secret,
            instrument_symbol=pair,
        )
        return body or {}
