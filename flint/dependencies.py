"""Process-scoped provider components and the FastAPI dependencies exposing them."""

import logging
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import sessionmaker

from flint.config import Settings
from flint.exceptions import ConfigurationError
from flint.services.connection_service import ConnectionService
from flint.services.credential_store import CredentialStore
from flint.services.encryption import EncryptionService
from flint.services.providers import SnapTradeAdapter, TellerAdapter
from flint.services.recovery import RecoveryCoordinator
from flint.services.scheduler import HoldingsSyncScheduler, StrikeCounter
from flint.services.sync import AccountSyncService, TellerSyncService
from flint.services.trading_service import TradingService
from flint.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


@dataclass
class ProviderContext:
    """
    Everything that holds per-process state: adapters (with their transports),
    the recovery coordinator's in-flight map and the scheduler's strike counts.

    Built once at startup; a provider without configuration is left as None
    and its routes answer 503.
    """

    settings: Settings
    store: CredentialStore
    webhooks: WebhookService
    snaptrade: SnapTradeAdapter | None = None
    teller: TellerAdapter | None = None
    recovery: RecoveryCoordinator | None = None
    connections: ConnectionService | None = None
    trading: TradingService | None = None
    scheduler: HoldingsSyncScheduler | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: sessionmaker,
        *,
        snaptrade: SnapTradeAdapter | None = None,
        teller: TellerAdapter | None = None,
    ) -> "ProviderContext":
        store = CredentialStore(session_factory, EncryptionService.from_settings(settings))

        if snaptrade is None:
            try:
                snaptrade = SnapTradeAdapter.from_settings(settings)
            except ConfigurationError as e:
                logger.warning("SnapTrade disabled: %s", e)
        if teller is None:
            try:
                teller = TellerAdapter.from_settings(settings)
            except ConfigurationError as e:
                logger.warning("Teller disabled: %s", e)

        teller_sync = TellerSyncService(session_factory, teller, store) if teller else None

        recovery = connections = trading = scheduler = None
        if snaptrade is not None:
            recovery = RecoveryCoordinator(snaptrade, store)
            account_sync = AccountSyncService(session_factory, snaptrade)
            connections = ConnectionService(
                session_factory, store, snaptrade, recovery, account_sync, teller_sync
            )
            trading = TradingService(session_factory, snaptrade, recovery)
            scheduler = HoldingsSyncScheduler(
                session_factory,
                store,
                snaptrade,
                account_sync,
                recovery,
                interval_minutes=settings.sync_interval_minutes,
                initial_delay_seconds=settings.sync_initial_delay_seconds,
                concurrency=settings.sync_concurrency,
                strikes=StrikeCounter(
                    settings.sync_strike_threshold,
                    window_seconds=settings.sync_strike_window_minutes * 60,
                ),
            )

        webhooks = WebhookService(
            session_factory,
            store,
            snaptrade_secret=settings.snaptrade_webhook_secret or None,
            teller_secret=settings.teller_webhook_secret or None,
            max_age_seconds=settings.webhook_max_age_seconds,
            hooks=connections,
        )
        return cls(
            settings=settings,
            store=store,
            webhooks=webhooks,
            snaptrade=snaptrade,
            teller=teller,
            recovery=recovery,
            connections=connections,
            trading=trading,
            scheduler=scheduler,
        )

    async def aclose(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
        if self.teller is not None:
            await self.teller.aclose()


def get_context(request: Request) -> ProviderContext:
    return request.app.state.context


def get_current_user_id(x_flint_user_id: str | None = Header(default=None)) -> str:
    """The authenticated local user, as forwarded by the auth layer."""
    if not x_flint_user_id:
        raise HTTPException(status_code=401, detail="Missing X-Flint-User-Id header")
    return x_flint_user_id


def get_connection_service(context: ProviderContext = Depends(get_context)) -> ConnectionService:
    if context.connections is None:
        raise HTTPException(status_code=503, detail="SnapTrade is not configured")
    return context.connections


def get_trading_service(context: ProviderContext = Depends(get_context)) -> TradingService:
    if context.trading is None:
        raise HTTPException(status_code=503, detail="SnapTrade is not configured")
    return context.trading


def get_webhook_service(context: ProviderContext = Depends(get_context)) -> WebhookService:
    return context.webhooks
