"""Periodic background refresh of SnapTrade holdings."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from flint.exceptions import AuthInvalidError, CredentialError, ProviderError
from flint.models import SNAPTRADE
from flint.services.credential_store import Credential, CredentialStore
from flint.services.providers.errors import SNAPTRADE_INVALID_CREDENTIALS
from flint.services.providers.snaptrade import SnapTradeAdapter
from flint.services.recovery import RecoveryCoordinator
from flint.services.sync import persistence
from flint.services.sync.account_sync import AccountSyncService, HoldingsSyncResult

logger = logging.getLogger(__name__)

JOB_ID = "holdings-sync"


def is_invalid_credentials(error: Exception) -> bool:
    """True for the provider's "invalid userId or userSecret" rejection."""
    if not isinstance(error, AuthInvalidError):
        return False
    return error.provider_code == SNAPTRADE_INVALID_CREDENTIALS or error.status_code == 401


class StrikeCounter:
    """
    Consecutive authentication failures per user.

    A strike older than the window starts a fresh count, so sporadic
    failures spread over days never add up to a forced re-link.
    """

    def __init__(
        self,
        threshold: int = 3,
        window_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._strikes: dict[str, tuple[int, float]] = {}

    def count(self, local_user_id: str) -> int:
        return self._strikes.get(local_user_id, (0, 0.0))[0]

    def record_failure(self, local_user_id: str) -> int:
        now = self._clock()
        count, last = self._strikes.get(local_user_id, (0, now))
        if count and now - last > self.window_seconds:
            count = 0
        count += 1
        self._strikes[local_user_id] = (count, now)
        return count

    def reached(self, local_user_id: str) -> bool:
        return self.count(local_user_id) >= self.threshold

    def reset(self, local_user_id: str) -> None:
        self._strikes.pop(local_user_id, None)


@dataclass
class UserSweepResult:
    local_user_id: str
    holdings: list[HoldingsSyncResult] = field(default_factory=list)
    error: str | None = None
    credentials_cleared: bool = False


@dataclass
class SweepSummary:
    users: int = 0
    accounts: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def add(self, result: UserSweepResult) -> None:
        self.users += 1
        if result.error:
            self.errors.append(f"{result.local_user_id}: {result.error}")
        for holdings in result.holdings:
            self.accounts += 1
            if holdings.skipped:
                self.skipped += 1
            elif holdings.success:
                self.succeeded += 1
            else:
                self.failed += 1
                self.errors.append(f"{holdings.account_id}: {holdings.error}")


class HoldingsSyncScheduler:
    """
    Sweeps every stored SnapTrade credential on an interval.

    Users are synced concurrently up to `concurrency`; everything touching a
    single user's credential goes through the RecoveryCoordinator.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        store: CredentialStore,
        adapter: SnapTradeAdapter,
        account_sync: AccountSyncService,
        recovery: RecoveryCoordinator,
        *,
        interval_minutes: int = 15,
        initial_delay_seconds: int = 30,
        concurrency: int = 4,
        strikes: StrikeCounter | None = None,
    ):
        self._session_factory = session_factory
        self._store = store
        self._adapter = adapter
        self._account_sync = account_sync
        self._recovery = recovery
        self.interval_minutes = interval_minutes
        self.initial_delay_seconds = initial_delay_seconds
        self.concurrency = max(1, concurrency)
        self.strikes = strikes or StrikeCounter()
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.last_summary: SweepSummary | None = None

    def start(self) -> None:
        first_run = datetime.now(timezone.utc) + timedelta(seconds=self.initial_delay_seconds)
        self.scheduler.add_job(
            self.run_sweep,
            IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=first_run,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "Holdings sync scheduled every %d minutes (first run in %ds)",
            self.interval_minutes,
            self.initial_delay_seconds,
        )

    def shutdown(self) -> None:
        if getattr(self.scheduler, "running", False):
            self.scheduler.shutdown(wait=False)

    async def trigger_sync(self, local_user_id: str | None = None) -> SweepSummary:
        """Run a sweep now, for one user or for everyone."""
        if local_user_id is None:
            return await self.run_sweep()
        credential = self._store.get_credential(local_user_id, SNAPTRADE)
        if credential is None:
            raise CredentialError("No SnapTrade registration for user", local_user_id)
        return await self._sweep([credential])

    async def run_sweep(self) -> SweepSummary:
        credentials = self._store.list_credentials(SNAPTRADE)
        return await self._sweep(credentials)

    async def _sweep(self, credentials: list[Credential]) -> SweepSummary:
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(credential: Credential) -> UserSweepResult:
            async with semaphore:
                try:
                    return await self.sync_user(credential.local_user_id)
                except SQLAlchemyError as e:
                    logger.exception("Database error syncing user %s", credential.local_user_id)
                    return UserSweepResult(credential.local_user_id, error=f"database error: {e}")

        results = await asyncio.gather(*(bounded(c) for c in credentials))

        summary = SweepSummary()
        for result in results:
            summary.add(result)
        summary.duration_seconds = time.monotonic() - started
        self.last_summary = summary
        logger.info(
            "Holdings sweep: %d users, %d accounts, %d ok, %d skipped, %d failed in %.1fs",
            summary.users,
            summary.accounts,
            summary.succeeded,
            summary.skipped,
            summary.failed,
            summary.duration_seconds,
        )
        return summary

    async def sync_user(self, local_user_id: str) -> UserSweepResult:
        """Sync holdings for each of the user's accounts, applying the strike policy."""
        result = UserSweepResult(local_user_id)

        async def operation(credential: Credential) -> list[HoldingsSyncResult]:
            accounts = await self._adapter.list_accounts(credential.remote_user_id, credential.secret)
            holdings = []
            for account in accounts:
                account_id = account.get("id")
                if not account_id:
                    continue
                holdings.append(
                    await self._account_sync.sync_account_holdings(
                        credential.remote_user_id, credential.secret, account_id
                    )
                )
            return holdings

        try:
            result.holdings = await self._recovery.call_with_recovery(local_user_id, operation)
        except ProviderError as e:
            result.error = str(e)
            if is_invalid_credentials(e):
                result.credentials_cleared = self._record_strike(local_user_id)
            else:
                logger.error("Holdings sync failed for user %s: %s", local_user_id, e)
            return result
        except CredentialError as e:
            logger.error("Skipping user %s: %s", local_user_id, e)
            result.error = str(e)
            return result

        self.strikes.reset(local_user_id)
        return result

    def _record_strike(self, local_user_id: str) -> bool:
        count = self.strikes.record_failure(local_user_id)
        logger.warning(
            "Invalid SnapTrade credentials for user %s (strike %d/%d)",
            local_user_id,
            count,
            self.strikes.threshold,
        )
        if count < self.strikes.threshold:
            return False

        self._store.delete_credential(local_user_id, SNAPTRADE)
        with self._session_factory() as db:
            connections, accounts = persistence.mark_user_needs_reconnect(db, local_user_id, SNAPTRADE)
            db.commit()
        self.strikes.reset(local_user_id)
        logger.error(
            "Cleared SnapTrade credentials for user %s after %d strikes; "
            "%d connections disabled, %d accounts need reconnect",
            local_user_id,
            count,
            connections,
            accounts,
        )
        return True
