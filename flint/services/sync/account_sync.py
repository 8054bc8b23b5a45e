"""Reconciliation of SnapTrade accounts, holdings, orders and activities."""

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from flint.exceptions import AuthInvalidError, ProviderError, UserNotFoundError
from flint.logging_config import mask_identifier
from flint.models import SNAPTRADE, Account
from flint.services.providers.snaptrade import SnapTradeAdapter
from flint.services.sync import persistence
from flint.services.sync.snaptrade_parser import (
    extract_authorization_id,
    parse_account,
    parse_activity,
    parse_balance,
    parse_order,
    parse_position,
)

logger = logging.getLogger(__name__)

# Credential-level failures are the caller's to handle (recovery, strikes)
CREDENTIAL_ERRORS = (AuthInvalidError, UserNotFoundError)


@dataclass
class SyncResult:
    accounts_synced: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str | None:
        return "; ".join(self.errors) if self.errors else None


@dataclass
class HoldingsSyncResult:
    account_id: str
    success: bool
    positions_count: int = 0
    skipped: bool = False
    error: str | None = None


class AccountSyncService:
    """Writes SnapTrade data into the local mirror, one account per unit of work."""

    def __init__(self, session_factory: sessionmaker, adapter: SnapTradeAdapter):
        self._session_factory = session_factory
        self._adapter = adapter

    async def sync_accounts_for_connection(
        self,
        local_user_id: str,
        remote_user_id: str,
        secret: str,
        authorization_id: str | None = None,
    ) -> SyncResult:
        """
        Sync accounts (with balances and positions) for a user.

        With authorization_id only that connection's accounts are synced. A
        failure on one account is logged and recorded; accounts already
        written stay written. Failing to list accounts at all is raised.
        """
        accounts = await self._adapter.list_accounts(remote_user_id, secret)
        if authorization_id:
            accounts = [a for a in accounts if extract_authorization_id(a) == authorization_id]

        result = SyncResult()
        for data in accounts:
            account_id = data.get("id")
            try:
                await self._sync_account(local_user_id, remote_user_id, secret, data)
            except CREDENTIAL_ERRORS:
                raise
            except (ProviderError, SQLAlchemyError, KeyError) as e:
                logger.error(
                    "Failed to sync account %s for user %s: %s",
                    mask_identifier(account_id),
                    local_user_id,
                    e,
                )
                result.errors.append(f"{account_id}: {e}")
                continue
            result.accounts_synced += 1

        logger.info(
            "Synced %d/%d accounts for user %s",
            result.accounts_synced,
            len(accounts),
            local_user_id,
        )
        return result

    async def _sync_account(self, local_user_id: str, remote_user_id: str, secret: str, data: dict) -> None:
        fields = parse_account(data)
        connection_id = extract_authorization_id(data)
        if not connection_id:
            raise KeyError(f"account {fields['id']} has no brokerage_authorization")

        balances = await self._adapter.get_balances(remote_user_id, secret, fields["id"])
        positions = await self._adapter.get_positions(remote_user_id, secret, fields["id"])

        with self._session_factory() as db:
            persistence.upsert_connection(
                db, connection_id, local_user_id, SNAPTRADE, broker_name=fields["institution"]
            )
            account = persistence.upsert_account(db, connection_id, fields)
            persistence.replace_balance(db, account.id, parse_balance(balances, fields["total_balance"]))
            persistence.replace_positions(db, account.id, [parse_position(p) for p in positions])
            persistence.mark_synced(db, account)
            db.commit()

    async def sync_account_holdings(self, remote_user_id: str, secret: str, account_id: str) -> HoldingsSyncResult:
        """
        Refresh one account's positions (full replace).

        Accounts missing from the mirror (e.g. removed by a webhook since the
        sweep started) are skipped and any orphaned positions deleted.
        """
        if not self._account_exists(account_id):
            return self._skip_missing(account_id)

        try:
            positions = await self._adapter.get_positions(remote_user_id, secret, account_id)
        except CREDENTIAL_ERRORS:
            raise
        except ProviderError as e:
            logger.error("Holdings fetch failed for account %s: %s", mask_identifier(account_id), e)
            return HoldingsSyncResult(account_id, success=False, error=str(e))

        with self._session_factory() as db:
            account = db.get(Account, account_id)
            if account is None:
                return self._skip_missing(account_id)
            try:
                count = persistence.replace_positions(db, account_id, [parse_position(p) for p in positions])
                persistence.mark_synced(db, account)
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning("Account %s vanished during holdings sync", mask_identifier(account_id))
                return self._skip_missing(account_id)

        logger.info("Holdings synced for account %s: %d positions", mask_identifier(account_id), count)
        return HoldingsSyncResult(account_id, success=True, positions_count=count)

    async def sync_orders(
        self, remote_user_id: str, secret: str, account_id: str, days: int | None = None
    ) -> int:
        """Upsert the account's orders by id; returns the number processed."""
        if not self._account_exists(account_id):
            return 0
        orders = await self._adapter.list_orders(remote_user_id, secret, account_id, state="all", days=days)
        with self._session_factory() as db:
            if db.get(Account, account_id) is None:
                return 0
            count = persistence.upsert_orders(db, account_id, [parse_order(o) for o in orders])
            db.commit()
        return count

    async def sync_activities(
        self,
        remote_user_id: str,
        secret: str,
        account_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> int:
        if not self._account_exists(account_id):
            return 0
        activities = await self._adapter.list_activities(
            remote_user_id, secret, account_id, start_date=start_date, end_date=end_date
        )
        parsed = [parse_activity(a) for a in activities if a.get("id")]
        with self._session_factory() as db:
            if db.get(Account, account_id) is None:
                return 0
            count = persistence.upsert_activities(db, account_id, parsed)
            db.commit()
        return count

    def _account_exists(self, account_id: str) -> bool:
        with self._session_factory() as db:
            return db.get(Account, account_id) is not None

    def _skip_missing(self, account_id: str) -> HoldingsSyncResult:
        with self._session_factory() as db:
            removed = persistence.delete_positions(db, account_id)
            db.commit()
        logger.warning(
            "Account %s not in mirror, skipped holdings sync (%d orphaned positions removed)",
            mask_identifier(account_id),
            removed,
        )
        return HoldingsSyncResult(account_id, success=True, skipped=True, error="account not found")
