"""Connection lifecycle: registration, portal links and per-connection actions."""

import logging
from datetime import date

from sqlalchemy.orm import sessionmaker

from flint.exceptions import CredentialError, NotFoundError
from flint.logging_config import mask_identifier
from flint.models import SNAPTRADE, TELLER, Account, Connection
from flint.services.credential_store import Credential, CredentialStore
from flint.services.providers.snaptrade import SnapTradeAdapter
from flint.services.recovery import RecoveryCoordinator
from flint.services.sync import persistence
from flint.services.sync.account_sync import AccountSyncService, HoldingsSyncResult, SyncResult
from flint.services.sync.teller_sync import TellerSyncService

logger = logging.getLogger(__name__)


def _broker_name(authorization: dict) -> str | None:
    brokerage = authorization.get("brokerage") or {}
    return brokerage.get("name") or authorization.get("name")


def connection_to_dict(connection: Connection) -> dict:
    return {
        "id": connection.id,
        "provider": connection.provider,
        "broker_name": connection.broker_name,
        "disabled": connection.disabled,
        "last_sync_at": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        "account_count": len(connection.accounts),
    }


class ConnectionService:
    """
    The operations the connections UI drives.

    Every SnapTrade call runs through the RecoveryCoordinator, so a remote
    user deleted on the provider side is re-registered transparently.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        store: CredentialStore,
        snaptrade: SnapTradeAdapter,
        recovery: RecoveryCoordinator,
        account_sync: AccountSyncService,
        teller_sync: TellerSyncService | None = None,
    ):
        self._session_factory = session_factory
        self._store = store
        self._snaptrade = snaptrade
        self._recovery = recovery
        self._account_sync = account_sync
        self._teller_sync = teller_sync

    async def ensure_registered(self, local_user_id: str) -> Credential:
        """Return the user's SnapTrade credential, registering on first use."""
        credential = self._store.get_credential(local_user_id, SNAPTRADE)
        if credential is not None:
            return credential
        registered = await self._snaptrade.register_user(local_user_id)
        return self._store.ensure_credential(
            local_user_id, registered.remote_user_id, registered.secret, SNAPTRADE
        )

    async def list_connections(self, local_user_id: str) -> list[dict]:
        """
        Fetch the user's authorizations and mirror their disabled state.

        Returns every local connection of the user, Teller included.
        """
        if self._store.get_credential(local_user_id, SNAPTRADE) is not None:
            authorizations = await self._recovery.call_with_recovery(
                local_user_id,
                lambda c: self._snaptrade.list_connections(c.remote_user_id, c.secret),
            )
            with self._session_factory() as db:
                for authorization in authorizations:
                    if not authorization.get("id"):
                        continue
                    persistence.upsert_connection(
                        db,
                        authorization["id"],
                        local_user_id,
                        SNAPTRADE,
                        broker_name=_broker_name(authorization),
                        disabled=bool(authorization.get("disabled")),
                    )
                db.commit()
        return self.get_local_connections(local_user_id)

    def get_local_connections(self, local_user_id: str) -> list[dict]:
        with self._session_factory() as db:
            connections = (
                db.query(Connection)
                .filter(Connection.local_user_id == local_user_id)
                .order_by(Connection.created_at)
                .all()
            )
            return [connection_to_dict(c) for c in connections]

    async def get_portal_url(
        self,
        local_user_id: str,
        redirect_uri: str,
        reconnect_authorization_id: str | None = None,
        broker: str | None = None,
    ) -> str:
        if reconnect_authorization_id:
            self._check_owner(local_user_id, reconnect_authorization_id)
        await self.ensure_registered(local_user_id)
        return await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._snaptrade.create_login_url(
                c.remote_user_id,
                c.secret,
                redirect_uri,
                reconnect_authorization_id=reconnect_authorization_id,
                broker=broker,
            ),
        )

    async def refresh_connection(self, local_user_id: str, authorization_id: str) -> dict:
        self._check_owner(local_user_id, authorization_id)
        result = await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._snaptrade.refresh_connection(c.remote_user_id, c.secret, authorization_id),
        )
        logger.info("Refresh scheduled for connection %s", mask_identifier(authorization_id))
        return result

    async def disable_connection(self, local_user_id: str, authorization_id: str) -> None:
        self._check_owner(local_user_id, authorization_id)
        await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._snaptrade.disable_connection(c.remote_user_id, c.secret, authorization_id),
        )
        with self._session_factory() as db:
            persistence.set_connection_disabled(db, authorization_id, True)
            db.commit()

    async def remove_connection(self, local_user_id: str, authorization_id: str) -> None:
        """Remove the authorization remotely, then its mirror rows."""
        self._check_owner(local_user_id, authorization_id)
        await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._snaptrade.remove_connection(c.remote_user_id, c.secret, authorization_id),
        )
        with self._session_factory() as db:
            persistence.delete_connection(db, authorization_id)
            db.commit()
        logger.info("Removed connection %s for user %s", mask_identifier(authorization_id), local_user_id)

    async def sync_accounts(self, local_user_id: str, authorization_id: str | None = None) -> SyncResult:
        return await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._account_sync.sync_accounts_for_connection(
                local_user_id, c.remote_user_id, c.secret, authorization_id
            ),
        )

    async def sync_connection(self, local_user_id: str, authorization_id: str) -> SyncResult:
        return await self.sync_accounts(local_user_id, authorization_id)

    async def sync_holdings(self, local_user_id: str, account_id: str) -> HoldingsSyncResult:
        return await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._account_sync.sync_account_holdings(c.remote_user_id, c.secret, account_id),
        )

    async def sync_orders(self, local_user_id: str, account_id: str, days: int | None = None) -> int:
        """Mirror the account's orders; returns the number upserted."""
        self._check_account_owner(local_user_id, account_id)
        return await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._account_sync.sync_orders(c.remote_user_id, c.secret, account_id, days=days),
        )

    async def sync_activities(
        self,
        local_user_id: str,
        account_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> int:
        self._check_account_owner(local_user_id, account_id)
        return await self._recovery.call_with_recovery(
            local_user_id,
            lambda c: self._account_sync.sync_activities(
                c.remote_user_id, c.secret, account_id, start_date=start_date, end_date=end_date
            ),
        )

    # -- Teller --------------------------------------------------------------

    def store_teller_enrollment(
        self,
        local_user_id: str,
        enrollment_id: str,
        access_token: str,
        institution_name: str | None = None,
    ) -> Credential:
        """Persist the enrollment returned by Teller Connect (token encrypted)."""
        credential = self._store.ensure_credential(
            local_user_id, enrollment_id, access_token, TELLER, institution_name=institution_name
        )
        with self._session_factory() as db:
            persistence.upsert_connection(
                db, enrollment_id, local_user_id, TELLER, broker_name=institution_name, disabled=False
            )
            db.commit()
        return credential

    async def sync_teller(self, local_user_id: str) -> SyncResult:
        if self._teller_sync is None:
            raise CredentialError("Teller is not configured", local_user_id)
        return await self._teller_sync.sync_teller_enrollment(local_user_id)

    def remove_teller_enrollment(self, local_user_id: str) -> bool:
        credential = self._store.get_credential(local_user_id, TELLER)
        if credential is None:
            return False
        with self._session_factory() as db:
            persistence.delete_connection(db, credential.remote_user_id)
            db.commit()
        return self._store.delete_credential(local_user_id, TELLER)

    def _check_owner(self, local_user_id: str, authorization_id: str) -> None:
        """Reject actions on a mirrored connection that belongs to someone else."""
        with self._session_factory() as db:
            connection = db.get(Connection, authorization_id)
            if connection is not None and connection.local_user_id != local_user_id:
                raise NotFoundError("Connection", authorization_id)

    def _check_account_owner(self, local_user_id: str, account_id: str) -> None:
        with self._session_factory() as db:
            account = db.get(Account, account_id)
            if account is None or account.connection.local_user_id != local_user_id:
                raise NotFoundError("Account", account_id)
