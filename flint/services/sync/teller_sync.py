"""Reconciliation of a Teller enrollment into the local mirror."""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from flint.exceptions import (
    AuthInvalidError,
    CredentialError,
    EnrollmentDisconnectedError,
    ProviderError,
)
from flint.logging_config import mask_identifier
from flint.models import TELLER, Account
from flint.services.credential_store import CredentialStore
from flint.services.providers.teller import TellerAdapter
from flint.services.sync import persistence
from flint.services.sync.account_sync import SyncResult
from flint.services.sync.teller_parser import (
    account_fields,
    balance_fields,
    map_teller_account,
    parse_teller_transaction,
)

logger = logging.getLogger(__name__)


class TellerSyncService:
    def __init__(self, session_factory: sessionmaker, adapter: TellerAdapter, store: CredentialStore):
        self._session_factory = session_factory
        self._adapter = adapter
        self._store = store

    async def sync_teller_enrollment(self, local_user_id: str) -> SyncResult:
        """
        Sync every account of the user's Teller enrollment.

        The enrollment id is the Connection id. A disconnected enrollment
        marks the connection disabled and is re-raised; per-account failures
        are collected like the SnapTrade sync.
        """
        credential = self._store.get_credential(local_user_id, TELLER)
        if credential is None:
            raise CredentialError("No Teller enrollment for user", local_user_id)
        enrollment_id = credential.remote_user_id
        token = credential.secret

        try:
            accounts = await self._adapter.list_accounts(token)
        except (EnrollmentDisconnectedError, AuthInvalidError):
            with self._session_factory() as db:
                persistence.set_connection_disabled(db, enrollment_id, True)
                db.commit()
            logger.warning("Teller enrollment %s is disconnected", mask_identifier(enrollment_id))
            raise

        result = SyncResult()
        for account in accounts:
            account_id = account.get("id")
            try:
                await self._sync_account(local_user_id, enrollment_id, token, account, credential.institution_name)
            except EnrollmentDisconnectedError:
                with self._session_factory() as db:
                    persistence.set_connection_disabled(db, enrollment_id, True)
                    db.commit()
                raise
            except ProviderError as e:
                if e.provider_code == "account.closed":
                    self._mark_closed(account_id)
                logger.error("Failed to sync Teller account %s: %s", mask_identifier(account_id), e)
                result.errors.append(f"{account_id}: {e}")
                continue
            except SQLAlchemyError as e:
                logger.error("Failed to store Teller account %s: %s", mask_identifier(account_id), e)
                result.errors.append(f"{account_id}: {e}")
                continue
            result.accounts_synced += 1

        logger.info(
            "Synced %d/%d Teller accounts for user %s",
            result.accounts_synced,
            len(accounts),
            local_user_id,
        )
        return result

    async def _sync_account(
        self,
        local_user_id: str,
        enrollment_id: str,
        token: str,
        account: dict,
        institution_name: str | None,
    ) -> None:
        balance = await self._adapter.get_balances(token, account["id"])
        transactions = await self._adapter.list_transactions(token, account["id"])
        mapped = map_teller_account(account, balance)

        with self._session_factory() as db:
            persistence.upsert_connection(
                db,
                enrollment_id,
                local_user_id,
                TELLER,
                broker_name=institution_name or mapped["institution"],
                disabled=False,
            )
            row = persistence.upsert_account(db, enrollment_id, account_fields(mapped))
            persistence.replace_balance(db, row.id, balance_fields(mapped))
            persistence.upsert_activities(
                db, row.id, [parse_teller_transaction(t, mapped["currency"]) for t in transactions]
            )
            persistence.mark_synced(db, row)
            db.commit()

    def _mark_closed(self, account_id: str | None) -> None:
        if not account_id:
            return
        with self._session_factory() as db:
            account = db.get(Account, account_id)
            if account is not None:
                account.status = "closed"
                db.commit()
