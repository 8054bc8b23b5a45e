"""Re-registration of SnapTrade users whose remote identity was deleted."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from flint.exceptions import RECOVERABLE_ERRORS, CredentialError
from flint.models import SNAPTRADE
from flint.services.credential_store import Credential, CredentialStore
from flint.services.providers.snaptrade import SnapTradeAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecoveryCoordinator:
    """
    Serializes credential recovery per local user.

    A user is either Normal or has exactly one recovery task in flight.
    Callers that hit a deleted-user error while a recovery is running await
    that task instead of starting another; the task is dropped from the map
    as soon as it finishes, successfully or not, so a later call can try
    again.
    """

    def __init__(self, adapter: SnapTradeAdapter, store: CredentialStore):
        self._adapter = adapter
        self._store = store
        self._in_flight: dict[str, asyncio.Task[Credential]] = {}

    def is_recovering(self, local_user_id: str) -> bool:
        task = self._in_flight.get(local_user_id)
        return task is not None and not task.done()

    async def recover(self, local_user_id: str) -> Credential:
        task = self._in_flight.get(local_user_id)
        if task is None or task.done():
            task = asyncio.create_task(self._recover(local_user_id))
            self._in_flight[local_user_id] = task
            task.add_done_callback(lambda t: self._release(local_user_id, t))
        else:
            logger.info("Waiting for in-flight recovery of user %s", local_user_id)
        # Shield so one cancelled waiter does not cancel recovery for the others
        return await asyncio.shield(task)

    def _release(self, local_user_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(local_user_id) is task:
            del self._in_flight[local_user_id]

    async def _recover(self, local_user_id: str) -> Credential:
        current = self._store.get_credential(local_user_id, SNAPTRADE)
        remote_user_id = current.remote_user_id if current else local_user_id
        logger.warning("Re-registering deleted SnapTrade user for %s", local_user_id)
        # The same id only: a taken id means the user was never deleted
        registered = await self._adapter.register_user(remote_user_id, try_suffixes=False)
        credential = self._store.rotate_credential(
            local_user_id, registered.remote_user_id, registered.secret, SNAPTRADE
        )
        logger.info(
            "SnapTrade credentials rotated for user %s at %s",
            local_user_id,
            credential.rotated_at.isoformat() if credential.rotated_at else "?",
        )
        return credential

    async def call_with_recovery(
        self,
        local_user_id: str,
        operation: Callable[[Credential], Awaitable[T]],
    ) -> T:
        """
        Run `operation` with the user's SnapTrade credential.

        On a deleted-user error the credential is recovered and the operation
        retried exactly once. If recovery fails the original error is raised.
        """
        credential = self._store.get_credential(local_user_id, SNAPTRADE)
        if credential is None:
            raise CredentialError("No SnapTrade registration for user", local_user_id)

        try:
            return await operation(credential)
        except RECOVERABLE_ERRORS as original:
            logger.warning(
                "SnapTrade reported %s for user %s", original.code.value, local_user_id
            )
            latest = self._store.get_credential(local_user_id, SNAPTRADE)
            if (
                latest is not None
                and latest.secret != credential.secret
                and not self.is_recovering(local_user_id)
            ):
                # Another caller already finished a recovery
                recovered = latest
            else:
                try:
                    recovered = await self.recover(local_user_id)
                except Exception as recovery_error:
                    logger.error(
                        "Recovery failed for user %s: %s", local_user_id, recovery_error
                    )
                    raise original from recovery_error

        return await operation(recovered)
