"""Verification, normalization and application of provider webhooks."""

import hmac
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.orm import sessionmaker

from flint.logging_config import mask_identifier
from flint.models import SNAPTRADE, TELLER, WebhookLog
from flint.services.credential_store import CredentialStore
from flint.services.providers.teller import verify_webhook_signature
from flint.services.sync import persistence

logger = logging.getLogger(__name__)


class WebhookEventType(str, Enum):
    ATTEMPTED = "connection.attempted"
    ADDED = "connection.added"
    UPDATED = "connection.updated"
    BROKEN = "connection.broken"
    FIXED = "connection.fixed"
    DELETED = "connection.deleted"


E = WebhookEventType

SNAPTRADE_EVENT_MAP: dict[str, WebhookEventType] = {
    # Current names
    "USER_REGISTERED": E.ATTEMPTED,
    "USER_DELETED": E.DELETED,
    "CONNECTION_ATTEMPTED": E.ATTEMPTED,
    "CONNECTION_ADDED": E.ADDED,
    "CONNECTION_DELETED": E.DELETED,
    "CONNECTION_BROKEN": E.BROKEN,
    "CONNECTION_FIXED": E.FIXED,
    "CONNECTION_UPDATED": E.UPDATED,
    "CONNECTION_FAILED": E.ATTEMPTED,
    "NEW_ACCOUNT_AVAILABLE": E.ADDED,
    "ACCOUNT_HOLDINGS_UPDATED": E.UPDATED,
    "ACCOUNT_TRANSACTIONS_INITIAL_UPDATE": E.UPDATED,
    "ACCOUNT_TRANSACTIONS_UPDATED": E.UPDATED,
    "ACCOUNT_REMOVED": E.DELETED,
    "TRADES_PLACED": E.UPDATED,
    # Alternate names
    "BROKERAGE_CONNECTION_CREATED": E.ADDED,
    "BROKERAGE_CONNECTION_DELETED": E.DELETED,
    "BROKERAGE_CONNECTION_DISABLED": E.BROKEN,
    "BROKERAGE_CONNECTION_ENABLED": E.FIXED,
    "BROKERAGE_CONNECTION_UPDATED": E.UPDATED,
    "BROKERAGE_CONNECTION_FAILED": E.ATTEMPTED,
    "ACCOUNT_CREATED": E.ADDED,
    # Legacy names
    "CONNECTION_ESTABLISHED": E.ADDED,
    "BROKERAGE_AUTHORIZATION_BROKEN": E.BROKEN,
    "BROKERAGE_AUTHORIZATION_REPAIRED": E.FIXED,
    "BROKERAGE_AUTHORIZATION_CREATED": E.ADDED,
    # Short lowercase forms
    "attempted": E.ATTEMPTED,
    "added": E.ADDED,
    "updated": E.UPDATED,
    "deleted": E.DELETED,
    "broken": E.BROKEN,
    "fixed": E.FIXED,
}
SNAPTRADE_EVENT_MAP.update({event.value: event for event in WebhookEventType})

TELLER_EVENT_MAP: dict[str, WebhookEventType] = {
    "enrollment.disconnected": E.BROKEN,
    "transactions.processed": E.UPDATED,
    "account.number_verification.processed": E.UPDATED,
    # webhook.test is acknowledged and logged only
}

HOLDINGS_UPDATED = "ACCOUNT_HOLDINGS_UPDATED"
TRADES_PLACED = "TRADES_PLACED"
TRANSACTIONS_UPDATED = ("ACCOUNT_TRANSACTIONS_INITIAL_UPDATE", "ACCOUNT_TRANSACTIONS_UPDATED")


def normalize_event_type(provider: str, raw_type: str | None) -> WebhookEventType | None:
    """Canonical type for a raw event name, or None for unknown events."""
    if not raw_type:
        return None
    table = SNAPTRADE_EVENT_MAP if provider == SNAPTRADE else TELLER_EVENT_MAP
    raw_type = raw_type.strip()
    return table.get(raw_type) or table.get(raw_type.upper()) or table.get(raw_type.lower())


def _first(body: dict, *keys: str) -> Any:
    for key in keys:
        value = body.get(key)
        if value:
            return value
    return None


@dataclass
class WebhookEvent:
    provider: str
    raw_type: str
    type: WebhookEventType | None
    remote_user_id: str | None
    authorization_id: str | None
    account_id: str | None
    payload: dict


def parse_snaptrade_event(body: dict) -> WebhookEvent:
    raw_type = _first(body, "eventType", "type", "event_type") or ""
    return WebhookEvent(
        provider=SNAPTRADE,
        raw_type=str(raw_type),
        type=normalize_event_type(SNAPTRADE, raw_type),
        remote_user_id=_first(body, "userId", "user_id"),
        authorization_id=_first(
            body, "brokerageAuthorizationId", "brokerage_authorization_id", "authorizationId"
        ),
        account_id=_first(body, "accountId", "account_id"),
        payload=body,
    )


def parse_teller_event(body: dict) -> WebhookEvent:
    raw_type = str(body.get("type") or "")
    payload = body.get("payload") or {}
    return WebhookEvent(
        provider=TELLER,
        raw_type=raw_type,
        type=normalize_event_type(TELLER, raw_type),
        remote_user_id=payload.get("enrollment_id"),
        authorization_id=payload.get("enrollment_id"),
        account_id=payload.get("account_id"),
        payload=body,
    )


def verify_snaptrade_secret(provided: str | None, configured: str | None) -> bool:
    """Constant-time shared-secret check; an unconfigured secret never verifies."""
    if not configured or not provided:
        return False
    return hmac.compare_digest(provided.encode(), configured.encode())


class WebhookSyncHooks(Protocol):
    """Follow-up syncs a webhook can trigger."""

    async def sync_connection(self, local_user_id: str, authorization_id: str) -> Any: ...

    async def sync_holdings(self, local_user_id: str, account_id: str) -> Any: ...

    async def sync_orders(self, local_user_id: str, account_id: str) -> Any: ...

    async def sync_activities(self, local_user_id: str, account_id: str) -> Any: ...


class WebhookService:
    """
    Applies webhooks to the mirror.

    Every inbound call is acknowledged: verification failures, unknown types
    and processing errors are recorded in WebhookLog instead of being
    surfaced to the provider, which would otherwise redeliver indefinitely.
    All side effects are idempotent so redelivered or reordered events are
    harmless.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        store: CredentialStore,
        *,
        snaptrade_secret: str | None = None,
        teller_secret: str | None = None,
        max_age_seconds: int = 180,
        hooks: WebhookSyncHooks | None = None,
    ):
        self._session_factory = session_factory
        self._store = store
        self._snaptrade_secret = snaptrade_secret
        self._teller_secret = teller_secret
        self._max_age_seconds = max_age_seconds
        self._hooks = hooks

    async def handle_snaptrade(self, raw_body: bytes, headers: dict[str, str]) -> dict:
        body = self._decode(SNAPTRADE, raw_body)
        if body is None:
            return {"ok": True}
        event = parse_snaptrade_event(body)
        provided = headers.get("x-snaptrade-secret") or body.get("webhookSecret")
        if not verify_snaptrade_secret(provided, self._snaptrade_secret):
            logger.warning("Rejected SnapTrade webhook %s: secret mismatch", event.raw_type)
            self._log(event, processed=False, error="verification failed")
            return {"ok": True}
        await self._process(event)
        return {"ok": True}

    async def handle_teller(self, raw_body: bytes, headers: dict[str, str]) -> dict:
        signature = headers.get("teller-signature")
        verified = verify_webhook_signature(
            raw_body, signature, self._teller_secret, max_age_seconds=self._max_age_seconds
        )
        body = self._decode(TELLER, raw_body)
        if body is None:
            return {"ok": True}
        event = parse_teller_event(body)
        if not verified:
            logger.warning("Rejected Teller webhook %s: bad signature", event.raw_type)
            self._log(event, processed=False, error="verification failed")
            return {"ok": True}
        await self._process(event)
        return {"ok": True}

    def _decode(self, provider: str, raw_body: bytes) -> dict | None:
        try:
            body = json.loads(raw_body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Unparseable %s webhook body: %s", provider, e)
            body = None
        if not isinstance(body, dict):
            event = WebhookEvent(provider, "invalid", None, None, None, None, {})
            self._log(event, processed=False, error="body is not a JSON object")
            return None
        return body

    async def _process(self, event: WebhookEvent) -> None:
        credential = (
            self._store.find_by_remote_user_id(event.provider, event.remote_user_id)
            if event.remote_user_id
            else None
        )
        local_user_id = credential.local_user_id if credential else None

        if event.type is None:
            logger.info("Ignoring unknown %s webhook type %r", event.provider, event.raw_type)
            self._log(event, local_user_id, processed=True)
            return

        try:
            created = self._apply(event)
        except Exception as e:
            logger.exception("Failed to apply %s webhook %s", event.provider, event.raw_type)
            self._log(event, local_user_id, processed=False, error=str(e))
            return

        error = None
        if local_user_id and self._hooks is not None:
            try:
                await self._follow_up(event, local_user_id, created)
            except Exception as e:
                logger.exception("Follow-up sync for %s webhook failed", event.raw_type)
                error = f"follow-up sync failed: {e}"
        self._log(event, local_user_id, processed=True, error=error)

    def _apply(self, event: WebhookEvent) -> bool:
        """Apply the canonical side effect. Returns True when an ADDED event
        references a connection the mirror has not seen."""
        auth_id = event.authorization_id
        if not auth_id or event.type is E.ATTEMPTED:
            return False

        with self._session_factory() as db:
            if event.type is E.BROKEN:
                found = persistence.set_connection_disabled(db, auth_id, True)
            elif event.type in (E.FIXED, E.ADDED):
                found = persistence.set_connection_disabled(db, auth_id, False)
            elif event.type is E.UPDATED:
                found = persistence.touch_connection(db, auth_id)
            else:
                found = persistence.delete_connection(db, auth_id)
            db.commit()

        logger.info(
            "%s webhook %s -> %s on connection %s (%s)",
            event.provider,
            event.raw_type,
            event.type.value,
            mask_identifier(auth_id),
            "applied" if found else "unknown connection",
        )
        return event.type is E.ADDED and not found

    async def _follow_up(self, event: WebhookEvent, local_user_id: str, created: bool) -> None:
        if event.provider != SNAPTRADE:
            return
        if created and event.authorization_id:
            await self._hooks.sync_connection(local_user_id, event.authorization_id)
            return
        if not event.account_id:
            return
        raw_type = event.raw_type.upper()
        if raw_type == HOLDINGS_UPDATED:
            await self._hooks.sync_holdings(local_user_id, event.account_id)
        elif raw_type == TRADES_PLACED:
            await self._hooks.sync_orders(local_user_id, event.account_id)
        elif raw_type in TRANSACTIONS_UPDATED:
            await self._hooks.sync_activities(local_user_id, event.account_id)

    def _log(
        self,
        event: WebhookEvent,
        local_user_id: str | None = None,
        *,
        processed: bool,
        error: str | None = None,
    ) -> None:
        with self._session_factory() as db:
            db.add(
                WebhookLog(
                    provider=event.provider,
                    type=event.raw_type or "unknown",
                    normalized_type=event.type.value if event.type else None,
                    user_id=local_user_id or event.remote_user_id,
                    authorization_id=event.authorization_id,
                    payload=event.payload,
                    processed=processed,
                    error=error,
                )
            )
            db.commit()
