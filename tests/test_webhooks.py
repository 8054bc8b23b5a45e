import asyncio
import hashlib
import hmac
import json
import time

import pytest

from flint.models import TELLER, Account, Connection, Order, WebhookLog
from flint.services.connection_service import ConnectionService
from flint.services.recovery import RecoveryCoordinator
from flint.services.sync import AccountSyncService
from flint.services.webhook_service import (
    WebhookEventType,
    WebhookService,
    normalize_event_type,
    parse_snaptrade_event,
)
from tests.fakes import FakeSnapTrade

SECRET = "snaptrade-webhook-secret"
TELLER_SECRET = "teller-webhook-secret"


class RecordingHooks:
    def __init__(self):
        self.connections = []
        self.holdings = []
        self.orders = []
        self.activities = []

    async def sync_connection(self, local_user_id, authorization_id):
        self.connections.append((local_user_id, authorization_id))

    async def sync_holdings(self, local_user_id, account_id):
        self.holdings.append((local_user_id, account_id))

    async def sync_orders(self, local_user_id, account_id):
        self.orders.append((local_user_id, account_id))

    async def sync_activities(self, local_user_id, account_id):
        self.activities.append((local_user_id, account_id))


@pytest.fixture
def hooks():
    return RecordingHooks()


@pytest.fixture
def service(session_factory, store, hooks):
    return WebhookService(
        session_factory, store, snaptrade_secret=SECRET, teller_secret=TELLER_SECRET, hooks=hooks
    )


def snaptrade(service, event_type, authorization_id="auth-1", secret=SECRET, **extra):
    body = {
        "eventType": event_type,
        "userId": "remote-1",
        "brokerageAuthorizationId": authorization_id,
        "webhookSecret": secret,
        **extra,
    }
    return asyncio.run(service.handle_snaptrade(json.dumps(body).encode(), {}))


def connection(session_factory, authorization_id="auth-1"):
    with session_factory() as db:
        return db.get(Connection, authorization_id)


def test_normalize_event_types():
    assert normalize_event_type("snaptrade", "CONNECTION_BROKEN") is WebhookEventType.BROKEN
    assert normalize_event_type("snaptrade", "BROKERAGE_AUTHORIZATION_REPAIRED") is WebhookEventType.FIXED
    assert normalize_event_type("snaptrade", "ACCOUNT_HOLDINGS_UPDATED") is WebhookEventType.UPDATED
    assert normalize_event_type("snaptrade", "connection_deleted") is WebhookEventType.DELETED
    assert normalize_event_type("snaptrade", "connection.added") is WebhookEventType.ADDED
    assert normalize_event_type("snaptrade", "SOMETHING_NEW") is None
    assert normalize_event_type("teller", "enrollment.disconnected") is WebhookEventType.BROKEN
    assert normalize_event_type("teller", "webhook.test") is None


def test_parse_snake_case_fields():
    event = parse_snaptrade_event(
        {"type": "CONNECTION_FIXED", "user_id": "remote-1", "brokerage_authorization_id": "auth-9", "account_id": "a"}
    )
    assert event.type is WebhookEventType.FIXED
    assert event.remote_user_id == "remote-1"
    assert event.authorization_id == "auth-9"
    assert event.account_id == "a"


def test_broken_is_idempotent(service, make_account, session_factory):
    """Applying connection.broken twice leaves the connection disabled."""
    make_account("acct-1", "auth-1")

    assert snaptrade(service, "CONNECTION_BROKEN") == {"ok": True}
    assert snaptrade(service, "CONNECTION_BROKEN") == {"ok": True}

    assert connection(session_factory).disabled is True


def test_fixed_reenables(service, make_account, session_factory):
    make_account("acct-1", "auth-1")
    snaptrade(service, "CONNECTION_BROKEN")
    snaptrade(service, "CONNECTION_FIXED")
    assert connection(session_factory).disabled is False


def test_updated_bumps_last_sync(service, make_account, session_factory):
    make_account("acct-1", "auth-1")
    assert connection(session_factory).last_sync_at is None
    snaptrade(service, "CONNECTION_UPDATED")
    updated = connection(session_factory)
    assert updated.last_sync_at is not None
    assert updated.disabled is False


def test_deleted_cascades_to_accounts(service, make_account, session_factory):
    make_account("acct-1", "auth-1")
    snaptrade(service, "CONNECTION_DELETED")

    assert connection(session_factory) is None
    with session_factory() as db:
        assert db.get(Account, "acct-1") is None


def test_update_after_delete_is_noop(service, make_account, session_factory):
    """A late connection.updated does not recreate a deleted connection."""
    make_account("acct-1", "auth-1")
    snaptrade(service, "CONNECTION_DELETED")

    assert snaptrade(service, "CONNECTION_UPDATED") == {"ok": True}

    assert connection(session_factory) is None
    with session_factory() as db:
        last = db.query(WebhookLog).order_by(WebhookLog.id.desc()).first()
        assert last.processed is True
        assert last.error is None


def test_bad_secret_is_acknowledged_without_side_effects(service, make_account, session_factory):
    make_account("acct-1", "auth-1")

    assert snaptrade(service, "CONNECTION_BROKEN", secret="wrong") == {"ok": True}

    assert connection(session_factory).disabled is False
    with session_factory() as db:
        log = db.query(WebhookLog).one()
        assert log.processed is False
        assert log.error == "verification failed"


def test_secret_from_header(service, make_account, session_factory):
    make_account("acct-1", "auth-1")
    body = json.dumps({"eventType": "CONNECTION_BROKEN", "brokerageAuthorizationId": "auth-1"}).encode()
    asyncio.run(service.handle_snaptrade(body, {"x-snaptrade-secret": SECRET}))
    assert connection(session_factory).disabled is True


def test_unconfigured_secret_rejects_everything(session_factory, store, make_account):
    make_account("acct-1", "auth-1")
    service = WebhookService(session_factory, store)
    snaptrade(service, "CONNECTION_BROKEN", secret="")
    assert connection(session_factory).disabled is False


def test_unknown_type_is_logged(service, session_factory):
    assert snaptrade(service, "SOMETHING_NEW") == {"ok": True}
    with session_factory() as db:
        log = db.query(WebhookLog).one()
        assert log.type == "SOMETHING_NEW"
        assert log.normalized_type is None
        assert log.processed is True


def test_invalid_json_is_acknowledged(service, session_factory):
    assert asyncio.run(service.handle_snaptrade(b"not json", {})) == {"ok": True}
    with session_factory() as db:
        assert db.query(WebhookLog).one().processed is False


def test_added_for_unseen_connection_triggers_sync(service, store, hooks):
    store.ensure_credential("user-1", "remote-1", "secret")
    snaptrade(service, "CONNECTION_ADDED", authorization_id="auth-new")
    assert hooks.connections == [("user-1", "auth-new")]


def test_added_for_unknown_user_only_logs(service, hooks, session_factory):
    snaptrade(service, "CONNECTION_ADDED", authorization_id="auth-new")
    assert hooks.connections == []
    with session_factory() as db:
        assert db.query(WebhookLog).one().user_id == "remote-1"


def test_holdings_updated_resyncs_account(service, store, hooks, make_account):
    store.ensure_credential("user-1", "remote-1", "secret")
    make_account("acct-1", "auth-1")
    snaptrade(service, "ACCOUNT_HOLDINGS_UPDATED", accountId="acct-1")
    assert hooks.holdings == [("user-1", "acct-1")]


def test_trades_and_transactions_resync_history(service, store, hooks, make_account):
    store.ensure_credential("user-1", "remote-1", "secret")
    make_account("acct-1", "auth-1")

    snaptrade(service, "TRADES_PLACED", accountId="acct-1")
    snaptrade(service, "ACCOUNT_TRANSACTIONS_INITIAL_UPDATE", accountId="acct-1")
    snaptrade(service, "ACCOUNT_TRANSACTIONS_UPDATED", accountId="acct-1")
    # No account named, nothing to pull
    snaptrade(service, "TRADES_PLACED")

    assert hooks.orders == [("user-1", "acct-1")]
    assert hooks.activities == [("user-1", "acct-1"), ("user-1", "acct-1")]
    assert hooks.holdings == []


def test_trades_placed_mirrors_orders(session_factory, store, make_account):
    fake = FakeSnapTrade()
    fake.orders["acct-1"] = [
        {
            "brokerage_order_id": "ord-1",
            "status": "EXECUTED",
            "action": "BUY",
            "order_type": "Market",
            "total_quantity": "3",
            "universal_symbol": {"symbol": "VTI"},
            "time_placed": "2024-03-01T15:30:00Z",
        }
    ]
    connections = ConnectionService(
        session_factory,
        store,
        fake,
        RecoveryCoordinator(fake, store),
        AccountSyncService(session_factory, fake),
    )
    service = WebhookService(session_factory, store, snaptrade_secret=SECRET, hooks=connections)
    store.ensure_credential("user-1", "remote-1", "secret")
    make_account("acct-1", "auth-1")

    assert snaptrade(service, "TRADES_PLACED", accountId="acct-1") == {"ok": True}

    with session_factory() as db:
        assert db.get(Order, "ord-1").symbol == "VTI"
        assert db.query(WebhookLog).one().error is None


def test_follow_up_failure_is_recorded(session_factory, store, make_account):
    class FailingHooks(RecordingHooks):
        async def sync_holdings(self, local_user_id, account_id):
            raise RuntimeError("provider down")

    store.ensure_credential("user-1", "remote-1", "secret")
    make_account("acct-1", "auth-1")
    service = WebhookService(session_factory, store, snaptrade_secret=SECRET, hooks=FailingHooks())

    assert snaptrade(service, "ACCOUNT_HOLDINGS_UPDATED", accountId="acct-1") == {"ok": True}
    with session_factory() as db:
        log = db.query(WebhookLog).one()
        assert log.processed is True
        assert "provider down" in log.error


def teller_signature(body: bytes, secret: str, timestamp: int) -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_teller_disconnect_webhook(service, make_account, session_factory):
    make_account("acc_1", "enr_1", provider=TELLER)
    body = json.dumps(
        {"id": "wh_1", "type": "enrollment.disconnected", "payload": {"enrollment_id": "enr_1", "reason": "disconnected"}}
    ).encode()
    headers = {"teller-signature": teller_signature(body, TELLER_SECRET, int(time.time()))}

    assert asyncio.run(service.handle_teller(body, headers)) == {"ok": True}
    assert connection(session_factory, "enr_1").disabled is True


def test_teller_stale_signature_rejected(service, make_account, session_factory):
    make_account("acc_1", "enr_1", provider=TELLER)
    body = json.dumps({"type": "enrollment.disconnected", "payload": {"enrollment_id": "enr_1"}}).encode()
    headers = {"teller-signature": teller_signature(body, TELLER_SECRET, int(time.time()) - 600)}

    asyncio.run(service.handle_teller(body, headers))

    assert connection(session_factory, "enr_1").disabled is False
    with session_factory() as db:
        assert db.query(WebhookLog).one().error == "verification failed"


def test_webhook_routes_always_ack(client, settings, session_factory):
    from flint.dependencies import ProviderContext
    from flint.main import app

    app.state.context = ProviderContext.build(settings, session_factory)

    response = client.post("/webhooks/snaptrade", json={"eventType": "CONNECTION_BROKEN"})
    assert response.status_code == 200
    assert response.json() == {"ok": True}

    response = client.post("/webhooks/teller", content=b"garbage")
    assert response.status_code == 200
    assert response.json() == {"ok": True}

    response = client.post(
        "/webhooks/teller", content=b"\xff\xfe{", headers={"Teller-Signature": "t=1,v1=ab"}
    )
    assert response.status_code == 200


def test_teller_body_that_is_not_utf8_is_acknowledged(service, session_factory):
    body = b"\xff\xfe{"
    headers = {"teller-signature": f"t={int(time.time())},v1=ab"}

    assert asyncio.run(service.handle_teller(body, headers)) == {"ok": True}
    with session_factory() as db:
        log = db.query(WebhookLog).one()
        assert log.processed is False


def test_teller_future_signature_rejected(service, make_account, session_factory):
    make_account("acc_1", "enr_1", provider=TELLER)
    body = json.dumps({"type": "enrollment.disconnected", "payload": {"enrollment_id": "enr_1"}}).encode()
    headers = {"teller-signature": teller_signature(body, TELLER_SECRET, int(time.time()) + 3600)}

    asyncio.run(service.handle_teller(body, headers))

    assert connection(session_factory, "enr_1").disabled is False
