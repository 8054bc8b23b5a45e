import asyncio
from decimal import Decimal

import pytest

from flint.exceptions import AuthInvalidError, ProviderUnavailableError
from flint.models import Account, Activity, Balance, Connection, Order, Position
from flint.services.sync import AccountSyncService
from tests.fakes import FakeSnapTrade, snaptrade_account, snaptrade_position


@pytest.fixture
def fake():
    return FakeSnapTrade()


@pytest.fixture
def service(session_factory, fake):
    return AccountSyncService(session_factory, fake)


def sync(service, authorization_id=None):
    return asyncio.run(
        service.sync_accounts_for_connection("user-1", "remote-1", "secret", authorization_id)
    )


def test_sync_creates_connection_account_balance_positions(service, fake, db_session):
    fake.accounts = [snaptrade_account("acct-1")]
    fake.positions["acct-1"] = [snaptrade_position("AAPL"), snaptrade_position("MSFT", "5", "400")]

    result = sync(service)

    assert result.accounts_synced == 1
    assert result.error is None
    connection = db_session.get(Connection, "auth-1")
    assert connection.local_user_id == "user-1"
    assert connection.broker_name == "Alpaca"
    assert connection.last_sync_at is not None

    account = db_session.get(Account, "acct-1")
    assert account.number_masked == "****5678"
    assert account.total_balance == Decimal("1000")
    balance = db_session.query(Balance).filter_by(account_id="acct-1").one()
    assert balance.cash == Decimal("100")
    assert balance.total_equity == Decimal("1000")
    symbols = sorted(p.symbol for p in db_session.query(Position).filter_by(account_id="acct-1"))
    assert symbols == ["AAPL", "MSFT"]


def test_positions_are_full_replace(service, fake, db_session):
    """Re-syncing with [A] after [A, B] leaves only A."""
    fake.accounts = [snaptrade_account("acct-1")]
    fake.positions["acct-1"] = [snaptrade_position("AAPL"), snaptrade_position("MSFT")]
    sync(service)

    fake.positions["acct-1"] = [snaptrade_position("AAPL")]
    sync(service)

    positions = db_session.query(Position).filter_by(account_id="acct-1").all()
    assert [p.symbol for p in positions] == ["AAPL"]
    assert db_session.query(Balance).filter_by(account_id="acct-1").count() == 1


def test_partial_failure_keeps_synced_accounts(service, fake, db_session):
    """One failing account is reported; the others are still written."""
    fake.accounts = [snaptrade_account("acct-1"), snaptrade_account("acct-2"), snaptrade_account("acct-3")]
    get_balances = fake.get_balances

    async def flaky_balances(remote_user_id, secret, account_id):
        if account_id == "acct-2":
            raise ProviderUnavailableError("timeout", "snaptrade")
        return await get_balances(remote_user_id, secret, account_id)

    fake.get_balances = flaky_balances
    result = sync(service)

    assert result.accounts_synced == 2
    assert "acct-2" in result.error
    assert db_session.get(Account, "acct-1") is not None
    assert db_session.get(Account, "acct-2") is None
    assert db_session.get(Account, "acct-3") is not None


def test_credential_errors_propagate(service, fake):
    fake.accounts = [snaptrade_account("acct-1")]
    fake.fail["get_positions"] = [AuthInvalidError("bad secret", "snaptrade", status_code=401)]
    with pytest.raises(AuthInvalidError):
        sync(service)


def test_listing_failure_is_raised(service, fake):
    fake.fail["list_accounts"] = [ProviderUnavailableError("down", "snaptrade")]
    with pytest.raises(ProviderUnavailableError):
        sync(service)


def test_filter_by_authorization(service, fake, db_session):
    fake.accounts = [snaptrade_account("acct-1", "auth-1"), snaptrade_account("acct-2", "auth-2")]

    result = sync(service, authorization_id="auth-2")

    assert result.accounts_synced == 1
    assert db_session.get(Account, "acct-1") is None
    assert db_session.get(Account, "acct-2").connection_id == "auth-2"


def test_holdings_sync_skips_missing_account(service, fake, db_session):
    """An account deleted from the mirror is skipped, not a foreign key error."""
    result = asyncio.run(service.sync_account_holdings("remote-1", "secret", "ghost"))

    assert result.skipped is True
    assert result.success is True
    assert not any(call[0] == "get_positions" for call in fake.calls)


def test_holdings_sync_replaces_positions(service, fake, make_account, db_session):
    make_account("acct-1")
    fake.positions["acct-1"] = [snaptrade_position("VTI")]

    result = asyncio.run(service.sync_account_holdings("remote-1", "secret", "acct-1"))

    assert result.success is True
    assert result.positions_count == 1
    db_session.expire_all()
    assert [p.symbol for p in db_session.query(Position).all()] == ["VTI"]


def test_holdings_sync_reports_provider_failure(service, fake, make_account):
    make_account("acct-1")
    fake.fail["get_positions"] = [ProviderUnavailableError("down", "snaptrade")]

    result = asyncio.run(service.sync_account_holdings("remote-1", "secret", "acct-1"))

    assert result.success is False
    assert "down" in result.error


def test_orders_upsert_by_id(service, fake, make_account, db_session):
    """The same order id synced twice keeps one row with the latest status."""
    make_account("acct-1")
    order = {
        "brokerage_order_id": "ord-1",
        "status": "PENDING",
        "action": "BUY",
        "order_type": "Limit",
        "total_quantity": "10",
        "limit_price": "150",
        "universal_symbol": {"symbol": "AAPL"},
        "time_placed": "2024-03-01T15:30:00Z",
    }
    fake.orders["acct-1"] = [order]
    asyncio.run(service.sync_orders("remote-1", "secret", "acct-1"))

    fake.orders["acct-1"] = [{**order, "status": "EXECUTED", "filled_quantity": "10"}]
    asyncio.run(service.sync_orders("remote-1", "secret", "acct-1"))

    db_session.expire_all()
    orders = db_session.query(Order).all()
    assert len(orders) == 1
    assert orders[0].status == "EXECUTED"
    assert orders[0].filled_quantity == Decimal("10")


def test_activities_upsert_by_id(service, fake, make_account, db_session):
    make_account("acct-1")
    activity = {"id": "act-1", "type": "DIVIDEND", "amount": "5.25", "trade_date": "2024-02-01"}

    async def activities(*args, **kwargs):
        return [activity]

    fake.list_activities = activities
    asyncio.run(service.sync_activities("remote-1", "secret", "acct-1"))
    activity["amount"] = "5.50"
    asyncio.run(service.sync_activities("remote-1", "secret", "acct-1"))

    db_session.expire_all()
    rows = db_session.query(Activity).all()
    assert len(rows) == 1
    assert rows[0].amount == Decimal("5.50")
