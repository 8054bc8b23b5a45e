import asyncio
from decimal import Decimal

import pytest

from flint.exceptions import ValidationError
from flint.models import Order
from flint.services.providers.snaptrade import OrderRequest
from flint.services.recovery import RecoveryCoordinator
from flint.services.trading_service import TradingService, validate_order
from tests.fakes import FakeSnapTrade


@pytest.fixture
def fake():
    return FakeSnapTrade()


@pytest.fixture
def service(session_factory, store, fake):
    store.ensure_credential("user-1", "remote-1", "secret")
    return TradingService(session_factory, fake, RecoveryCoordinator(fake, store))


def market_buy(**overrides):
    fields = {"account_id": "acct-1", "action": "BUY", "order_type": "Market", "units": Decimal("3"), "symbol": "AAPL"}
    fields.update(overrides)
    return OrderRequest(**fields)


def test_validate_order():
    validate_order(market_buy())
    with pytest.raises(ValidationError):
        validate_order(market_buy(action="HOLD"))
    with pytest.raises(ValidationError):
        validate_order(market_buy(units=Decimal("0")))
    with pytest.raises(ValidationError):
        validate_order(market_buy(order_type="Limit"))
    with pytest.raises(ValidationError):
        validate_order(market_buy(symbol=None))


def test_place_order_records_order(service, make_account, db_session):
    make_account("acct-1")

    body = asyncio.run(service.place_order("user-1", market_buy()))

    assert body["brokerage_order_id"] == "order-1"
    order = db_session.get(Order, "order-1")
    assert order.symbol == "AAPL"
    assert order.status == "PENDING"
    assert order.quantity == Decimal("3")


def test_place_order_on_unmirrored_account(service, db_session):
    asyncio.run(service.place_order("user-1", market_buy()))
    assert db_session.query(Order).count() == 0


def test_cancel_order_updates_mirror(service, make_account, db_session):
    make_account("acct-1")
    asyncio.run(service.place_order("user-1", market_buy()))

    asyncio.run(service.cancel_order("user-1", "acct-1", "order-1"))

    db_session.expire_all()
    order = db_session.get(Order, "order-1")
    assert order.status == "CANCELLED"
    assert order.cancelled_at is not None


def test_place_order_recovers_deleted_user(service, fake, store, make_account):
    make_account("acct-1")
    fake.valid_secrets = set()

    body = asyncio.run(service.place_order("user-1", market_buy()))

    assert body["status"] == "PENDING"
    assert fake.register_calls == 1
    assert store.get_credential("user-1").rotated_at is not None
