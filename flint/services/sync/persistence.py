"""
Narrow write operations on the local mirror.

None of these functions commit: callers group the writes for one account
into a single short unit of work, after all network calls for it are done.
"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from flint.models import (
    NEEDS_RECONNECT,
    Account,
    Activity,
    Balance,
    Connection,
    Order,
    Position,
)
from flint.models.base import utcnow

logger = logging.getLogger(__name__)

# Fields refreshed on an existing order; the rest are fixed at placement
ORDER_MUTABLE_FIELDS = (
    "status",
    "filled_quantity",
    "avg_fill_price",
    "filled_at",
    "cancelled_at",
    "price",
)


def upsert_connection(
    db: Session,
    authorization_id: str,
    local_user_id: str,
    provider: str,
    broker_name: str | None = None,
    disabled: bool | None = None,
) -> Connection:
    """Create the connection if unseen, otherwise refresh its metadata."""
    connection = db.get(Connection, authorization_id)
    if connection is None:
        connection = Connection(
            id=authorization_id,
            local_user_id=local_user_id,
            provider=provider,
            broker_name=broker_name,
            disabled=bool(disabled),
        )
        db.add(connection)
        db.flush()
        logger.info("Created %s connection %s for user %s", provider, authorization_id, local_user_id)
        return connection

    if broker_name:
        connection.broker_name = broker_name
    if disabled is not None:
        connection.disabled = disabled
    return connection


def upsert_account(db: Session, connection_id: str, fields: dict) -> Account:
    account = db.get(Account, fields["id"])
    if account is None:
        account = Account(connection_id=connection_id, **fields)
        db.add(account)
    else:
        account.connection_id = connection_id
        for key, value in fields.items():
            if key != "id" and value is not None:
                setattr(account, key, value)
    db.flush()
    return account


def replace_balance(db: Session, account_id: str, fields: dict) -> Balance:
    """Full replace: the previous snapshot is deleted, never merged."""
    db.query(Balance).filter(Balance.account_id == account_id).delete(synchronize_session=False)
    balance = Balance(account_id=account_id, last_updated=utcnow(), **fields)
    db.add(balance)
    return balance


def replace_positions(db: Session, account_id: str, positions: list[dict]) -> int:
    """Full replace of the account's position snapshot."""
    db.query(Position).filter(Position.account_id == account_id).delete(synchronize_session=False)
    now = utcnow()
    for fields in positions:
        db.add(Position(account_id=account_id, last_updated=now, **fields))
    return len(positions)


def delete_positions(db: Session, account_id: str) -> int:
    """Remove positions for an account (used for orphans of deleted accounts)."""
    return db.query(Position).filter(Position.account_id == account_id).delete(
        synchronize_session=False
    )


def upsert_orders(db: Session, account_id: str, orders: list[dict]) -> int:
    """Insert new orders and update status/fill data of known ones by id."""
    count = 0
    for fields in orders:
        if not fields.get("id"):
            continue
        order = db.get(Order, fields["id"])
        if order is None:
            db.add(Order(account_id=account_id, **fields))
        else:
            for key in ORDER_MUTABLE_FIELDS:
                value = fields.get(key)
                if value is not None:
                    setattr(order, key, value)
        count += 1
    db.flush()
    return count


def upsert_activities(db: Session, account_id: str, activities: list[dict]) -> int:
    count = 0
    for fields in activities:
        activity = db.get(Activity, fields["id"])
        if activity is None:
            db.add(Activity(account_id=account_id, **fields))
        else:
            for key, value in fields.items():
                if key != "id":
                    setattr(activity, key, value)
        count += 1
    db.flush()
    return count


def mark_synced(db: Session, account: Account, when: datetime | None = None) -> None:
    when = when or utcnow()
    account.holdings_last_sync_at = when
    account.connection.last_sync_at = when


def set_connection_disabled(db: Session, authorization_id: str, disabled: bool) -> bool:
    """Returns False when the connection is unknown (nothing to update)."""
    connection = db.get(Connection, authorization_id)
    if connection is None:
        return False
    connection.disabled = disabled
    return True


def touch_connection(db: Session, authorization_id: str) -> bool:
    connection = db.get(Connection, authorization_id)
    if connection is None:
        return False
    connection.last_sync_at = utcnow()
    return True


def delete_connection(db: Session, authorization_id: str) -> bool:
    """Delete a connection and, through the cascade, its accounts and their data."""
    connection = db.get(Connection, authorization_id)
    if connection is None:
        return False
    db.delete(connection)
    return True


def mark_user_needs_reconnect(db: Session, local_user_id: str, provider: str) -> tuple[int, int]:
    """Disable all of a user's connections and flag their accounts; data is kept."""
    connections = (
        db.query(Connection)
        .filter(Connection.local_user_id == local_user_id, Connection.provider == provider)
        .all()
    )
    account_count = 0
    for connection in connections:
        connection.disabled = True
        for account in connection.accounts:
            account.status = NEEDS_RECONNECT
            account_count += 1
    return len(connections), account_count
