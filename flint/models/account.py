from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import JSON, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flint.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from flint.models.activity import Activity
    from flint.models.balance import Balance
    from flint.models.connection import Connection
    from flint.models.order import Order
    from flint.models.position import Position

NEEDS_RECONNECT = "needs_reconnect"


class Account(Base, TimestampMixin):
    """Brokerage or bank account mirrored from a provider."""

    __tablename__ = "accounts"

    # Remote account id
    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    connection_id: Mapped[str] = mapped_column(
        ForeignKey("connections.id", ondelete="CASCADE"), index=True
    )

    institution: Mapped[str | None] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255))
    number_masked: Mapped[str | None] = mapped_column(String(20))
    type: Mapped[str | None] = mapped_column(String(50))  # e.g. "TFSA", "checking"
    status: Mapped[str] = mapped_column(String(30), default="open")
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    total_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    holdings_last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Store raw API response for debugging
    _raw_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Relationships
    connection: Mapped["Connection"] = relationship(back_populates="accounts")
    balance: Mapped["Balance | None"] = relationship(
        back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )
    positions: Mapped[list["Position"]] = relationship(
        back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )
    orders: Mapped[list["Order"]] = relationship(
        back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )
    activities: Mapped[list["Activity"]] = relationship(
        back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )
