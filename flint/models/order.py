from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flint.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from flint.models.account import Account


class Order(Base, TimestampMixin):
    """Brokerage order, upserted by remote id so status history survives."""

    __tablename__ = "orders"

    # Remote (brokerage) order id
    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )

    symbol: Mapped[str] = mapped_column(String(50), index=True)
    side: Mapped[str] = mapped_column(String(10))  # BUY, SELL
    type: Mapped[str] = mapped_column(String(30))  # Market, Limit, ...
    time_in_force: Mapped[str | None] = mapped_column(String(10))
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    filled_quantity: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    avg_fill_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    status: Mapped[str] = mapped_column(String(30), index=True)
    placed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    filled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    account: Mapped["Account"] = relationship(back_populates="orders")
