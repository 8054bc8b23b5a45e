from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flint.models.base import Base, utcnow

if TYPE_CHECKING:
    from flint.models.account import Account


class Position(Base):
    """Current holding in an account (snapshot, no history)."""

    __tablename__ = "positions"

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )

    symbol: Mapped[str] = mapped_column(String(50), index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    avg_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    last_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    market_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    unrealized_pnl: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    account: Mapped["Account"] = relationship(back_populates="positions")
