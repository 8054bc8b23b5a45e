from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flint.models.base import Base, utcnow

if TYPE_CHECKING:
    from flint.models.account import Account


class Balance(Base):
    """Current balance snapshot for an account (replaced on every sync)."""

    __tablename__ = "balances"

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), unique=True
    )
    cash: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    total_equity: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    buying_power: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    account: Mapped["Account"] = relationship(back_populates="balance")
