from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Date, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flint.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from flint.models.account import Account


class Activity(Base, TimestampMixin):
    """Dividend, trade, transfer or fee recorded against an account."""

    __tablename__ = "activities"

    # Remote activity / transaction id
    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )

    date: Mapped[date] = mapped_column(Date, index=True)
    type: Mapped[str] = mapped_column(String(50))  # BUY, DIVIDEND, card_payment, ...
    description: Mapped[str | None] = mapped_column(String(500))
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    symbol: Mapped[str | None] = mapped_column(String(50), index=True)

    account: Mapped["Account"] = relationship(back_populates="activities")
