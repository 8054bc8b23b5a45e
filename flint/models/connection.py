from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flint.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from flint.models.account import Account


class Connection(Base, TimestampMixin):
    """One remote authorization grant (SnapTrade authorization or Teller enrollment)."""

    __tablename__ = "connections"

    # Remote authorization id, globally unique across users
    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    local_user_id: Mapped[str] = mapped_column(String(100), index=True)
    provider: Mapped[str] = mapped_column(String(20), default="snaptrade")
    broker_name: Mapped[str | None] = mapped_column(String(255))
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    accounts: Mapped[list["Account"]] = relationship(
        back_populates="connection",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
