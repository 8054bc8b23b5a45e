from datetime import datetime

from sqlalchemy import DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from flint.models.base import Base, utcnow

SNAPTRADE = "snaptrade"
TELLER = "teller"


class UserCredential(Base):
    """Provider registration for a local user (secret is encrypted at rest)."""

    __tablename__ = "user_credentials"
    __table_args__ = (
        UniqueConstraint("local_user_id", "provider", name="uq_credential_user_provider"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    local_user_id: Mapped[str] = mapped_column(String(100), index=True)
    provider: Mapped[str] = mapped_column(String(20))  # snaptrade, teller
    # SnapTrade user id (possibly -vN suffixed) or Teller enrollment id
    remote_user_id: Mapped[str] = mapped_column(String(150), index=True)
    encrypted_secret: Mapped[str] = mapped_column(Text)
    institution_name: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
