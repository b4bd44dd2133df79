"""Consumed proof nullifiers."""

from datetime import datetime, timezone

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ConsumedNullifier(Base):
    """Existence of a row means the nullifier has been spent, forever."""

    __tablename__ = "kyc_nullifiers"

    nullifier: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_by_session: Mapped[str] = mapped_column(String, nullable=False, index=True)
    wallet_address: Mapped[str] = mapped_column(String, nullable=False)
    consumed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
