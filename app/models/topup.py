from typing import Optional

from sqlalchemy import BigInteger, Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class TopupSessionRecord(Base):
    """Durable slot holding the single in-flight top-up of a session."""

    session_key: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    purchaser_id: Mapped[int] = mapped_column(BigInteger, index=True)
    payload: Mapped[str] = mapped_column(Text)  # JSON mirror of PendingTopup


class AppliedSettlement(Base):
    """One row per gateway transaction whose settlement has been (or is being) credited."""

    gateway_transaction_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    purchaser_id: Mapped[int] = mapped_column(BigInteger, index=True)
    total_amount: Mapped[int] = mapped_column(BigInteger)
    # each flag flips in the same DB transaction as its counter credit
    quota_credited: Mapped[bool] = mapped_column(Boolean, default=False)
    earnings_credited: Mapped[bool] = mapped_column(Boolean, default=False)
    leaderboard_credited: Mapped[bool] = mapped_column(Boolean, default=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    receipt_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
