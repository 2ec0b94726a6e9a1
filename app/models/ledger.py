from typing import Optional

from sqlalchemy import BigInteger, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class UserQuota(Base):
    purchaser_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    daily_limit: Mapped[int] = mapped_column(Integer, default=0)
    total_topup_amount: Mapped[int] = mapped_column(BigInteger, default=0)  # admin fee excluded
    version: Mapped[int] = mapped_column(Integer, default=0)


class GlobalEarnings(Base):
    key: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, default=0)  # admin fee included
    version: Mapped[int] = mapped_column(Integer, default=0)


class LeaderboardEntry(Base):
    purchaser_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    total: Mapped[int] = mapped_column(BigInteger, default=0)  # admin fee excluded
    version: Mapped[int] = mapped_column(Integer, default=0)
