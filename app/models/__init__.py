# Import all models to ensure they are registered with SQLAlchemy
from .base import Base
from .topup import TopupSessionRecord, AppliedSettlement
from .ledger import UserQuota, GlobalEarnings, LeaderboardEntry

__all__ = [
    "Base",
    "TopupSessionRecord",
    "AppliedSettlement",
    "UserQuota",
    "GlobalEarnings",
    "LeaderboardEntry",
]
