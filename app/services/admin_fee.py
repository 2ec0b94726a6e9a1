import random
from typing import Optional

from core.config import settings


_system_random = random.SystemRandom()


def draw_admin_fee(
    min_fee: Optional[int] = None,
    max_fee: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> int:
    """Draw a random admin fee, uniform over [min_fee, max_fee] inclusive.

    The fee makes concurrently pending totals unlikely to collide, since the
    gateway reports settlements by amount only. It is drawn again for every
    new top-up attempt and never reused.
    """
    low = settings.admin_fee_min if min_fee is None else int(min_fee)
    high = settings.admin_fee_max if max_fee is None else int(max_fee)
    if low < 0 or high < low:
        raise ValueError(f"invalid admin fee range [{low}, {high}]")
    return (rng or _system_random).randint(low, high)
