from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from core.config import settings


@dataclass(frozen=True)
class TopupOffer:
    limit: int
    price: int
    label: str


def _parse_package(entry: str) -> Optional[TopupOffer]:
    limit, sep, price = entry.partition(":")
    if not sep:
        return None
    try:
        limit_value, price_value = int(limit), int(price)
    except ValueError:
        return None
    if limit_value <= 0 or price_value <= 0:
        return None
    return TopupOffer(limit=limit_value, price=price_value, label=f"Package {limit_value} limit")


def list_packages(entries: Optional[List[str]] = None) -> List[TopupOffer]:
    """Configured packages, skipping malformed entries, ordered by limit."""
    offers = [offer for offer in (_parse_package(s) for s in (entries if entries is not None else settings.topup_packages)) if offer]
    return sorted(offers, key=lambda o: o.limit)


def find_package(limit: int, entries: Optional[List[str]] = None) -> Optional[TopupOffer]:
    for offer in list_packages(entries):
        if offer.limit == limit:
            return offer
    return None


def custom_offer(limit: int) -> TopupOffer:
    if limit <= 0:
        raise ValueError("limit must be greater than zero")
    if limit < settings.custom_limit_min or limit > settings.custom_limit_max:
        raise ValueError(
            f"limit must be between {settings.custom_limit_min} and {settings.custom_limit_max}"
        )
    return TopupOffer(
        limit=limit,
        price=limit * settings.custom_limit_price_per_unit,
        label=f"Custom {limit} limit",
    )


def format_rupiah(amount: int) -> str:
    # id-ID grouping: 53200 -> Rp 53.200
    return "Rp " + f"{int(amount):,}".replace(",", ".")
