from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TopupStatus(str, enum.Enum):
    DRAFT = "draft"
    AWAITING_GATEWAY_ACK = "awaiting_gateway_ack"
    AWAITING_SETTLEMENT = "awaiting_settlement"
    SETTLED = "settled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    CREATION_FAILED = "creation_failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {
    TopupStatus.SETTLED,
    TopupStatus.EXPIRED,
    TopupStatus.CANCELLED,
    TopupStatus.CREATION_FAILED,
}


@dataclass
class PendingTopup:
    """The single top-up in flight for a session.

    ``total_amount`` is derived from ``base_amount + surcharge`` and is the only
    key the settlement feed can be correlated with.
    """

    session_key: str
    purchaser_id: int
    purchaser_contact: str
    product_label: str
    base_amount: int
    surcharge: int
    quota_to_credit: int
    status: TopupStatus = TopupStatus.DRAFT
    gateway_transaction_id: Optional[str] = None
    qr_image_reference: Optional[str] = None
    expiry_deadline: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def total_amount(self) -> int:
        return self.base_amount + self.surcharge

    @property
    def credited_amount(self) -> int:
        """Amount counted towards the purchaser's totals (admin fee excluded)."""
        return self.total_amount - self.surcharge

    def remaining(self, now: Optional[datetime] = None) -> timedelta:
        if self.expiry_deadline is None:
            return timedelta(0)
        return self.expiry_deadline - (now or utcnow())

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expiry_deadline is not None and self.remaining(now) <= timedelta(0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_key": self.session_key,
            "purchaser_id": self.purchaser_id,
            "purchaser_contact": self.purchaser_contact,
            "product_label": self.product_label,
            "base_amount": self.base_amount,
            "surcharge": self.surcharge,
            "total_amount": self.total_amount,
            "quota_to_credit": self.quota_to_credit,
            "status": self.status.value,
            "gateway_transaction_id": self.gateway_transaction_id,
            "qr_image_reference": self.qr_image_reference,
            "expiry_deadline": self.expiry_deadline.isoformat() if self.expiry_deadline else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingTopup":
        """Rebuild from a persisted record; raises ValueError/KeyError/TypeError on bad input."""
        tx = cls(
            session_key=str(data["session_key"]),
            purchaser_id=int(data["purchaser_id"]),
            purchaser_contact=str(data.get("purchaser_contact") or ""),
            product_label=str(data.get("product_label") or ""),
            base_amount=int(data["base_amount"]),
            surcharge=int(data["surcharge"]),
            quota_to_credit=int(data["quota_to_credit"]),
            status=TopupStatus(data["status"]),
            gateway_transaction_id=data.get("gateway_transaction_id"),
            qr_image_reference=data.get("qr_image_reference"),
            expiry_deadline=_parse_aware(data.get("expiry_deadline")),
            created_at=_parse_aware(data.get("created_at")) or utcnow(),
        )
        if "total_amount" in data and int(data["total_amount"]) != tx.total_amount:
            raise ValueError("stored total_amount does not equal base_amount + surcharge")
        return tx


@dataclass(frozen=True)
class Receipt:
    transaction_label: str
    product_label: str
    purchaser_contact: str
    base_amount: int
    surcharge: int
    total_amount: int
    quota_credited: int
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_label": self.transaction_label,
            "product_label": self.product_label,
            "purchaser_contact": self.purchaser_contact,
            "base_amount": self.base_amount,
            "surcharge": self.surcharge,
            "total_amount": self.total_amount,
            "quota_credited": self.quota_credited,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Receipt":
        return cls(
            transaction_label=str(data["transaction_label"]),
            product_label=str(data["product_label"]),
            purchaser_contact=str(data["purchaser_contact"]),
            base_amount=int(data["base_amount"]),
            surcharge=int(data["surcharge"]),
            total_amount=int(data["total_amount"]),
            quota_credited=int(data["quota_credited"]),
            timestamp=_parse_aware(data["timestamp"]) or utcnow(),
        )

    @classmethod
    def for_topup(cls, tx: PendingTopup, timestamp: Optional[datetime] = None) -> "Receipt":
        return cls(
            transaction_label=tx.gateway_transaction_id or "",
            product_label=tx.product_label,
            purchaser_contact=tx.purchaser_contact,
            base_amount=tx.base_amount,
            surcharge=tx.surcharge,
            total_amount=tx.total_amount,
            quota_credited=tx.quota_to_credit,
            timestamp=timestamp or utcnow(),
        )


def _parse_aware(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_countdown(remaining: timedelta) -> str:
    total_seconds = int(remaining.total_seconds())
    if total_seconds <= 0:
        return "Expired"
    mins, secs = divmod(total_seconds, 60)
    return f"{mins}:{secs:02d}"
