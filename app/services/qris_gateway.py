from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import httpx

from core.config import settings


class GatewayError(Exception):
    """Base error for QRIS gateway calls."""


class GatewayNetworkError(GatewayError):
    """Transport failure, non-2xx response or unreadable body."""


class GatewayRejectedError(GatewayError):
    """The gateway answered with a non-success status flag."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass
class GatewayPayment:
    transaction_id: str
    expiry_deadline: Optional[datetime]
    qr_image_reference: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SettlementReport:
    """Latest settlement seen by the merchant feed; not tied to any transaction id."""

    amount: Optional[int] = None
    expired_notice: bool = False
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_settlement(self) -> bool:
        return self.amount is not None


class QrisGatewayClient:
    """Stateless client for the QRIS push-payment gateway.

    Exposes the two primitives the gateway offers: creating a payment request
    and reading the merchant's most recent settled amount.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        merchant_id: Optional[str] = None,
        auth_key: Optional[str] = None,
        static_code: Optional[str] = None,
        timeout: Optional[float] = None,
        gateway_timezone: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.qris_api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.qris_api_key
        self.merchant_id = merchant_id if merchant_id is not None else settings.qris_merchant_id
        self.auth_key = auth_key if auth_key is not None else settings.qris_auth_key
        self.static_code = static_code if static_code is not None else settings.qris_static_code
        self.timeout = timeout or settings.qris_timeout_seconds
        self.tz = ZoneInfo(gateway_timezone or settings.qris_timezone)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}{path}", params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise GatewayNetworkError(f"{path}: {exc}") from exc
        except ValueError as exc:
            raise GatewayNetworkError(f"{path}: invalid JSON body") from exc
        if not isinstance(data, dict):
            raise GatewayNetworkError(f"{path}: unexpected response shape")
        return data

    async def create(self, total_amount: int, static_code_ref: Optional[str] = None) -> GatewayPayment:
        """Create a payment request for the exact total amount."""
        data = await self._get_json("/createpayment", {
            "apikey": self.api_key,
            "amount": int(total_amount),
            "codeqr": static_code_ref or self.static_code,
        })
        if not data.get("status"):
            raise GatewayRejectedError(str(data.get("message") or "Unknown error"))

        result = data.get("result") or {}
        transaction_id = result.get("idtransaksi") or result.get("transactionId")
        if not transaction_id:
            raise GatewayRejectedError("gateway response carries no transaction id")

        image = result.get("imageqris")
        qr_reference = image.get("url") if isinstance(image, dict) else image
        if not qr_reference:
            # some deployments return the raw QR payload instead of an image
            qr_reference = result.get("qr_string") or result.get("qrString")

        return GatewayPayment(
            transaction_id=str(transaction_id),
            expiry_deadline=self.parse_deadline(result.get("expired")),
            qr_image_reference=qr_reference,
            raw=result,
        )

    async def poll_latest_settlement(self) -> SettlementReport:
        """Read the merchant-wide latest settlement. Network failures raise GatewayNetworkError."""
        data = await self._get_json("/cekstatus", {
            "apikey": self.api_key,
            "merchant": self.merchant_id,
            "keyorkut": self.auth_key,
        })
        message = str(data.get("message") or "")
        if not data.get("status"):
            return SettlementReport(
                expired_notice="expired" in message.lower(),
                message=message,
                raw=data,
            )

        result = data.get("result")
        if not isinstance(result, dict):
            return SettlementReport(message=message, raw=data)
        return SettlementReport(amount=_parse_amount(result.get("amount")), message=message, raw=result)

    def parse_deadline(self, value: Any) -> Optional[datetime]:
        """Accept epoch seconds/milliseconds or an ISO-like timestamp; naive values use the gateway zone."""
        if value is None or value == "":
            return None
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value.strip())
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            seconds = value / 1000 if value > 1e12 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        if isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=self.tz)
            return parsed.astimezone(timezone.utc)
        return None


def _parse_amount(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip()))
    except ValueError:
        return None
