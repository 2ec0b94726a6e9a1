import logging
from typing import Iterable, List, Optional

from aiogram import Bot
from aiogram.types import BufferedInputFile
from aiogram.utils.text_decorations import html_decoration

from core.config import settings
from services.qrcode_gen import render_receipt_image
from services.topup_catalog import format_rupiah
from services.topup_state import PendingTopup, Receipt


logger = logging.getLogger(__name__)


def receipt_caption(receipt: Receipt) -> str:
    return (
        "💰 New top-up received\n"
        f"Amount: {format_rupiah(receipt.total_amount)}\n"
        f"Product: {html_decoration.quote(receipt.product_label)}\n"
        f"Contact: {html_decoration.quote(receipt.purchaser_contact)}\n"
        f"Admin fee: {format_rupiah(receipt.surcharge)}\n"
        f"Transaction: {html_decoration.quote(receipt.transaction_label)}"
    )


def incident_text(tx: PendingTopup, reported_amount: Optional[int]) -> str:
    reported = format_rupiah(reported_amount) if reported_amount is not None else "none"
    return (
        "🚨 Settlement rejected, please review\n"
        f"Transaction: {html_decoration.quote(tx.gateway_transaction_id or '')}\n"
        f"Purchaser: {html_decoration.quote(tx.purchaser_contact)} ({tx.purchaser_id})\n"
        f"Expected: {format_rupiah(tx.total_amount)}\n"
        f"Reported: {reported}"
    )


class OperatorNotifier:
    """Best-effort push of receipts and settlement incidents to operator chats.

    Delivery failures are logged and never reach the settlement path.
    """

    def __init__(self, bot: Bot, chat_ids: Optional[Iterable[int]] = None) -> None:
        self.bot = bot
        self.chat_ids: List[int] = list(chat_ids if chat_ids is not None else settings.admin_ids)

    async def send_receipt(self, receipt: Receipt) -> bool:
        if not self.chat_ids:
            return False
        try:
            image = render_receipt_image(receipt)
        except Exception:
            logger.exception("Could not render receipt image for %s", receipt.transaction_label)
            image = None

        delivered = False
        for chat_id in self.chat_ids:
            try:
                if image is not None:
                    await self.bot.send_photo(
                        chat_id=chat_id,
                        photo=BufferedInputFile(image, filename="receipt.png"),
                        caption=receipt_caption(receipt),
                    )
                else:
                    await self.bot.send_message(chat_id=chat_id, text=receipt_caption(receipt))
                delivered = True
            except Exception as exc:
                logger.warning("Receipt push to %s failed: %s", chat_id, exc)
        if delivered:
            logger.info("Receipt %s pushed to operators", receipt.transaction_label)
        return delivered

    async def send_incident(self, tx: PendingTopup, reported_amount: Optional[int]) -> bool:
        delivered = False
        for chat_id in self.chat_ids:
            try:
                await self.bot.send_message(chat_id=chat_id, text=incident_text(tx, reported_amount))
                delivered = True
            except Exception as exc:
                logger.warning("Incident push to %s failed: %s", chat_id, exc)
        return delivered
