import logging
from datetime import timedelta
from typing import Dict, Optional, Tuple

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest
from aiogram.types import BufferedInputFile, Message

from bot.inline import payment_kb
from bot.keyboards import main_menu_kb
from services.ledger import get_daily_limit
from services.qrcode_gen import generate_payment_qr, render_receipt_image
from services.topup_catalog import format_rupiah
from services.topup_engine import TopupListener
from services.topup_state import PendingTopup, Receipt, format_countdown


logger = logging.getLogger(__name__)


def payment_caption(tx: PendingTopup, remaining: Optional[timedelta] = None) -> str:
    remaining = tx.remaining() if remaining is None else remaining
    return (
        f"🧾 {tx.product_label}\n"
        f"Price: {format_rupiah(tx.base_amount)}\n"
        f"Admin fee: {format_rupiah(tx.surcharge)}\n"
        f"<b>Pay exactly: {format_rupiah(tx.total_amount)}</b>\n\n"
        f"Scan the QRIS code with any e-wallet or banking app.\n"
        f"⏳ Time left: {format_countdown(remaining)}"
    )


class BotTopupListener(TopupListener):
    """Mirrors top-up lifecycle events into the purchaser's chat."""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot
        # session_key -> (chat_id, message_id, last minute shown)
        self._messages: Dict[str, Tuple[int, int, int]] = {}

    async def send_payment_message(self, tx: PendingTopup) -> Optional[Message]:
        ref = tx.qr_image_reference or ""
        if ref.startswith(("http://", "https://")):
            photo = ref
        elif ref:
            photo = BufferedInputFile(generate_payment_qr(ref), filename="qris.png")
        else:
            logger.warning("Top-up %s has no QR reference", tx.gateway_transaction_id)
            return None
        sent = await self.bot.send_photo(
            chat_id=tx.purchaser_id,
            photo=photo,
            caption=payment_caption(tx),
            reply_markup=payment_kb(),
        )
        self._messages[tx.session_key] = (sent.chat.id, sent.message_id, int(tx.remaining().total_seconds()) // 60)
        return sent

    async def _drop_payment_message(self, session_key: str) -> None:
        tracked = self._messages.pop(session_key, None)
        if not tracked:
            return
        chat_id, message_id, _ = tracked
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramBadRequest as exc:
            logger.debug("Payment message %s already gone: %s", message_id, exc)

    async def on_countdown(self, tx: PendingTopup, remaining: timedelta) -> None:
        tracked = self._messages.get(tx.session_key)
        if not tracked:
            return
        chat_id, message_id, shown_minute = tracked
        minute = int(remaining.total_seconds()) // 60
        # editing every second would hit Telegram flood limits
        if minute == shown_minute:
            return
        self._messages[tx.session_key] = (chat_id, message_id, minute)
        await self.bot.edit_message_caption(
            chat_id=chat_id,
            message_id=message_id,
            caption=payment_caption(tx, remaining),
            reply_markup=payment_kb(),
        )

    async def on_resumed(self, tx: PendingTopup) -> None:
        await self.bot.send_message(
            tx.purchaser_id,
            "Your previous payment is still being processed. Please complete it.",
        )
        await self.send_payment_message(tx)

    async def on_settled(self, tx: PendingTopup, receipt: Receipt) -> None:
        await self._drop_payment_message(tx.session_key)
        daily_limit = await get_daily_limit(tx.purchaser_id)
        await self.bot.send_photo(
            chat_id=tx.purchaser_id,
            photo=BufferedInputFile(render_receipt_image(receipt), filename="receipt.png"),
            caption=(
                f"✅ Top up {tx.quota_to_credit} daily limit succeeded!\n"
                f"Paid: {format_rupiah(receipt.total_amount)}\n"
                f"Your daily limit is now {daily_limit}."
            ),
            reply_markup=main_menu_kb(),
        )

    async def on_expired(self, tx: PendingTopup) -> None:
        await self._drop_payment_message(tx.session_key)
        await self.bot.send_message(
            tx.purchaser_id,
            "⌛ The payment has expired. You can start a new top-up at any time.",
            reply_markup=main_menu_kb(),
        )

    async def on_cancelled(self, tx: PendingTopup) -> None:
        await self._drop_payment_message(tx.session_key)
        await self.bot.send_message(tx.purchaser_id, "Payment cancelled.", reply_markup=main_menu_kb())

    async def on_settlement_rejected(self, tx: PendingTopup, reported_amount: Optional[int]) -> None:
        await self.bot.send_message(
            tx.purchaser_id,
            "⚠️ We could not confirm your payment automatically. An operator has been notified.",
        )
