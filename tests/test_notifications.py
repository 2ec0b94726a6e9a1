"""
Operator notification and image rendering tests.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_topup
from services.notification_service import OperatorNotifier, incident_text, receipt_caption
from services.qrcode_gen import RECEIPT_HEIGHT, RECEIPT_WIDTH, generate_payment_qr, render_receipt_image
from services.topup_state import Receipt


PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def sample_receipt() -> Receipt:
    tx = make_topup(gateway_transaction_id="TRX1")
    return Receipt.for_topup(tx, datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc))


class TestImages:
    def test_payment_qr_is_png(self) -> None:
        assert generate_payment_qr("00020101021226670016COM.NOBUBANK").startswith(PNG_MAGIC)

    def test_receipt_image_has_fixed_size(self) -> None:
        from io import BytesIO

        from PIL import Image

        data = render_receipt_image(sample_receipt())
        assert data.startswith(PNG_MAGIC)
        assert Image.open(BytesIO(data)).size == (RECEIPT_WIDTH, RECEIPT_HEIGHT)


class TestOperatorNotifier:
    def test_caption_lists_amounts(self) -> None:
        caption = receipt_caption(sample_receipt())
        assert "Rp 53.200" in caption
        assert "Rp 3.200" in caption
        assert "johndoe@gmail.com" in caption

    def test_user_supplied_names_are_html_escaped(self) -> None:
        tx = make_topup(gateway_transaction_id="TRX1", purchaser_contact="<b>Tom & Jerry</b>")
        escaped = "&lt;b&gt;Tom &amp; Jerry&lt;/b&gt;"

        caption = receipt_caption(Receipt.for_topup(tx))
        incident = incident_text(tx, 53200)

        assert escaped in caption and "<b>" not in caption
        assert escaped in incident and "<b>" not in incident

    def test_incident_text_without_amount(self) -> None:
        assert "Reported: none" in incident_text(make_topup(gateway_transaction_id="TRX1"), None)

    @pytest.mark.asyncio
    async def test_receipt_goes_to_every_operator(self) -> None:
        bot = MagicMock()
        bot.send_photo = AsyncMock()
        notifier = OperatorNotifier(bot, chat_ids=[1, 2])

        assert await notifier.send_receipt(sample_receipt()) is True
        assert [call.kwargs["chat_id"] for call in bot.send_photo.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_delivery_failure_is_not_raised(self) -> None:
        bot = MagicMock()
        bot.send_photo = AsyncMock(side_effect=RuntimeError("blocked by user"))
        notifier = OperatorNotifier(bot, chat_ids=[1])

        assert await notifier.send_receipt(sample_receipt()) is False

    @pytest.mark.asyncio
    async def test_no_operators_configured(self) -> None:
        bot = MagicMock()
        bot.send_photo = AsyncMock()

        assert await OperatorNotifier(bot, chat_ids=[]).send_receipt(sample_receipt()) is False
        bot.send_photo.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_incident_is_sent_as_text(self) -> None:
        bot = MagicMock()
        bot.send_message = AsyncMock()
        notifier = OperatorNotifier(bot, chat_ids=[5])

        assert await notifier.send_incident(make_topup(gateway_transaction_id="TRX1"), 53000) is True
        assert "Rp 53.000" in bot.send_message.await_args.kwargs["text"]
