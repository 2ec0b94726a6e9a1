from io import BytesIO
from typing import Optional

import qrcode
from PIL import Image, ImageDraw, ImageFont

from services.topup_catalog import format_rupiah
from services.topup_state import Receipt


RECEIPT_WIDTH = 280
RECEIPT_HEIGHT = 400
HEADER_COLOR = (67, 97, 238)
SUCCESS_COLOR = (76, 175, 80)


def generate_payment_qr(qr_content: str, box_size: int = 10) -> bytes:
    """Render raw QRIS content as a PNG, for gateways that do not host the image."""
    qr = qrcode.QRCode(version=None, box_size=box_size, border=2)
    qr.add_data(qr_content)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _font(size: int, font_path: Optional[str] = None):
    if font_path:
        try:
            return ImageFont.truetype(font_path, size)
        except OSError:
            pass
    return ImageFont.load_default()


def _centered(draw: ImageDraw.ImageDraw, y: int, text: str, font, fill) -> None:
    left, _, right, _ = draw.textbbox((0, 0), text, font=font)
    draw.text(((RECEIPT_WIDTH - (right - left)) // 2, y), text, font=font, fill=fill)


def render_receipt_image(receipt: Receipt, font_path: Optional[str] = None) -> bytes:
    img = Image.new("RGB", (RECEIPT_WIDTH, RECEIPT_HEIGHT), "white")
    draw = ImageDraw.Draw(img)
    title_font = _font(16, font_path)
    body_font = _font(12, font_path)

    draw.rectangle((0, 0, RECEIPT_WIDTH, 60), fill=HEADER_COLOR)
    _centered(draw, 25, "PAYMENT RECEIPT", title_font, "white")

    lines = [
        f"Transaction: {receipt.transaction_label}",
        f"Product: {receipt.product_label}",
        f"Base Amount: {format_rupiah(receipt.base_amount)}",
        f"Admin Fee: {format_rupiah(receipt.surcharge)}",
        f"Total Paid: {format_rupiah(receipt.total_amount)}",
        f"Date: {receipt.timestamp.strftime('%d/%m/%Y %H:%M:%S')}",
    ]
    y = 80
    for line in lines:
        draw.text((15, y), line, font=body_font, fill="black")
        y += 20

    _centered(draw, 230, "PAYMENT SUCCESS", title_font, SUCCESS_COLOR)

    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
