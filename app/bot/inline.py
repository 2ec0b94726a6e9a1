from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

from services.topup_catalog import TopupOffer, format_rupiah


def packages_kb(offers: list[TopupOffer]) -> InlineKeyboardMarkup:
    rows = []
    for offer in offers:
        rows.append([InlineKeyboardButton(
            text=f"{offer.limit} limit - {format_rupiah(offer.price)}",
            callback_data=f"topup:pkg:{offer.limit}",
        )])
    rows.append([InlineKeyboardButton(text="✏️ Custom amount", callback_data="topup:custom")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def payment_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="❌ Cancel payment", callback_data="topup:cancel")],
        ]
    )
