from aiogram.types import ReplyKeyboardMarkup, KeyboardButton


TOPUP_BUTTON = "💳 Top up limit"
STATS_BUTTON = "📊 Dashboard"
PENDING_BUTTON = "⏳ Pending payment"


def main_menu_kb() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[
            [
                KeyboardButton(text=TOPUP_BUTTON),
                KeyboardButton(text=STATS_BUTTON),
            ],
            [
                KeyboardButton(text=PENDING_BUTTON),
            ],
        ],
        resize_keyboard=True,
        input_field_placeholder="Choose an option",
    )
