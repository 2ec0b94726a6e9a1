from aiogram import Router, F
from aiogram.filters import Command
from aiogram.types import Message
from aiogram.utils.text_decorations import html_decoration

from bot.keyboards import STATS_BUTTON
from services.ledger import get_daily_limit, get_global_earnings, get_leaderboard
from services.topup_catalog import format_rupiah


router = Router(name="stats")


@router.message(Command("stats"))
@router.message(F.text == STATS_BUTTON)
async def dashboard_stats(message: Message):
    daily_limit = await get_daily_limit(message.from_user.id)
    earnings = await get_global_earnings()
    leaders = await get_leaderboard(limit=10)

    text = (
        f"📊 Your daily limit: {daily_limit}\n"
        f"💰 Developer earnings: {format_rupiah(earnings)}\n\n"
        "🏆 Top up leaderboard:\n"
    )
    if leaders:
        for row in leaders:
            text += f"{row.rank}. {html_decoration.quote(row.display_name)} - {format_rupiah(row.total)}\n"
    else:
        text += "No leaderboard data yet.\n"
    await message.answer(text)
