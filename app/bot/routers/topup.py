from aiogram import Router, F
from aiogram.filters import Command, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import CallbackQuery, Message, User

from bot.inline import packages_kb
from bot.keyboards import main_menu_kb, PENDING_BUTTON, TOPUP_BUTTON
from bot.topup_listener import BotTopupListener
from services.topup_catalog import TopupOffer, custom_offer, find_package, format_rupiah, list_packages
from services.topup_engine import TopupCreationError, TopupEngine, TopupInProgressError
from services.topup_state import TopupStatus, format_countdown
from services.topup_store import session_key_for
from core.config import settings


router = Router(name="topup")


class TopupStates(StatesGroup):
    waiting_custom_limit = State()


def _contact(user: User) -> str:
    if user.username:
        return f"@{user.username}"
    return user.full_name or str(user.id)


async def _begin(message: Message, user: User, offer: TopupOffer, topup_engine: TopupEngine, topup_listener: BotTopupListener):
    try:
        tx = await topup_engine.start(
            session_key_for(user.id),
            purchaser_id=user.id,
            purchaser_contact=_contact(user),
            product_label=offer.label,
            base_amount=offer.price,
            quota_to_credit=offer.limit,
        )
    except TopupInProgressError:
        await message.answer("Your previous payment is still being processed. Please wait a moment.")
        return
    except TopupCreationError as exc:
        await message.answer(f"❌ Failed to create payment: {exc}\nPlease try again.", reply_markup=main_menu_kb())
        return
    if tx.status == TopupStatus.AWAITING_SETTLEMENT:
        await topup_listener.send_payment_message(tx)


@router.message(CommandStart())
async def start_handler(message: Message, topup_engine: TopupEngine):
    await message.answer(
        "Welcome! Top up your daily limit with QRIS from the menu below.",
        reply_markup=main_menu_kb(),
    )
    # announces itself through the listener when a persisted payment is re-armed
    await topup_engine.resume(session_key_for(message.from_user.id), message.from_user.id)


@router.message(Command("topup"))
@router.message(F.text == TOPUP_BUTTON)
async def topup_menu(message: Message, state: FSMContext, topup_engine: TopupEngine):
    await state.clear()
    key = session_key_for(message.from_user.id)
    was_running = topup_engine.active(key) is not None
    tx = await topup_engine.resume(key, message.from_user.id)
    if tx is not None:
        if was_running:
            await message.answer(
                f"You have a pending payment of {format_rupiah(tx.total_amount)}. "
                "Complete it or cancel it first."
            )
        return
    await message.answer(
        "Choose a package or enter a custom amount:\n"
        f"Custom price: {format_rupiah(settings.custom_limit_price_per_unit)} per limit",
        reply_markup=packages_kb(list_packages()),
    )


@router.callback_query(F.data.startswith("topup:pkg:"))
async def choose_package(callback: CallbackQuery, topup_engine: TopupEngine, topup_listener: BotTopupListener):
    try:
        limit = int(callback.data.split(":")[2])
    except (IndexError, ValueError):
        await callback.answer("Invalid package", show_alert=True)
        return
    offer = find_package(limit)
    if offer is None:
        await callback.answer("This package is no longer available", show_alert=True)
        return
    await callback.answer()
    await _begin(callback.message, callback.from_user, offer, topup_engine, topup_listener)


@router.callback_query(F.data == "topup:custom")
async def ask_custom_limit(callback: CallbackQuery, state: FSMContext):
    await callback.answer()
    await callback.message.answer(
        f"How many limits do you want? ({settings.custom_limit_min}-{settings.custom_limit_max})"
    )
    await state.set_state(TopupStates.waiting_custom_limit)


@router.message(TopupStates.waiting_custom_limit, F.text.regexp(r"^\d+$"))
async def receive_custom_limit(message: Message, state: FSMContext, topup_engine: TopupEngine, topup_listener: BotTopupListener):
    try:
        offer = custom_offer(int(message.text))
    except ValueError as exc:
        await message.answer(f"Invalid amount: {exc}")
        return
    await state.clear()
    await _begin(message, message.from_user, offer, topup_engine, topup_listener)


@router.message(TopupStates.waiting_custom_limit)
async def invalid_custom_limit(message: Message):
    await message.answer("Please send a whole number.")


@router.callback_query(F.data == "topup:cancel")
async def cancel_payment(callback: CallbackQuery, topup_engine: TopupEngine):
    tx = await topup_engine.cancel(session_key_for(callback.from_user.id))
    if tx is None:
        await callback.answer("There is no pending payment.", show_alert=True)
        return
    await callback.answer("Payment cancelled")


@router.message(Command("pending"))
@router.message(F.text == PENDING_BUTTON)
async def show_pending(message: Message, topup_engine: TopupEngine):
    tx = topup_engine.active(session_key_for(message.from_user.id))
    if tx is None:
        await message.answer("There is no pending payment.")
        return
    await message.answer(
        f"⏳ {tx.product_label}\n"
        f"Amount due: {format_rupiah(tx.total_amount)}\n"
        f"Transaction: {tx.gateway_transaction_id}\n"
        f"Time left: {format_countdown(tx.remaining())}"
    )
