import logging

from aiogram import Router, types, F, html
from aiogram.exceptions import TelegramAPIError
from aiogram.fsm.context import FSMContext
from sqlalchemy import select
from sqlalchemy.orm import selectinload

import approval
import payments
from database import AsyncSessionLocal, Event, EventStatus, User
from errors import ClubBotError
from keyboards import get_cancel_keyboard, get_event_review_keyboard
from notifications import Notifier
from permissions import is_server_admin
from states import RejectEventReason, RejectPaymentReason

logger = logging.getLogger(__name__)

router = Router()


async def drop_buttons(callback: types.CallbackQuery):
    # the decision is final, so the buttons go away
    try:
        await callback.message.edit_reply_markup(reply_markup=None)
    except TelegramAPIError as e:
        logger.warning("Could not remove review buttons: %s", e)


# Pending events (server admins)
@router.message(F.text == "🗂 Pending events")
async def pending_events(message: types.Message, db_user: User):
    if not is_server_admin(db_user):
        await message.answer("Access denied.")
        return

    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(Event)
            .options(selectinload(Event.club), selectinload(Event.created_by))
            .where(Event.status == EventStatus.PENDING_APPROVAL.value)
            .order_by(Event.created_at)
        )
        events = result.scalars().all()

    if not events:
        await message.answer("No events are waiting for approval.")
        return

    for event in events:
        text = approval.format_review_card(event, event.club, event.created_by)
        await message.answer(text, reply_markup=get_event_review_keyboard(event.id))


@router.callback_query(F.data.startswith("approve_event_"))
async def approve_event(callback: types.CallbackQuery, db_user: User, notifier: Notifier):
    event_id = int(callback.data.split("_")[-1])
    try:
        event = await approval.approve(event_id, db_user, notifier)
    except ClubBotError as e:
        await callback.answer(str(e), show_alert=True)
        return

    await callback.answer("Event approved")
    await drop_buttons(callback)
    await callback.message.answer(f"✅ <b>{html.quote(event.title)}</b> approved by {html.quote(db_user.display_name)}.")


@router.callback_query(F.data.startswith("reject_event_"))
async def start_reject_event(callback: types.CallbackQuery, state: FSMContext, db_user: User):
    if not is_server_admin(db_user):
        logger.warning("User %s tried to reject an event without permission", db_user.telegram_id)
        await callback.answer("Only server admins can approve or reject events.", show_alert=True)
        return

    event_id = int(callback.data.split("_")[-1])
    await state.update_data(event_id=event_id)
    await state.set_state(RejectEventReason.waiting)
    await callback.message.answer("Enter the reason for rejecting the event:", reply_markup=get_cancel_keyboard())
    await callback.answer()


@router.message(RejectEventReason.waiting, F.text)
async def save_reject_event_reason(message: types.Message, state: FSMContext, db_user: User, notifier: Notifier):
    data = await state.get_data()
    await state.clear()
    try:
        event = await approval.reject(data["event_id"], db_user, message.text, notifier)
    except ClubBotError as e:
        await message.answer(f"⚠️ {e}")
        return
    await message.answer(f"❌ <b>{html.quote(event.title)}</b> rejected. The creator was notified.")


# Payment proofs (club moderators)
@router.callback_query(F.data.startswith("verify_payment_"))
async def verify_payment(callback: types.CallbackQuery, db_user: User, notifier: Notifier):
    registration_id = int(callback.data.split("_")[-1])
    try:
        await payments.decide(registration_id, db_user, True, notifier)
    except ClubBotError as e:
        await callback.answer(str(e), show_alert=True)
        return

    await callback.answer("Payment verified")
    await drop_buttons(callback)
    await callback.message.answer(f"✅ Payment {registration_id} verified.")


@router.callback_query(F.data.startswith("reject_payment_"))
async def start_reject_payment(callback: types.CallbackQuery, state: FSMContext, db_user: User):
    registration_id = int(callback.data.split("_")[-1])
    try:
        await payments.check_can_decide(registration_id, db_user)
    except ClubBotError as e:
        await callback.answer(str(e), show_alert=True)
        return

    await state.update_data(registration_id=registration_id)
    await state.set_state(RejectPaymentReason.waiting)
    await callback.message.answer(
        "Enter a note for the participant (or <code>-</code> for none):", reply_markup=get_cancel_keyboard()
    )
    await callback.answer()


@router.message(RejectPaymentReason.waiting, F.text)
async def save_reject_payment_note(message: types.Message, state: FSMContext, db_user: User, notifier: Notifier):
    data = await state.get_data()
    await state.clear()
    note = message.text.strip()
    if note in ("", "-"):
        note = None
    try:
        await payments.decide(data["registration_id"], db_user, False, notifier, note)
    except ClubBotError as e:
        await message.answer(f"⚠️ {e}")
        return
    await message.answer(f"❌ Payment {data['registration_id']} rejected. The participant can upload a new proof.")
