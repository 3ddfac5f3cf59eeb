from datetime import datetime

from aiogram import Router, types, F, html
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from channels import announcement_markup, format_event_card
from database import AsyncSessionLocal, Event, EventStatus, User
from keyboards import get_events_keyboard, get_main_menu_keyboard
from permissions import is_server_admin
from uploads import UploadWaiter
from wizard import EventWizard

router = Router()

HELP_TEXT = (
    "ℹ️ <b>Club events bot</b>\n\n"
    "📅 /events - upcoming events you can register for\n"
    "➕ /create_event &lt;club&gt; [public|verified|private] - create an event for your club\n"
    "📊 /export_event &lt;id&gt; - participant list as a spreadsheet (club moderators)\n\n"
    "Register with the 📝 button under an announcement. For paid events you will get the "
    "payment details privately and upload a proof; a club moderator verifies it.\n\n"
    "Press ❌ Cancel at any time to stop a form."
)


async def upcoming_events(limit: int = 20) -> list[Event]:
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(Event)
            .where(Event.status == EventStatus.SCHEDULED.value, Event.starts_at > datetime.now())
            .order_by(Event.starts_at)
            .limit(limit)
        )
        return list(result.scalars().all())


# /start and the main menu
@router.message(Command("start"))
@router.message(Command("main_menu"))
async def cmd_start(message: types.Message, db_user: User):
    name = html.quote(message.from_user.full_name or "friend")
    text = (
        f"Hi, <b>{name}</b>!\n\n"
        "Here you can find club events, register for them and create events for your clubs.\n\n"
        "Choose an action:"
    )
    admin = is_server_admin(db_user)
    if admin:
        text += "\n\n🔧 <b>You are a server admin</b>: pending events come to you for review."
    await message.answer(text, reply_markup=get_main_menu_keyboard(is_admin=admin))


@router.message(Command("help"))
@router.message(F.text == "ℹ️ Help")
async def cmd_help(message: types.Message):
    await message.answer(HELP_TEXT)


# Upcoming events
@router.message(Command("events"))
@router.message(F.text == "📅 Events")
async def cmd_events(message: types.Message):
    events = await upcoming_events()
    if not events:
        await message.answer("😔 No upcoming events yet. Check back later!")
        return
    await message.answer("📅 <b>Upcoming events</b>\n\nChoose one for details:", reply_markup=get_events_keyboard(events))


@router.callback_query(F.data.startswith("view_event_"))
async def view_event(callback: types.CallbackQuery):
    event_id = int(callback.data.split("_")[-1])
    async with AsyncSessionLocal() as session:
        event = await session.get(Event, event_id, options=[selectinload(Event.club)])

    if event is None or event.status != EventStatus.SCHEDULED:
        await callback.answer("Event not found.", show_alert=True)
        return

    text = format_event_card(event, event.club.name)
    markup = announcement_markup(event)
    if event.poster_file_id:
        await callback.message.answer_photo(event.poster_file_id, caption=text[:1024], reply_markup=markup)
    else:
        await callback.message.answer(text, reply_markup=markup)
    await callback.answer()


# Universal cancel for every form and upload wait
@router.callback_query(F.data == "cancel_form")
async def cancel_form(callback: types.CallbackQuery, state: FSMContext, wizard: EventWizard, uploads: UploadWaiter):
    user_id = callback.from_user.id
    await state.clear()
    wizard.cancel(user_id)
    uploads.cancel(user_id)
    await callback.message.answer("❌ Cancelled.")
    await callback.answer()
