import logging

from aiogram import Router, types, F, html
from aiogram.filters import Command, CommandObject
from aiogram.fsm.context import FSMContext

import config
from approval import after_finalize
from background import spawn
from database import EventStatus, User
from errors import ClubBotError, SessionExpiredError
from keyboards import get_cancel_keyboard, get_upload_keyboard
from notifications import Notifier
from sessions import WizardSession, WizardStage
from states import CreateEvent
from uploads import PendingUpload, UploadKind, UploadWaiter
from wizard import EventWizard, basic_info_from_text, details_from_text, payment_from_text

logger = logging.getLogger(__name__)

router = Router()

STAGE_STATES = {
    WizardStage.BASIC_INFO: CreateEvent.basic_info,
    WizardStage.DETAILS: CreateEvent.details,
    WizardStage.PAYMENT: CreateEvent.payment,
    WizardStage.PAYMENT_QR: CreateEvent.payment_qr,
    WizardStage.VERIFY_EMAIL: CreateEvent.verify_email,
    WizardStage.VERIFY_CODE: CreateEvent.verify_code,
    WizardStage.POSTER: CreateEvent.poster,
}

USAGE = (
    "Usage: <code>/create_event &lt;club&gt; [public|verified|private]</code>\n\n"
    "Example: <code>/create_event robotics public</code>"
)

BASIC_INFO_PROMPT = (
    "📝 <b>Step 1: basic info</b>\n\n"
    "Send everything in one message:\n\n"
    "<code>Title: Intro to Robotics\n"
    "Date: 2026-12-25 14:30\n"
    "Venue: Hall B\n"
    "Category: workshop\n"
    "Description: What the event is about</code>\n\n"
    "Categories: workshop, seminar, competition, social, meeting, cultural, sports, other."
)

DETAILS_PROMPT = (
    "📋 <b>Step 2: registration details</b>\n\n"
    "All lines are optional:\n\n"
    "<code>Min: 5\n"
    "Max: 50\n"
    "Deadline: 2026-12-20\n"
    "Fee: 0\n"
    "Form: https://forms.example.com/...\n"
    "Batch: 078, 079\n"
    "Faculty: civil\n"
    "Guests: no\n"
    "Requirements: Bring a laptop\n"
    "Link: https://meet.example.com/...</code>\n\n"
    "Send <code>skip</code> for a free event without limits."
)

PAYMENT_PROMPT = (
    "💳 <b>Step 3: payment details</b>\n\n"
    "At least one method is required:\n\n"
    "<code>Bank: Bank name, account number, holder\n"
    "Khalti: 98XXXXXXXX\n"
    "eSewa: 98XXXXXXXX\n"
    "Instructions: Put your name in the remarks</code>"
)


def stage_prompt(ws: WizardSession) -> tuple[str, types.InlineKeyboardMarkup]:
    if ws.stage == WizardStage.BASIC_INFO:
        return BASIC_INFO_PROMPT, get_cancel_keyboard()
    if ws.stage == WizardStage.DETAILS:
        return DETAILS_PROMPT, get_cancel_keyboard()
    if ws.stage == WizardStage.PAYMENT:
        return PAYMENT_PROMPT, get_cancel_keyboard()
    if ws.stage == WizardStage.PAYMENT_QR:
        return "📷 Upload a payment QR code or skip this step.", get_upload_keyboard(UploadKind.PAYMENT_QR)
    if ws.stage == WizardStage.VERIFY_EMAIL:
        text = "✉️ <b>Email verification</b>\n\nSend your email address to receive a verification code."
        if config.VERIFICATION_EMAIL_DOMAIN:
            text += f"\nUse your @{config.VERIFICATION_EMAIL_DOMAIN} address."
        return text, get_cancel_keyboard()
    if ws.stage == WizardStage.VERIFY_CODE:
        return (
            f"🔑 Enter the {config.VERIFICATION_CODE_LENGTH}-digit code sent to <b>{html.quote(ws.email or '')}</b>.\n"
            "Send your email again to get a new code.",
            get_cancel_keyboard(),
        )
    return "🖼 Upload a poster for the announcement or skip this step.", get_upload_keyboard(UploadKind.POSTER)


async def show_stage(message: types.Message, state: FSMContext, ws: WizardSession):
    await state.set_state(STAGE_STATES[ws.stage])
    text, markup = stage_prompt(ws)
    await message.answer(text, reply_markup=markup)


async def report_error(message: types.Message, state: FSMContext, wizard: EventWizard, user_id: int, error: ClubBotError):
    """Reply with the error and keep the FSM state in line with the wizard session."""
    ws = wizard.current(user_id)
    if ws is None or isinstance(error, SessionExpiredError):
        await state.clear()
        await message.answer(f"⚠️ {error}")
        return
    await state.set_state(STAGE_STATES[ws.stage])
    await message.answer(f"⚠️ {error}", reply_markup=get_cancel_keyboard())


# Start the wizard
@router.message(Command("create_event"))
async def cmd_create_event(
    message: types.Message, command: CommandObject, state: FSMContext, db_user: User, wizard: EventWizard
):
    args = (command.args or "").split()
    if not args:
        await message.answer(USAGE)
        return

    try:
        ws = await wizard.start(db_user, args[0], args[1] if len(args) > 1 else "public")
    except ClubBotError as e:
        await state.clear()
        await message.answer(f"⚠️ {e}")
        return

    await state.clear()
    await message.answer(
        f"🎉 Creating an event for <b>{html.quote(ws.fields['club_name'])}</b>.\n"
        f"You have {int(config.WIZARD_SESSION_TTL.total_seconds() // 60)} minutes to finish."
    )
    await show_stage(message, state, ws)


@router.message(F.text == "➕ Create event")
async def text_create_event(message: types.Message):
    await message.answer(USAGE)


@router.message(CreateEvent.basic_info, F.text)
async def process_basic_info(message: types.Message, state: FSMContext, wizard: EventWizard):
    user_id = message.from_user.id
    try:
        ws = wizard.submit_basic_info(user_id, basic_info_from_text(message.text))
    except ClubBotError as e:
        await report_error(message, state, wizard, user_id, e)
        return
    await show_stage(message, state, ws)


@router.message(CreateEvent.details, F.text)
async def process_details(message: types.Message, state: FSMContext, wizard: EventWizard):
    user_id = message.from_user.id
    try:
        ws = wizard.submit_details(user_id, details_from_text(message.text))
    except ClubBotError as e:
        await report_error(message, state, wizard, user_id, e)
        return
    await show_stage(message, state, ws)


@router.message(CreateEvent.payment, F.text)
async def process_payment(message: types.Message, state: FSMContext, wizard: EventWizard):
    user_id = message.from_user.id
    try:
        ws = wizard.submit_payment(user_id, payment_from_text(message.text))
    except ClubBotError as e:
        await report_error(message, state, wizard, user_id, e)
        return
    await show_stage(message, state, ws)


@router.message(CreateEvent.verify_email, F.text)
@router.message(CreateEvent.verify_code, F.text.contains("@"))
async def process_email(message: types.Message, state: FSMContext, wizard: EventWizard):
    user_id = message.from_user.id
    try:
        ws = await wizard.request_code(user_id, message.text)
    except ClubBotError as e:
        await report_error(message, state, wizard, user_id, e)
        return
    await show_stage(message, state, ws)


@router.message(CreateEvent.verify_code, F.text)
async def process_code(message: types.Message, state: FSMContext, wizard: EventWizard):
    user_id = message.from_user.id
    try:
        ws = wizard.confirm_code(user_id, message.text)
    except ClubBotError as e:
        await report_error(message, state, wizard, user_id, e)
        return
    await message.answer("✅ Email verified.")
    await show_stage(message, state, ws)


# Payment QR: skip now or wait for an upload in the background
@router.callback_query(CreateEvent.payment_qr, F.data == f"skip_{UploadKind.PAYMENT_QR}")
async def skip_payment_qr(callback: types.CallbackQuery, state: FSMContext, wizard: EventWizard, uploads: UploadWaiter):
    user_id = callback.from_user.id
    # a wait started by the Upload button must not resume later
    uploads.cancel(user_id)
    await callback.answer()
    try:
        ws = wizard.attach_payment_qr(user_id, None)
    except ClubBotError as e:
        await report_error(callback.message, state, wizard, user_id, e)
        return
    await show_stage(callback.message, state, ws)


@router.callback_query(CreateEvent.payment_qr, F.data == f"upload_{UploadKind.PAYMENT_QR}")
async def upload_payment_qr(callback: types.CallbackQuery, state: FSMContext, wizard: EventWizard, uploads: UploadWaiter):
    pending = uploads.expect(callback.from_user.id, UploadKind.PAYMENT_QR)
    minutes = int(config.UPLOAD_TIMEOUT.total_seconds() // 60)
    await callback.message.answer(f"📤 Send the QR code image within {minutes} minutes.", reply_markup=get_cancel_keyboard())
    await callback.answer()
    spawn(collect_payment_qr(callback.message, state, wizard, uploads, pending), name=f"qr-{pending.user_id}")


async def collect_payment_qr(
    message: types.Message, state: FSMContext, wizard: EventWizard, uploads: UploadWaiter, pending: PendingUpload
):
    upload = await uploads.wait(pending, config.UPLOAD_TIMEOUT)
    if upload is None:
        if pending.future.cancelled():
            return
        await message.answer("⌛ Upload timed out. Continuing without a QR code.")
    try:
        ws = wizard.attach_payment_qr(pending.user_id, upload)
    except ClubBotError as e:
        await report_error(message, state, wizard, pending.user_id, e)
        return
    await show_stage(message, state, ws)


# Poster: the last stage, creating the event
@router.callback_query(CreateEvent.poster, F.data == f"skip_{UploadKind.POSTER}")
async def skip_poster(
    callback: types.CallbackQuery, state: FSMContext, wizard: EventWizard, uploads: UploadWaiter, notifier: Notifier
):
    uploads.cancel(callback.from_user.id)
    await callback.answer()
    await create_event(callback.message, state, wizard, notifier, callback.from_user.id, None)


@router.callback_query(CreateEvent.poster, F.data == f"upload_{UploadKind.POSTER}")
async def upload_poster(
    callback: types.CallbackQuery, state: FSMContext, wizard: EventWizard, uploads: UploadWaiter, notifier: Notifier
):
    pending = uploads.expect(callback.from_user.id, UploadKind.POSTER)
    minutes = int(config.UPLOAD_TIMEOUT.total_seconds() // 60)
    await callback.message.answer(f"📤 Send the poster image within {minutes} minutes.", reply_markup=get_cancel_keyboard())
    await callback.answer()
    spawn(collect_poster(callback.message, state, wizard, uploads, notifier, pending), name=f"poster-{pending.user_id}")


async def collect_poster(
    message: types.Message,
    state: FSMContext,
    wizard: EventWizard,
    uploads: UploadWaiter,
    notifier: Notifier,
    pending: PendingUpload,
):
    upload = await uploads.wait(pending, config.UPLOAD_TIMEOUT)
    if upload is None:
        if pending.future.cancelled():
            return
        await message.answer("⌛ Upload timed out. Creating the event without a poster.")
    await create_event(message, state, wizard, notifier, pending.user_id, upload)


async def create_event(message: types.Message, state: FSMContext, wizard: EventWizard, notifier: Notifier, user_id: int, poster):
    try:
        event = await wizard.finalize(user_id, poster)
    except ClubBotError as e:
        await report_error(message, state, wizard, user_id, e)
        return

    await state.clear()
    if event.status == EventStatus.PENDING_APPROVAL:
        text = f"✅ <b>{html.quote(event.title)}</b> was created and sent for approval. You will be notified."
    else:
        text = f"✅ <b>{html.quote(event.title)}</b> was created and will be announced shortly."
    await message.answer(text)
    spawn(after_finalize(event.id, notifier), name=f"after-finalize-{event.id}")
