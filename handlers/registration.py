import logging

from aiogram import Router, types, F, html
from aiogram.filters import Command, CommandObject
from aiogram.fsm.context import FSMContext
from aiogram.types import BufferedInputFile

import config
import payments
from background import spawn
from database import User
from errors import ClubBotError, InvalidUploadError, ValidationError
from export import export_participants_xlsx
from keyboards import get_cancel_keyboard, get_guest_registration_keyboard, get_upload_proof_keyboard
from notifications import Notifier
from registration import GuestInfo, RegistrationResult, format_participants, list_participants, register
from states import GuestRegistration
from uploads import PendingUpload, UploadedFile, UploadKind, UploadWaiter, validate_for_kind
from verification import normalize_phone, validate_email

logger = logging.getLogger(__name__)

router = Router()


@router.callback_query(F.data.startswith("join_event_"))
async def join_event(callback: types.CallbackQuery, db_user: User, notifier: Notifier):
    event_id = int(callback.data.split("_")[-1])
    try:
        outcome = await register(event_id, db_user, notifier)
    except ClubBotError as e:
        await callback.answer(str(e), show_alert=True)
        return

    user_id = callback.from_user.id
    title = html.quote(outcome.event.title)
    if outcome.result == RegistrationResult.CONFIRMED:
        await callback.answer("✅ You are registered! Details were sent to you privately.", show_alert=True)
    elif outcome.result == RegistrationResult.PAYMENT_REQUIRED:
        await callback.answer("💳 Payment instructions were sent to you privately.", show_alert=True)
    elif outcome.result == RegistrationResult.RESUBMIT_PAYMENT:
        await notifier.send_to_user(
            user_id,
            f"Your last payment proof for <b>{title}</b> was rejected. Upload a new one:",
            reply_markup=get_upload_proof_keyboard(event_id),
        )
        await callback.answer("Upload a new payment proof in the private chat.", show_alert=True)
    elif outcome.result == RegistrationResult.EXTERNAL:
        await notifier.send_to_user(
            user_id, f"📝 Registration for <b>{title}</b> happens on this form:\n{html.quote(outcome.external_url)}"
        )
        await callback.answer("The registration form link was sent to you privately.", show_alert=True)
    else:
        await notifier.send_to_user(
            user_id,
            f"<b>{title}</b> is open to guests. Press the button to register with your contact details.",
            reply_markup=get_guest_registration_keyboard(event_id),
        )
        await callback.answer("Continue the registration in the private chat.", show_alert=True)


@router.callback_query(F.data.startswith("event_closed_"))
async def event_closed(callback: types.CallbackQuery):
    await callback.answer("🔒 Registration for this event is closed.", show_alert=True)


# Guest registration form (private chat)
@router.callback_query(F.data.startswith("guest_join_"))
async def guest_join(callback: types.CallbackQuery, state: FSMContext):
    event_id = int(callback.data.split("_")[-1])
    await state.clear()
    await state.update_data(event_id=event_id)
    await state.set_state(GuestRegistration.name)
    await callback.message.answer("Enter your full name:", reply_markup=get_cancel_keyboard())
    await callback.answer()


@router.message(GuestRegistration.name, F.text)
async def guest_name(message: types.Message, state: FSMContext):
    name = " ".join(message.text.split())
    if len(name) < 2:
        await message.answer("Please enter your full name:")
        return
    await state.update_data(name=name)
    await state.set_state(GuestRegistration.email)
    await message.answer("Enter your email:", reply_markup=get_cancel_keyboard())


@router.message(GuestRegistration.email, F.text)
async def guest_email(message: types.Message, state: FSMContext):
    try:
        email = validate_email(message.text)
    except ValidationError as e:
        await message.answer(f"⚠️ {e}")
        return
    await state.update_data(email=email)
    await state.set_state(GuestRegistration.phone)
    await message.answer("Enter your phone number (98XXXXXXXX):", reply_markup=get_cancel_keyboard())


@router.message(GuestRegistration.phone, F.text)
async def guest_phone(message: types.Message, state: FSMContext, db_user: User, notifier: Notifier):
    try:
        normalize_phone(message.text)
    except ValidationError as e:
        await message.answer(f"⚠️ {e}")
        return

    data = await state.get_data()
    await state.clear()
    try:
        guest = GuestInfo.validate(data["name"], data["email"], message.text)
        outcome = await register(data["event_id"], db_user, notifier, guest)
    except ClubBotError as e:
        await message.answer(f"⚠️ {e}")
        return

    if outcome.result == RegistrationResult.EXTERNAL:
        await message.answer(f"📝 Register on this form:\n{html.quote(outcome.external_url)}")
    elif outcome.result == RegistrationResult.RESUBMIT_PAYMENT:
        await message.answer("Upload a new payment proof:", reply_markup=get_upload_proof_keyboard(data["event_id"]))


# Payment proof upload
@router.callback_query(F.data.startswith("upload_proof_"))
async def upload_proof(callback: types.CallbackQuery, db_user: User, uploads: UploadWaiter, notifier: Notifier):
    event_id = int(callback.data.split("_")[-1])
    try:
        await payments.check_can_submit(event_id, db_user)
    except ClubBotError as e:
        await callback.answer(str(e), show_alert=True)
        return

    pending = uploads.expect(callback.from_user.id, UploadKind.PAYMENT_PROOF, event_id=event_id)
    minutes = int(config.UPLOAD_TIMEOUT.total_seconds() // 60)
    await callback.message.answer(
        f"📤 Send your payment proof (JPG, PNG or PDF) within {minutes} minutes.", reply_markup=get_cancel_keyboard()
    )
    await callback.answer()
    spawn(collect_proof(callback.message, db_user, uploads, notifier, pending), name=f"proof-{pending.user_id}")


async def collect_proof(
    message: types.Message, db_user: User, uploads: UploadWaiter, notifier: Notifier, pending: PendingUpload
):
    event_id = pending.context["event_id"]
    upload = await uploads.wait(pending, config.UPLOAD_TIMEOUT)
    if upload is None:
        if not pending.future.cancelled():
            await message.answer(
                "⌛ Upload timed out. Press the button to try again.", reply_markup=get_upload_proof_keyboard(event_id)
            )
        return
    try:
        await payments.submit_proof(event_id, db_user, upload, notifier)
    except ClubBotError as e:
        await message.answer(f"⚠️ {e}")
        return
    await message.answer("✅ Payment proof received. You will be notified once it is verified.")


# Any file goes to the upload the user is expected to make
@router.message(F.document | F.photo)
async def receive_file(message: types.Message, uploads: UploadWaiter):
    pending = uploads.pending_for(message.from_user.id)
    if pending is None:
        await message.answer("I am not waiting for a file from you right now.")
        return

    upload = UploadedFile.from_message(message)
    try:
        validate_for_kind(pending.kind, upload)
    except InvalidUploadError as e:
        await message.answer(f"⚠️ {e} Send another file.")
        return
    uploads.deliver(message.from_user.id, upload)


# Participant list and export (club moderators)
@router.callback_query(F.data.startswith("participants_"))
async def show_participants(callback: types.CallbackQuery, db_user: User, notifier: Notifier):
    event_id = int(callback.data.split("_")[-1])
    try:
        event, registrations = await list_participants(event_id, db_user)
    except ClubBotError as e:
        await callback.answer(str(e), show_alert=True)
        return

    await notifier.send_to_user(callback.from_user.id, format_participants(event, registrations))
    await callback.answer("The list was sent to you privately.")


@router.message(Command("export_event"))
async def cmd_export_event(message: types.Message, command: CommandObject, db_user: User):
    arg = (command.args or "").strip()
    if not arg.isdigit():
        await message.answer("Usage: <code>/export_event &lt;event id&gt;</code>")
        return

    try:
        filename, data = await export_participants_xlsx(int(arg), db_user)
    except ClubBotError as e:
        await message.answer(f"⚠️ {e}")
        return

    await message.answer_document(BufferedInputFile(data, filename=filename), caption="📊 Participant export")
