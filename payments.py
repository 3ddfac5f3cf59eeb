"""Payment verification for events with a fee.

A paid registration starts as ``pending_payment`` with its seat already
held. The registrant uploads a proof (``payment_submitted``) and a club
moderator verifies or rejects it. A rejected registrant keeps the seat and
may upload a new proof; a verified one is final.
"""
import logging
from datetime import datetime

from aiogram import html
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import config
from audit import record_audit
from capacity import count_confirmation, reserve_seat
from channels import refresh_announcement
from database import (
    AsyncSessionLocal, AuditAction, Event, Registration, RegistrationStatus, User,
    registration_transition_allowed
)
from errors import AlreadyDecidedError, AuthorizationError, CapacityReachedError, NotFoundError, StateError
from keyboards import get_payment_review_keyboard, get_upload_proof_keyboard
from notifications import Notifier
from permissions import ClubAction, check_club_permission, club_reviewers
from uploads import UploadedFile, validate_upload

logger = logging.getLogger(__name__)

PROOF_STATE_MESSAGES = {
    RegistrationStatus.PAYMENT_SUBMITTED: "⏳ Your payment proof is already waiting for verification.",
    RegistrationStatus.VERIFIED: "✅ Your payment has already been verified.",
    RegistrationStatus.CONFIRMED: "✅ You are already registered for this event.",
}


def format_payment_instructions(event: Event) -> str:
    methods = []
    if event.bank_details:
        methods.append(f"🏦 <b>Bank transfer:</b>\n{html.quote(event.bank_details)}")
    if event.khalti_number:
        methods.append(f"📱 <b>Khalti:</b> <code>{event.khalti_number}</code>")
    if event.esewa_number:
        methods.append(f"💳 <b>eSewa:</b> <code>{event.esewa_number}</code>")

    text = (
        f"💳 <b>Payment required</b>\n\n"
        f"To complete your registration for <b>{html.quote(event.title)}</b>, "
        f"pay <b>{event.fee}</b> and upload the proof.\n\n"
        + ("\n\n".join(methods) if methods else "Contact the organizer for payment details.")
    )
    if event.payment_instructions:
        text += f"\n\n📋 {html.quote(event.payment_instructions)}"
    text += (
        "\n\n1. Pay using any method above\n"
        "2. Take a screenshot or save the receipt\n"
        "3. Press the button below and send it (JPG, PNG or PDF, up to "
        f"{config.PROOF_MAX_BYTES // (1024 * 1024)} MB)\n\n"
        "Your registration is confirmed after the payment is verified."
    )
    return text


async def open_payment(
    session: AsyncSession, event: Event, user: User, guest: dict | None = None
) -> Registration:
    """Hold a seat and create the pending registration in the caller's transaction."""
    if not await reserve_seat(session, event.id, confirm=False):
        raise CapacityReachedError()
    registration = Registration(
        event_id=event.id,
        user_id=user.id,
        status=RegistrationStatus.PENDING_PAYMENT.value,
        counted=False,
        **(guest or {}),
    )
    session.add(registration)
    await session.flush()
    record_audit(
        session,
        AuditAction.PAYMENT_REQUESTED,
        user.id,
        club_id=event.club_id,
        event_id=event.id,
        registration_id=registration.id,
        details={"fee": event.fee},
    )
    return registration


async def send_payment_instructions(notifier: Notifier, event: Event, telegram_id: int) -> bool:
    markup = get_upload_proof_keyboard(event.id)
    text = format_payment_instructions(event)
    if event.payment_qr_file_id:
        # captions are short, so the QR goes first and the details follow
        await notifier.send_to_user(telegram_id, "📷 Payment QR code", photo=event.payment_qr_file_id)
    message = await notifier.send_to_user(telegram_id, text, reply_markup=markup)
    return message is not None


async def get_registration(session: AsyncSession, event_id: int, user: User) -> Registration | None:
    return (await session.execute(
        select(Registration)
        .options(selectinload(Registration.event).selectinload(Event.club))
        .where(Registration.event_id == event_id, Registration.user_id == user.id)
    )).scalar_one_or_none()


async def check_can_submit(event_id: int, user: User) -> Registration:
    """Raise unless the user has a registration waiting for a proof."""
    async with AsyncSessionLocal() as session:
        registration = await get_registration(session, event_id, user)
    if registration is None:
        raise NotFoundError("You have no registration for this event. Press Register first.")
    if not registration_transition_allowed(registration.status, RegistrationStatus.PAYMENT_SUBMITTED):
        raise StateError(PROOF_STATE_MESSAGES.get(registration.status, "This registration does not need a payment."))
    return registration


def format_proof_caption(registration: Registration, user: User, resubmitted: bool) -> str:
    event = registration.event
    name = registration.guest_name or user.display_name
    text = (
        f"💰 <b>Payment proof {'resubmitted' if resubmitted else 'submitted'}</b>\n\n"
        f"Event: <b>{html.quote(event.title)}</b>\n"
        f"Participant: {html.quote(name)}"
    )
    if user.username:
        text += f" (@{html.quote(user.username)})"
    if registration.guest_email:
        text += f"\nEmail: {html.quote(registration.guest_email)}"
    if registration.guest_phone:
        text += f"\nPhone: {html.quote(registration.guest_phone)}"
    text += f"\nFee: {event.fee}\nRegistration ID: <code>{registration.id}</code>"
    return text


def validate_proof(upload: UploadedFile) -> None:
    validate_upload(upload, config.PROOF_ALLOWED_TYPES, config.PROOF_MAX_BYTES, "payment proof")


async def submit_proof(event_id: int, user: User, upload: UploadedFile, notifier: Notifier) -> Registration:
    # an invalid file is rejected before anything is read or written
    validate_proof(upload)

    async with AsyncSessionLocal() as session:
        registration = await get_registration(session, event_id, user)
        if registration is None:
            raise NotFoundError("You have no registration for this event.")
        previous = registration.status
        if not registration_transition_allowed(previous, RegistrationStatus.PAYMENT_SUBMITTED):
            raise StateError(PROOF_STATE_MESSAGES.get(previous, "This registration does not need a payment."))

        result = await session.execute(
            update(Registration)
            .where(
                Registration.id == registration.id,
                Registration.status.in_([RegistrationStatus.PENDING_PAYMENT.value, RegistrationStatus.REJECTED.value]),
            )
            .values(
                status=RegistrationStatus.PAYMENT_SUBMITTED.value,
                proof_file_id=upload.file_id,
                proof_content_type=upload.content_type,
                proof_size=upload.size,
                proof_submitted_at=datetime.now(),
                decided_by_id=None,
                decided_at=None,
                decision_note=None,
            )
        )
        if result.rowcount == 0:
            await session.rollback()
            raise StateError(PROOF_STATE_MESSAGES[RegistrationStatus.PAYMENT_SUBMITTED])

        record_audit(
            session,
            AuditAction.PAYMENT_SUBMITTED,
            user.id,
            club_id=registration.event.club_id,
            event_id=event_id,
            registration_id=registration.id,
            details={"resubmission": previous == RegistrationStatus.REJECTED, "content_type": upload.content_type},
        )
        await session.commit()

        reviewers = await club_reviewers(session, registration.event.club, config.MAX_PAYMENT_REVIEWERS)

    caption = format_proof_caption(registration, user, previous == RegistrationStatus.REJECTED)
    markup = get_payment_review_keyboard(registration.id)
    delivered = 0
    for reviewer in reviewers:
        if upload.is_image:
            message = await notifier.send_to_user(reviewer.telegram_id, caption, reply_markup=markup, photo=upload.file_id)
        else:
            message = await notifier.send_document(reviewer.telegram_id, upload.file_id, caption=caption, reply_markup=markup)
        if message is not None:
            delivered += 1
    if not delivered:
        logger.warning("No reviewer received payment proof of registration %s", registration.id)

    logger.info("Payment proof submitted for registration %s (event %s)", registration.id, event_id)
    return registration


async def check_can_decide(registration_id: int, reviewer: User) -> Registration:
    """Raise unless the reviewer moderates the club behind this registration."""
    async with AsyncSessionLocal() as session:
        registration = await session.get(Registration, registration_id, options=[selectinload(Registration.event)])
        if registration is None:
            raise NotFoundError("Registration not found.")
        check = await check_club_permission(session, reviewer, registration.event.club_id, ClubAction.MODERATE)
    if not check.allowed:
        logger.warning("User %s tried to review payment %s without permission", reviewer.telegram_id, registration_id)
        raise AuthorizationError("Only club moderators can review payments.")
    return registration


async def decide(
    registration_id: int, reviewer: User, approve: bool, notifier: Notifier, note: str | None = None
) -> Registration:
    target = RegistrationStatus.VERIFIED if approve else RegistrationStatus.REJECTED

    async with AsyncSessionLocal() as session:
        async with session.begin():
            registration = await session.get(
                Registration,
                registration_id,
                options=[selectinload(Registration.event), selectinload(Registration.user)],
            )
            if registration is None:
                raise NotFoundError("Registration not found.")

            event = registration.event
            check = await check_club_permission(session, reviewer, event.club_id, ClubAction.MODERATE)
            if not check.allowed:
                logger.warning(
                    "User %s tried to review payment %s without permission", reviewer.telegram_id, registration_id
                )
                raise AuthorizationError("Only club moderators can review payments.")

            if registration.status in (RegistrationStatus.VERIFIED, RegistrationStatus.REJECTED):
                raise AlreadyDecidedError(f"This payment was already {registration.status}.")
            if not registration_transition_allowed(registration.status, target):
                raise StateError("There is no payment proof to review yet.")

            values = {
                "status": target.value,
                "decided_by_id": reviewer.id,
                "decided_at": datetime.now(),
                "decision_note": note,
            }
            criteria = [
                Registration.id == registration_id,
                Registration.status == RegistrationStatus.PAYMENT_SUBMITTED.value,
            ]
            if approve:
                values["counted"] = True
                criteria.append(Registration.counted.is_(False))
            result = await session.execute(
                update(Registration).where(*criteria).values(**values)
            )
            if result.rowcount == 0:
                raise AlreadyDecidedError("This payment was already reviewed.")

            if approve:
                await count_confirmation(session, event.id)

            record_audit(
                session,
                AuditAction.PAYMENT_VERIFIED if approve else AuditAction.PAYMENT_REJECTED,
                reviewer.id,
                club_id=event.club_id,
                event_id=event.id,
                registration_id=registration_id,
                reason=note,
            )

    user = registration.user
    if approve:
        text = f"✅ Your payment for <b>{html.quote(event.title)}</b> was verified. You are registered!"
        if event.meeting_link:
            text += f"\n\n🔗 Meeting link: {html.quote(event.meeting_link)}"
        await notifier.send_to_user(user.telegram_id, text)
        await refresh_announcement(event.id, notifier)
    else:
        text = f"❌ Your payment proof for <b>{html.quote(event.title)}</b> was rejected."
        if note:
            text += f"\n\nReason: {html.quote(note)}"
        text += "\n\nYou can upload a new proof."
        await notifier.send_to_user(user.telegram_id, text, reply_markup=get_upload_proof_keyboard(event.id))

    logger.info("Payment %s %s by %s", registration_id, target.value, reviewer.telegram_id)
    return registration
