"""Registration and capacity.

Free events confirm a seat immediately; paid events hold a seat and hand
the registration to the payment gate. Capacity is enforced by a single
conditional UPDATE (see ``capacity.reserve_seat``), never by comparing a
count read earlier in Python.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from aiogram import html
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from audit import record_audit
from capacity import close_if_full, reserve_seat
from channels import refresh_announcement
from database import (
    AsyncSessionLocal, AuditAction, EligibilityRule, Event, EventStatus, Registration,
    RegistrationStatus, RuleKind, User
)
from eligibility import check_registration_eligibility
from errors import (
    AuthorizationError, CapacityReachedError, DuplicateRegistrationError, EventNotOpenError,
    IneligibleError, NotFoundError, ValidationError
)
from notifications import Notifier
from payments import get_registration, open_payment, send_payment_instructions
from permissions import ClubAction, check_club_permission
from verification import normalize_phone, validate_email

logger = logging.getLogger(__name__)


class RegistrationResult(StrEnum):
    CONFIRMED = "confirmed"
    PAYMENT_REQUIRED = "payment_required"
    RESUBMIT_PAYMENT = "resubmit_payment"
    EXTERNAL = "external"
    GUEST_DETAILS_REQUIRED = "guest_details_required"


@dataclass
class RegistrationOutcome:
    result: RegistrationResult
    event: Event
    registration: Registration | None = None
    closed: bool = False

    @property
    def external_url(self) -> str | None:
        return self.event.external_form_url


@dataclass(frozen=True)
class GuestInfo:
    name: str
    email: str
    phone: str

    @classmethod
    def validate(cls, name: str, email: str, phone: str) -> "GuestInfo":
        name = " ".join((name or "").split())
        if len(name) < 2:
            raise ValidationError("Please enter your full name.", field="name")
        if len(name) > 200:
            raise ValidationError("The name must be at most 200 characters.", field="name")
        return cls(name, validate_email(email or ""), normalize_phone(phone or ""))

    def as_columns(self) -> dict:
        return {"guest_name": self.name, "guest_email": self.email, "guest_phone": self.phone}


DUPLICATE_MESSAGES = {
    RegistrationStatus.CONFIRMED: "You are already registered for this event.",
    RegistrationStatus.VERIFIED: "You are already registered for this event.",
    RegistrationStatus.PENDING_PAYMENT: "You already registered. Upload your payment proof to complete it.",
    RegistrationStatus.PAYMENT_SUBMITTED: "Your payment proof is waiting for verification.",
}


def check_scheduled(event: Event) -> None:
    if event.status != EventStatus.SCHEDULED:
        raise EventNotOpenError("This event is not open for registration.")


def check_open(event: Event, now: datetime) -> None:
    check_scheduled(event)
    if not event.registration_open:
        if event.max_participants is not None and event.reserved_seats >= event.max_participants:
            raise CapacityReachedError()
        raise EventNotOpenError("Registration for this event is closed.")
    if event.starts_at <= now:
        raise EventNotOpenError("This event has already started.")
    if event.registration_deadline is not None and event.registration_deadline < now.date():
        raise EventNotOpenError("The registration deadline has passed.")


async def _allows_guests(session, event: Event) -> bool:
    rule = (await session.execute(
        select(EligibilityRule.id).where(
            EligibilityRule.event_id == event.id,
            EligibilityRule.kind == RuleKind.GUEST.value,
        )
    )).first()
    return rule is not None


async def _close_when_full(session, event: Event, actor: User) -> bool:
    if not await close_if_full(session, event.id):
        return False
    record_audit(
        session,
        AuditAction.REGISTRATION_CLOSED,
        actor.id,
        club_id=event.club_id,
        event_id=event.id,
        details={"max_participants": event.max_participants},
    )
    return True


async def register(
    event_id: int, actor: User, notifier: Notifier, guest: GuestInfo | None = None
) -> RegistrationOutcome:
    now = datetime.now()
    guest_columns = guest.as_columns() if guest else {}
    try:
        async with AsyncSessionLocal() as session:
            async with session.begin():
                event = await session.get(Event, event_id, options=[selectinload(Event.club)])
                if event is None:
                    raise NotFoundError("Event not found.")
                check_scheduled(event)

                # a rejected payer still holds a seat, so capacity is not checked again
                existing = await get_registration(session, event_id, actor)
                if existing is not None:
                    if existing.status == RegistrationStatus.REJECTED:
                        return RegistrationOutcome(RegistrationResult.RESUBMIT_PAYMENT, event, existing)
                    raise DuplicateRegistrationError(
                        DUPLICATE_MESSAGES.get(existing.status, "You are already registered for this event.")
                    )
                check_open(event, now)

                eligibility = await check_registration_eligibility(session, event, actor)
                if not eligibility.eligible:
                    raise IneligibleError(eligibility.reason or "You are not eligible for this event.")

                if guest is None and not actor.is_verified and await _allows_guests(session, event):
                    return RegistrationOutcome(RegistrationResult.GUEST_DETAILS_REQUIRED, event)

                if event.external_form_url:
                    return RegistrationOutcome(RegistrationResult.EXTERNAL, event)

                if event.is_paid:
                    registration = await open_payment(session, event, actor, guest_columns)
                    result = RegistrationResult.PAYMENT_REQUIRED
                else:
                    if not await reserve_seat(session, event.id, confirm=True):
                        raise CapacityReachedError()
                    registration = Registration(
                        event_id=event.id,
                        user_id=actor.id,
                        status=RegistrationStatus.CONFIRMED.value,
                        counted=True,
                        **guest_columns,
                    )
                    session.add(registration)
                    await session.flush()
                    record_audit(
                        session,
                        AuditAction.REGISTRATION_CONFIRMED,
                        actor.id,
                        club_id=event.club_id,
                        event_id=event.id,
                        registration_id=registration.id,
                    )
                    result = RegistrationResult.CONFIRMED

                closed = await _close_when_full(session, event, actor)
                president = None
                if closed and event.club.president_id:
                    president = await session.get(User, event.club.president_id)
    except IntegrityError as e:
        # the unique (event, user) constraint fired for a concurrent double click
        logger.info("Duplicate registration of user %s for event %s", actor.telegram_id, event_id)
        raise DuplicateRegistrationError("You are already registered for this event.") from e

    logger.info("User %s registered for event %s: %s", actor.telegram_id, event_id, result.value)

    if result == RegistrationResult.PAYMENT_REQUIRED:
        await send_payment_instructions(notifier, event, actor.telegram_id)
    else:
        text = f"✅ You are registered for <b>{html.quote(event.title)}</b>!\n📅 {event.starts_at:%d %B %Y, %H:%M}"
        if event.meeting_link:
            text += f"\n\n🔗 Meeting link: {html.quote(event.meeting_link)}"
        await notifier.send_to_user(actor.telegram_id, text)

    if president is not None:
        await notifier.send_to_user(
            president.telegram_id,
            f"📢 <b>{html.quote(event.title)}</b> reached its capacity of {event.max_participants}. "
            "Registration is now closed.",
        )
    await refresh_announcement(event.id, notifier)
    return RegistrationOutcome(result, event, registration, closed)


async def list_participants(event_id: int, actor: User) -> tuple[Event, list[Registration]]:
    async with AsyncSessionLocal() as session:
        event = await session.get(Event, event_id, options=[selectinload(Event.club)])
        if event is None:
            raise NotFoundError("Event not found.")
        check = await check_club_permission(session, actor, event.club_id, ClubAction.MODERATE)
        if not check.allowed:
            logger.warning("User %s tried to list participants of event %s", actor.telegram_id, event_id)
            raise AuthorizationError("Only club moderators can see the participant list.")
        registrations = (await session.execute(
            select(Registration)
            .options(selectinload(Registration.user))
            .where(Registration.event_id == event_id)
            .order_by(Registration.created_at, Registration.id)
        )).scalars().all()
    return event, list(registrations)


def format_participants(event: Event, registrations: list[Registration]) -> str:
    if not registrations:
        return f"👥 <b>{html.quote(event.title)}</b>\n\nNo registrations yet."
    lines = [f"👥 <b>{html.quote(event.title)}</b> ({event.confirmed_count} confirmed)", ""]
    for index, registration in enumerate(registrations, start=1):
        name = registration.guest_name or registration.user.display_name
        lines.append(f"{index}. {html.quote(name)} ({registration.status.replace('_', ' ')})")
    return "\n".join(lines)
