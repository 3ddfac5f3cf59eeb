import logging

from aiogram import html
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

import config
from audit import record_audit
from database import AsyncSessionLocal, AuditAction, Club, Event, EventStatus, Visibility
from keyboards import get_closed_keyboard, get_join_keyboard
from notifications import Notifier, Surface

logger = logging.getLogger(__name__)

VISIBILITY_LABELS = {
    Visibility.PUBLIC: "🌐 Open to everyone",
    Visibility.VERIFIED_ONLY: "✅ Verified members only",
    Visibility.CLUB_PRIVATE: "🔒 Club members only",
}

LOCATION_ICONS = {"physical": "📍", "virtual": "💻", "hybrid": "🔀"}


def format_event_card(event: Event, club_name: str) -> str:
    lines = [
        f"🎉 <b>{html.quote(event.title)}</b>",
        f"Hosted by <b>{html.quote(club_name)}</b>",
        "",
        html.quote(event.description),
        "",
        f"📅 {event.starts_at:%d %B %Y, %H:%M}",
        f"{LOCATION_ICONS.get(event.location_type, '📍')} {html.quote(event.venue)}",
        f"🏷 {event.category.capitalize()}",
        f"💸 Fee: {event.fee}" if event.is_paid else "🆓 Free",
    ]
    if event.max_participants:
        lines.append(f"👥 {event.confirmed_count}/{event.max_participants} registered")
    else:
        lines.append(f"👥 {event.confirmed_count} registered")
    if event.registration_deadline:
        lines.append(f"⏰ Register by {event.registration_deadline:%d %B %Y}")
    if event.requirements:
        lines.append(f"📋 {html.quote(event.requirements)}")
    lines.append(VISIBILITY_LABELS.get(Visibility(event.visibility), ""))
    if not event.registration_open:
        lines.append("\n🔒 <b>Registration is closed.</b>")
    return "\n".join(lines)


def select_surface(event: Event, club: Club) -> Surface | None:
    """Where the announcement goes, decided by visibility alone."""
    if event.visibility == Visibility.CLUB_PRIVATE:
        if config.CLUB_EVENTS_CHAT_ID is None or club.private_thread_id is None:
            return None
        return Surface(config.CLUB_EVENTS_CHAT_ID, club.private_thread_id)
    if config.PUBLIC_EVENTS_CHAT_ID is None:
        return None
    # verified-only and public events share the public chat
    return Surface(config.PUBLIC_EVENTS_CHAT_ID)


async def ensure_club_surface(club: Club, notifier: Notifier) -> int | None:
    """Create the club's events topic on first use.

    Runs outside any open transaction: the topic is created first, then
    stored with a conditional UPDATE in a short transaction of its own.
    """
    if club.private_thread_id is not None or config.CLUB_EVENTS_CHAT_ID is None:
        return club.private_thread_id

    thread_id = await notifier.create_topic(config.CLUB_EVENTS_CHAT_ID, f"{club.slug}-events")
    if thread_id is None:
        return None
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            update(Club)
            .where(Club.id == club.id, Club.private_thread_id.is_(None))
            .values(private_thread_id=thread_id)
        )
        if result.rowcount == 1:
            club.private_thread_id = thread_id
        else:
            # another publisher created the topic first
            club.private_thread_id = (await session.execute(
                select(Club.private_thread_id).where(Club.id == club.id)
            )).scalar_one()
        await session.commit()
    logger.info("Created events topic %s for club %s", club.private_thread_id, club.slug)
    return club.private_thread_id


def announcement_markup(event: Event):
    if event.registration_open:
        return get_join_keyboard(event.id)
    return get_closed_keyboard(event.id)


async def _claim(event_id: int, surface: Surface) -> bool:
    async with AsyncSessionLocal() as session:
        claimed = await session.execute(
            update(Event)
            .where(Event.id == event_id, Event.announcement_chat_id.is_(None))
            .values(announcement_chat_id=surface.chat_id, announcement_thread_id=surface.thread_id)
        )
        await session.commit()
    return claimed.rowcount == 1


async def publish(event_id: int, notifier: Notifier) -> bool:
    """Post a scheduled event once; returns True only if this call posted it.

    Telegram is only called between transactions so the SQLite write lock
    is never held while waiting on the network.
    """
    async with AsyncSessionLocal() as session:
        event = await session.get(Event, event_id, options=[selectinload(Event.club)])
    if event is None or event.status != EventStatus.SCHEDULED:
        logger.warning("Event %s is not scheduled, not publishing", event_id)
        return False
    if event.announcement_message_id is not None:
        return False

    club = event.club
    if event.visibility == Visibility.CLUB_PRIVATE:
        await ensure_club_surface(club, notifier)

    surface = select_surface(event, club)
    if surface is None:
        logger.error("No announcement chat available for event %s (%s)", event.id, event.visibility)
        return False

    # claim the event so concurrent publishers skip it
    if not await _claim(event.id, surface):
        return False

    message = await notifier.send_to_surface(
        surface,
        format_event_card(event, club.name),
        reply_markup=announcement_markup(event),
        photo=event.poster_file_id,
    )

    async with AsyncSessionLocal() as session:
        if message is None:
            # release the claim so a later retry can post
            await session.execute(
                update(Event)
                .where(Event.id == event.id)
                .values(announcement_chat_id=None, announcement_thread_id=None)
            )
            await session.commit()
            return False

        await session.execute(
            update(Event)
            .where(Event.id == event.id)
            .values(announcement_message_id=message.message_id)
        )
        record_audit(
            session,
            AuditAction.EVENT_PUBLISHED,
            None,
            club_id=club.id,
            event_id=event.id,
            details={"chat_id": surface.chat_id, "thread_id": surface.thread_id},
        )
        await session.commit()

    logger.info("Event %s published to %s", event_id, surface.chat_id)
    return True


async def refresh_announcement(event_id: int, notifier: Notifier) -> bool:
    async with AsyncSessionLocal() as session:
        event = await session.get(Event, event_id, options=[selectinload(Event.club)])
        if event is None or event.announcement_message_id is None:
            return False
        surface = Surface(event.announcement_chat_id, event.announcement_thread_id)
        text = format_event_card(event, event.club.name)
        markup = announcement_markup(event)

    return await notifier.edit_announcement(
        surface,
        event.announcement_message_id,
        text,
        markup,
        has_photo=bool(event.poster_file_id),
    )
