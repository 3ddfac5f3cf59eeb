"""Approval gate between event creation and publication.

Clubs that require approval get their events created as
``pending_approval``; a server admin then approves (the event becomes
``scheduled`` and is published) or rejects it. Both decisions are final.
"""
import logging
from datetime import datetime

from aiogram import html
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

import config
from audit import record_audit
from channels import publish
from database import (
    AsyncSessionLocal, AuditAction, Club, Event, EventStatus, User, event_transition_allowed
)
from errors import AlreadyDecidedError, AuthorizationError, NotFoundError
from keyboards import get_event_review_keyboard
from notifications import Notifier, Surface
from permissions import ClubAction, check_club_permission

logger = logging.getLogger(__name__)


def initial_status(club: Club) -> EventStatus:
    if club.requires_event_approval:
        return EventStatus.PENDING_APPROVAL
    return EventStatus.SCHEDULED


def format_review_card(event: Event, club: Club, creator: User) -> str:
    text = (
        f"🔔 <b>New event awaiting approval</b>\n\n"
        f"<b>{html.quote(event.title)}</b>\n"
        f"Club: {html.quote(club.name)}\n"
        f"Created by: {html.quote(creator.display_name)}\n"
        f"Date: {event.starts_at:%d %B %Y, %H:%M}\n"
        f"Venue: {html.quote(event.venue)} ({event.location_type})\n"
        f"Category: {event.category}\n"
        f"Visibility: {event.visibility}\n"
        f"Fee: {event.fee if event.is_paid else 'free'}\n"
    )
    if event.max_participants:
        text += f"Capacity: {event.min_participants or 1}–{event.max_participants}\n"
    if event.external_form_url:
        text += f"External form: {html.quote(event.external_form_url)}\n"
    text += f"\n{html.quote(event.description)}\n\nEvent ID: <code>{event.id}</code>"
    return text


async def _load_event(session, event_id: int) -> Event:
    event = await session.get(
        Event, event_id, options=[selectinload(Event.club), selectinload(Event.created_by)]
    )
    if event is None:
        raise NotFoundError("Event not found.")
    return event


async def submit_for_review(event_id: int, notifier: Notifier) -> int:
    """Send the review prompt; returns how many prompts were delivered."""
    async with AsyncSessionLocal() as session:
        event = await _load_event(session, event_id)
        if event.status != EventStatus.PENDING_APPROVAL:
            return 0
        text = format_review_card(event, event.club, event.created_by)

    if config.EVENT_REVIEW_CHAT_ID is not None:
        surfaces = [Surface(config.EVENT_REVIEW_CHAT_ID)]
    else:
        surfaces = [Surface(admin_id) for admin_id in config.CHIEF_ADMIN_IDS]

    delivered = 0
    for surface in surfaces:
        message = await notifier.send_to_surface(
            surface, text, reply_markup=get_event_review_keyboard(event_id), photo=event.poster_file_id
        )
        if message is not None:
            delivered += 1
    if not delivered:
        logger.error("Review prompt for event %s could not be delivered to any reviewer", event_id)
    return delivered


async def _decide(event_id: int, reviewer: User, target: EventStatus, reason: str | None = None) -> Event:
    action = AuditAction.EVENT_APPROVED if target == EventStatus.SCHEDULED else AuditAction.EVENT_REJECTED

    async with AsyncSessionLocal() as session:
        async with session.begin():
            event = await _load_event(session, event_id)
            check = await check_club_permission(session, reviewer, event.club_id, ClubAction.REVIEW)
            if not check.allowed:
                logger.warning(
                    "User %s tried to review event %s without permission", reviewer.telegram_id, event_id
                )
                raise AuthorizationError("Only server admins can approve or reject events.")

            if not event_transition_allowed(event.status, target):
                raise AlreadyDecidedError(f"This event was already handled (status: {event.status.replace('_', ' ')}).")

            result = await session.execute(
                update(Event)
                .where(Event.id == event_id, Event.status == EventStatus.PENDING_APPROVAL.value)
                .values(
                    status=target.value,
                    reviewed_by_id=reviewer.id,
                    reviewed_at=datetime.now(),
                    rejection_reason=reason,
                )
            )
            if result.rowcount == 0:
                current = (await session.execute(
                    select(Event.status).where(Event.id == event_id)
                )).scalar_one()
                raise AlreadyDecidedError(f"This event was already handled (status: {current.replace('_', ' ')}).")

            record_audit(
                session,
                action,
                reviewer.id,
                club_id=event.club_id,
                event_id=event.id,
                reason=reason,
            )

    logger.info("Event %s %s by %s", event_id, target.value, reviewer.telegram_id)
    return event


async def approve(event_id: int, reviewer: User, notifier: Notifier) -> Event:
    event = await _decide(event_id, reviewer, EventStatus.SCHEDULED)

    published = await publish(event.id, notifier)
    await notifier.send_to_user(
        event.created_by.telegram_id,
        f"✅ Your event <b>{html.quote(event.title)}</b> was approved"
        + (" and announced." if published else ".")
    )
    return event


async def reject(event_id: int, reviewer: User, reason: str, notifier: Notifier) -> Event:
    reason = (reason or "").strip() or "No reason given"
    event = await _decide(event_id, reviewer, EventStatus.REJECTED, reason)
    await notifier.send_to_user(
        event.created_by.telegram_id,
        f"❌ Your event <b>{html.quote(event.title)}</b> was not approved.\n\nReason: {html.quote(reason)}"
    )
    return event


async def after_finalize(event_id: int, notifier: Notifier) -> None:
    """Continue after the wizard wrote the event: publish it or ask for review."""
    async with AsyncSessionLocal() as session:
        event = await session.get(Event, event_id)
        status = event.status if event else None

    if status == EventStatus.SCHEDULED:
        await publish(event_id, notifier)
    elif status == EventStatus.PENDING_APPROVAL:
        await submit_for_review(event_id, notifier)
