from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import Event, EventStatus


async def reserve_seat(session: AsyncSession, event_id: int, confirm: bool) -> bool:
    """Take one seat if any is left.

    The bound check and the increment are one UPDATE statement, so two
    registrations racing for the last seat cannot both get it. ``confirm``
    also bumps the visible confirmed count (free events); paid registrations
    only hold the seat until their payment is verified.
    """
    values = {"reserved_seats": Event.reserved_seats + 1}
    if confirm:
        values["confirmed_count"] = Event.confirmed_count + 1
    result = await session.execute(
        update(Event)
        .where(
            Event.id == event_id,
            Event.status == EventStatus.SCHEDULED.value,
            or_(Event.max_participants.is_(None), Event.reserved_seats < Event.max_participants),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def count_confirmation(session: AsyncSession, event_id: int) -> None:
    await session.execute(
        update(Event)
        .where(Event.id == event_id)
        .values(confirmed_count=Event.confirmed_count + 1)
        .execution_options(synchronize_session=False)
    )


async def close_if_full(session: AsyncSession, event_id: int) -> bool:
    """Close registration once every seat is taken; True if this call closed it."""
    result = await session.execute(
        update(Event)
        .where(
            Event.id == event_id,
            Event.registration_open.is_(True),
            Event.max_participants.is_not(None),
            Event.reserved_seats >= Event.max_participants,
        )
        .values(registration_open=False)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
