from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from database import AuditEntry, AuditAction


def record_audit(
    session: AsyncSession,
    action: AuditAction,
    actor_id: int | None,
    *,
    club_id: int | None = None,
    event_id: int | None = None,
    registration_id: int | None = None,
    reason: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditEntry:
    """Add an audit entry to the caller's transaction.

    Nothing is committed here, the entry is written together with the
    transition it describes or not at all.
    """
    entry = AuditEntry(
        action=action.value,
        actor_id=actor_id,
        club_id=club_id,
        event_id=event_id,
        registration_id=registration_id,
        reason=reason,
        details=details,
    )
    session.add(entry)
    return entry
