import logging
from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import CHIEF_ADMIN_IDS
from database import Club, ClubMember, ClubRole, ClubStatus, Role, User

logger = logging.getLogger(__name__)


class ClubAction(StrEnum):
    VIEW = "view"
    POST = "post"
    MODERATE = "moderate"
    MANAGE = "manage"
    DELETE = "delete"
    REVIEW = "review"  # event approval, server admins only


class PermissionLevel(StrEnum):
    SERVER_ADMIN = "server_admin"
    PRESIDENT = "president"
    MODERATOR = "moderator"
    MEMBER = "member"
    PUBLIC = "public"
    NONE = "none"


# Club roles allowed to perform each action
ACTION_ROLES: dict[ClubAction, tuple[ClubRole, ...]] = {
    ClubAction.VIEW: (ClubRole.MEMBER, ClubRole.MODERATOR, ClubRole.PRESIDENT),
    ClubAction.POST: (ClubRole.MODERATOR, ClubRole.PRESIDENT),
    ClubAction.MODERATE: (ClubRole.MODERATOR, ClubRole.PRESIDENT),
    ClubAction.MANAGE: (ClubRole.PRESIDENT,),
    ClubAction.DELETE: (ClubRole.PRESIDENT,),
    ClubAction.REVIEW: (),
}


@dataclass(frozen=True)
class PermissionCheck:
    allowed: bool
    reason: str
    level: PermissionLevel


def is_server_admin(user: User | None) -> bool:
    if user is None:
        return False
    return user.telegram_id in CHIEF_ADMIN_IDS or user.role == Role.ADMIN


async def check_club_permission(
    session: AsyncSession, actor: User | None, club_id: int, action: ClubAction = ClubAction.VIEW
) -> PermissionCheck:
    if actor is None:
        return PermissionCheck(False, "Unknown user", PermissionLevel.NONE)

    if is_server_admin(actor):
        return PermissionCheck(True, "Server admin", PermissionLevel.SERVER_ADMIN)

    if action == ClubAction.REVIEW:
        return PermissionCheck(False, "Only server admins can review events", PermissionLevel.NONE)

    club = await session.get(Club, club_id)
    if club is None or club.status != ClubStatus.ACTIVE:
        return PermissionCheck(False, "Club not found", PermissionLevel.NONE)

    if club.president_id == actor.id:
        return PermissionCheck(True, "Club president", PermissionLevel.PRESIDENT)

    member = (await session.execute(
        select(ClubMember).where(
            ClubMember.club_id == club_id,
            ClubMember.user_id == actor.id,
            ClubMember.is_active.is_(True),
        )
    )).scalar_one_or_none()

    if member is None:
        if action == ClubAction.VIEW and club.is_public:
            return PermissionCheck(True, "Public club", PermissionLevel.PUBLIC)
        return PermissionCheck(False, "Not a club member", PermissionLevel.NONE)

    allowed_roles = ACTION_ROLES.get(action, ())
    level = PermissionLevel(member.role)
    if member.role in allowed_roles:
        return PermissionCheck(True, f"Club {member.role}", level)

    required = " or ".join(allowed_roles)
    return PermissionCheck(False, f"Insufficient permissions (requires: {required})", level)


async def club_reviewers(session: AsyncSession, club: Club, limit: int) -> list[User]:
    """Users who review payments for a club: the president first, then moderators."""
    reviewers: list[User] = []
    if club.president_id:
        president = await session.get(User, club.president_id)
        if president:
            reviewers.append(president)

    moderators = (await session.execute(
        select(User)
        .join(ClubMember, ClubMember.user_id == User.id)
        .where(
            ClubMember.club_id == club.id,
            ClubMember.is_active.is_(True),
            ClubMember.role.in_([ClubRole.MODERATOR.value, ClubRole.PRESIDENT.value]),
        )
        .order_by(ClubMember.id)
    )).scalars().all()
    for user in moderators:
        if all(user.id != r.id for r in reviewers):
            reviewers.append(user)
    return reviewers[:limit]
