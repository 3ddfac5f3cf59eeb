import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import ClubMember, EligibilityRule, Event, RuleKind, User, UserGroup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Membership:
    groups: frozenset[str]
    is_verified: bool


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str | None = None


ELIGIBLE = Eligibility(True)


def group_family(group: str) -> str:
    # "faculty:civil" -> "faculty"; groups without a prefix form their own family
    return group.split(":", 1)[0] if ":" in group else group


def _describe_family(family: str, groups: list[str]) -> str:
    names = ", ".join(g.split(":", 1)[-1] for g in groups)
    if family == "club":
        return "This event is only open to members of the hosting club."
    return f"This event is restricted to {family}: {names}."


def evaluate(rules: Iterable[EligibilityRule], membership: Membership) -> Eligibility:
    """Decide whether a user may register.

    Rules of one kind are OR'd, different kinds are AND'd. Group rules are
    further split by family so that "batch:078" and "faculty:civil" must
    both match, while "batch:078" or "batch:079" is enough within batches.
    """
    rules = list(rules)
    if not rules:
        return ELIGIBLE

    kinds = {RuleKind(r.kind) for r in rules}
    if RuleKind.UNRESTRICTED in kinds:
        return ELIGIBLE

    if RuleKind.VERIFIED in kinds and not membership.is_verified and RuleKind.GUEST not in kinds:
        return Eligibility(False, "This event is only open to verified members.")

    families: dict[str, list[str]] = {}
    for rule in rules:
        if RuleKind(rule.kind) == RuleKind.GROUP and rule.group:
            families.setdefault(group_family(rule.group), []).append(rule.group)

    for family, groups in families.items():
        if not membership.groups.intersection(groups):
            return Eligibility(False, _describe_family(family, groups))

    return ELIGIBLE


async def load_membership(session: AsyncSession, user: User) -> Membership:
    groups = set((await session.execute(
        select(UserGroup.group).where(UserGroup.user_id == user.id)
    )).scalars().all())
    club_ids = (await session.execute(
        select(ClubMember.club_id).where(ClubMember.user_id == user.id, ClubMember.is_active.is_(True))
    )).scalars().all()
    groups.update(f"club:{club_id}" for club_id in club_ids)
    return Membership(groups=frozenset(groups), is_verified=bool(user.is_verified))


async def check_registration_eligibility(session: AsyncSession, event: Event, user: User) -> Eligibility:
    try:
        rules = (await session.execute(
            select(EligibilityRule).where(EligibilityRule.event_id == event.id)
        )).scalars().all()
        membership = await load_membership(session, user)
        return evaluate(rules, membership)
    except Exception:
        # fail open: a failed lookup counts as eligible
        logger.warning(
            "Eligibility check failed for event %s user %s, allowing registration",
            event.id, user.telegram_id, exc_info=True,
        )
        return ELIGIBLE
