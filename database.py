import logging
from datetime import date, datetime
from enum import StrEnum

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Date, DateTime, Text, ForeignKey, JSON,
    CheckConstraint, UniqueConstraint, event, select
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession

from config import DB_PATH, CHIEF_ADMIN_IDS

logger = logging.getLogger(__name__)

# Every AsyncSession checks out its own connection, so concurrent
# registrations really compete for the SQLite write lock.
engine = create_async_engine(
    f"sqlite+aiosqlite:///{DB_PATH}",
    connect_args={
        "timeout": 30.0,
        "check_same_thread": False,
    },
    echo=False,
    pool_pre_ping=True,
)

@event.listens_for(engine.sync_engine, "connect")
def _on_connect(dbapi_connection, connection_record):
    # transactions are started by _on_begin below, not by the driver
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()

@event.listens_for(engine.sync_engine, "begin")
def _on_begin(conn):
    # take the write lock up front; writers queue on the busy timeout
    # instead of failing when a read transaction tries to upgrade
    conn.exec_driver_sql("BEGIN IMMEDIATE")

AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def enable_wal():
    async with engine.connect() as conn:
        mode = (await conn.exec_driver_sql("PRAGMA journal_mode;")).scalar()
    if mode != "wal":
        logger.warning("SQLite journal mode is %s, expected wal", mode)

class Base(DeclarativeBase):
    pass

class Role(StrEnum):
    MEMBER = "member"
    ADMIN = "admin"

class ClubStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"

class ClubRole(StrEnum):
    MEMBER = "member"
    MODERATOR = "moderator"
    PRESIDENT = "president"

class EventStatus(StrEnum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    SCHEDULED = "scheduled"
    REJECTED = "rejected"

class RegistrationStatus(StrEnum):
    CONFIRMED = "confirmed"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_SUBMITTED = "payment_submitted"
    VERIFIED = "verified"
    REJECTED = "rejected"

# Allowed forward moves; anything missing here is terminal
EVENT_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.DRAFT: frozenset({EventStatus.PENDING_APPROVAL, EventStatus.SCHEDULED}),
    EventStatus.PENDING_APPROVAL: frozenset({EventStatus.SCHEDULED, EventStatus.REJECTED}),
}

REGISTRATION_TRANSITIONS: dict[RegistrationStatus, frozenset[RegistrationStatus]] = {
    RegistrationStatus.PENDING_PAYMENT: frozenset({RegistrationStatus.PAYMENT_SUBMITTED}),
    RegistrationStatus.PAYMENT_SUBMITTED: frozenset({RegistrationStatus.VERIFIED, RegistrationStatus.REJECTED}),
    RegistrationStatus.REJECTED: frozenset({RegistrationStatus.PAYMENT_SUBMITTED}),
}

def event_transition_allowed(current: str, target: str) -> bool:
    return EventStatus(target) in EVENT_TRANSITIONS.get(EventStatus(current), frozenset())

def registration_transition_allowed(current: str, target: str) -> bool:
    return RegistrationStatus(target) in REGISTRATION_TRANSITIONS.get(RegistrationStatus(current), frozenset())

class Visibility(StrEnum):
    VERIFIED_ONLY = "verified_only"
    PUBLIC = "public"
    CLUB_PRIVATE = "club_private"

class RuleKind(StrEnum):
    GROUP = "group"
    VERIFIED = "verified"
    GUEST = "guest"
    UNRESTRICTED = "unrestricted"

class LocationType(StrEnum):
    PHYSICAL = "physical"
    VIRTUAL = "virtual"
    HYBRID = "hybrid"

class EventCategory(StrEnum):
    WORKSHOP = "workshop"
    SEMINAR = "seminar"
    COMPETITION = "competition"
    SOCIAL = "social"
    MEETING = "meeting"
    CULTURAL = "cultural"
    SPORTS = "sports"
    OTHER = "other"

class AuditAction(StrEnum):
    EVENT_CREATED = "event_created"
    EVENT_APPROVED = "event_approved"
    EVENT_REJECTED = "event_rejected"
    EVENT_PUBLISHED = "event_published"
    REGISTRATION_CONFIRMED = "registration_confirmed"
    REGISTRATION_CLOSED = "registration_closed"
    PAYMENT_REQUESTED = "payment_requested"
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    role: Mapped[str] = mapped_column(String(20), default=Role.MEMBER.value)
    full_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    groups: Mapped[list["UserGroup"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    memberships: Mapped[list["ClubMember"]] = relationship(back_populates="user")

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        if self.username:
            return f"@{self.username}"
        return f"ID {self.telegram_id}"

# Permission groups such as "faculty:civil" or "batch:078"
class UserGroup(Base):
    __tablename__ = "user_groups"
    __table_args__ = (UniqueConstraint("user_id", "group"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    group: Mapped[str] = mapped_column(String(100))

    user: Mapped["User"] = relationship(back_populates="groups")

class Club(Base):
    __tablename__ = "clubs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default=ClubStatus.ACTIVE.value)
    requires_event_approval: Mapped[bool] = mapped_column(Boolean, default=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    president_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    # forum topic in CLUB_EVENTS_CHAT_ID, created on first private announcement
    private_thread_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    president: Mapped["User | None"] = relationship(foreign_keys=[president_id])
    members: Mapped[list["ClubMember"]] = relationship(back_populates="club", cascade="all, delete-orphan")
    events: Mapped[list["Event"]] = relationship(back_populates="club")

    @property
    def is_active(self) -> bool:
        return self.status == ClubStatus.ACTIVE

class ClubMember(Base):
    __tablename__ = "club_members"
    __table_args__ = (UniqueConstraint("club_id", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    club_id: Mapped[int] = mapped_column(ForeignKey("clubs.id"))
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    role: Mapped[str] = mapped_column(String(20), default=ClubRole.MEMBER.value)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    club: Mapped["Club"] = relationship(back_populates="members")
    user: Mapped["User"] = relationship(back_populates="memberships")

class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint(
            "min_participants IS NULL OR max_participants IS NULL OR min_participants <= max_participants",
            name="ck_events_participant_bounds",
        ),
        CheckConstraint(
            "max_participants IS NULL OR reserved_seats <= max_participants",
            name="ck_events_capacity",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    club_id: Mapped[int] = mapped_column(ForeignKey("clubs.id"), index=True)
    created_by_id: Mapped[int] = mapped_column(ForeignKey("users.id"))

    title: Mapped[str] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text)
    starts_at: Mapped[datetime] = mapped_column(DateTime)
    venue: Mapped[str] = mapped_column(String(200))
    location_type: Mapped[str] = mapped_column(String(20), default=LocationType.PHYSICAL.value)
    category: Mapped[str] = mapped_column(String(30), default=EventCategory.OTHER.value)
    visibility: Mapped[str] = mapped_column(String(20), default=Visibility.PUBLIC.value)
    status: Mapped[str] = mapped_column(String(30), default=EventStatus.DRAFT.value, index=True)

    min_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # seats held by confirmed and paid registrations; bound-checked against max_participants
    reserved_seats: Mapped[int] = mapped_column(Integer, default=0)
    # confirmed free registrations plus verified payments
    confirmed_count: Mapped[int] = mapped_column(Integer, default=0)
    registration_open: Mapped[bool] = mapped_column(Boolean, default=True)
    registration_deadline: Mapped[date | None] = mapped_column(Date, nullable=True)
    external_form_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    meeting_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    requirements: Mapped[str | None] = mapped_column(Text, nullable=True)

    fee: Mapped[int] = mapped_column(Integer, default=0)
    bank_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    khalti_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    esewa_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_qr_file_id: Mapped[str | None] = mapped_column(String(300), nullable=True)
    poster_file_id: Mapped[str | None] = mapped_column(String(300), nullable=True)

    reviewed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    announcement_chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    announcement_thread_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    announcement_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    club: Mapped["Club"] = relationship(back_populates="events")
    created_by: Mapped["User"] = relationship(foreign_keys=[created_by_id])
    rules: Mapped[list["EligibilityRule"]] = relationship(back_populates="event", cascade="all, delete-orphan")
    registrations: Mapped[list["Registration"]] = relationship(back_populates="event")

    @property
    def is_paid(self) -> bool:
        return (self.fee or 0) > 0

    @property
    def seats_left(self) -> int | None:
        if self.max_participants is None:
            return None
        return max(self.max_participants - self.reserved_seats, 0)

class EligibilityRule(Base):
    __tablename__ = "eligibility_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), index=True)
    kind: Mapped[str] = mapped_column(String(20))
    group: Mapped[str | None] = mapped_column(String(100), nullable=True)

    event: Mapped["Event"] = relationship(back_populates="rules")

class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_registration_event_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    status: Mapped[str] = mapped_column(String(30))
    # true once the registration is included in Event.confirmed_count
    counted: Mapped[bool] = mapped_column(Boolean, default=False)

    proof_file_id: Mapped[str | None] = mapped_column(String(300), nullable=True)
    proof_content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    proof_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    proof_submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    decided_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    decision_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    # contact details of non-verified guests
    guest_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    guest_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    event: Mapped["Event"] = relationship(back_populates="registrations")
    user: Mapped["User"] = relationship(foreign_keys=[user_id])

class AuditEntry(Base):
    __tablename__ = "audit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    action: Mapped[str] = mapped_column(String(40), index=True)
    actor_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    club_id: Mapped[int | None] = mapped_column(ForeignKey("clubs.id"), nullable=True)
    event_id: Mapped[int | None] = mapped_column(ForeignKey("events.id"), nullable=True)
    registration_id: Mapped[int | None] = mapped_column(ForeignKey("registrations.id"), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def get_or_create_user(telegram_id: int, full_name: str | None = None, username: str | None = None) -> User:
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(User).where(User.telegram_id == telegram_id))
        user = result.scalar_one_or_none()

        if not user:
            user = User(
                telegram_id=telegram_id,
                full_name=full_name,
                username=username,
                role=Role.MEMBER.value,
            )
            session.add(user)
        else:
            if full_name and user.full_name != full_name:
                user.full_name = full_name
            if username and user.username != username:
                user.username = username

        # Chief admins are promoted automatically
        if telegram_id in CHIEF_ADMIN_IDS:
            user.role = Role.ADMIN.value

        await session.commit()
        await session.refresh(user)
        return user

async def get_user_by_telegram_id(session: AsyncSession, telegram_id: int) -> User | None:
    result = await session.execute(select(User).where(User.telegram_id == telegram_id))
    return result.scalar_one_or_none()

async def get_club_by_slug(session: AsyncSession, slug: str) -> Club | None:
    result = await session.execute(select(Club).where(Club.slug == slug.strip().lower()))
    return result.scalar_one_or_none()
