"""Event creation wizard.

The wizard collects an event over several messages. Each stage validates
its input and stores the result in the user's session; nothing reaches the
database until ``finalize`` writes the event in a single transaction.
"""
import logging
import re
import smtplib
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Mapping

from sqlalchemy.exc import SQLAlchemyError

import config
from approval import initial_status
from audit import record_audit
from database import (
    AsyncSessionLocal, AuditAction, Club, EligibilityRule, Event, EventCategory, LocationType,
    RuleKind, User, Visibility, get_club_by_slug, get_user_by_telegram_id
)
from errors import (
    AuthorizationError, ClubUnavailableError, DependencyError, SessionExpiredError,
    ValidationError, WizardStageError
)
from permissions import ClubAction, PermissionLevel, check_club_permission
from sessions import STAGE_ORDER, SessionStore, WizardSession, WizardStage
from uploads import UploadedFile, validate_upload
from verification import CodeSender, codes_match, generate_code, hash_code, validate_email

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d %H:%M"
MAX_PARTICIPANTS_LIMIT = 10000
URL_RE = re.compile(r"https?://\S+")
WALLET_RE = re.compile(r"^\d{10}$")
SKIP_VALUES = {"", "-", "skip", "none", "no"}

VISIBILITY_ALIASES = {
    "public": Visibility.PUBLIC,
    "verified": Visibility.VERIFIED_ONLY,
    "verified_only": Visibility.VERIFIED_ONLY,
    "private": Visibility.CLUB_PRIVATE,
    "club": Visibility.CLUB_PRIVATE,
    "club_private": Visibility.CLUB_PRIVATE,
}

STAGE_TITLES = {
    WizardStage.BASIC_INFO: "basic info",
    WizardStage.DETAILS: "registration details",
    WizardStage.PAYMENT: "payment details",
    WizardStage.PAYMENT_QR: "payment QR code",
    WizardStage.VERIFY_EMAIL: "email verification",
    WizardStage.VERIFY_CODE: "verification code",
    WizardStage.POSTER: "poster",
}


@dataclass
class BasicInfoForm:
    title: str = ""
    description: str = ""
    date: str = ""
    venue: str = ""
    category: str = ""


@dataclass
class DetailsForm:
    min_participants: str = ""
    max_participants: str = ""
    registration_info: str = ""
    eligibility_info: str = ""
    meeting_link: str = ""


@dataclass
class PaymentForm:
    bank_details: str = ""
    khalti_number: str = ""
    esewa_number: str = ""
    instructions: str = ""


def parse_form(text: str, aliases: Mapping[str, str], multiline: frozenset[str] = frozenset()) -> dict[str, str]:
    """Read ``Key: value`` lines into a dict of field names.

    Lines without a known key continue the previous field when that field
    is listed in ``multiline`` (descriptions, bank details) and are ignored
    otherwise.
    """
    values: dict[str, list[str]] = {}
    current: str | None = None
    for raw_line in (text or "").splitlines():
        key, sep, value = raw_line.partition(":")
        name = aliases.get(key.strip().lower()) if sep else None
        if name:
            current = name
            values[current] = [value.strip()]
        elif current in multiline:
            values[current].append(raw_line.rstrip())
    return {name: "\n".join(lines).strip() for name, lines in values.items()}


BASIC_INFO_KEYS = {
    "title": "title", "name": "title",
    "description": "description", "about": "description",
    "date": "date", "when": "date", "date/time": "date",
    "venue": "venue", "location": "venue", "where": "venue",
    "category": "category", "type": "category",
}

DETAILS_KEYS = {
    "min": "min_participants", "min participants": "min_participants",
    "max": "max_participants", "max participants": "max_participants", "capacity": "max_participants",
    "link": "meeting_link", "meeting link": "meeting_link",
}

PAYMENT_KEYS = {
    "bank": "bank_details", "bank details": "bank_details",
    "khalti": "khalti_number",
    "esewa": "esewa_number", "e-sewa": "esewa_number",
    "instructions": "instructions", "note": "instructions",
}


def basic_info_from_text(text: str) -> BasicInfoForm:
    return BasicInfoForm(**parse_form(text, BASIC_INFO_KEYS, frozenset({"description"})))


def details_from_text(text: str) -> DetailsForm:
    if text.strip().lower() in SKIP_VALUES:
        return DetailsForm()
    fields = parse_form(text, DETAILS_KEYS)
    # the registration and eligibility scanners pick their own keys from the full text
    return DetailsForm(registration_info=text, eligibility_info=text, **fields)


def payment_from_text(text: str) -> PaymentForm:
    return PaymentForm(**parse_form(text, PAYMENT_KEYS, frozenset({"bank_details", "instructions"})))


def scan_key_values(text: str) -> list[tuple[str, str]]:
    pairs = []
    for line in (text or "").splitlines():
        key, sep, value = line.partition(":")
        if sep:
            pairs.append((key.strip().lower(), value.strip()))
    return pairs


def parse_registration_info(text: str) -> dict:
    result = {"deadline": None, "fee": 0, "external_form_url": None}
    for key, value in scan_key_values(text):
        if key.endswith("deadline"):
            if value.lower() in SKIP_VALUES:
                continue
            try:
                result["deadline"] = datetime.strptime(value, "%Y-%m-%d").date()
            except ValueError:
                raise ValidationError("Invalid deadline. Use YYYY-MM-DD.", field="deadline")
        elif key.endswith("fee"):
            match = re.search(r"\d+", value)
            result["fee"] = int(match.group()) if match else 0
        elif key.startswith(("form", "external", "register")):
            match = URL_RE.search(value)
            if match:
                result["external_form_url"] = match.group()
            elif value.lower() not in SKIP_VALUES:
                raise ValidationError("The registration form must be an http(s) link.", field="external_form_url")
    return result


def _split_list(value: str) -> list[str]:
    items = [item.strip().lower() for item in value.split(",") if item.strip()]
    if any(item in ("all", "any") for item in items):
        return []
    return items


def parse_eligibility_info(text: str) -> dict:
    result = {"batches": [], "faculties": [], "requirements": None, "allow_guests": False}
    for key, value in scan_key_values(text):
        if key == "batch":
            result["batches"] = _split_list(value)
        elif key == "faculty":
            result["faculties"] = _split_list(value)
        elif key == "requirements" and value.lower() not in SKIP_VALUES:
            result["requirements"] = value[:500]
        elif key in ("guests", "guest"):
            result["allow_guests"] = value.lower() in ("yes", "y", "true", "allowed")
    return result


def parse_visibility(value: str | Visibility) -> Visibility:
    visibility = VISIBILITY_ALIASES.get(str(value).strip().lower())
    if visibility is None:
        raise ValidationError("Visibility must be one of: public, verified, private.", field="visibility")
    return visibility


def derive_location_type(venue: str) -> LocationType:
    venue = venue.lower()
    if "hybrid" in venue:
        return LocationType.HYBRID
    if any(word in venue for word in ("virtual", "online", "zoom", "meet", "teams")):
        return LocationType.VIRTUAL
    return LocationType.PHYSICAL


def _required(value: str, name: str, limit: int) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{name} is required.", field=name.lower())
    if len(value) > limit:
        raise ValidationError(f"{name} must be at most {limit} characters.", field=name.lower())
    return value


def _optional(value: str | None, limit: int, name: str) -> str | None:
    value = (value or "").strip()
    if value.lower() in SKIP_VALUES:
        return None
    if len(value) > limit:
        raise ValidationError(f"{name} must be at most {limit} characters.", field=name.lower())
    return value


def _parse_count(value: str, name: str) -> int | None:
    value = (value or "").strip()
    if value.lower() in SKIP_VALUES:
        return None
    if not value.isdigit():
        raise ValidationError(f"{name} must be a whole number.", field=name)
    number = int(value)
    if not 1 <= number <= MAX_PARTICIPANTS_LIMIT:
        raise ValidationError(f"{name} must be between 1 and {MAX_PARTICIPANTS_LIMIT}.", field=name)
    return number


def _wallet_number(value: str, name: str) -> str | None:
    value = _optional(value, 20, name)
    if value is None:
        return None
    digits = re.sub(r"[\s-]", "", value)
    if not WALLET_RE.match(digits):
        raise ValidationError(f"{name} number must be 10 digits.", field=name.lower())
    return digits


def build_rules(
    visibility: Visibility, club_id: int, batches: list[str], faculties: list[str], allow_guests: bool = False
) -> list[EligibilityRule]:
    rules = []
    if visibility == Visibility.VERIFIED_ONLY:
        rules.append(EligibilityRule(kind=RuleKind.VERIFIED.value))
    elif visibility == Visibility.CLUB_PRIVATE:
        rules.append(EligibilityRule(kind=RuleKind.GROUP.value, group=f"club:{club_id}"))
    rules.extend(EligibilityRule(kind=RuleKind.GROUP.value, group=f"batch:{b}") for b in batches)
    rules.extend(EligibilityRule(kind=RuleKind.GROUP.value, group=f"faculty:{f}") for f in faculties)
    # guests register with contact details instead of a verified account
    if allow_guests and visibility != Visibility.CLUB_PRIVATE:
        rules.append(EligibilityRule(kind=RuleKind.GUEST.value))
    return rules


class EventWizard:
    def __init__(self, store: SessionStore, code_sender: CodeSender, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.code_sender = code_sender
        self.clock = clock

    # ----- session plumbing -----

    def current(self, user_id: int) -> WizardSession | None:
        return self.store.get(user_id)

    def cancel(self, user_id: int) -> bool:
        existed = self.store.get(user_id) is not None
        self.store.delete(user_id)
        return existed

    def _applies(self, ws: WizardSession, stage: WizardStage) -> bool:
        if stage in (WizardStage.PAYMENT, WizardStage.PAYMENT_QR):
            return ws.fields.get("fee", 0) > 0
        if stage in (WizardStage.VERIFY_EMAIL, WizardStage.VERIFY_CODE):
            return ws.needs_verification and not ws.email_verified
        return True

    def next_stage(self, ws: WizardSession, after: WizardStage) -> WizardStage:
        for stage in STAGE_ORDER[STAGE_ORDER.index(after) + 1:]:
            if self._applies(ws, stage):
                return stage
        return WizardStage.POSTER

    def _load(self, user_id: int, stage: WizardStage) -> WizardSession:
        ws = self.store.get(user_id)
        if ws is None:
            raise SessionExpiredError()
        if STAGE_ORDER.index(stage) > STAGE_ORDER.index(ws.stage):
            raise WizardStageError(f"Please complete the {STAGE_TITLES[ws.stage]} step first.")
        if not self._applies(ws, stage):
            raise WizardStageError(f"The {STAGE_TITLES[stage]} step does not apply to this event.")
        return ws

    def _save(self, ws: WizardSession, completed: WizardStage, **changes) -> WizardSession:
        ws = ws.advance(ws.stage, **changes)
        ws = ws.advance(self.next_stage(ws, completed))
        self.store.put(ws.user_id, ws)
        return ws

    # ----- stages -----

    async def start(self, actor: User, club_slug: str, visibility: str | Visibility = Visibility.PUBLIC) -> WizardSession:
        visibility = parse_visibility(visibility)
        async with AsyncSessionLocal() as session:
            club = await get_club_by_slug(session, club_slug)
            if club is None or not club.is_active:
                raise ClubUnavailableError(f"Club '{club_slug}' was not found or is not active.")
            check = await check_club_permission(session, actor, club.id, ClubAction.MODERATE)

        if not check.allowed:
            logger.warning("User %s may not create events for club %s: %s", actor.telegram_id, club.slug, check.reason)
            raise AuthorizationError(f"You cannot create events for this club ({check.reason}).")

        privileged = actor.is_verified or check.level == PermissionLevel.SERVER_ADMIN
        ws = WizardSession(
            user_id=actor.telegram_id,
            club_id=club.id,
            visibility=visibility.value,
            created_at=self.store.now(),
            needs_verification=not privileged,
            fields={"club_name": club.name},
        )
        # a new wizard replaces any stale one
        self.store.put(actor.telegram_id, ws)
        logger.info("User %s started an event wizard for club %s", actor.telegram_id, club.slug)
        return ws

    def submit_basic_info(self, user_id: int, form: BasicInfoForm) -> WizardSession:
        ws = self._load(user_id, WizardStage.BASIC_INFO)

        title = _required(form.title, "Title", 100)
        description = _required(form.description, "Description", 2000)
        venue = _required(form.venue, "Venue", 200)

        try:
            starts_at = datetime.strptime((form.date or "").strip(), DATE_FORMAT)
        except ValueError:
            raise ValidationError("Invalid date. Use YYYY-MM-DD HH:MM, e.g. 2026-12-25 14:30.", field="date")
        if starts_at <= self.clock():
            raise ValidationError("The event date must be in the future.", field="date")

        category = (form.category or "").strip().lower()
        if category not in {c.value for c in EventCategory}:
            options = ", ".join(c.value for c in EventCategory)
            raise ValidationError(f"Unknown category. Choose one of: {options}.", field="category")

        ws = ws.with_fields(
            title=title,
            description=description,
            starts_at=starts_at,
            venue=venue,
            location_type=derive_location_type(venue).value,
            category=category,
        )
        return self._save(ws, WizardStage.BASIC_INFO)

    def submit_details(self, user_id: int, form: DetailsForm) -> WizardSession:
        ws = self._load(user_id, WizardStage.DETAILS)

        min_participants = _parse_count(form.min_participants, "Minimum participants")
        max_participants = _parse_count(form.max_participants, "Maximum participants")
        if min_participants and max_participants and min_participants > max_participants:
            raise ValidationError("Minimum participants cannot exceed the maximum.", field="min_participants")

        registration = parse_registration_info(form.registration_info)
        deadline: date | None = registration["deadline"]
        if deadline is not None:
            if deadline < self.clock().date():
                raise ValidationError("The registration deadline is already over.", field="deadline")
            if deadline > ws.fields["starts_at"].date():
                raise ValidationError("The registration deadline must not be after the event.", field="deadline")

        eligibility = parse_eligibility_info(form.eligibility_info)

        meeting_link = _optional(form.meeting_link, 500, "Meeting link")
        if meeting_link and not URL_RE.fullmatch(meeting_link):
            raise ValidationError("The meeting link must be an http(s) URL.", field="meeting_link")

        ws = ws.with_fields(
            min_participants=min_participants,
            max_participants=max_participants,
            registration_deadline=deadline,
            fee=registration["fee"],
            external_form_url=registration["external_form_url"],
            batches=eligibility["batches"],
            faculties=eligibility["faculties"],
            allow_guests=eligibility["allow_guests"],
            requirements=eligibility["requirements"],
            meeting_link=meeting_link,
        )
        return self._save(ws, WizardStage.DETAILS)

    def submit_payment(self, user_id: int, form: PaymentForm) -> WizardSession:
        ws = self._load(user_id, WizardStage.PAYMENT)

        bank = _optional(form.bank_details, 500, "Bank details")
        khalti = _wallet_number(form.khalti_number, "Khalti")
        esewa = _wallet_number(form.esewa_number, "eSewa")
        if not (bank or khalti or esewa):
            raise ValidationError(
                "Provide at least one payment method: bank details, Khalti or eSewa.", field="payment"
            )
        instructions = _optional(form.instructions, 1000, "Instructions")

        ws = ws.with_fields(
            bank_details=bank,
            khalti_number=khalti,
            esewa_number=esewa,
            payment_instructions=instructions,
        )
        return self._save(ws, WizardStage.PAYMENT, payment_details_collected=True)

    def attach_payment_qr(self, user_id: int, upload: UploadedFile | None) -> WizardSession:
        """Store the payment QR code; None skips it (also used when the upload times out)."""
        ws = self._load(user_id, WizardStage.PAYMENT_QR)
        if upload is not None:
            validate_upload(upload, config.POSTER_ALLOWED_TYPES, config.POSTER_MAX_BYTES, "QR code")
        ws = ws.with_fields(payment_qr_file_id=upload.file_id if upload else None)
        return self._save(ws, WizardStage.PAYMENT_QR)

    async def request_code(self, user_id: int, email: str) -> WizardSession:
        ws = self._load(user_id, WizardStage.VERIFY_EMAIL)
        email = validate_email(email, config.VERIFICATION_EMAIL_DOMAIN)

        code = generate_code()
        ws = self._save(
            ws,
            WizardStage.VERIFY_EMAIL,
            email=email,
            code_hash=hash_code(code),
            code_expires_at=self.store.now() + config.VERIFICATION_CODE_TTL.total_seconds(),
            code_attempts=0,
        )
        try:
            await self.code_sender.send_code(email, code)
        except (smtplib.SMTPException, OSError):
            # the user can ask for the code again by re-sending the email
            logger.exception("Failed to send verification code to %s", email)
        return ws

    def confirm_code(self, user_id: int, code: str) -> WizardSession:
        ws = self._load(user_id, WizardStage.VERIFY_CODE)
        if ws.stage != WizardStage.VERIFY_CODE or not ws.code_hash:
            raise WizardStageError("Send your email address first to receive a code.")

        if ws.code_expires_at is not None and self.store.now() > ws.code_expires_at:
            self.store.put(user_id, ws.advance(WizardStage.VERIFY_EMAIL, code_hash=None, code_expires_at=None))
            raise ValidationError("The code has expired. Send your email again to get a new one.", field="code")

        if not codes_match(code, ws.code_hash):
            attempts = ws.code_attempts + 1
            if attempts >= config.VERIFICATION_MAX_ATTEMPTS:
                self.store.put(user_id, ws.advance(WizardStage.VERIFY_EMAIL, code_hash=None, code_expires_at=None))
                raise ValidationError("Too many wrong codes. Send your email again to get a new one.", field="code")
            self.store.put(user_id, ws.advance(ws.stage, code_attempts=attempts))
            left = config.VERIFICATION_MAX_ATTEMPTS - attempts
            raise ValidationError(f"Invalid code. {left} attempt(s) left.", field="code")

        ws = ws.advance(ws.stage, email_verified=True, code_hash=None, code_expires_at=None)
        return self._save(ws, WizardStage.VERIFY_CODE)

    async def finalize(self, user_id: int, poster: UploadedFile | None = None) -> Event:
        """Create the event from the session.

        This is the only place that writes the event. The club and the
        creator's permission are checked again because both may have
        changed while the wizard was open.
        """
        ws = self._load(user_id, WizardStage.POSTER)
        if ws.stage != WizardStage.POSTER:
            raise WizardStageError(f"Please complete the {STAGE_TITLES[ws.stage]} step first.")
        if poster is not None:
            validate_upload(poster, config.POSTER_ALLOWED_TYPES, config.POSTER_MAX_BYTES, "poster")
            ws = ws.advance(ws.stage, poster_attached=True)

        f = ws.fields
        paid = f.get("fee", 0) > 0
        try:
            async with AsyncSessionLocal() as session:
                async with session.begin():
                    club = await session.get(Club, ws.club_id)
                    if club is None or not club.is_active:
                        raise ClubUnavailableError("The club is no longer active. The event was not created.")

                    actor = await get_user_by_telegram_id(session, user_id)
                    check = await check_club_permission(session, actor, club.id, ClubAction.MODERATE)
                    if not check.allowed:
                        raise AuthorizationError(f"You can no longer create events for this club ({check.reason}).")

                    visibility = Visibility(ws.visibility)
                    event = Event(
                        club_id=club.id,
                        created_by_id=actor.id,
                        title=f["title"],
                        description=f["description"],
                        starts_at=f["starts_at"],
                        venue=f["venue"],
                        location_type=f["location_type"],
                        category=f["category"],
                        visibility=visibility.value,
                        status=initial_status(club).value,
                        min_participants=f.get("min_participants"),
                        max_participants=f.get("max_participants"),
                        registration_deadline=f.get("registration_deadline"),
                        external_form_url=f.get("external_form_url"),
                        meeting_link=f.get("meeting_link"),
                        requirements=f.get("requirements"),
                        fee=f.get("fee", 0),
                        bank_details=f.get("bank_details") if paid else None,
                        khalti_number=f.get("khalti_number") if paid else None,
                        esewa_number=f.get("esewa_number") if paid else None,
                        payment_instructions=f.get("payment_instructions") if paid else None,
                        payment_qr_file_id=f.get("payment_qr_file_id") if paid else None,
                        poster_file_id=poster.file_id if poster else None,
                        reserved_seats=0,
                        confirmed_count=0,
                        registration_open=True,
                    )
                    event.rules = build_rules(
                        visibility, club.id, f.get("batches", []), f.get("faculties", []), f.get("allow_guests", False)
                    )
                    session.add(event)
                    await session.flush()

                    record_audit(
                        session,
                        AuditAction.EVENT_CREATED,
                        actor.id,
                        club_id=club.id,
                        event_id=event.id,
                        details={"status": event.status, "visibility": event.visibility, "fee": event.fee},
                    )
                    if ws.email_verified and ws.email:
                        actor.email = ws.email
        except (ClubUnavailableError, AuthorizationError):
            self.store.delete(user_id)
            raise
        except SQLAlchemyError as e:
            logger.exception("Failed to create event for user %s", user_id)
            raise DependencyError("The event could not be saved. Please try again.") from e

        self.store.delete(user_id)
        logger.info("Event %s created by %s with status %s", event.id, user_id, event.status)
        return event
