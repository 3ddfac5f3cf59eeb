"""Per-user wizard sessions with a fixed time to live.

A session is replaced as a whole on every change, so a reader sees either
the previous stage's state or the next one, never a mix of both.
"""
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import StrEnum
from typing import Any, Callable

from config import WIZARD_SESSION_TTL

logger = logging.getLogger(__name__)


class WizardStage(StrEnum):
    BASIC_INFO = "basic_info"
    DETAILS = "details"
    PAYMENT = "payment"
    PAYMENT_QR = "payment_qr"
    VERIFY_EMAIL = "verify_email"
    VERIFY_CODE = "verify_code"
    POSTER = "poster"


STAGE_ORDER = list(WizardStage)


@dataclass(frozen=True)
class WizardSession:
    user_id: int
    club_id: int
    visibility: str
    created_at: float
    stage: WizardStage = WizardStage.BASIC_INFO
    fields: dict[str, Any] = field(default_factory=dict)
    needs_verification: bool = False
    email_verified: bool = False
    payment_details_collected: bool = False
    poster_attached: bool = False
    # pending verification code
    email: str | None = None
    code_hash: str | None = None
    code_expires_at: float | None = None
    code_attempts: int = 0

    def with_fields(self, **values: Any) -> "WizardSession":
        return replace(self, fields={**self.fields, **values})

    def advance(self, stage: WizardStage, **changes: Any) -> "WizardSession":
        return replace(self, stage=stage, **changes)


class SessionStore:
    def __init__(self, ttl: timedelta = WIZARD_SESSION_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl.total_seconds()
        self.clock = clock
        self._sessions: dict[int, WizardSession] = {}

    def now(self) -> float:
        return self.clock()

    def is_expired(self, session: WizardSession) -> bool:
        return self.clock() - session.created_at > self.ttl

    def put(self, user_id: int, session: WizardSession) -> None:
        self._sessions[user_id] = session

    def get(self, user_id: int) -> WizardSession | None:
        session = self._sessions.get(user_id)
        if session is None:
            return None
        if self.is_expired(session):
            # an expired session is indistinguishable from a missing one
            self._sessions.pop(user_id, None)
            logger.info("Wizard session of user %s expired", user_id)
            return None
        return session

    def delete(self, user_id: int) -> None:
        self._sessions.pop(user_id, None)

    def purge_expired(self) -> int:
        expired = [uid for uid, s in self._sessions.items() if self.is_expired(s)]
        for uid in expired:
            del self._sessions[uid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
