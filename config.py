import os
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()

# Bot token (required in .env)
BOT_TOKEN = os.getenv("BOT_TOKEN")
if not BOT_TOKEN:
    raise ValueError("BOT_TOKEN not found in .env! Set it: BOT_TOKEN=your_token")

# Server-level admins who review events (comma separated, e.g. 123456789,987654321)
CHIEF_ADMIN_IDS_STR = os.getenv("CHIEF_ADMIN_IDS", "")
if not CHIEF_ADMIN_IDS_STR.strip():
    raise ValueError("CHIEF_ADMIN_IDS not found in .env! Set at least your own id")

CHIEF_ADMIN_IDS = [int(id_str.strip()) for id_str in CHIEF_ADMIN_IDS_STR.split(",") if id_str.strip()]

# SQLite database path
DB_PATH = os.getenv("DB_PATH", "club_events.db")


def _optional_chat_id(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    return int(value) if value else None


# Announcement surfaces
PUBLIC_EVENTS_CHAT_ID = _optional_chat_id("PUBLIC_EVENTS_CHAT_ID")
CLUB_EVENTS_CHAT_ID = _optional_chat_id("CLUB_EVENTS_CHAT_ID")  # forum supergroup, one topic per club
EVENT_REVIEW_CHAT_ID = _optional_chat_id("EVENT_REVIEW_CHAT_ID")

# Outbound mail for verification codes
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_SENDER = os.getenv("SMTP_SENDER") or SMTP_USER
VERIFICATION_EMAIL_DOMAIN = os.getenv("VERIFICATION_EMAIL_DOMAIN", "").strip().lstrip("@") or None

# Workflow timings
WIZARD_SESSION_TTL = timedelta(minutes=10)
UPLOAD_TIMEOUT = timedelta(minutes=5)
VERIFICATION_CODE_TTL = timedelta(minutes=5)
VERIFICATION_CODE_LENGTH = 6
VERIFICATION_MAX_ATTEMPTS = 5

# Upload limits
PROOF_ALLOWED_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "application/pdf"})
PROOF_MAX_BYTES = 8 * 1024 * 1024
POSTER_ALLOWED_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})
POSTER_MAX_BYTES = 10 * 1024 * 1024

# How many club reviewers get a payment proof
MAX_PAYMENT_REVIEWERS = 3
