import asyncio
import hashlib
import logging
import re
import secrets
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Protocol

import config
from errors import ValidationError

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def generate_code(length: int = config.VERIFICATION_CODE_LENGTH) -> str:
    # first digit is never zero, so the code always has exactly `length` digits
    return str(secrets.randbelow(9 * 10 ** (length - 1)) + 10 ** (length - 1))


def hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().encode()).hexdigest()


def codes_match(code: str, expected_hash: str) -> bool:
    return secrets.compare_digest(hash_code(code), expected_hash)


def validate_email(email: str, domain: str | None = None) -> str:
    email = email.strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format. Example: name@example.com", field="email")
    if domain and not email.endswith(f"@{domain.lower()}"):
        raise ValidationError(f"Please use your @{domain} email address.", field="email")
    return email


def normalize_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    # local 10 digit mobile numbers start with 9
    if len(digits) == 10 and digits.startswith("9"):
        return f"+977-{digits}"
    if len(digits) == 13 and digits.startswith("9779"):
        return f"+977-{digits[3:]}"
    if 10 <= len(digits) <= 15:
        return f"+{digits}"
    raise ValidationError("Invalid phone number. Use 98XXXXXXXX or an international number.", field="phone")


class CodeSender(Protocol):
    async def send_code(self, email: str, code: str) -> str:
        """Deliver the code and return an opaque delivery token."""


class SmtpCodeSender:
    def __init__(self, host: str, port: int, user: str | None, password: str | None, sender: str):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    def _build_message(self, email: str, code: str) -> EmailMessage:
        minutes = int(config.VERIFICATION_CODE_TTL.total_seconds() // 60)
        msg = EmailMessage()
        msg["Subject"] = "Your event verification code"
        msg["From"] = self.sender
        msg["To"] = email
        msg["Message-ID"] = make_msgid()
        msg.set_content(
            f"Your verification code is {code}\n\n"
            f"It expires in {minutes} minutes. If you did not request it, ignore this email."
        )
        return msg

    def _send(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password or "")
            smtp.send_message(msg)

    async def send_code(self, email: str, code: str) -> str:
        msg = self._build_message(email, code)
        await asyncio.to_thread(self._send, msg)
        logger.info("Verification code sent to %s", email)
        return msg["Message-ID"]


class LoggingCodeSender:
    """Used when SMTP is not configured; prints the code to the log."""

    async def send_code(self, email: str, code: str) -> str:
        logger.warning("SMTP is not configured, verification code for %s is %s", email, code)
        return f"log-{secrets.token_hex(8)}"


def get_code_sender() -> CodeSender:
    if config.SMTP_HOST and config.SMTP_SENDER:
        return SmtpCodeSender(
            config.SMTP_HOST, config.SMTP_PORT, config.SMTP_USER, config.SMTP_PASSWORD, config.SMTP_SENDER
        )
    return LoggingCodeSender()
