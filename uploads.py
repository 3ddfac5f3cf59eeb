"""File uploads and the waits that collect them.

A wait is a future keyed by the uploader's Telegram id. The handler that
asked for a file awaits it with a timeout, and the message handler that
receives the file resolves it. Only one wait per user exists at a time.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import Any, Iterable

from aiogram import types

import config
from errors import InvalidUploadError

logger = logging.getLogger(__name__)


class UploadKind(StrEnum):
    PAYMENT_QR = "payment_qr"
    POSTER = "poster"
    PAYMENT_PROOF = "payment_proof"


@dataclass(frozen=True)
class UploadedFile:
    file_id: str
    content_type: str | None
    size: int | None

    @classmethod
    def from_message(cls, message: types.Message) -> "UploadedFile | None":
        if message.document:
            doc = message.document
            return cls(doc.file_id, doc.mime_type, doc.file_size)
        if message.photo:
            # Telegram re-encodes photos as JPEG; the last size is the largest
            photo = message.photo[-1]
            return cls(photo.file_id, "image/jpeg", photo.file_size)
        return None

    @property
    def is_image(self) -> bool:
        return (self.content_type or "").startswith("image/")


def _describe_types(allowed: Iterable[str]) -> str:
    names = sorted({t.split("/")[-1].upper() for t in allowed})
    return ", ".join(names)


def validate_upload(upload: UploadedFile, allowed_types: Iterable[str], max_bytes: int, what: str = "file") -> None:
    allowed = frozenset(allowed_types)
    if (upload.content_type or "").lower() not in allowed:
        raise InvalidUploadError(f"Invalid {what} type. Allowed: {_describe_types(allowed)}.", field=what)
    if upload.size is not None and upload.size > max_bytes:
        raise InvalidUploadError(
            f"The {what} is too large. Maximum size is {max_bytes // (1024 * 1024)} MB.", field=what
        )


@dataclass
class PendingUpload:
    user_id: int
    kind: UploadKind
    context: dict[str, Any] = field(default_factory=dict)
    future: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())


class UploadWaiter:
    def __init__(self):
        self._pending: dict[int, PendingUpload] = {}

    def expect(self, user_id: int, kind: UploadKind, **context: Any) -> PendingUpload:
        self.cancel(user_id)
        pending = PendingUpload(user_id, kind, context)
        self._pending[user_id] = pending
        return pending

    def pending_for(self, user_id: int) -> PendingUpload | None:
        pending = self._pending.get(user_id)
        if pending is not None and pending.future.done():
            return None
        return pending

    def deliver(self, user_id: int, upload: UploadedFile) -> bool:
        pending = self.pending_for(user_id)
        if pending is None:
            return False
        pending.future.set_result(upload)
        return True

    def cancel(self, user_id: int) -> None:
        pending = self._pending.pop(user_id, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    async def wait(self, pending: PendingUpload, timeout: timedelta | float) -> UploadedFile | None:
        """Wait for the file; None means the wait timed out or was replaced."""
        seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), seconds)
        except asyncio.TimeoutError:
            logger.info("Upload wait %s for user %s timed out", pending.kind, pending.user_id)
            return None
        except asyncio.CancelledError:
            if pending.future.cancelled():
                return None
            raise
        finally:
            if self._pending.get(pending.user_id) is pending:
                del self._pending[pending.user_id]


def validate_for_kind(kind: UploadKind, upload: UploadedFile) -> None:
    if kind == UploadKind.PAYMENT_PROOF:
        validate_upload(upload, config.PROOF_ALLOWED_TYPES, config.PROOF_MAX_BYTES, "payment proof")
    else:
        what = "QR code" if kind == UploadKind.PAYMENT_QR else "poster"
        validate_upload(upload, config.POSTER_ALLOWED_TYPES, config.POSTER_MAX_BYTES, what)
