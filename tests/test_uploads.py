# tests/test_uploads.py
import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from errors import InvalidUploadError
from uploads import UploadedFile, UploadKind, UploadWaiter, validate_for_kind, validate_upload


class TestUploadedFile:
    def test_from_document(self) -> None:
        message = MagicMock(document=MagicMock(file_id="doc-1", mime_type="application/pdf", file_size=1234))

        upload = UploadedFile.from_message(message)

        assert upload == UploadedFile("doc-1", "application/pdf", 1234)
        assert not upload.is_image

    def test_from_photo_takes_largest_size(self) -> None:
        small = MagicMock(file_id="small", file_size=10)
        large = MagicMock(file_id="large", file_size=900)
        message = MagicMock(document=None, photo=[small, large])

        upload = UploadedFile.from_message(message)

        assert upload == UploadedFile("large", "image/jpeg", 900)
        assert upload.is_image

    def test_text_message_has_no_file(self) -> None:
        assert UploadedFile.from_message(MagicMock(document=None, photo=None)) is None


class TestValidation:
    def test_accepts_allowed_type(self) -> None:
        validate_upload(UploadedFile("f", "IMAGE/PNG", 100), {"image/png"}, 1024)

    def test_rejects_type(self) -> None:
        with pytest.raises(InvalidUploadError) as exc:
            validate_upload(UploadedFile("f", "application/zip", 100), {"image/png", "application/pdf"}, 1024, "proof")
        assert "PDF, PNG" in str(exc.value)
        assert exc.value.field == "proof"

    def test_rejects_size(self) -> None:
        with pytest.raises(InvalidUploadError):
            validate_upload(UploadedFile("f", "image/png", 3 * 1024 * 1024), {"image/png"}, 2 * 1024 * 1024)

    def test_missing_content_type(self) -> None:
        with pytest.raises(InvalidUploadError):
            validate_upload(UploadedFile("f", None, 10), {"image/png"}, 1024)

    def test_rules_per_kind(self) -> None:
        pdf = UploadedFile("f", "application/pdf", 1024)

        validate_for_kind(UploadKind.PAYMENT_PROOF, pdf)
        with pytest.raises(InvalidUploadError):
            validate_for_kind(UploadKind.POSTER, pdf)
        with pytest.raises(InvalidUploadError):
            validate_for_kind(UploadKind.PAYMENT_QR, pdf)


class TestUploadWaiter:
    @pytest.mark.asyncio
    async def test_delivered_file_resolves_the_wait(self) -> None:
        waiter = UploadWaiter()
        pending = waiter.expect(7, UploadKind.POSTER, event_id=3)
        upload = UploadedFile("poster", "image/png", 100)

        assert waiter.pending_for(7).context == {"event_id": 3}
        assert waiter.deliver(7, upload) is True

        assert await waiter.wait(pending, timedelta(seconds=1)) == upload
        assert waiter.pending_for(7) is None

    @pytest.mark.asyncio
    async def test_wait_times_out(self) -> None:
        waiter = UploadWaiter()
        pending = waiter.expect(7, UploadKind.PAYMENT_PROOF)

        assert await waiter.wait(pending, 0.01) is None
        assert waiter.deliver(7, UploadedFile("late", "image/png", 1)) is False

    @pytest.mark.asyncio
    async def test_new_wait_replaces_the_old_one(self) -> None:
        waiter = UploadWaiter()
        first = waiter.expect(7, UploadKind.POSTER)
        task = asyncio.create_task(waiter.wait(first, 5))
        await asyncio.sleep(0)

        second = waiter.expect(7, UploadKind.PAYMENT_QR)

        assert await task is None
        assert waiter.pending_for(7) is second

    def test_deliver_without_wait(self) -> None:
        waiter = UploadWaiter()

        assert waiter.deliver(7, UploadedFile("f", "image/png", 1)) is False
