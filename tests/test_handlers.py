# tests/test_handlers.py
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiogram.filters import CommandObject

from database import Role, User
from errors import AlreadyDecidedError
from handlers.common import cancel_form, cmd_help, cmd_start
from handlers.events import (
    USAGE, cmd_create_event, collect_payment_qr, collect_poster, process_basic_info, skip_payment_qr, skip_poster
)
from handlers.registration import cmd_export_event, join_event, receive_file, show_participants
from handlers.review import approve_event, save_reject_payment_note, start_reject_event, start_reject_payment
from payments import submit_proof
from registration import register
from sessions import WizardSession
from states import CreateEvent, RejectPaymentReason
from uploads import UploadedFile, UploadKind


def command(name: str, args: str | None = None) -> CommandObject:
    return CommandObject(prefix="/", command=name, args=args)


class TestCommonHandlers:
    @pytest.mark.asyncio
    async def test_start_greets_admins(self, mock_message) -> None:
        await cmd_start(mock_message, User(telegram_id=1000, role=Role.ADMIN.value))

        text = mock_message.answer.call_args.args[0]
        assert "Test User" in text
        assert "server admin" in text

    @pytest.mark.asyncio
    async def test_start_for_members(self, mock_message) -> None:
        await cmd_start(mock_message, User(telegram_id=3001, role=Role.MEMBER.value))

        assert "server admin" not in mock_message.answer.call_args.args[0]

    @pytest.mark.asyncio
    async def test_help(self, mock_message) -> None:
        await cmd_help(mock_message)

        assert "/create_event" in mock_message.answer.call_args.args[0]

    @pytest.mark.asyncio
    async def test_cancel_clears_everything(self, mock_callback, fsm_context, wizard, uploads) -> None:
        await fsm_context.set_state(CreateEvent.details)
        wizard.store.put(3001, WizardSession(user_id=3001, club_id=1, visibility="public", created_at=wizard.store.now()))
        pending = uploads.expect(3001, UploadKind.POSTER)

        await cancel_form(mock_callback, fsm_context, wizard, uploads)

        assert await fsm_context.get_state() is None
        assert wizard.current(3001) is None
        assert pending.future.cancelled()
        mock_callback.message.answer.assert_awaited_once_with("❌ Cancelled.")


class TestCreateEventHandlers:
    @pytest.mark.asyncio
    async def test_usage_without_arguments(self, mock_message, fsm_context, wizard) -> None:
        await cmd_create_event(mock_message, command("create_event"), fsm_context, User(telegram_id=3001), wizard)

        mock_message.answer.assert_awaited_once_with(USAGE)

    @pytest.mark.asyncio
    async def test_unknown_club(self, db, mock_message, fsm_context, wizard, make_user) -> None:
        user = await make_user(3001)

        await cmd_create_event(mock_message, command("create_event", "nope"), fsm_context, user, wizard)

        assert "nope" in mock_message.answer.call_args.args[0]
        assert await fsm_context.get_state() is None

    @pytest.mark.asyncio
    async def test_past_date_keeps_the_stage(self, mock_message, fsm_context, wizard, make_user, make_club) -> None:
        president = await make_user(3001)
        await make_club(president, slug="robotics")

        await cmd_create_event(mock_message, command("create_event", "robotics public"), fsm_context, president, wizard)
        assert await fsm_context.get_state() == CreateEvent.basic_info.state

        mock_message.text = (
            "Title: Intro to Robotics\n"
            "Date: 2020-01-01 10:00\n"
            "Venue: Hall B\n"
            "Category: workshop\n"
            "Description: Build a line follower"
        )
        await process_basic_info(mock_message, fsm_context, wizard)

        assert await fsm_context.get_state() == CreateEvent.basic_info.state
        assert mock_message.answer.call_args.args[0].startswith("⚠️")

        mock_message.text = mock_message.text.replace("2020-01-01", "2099-01-01")
        await process_basic_info(mock_message, fsm_context, wizard)

        assert await fsm_context.get_state() == CreateEvent.details.state

    @pytest.mark.asyncio
    async def test_skip_poster_stops_the_upload_wait(
        self, mock_callback, fsm_context, wizard, uploads, notifier
    ) -> None:
        pending = uploads.expect(3001, UploadKind.POSTER)

        with patch("handlers.events.create_event", AsyncMock()) as create:
            collector = asyncio.create_task(
                collect_poster(mock_callback.message, fsm_context, wizard, uploads, notifier, pending)
            )
            await asyncio.sleep(0)
            await skip_poster(mock_callback, fsm_context, wizard, uploads, notifier)
            await collector

        assert pending.future.cancelled()
        assert uploads.pending_for(3001) is None
        create.assert_awaited_once_with(mock_callback.message, fsm_context, wizard, notifier, 3001, None)

    @pytest.mark.asyncio
    async def test_skip_qr_stops_the_upload_wait(self, mock_callback, fsm_context, wizard, uploads) -> None:
        pending = uploads.expect(3001, UploadKind.PAYMENT_QR)
        ws = WizardSession(user_id=3001, club_id=1, visibility="public", created_at=wizard.store.now())

        with patch.object(wizard, "attach_payment_qr", MagicMock(return_value=ws)) as attach, \
                patch("handlers.events.show_stage", AsyncMock()):
            collector = asyncio.create_task(
                collect_payment_qr(mock_callback.message, fsm_context, wizard, uploads, pending)
            )
            await asyncio.sleep(0)
            await skip_payment_qr(mock_callback, fsm_context, wizard, uploads)
            await collector

        assert pending.future.cancelled()
        attach.assert_called_once_with(3001, None)


class TestRegistrationHandlers:
    @pytest.mark.asyncio
    async def test_join_when_full_shows_capacity_alert(
        self, mock_callback, make_user, make_event, club, president, notifier
    ) -> None:
        event = await make_event(club, president, max_participants=1)
        first = await make_user()
        second = await make_user()

        mock_callback.data = f"join_event_{event.id}"
        await join_event(mock_callback, first, notifier)
        mock_callback.answer.assert_awaited_with(
            "✅ You are registered! Details were sent to you privately.", show_alert=True
        )

        await join_event(mock_callback, second, notifier)
        mock_callback.answer.assert_awaited_with("Registration failed: capacity reached.", show_alert=True)

    @pytest.mark.asyncio
    async def test_file_without_a_wait(self, mock_message, uploads) -> None:
        mock_message.document = MagicMock(file_id="f", mime_type="application/pdf", file_size=100)

        await receive_file(mock_message, uploads)

        mock_message.answer.assert_awaited_once_with("I am not waiting for a file from you right now.")

    @pytest.mark.asyncio
    async def test_invalid_file_keeps_waiting(self, mock_message, uploads) -> None:
        pending = uploads.expect(3001, UploadKind.PAYMENT_PROOF, event_id=1)
        mock_message.document = MagicMock(file_id="f", mime_type="application/zip", file_size=100)

        await receive_file(mock_message, uploads)

        assert "Send another file." in mock_message.answer.call_args.args[0]
        assert not pending.future.done()
        assert uploads.pending_for(3001) is pending

    @pytest.mark.asyncio
    async def test_valid_file_is_delivered(self, mock_message, uploads) -> None:
        pending = uploads.expect(3001, UploadKind.PAYMENT_PROOF, event_id=1)
        mock_message.document = MagicMock(file_id="f", mime_type="application/pdf", file_size=100)

        await receive_file(mock_message, uploads)

        assert pending.future.result() == UploadedFile("f", "application/pdf", 100)
        mock_message.answer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_participants_are_sent_privately(
        self, mock_callback, make_user, make_event, club, president, notifier
    ) -> None:
        event = await make_event(club, president)
        mock_callback.data = f"participants_{event.id}"

        await show_participants(mock_callback, president, notifier)

        assert notifier.send_to_user.call_args.args[0] == 3001
        assert "No registrations yet." in notifier.send_to_user.call_args.args[1]

        await show_participants(mock_callback, await make_user(), notifier)
        mock_callback.answer.assert_awaited_with(
            "Only club moderators can see the participant list.", show_alert=True
        )

    @pytest.mark.asyncio
    async def test_export(self, mock_message, make_event, club, president) -> None:
        event = await make_event(club, president)

        await cmd_export_event(mock_message, command("export_event", "abc"), president)
        assert "Usage" in mock_message.answer.call_args.args[0]

        await cmd_export_event(mock_message, command("export_event", str(event.id)), president)
        document = mock_message.answer_document.call_args.args[0]
        assert document.filename == f"participants_Intro_to_Robotics_{event.id}.xlsx"


class TestReviewHandlers:
    @pytest.mark.asyncio
    async def test_approve_twice_shows_alert(self, mock_callback, notifier) -> None:
        mock_callback.data = "approve_event_5"
        reviewer = User(telegram_id=1000, role=Role.ADMIN.value)

        with patch("handlers.review.approval.approve", AsyncMock(side_effect=AlreadyDecidedError("Already handled."))):
            await approve_event(mock_callback, reviewer, notifier)

        mock_callback.answer.assert_awaited_once_with("Already handled.", show_alert=True)
        mock_callback.message.edit_reply_markup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_only_admins_start_a_rejection(self, mock_callback, fsm_context) -> None:
        mock_callback.data = "reject_event_5"

        await start_reject_event(mock_callback, fsm_context, User(telegram_id=3001, role=Role.MEMBER.value))

        assert await fsm_context.get_state() is None
        assert mock_callback.answer.call_args.kwargs == {"show_alert": True}

    @pytest.mark.asyncio
    async def test_non_moderator_gets_no_note_prompt(
        self, mock_callback, fsm_context, make_user, make_event, club, president, notifier
    ) -> None:
        event = await make_event(club, president, fee=300)
        user = await make_user()
        outcome = await register(event.id, user, notifier)
        await submit_proof(event.id, user, UploadedFile("proof", "image/png", 1024), notifier)
        mock_callback.data = f"reject_payment_{outcome.registration.id}"

        await start_reject_payment(mock_callback, fsm_context, user)

        assert await fsm_context.get_state() is None
        mock_callback.answer.assert_awaited_once_with("Only club moderators can review payments.", show_alert=True)
        mock_callback.message.answer.assert_not_awaited()

        mock_callback.answer.reset_mock()
        await start_reject_payment(mock_callback, fsm_context, president)

        assert await fsm_context.get_state() == RejectPaymentReason.waiting.state
        assert (await fsm_context.get_data())["registration_id"] == outcome.registration.id

    @pytest.mark.asyncio
    async def test_dash_means_no_note(self, mock_message, fsm_context, notifier) -> None:
        reviewer = User(telegram_id=3001)
        await fsm_context.set_state(RejectPaymentReason.waiting)
        await fsm_context.update_data(registration_id=9)
        mock_message.text = " - "

        with patch("handlers.review.payments.decide", AsyncMock()) as decide:
            await save_reject_payment_note(mock_message, fsm_context, reviewer, notifier)

        decide.assert_awaited_once_with(9, reviewer, False, notifier, None)
        assert await fsm_context.get_state() is None
        assert "rejected" in mock_message.answer.call_args.args[0]


class TestUserMiddleware:
    @pytest.mark.asyncio
    async def test_loads_the_user_row(self, db, aiogram_user) -> None:
        from bot import user_middleware

        handler = AsyncMock(return_value="handled")
        data = {"event_from_user": aiogram_user}

        assert await user_middleware(handler, MagicMock(), data) == "handled"

        db_user = data["db_user"]
        assert db_user.telegram_id == aiogram_user.id
        assert db_user.full_name == "Test User"
        assert db_user.username == "testuser"
        handler.assert_awaited_once()
