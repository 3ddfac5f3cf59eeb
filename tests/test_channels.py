# tests/test_channels.py
import sqlite3
from datetime import date, datetime
from unittest.mock import patch

import pytest

import config
from channels import format_event_card, publish, refresh_announcement, select_surface
from database import Club, Event, EventStatus, Visibility
from notifications import Surface
from registration import register

PUBLIC_CHAT = -100111
CLUB_CHAT = -100222


def write_lock_is_free() -> bool:
    """Try to start a write transaction from a separate connection."""
    conn = sqlite3.connect(config.DB_PATH, timeout=0.2, isolation_level=None)
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("ROLLBACK")
        return True
    except sqlite3.OperationalError:
        return False
    finally:
        conn.close()


@pytest.fixture
def surfaces():
    with patch.object(config, "PUBLIC_EVENTS_CHAT_ID", PUBLIC_CHAT), \
            patch.object(config, "CLUB_EVENTS_CHAT_ID", CLUB_CHAT):
        yield


def card_event(**fields) -> Event:
    values = {
        "id": 1,
        "title": "Intro <Robotics>",
        "description": "Build a line follower",
        "starts_at": datetime(2026, 12, 25, 10, 0),
        "venue": "Hall B",
        "location_type": "physical",
        "category": "workshop",
        "visibility": Visibility.PUBLIC.value,
        "fee": 0,
        "max_participants": None,
        "confirmed_count": 0,
        "registration_open": True,
    }
    values.update(fields)
    return Event(**values)


class TestSelectSurface:
    def test_public_and_verified_events_share_the_public_chat(self, surfaces) -> None:
        club = Club(private_thread_id=9)

        for visibility in (Visibility.PUBLIC, Visibility.VERIFIED_ONLY):
            event = Event(visibility=visibility.value)
            assert select_surface(event, club) == Surface(PUBLIC_CHAT)

    def test_private_events_go_to_the_club_topic(self, surfaces) -> None:
        event = Event(visibility=Visibility.CLUB_PRIVATE.value)

        assert select_surface(event, Club(private_thread_id=9)) == Surface(CLUB_CHAT, 9)
        assert select_surface(event, Club(private_thread_id=None)) is None

    def test_unconfigured_chats(self) -> None:
        with patch.object(config, "PUBLIC_EVENTS_CHAT_ID", None), patch.object(config, "CLUB_EVENTS_CHAT_ID", None):
            assert select_surface(Event(visibility=Visibility.PUBLIC.value), Club()) is None
            assert select_surface(Event(visibility=Visibility.CLUB_PRIVATE.value), Club(private_thread_id=9)) is None


class TestEventCard:
    def test_card_contents(self) -> None:
        text = format_event_card(
            card_event(max_participants=30, confirmed_count=4, registration_deadline=date(2026, 12, 20)),
            "Robotics Club",
        )

        assert "Intro &lt;Robotics&gt;" in text
        assert "Robotics Club" in text
        assert "4/30 registered" in text
        assert "20 December 2026" in text
        assert "🆓 Free" in text
        assert "closed" not in text

    def test_paid_and_closed(self) -> None:
        text = format_event_card(card_event(fee=500, registration_open=False), "Robotics Club")

        assert "Fee: 500" in text
        assert "Registration is closed" in text


class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_once(self, surfaces, make_event, club, president, notifier, fetch) -> None:
        event = await make_event(club, president)

        assert await publish(event.id, notifier) is True
        assert await publish(event.id, notifier) is False

        notifier.send_to_surface.assert_awaited_once()
        assert notifier.send_to_surface.call_args.args[0] == Surface(PUBLIC_CHAT)
        stored = await fetch(Event, event.id)
        assert stored.announcement_chat_id == PUBLIC_CHAT
        assert stored.announcement_message_id == 777

    @pytest.mark.asyncio
    async def test_unscheduled_events_are_not_published(self, surfaces, make_event, club, president, notifier) -> None:
        event = await make_event(club, president, status=EventStatus.PENDING_APPROVAL.value)

        assert await publish(event.id, notifier) is False
        notifier.send_to_surface.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_send_releases_the_claim(self, surfaces, make_event, club, president, notifier, fetch) -> None:
        event = await make_event(club, president)
        notifier.send_to_surface.return_value = None

        assert await publish(event.id, notifier) is False
        stored = await fetch(Event, event.id)
        assert stored.announcement_chat_id is None
        assert stored.announcement_message_id is None

        notifier.send_to_surface.return_value = notifier.send_document.return_value
        assert await publish(event.id, notifier) is True
        stored = await fetch(Event, event.id)
        assert stored.announcement_message_id == 501

    @pytest.mark.asyncio
    async def test_private_topic_is_created_once(self, surfaces, make_event, club, president, notifier, fetch) -> None:
        first = await make_event(club, president, visibility=Visibility.CLUB_PRIVATE.value)
        second = await make_event(club, president, visibility=Visibility.CLUB_PRIVATE.value)

        assert await publish(first.id, notifier)
        assert await publish(second.id, notifier)

        notifier.create_topic.assert_awaited_once_with(CLUB_CHAT, "robotics-events")
        for call in notifier.send_to_surface.await_args_list:
            assert call.args[0] == Surface(CLUB_CHAT, 55)
        assert (await fetch(Club, club.id)).private_thread_id == 55

    @pytest.mark.asyncio
    async def test_private_event_without_topic_is_not_published(
        self, surfaces, make_event, club, president, notifier, fetch
    ) -> None:
        event = await make_event(club, president, visibility=Visibility.CLUB_PRIVATE.value)
        notifier.create_topic.return_value = None

        assert await publish(event.id, notifier) is False
        notifier.send_to_surface.assert_not_awaited()
        assert (await fetch(Event, event.id)).announcement_chat_id is None


class TestRefreshAnnouncement:
    @pytest.mark.asyncio
    async def test_refresh_edits_the_posted_card(self, surfaces, make_event, club, president, notifier) -> None:
        event = await make_event(club, president)
        assert await refresh_announcement(event.id, notifier) is False

        await publish(event.id, notifier)
        assert await refresh_announcement(event.id, notifier) is True

        args = notifier.edit_announcement.call_args.args
        assert args[0] == Surface(PUBLIC_CHAT)
        assert args[1] == 777


class TestNoLockDuringTelegramCalls:
    @pytest.mark.asyncio
    async def test_publish_leaves_the_database_writable(
        self, surfaces, make_event, club, president, notifier
    ) -> None:
        event = await make_event(club, president, visibility=Visibility.CLUB_PRIVATE.value)
        seen = []

        async def create_topic(*args):
            seen.append(write_lock_is_free())
            return 55

        async def send_to_surface(*args, **kwargs):
            seen.append(write_lock_is_free())
            return notifier.send_document.return_value

        notifier.create_topic.side_effect = create_topic
        notifier.send_to_surface.side_effect = send_to_surface

        assert await publish(event.id, notifier) is True
        assert seen == [True, True]

    @pytest.mark.asyncio
    async def test_registration_refresh_leaves_the_database_writable(
        self, surfaces, make_user, make_event, club, president, notifier
    ) -> None:
        event = await make_event(club, president, max_participants=5)
        await publish(event.id, notifier)
        seen = []

        async def edit_announcement(*args, **kwargs):
            seen.append(write_lock_is_free())
            return True

        notifier.edit_announcement.side_effect = edit_announcement

        await register(event.id, await make_user(), notifier)

        assert seen == [True]
