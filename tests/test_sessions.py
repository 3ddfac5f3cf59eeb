# tests/test_sessions.py
import dataclasses
from datetime import timedelta

import pytest

from sessions import STAGE_ORDER, SessionStore, WizardSession, WizardStage


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _session(store: SessionStore, user_id: int = 1) -> WizardSession:
    return WizardSession(user_id=user_id, club_id=1, visibility="public", created_at=store.now())


class TestWizardSession:
    def test_sessions_are_immutable(self) -> None:
        ws = WizardSession(user_id=1, club_id=1, visibility="public", created_at=0.0)

        with pytest.raises(dataclasses.FrozenInstanceError):
            ws.stage = WizardStage.DETAILS  # type: ignore[misc]

    def test_advance_and_fields_return_new_sessions(self) -> None:
        ws = WizardSession(user_id=1, club_id=1, visibility="public", created_at=0.0)

        moved = ws.with_fields(title="Robotics").advance(WizardStage.DETAILS, needs_verification=True)

        assert ws.stage == WizardStage.BASIC_INFO
        assert ws.fields == {}
        assert moved.stage == WizardStage.DETAILS
        assert moved.fields == {"title": "Robotics"}
        assert moved.needs_verification is True

    def test_stage_order(self) -> None:
        assert STAGE_ORDER[0] == WizardStage.BASIC_INFO
        assert STAGE_ORDER[-1] == WizardStage.POSTER
        assert STAGE_ORDER.index(WizardStage.PAYMENT) < STAGE_ORDER.index(WizardStage.VERIFY_EMAIL)


class TestSessionStore:
    def test_put_and_get(self) -> None:
        store = SessionStore(ttl=timedelta(minutes=10), clock=FakeClock())
        ws = _session(store)

        store.put(1, ws)

        assert store.get(1) is ws
        assert store.get(2) is None
        assert len(store) == 1

    def test_session_is_alive_until_ttl(self) -> None:
        clock = FakeClock()
        store = SessionStore(ttl=timedelta(minutes=10), clock=clock)
        store.put(1, _session(store))

        clock.now += 600

        assert store.get(1) is not None

    def test_session_expires_after_ttl(self) -> None:
        clock = FakeClock()
        store = SessionStore(ttl=timedelta(minutes=10), clock=clock)
        store.put(1, _session(store))

        clock.now += 600.001

        assert store.get(1) is None
        # an expired session is evicted, not kept around
        assert len(store) == 0

    def test_later_write_replaces_earlier(self) -> None:
        store = SessionStore(clock=FakeClock())
        first = _session(store)
        second = first.advance(WizardStage.DETAILS)

        store.put(1, first)
        store.put(1, second)

        assert store.get(1).stage == WizardStage.DETAILS

    def test_purge_expired(self) -> None:
        clock = FakeClock()
        store = SessionStore(ttl=timedelta(minutes=10), clock=clock)
        store.put(1, _session(store, 1))
        clock.now += 300
        store.put(2, _session(store, 2))
        clock.now += 301

        assert store.purge_expired() == 1
        assert store.get(1) is None
        assert store.get(2) is not None

    def test_delete(self) -> None:
        store = SessionStore(clock=FakeClock())
        store.put(1, _session(store))

        store.delete(1)
        store.delete(1)

        assert store.get(1) is None
