"""Tests for the client-side session container."""

import asyncio
import base64
import json

import pytest

from connectkit.client.session import IdleWatcher, SessionStore, is_token_expired
from connectkit.config import Settings


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _token(exp):
    def seg(data):
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    return f"{seg({'alg': 'HS256'})}.{seg({'sub': 'u1', 'exp': exp})}.sig"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session(clock):
    return SessionStore(idle_timeout_seconds=30 * 60, clock=clock)


class TestTokenExpiry:
    def test_missing_or_garbage_is_expired(self):
        assert is_token_expired(None) is True
        assert is_token_expired("") is True
        assert is_token_expired("not.a.jwt") is True

    def test_five_minute_buffer(self, clock):
        assert is_token_expired(_token(clock.now + 299), now=clock.now) is True
        assert is_token_expired(_token(clock.now + 301), now=clock.now) is False


class TestTransitions:
    def test_initial_state(self, session):
        state = session.state
        assert state.is_authenticated is False
        assert state.user is None
        assert state.access_token is None

    def test_set_tokens_keeps_existing_refresh(self, session):
        session.set_tokens("access-1", "refresh-1")
        session.set_tokens("access-2")
        assert session.state.access_token == "access-2"
        assert session.state.refresh_token == "refresh-1"
        assert session.state.is_authenticated is True

    def test_set_user_and_clear(self, session):
        session.set_user({"id": "u1"})
        session.set_loading(True)
        assert session.state.is_authenticated is True

        session.clear()

        assert session.state.user is None
        assert session.state.is_authenticated is False
        assert session.state.is_loading is False

    def test_state_is_immutable(self, session):
        with pytest.raises(AttributeError):
            session.state.user = {"id": "u2"}

    def test_auth_header(self, session, clock):
        assert session.auth_header() is None
        session.set_tokens(_token(clock.now + 900))
        assert session.auth_header().startswith("Bearer ")
        clock.advance(700)
        assert session.auth_header() is None

    def test_listeners_see_transitions(self, session):
        seen = []
        unsubscribe = session.subscribe(lambda name, old, new: seen.append((name, new.is_loading)))
        session.set_loading(True)
        unsubscribe()
        session.set_loading(False)
        assert seen == [("set_loading", True)]

    def test_failing_listener_does_not_block_transition(self, session):
        def _bad(name, old, new):
            raise RuntimeError("listener bug")

        session.subscribe(_bad)
        session.set_user({"id": "u1"})
        assert session.state.user == {"id": "u1"}

    def test_from_settings(self):
        settings = Settings(jwt_secret="x" * 40, session_idle_timeout_minutes=10)
        assert SessionStore.from_settings(settings).idle_timeout_seconds == 600


class TestIdleTimeout:
    def test_idle_session_cleared(self, session, clock):
        session.set_user({"id": "u1"})
        clock.advance(30 * 60 + 1)
        assert session.check_idle() is True
        assert session.state.is_authenticated is False

    def test_activity_extends_session(self, session, clock):
        session.set_user({"id": "u1"})
        clock.advance(20 * 60)
        session.touch()
        clock.advance(20 * 60)
        assert session.check_idle() is False
        assert session.state.is_authenticated is True

    def test_anonymous_session_untouched(self, session, clock):
        clock.advance(3600)
        assert session.check_idle() is False

    async def test_watcher_clears_idle_session(self, session, clock):
        session.set_user({"id": "u1"})
        clock.advance(30 * 60 + 1)
        watcher = IdleWatcher(session, interval_seconds=0.01)
        watcher.start()
        assert watcher.running
        await asyncio.sleep(0.05)
        await watcher.stop()
        assert not watcher.running
        assert session.state.is_authenticated is False
