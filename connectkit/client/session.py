"""Client-side session container.

Holds the signed-in user and token pair for an API consumer. State changes
only through the transition methods on :class:`SessionStore`; the idle
timeout is enforced by calling :meth:`SessionStore.check_idle` from a timer
such as :class:`IdleWatcher` rather than by reacting to every change.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional

from connectkit.config import Settings
from connectkit.logging import get_logger
from connectkit.service.tokens import read_claims

logger = get_logger(__name__)

TOKEN_EXPIRY_BUFFER_SECONDS = 300
DEFAULT_IDLE_TIMEOUT_SECONDS = 30 * 60

Listener = Callable[[str, "SessionState", "SessionState"], None]


@dataclass(frozen=True)
class SessionState:
    user: Optional[dict] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    is_authenticated: bool = False
    is_loading: bool = False
    last_activity: float = 0.0


def _token_exp(token: str) -> Optional[float]:
    payload = read_claims(token)
    if payload is None:
        return None
    try:
        return float(payload["exp"])
    except (KeyError, TypeError, ValueError):
        return None


def is_token_expired(
    token: Optional[str],
    *,
    now: Optional[float] = None,
    buffer_seconds: int = TOKEN_EXPIRY_BUFFER_SECONDS,
) -> bool:
    """True when the token is missing, unreadable or expires within the buffer.

    Reads ``exp`` without checking the signature; the server still decides.
    """
    if not token:
        return True
    exp = _token_exp(token)
    if exp is None:
        return True
    current = time.time() if now is None else now
    return exp < current + buffer_seconds


class SessionStore:
    def __init__(
        self,
        *,
        idle_timeout_seconds: int = DEFAULT_IDLE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.idle_timeout_seconds = idle_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = SessionState(last_activity=clock())
        self._listeners: List[Listener] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionStore":
        return cls(idle_timeout_seconds=settings.session_idle_timeout_minutes * 60)

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _transition(self, name: str, **changes: Any) -> SessionState:
        with self._lock:
            previous = self._state
            self._state = replace(previous, **changes)
            current = self._state
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(name, previous, current)
            except Exception as exc:
                logger.warning("session_listener_failed", transition=name, error=str(exc))
        return current

    def set_user(self, user: Optional[dict]) -> SessionState:
        return self._transition(
            "set_user",
            user=user,
            is_authenticated=bool(user),
            last_activity=self._clock(),
        )

    def set_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> SessionState:
        return self._transition(
            "set_tokens",
            access_token=access_token,
            refresh_token=refresh_token or self._state.refresh_token,
            is_authenticated=True,
            last_activity=self._clock(),
        )

    def clear(self) -> SessionState:
        return self._transition(
            "clear",
            user=None,
            access_token=None,
            refresh_token=None,
            is_authenticated=False,
            is_loading=False,
            last_activity=self._clock(),
        )

    def set_loading(self, loading: bool) -> SessionState:
        return self._transition("set_loading", is_loading=loading)

    def touch(self) -> SessionState:
        return self._transition("touch", last_activity=self._clock())

    def is_token_expired(self) -> bool:
        return is_token_expired(self._state.access_token, now=self._clock())

    def auth_header(self) -> Optional[str]:
        token = self._state.access_token
        if not token or self.is_token_expired():
            return None
        return f"Bearer {token}"

    def check_idle(self, now: Optional[float] = None) -> bool:
        """Clear an authenticated session idle past the timeout; True if cleared."""
        state = self._state
        if not state.is_authenticated:
            return False
        current = self._clock() if now is None else now
        if current - state.last_activity <= self.idle_timeout_seconds:
            return False
        logger.info("session_idle_timeout", idle_seconds=int(current - state.last_activity))
        self.clear()
        return True


class IdleWatcher:
    """Runs :meth:`SessionStore.check_idle` periodically on the event loop."""

    def __init__(self, store: SessionStore, *, interval_seconds: float = 60.0) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.store.check_idle()
