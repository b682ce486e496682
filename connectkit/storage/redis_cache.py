from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

REFRESH_TOKEN_PREFIX = "refresh_token"
BLACKLIST_PREFIX = "token_blacklist"
ACCESS_REGISTRY_PREFIX = "user_access_tokens"
EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"
TICKET_KINDS = (EMAIL_VERIFICATION, PASSWORD_RESET)


class RedisCache:
    """Redis-backed token cache: refresh slots, blacklist, tickets.

    Key layout::

        refresh_token:<userId>        -> refresh token string
        token_blacklist:<jti>         -> JSON {jti, exp, userId, reason}
        user_access_tokens:<userId>   -> hash of access jti -> exp
        email_verification:<token>    -> JSON {userId, email, createdAt}
        password_reset:<token>        -> JSON {userId, email, createdAt}
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _ticket_key(kind: str, token: str) -> str:
        if kind not in TICKET_KINDS:
            raise ValueError(f"unknown ticket kind: {kind}")
        return f"{kind}:{token}"

    async def set_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None:
        await self.client.set(f"{REFRESH_TOKEN_PREFIX}:{user_id}", token, ex=ttl_seconds)

    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        return await self.client.get(f"{REFRESH_TOKEN_PREFIX}:{user_id}")

    async def delete_refresh_token(self, user_id: str) -> None:
        await self.client.delete(f"{REFRESH_TOKEN_PREFIX}:{user_id}")

    async def blacklist_token(
        self,
        jti: str,
        ttl_seconds: int,
        *,
        user_id: Optional[str] = None,
        exp: Optional[int] = None,
        reason: str = "logout",
    ) -> bool:
        """Blacklist a token id for the rest of its lifetime.

        Returns False when the token is already expired and nothing was written.
        """
        if ttl_seconds <= 0:
            return False
        entry = {"jti": jti, "exp": exp, "userId": user_id, "reason": reason}
        await self.client.set(
            f"{BLACKLIST_PREFIX}:{jti}", json.dumps(entry), ex=ttl_seconds
        )
        return True

    async def is_token_blacklisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"{BLACKLIST_PREFIX}:{jti}"))

    async def claim_token(
        self,
        jti: str,
        ttl_seconds: int,
        *,
        user_id: Optional[str] = None,
        exp: Optional[int] = None,
        reason: str = "rotated",
    ) -> bool:
        """Atomically blacklist a token id unless it is already blacklisted.

        Uses SET NX so exactly one of several concurrent callers wins; the
        winner gets True and may act on the token, everyone else gets False.
        """
        entry = {"jti": jti, "exp": exp, "userId": user_id, "reason": reason}
        acquired = await self.client.set(
            f"{BLACKLIST_PREFIX}:{jti}",
            json.dumps(entry),
            ex=max(ttl_seconds, 1),
            nx=True,
        )
        return bool(acquired)

    async def register_access_token(
        self, user_id: str, jti: str, exp: int, ttl_seconds: int
    ) -> None:
        key = f"{ACCESS_REGISTRY_PREFIX}:{user_id}"
        pipe = self.client.pipeline()
        pipe.hset(key, jti, str(exp))
        # Newest token lives longest, so its TTL covers every older entry
        pipe.expire(key, max(ttl_seconds, 1))
        await pipe.execute()

    async def list_access_tokens(self, user_id: str) -> Dict[str, int]:
        raw = await self.client.hgetall(f"{ACCESS_REGISTRY_PREFIX}:{user_id}")
        tokens: Dict[str, int] = {}
        for jti, exp in (raw or {}).items():
            try:
                tokens[jti] = int(exp)
            except (TypeError, ValueError):
                continue
        return tokens

    async def clear_access_tokens(self, user_id: str) -> None:
        await self.client.delete(f"{ACCESS_REGISTRY_PREFIX}:{user_id}")

    async def set_ticket(
        self, kind: str, token: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._ticket_key(kind, token), json.dumps(payload), ex=ttl_seconds
        )

    async def get_ticket(self, kind: str, token: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(self._ticket_key(kind, token))
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    async def delete_ticket(self, kind: str, token: str) -> None:
        await self.client.delete(self._ticket_key(kind, token))


class _InMemoryClient:
    """Async subset of the redis client API backed by a dict with TTLs."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}

    def _expire_if_needed(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._expires.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._expire_if_needed(key)
            value = self._values.get(key)
            return value if isinstance(value, str) else None

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, nx: bool = False
    ) -> Optional[bool]:
        with self._lock:
            if nx:
                self._expire_if_needed(key)
                if key in self._values:
                    return None
            self._values[key] = value
            if ex is not None:
                self._expires[key] = self._clock() + ex
            else:
                self._expires.pop(key, None)
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                self._expire_if_needed(key)
                if key in self._values:
                    removed += 1
                self._values.pop(key, None)
                self._expires.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        with self._lock:
            count = 0
            for key in keys:
                self._expire_if_needed(key)
                if key in self._values:
                    count += 1
            return count

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            self._expire_if_needed(key)
            if key not in self._values:
                return False
            self._expires[key] = self._clock() + ttl
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            self._expire_if_needed(key)
            if key not in self._values:
                return -2
            deadline = self._expires.get(key)
            if deadline is None:
                return -1
            return max(int(deadline - self._clock()), 0)

    async def hset(self, key: str, field: str, value: str) -> int:
        with self._lock:
            self._expire_if_needed(key)
            bucket = self._values.setdefault(key, {})
            created = 0 if field in bucket else 1
            bucket[field] = value
            return created

    async def hgetall(self, key: str) -> Dict[str, str]:
        with self._lock:
            self._expire_if_needed(key)
            value = self._values.get(key)
            return dict(value) if isinstance(value, dict) else {}

    def pipeline(self) -> "_InMemoryPipeline":
        return _InMemoryPipeline(self)

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        with self._lock:
            self._values.clear()
            self._expires.clear()


class _InMemoryPipeline:
    """Buffers commands like a redis pipeline and runs them on execute()."""

    def __init__(self, client: _InMemoryClient):
        self._client = client
        self._commands: List[Tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        method = getattr(self._client, name)

        def queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        if not callable(method):
            raise AttributeError(name)
        return queue

    async def execute(self) -> List[Any]:
        commands, self._commands = self._commands, []
        results = []
        for name, args, kwargs in commands:
            results.append(await getattr(self._client, name)(*args, **kwargs))
        return results


class MemoryCache(RedisCache):
    """Process-local token cache used by tests and the dev fallback."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self.redis_url = None
        self.client = _InMemoryClient(clock=clock)

    def verify_connection(self) -> None:
        return None
