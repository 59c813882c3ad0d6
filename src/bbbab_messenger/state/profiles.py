"""User profile lookups with a time-to-live cache."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from ..api.models import User
from ..errors import ApiError

logger = logging.getLogger(__name__)

UNKNOWN_USERNAME = "Unknown user"

ProfileFetcher = Callable[[int], Awaitable[User]]


class UserProfileCache:
    """
    Caches user profiles for ``ttl`` seconds.

    Concurrent lookups of the same id share one fetch. When a fetch fails
    the stale entry is returned if there is one (and stays stale, so the
    next lookup tries again); otherwise a placeholder user is returned
    without being cached.
    """

    def __init__(
        self,
        fetch: ProfileFetcher,
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[int, tuple[User, float]] = {}
        self._pending: dict[int, asyncio.Future[User]] = {}

    def peek(self, user_id: int) -> User | None:
        """Cached profile regardless of age, without fetching."""
        entry = self._entries.get(user_id)
        return entry[0] if entry else None

    def is_fresh(self, user_id: int) -> bool:
        entry = self._entries.get(user_id)
        return entry is not None and self._clock() - entry[1] < self.ttl

    async def get(self, user_id: int) -> User:
        if self.is_fresh(user_id):
            return self._entries[user_id][0]

        pending = self._pending.get(user_id)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[User] = asyncio.get_running_loop().create_future()
        self._pending[user_id] = future
        try:
            user = await self._load(user_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited failure is not reported.
            future.exception()
            raise
        else:
            future.set_result(user)
            return user
        finally:
            self._pending.pop(user_id, None)

    async def _load(self, user_id: int) -> User:
        try:
            user = await self._fetch(user_id)
        except ApiError as e:
            stale = self.peek(user_id)
            if stale is not None:
                logger.warning("Profile fetch for user %d failed, using stale entry: %s", user_id, e)
                return stale
            logger.warning("Profile fetch for user %d failed: %s", user_id, e)
            return User(id=user_id, username=UNKNOWN_USERNAME)

        self._entries[user_id] = (user, self._clock())
        return user

    def put(self, user: User) -> None:
        """Store a profile obtained elsewhere (e.g. the current user)."""
        self._entries[user.id] = (user, self._clock())

    def invalidate(self, user_id: int) -> None:
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()
