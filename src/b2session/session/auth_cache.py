"""Single-flight cache of the current account authorization."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from b2session.models.authorization import Authorization

logger = logging.getLogger(__name__)

Authorizer = Callable[[], Awaitable[Authorization]]


class AuthorizationCache:
    """Holds the current authorization and refreshes it on demand.

    At most one refresh runs at a time; concurrent callers that find the
    value missing, expired or invalidated all await the same refresh. The
    value is replaced as a whole, so a reader sees either the old or the new
    authorization, never a mix. A failed refresh leaves no usable value and
    the failure is delivered to every waiter.

    The cache is bound to the event loop it is first used from.
    """

    def __init__(
        self,
        authorizer: Authorizer,
        *,
        clock: Callable[[], float] = time.time,
        refresh_margin: float = 0.0,
    ):
        """Initialize the cache.

        Args:
            authorizer: Coroutine function performing the actual authorize call
            clock: Wall clock comparable with ``Authorization.expires_at``
            refresh_margin: Seconds before expiry at which a token counts as expired
        """
        self._authorizer = authorizer
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._current: Optional[Authorization] = None
        self._invalidated = False
        self._refresh: Optional[asyncio.Future] = None
        self.refresh_count = 0

    @property
    def current(self) -> Optional[Authorization]:
        """The cached authorization, usable or not."""
        return self._current

    def _usable(self, auth: Optional[Authorization]) -> bool:
        if auth is None or self._invalidated:
            return False
        return not auth.is_expired(self._clock(), self._refresh_margin)

    async def get_valid(self) -> Authorization:
        """Return a valid authorization, refreshing it if needed.

        Raises:
            B2SessionError: Whatever the refresh raised; a stale value is never
                returned in its place
        """
        auth = self._current
        if self._usable(auth):
            return auth

        refresh = self._refresh
        if refresh is None:
            refresh = asyncio.ensure_future(self._do_refresh())
            refresh.add_done_callback(self._refresh_done)
            self._refresh = refresh
        return await asyncio.shield(refresh)

    async def _do_refresh(self) -> Authorization:
        logger.info("Refreshing account authorization")
        fresh = await self._authorizer()
        self._current = fresh
        self._invalidated = False
        self.refresh_count += 1
        logger.info(
            "Account authorization refreshed",
            extra={
                "account_id": fresh.account_id,
                "api_url": fresh.api.api_url,
                "expires_at": fresh.expires_at,
            },
        )
        return fresh

    def _refresh_done(self, future: asyncio.Future) -> None:
        if self._refresh is future:
            self._refresh = None
        if not future.cancelled() and future.exception() is not None:
            logger.warning(
                "Account authorization refresh failed",
                extra={"error": str(future.exception())},
            )

    def invalidate(self, stale: Optional[Authorization] = None) -> None:
        """Mark the cached authorization unusable.

        Args:
            stale: The authorization the caller saw rejected. If a newer one has
                replaced it in the meantime the call is a no-op, so a late
                rejection never throws away a fresh token.
        """
        if stale is not None and stale is not self._current:
            return
        if self._current is not None and not self._invalidated:
            logger.info(
                "Account authorization invalidated",
                extra={"account_id": self._current.account_id},
            )
        self._invalidated = True
