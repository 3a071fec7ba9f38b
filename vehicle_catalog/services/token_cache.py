"""
Access-token cache for the OCR provider.

The cache is an explicit object handed to the client that needs it. It is
read-mostly and refreshed only once the token is within the refresh margin
of expiry. Refresh replaces the whole token object, so concurrent readers
see either the old or the new token; two racing refreshes both succeed and
the last one written wins.
"""
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict

logger = structlog.get_logger(__name__)


class AccessToken(BaseModel):
    value: str
    expires_at: datetime

    model_config = ConfigDict(frozen=True)

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        return now + margin < self.expires_at


class TokenCache:
    """Holds at most one AccessToken and refreshes it on demand"""

    def __init__(
        self,
        refresh_margin_seconds: int = 300,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self._clock = clock
        self._token: Optional[AccessToken] = None

    @property
    def current(self) -> Optional[AccessToken]:
        return self._token

    async def get(self, fetch: Callable[[], Awaitable[AccessToken]]) -> AccessToken:
        """Return a fresh token, calling ``fetch`` only when needed"""
        token = self._token
        if token is not None and token.is_fresh(self._clock(), self.refresh_margin):
            return token

        refreshed = await fetch()
        self._token = refreshed
        logger.debug("Access token refreshed", expires_at=refreshed.expires_at.isoformat())
        return refreshed

    def invalidate(self) -> None:
        """Drop the token, e.g. after the provider rejected it"""
        self._token = None
