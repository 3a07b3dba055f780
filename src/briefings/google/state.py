"""Server-side records behind the opaque OAuth ``state`` parameter.

The state value sent to Google is a random token; the initiating user, the
requested connection title and the client nonce live here and are handed back
exactly once when the callback arrives. Entries expire after 10 minutes.

NOTE: This store is process-local. Run a single worker process, otherwise a
callback served by a different worker will not find its state.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class OAuthFlowState:
    user_id: str
    title: str | None
    nonce: str | None
    connect_first: bool
    expires_at: float


class OAuthStateStore:
    def __init__(
        self,
        *,
        ttl_seconds: float = STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, OAuthFlowState] = {}

    def issue(
        self,
        user_id: str,
        *,
        title: str | None = None,
        nonce: str | None = None,
        connect_first: bool = False,
    ) -> str:
        """Record a new flow for *user_id* and return its state token."""
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required to start an OAuth flow")
        self._evict_expired()
        state = secrets.token_urlsafe(32)
        self._entries[state] = OAuthFlowState(
            user_id=user_id.strip(),
            title=title.strip() if title and title.strip() else None,
            nonce=nonce,
            connect_first=connect_first,
            expires_at=self._clock() + self._ttl,
        )
        return state

    def consume(self, state: str) -> OAuthFlowState | None:
        """Return and forget the flow for *state*; None when unknown or expired."""
        self._evict_expired()
        entry = self._entries.pop(state, None)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            return None
        return entry

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if now >= entry.expires_at]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("Evicted %d expired OAuth state entries", len(expired))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
