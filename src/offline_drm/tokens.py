"""
Short-lived, single-use access tokens.

A token binds one request to one resource. It is valid while it is unexpired
and unconsumed; the first successful use removes it. Callers only ever learn
"valid" or "invalid"; `TokenIssuer.inspect()` tells unknown, consumed and
expired apart for logging.

The issuer does not own global state: the backing store is injected, so each
service instance (and each test) has its own.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from .utils.clock import Clock, utc_now

LOGGER = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = timedelta(minutes=30)
TOKEN_BYTES = 32


class TokenState(str, Enum):
    VALID = "valid"
    UNKNOWN = "unknown"
    CONSUMED = "consumed"
    EXPIRED = "expired"


@dataclass
class AccessToken:
    value: str
    resource_id: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at and not self.consumed

    def __repr__(self) -> str:
        return f"AccessToken(resource_id={self.resource_id!r}, expires_at={self.expires_at.isoformat()})"


class InMemoryTokenStore:
    """Mutex-guarded map of live tokens plus a record of recently spent ones.

    Spent values are kept only until their original expiry so `inspect()` can
    report them as consumed rather than unknown.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: Dict[str, AccessToken] = {}
        self._spent: Dict[str, datetime] = {}

    def add(self, token: AccessToken) -> None:
        with self._lock:
            self._tokens[token.value] = token

    def get(self, value: str) -> Optional[AccessToken]:
        with self._lock:
            return self._tokens.get(value)

    def take(self, value: str) -> Optional[AccessToken]:
        """Atomically remove and return a live token."""
        with self._lock:
            return self._tokens.pop(value, None)

    def mark_spent(self, value: str, until: datetime) -> None:
        with self._lock:
            self._spent[value] = until

    def was_spent(self, value: str) -> bool:
        with self._lock:
            return value in self._spent

    def remove_where(self, predicate: Callable[[AccessToken], bool]) -> List[AccessToken]:
        with self._lock:
            doomed = [t for t in self._tokens.values() if predicate(t)]
            for token in doomed:
                del self._tokens[token.value]
            return doomed

    def forget_spent_before(self, now: datetime) -> int:
        with self._lock:
            stale = [v for v, until in self._spent.items() if until <= now]
            for value in stale:
                del self._spent[value]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()
            self._spent.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class TokenIssuer:
    def __init__(
        self,
        store: Optional[InMemoryTokenStore] = None,
        *,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Clock = utc_now,
    ):
        self.store = store if store is not None else InMemoryTokenStore()
        self.ttl = ttl
        self.clock = clock

    def issue(self, resource_id: str) -> AccessToken:
        """Mint a token for `resource_id`. The caller guarantees the id is registered."""
        now = self.clock()
        token = AccessToken(
            value=secrets.token_urlsafe(TOKEN_BYTES),
            resource_id=resource_id,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        self.store.add(token)
        LOGGER.debug("Issued token for resource %s (expires %s)", resource_id, token.expires_at.isoformat())
        return token

    def inspect(self, value: str) -> TokenState:
        token = self.store.get(value)
        if token is None:
            return TokenState.CONSUMED if self.store.was_spent(value) else TokenState.UNKNOWN
        if token.consumed:
            return TokenState.CONSUMED
        if not token.is_valid(self.clock()):
            return TokenState.EXPIRED
        return TokenState.VALID

    def validate(self, value: str) -> Optional[str]:
        """Return the bound resource id, or None for any invalid token.

        Expired tokens are evicted as a side effect.
        """
        state = self.inspect(value)
        if state is TokenState.VALID:
            token = self.store.get(value)
            if token is not None:
                return token.resource_id
            state = TokenState.CONSUMED  # consumed between the two reads
        if state is TokenState.EXPIRED:
            self.store.take(value)
        LOGGER.debug("Rejected token: %s", state.value)
        return None

    def consume(self, value: str) -> bool:
        """Mark a token used. Exactly one concurrent caller can succeed."""
        token = self.store.take(value)
        if token is None:
            return False
        if not token.is_valid(self.clock()):
            LOGGER.debug("Token for resource %s expired before consumption", token.resource_id)
            return False
        token.consumed = True
        self.store.mark_spent(value, token.expires_at)
        return True

    def revoke_for_resource(self, resource_id: str) -> int:
        dropped = self.store.remove_where(lambda t: t.resource_id == resource_id)
        if dropped:
            LOGGER.debug("Dropped %d outstanding token(s) for resource %s", len(dropped), resource_id)
        return len(dropped)

    def sweep(self) -> int:
        """Evict expired tokens. Returns how many live tokens were dropped."""
        now = self.clock()
        dropped = self.store.remove_where(lambda t: not t.is_valid(now))
        self.store.forget_spent_before(now)
        return len(dropped)

    def reset(self) -> None:
        self.store.clear()
