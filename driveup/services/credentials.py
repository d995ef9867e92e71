"""
CredentialPool - bearer cookies with failover.

The pool is handed to the API client; nothing else mutates which
credential is current. A failed credential stays failed for the lifetime
of the pool.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from ..exceptions import AllCredentialsExhausted, AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CHECK_TTL = 5 * 60.0


def _split_cookie(raw: str) -> List[str]:
    parts = []
    current = []
    in_quotes = False
    for ch in raw:
        if ch == '"':
            in_quotes = not in_quotes
        if ch == ";" and not in_quotes:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return parts


def parse_cookie(raw: str) -> Dict[str, str]:
    """Parse ``"a=1; b=2"`` into a dict. Semicolons inside double quotes are kept."""
    cookies: Dict[str, str] = {}
    for part in _split_cookie(raw or ""):
        part = part.strip()
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        key = key.strip()
        if key:
            cookies[key] = value.strip()
    return cookies


@dataclass(frozen=True)
class Credential:
    """One configured cookie string."""
    token: str
    index: int
    cookies: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def cookie_header(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in self.cookies.items())


Validator = Callable[[Credential], Awaitable[bool]]


class CredentialPool:
    """
    Ordered credentials with exactly one current entry.

    ``ensure_valid`` is the gate every API call goes through: it trusts a
    positive identity check for ``check_ttl`` seconds and otherwise
    re-validates under a lock, so concurrent callers share one check.
    """

    def __init__(
        self,
        tokens: Sequence[str],
        check_ttl: float = DEFAULT_CHECK_TTL,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        tokens = [t for t in tokens if t and t.strip()]
        if not tokens:
            raise ConfigurationError("at least one access token is required")

        self._credentials = [
            Credential(token=t, index=i, cookies=parse_cookie(t)) for i, t in enumerate(tokens)
        ]
        self._failed = set()
        self._index = (rng or random.Random()).randrange(len(self._credentials))
        self._check_ttl = check_ttl
        self._clock = clock
        self._validated_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def available(self) -> int:
        return len(self._credentials) - len(self._failed)

    def current(self) -> Credential:
        if self._index in self._failed:
            raise AllCredentialsExhausted()
        return self._credentials[self._index]

    def failover(self, failed: Optional[Credential] = None) -> Credential:
        """
        Mark the current credential failed and move to the next healthy one.

        Args:
            failed: The credential that was rejected. If the pool has already
                moved past it, nothing is marked and the current credential
                is returned.

        Returns:
            The new current credential

        Raises:
            AllCredentialsExhausted: if no healthy credential remains
        """
        if failed is not None and (failed.index != self._index or failed.index in self._failed):
            return self.current()

        self._failed.add(self._index)
        self._validated_at = None

        count = len(self._credentials)
        for step in range(1, count + 1):
            candidate = (self._index + step) % count
            if candidate not in self._failed:
                logger.warning(
                    "Credential #%d failed, switching to #%d (%d left)",
                    self._index, candidate, self.available
                )
                self._index = candidate
                return self._credentials[candidate]

        logger.error("All %d credentials have failed", count)
        raise AllCredentialsExhausted()

    def _is_fresh(self) -> bool:
        return (
            self._validated_at is not None
            and self._clock() - self._validated_at < self._check_ttl
        )

    def invalidate(self) -> None:
        """Forget the cached liveness result."""
        self._validated_at = None

    async def ensure_valid(self, validator: Validator) -> Credential:
        """
        Return the current credential once it is known to be valid.

        Args:
            validator: Async identity check returning True for a live credential

        Raises:
            AuthenticationError: if the credential and one fallback are rejected
            AllCredentialsExhausted: if failover runs out of credentials
        """
        if self._is_fresh():
            return self.current()

        async with self._lock:
            if self._is_fresh():
                return self.current()

            credential = self.current()
            if await validator(credential):
                self._validated_at = self._clock()
                return credential

            logger.warning("Credential #%d rejected by identity check", credential.index)
            credential = self.failover(credential)
            if await validator(credential):
                self._validated_at = self._clock()
                return credential

            raise AuthenticationError("authentication failed after credential failover")
