"""Bearer token issuance and verification for the sync API."""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller. The family scopes every read and write."""

    user_id: str
    family_id: str


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
        }


class TokenAuthority(ABC):
    """Source of truth for access and refresh tokens."""

    @abstractmethod
    def authenticate(self, access_token: str) -> Principal | None:
        """Resolve an access token, or None if it is unknown or expired."""
        pass

    @abstractmethod
    def refresh(self, refresh_token: str) -> IssuedTokens | None:
        """Exchange a refresh token for a new pair, or None if it is rejected."""
        pass


class InMemoryTokenAuthority(TokenAuthority):
    """Process-local token authority for development and tests.

    Refresh rotates both tokens: the old access and refresh tokens stop
    working once a new pair has been issued.
    """

    def __init__(self, token_ttl_seconds: int = 3600, clock=time.monotonic):
        self.token_ttl_seconds = token_ttl_seconds
        self._clock = clock
        # access token -> (principal, expires_at or None for static tokens)
        self._access: dict[str, tuple[Principal, float | None]] = {}
        # refresh token -> (principal, paired access token)
        self._refresh: dict[str, tuple[Principal, str]] = {}

    def issue(self, user_id: str, family_id: str) -> IssuedTokens:
        """Issue a fresh token pair for a user."""
        principal = Principal(user_id=user_id, family_id=family_id)
        access_token = secrets.token_urlsafe(32)
        refresh_token = secrets.token_urlsafe(32)

        self._access[access_token] = (principal, self._clock() + self.token_ttl_seconds)
        self._refresh[refresh_token] = (principal, access_token)

        return IssuedTokens(access_token, refresh_token, self.token_ttl_seconds)

    def add_static_token(
        self,
        access_token: str,
        user_id: str,
        family_id: str,
        refresh_token: str | None = None,
    ) -> None:
        """Register a fixed, non-expiring token, e.g. from the config file."""
        principal = Principal(user_id=user_id, family_id=family_id)
        self._access[access_token] = (principal, None)
        if refresh_token:
            self._refresh[refresh_token] = (principal, access_token)

    def revoke(self, access_token: str) -> None:
        self._access.pop(access_token, None)

    def authenticate(self, access_token: str) -> Principal | None:
        entry = self._access.get(access_token)
        if entry is None:
            return None

        principal, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._access[access_token]
            return None
        return principal

    def refresh(self, refresh_token: str) -> IssuedTokens | None:
        entry = self._refresh.pop(refresh_token, None)
        if entry is None:
            logger.info("Refresh rejected: unknown refresh token")
            return None

        principal, old_access = entry
        self._access.pop(old_access, None)

        tokens = self.issue(principal.user_id, principal.family_id)
        logger.info(f"Rotated tokens for {principal.user_id}")
        return tokens
