"""Access token lifecycle: cached fast path, refresh, then re-login.

:class:`TokenManager` is the only writer of tokens in the credential store.
Renewal walks a fixed list of steps instead of recursing, so a single call
performs at most one refresh and one login attempt.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

import structlog

from notewatch.errors import AuthError, GatewayError
from notewatch.gateway import TokenGrant
from notewatch.observability import TOKEN_RENEWALS
from notewatch.store import CredentialStore, Credentials
from notewatch.time_utils import Clock, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_TOKEN_TTL = timedelta(minutes=10)

_RENEWAL_STEPS = ("refresh", "login")


@dataclass(frozen=True)
class AccessToken:
    """Bearer token handed to gateway calls."""

    value: str
    issued_at: datetime
    username: str
    server_url: Optional[str] = None

    def __repr__(self) -> str:  # keep token material out of logs and tracebacks
        return f"AccessToken(username={self.username!r}, issued_at={self.issued_at.isoformat()})"


class Authenticator(Protocol):
    def login(self, username: str, password: str) -> TokenGrant:  # pragma: no cover - protocol
        ...

    def refresh(self, refresh_token: str) -> TokenGrant:  # pragma: no cover - protocol
        ...


class TokenManager:
    """Hands out valid access tokens for the active identity."""

    def __init__(
        self,
        credentials: CredentialStore,
        auth: Authenticator,
        *,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Clock = utc_now,
    ) -> None:
        self.credentials = credentials
        self.auth = auth
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------

    def _load(self, username: Optional[str]) -> Credentials:
        creds = self.credentials.get(username) if username else self.credentials.get_active()
        if creds is None:
            raise AuthError(f"No stored credentials for {username!r}" if username else "No active EMR identity")
        return creds

    def _is_fresh(self, creds: Credentials) -> bool:
        if not creds.access_token or creds.token_issued_at is None:
            return False
        return self.clock() - creds.token_issued_at < self.ttl

    @staticmethod
    def _token(creds: Credentials) -> AccessToken:
        assert creds.access_token is not None and creds.token_issued_at is not None
        return AccessToken(
            value=creds.access_token,
            issued_at=creds.token_issued_at,
            username=creds.username,
            server_url=creds.server_url,
        )

    def _renew(self, creds: Credentials) -> AccessToken:
        """Try each renewal step once; the first success wins."""

        last_error: Optional[GatewayError] = None
        for step in _RENEWAL_STEPS:
            if step == "refresh" and not creds.refresh_token:
                continue
            try:
                if step == "refresh":
                    grant = self.auth.refresh(creds.refresh_token or "")
                else:
                    grant = self.auth.login(creds.username, creds.password)
            except GatewayError as exc:
                TOKEN_RENEWALS.labels(method=step, outcome="failure").inc()
                logger.warning("token_renewal_failed", method=step, username=creds.username, error=str(exc))
                last_error = exc
                continue
            TOKEN_RENEWALS.labels(method=step, outcome="success").inc()
            updated = self.credentials.store_tokens(
                creds.username,
                grant.access_token,
                grant.refresh_token or creds.refresh_token,
                server_url=grant.server_url,
            )
            logger.info("token_renewed", method=step, username=creds.username)
            return self._token(updated)

        # A network outage is worth another attempt later; rejected credentials are not.
        if last_error is not None and last_error.retryable:
            raise last_error
        raise AuthError(f"Token refresh and re-login failed for {creds.username!r}") from last_error

    # ------------------------------------------------------------------

    def get_valid_token(self, username: Optional[str] = None) -> AccessToken:
        """Return a token issued less than ``ttl`` ago, renewing it if needed."""

        with self._lock:
            creds = self._load(username)
            if self._is_fresh(creds):
                return self._token(creds)
            return self._renew(creds)

    def renew_after_rejection(self, rejected: AccessToken) -> AccessToken:
        """Renew a token the upstream refused, unless another caller already did."""

        with self._lock:
            creds = self._load(rejected.username)
            if creds.access_token and creds.access_token != rejected.value and self._is_fresh(creds):
                return self._token(creds)
            return self._renew(creds)

    def invalidate(self, username: Optional[str] = None) -> None:
        with self._lock:
            creds = self._load(username)
            self.credentials.clear_tokens(creds.username)


__all__ = ["AccessToken", "TokenManager", "DEFAULT_TOKEN_TTL"]
