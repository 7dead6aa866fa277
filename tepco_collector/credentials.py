"""Get-or-authenticate for the TEPCO bearer token.

Shared by the scheduled jobs and the manual collection endpoints. Only one
browser login runs at a time: concurrent callers queue on a lock and pick up
the token stored by whoever logged in first.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .authenticator import Authenticator, AuthErrorKind, AuthResult
from .token_store import TokenStore

logger = logging.getLogger("tepco-collector.credentials")


class CredentialManager:
    """Hands out a valid bearer token, logging in when the stored one is gone.

    Attributes:
        token_store: Where the current token lives
        authenticator: Performs the interactive login
        token_lifetime: Expiry assigned to freshly obtained tokens
    """

    def __init__(
        self,
        token_store: TokenStore,
        authenticator: Authenticator,
        username: Optional[str],
        password: Optional[str],
        token_lifetime: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.token_store = token_store
        self.authenticator = authenticator
        self.username = username
        self.password = password
        self.token_lifetime = token_lifetime
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._login_lock = asyncio.Lock()

    @property
    def credentials_configured(self) -> bool:
        return bool(self.username and self.password)

    async def get_or_authenticate(self) -> AuthResult:
        """Return the stored token if still valid, otherwise log in and store a new one."""
        current = await asyncio.to_thread(self.token_store.get_valid)
        if current:
            return AuthResult.success(current.token)

        logger.info("No valid token found, attempting to authenticate...")
        return await self.authenticate()

    async def refresh_if_expired(self) -> Optional[AuthResult]:
        """Log in if the stored token has expired.

        Returns:
            The login result, or None if the stored token is still valid
        """
        if not await asyncio.to_thread(self.token_store.is_expired):
            logger.debug("Token still valid")
            return None

        logger.info("Token expired, attempting to refresh...")
        return await self.authenticate()

    async def authenticate(self, force: bool = False) -> AuthResult:
        """Log in and store the token with a fixed lifetime.

        Args:
            force: Log in even if another caller stored a valid token meanwhile
        """
        async with self._login_lock:
            # Another caller may have logged in while we waited for the lock
            if not force:
                current = await asyncio.to_thread(self.token_store.get_valid)
                if current:
                    return AuthResult.success(current.token)

            if not self.credentials_configured:
                logger.error("TEPCO credentials not configured (set TEPCO_USERNAME and TEPCO_PASSWORD)")
                return AuthResult.failure(
                    AuthErrorKind.CREDENTIALS_NOT_CONFIGURED,
                    "TEPCO credentials not configured",
                )

            result = await self.authenticator.login(self.username, self.password)
            if not result.ok:
                logger.error("=" * 60)
                logger.error(f"TEPCO: AUTHENTICATION FAILED - {result.error.value}")
                logger.error(f"  {result.detail}")
                logger.error("  Collection is skipped until the next attempt.")
                logger.error("=" * 60)
                return result

            expires_at = self._clock() + self.token_lifetime
            await asyncio.to_thread(self.token_store.store, result.token, expires_at)
            logger.info("Token refreshed successfully")
            return result
