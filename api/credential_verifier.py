"""
Credential Verification Service
Confirms a leased account is still authorized before any browser work.

Providers:
- TokenInfoVerifier: checks the account's stored OAuth access token against
  the tokeninfo endpoint and requires at least one accepted scope
- NoopVerifier: always succeeds (verification disabled)
"""

from typing import Optional, List
from dataclasses import dataclass, field
import aiohttp

from api.config import config
from api.logging_config import logger


@dataclass
class VerificationResult:
    """Result of a credential check."""
    success: bool
    error: Optional[str] = None
    email: Optional[str] = None
    scopes: List[str] = field(default_factory=list)


class NoopVerifier:
    """Verifier used when verification is disabled."""

    async def verify(self, identity: str) -> VerificationResult:
        return VerificationResult(success=True, email=identity)

    async def close(self):
        pass


class TokenInfoVerifier:
    """OAuth tokeninfo check using the account's stored access token."""

    def __init__(
        self,
        store=None,
        tokeninfo_url: Optional[str] = None,
        required_scopes: Optional[List[str]] = None,
        timeout_seconds: float = 15.0,
    ):
        if store is None:
            from api import database as store
        self.store = store
        self.tokeninfo_url = tokeninfo_url or config.TOKENINFO_URL
        self.required_scopes = required_scopes if required_scopes is not None else config.REQUIRED_TOKEN_SCOPES
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def verify(self, identity: str) -> VerificationResult:
        """Verify the account identified by ``identity``."""
        account = await self.store.get_account_by_identity(identity)
        if not account:
            return VerificationResult(success=False, error=f"Unknown account {identity}")

        token = account.get("access_token")
        if not token:
            return VerificationResult(success=False, error=f"No OAuth tokens stored for {identity}")

        try:
            session = self._ensure_session()
            async with session.get(self.tokeninfo_url, params={"access_token": token}) as resp:
                data = await resp.json(content_type=None)
                if resp.status != 200:
                    message = data.get("error_description") or data.get("error") or f"HTTP {resp.status}"
                    return VerificationResult(success=False, error=f"Token rejected: {message}")
        except Exception as e:
            logger.warning(f"Token verification request failed for {identity}: {e}")
            return VerificationResult(success=False, error=f"Token verification unavailable: {e}")

        scopes = (data.get("scope") or "").split()
        if self.required_scopes and not any(
            wanted in scope for scope in scopes for wanted in self.required_scopes
        ):
            return VerificationResult(
                success=False,
                error="Insufficient Permission: token is missing the required scopes, re-authorize the account",
                email=data.get("email"),
                scopes=scopes,
            )

        return VerificationResult(success=True, email=data.get("email") or identity, scopes=scopes)


def get_credential_verifier(store=None):
    """Verifier selected by configuration."""
    if not config.CREDENTIAL_VERIFICATION_ENABLED:
        return NoopVerifier()
    return TokenInfoVerifier(store=store)
