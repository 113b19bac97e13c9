"""
Browser session authentication.

Restores the leased account's saved cookies into the page's context before
interaction, and saves the context's cookies after a successful job. Both
directions are best-effort: an inconclusive pass lets the job proceed.
"""

import logging
from typing import Optional

from core.models import Account

logger = logging.getLogger(__name__)

# Only cookies for these domains matter for the listing site.
COOKIE_DOMAINS = ("google.com", "google.")


class BrowserSessionAuthenticator:
    """Cookie restore/save for one account. ``store`` follows ``api.database``."""

    def __init__(self, store=None):
        if store is None:
            from api import database as store
        self.store = store

    async def restore(self, page, account: Account) -> bool:
        """Load stored cookies into the page's context. Returns True if any were applied."""
        try:
            session = await self.store.load_browser_session(account.identity)
            if not session or not session.get("cookies"):
                logger.info(f"No saved browser session for {account.identity}")
                return False
            await page.context.add_cookies(session["cookies"])
            logger.info(f"Restored {len(session['cookies'])} cookies for {account.identity}")
            return True
        except Exception as e:
            logger.warning(f"Browser session restore failed for {account.identity}: {e}")
            return False

    async def save(self, page, account: Account, user_agent: Optional[str] = None) -> bool:
        """Persist the context's cookies for the next job using this account."""
        try:
            cookies = await page.context.cookies()
            cookies = [c for c in cookies if any(d in (c.get("domain") or "") for d in COOKIE_DOMAINS)]
            if not cookies:
                return False
            await self.store.save_browser_session(account.identity, cookies, user_agent)
            logger.debug(f"Saved {len(cookies)} cookies for {account.identity}")
            return True
        except Exception as e:
            logger.warning(f"Browser session save failed for {account.identity}: {e}")
            return False

    async def invalidate(self, account: Account):
        try:
            await self.store.invalidate_browser_session(account.identity)
        except Exception as e:
            logger.warning(f"Browser session invalidation failed for {account.identity}: {e}")
