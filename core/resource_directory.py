"""
Resource Directory

Leases the limited resources a job needs: an account (least recently used
first) and an egress proxy endpoint (highest priority, rotating session
counter). The underlying store is injected so the directory can run against
the SQLite store or a test double.
"""

import logging
from typing import Optional

from browser.proxy_config import get_proxy_credentials, get_proxy_url
from core.error_handler import NoResourceAvailable
from core.models import Account, ProxyCredentials, ProxyEndpoint

logger = logging.getLogger(__name__)


class ResourceDirectory:
    """
    Reads and rotates leasable resources.

    ``store`` must provide ``get_least_recently_used_account``,
    ``lease_proxy_endpoint`` and ``touch_account`` coroutines (see
    ``api.database``).
    """

    def __init__(self, store=None):
        if store is None:
            from api import database as store
        self.store = store

    async def lease_account(self) -> Account:
        """Return the active account with the oldest last use. Has no side effects."""
        row = await self.store.get_least_recently_used_account()
        if not row:
            raise NoResourceAvailable("account", "No active accounts available")
        account = Account.from_row(row)
        logger.info(f"Leased account {account.identity}")
        return account

    async def lease_proxy(self) -> ProxyEndpoint:
        """Return the active proxy endpoint with its session counter already advanced."""
        row = await self.store.lease_proxy_endpoint()
        if not row:
            raise NoResourceAvailable("proxy", "No active proxy endpoints available")
        endpoint = ProxyEndpoint.from_row(row)
        logger.info(
            f"Leased proxy {get_proxy_url(endpoint)} "
            f"(session {endpoint.session_counter}/{endpoint.max_sessions})"
        )
        return endpoint

    async def lease_proxy_or_direct(self) -> Optional[ProxyEndpoint]:
        """Lease a proxy, or None for a direct connection."""
        try:
            return await self.lease_proxy()
        except NoResourceAvailable:
            logger.warning("No proxy configured, using direct connection")
            return None

    async def mark_account_used(self, account_id: str):
        """Stamp last use; called once the job holding the account is terminal."""
        await self.store.touch_account(account_id)
        logger.debug(f"Account {account_id} marked used")

    def proxy_credentials(self, endpoint: ProxyEndpoint) -> Optional[ProxyCredentials]:
        return get_proxy_credentials(endpoint)
