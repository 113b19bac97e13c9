#!/usr/bin/env python3
"""
Session Host

Owns the lifetime of one local Chromium process (via Playwright) and at most
one live page. Launches bind only the proxy *server*; credentials are applied
afterwards through ``authenticate_proxy``.

State machine::

    CLOSED -> LAUNCHING -> READY -> PAGE_ACTIVE -> READY ... -> CLOSED

Example:
    host = SessionHost(headless=True)
    async with host.page_scope(proxy) as lease:
        await host.authenticate_proxy(lease.page, credentials)
        await lease.page.goto("https://example.com")
    await host.close()
"""

import json
import uuid
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Callable

from browser.proxy_config import get_proxy_server
from browser.stealth_manager import (
    LAUNCH_ARGS,
    Fingerprint,
    apply_stealth,
    context_options,
    generate_fingerprint,
)
from core.error_handler import DegradedConnection, ResourceExhausted
from core.models import ProxyCredentials, ProxyEndpoint
from core.retry import Backoff, with_retry

logger = logging.getLogger(__name__)

MAX_PAGE_ATTEMPTS = 3


def _default_playwright_factory():
    from playwright.async_api import async_playwright
    return async_playwright()


class SessionState(Enum):
    CLOSED = "closed"
    LAUNCHING = "launching"
    READY = "ready"
    PAGE_ACTIVE = "page_active"


@dataclass
class PageLease:
    """A page handed to one job."""
    page: Any
    proxy_server: Optional[str] = None
    degraded: bool = False
    degraded_reason: Optional[DegradedConnection] = None
    fingerprint: Optional[Fingerprint] = None

    @property
    def direct_connection(self) -> bool:
        return self.proxy_server is None

    @property
    def user_agent(self) -> Optional[str]:
        return self.fingerprint.user_agent if self.fingerprint else None


class SessionHost:
    """
    Single browser, zero-or-one page.

    ``playwright_factory`` returns an object with an async ``start()`` (the
    default is ``async_playwright``); tests pass a fake.
    """

    def __init__(
        self,
        headless: bool = True,
        executable_path: Optional[str] = None,
        timeout_ms: int = 60000,
        playwright_factory: Optional[Callable[[], Any]] = None,
        page_attempts: int = MAX_PAGE_ATTEMPTS,
        page_backoff: Optional[Backoff] = None,
    ):
        self.headless = headless
        self.executable_path = executable_path
        self.timeout_ms = timeout_ms
        self.page_attempts = page_attempts
        self.page_backoff = page_backoff or Backoff(base_delay_seconds=1.0, max_delay_seconds=5.0)
        self._playwright_factory = playwright_factory or _default_playwright_factory

        self.session_id = f"local_{uuid.uuid4().hex[:8]}"
        self.state = SessionState.CLOSED
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._proxy_server: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._browser is not None

    @property
    def has_page(self) -> bool:
        return self._page is not None

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    async def _launch(self, server: Optional[str]):
        """Launch Chromium, bound to ``server`` when given."""
        self.state = SessionState.LAUNCHING
        if self._playwright is None:
            self._playwright = await self._playwright_factory().start()

        launch_kwargs: Dict[str, Any] = {
            "headless": self.headless,
            "args": list(LAUNCH_ARGS),
        }
        if self.executable_path:
            launch_kwargs["executable_path"] = self.executable_path
        if server:
            launch_kwargs["proxy"] = {"server": server}

        try:
            self._browser = await self._playwright.chromium.launch(**launch_kwargs)
        except Exception:
            self.state = SessionState.CLOSED
            raise

        self._proxy_server = server
        self.state = SessionState.READY
        logger.info(f"Browser [{self.session_id}] launched ({'proxy ' + server if server else 'direct'})")

    async def _ensure_browser(self, server: Optional[str]) -> Optional[DegradedConnection]:
        """
        Make sure a browser bound to ``server`` is running.

        Returns a ``DegradedConnection`` when the proxy launch failed and the
        browser fell back to a direct connection.
        """
        if self._browser is not None:
            if self._proxy_server == server and self._browser.is_connected():
                return None
            await self._teardown_browser()

        degraded: Optional[DegradedConnection] = None

        async def launch(attempt: int):
            await self._launch(server)

        async def launch_direct(error: BaseException):
            nonlocal degraded
            degraded = DegradedConnection(server, error)
            logger.warning(str(degraded))
            await self._launch(None)

        try:
            await with_retry(
                launch,
                attempts=1,
                fallback=launch_direct if server else None,
                label="browser launch",
            )
        except Exception as e:
            await self.close()
            raise ResourceExhausted(f"Browser launch failed: {e}") from e

        return degraded

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def _new_page(self):
        fingerprint = generate_fingerprint()
        context = await self._browser.new_context(**context_options(fingerprint))
        try:
            await apply_stealth(context, fingerprint)
            page = await context.new_page()
            page.set_default_timeout(self.timeout_ms)
        except Exception:
            await self._safe_close(context, "context")
            raise
        self._context = context
        self._page = page
        return page, fingerprint

    async def acquire_page(self, proxy: Optional[ProxyEndpoint] = None) -> PageLease:
        """
        Return a fresh page, launching the browser if needed.

        A proxy launch failure degrades to a direct connection. Page creation
        is retried ``page_attempts`` times; the last resort relaunches the
        browser without a proxy. If that fails too the host is closed and
        ``ResourceExhausted`` is raised.
        """
        await self.release_page()

        server = get_proxy_server(proxy) if proxy else None
        degraded = await self._ensure_browser(server)

        async def create(attempt: int):
            return await self._new_page()

        async def relaunch_direct(error: BaseException):
            nonlocal degraded
            logger.warning(f"Browser [{self.session_id}] relaunching without proxy after: {error}")
            if self._proxy_server and degraded is None:
                degraded = DegradedConnection(self._proxy_server, error)
            await self._teardown_browser()
            await self._launch(None)
            return await self._new_page()

        try:
            page, fingerprint = await with_retry(
                create,
                attempts=self.page_attempts,
                backoff=self.page_backoff,
                fallback=relaunch_direct,
                label="page creation",
            )
        except Exception as e:
            await self.close()
            raise ResourceExhausted(f"Could not create a page: {e}") from e

        self.state = SessionState.PAGE_ACTIVE
        return PageLease(
            page=page,
            proxy_server=self._proxy_server,
            degraded=degraded is not None,
            degraded_reason=degraded,
            fingerprint=fingerprint,
        )

    @asynccontextmanager
    async def page_scope(self, proxy: Optional[ProxyEndpoint] = None):
        """Scoped page acquisition; the page is always released."""
        lease = await self.acquire_page(proxy)
        try:
            yield lease
        finally:
            await self.release_page()

    async def authenticate_proxy(self, page, credentials: Optional[ProxyCredentials]) -> bool:
        """Apply proxy credentials to the page's context. Best-effort."""
        if not credentials:
            return False
        try:
            await page.context.set_http_credentials({
                "username": credentials.username,
                "password": credentials.password,
            })
            logger.debug(f"Browser [{self.session_id}] proxy credentials applied for {credentials.username}")
            return True
        except Exception as e:
            logger.warning(f"Browser [{self.session_id}] proxy authentication failed: {e}")
            return False

    async def probe_egress_ip(self, page, url: str) -> Optional[str]:
        """Report the public IP the page egresses from. Best-effort."""
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=15000)
            body = await page.evaluate("() => document.body ? document.body.innerText : ''")
            return json.loads(body).get("ip")
        except Exception as e:
            logger.debug(f"Egress IP probe failed: {e}")
            return None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _safe_close(self, resource, name: str):
        if resource is None:
            return
        try:
            await resource.close()
        except Exception as e:
            logger.debug(f"Error closing {name}: {e}")

    async def release_page(self):
        """Close the active page and its context. Idempotent."""
        page, context = self._page, self._context
        self._page = None
        self._context = None
        await self._safe_close(page, "page")
        await self._safe_close(context, "context")
        if self.state == SessionState.PAGE_ACTIVE:
            self.state = SessionState.READY if self._browser is not None else SessionState.CLOSED

    async def _teardown_browser(self):
        await self.release_page()
        browser = self._browser
        self._browser = None
        self._proxy_server = None
        await self._safe_close(browser, "browser")
        self.state = SessionState.CLOSED

    async def close(self):
        """Close page, browser and the Playwright driver. Idempotent."""
        was_open = self._browser is not None or self._playwright is not None
        await self._teardown_browser()
        playwright = self._playwright
        self._playwright = None
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.debug(f"Error stopping playwright: {e}")
        if was_open:
            logger.info(f"Browser [{self.session_id}] closed")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "has_page": self.has_page,
            "proxy_server": self._proxy_server,
        }
