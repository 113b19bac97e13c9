"""
Tests for the single-browser session host: proxy binding, degrade-to-direct,
bounded page retries and idempotent teardown.
"""

import pytest

from core.browser import SessionHost, SessionState
from core.error_handler import ResourceExhausted
from core.models import ProxyCredentials, ProxyEndpoint
from core.retry import Backoff

PROXY = ProxyEndpoint(id=1, address="gw.proxy.test", port=7000, username="user", password="pw", session_counter=3)


def _host(fake_playwright, **kwargs):
    return SessionHost(
        headless=True,
        timeout_ms=1234,
        playwright_factory=lambda: fake_playwright,
        page_backoff=Backoff.none(),
        **kwargs,
    )


class TestLaunch:

    @pytest.mark.asyncio
    async def test_proxy_server_only_in_launch_args(self, fake_playwright):
        host = _host(fake_playwright)

        lease = await host.acquire_page(PROXY)

        launch = fake_playwright.launches[0]
        assert launch["proxy"] == {"server": "http://gw.proxy.test:7000"}
        assert "user" not in str(launch)
        assert not lease.degraded
        assert lease.proxy_server == "http://gw.proxy.test:7000"
        assert lease.page.default_timeout == 1234
        assert host.state == SessionState.PAGE_ACTIVE

    @pytest.mark.asyncio
    async def test_proxy_launch_failure_degrades_to_direct(self, fake_playwright):
        fake_playwright.fail_proxy_launch = True
        host = _host(fake_playwright)

        lease = await host.acquire_page(PROXY)

        assert len(fake_playwright.launches) == 2
        assert "proxy" not in fake_playwright.launches[1]
        assert lease.degraded
        assert lease.direct_connection
        assert lease.degraded_reason.proxy_identifier == "http://gw.proxy.test:7000"

    @pytest.mark.asyncio
    async def test_launch_failure_closes_host(self, fake_playwright):
        fake_playwright.fail_all_launches = True
        host = _host(fake_playwright)

        with pytest.raises(ResourceExhausted):
            await host.acquire_page(None)

        assert not host.is_open
        assert host.state == SessionState.CLOSED
        assert fake_playwright.stopped == 1

    @pytest.mark.asyncio
    async def test_browser_reused_for_same_proxy(self, fake_playwright):
        host = _host(fake_playwright)

        async with host.page_scope(PROXY):
            pass
        async with host.page_scope(PROXY):
            pass

        assert len(fake_playwright.launches) == 1
        assert fake_playwright.started == 1

    @pytest.mark.asyncio
    async def test_browser_relaunched_when_proxy_changes(self, fake_playwright):
        host = _host(fake_playwright)

        async with host.page_scope(PROXY):
            pass
        async with host.page_scope(None):
            pass

        assert len(fake_playwright.launches) == 2
        assert fake_playwright.browsers[0].closed


class TestPages:

    @pytest.mark.asyncio
    async def test_page_creation_retried(self, fake_playwright):
        fake_playwright.context_failures = [2]
        host = _host(fake_playwright)

        lease = await host.acquire_page(None)

        assert lease.page is not None
        assert len(fake_playwright.launches) == 1

    @pytest.mark.asyncio
    async def test_page_retries_exhausted_relaunches_direct(self, fake_playwright):
        fake_playwright.context_failures = [5, 0]
        host = _host(fake_playwright, page_attempts=3)

        lease = await host.acquire_page(PROXY)

        assert len(fake_playwright.launches) == 2
        assert "proxy" not in fake_playwright.launches[1]
        assert lease.degraded
        assert lease.direct_connection

    @pytest.mark.asyncio
    async def test_page_retries_and_fallback_exhausted(self, fake_playwright):
        fake_playwright.context_failures = [5, 5]
        host = _host(fake_playwright, page_attempts=2)

        with pytest.raises(ResourceExhausted):
            await host.acquire_page(None)
        assert not host.is_open

    @pytest.mark.asyncio
    async def test_page_scope_releases_on_error(self, fake_playwright):
        host = _host(fake_playwright)

        with pytest.raises(RuntimeError):
            async with host.page_scope(None) as lease:
                page = lease.page
                raise RuntimeError("job blew up")

        assert page.closed
        assert page.context.closed
        assert not host.has_page
        assert host.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_stealth_script_and_fingerprint_applied(self, fake_playwright):
        host = _host(fake_playwright)

        lease = await host.acquire_page(None)

        context = lease.page.context
        assert len(context.init_scripts) == 1
        assert context.options["user_agent"] == lease.user_agent
        assert "Accept-Language" in context.options["extra_http_headers"]


class TestProxyAuthAndTeardown:

    @pytest.mark.asyncio
    async def test_authenticate_proxy(self, fake_playwright):
        host = _host(fake_playwright)
        lease = await host.acquire_page(PROXY)

        applied = await host.authenticate_proxy(lease.page, ProxyCredentials("user-session3", "pw"))

        assert applied
        assert lease.page.context.http_credentials == {"username": "user-session3", "password": "pw"}
        assert not await host.authenticate_proxy(lease.page, None)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, fake_playwright):
        host = _host(fake_playwright)
        await host.acquire_page(None)

        await host.close()
        await host.close()

        assert fake_playwright.stopped == 1
        assert fake_playwright.browsers[0].closed
        assert host.get_stats()["state"] == "closed"
