"""
Tests for account/proxy leasing and proxy credential helpers.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from browser.proxy_config import (
    get_proxy_credentials,
    get_proxy_server,
    get_proxy_url,
    rotating_username,
)
from core.error_handler import NoResourceAvailable
from core.models import ProxyEndpoint
from core.resource_directory import ResourceDirectory


def _mock_store(account_row=None, proxy_row=None):
    store = MagicMock()
    store.get_least_recently_used_account = AsyncMock(return_value=account_row)
    store.lease_proxy_endpoint = AsyncMock(return_value=proxy_row)
    store.touch_account = AsyncMock()
    return store


PROXY_ROW = {
    "id": 3,
    "address": "gw.proxy.test",
    "port": 7000,
    "protocol": "http",
    "username": "customer-abc",
    "password": "secret",
    "session_counter": 42,
    "max_sessions": 10000,
    "rotation_enabled": 1,
    "priority": 1,
    "location": "us",
}


class TestResourceDirectory:

    @pytest.mark.asyncio
    async def test_lease_account(self):
        store = _mock_store(account_row={"id": "a1", "identity": "a@example.com", "status": "active"})
        account = await ResourceDirectory(store).lease_account()

        assert account.id == "a1"
        assert account.identity == "a@example.com"
        store.touch_account.assert_not_called()

    @pytest.mark.asyncio
    async def test_lease_account_when_none_active(self):
        with pytest.raises(NoResourceAvailable) as exc_info:
            await ResourceDirectory(_mock_store()).lease_account()
        assert exc_info.value.resource == "account"
        assert "No active accounts" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_lease_proxy(self):
        endpoint = await ResourceDirectory(_mock_store(proxy_row=PROXY_ROW)).lease_proxy()
        assert endpoint.identifier == "gw.proxy.test:7000"
        assert endpoint.session_counter == 42

    @pytest.mark.asyncio
    async def test_missing_proxy_means_direct_connection(self):
        directory = ResourceDirectory(_mock_store())
        assert await directory.lease_proxy_or_direct() is None
        with pytest.raises(NoResourceAvailable):
            await directory.lease_proxy()

    @pytest.mark.asyncio
    async def test_mark_account_used(self):
        store = _mock_store()
        await ResourceDirectory(store).mark_account_used("a1")
        store.touch_account.assert_awaited_once_with("a1")

    @pytest.mark.asyncio
    async def test_directory_against_real_store(self, store):
        await store.add_account("first@example.com")
        await store.add_proxy_endpoint("gw.proxy.test", 7000, username="u", password="p")
        directory = ResourceDirectory(store)

        account = await directory.lease_account()
        assert account.identity == "first@example.com"

        endpoint = await directory.lease_proxy()
        assert directory.proxy_credentials(endpoint).username == "u-session1"


class TestProxyConfig:

    def test_server_never_carries_credentials(self):
        endpoint = ProxyEndpoint.from_row(PROXY_ROW)
        assert get_proxy_server(endpoint) == "http://gw.proxy.test:7000"
        assert get_proxy_server(ProxyEndpoint(id=2, address="10.0.0.2", port=1080, protocol="socks5")) == "socks5://10.0.0.2:1080"

    def test_rotating_credentials(self):
        endpoint = ProxyEndpoint.from_row(PROXY_ROW)
        credentials = get_proxy_credentials(endpoint)

        assert credentials.username == "customer-abc-session42"
        assert credentials.password == "secret"

    def test_rotation_disabled_keeps_username(self):
        assert rotating_username("user", 7, rotation_enabled=False) == "user"
        assert rotating_username("user", 0) == "user"

    def test_open_proxy_has_no_credentials(self):
        endpoint = ProxyEndpoint(id=1, address="10.0.0.1", port=3128)
        assert get_proxy_credentials(endpoint) is None
        assert get_proxy_url(endpoint) == "http://10.0.0.1:3128"

    def test_proxy_url_masks_password(self):
        endpoint = ProxyEndpoint.from_row(PROXY_ROW)
        assert "secret" not in get_proxy_url(endpoint)
        assert get_proxy_url(endpoint, mask_password=False).endswith("secret@gw.proxy.test:7000")
        assert get_proxy_server(endpoint) == "http://gw.proxy.test:7000"
