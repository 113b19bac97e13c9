"""
Tests for cookie restore/save and the credential verifier.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from api.credential_verifier import NoopVerifier, TokenInfoVerifier, get_credential_verifier
from conftest import FakePage
from core.models import Account
from core.session_auth import BrowserSessionAuthenticator

ACCOUNT = Account(id="acct-1", identity="a@example.com")


class TestBrowserSessionAuthenticator:

    @pytest.mark.asyncio
    async def test_saved_cookies_are_restored(self, store):
        cookies = [{"name": "SID", "value": "x", "domain": ".google.com", "path": "/"}]
        await store.save_browser_session(ACCOUNT.identity, cookies)
        page = FakePage()

        assert await BrowserSessionAuthenticator(store).restore(page, ACCOUNT)
        assert page.context.cookies_added == cookies

    @pytest.mark.asyncio
    async def test_nothing_saved(self, store):
        assert not await BrowserSessionAuthenticator(store).restore(FakePage(), ACCOUNT)

    @pytest.mark.asyncio
    async def test_save_keeps_only_listing_site_cookies(self, store):
        page = FakePage()
        page.context.stored_cookies = [
            {"name": "SID", "value": "x", "domain": ".google.com", "path": "/"},
            {"name": "tracker", "value": "y", "domain": ".ads.example", "path": "/"},
        ]

        assert await BrowserSessionAuthenticator(store).save(page, ACCOUNT, "UA/1.0")

        session = await store.load_browser_session(ACCOUNT.identity)
        assert [c["name"] for c in session["cookies"]] == ["SID"]
        assert session["user_agent"] == "UA/1.0"

    @pytest.mark.asyncio
    async def test_store_errors_are_not_fatal(self):
        store = MagicMock()
        store.load_browser_session = AsyncMock(side_effect=Exception("locked"))
        store.invalidate_browser_session = AsyncMock(side_effect=Exception("locked"))
        auth = BrowserSessionAuthenticator(store)

        assert not await auth.restore(FakePage(), ACCOUNT)
        await auth.invalidate(ACCOUNT)


class TestCredentialVerifier:

    @pytest.mark.asyncio
    async def test_noop_verifier(self):
        result = await NoopVerifier().verify("a@example.com")
        assert result.success

    def test_disabled_verification_uses_noop(self):
        assert isinstance(get_credential_verifier(), NoopVerifier)

    @pytest.mark.asyncio
    async def test_unknown_account(self, store):
        result = await TokenInfoVerifier(store=store).verify("nobody@example.com")
        assert not result.success
        assert "Unknown account" in result.error

    @pytest.mark.asyncio
    async def test_account_without_token(self, store):
        await store.add_account("a@example.com")

        async with TokenInfoVerifier(store=store) as verifier:
            result = await verifier.verify("a@example.com")

        assert not result.success
        assert "No OAuth tokens" in result.error
