"""
Pytest fixtures and configuration for the Review Report Worker test suite.

The fakes below stand in for Playwright objects. A ``FakePage`` renders its
snapshot from a ``render(page)`` callback and feeds every click to an
``on_click(page, ref, how)`` callback, so a test can script a whole UI as a
tiny state machine.
"""

import re
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.interaction import POINTER_DISPATCH_SCRIPT, InteractionConfig  # noqa: E402
from core.retry import Backoff  # noqa: E402
from core.strategies import REF_ATTRIBUTE, SNAPSHOT_SCRIPT  # noqa: E402


# === Snapshot builders ===

def make_element(ref, tag="button", text="", **fields):
    """Element dict in the shape SNAPSHOT_SCRIPT returns."""
    element = {"ref": str(ref), "tag": tag, "text": text, "visible": True}
    element.update(fields)
    return element


def make_snapshot(url, elements=(), body_text="", has_dialog=False, markers=(),
                  total_elements=200, html_length=20000, title="Test page"):
    return {
        "url": url,
        "title": title,
        "html_length": html_length,
        "total_elements": total_elements,
        "body_text": body_text,
        "markers_found": list(markers),
        "has_dialog": has_dialog,
        "elements": list(elements),
    }


# === Playwright fakes ===

REF_PATTERN = re.compile(r'\[' + re.escape(REF_ATTRIBUTE) + r'="([^"]+)"\]')


class FakeLocator:
    def __init__(self, page, selector):
        self.page = page
        match = REF_PATTERN.search(selector)
        self.ref = match.group(1) if match else selector

    @property
    def first(self):
        return self

    async def click(self, timeout=None):
        if "direct" in self.page.failing_clicks:
            raise Exception("Element is not visible")
        self.page.dispatch(self.ref, "direct")

    async def evaluate(self, expression, arg=None):
        if "programmatic" in self.page.failing_clicks:
            raise Exception("Element is detached")
        self.page.dispatch(self.ref, "programmatic")


class FakeContext:
    def __init__(self, browser=None):
        self.browser = browser
        self.pages = []
        self.init_scripts = []
        self.cookies_added = []
        self.stored_cookies = []
        self.http_credentials = None
        self.closed = False
        self.options = {}

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        page = FakePage()
        page.context = self
        self.pages.append(page)
        if self.browser is not None and self.browser.driver.page_setup is not None:
            self.browser.driver.page_setup(page)
        return page

    async def add_cookies(self, cookies):
        self.cookies_added.extend(cookies)

    async def cookies(self):
        return list(self.stored_cookies)

    async def set_http_credentials(self, credentials):
        self.http_credentials = credentials

    async def close(self):
        self.closed = True


class FakePage:
    def __init__(self, url="about:blank", render=None, on_click=None):
        self.url = url
        self.render = render or (lambda page: make_snapshot(page.url))
        self.on_click = on_click or (lambda page, ref, how: None)
        self.clicks = []
        self.gotos = []
        self.goto_errors = []
        self.failing_clicks = set()
        self.screenshot_error = None
        self.default_timeout = None
        self.closed = False
        self.context = FakeContext()
        self.context.pages.append(self)

    def dispatch(self, ref, how):
        self.clicks.append((ref, how))
        self.on_click(self, ref, how)

    async def goto(self, url, wait_until=None, timeout=None):
        self.gotos.append((url, wait_until))
        if self.goto_errors:
            error = self.goto_errors.pop(0)
            if error is not None:
                raise error
        self.url = url

    async def evaluate(self, script, arg=None):
        if script == SNAPSHOT_SCRIPT:
            return self.render(self)
        if script == POINTER_DISPATCH_SCRIPT:
            if "pointer" in self.failing_clicks:
                return False
            self.dispatch(arg["ref"], "pointer")
            return True
        return ""

    def locator(self, selector):
        return FakeLocator(self, selector)

    async def screenshot(self, full_page=False):
        if self.screenshot_error is not None:
            raise self.screenshot_error
        return b"\x89PNG fake screenshot"

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, driver, launch_kwargs, context_failures=0):
        self.driver = driver
        self.launch_kwargs = launch_kwargs
        self.context_failures = context_failures
        self.contexts = []
        self.connected = True
        self.closed = False

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        if self.context_failures > 0:
            self.context_failures -= 1
            raise Exception("Target page, context or browser has been closed")
        context = FakeContext(self)
        context.options = options
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True
        self.connected = False


class FakeChromium:
    def __init__(self, driver):
        self.driver = driver

    async def launch(self, **kwargs):
        self.driver.launches.append(kwargs)
        if self.driver.fail_proxy_launch and "proxy" in kwargs:
            raise Exception("net::ERR_PROXY_CONNECTION_FAILED")
        if self.driver.fail_all_launches:
            raise Exception("Executable doesn't exist")
        failures = self.driver.context_failures.pop(0) if self.driver.context_failures else 0
        browser = FakeBrowser(self.driver, kwargs, context_failures=failures)
        self.driver.browsers.append(browser)
        return browser


class FakePlaywright:
    """Stands in for both ``async_playwright()`` and the started driver."""

    def __init__(self):
        self.chromium = FakeChromium(self)
        self.launches = []
        self.browsers = []
        self.fail_proxy_launch = False
        self.fail_all_launches = False
        # Per launch: how many new_context calls fail before one succeeds.
        self.context_failures = []
        # Called with every page the fake browser creates.
        self.page_setup = None
        self.started = 0
        self.stopped = 0

    async def start(self):
        self.started += 1
        return self

    async def stop(self):
        self.stopped += 1


# === Fixtures ===

@pytest.fixture
def fake_page_factory():
    return FakePage


@pytest.fixture
def fake_playwright():
    return FakePlaywright()


@pytest.fixture
def fast_interaction_config():
    """Interaction timings small enough for unit tests."""
    return InteractionConfig(
        navigation_backoff=Backoff.none(),
        settle_timeout=0.2,
        settle_interval=0.01,
        discovery_timeout=0.2,
        click_verify_timeout=0.1,
        click_timeout_ms=100,
        confirmation_timeout=0.1,
        poll_interval=0.01,
        action_delay=(0.0, 0.0),
    )


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the store at a fresh SQLite file."""
    from api import database
    monkeypatch.setattr(database, "DB_PATH", tmp_path / "test_review_reporter.db")
    return database


@pytest_asyncio.fixture
async def store(temp_db):
    """Initialized store module."""
    await temp_db.init_database()
    return temp_db


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch, tmp_path):
    """Keep tests off the network and out of the real data directory."""
    from api.config import config
    monkeypatch.setattr(config, "CREDENTIAL_VERIFICATION_ENABLED", False)
    monkeypatch.setattr(config, "PROOF_STORAGE", "local")
    monkeypatch.setattr(config, "PROOF_DIR", str(tmp_path / "proofs"))
    monkeypatch.setattr(config, "PROOF_PUBLIC_BASE_URL", None)
    monkeypatch.setattr(config, "AUTO_START_WORKER", False)
    yield


# === Markers ===

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "resilience: Failure mode and recovery tests")
    config.addinivalue_line("markers", "integration: Tests that touch the SQLite store")
    config.addinivalue_line("markers", "stealth: Fingerprint and stealth patch tests")
