"""
Browser helpers for local Playwright sessions.

- proxy_config: proxy server / rotating credential helpers
- stealth_manager: fingerprints, context options and stealth init scripts

Import from the submodules directly:
    from browser.proxy_config import get_proxy_server
    from browser.stealth_manager import generate_fingerprint
"""
