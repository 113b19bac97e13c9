"""
Fingerprint randomization and stealth patches for local Playwright sessions.

Each browser context gets a realistic, internally consistent fingerprint:
user agent and navigator.platform agree, the viewport is a common desktop
size, and the Accept-Language header matches navigator.languages.
"""

import json
import random
import asyncio
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List


# (user agent, navigator.platform) pairs
BROWSER_PROFILES = [
    # Chrome 131 on Windows 11
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36", "Win32"),
    # Chrome 130 on Windows 11
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36", "Win32"),
    # Chrome 131 on macOS Sonoma
    ("Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36", "MacIntel"),
    ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36", "MacIntel"),
    # Edge 131 on Windows
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36 Edg/131.0.0.0", "Win32"),
    # Chrome on Linux
    ("Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36", "Linux x86_64"),
]

# Viewport sizes for randomization
VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1680, "height": 1050},
    {"width": 1600, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
    {"width": 1366, "height": 768},
    {"width": 1280, "height": 800},
]

LANGUAGES = [
    ["en-US", "en"],
    ["en-GB", "en"],
    ["en-CA", "en", "fr-CA"],
    ["en-AU", "en"],
]

TIMEZONES = [
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "America/Phoenix",
]

HARDWARE_PROFILES = [
    (4, 8),
    (6, 8),
    (8, 16),
    (12, 16),
    (12, 32),
]

WEBGL_PROFILES = [
    ("Intel Inc.", "Intel Iris OpenGL Engine"),
    ("Google Inc. (Intel)", "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0)"),
    ("Google Inc. (NVIDIA)", "ANGLE (NVIDIA, NVIDIA GeForce GTX 1660 Direct3D11 vs_5_0 ps_5_0)"),
    ("Apple Inc.", "Apple M1"),
]

# Chromium flags for every launch
LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
]


@dataclass
class Fingerprint:
    """Browser fingerprint applied to one context."""
    user_agent: str
    platform: str
    viewport: Dict[str, int]
    languages: List[str] = field(default_factory=lambda: ["en-US", "en"])
    timezone_id: str = "America/New_York"
    hardware_concurrency: int = 8
    device_memory: int = 8
    webgl_vendor: str = "Intel Inc."
    webgl_renderer: str = "Intel Iris OpenGL Engine"

    @property
    def accept_language(self) -> str:
        parts = []
        for i, lang in enumerate(self.languages):
            parts.append(lang if i == 0 else f"{lang};q={max(0.1, 1 - i * 0.1):.1f}")
        return ",".join(parts)


def generate_fingerprint(rng: Optional[random.Random] = None) -> Fingerprint:
    """Pick a random, consistent fingerprint."""
    rng = rng or random
    user_agent, platform = rng.choice(BROWSER_PROFILES)
    cores, memory = rng.choice(HARDWARE_PROFILES)
    vendor, renderer = rng.choice(WEBGL_PROFILES)
    return Fingerprint(
        user_agent=user_agent,
        platform=platform,
        viewport=dict(rng.choice(VIEWPORTS)),
        languages=list(rng.choice(LANGUAGES)),
        timezone_id=rng.choice(TIMEZONES),
        hardware_concurrency=cores,
        device_memory=memory,
        webgl_vendor=vendor,
        webgl_renderer=renderer,
    )


def context_options(fingerprint: Fingerprint) -> Dict[str, Any]:
    """Keyword arguments for ``browser.new_context``."""
    return {
        "viewport": fingerprint.viewport,
        "user_agent": fingerprint.user_agent,
        "locale": fingerprint.languages[0],
        "timezone_id": fingerprint.timezone_id,
        "color_scheme": "light",
        "extra_http_headers": {"Accept-Language": fingerprint.accept_language},
    }


def get_stealth_script(fingerprint: Fingerprint) -> str:
    """JavaScript stealth patches matching the fingerprint."""
    return """
        // Hide webdriver property
        Object.defineProperty(navigator, 'webdriver', {
            get: () => undefined
        });

        // Mock realistic plugins array
        Object.defineProperty(navigator, 'plugins', {
            get: () => {
                const plugins = [
                    { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' },
                    { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' },
                    { name: 'Native Client', filename: 'internal-nacl-plugin' }
                ];
                plugins.length = 3;
                return plugins;
            }
        });

        Object.defineProperty(navigator, 'languages', { get: () => %(languages)s });
        Object.defineProperty(navigator, 'platform', { get: () => %(platform)s });
        Object.defineProperty(navigator, 'hardwareConcurrency', { get: () => %(cores)d });
        Object.defineProperty(navigator, 'deviceMemory', { get: () => %(memory)d });

        window.chrome = {
            runtime: {},
            loadTimes: function() {},
            csi: function() {},
            app: {}
        };

        // Override permissions API
        const originalQuery = window.navigator.permissions.query;
        window.navigator.permissions.query = (parameters) => (
            parameters.name === 'notifications' ?
                Promise.resolve({ state: Notification.permission }) :
                originalQuery(parameters)
        );

        // WebGL vendor and renderer
        const getParameter = WebGLRenderingContext.prototype.getParameter;
        WebGLRenderingContext.prototype.getParameter = function(parameter) {
            if (parameter === 37445) return %(vendor)s;
            if (parameter === 37446) return %(renderer)s;
            return getParameter.call(this, parameter);
        };
    """ % {
        "languages": json.dumps(fingerprint.languages),
        "platform": json.dumps(fingerprint.platform),
        "cores": fingerprint.hardware_concurrency,
        "memory": fingerprint.device_memory,
        "vendor": json.dumps(fingerprint.webgl_vendor),
        "renderer": json.dumps(fingerprint.webgl_renderer),
    }


async def apply_stealth(context, fingerprint: Fingerprint):
    """Install the stealth init script on a context."""
    await context.add_init_script(get_stealth_script(fingerprint))


async def human_like_delay(min_sec: float = 1.0, max_sec: float = 3.0):
    """Pacing delay between actions."""
    delay = random.uniform(min_sec, max_sec)
    await asyncio.sleep(delay)
