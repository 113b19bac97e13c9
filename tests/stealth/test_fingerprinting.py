"""
Stealth Tests - Fingerprint consistency and stealth patches.
"""

import random

import pytest

from browser.stealth_manager import (
    BROWSER_PROFILES,
    context_options,
    generate_fingerprint,
    get_stealth_script,
)


class TestFingerprint:

    @pytest.mark.stealth
    def test_platform_matches_user_agent(self):
        profiles = dict(BROWSER_PROFILES)
        rng = random.Random(7)
        for _ in range(25):
            fp = generate_fingerprint(rng)
            assert profiles[fp.user_agent] == fp.platform

    @pytest.mark.stealth
    def test_seeded_generation_is_reproducible(self):
        assert generate_fingerprint(random.Random(42)) == generate_fingerprint(random.Random(42))

    @pytest.mark.stealth
    def test_language_headers_realistic(self):
        fp = generate_fingerprint(random.Random(1))
        fp.languages = ["en-CA", "en", "fr-CA"]

        assert fp.accept_language == "en-CA,en;q=0.9,fr-CA;q=0.8"
        options = context_options(fp)
        assert options["locale"] == "en-CA"
        assert options["extra_http_headers"]["Accept-Language"] == fp.accept_language


class TestStealthScript:

    @pytest.mark.stealth
    def test_webdriver_flag_hidden(self):
        script = get_stealth_script(generate_fingerprint(random.Random(3)))
        assert "Object.defineProperty(navigator, 'webdriver'" in script

    @pytest.mark.stealth
    def test_script_embeds_fingerprint(self):
        fp = generate_fingerprint(random.Random(5))
        script = get_stealth_script(fp)

        assert f'"{fp.platform}"' in script
        assert f"'hardwareConcurrency', {{ get: () => {fp.hardware_concurrency} }}" in script
        assert fp.webgl_renderer in script
