"""Tests for evasion script building and session fingerprints."""
import pytest
from unittest.mock import AsyncMock

from sitescout.schemas.scrape import StealthConfig
from sitescout.services.stealth import (
    Fingerprint,
    StealthLayer,
    build_stealth_script,
)


class TestFingerprint:
    def test_same_seed_same_fingerprint(self):
        assert Fingerprint.from_seed(1234) == Fingerprint.from_seed(1234)

    def test_overrides(self):
        fp = Fingerprint.from_seed(7, user_agent="TestAgent/1.0", viewport={"width": 800, "height": 600})
        options = fp.context_options()
        assert options["user_agent"] == "TestAgent/1.0"
        assert options["viewport"] == {"width": 800, "height": 600}
        assert options["extra_http_headers"]["Sec-Ch-Ua-Platform"] == '"Linux"'

    def test_random_seed_when_unset(self):
        assert Fingerprint.from_seed().seed > 0


class TestBuildStealthScript:
    def test_same_seed_yields_identical_script(self):
        config = StealthConfig(randomize_fingerprint=True, block_webrtc=True, mask_media_devices=True)
        first = build_stealth_script(config, Fingerprint.from_seed(42))
        second = build_stealth_script(config, Fingerprint.from_seed(42))
        assert first == second
        assert "const seed = 42;" in first

    def test_different_seeds_differ(self):
        config = StealthConfig(randomize_fingerprint=True)
        assert build_stealth_script(config, Fingerprint.from_seed(1)) != build_stealth_script(
            config, Fingerprint.from_seed(2)
        )

    def test_disabled_is_empty(self):
        assert build_stealth_script(StealthConfig(enabled=False), Fingerprint.from_seed(1)) == ""

    def test_evasions_toggle_individually(self):
        script = build_stealth_script(
            StealthConfig(evasions=["navigator.webdriver", "no.such.evasion"]),
            Fingerprint.from_seed(1),
        )
        assert "// evasion: navigator.webdriver" in script
        assert "navigator.plugins" not in script
        assert "no.such.evasion" not in script

    def test_optional_patches_off_by_default(self):
        script = build_stealth_script(StealthConfig(), Fingerprint.from_seed(1))
        assert "RTCPeerConnection" not in script
        assert "enumerateDevices" not in script
        assert "getChannelData" not in script

    def test_webgl_values_come_from_fingerprint(self):
        fp = Fingerprint.from_seed(99)
        script = build_stealth_script(StealthConfig(evasions=["webgl.vendor"]), fp)
        assert fp.webgl_renderer in script
        assert f"get: () => {fp.hw_concurrency}" in script


class TestStealthLayer:
    @pytest.mark.asyncio
    async def test_apply_adds_one_init_script(self):
        target = AsyncMock()
        layer = StealthLayer(StealthConfig(seed=5))
        await layer.apply(target)
        target.add_init_script.assert_awaited_once()
        script = target.add_init_script.await_args.args[0]
        assert script == build_stealth_script(layer.config, Fingerprint.from_seed(5))

    @pytest.mark.asyncio
    async def test_apply_disabled_is_noop(self):
        target = AsyncMock()
        await StealthLayer(StealthConfig(enabled=False)).apply(target)
        target.add_init_script.assert_not_awaited()

    def test_session_fingerprint_keeps_seed(self):
        layer = StealthLayer(StealthConfig(seed=11))
        assert layer.session_fingerprint() is layer.fingerprint
        overridden = layer.session_fingerprint(user_agent="UA/2")
        assert overridden.seed == 11
        assert overridden.user_agent == "UA/2"
        assert overridden.webgl_renderer == layer.fingerprint.webgl_renderer
