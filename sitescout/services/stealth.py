"""Anti-bot evasion applied to every page before navigation.

Each evasion is a standalone init-script fragment so it can be toggled on
its own. The fingerprint (UA, viewport, WebGL pair, hardware values, noise
seed) is derived from one per-session seed: the same seed always yields the
same script, so canvas/audio noise stays stable within a session while
differing across sessions.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Callable

from playwright.async_api import BrowserContext, Page

from sitescout.schemas.scrape import StealthConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Fingerprint data
# ---------------------------------------------------------------------------

CHROME_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
]

# Consumer GPU signatures reported through WEBGL_debug_renderer_info
WEBGL_RENDERERS = [
    ("Intel Inc.", "Intel Iris OpenGL Engine"),
    ("Google Inc. (Intel)", "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
    ("Google Inc. (NVIDIA)", "ANGLE (NVIDIA, NVIDIA GeForce GTX 1660 SUPER Direct3D11 vs_5_0 ps_5_0, D3D11)"),
    ("Google Inc. (AMD)", "ANGLE (AMD, AMD Radeon RX 580 Series Direct3D11 vs_5_0 ps_5_0, D3D11)"),
    ("Apple Inc.", "Apple M1"),
]

TIMEZONES = [
    "America/New_York",
    "America/Chicago",
    "America/Los_Angeles",
    "Europe/London",
    "Europe/Berlin",
]

KNOWN_EVASIONS = (
    "navigator.webdriver",
    "navigator.plugins",
    "webgl.vendor",
    "navigator.permissions",
    "chrome.runtime",
)


@dataclass(frozen=True)
class Fingerprint:
    seed: int
    user_agent: str
    viewport: dict = field(hash=False)
    timezone: str
    webgl_vendor: str
    webgl_renderer: str
    hw_concurrency: int
    device_memory: int

    @classmethod
    def from_seed(
        cls,
        seed: int | None = None,
        user_agent: str | None = None,
        viewport: dict | None = None,
    ) -> Fingerprint:
        if seed is None:
            seed = random.randint(1, 2**31 - 1)
        rng = random.Random(seed)
        vendor, renderer = rng.choice(WEBGL_RENDERERS)
        ua = rng.choice(CHROME_USER_AGENTS)
        return cls(
            seed=seed,
            user_agent=user_agent or ua,
            viewport=viewport or {"width": 1920, "height": 1080},
            timezone=rng.choice(TIMEZONES),
            webgl_vendor=vendor,
            webgl_renderer=renderer,
            hw_concurrency=rng.choice([4, 8, 12, 16]),
            device_memory=rng.choice([4, 8, 16]),
        )

    def context_options(self) -> dict:
        """Keyword arguments for Browser.new_context()."""
        ua = self.user_agent
        platform = '"Windows"' if "Win" in ua else '"macOS"' if "Mac" in ua else '"Linux"'
        return {
            "user_agent": ua,
            "viewport": dict(self.viewport),
            "locale": "en-US",
            "timezone_id": self.timezone,
            "ignore_https_errors": True,
            "java_script_enabled": True,
            "color_scheme": "light",
            "extra_http_headers": {
                "Accept-Language": "en-US,en;q=0.9",
                "Sec-Ch-Ua-Mobile": "?0",
                "Sec-Ch-Ua-Platform": platform,
                "Upgrade-Insecure-Requests": "1",
            },
        }


# ---------------------------------------------------------------------------
# Evasion script fragments
# ---------------------------------------------------------------------------


def _webdriver_script(fp: Fingerprint) -> str:
    return """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
try { delete Object.getPrototypeOf(navigator).webdriver; } catch (e) {}
"""


def _plugins_script(fp: Fingerprint) -> str:
    return """
(() => {
    const makePlugin = (name, description, filename) => {
        const plugin = Object.create(Plugin.prototype);
        Object.defineProperties(plugin, {
            name: { value: name, enumerable: true },
            description: { value: description, enumerable: true },
            filename: { value: filename, enumerable: true },
            length: { value: 1, enumerable: true },
        });
        return plugin;
    };
    const plugins = [
        makePlugin('PDF Viewer', 'Portable Document Format', 'internal-pdf-viewer'),
        makePlugin('Chrome PDF Viewer', 'Portable Document Format', 'internal-pdf-viewer'),
        makePlugin('Chromium PDF Viewer', 'Portable Document Format', 'internal-pdf-viewer'),
    ];
    Object.defineProperty(navigator, 'plugins', {
        get: () => {
            const arr = Object.create(PluginArray.prototype);
            plugins.forEach((p, i) => { arr[i] = p; });
            Object.defineProperty(arr, 'length', { value: plugins.length });
            arr.item = (i) => plugins[i] || null;
            arr.namedItem = (name) => plugins.find(p => p.name === name) || null;
            arr.refresh = () => {};
            return arr;
        },
    });
    Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
})();
"""


def _webgl_script(fp: Fingerprint) -> str:
    return f"""
(() => {{
    const glVendor = {json.dumps(fp.webgl_vendor)};
    const glRenderer = {json.dumps(fp.webgl_renderer)};
    const patch = (proto) => {{
        if (!proto) return;
        const orig = proto.getParameter;
        proto.getParameter = function(param) {{
            if (param === 37445) return glVendor;
            if (param === 37446) return glRenderer;
            return orig.call(this, param);
        }};
    }};
    patch(window.WebGLRenderingContext && WebGLRenderingContext.prototype);
    patch(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);
    Object.defineProperty(navigator, 'hardwareConcurrency', {{ get: () => {fp.hw_concurrency} }});
    Object.defineProperty(navigator, 'deviceMemory', {{ get: () => {fp.device_memory} }});
}})();
"""


def _permissions_script(fp: Fingerprint) -> str:
    return """
(() => {
    const proto = window.Permissions && Permissions.prototype;
    if (!proto || !proto.query) return;
    const origQuery = proto.query;
    proto.query = function(params) {
        if (params && params.name === 'notifications') {
            const current = typeof Notification === 'undefined' ? 'default' : Notification.permission;
            return Promise.resolve({ state: current === 'default' ? 'prompt' : current, onchange: null });
        }
        return origQuery.call(this, params);
    };
})();
"""


def _chrome_runtime_script(fp: Fingerprint) -> str:
    return """
(() => {
    if (window.chrome && window.chrome.runtime) return;
    window.chrome = Object.assign(window.chrome || {}, {
        runtime: {
            OnInstalledReason: { INSTALL: 'install', UPDATE: 'update', CHROME_UPDATE: 'chrome_update' },
            PlatformOs: { MAC: 'mac', WIN: 'win', LINUX: 'linux', ANDROID: 'android', CROS: 'cros' },
            connect: function() {},
            sendMessage: function() {},
            id: undefined,
        },
        loadTimes: function() { return {}; },
        csi: function() { return {}; },
    });
})();
"""


def _fingerprint_noise_script(fp: Fingerprint) -> str:
    # LCG seeded per session, so repeated reads inside one session agree
    return f"""
(() => {{
    const seed = {fp.seed};
    const makeRand = () => {{
        let s = seed >>> 0;
        return () => {{
            s = (s * 1664525 + 1013904223) & 0xFFFFFFFF;
            return (s >>> 0) / 0xFFFFFFFF;
        }};
    }};
    const perturb = (canvas) => {{
        const ctx = canvas.getContext && canvas.getContext('2d');
        if (!ctx || !canvas.width || !canvas.height) return;
        try {{
            const rand = makeRand();
            const img = ctx.getImageData(0, 0, canvas.width, canvas.height);
            const px = img.data;
            for (let i = 0; i < Math.min(px.length, 400); i += 4) {{
                if (rand() < 0.1) px[i] = Math.max(0, Math.min(255, px[i] + (rand() < 0.5 ? 1 : -1)));
            }}
            ctx.putImageData(img, 0, 0);
        }} catch (e) {{}}
    }};
    const origToDataURL = HTMLCanvasElement.prototype.toDataURL;
    HTMLCanvasElement.prototype.toDataURL = function() {{
        perturb(this);
        return origToDataURL.apply(this, arguments);
    }};
    const origToBlob = HTMLCanvasElement.prototype.toBlob;
    HTMLCanvasElement.prototype.toBlob = function() {{
        perturb(this);
        return origToBlob.apply(this, arguments);
    }};
    if (window.AudioBuffer) {{
        const origGetChannelData = AudioBuffer.prototype.getChannelData;
        AudioBuffer.prototype.getChannelData = function() {{
            const data = origGetChannelData.apply(this, arguments);
            const rand = makeRand();
            for (let i = 0; i < data.length; i += 100) {{
                data[i] = data[i] + (rand() - 0.5) * 1e-7;
            }}
            return data;
        }};
    }}
    try {{
        Object.defineProperty(screen, 'availWidth', {{ get: () => screen.width }});
        Object.defineProperty(screen, 'availHeight', {{ get: () => screen.height - 40 }});
    }} catch (e) {{}}
}})();
"""


def _block_webrtc_script(fp: Fingerprint) -> str:
    return """
(() => {
    const Orig = window.RTCPeerConnection || window.webkitRTCPeerConnection;
    if (!Orig) return;
    const Wrapped = function(config) {
        config = Object.assign({}, config || {}, { iceTransportPolicy: 'relay' });
        return new Orig(config);
    };
    Wrapped.prototype = Orig.prototype;
    window.RTCPeerConnection = Wrapped;
    if (window.webkitRTCPeerConnection) window.webkitRTCPeerConnection = Wrapped;
})();
"""


def _mask_media_devices_script(fp: Fingerprint) -> str:
    return """
(() => {
    if (!navigator.mediaDevices || !navigator.mediaDevices.enumerateDevices) return;
    navigator.mediaDevices.enumerateDevices = () => Promise.resolve([
        { deviceId: 'default', kind: 'audioinput', label: '', groupId: 'default' },
        { deviceId: 'default', kind: 'audiooutput', label: '', groupId: 'default' },
        { deviceId: 'default', kind: 'videoinput', label: '', groupId: 'default' },
    ]);
})();
"""


EVASION_SCRIPTS: dict[str, Callable[[Fingerprint], str]] = {
    "navigator.webdriver": _webdriver_script,
    "navigator.plugins": _plugins_script,
    "webgl.vendor": _webgl_script,
    "navigator.permissions": _permissions_script,
    "chrome.runtime": _chrome_runtime_script,
}


def build_stealth_script(config: StealthConfig, fingerprint: Fingerprint) -> str:
    """Concatenate the enabled evasion fragments into one init script."""
    if not config.enabled:
        return ""
    parts = []
    for name in config.evasions:
        builder = EVASION_SCRIPTS.get(name)
        if builder is None:
            logger.warning(f"Unknown stealth evasion '{name}', skipping")
            continue
        parts.append(f"// evasion: {name}\n{builder(fingerprint)}")
    if config.randomize_fingerprint:
        parts.append(_fingerprint_noise_script(fingerprint))
    if config.block_webrtc:
        parts.append(_block_webrtc_script(fingerprint))
    if config.mask_media_devices:
        parts.append(_mask_media_devices_script(fingerprint))
    return "\n".join(parts)


class StealthLayer:
    """Applies evasions to a page or context before its first navigation."""

    def __init__(self, config: StealthConfig | None = None):
        self.config = config or StealthConfig()
        self.fingerprint = Fingerprint.from_seed(self.config.seed)

    def session_fingerprint(
        self, user_agent: str | None = None, viewport: dict | None = None
    ) -> Fingerprint:
        """The session fingerprint with request-level UA/viewport overrides."""
        if user_agent is None and viewport is None:
            return self.fingerprint
        return Fingerprint.from_seed(
            self.fingerprint.seed,
            user_agent=user_agent,
            viewport=viewport or self.fingerprint.viewport,
        )

    async def apply(
        self,
        target: Page | BrowserContext,
        config: StealthConfig | None = None,
        fingerprint: Fingerprint | None = None,
    ) -> None:
        config = config or self.config
        script = build_stealth_script(config, fingerprint or self.fingerprint)
        if not script:
            return
        await target.add_init_script(script)
        logger.debug(
            f"Applied stealth evasions {list(config.evasions)} "
            f"(randomize={config.randomize_fingerprint})"
        )


async def simulate_human(
    page: Page,
    moves: int = 3,
    rng: random.Random | None = None,
) -> None:
    """Small mouse movements and wheel jitter with bounded random pauses.

    Only lowers bot-heuristic scores; lazy-content scrolling is done
    separately by the strategies.
    """
    rng = rng or random.Random()
    vp = page.viewport_size or {"width": 1920, "height": 1080}
    try:
        for _ in range(moves):
            await page.mouse.move(
                rng.randint(100, max(vp["width"] - 100, 101)),
                rng.randint(100, max(vp["height"] - 100, 101)),
                steps=rng.randint(8, 15),
            )
            await asyncio.sleep(rng.uniform(0.2, 0.7))
        for _ in range(rng.randint(1, 3)):
            await page.mouse.wheel(0, rng.randint(-120, 240))
            await asyncio.sleep(rng.uniform(0.1, 0.3))
    except Exception as e:
        logger.debug(f"Human simulation interrupted: {e}")
