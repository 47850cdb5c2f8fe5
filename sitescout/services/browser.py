"""Shared headless-browser lifecycle.

One BrowserPool owns at most one Chromium process. Pools are constructed and
passed explicitly; nothing here is a module-level singleton. Contexts and
pages are created fresh per URL by `new_page()` and always closed, even when
the caller is cancelled.
"""

import asyncio
import atexit
import logging
import os
import signal
import time
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable

from playwright.async_api import async_playwright, Browser, BrowserContext, Page

from sitescout.config import settings
from sitescout.core.exceptions import (
    BrowserInfrastructureError,
    BrowserLaunchError,
    BrowserPoolClosingError,
    BrowserPoolExhaustedError,
)
from sitescout.core.metrics import (
    active_browser_contexts,
    browser_launch_failures_total,
    browser_launches_total,
)
from sitescout.schemas.scrape import StealthConfig
from sitescout.services.stealth import Fingerprint, StealthLayer

logger = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-features=IsolateOrigins,site-per-process",
    "--deterministic-fetch",
    "--disable-blink-features=AutomationControlled",
]

AD_SERVING_DOMAINS = frozenset(
    {
        "doubleclick.net",
        "googlesyndication.com",
        "googleadservices.com",
        "adservice.google.com",
        "amazon-adsystem.com",
        "adnxs.com",
        "taboola.com",
        "outbrain.com",
        "criteo.com",
        "scorecardresearch.com",
    }
)

Launcher = Callable[[bool, list[str], float], Awaitable[tuple]]


async def launch_chromium(headless: bool, args: list[str], timeout: float) -> tuple:
    """Start Playwright and launch Chromium. Returns (playwright, browser)."""
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(
            headless=headless, args=args, timeout=timeout * 1000
        )
    except BaseException:
        await playwright.stop()
        raise
    return playwright, browser


async def setup_route_blocking(
    context: BrowserContext, block_resources: list[str] | tuple = ()
) -> None:
    """Abort ad-network requests and any of the given resource types."""
    blocked_types = frozenset(block_resources)

    async def _route_handler(route, request):
        url = request.url
        try:
            after_scheme = url.split("//", 1)[1]
            hostname = after_scheme.split("/", 1)[0].split(":")[0].lower()
        except IndexError:
            await route.continue_()
            return

        if any(domain in hostname for domain in AD_SERVING_DOMAINS):
            await route.abort()
            return
        if request.resource_type in blocked_types:
            await route.abort()
            return
        await route.continue_()

    await context.route("**/*", _route_handler)


def is_browser_closed_error(exc: BaseException) -> bool:
    """Check if an exception means the browser process has gone away."""
    msg = str(exc).lower()
    return any(
        phrase in msg
        for phrase in (
            "browser has been closed",
            "target page, context or browser has been closed",
            "connection closed",
            "browser closed",
            "browser has disconnected",
        )
    )


@dataclass
class BrowserPoolState:
    is_active: bool
    context_count: int
    last_used: float | None
    idle_time: float
    launch_count: int
    closing: bool


class BrowserPool:
    """Owns one shared Chromium process with health checks and idle teardown.

    - acquire() returns the live browser, launching it under a lock so
      concurrent callers never trigger more than one launch.
    - Every acquisition pushes the idle teardown back by idle_timeout.
    - cleanup() is idempotent and serialized with acquisition, so an
      acquire() that arrives mid-teardown waits and then relaunches.
    - shutdown() closes the pool for good; later acquisitions fail fast.
    """

    _exit_handlers_registered = False
    _live_pools: "weakref.WeakSet[BrowserPool]" = weakref.WeakSet()

    def __init__(
        self,
        headless: bool | None = None,
        idle_timeout: float | None = None,
        max_contexts: int | None = None,
        launch_timeout: float | None = None,
        launcher: Launcher | None = None,
        register_exit_handlers: bool = True,
    ):
        self.headless = settings.BROWSER_HEADLESS if headless is None else headless
        self.idle_timeout = (
            settings.BROWSER_IDLE_TIMEOUT if idle_timeout is None else idle_timeout
        )
        self.max_contexts = max_contexts or settings.BROWSER_MAX_CONTEXTS
        self.launch_timeout = launch_timeout or settings.BROWSER_LAUNCH_TIMEOUT
        self._launcher = launcher or launch_chromium
        self._register_handlers = register_exit_handlers

        self._playwright = None
        self._browser: Browser | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock: asyncio.Lock | None = None
        self._slots: asyncio.Semaphore | None = None
        self._idle_task: asyncio.Task | None = None
        self._closing = False
        self._closed = False
        self._context_count = 0
        self._last_used: float | None = None
        self.launch_count = 0

        BrowserPool._live_pools.add(self)

    # ------------------------------------------------------------------
    # Loop-bound primitives
    # ------------------------------------------------------------------

    def _bind_loop(self) -> None:
        current_loop = asyncio.get_running_loop()
        if self._loop is not current_loop:
            if self._browser is not None:
                logger.debug("Event loop changed, dropping browser handle from old loop")
                self._force_kill()
                self._browser = None
                self._playwright = None
            self._loop = current_loop
            self._lock = asyncio.Lock()
            self._slots = asyncio.Semaphore(self.max_contexts)
            self._idle_task = None

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def _is_healthy(self) -> bool:
        return (
            self._browser is not None
            and self._browser.is_connected()
            and self._context_count <= self.max_contexts
        )

    async def acquire(self) -> Browser:
        """Return the shared browser, launching it if absent or unhealthy."""
        if self._closed:
            raise BrowserPoolClosingError("Browser pool is shut down")
        self._bind_loop()

        if not self._closing and self._is_healthy():
            self._touch()
            return self._browser

        async with self._lock:
            # Double-check after acquiring lock
            if self._closed:
                raise BrowserPoolClosingError("Browser pool is shut down")
            if self._is_healthy():
                self._touch()
                return self._browser

            if self._browser is not None:
                logger.warning(
                    "Browser unhealthy (connected="
                    f"{self._browser.is_connected()}, contexts={self._context_count}), relaunching"
                )
                await self._teardown()

            await self._launch()
            self._ensure_exit_handlers()
            self._touch()
            return self._browser

    async def _launch(self) -> None:
        self.launch_count += 1
        browser_launches_total.inc()
        started = time.monotonic()
        try:
            self._playwright, self._browser = await asyncio.wait_for(
                self._launcher(self.headless, list(CHROMIUM_ARGS), self.launch_timeout),
                timeout=self.launch_timeout,
            )
        except asyncio.TimeoutError as e:
            browser_launch_failures_total.inc()
            raise BrowserLaunchError(
                f"Failed to launch browser: timed out after {self.launch_timeout}s"
            ) from e
        except Exception as e:
            browser_launch_failures_total.inc()
            raise BrowserLaunchError(f"Failed to launch browser: {e}") from e
        logger.info(
            f"Browser launched in {time.monotonic() - started:.2f}s "
            f"(launch #{self.launch_count}, headless={self.headless})"
        )

    def _touch(self) -> None:
        """Record use and push the idle teardown back (never stacks timers)."""
        self._last_used = time.monotonic()
        if self._idle_task is not None and not self._idle_task.done():
            self._idle_task.cancel()
        self._idle_task = asyncio.get_running_loop().create_task(self._idle_watch())

    async def _idle_watch(self) -> None:
        while True:
            await asyncio.sleep(self.idle_timeout)
            if self._context_count > 0:
                # Pages still open: measure idleness from their release
                continue
            idle_for = time.monotonic() - (self._last_used or 0)
            if idle_for + 0.001 < self.idle_timeout:
                continue
            logger.info(f"Browser idle for {idle_for:.1f}s, tearing down")
            await self.cleanup()
            return

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def new_page(
        self,
        stealth: StealthLayer | None = None,
        stealth_config: StealthConfig | None = None,
        fingerprint: Fingerprint | None = None,
        block_resources: list[str] | tuple = (),
        slot_timeout: float = 30.0,
    ):
        """Fresh context + page on the shared browser, closed on exit.

        Args:
            stealth: StealthLayer whose evasions are added before navigation.
            stealth_config: Per-request override of the layer's config.
            fingerprint: Session fingerprint driving context options.
            block_resources: Resource types to abort (image, font, ...).
            slot_timeout: Seconds to wait for a free context slot.
        """
        browser = await self.acquire()
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=slot_timeout)
        except asyncio.TimeoutError:
            raise BrowserPoolExhaustedError(
                f"No browser context slot available after {slot_timeout}s"
            )

        context: BrowserContext | None = None
        page: Page | None = None
        self._context_count += 1
        active_browser_contexts.inc()
        try:
            fp = fingerprint or (stealth.fingerprint if stealth else Fingerprint.from_seed())
            try:
                context = await browser.new_context(**fp.context_options())
            except Exception as e:
                if is_browser_closed_error(e):
                    raise BrowserInfrastructureError(
                        f"Browser closed while creating context: {e}"
                    ) from e
                raise

            await setup_route_blocking(context, block_resources)
            if stealth is not None:
                await stealth.apply(context, stealth_config, fp)

            page = await context.new_page()
            yield page
        finally:
            try:
                await asyncio.shield(self._safe_close(page, context))
            except (asyncio.CancelledError, Exception):
                # shield re-raises CancelledError for the outer task while
                # the close itself keeps running
                pass
            self._context_count -= 1
            active_browser_contexts.dec()
            self._slots.release()
            if not self._closing and not self._closed and self._browser is not None:
                self._touch()

    async def _safe_close(self, page: Page | None, context: BrowserContext | None) -> None:
        if page is not None:
            try:
                await page.close()
            except Exception as e:
                logger.debug(f"Page close failed: {e}")
        if context is not None:
            try:
                await context.close()
            except Exception as e:
                logger.debug(f"Context close failed: {e}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def cleanup(self) -> None:
        """Close the browser and Playwright. Safe to call repeatedly/concurrently."""
        try:
            self._bind_loop()
        except RuntimeError:
            self._force_kill()
            return
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        """Close handles. Caller must hold the lock."""
        if self._idle_task is not None and self._idle_task is not asyncio.current_task():
            self._idle_task.cancel()
        self._idle_task = None

        if self._browser is None and self._playwright is None:
            return

        self._closing = True
        try:
            browser, playwright = self._browser, self._playwright
            self._browser = None
            self._playwright = None
            if browser is not None:
                try:
                    await browser.close()
                except Exception as e:
                    logger.debug(f"Browser close failed: {e}")
            if playwright is not None:
                try:
                    await playwright.stop()
                except Exception as e:
                    logger.debug(f"Playwright stop failed: {e}")
            logger.info("Browser pool cleaned up")
        finally:
            self._closing = False

    async def shutdown(self) -> None:
        """Close for good; subsequent acquire() calls fail fast."""
        self._closed = True
        await self.cleanup()

    def _force_kill(self) -> None:
        """Synchronously kill the browser process (no event loop available)."""
        browser = self._browser
        try:
            if browser is not None and hasattr(browser, "_impl_obj"):
                proc = getattr(browser._impl_obj, "_browser_process", None)
                if proc and proc.pid:
                    os.kill(proc.pid, signal.SIGKILL)
        except (OSError, AttributeError) as e:
            logger.debug(f"Force kill failed: {e}")
        self._browser = None
        self._playwright = None

    # ------------------------------------------------------------------
    # Process-level safety
    # ------------------------------------------------------------------

    def _ensure_exit_handlers(self) -> None:
        if not self._register_handlers or BrowserPool._exit_handlers_registered:
            return
        BrowserPool._exit_handlers_registered = True
        atexit.register(BrowserPool._cleanup_all_at_exit)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, BrowserPool._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not the main thread, or a platform without loop signal support
                logger.debug(f"Could not install handler for {sig.name}")
        logger.debug("Browser pool exit handlers registered")

    @classmethod
    def _on_signal(cls, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, closing browser pools")
        loop = asyncio.get_running_loop()
        loop.create_task(cls._shutdown_all_and_reraise(sig))

    @classmethod
    async def _shutdown_all_and_reraise(cls, sig: signal.Signals) -> None:
        pools = list(cls._live_pools)
        await asyncio.gather(*(p.shutdown() for p in pools), return_exceptions=True)
        loop = asyncio.get_running_loop()
        loop.remove_signal_handler(sig)
        signal.raise_signal(sig)

    @classmethod
    def _cleanup_all_at_exit(cls) -> None:
        for pool in list(cls._live_pools):
            pool._closed = True
            if pool._browser is not None:
                pool._force_kill()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> BrowserPoolState:
        now = time.monotonic()
        return BrowserPoolState(
            is_active=self._browser is not None and self._browser.is_connected(),
            context_count=self._context_count,
            last_used=self._last_used,
            idle_time=(now - self._last_used) if self._last_used is not None else 0.0,
            launch_count=self.launch_count,
            closing=self._closing or self._closed,
        )
