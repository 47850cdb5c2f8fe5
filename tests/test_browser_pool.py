"""Tests for the shared browser pool lifecycle.

Uses an in-memory launcher returning fake Playwright/Browser objects so no
Chromium is started.
"""
import asyncio

import pytest

from sitescout.core.exceptions import (
    BrowserInfrastructureError,
    BrowserLaunchError,
    BrowserPoolClosingError,
)
from sitescout.services.browser import BrowserPool, is_browser_closed_error


class FakePage:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self):
        self.closed = False
        self.routes = []
        self.init_scripts = []
        self.pages = []

    async def route(self, pattern, handler):
        self.routes.append(pattern)

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        page = FakePage()
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, fail_new_context=None):
        self.connected = True
        self.closed = False
        self.contexts = []
        self.fail_new_context = fail_new_context

    def is_connected(self):
        return self.connected

    async def new_context(self, **kwargs):
        if self.fail_new_context is not None:
            raise self.fail_new_context
        context = FakeContext()
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True
        self.connected = False


class FakePlaywright:
    def __init__(self):
        self.stopped = False

    async def stop(self):
        self.stopped = True


class FakeLauncher:
    """Records launches; each launch yields a fresh FakeBrowser."""

    def __init__(self, delay=0.01, error=None):
        self.delay = delay
        self.error = error
        self.browsers = []

    async def __call__(self, headless, args, timeout):
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        browser = FakeBrowser()
        self.browsers.append(browser)
        return FakePlaywright(), browser


def make_pool(launcher=None, **kwargs):
    kwargs.setdefault("idle_timeout", 60.0)
    return BrowserPool(
        headless=True,
        launcher=launcher or FakeLauncher(),
        register_exit_handlers=False,
        **kwargs,
    )


class TestAcquire:
    @pytest.mark.asyncio
    async def test_concurrent_acquires_launch_once(self):
        launcher = FakeLauncher(delay=0.05)
        pool = make_pool(launcher)
        browsers = await asyncio.gather(*(pool.acquire() for _ in range(10)))

        assert pool.launch_count == 1
        assert len(launcher.browsers) == 1
        assert all(b is launcher.browsers[0] for b in browsers)
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_disconnected_browser_is_relaunched(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher)
        first = await pool.acquire()
        first.connected = False

        second = await pool.acquire()
        assert second is not first
        assert pool.launch_count == 2
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_launch_failure_raises_launch_error(self):
        pool = make_pool(FakeLauncher(error=RuntimeError("chromium missing")))
        with pytest.raises(BrowserLaunchError) as exc_info:
            await pool.acquire()
        assert exc_info.value.code == "BROWSER_LAUNCH_FAILED"

    @pytest.mark.asyncio
    async def test_launch_timeout(self):
        pool = make_pool(FakeLauncher(delay=1.0), launch_timeout=0.05)
        with pytest.raises(BrowserLaunchError):
            await pool.acquire()


class TestTeardown:
    @pytest.mark.asyncio
    async def test_idle_teardown(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher, idle_timeout=0.05)
        await pool.acquire()
        assert pool.stats().is_active

        await asyncio.sleep(0.3)
        assert pool.stats().is_active is False
        assert launcher.browsers[0].closed is True
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_acquire_pushes_idle_deadline_back(self):
        pool = make_pool(idle_timeout=0.2)
        for _ in range(4):
            await pool.acquire()
            await asyncio.sleep(0.1)
        assert pool.stats().is_active
        assert pool.launch_count == 1
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self):
        pool = make_pool()
        await pool.acquire()
        await asyncio.gather(pool.cleanup(), pool.cleanup())
        await pool.cleanup()
        assert pool.stats().is_active is False

        # A cleaned pool relaunches on the next acquire
        await pool.acquire()
        assert pool.launch_count == 2
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_rejects_new_acquires(self):
        pool = make_pool()
        await pool.acquire()
        await pool.shutdown()
        with pytest.raises(BrowserPoolClosingError):
            await pool.acquire()
        assert pool.stats().closing is True


class TestNewPage:
    @pytest.mark.asyncio
    async def test_page_and_context_closed_after_use(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher)
        async with pool.new_page(block_resources=["image"]) as page:
            assert pool.stats().context_count == 1
        context = launcher.browsers[0].contexts[0]

        assert page.closed and context.closed
        assert context.routes == ["**/*"]
        assert pool.stats().context_count == 0
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_closed_on_error(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher)
        with pytest.raises(ValueError):
            async with pool.new_page():
                raise ValueError("extraction blew up")
        assert launcher.browsers[0].contexts[0].closed
        assert pool.stats().context_count == 0
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_closed_browser_becomes_infrastructure_error(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher)
        browser = await pool.acquire()
        browser.fail_new_context = RuntimeError("Target page, context or browser has been closed")

        with pytest.raises(BrowserInfrastructureError):
            async with pool.new_page():
                pass
        assert pool.stats().context_count == 0
        await pool.shutdown()


def test_is_browser_closed_error():
    assert is_browser_closed_error(Exception("Browser has been closed"))
    assert not is_browser_closed_error(Exception("Timeout 30000ms exceeded"))
