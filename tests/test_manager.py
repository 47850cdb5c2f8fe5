"""Tests for strategy selection, fallback, and bulk scraping."""
import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from sitescout.core.exceptions import InvalidRequestError, ScrapeFatalError
from sitescout.schemas.detection import WebsiteAnalysis
from sitescout.schemas.scrape import ScrapeRequest, ScrapingResult
from sitescout.services.manager import StrategyManager, rank_strategies
from sitescout.services.strategies import StaticStrategy
from sitescout.services.streaming import ProgressStreamer


class FakeStrategy:
    """Strategy with a fixed confidence and a scripted outcome per call."""

    def __init__(self, name, confidence=0.5, fail_with=None, on_execute=None):
        self.name = name
        self.requires_browser = name != "static"
        self.confidence = confidence
        self.fail_with = fail_with  # error_code to fail with, or None to succeed
        self.on_execute = on_execute
        self.calls = []

    async def detect_confidence(self, url, page=None):
        return self.confidence

    async def execute(self, url, request):
        self.calls.append(url)
        if self.on_execute is not None:
            self.on_execute(url)
        await asyncio.sleep(0)
        if self.fail_with:
            return ScrapingResult(
                url=url, strategy=self.name, error=f"{self.fail_with} on {url}", error_code=self.fail_with
            )
        return ScrapingResult(
            url=url,
            strategy=self.name,
            content={"title": url},
            metrics={"request_count": 1, "content_size": 100},
        )


def trio(static=0.5, dynamic=0.5, spa=0.5):
    return [
        FakeStrategy("static", static),
        FakeStrategy("dynamic", dynamic),
        FakeStrategy("spa", spa),
    ]


def make_request(urls=None, **overrides):
    overrides.setdefault("request_delay", 0)
    return ScrapeRequest(urls=urls or ["https://a.test/"], **overrides)


class TestSelection:
    @pytest.mark.asyncio
    async def test_highest_confidence_wins(self):
        manager = StrategyManager(trio(static=0.4, dynamic=0.4, spa=0.9))
        result = await manager.scrape_one("https://a.test/", make_request())
        assert result.strategy == "spa"

    @pytest.mark.asyncio
    async def test_ties_prefer_cheapest(self):
        manager = StrategyManager(trio())
        result = await manager.scrape_one("https://a.test/", make_request())
        assert result.strategy == "static"

    def test_rank_strategies_tie_break(self):
        assert rank_strategies({"spa": 0.5, "dynamic": 0.5, "static": 0.5}) == ["static", "dynamic", "spa"]
        assert rank_strategies({"spa": 0.9, "static": 0.3, "dynamic": 0.3}) == ["spa", "static", "dynamic"]

    @pytest.mark.asyncio
    async def test_analysis_boosts_recommended_strategy(self):
        manager = StrategyManager(trio(static=0.6, dynamic=0.5, spa=0.4))
        analysis = WebsiteAnalysis(url="https://a.test/", recommended_strategy="spa")
        scores = await manager.score("https://a.test/", make_request(), analysis)
        assert scores["spa"] == pytest.approx(0.7)
        assert await manager.plan("https://a.test/", make_request(), analysis) == ["spa", "static", "dynamic"]

    @pytest.mark.asyncio
    async def test_boost_capped_at_one(self):
        manager = StrategyManager(trio(spa=0.9))
        analysis = WebsiteAnalysis(url="https://a.test/", recommended_strategy="spa")
        scores = await manager.score("https://a.test/", make_request(), analysis)
        assert scores["spa"] == 1.0

    @pytest.mark.asyncio
    async def test_forced_strategy_first_then_cost_order(self):
        manager = StrategyManager(trio(static=0.9))
        order = await manager.plan("https://a.test/", make_request(strategy="spa"))
        assert order == ["spa", "static", "dynamic"]

    @pytest.mark.asyncio
    async def test_forced_unregistered_strategy(self):
        manager = StrategyManager([FakeStrategy("static")])
        with pytest.raises(InvalidRequestError):
            await manager.plan("https://a.test/", make_request(strategy="spa"))

    def test_default_strategies_need_a_pool(self):
        with pytest.raises(ValueError):
            StrategyManager()


class TestFallback:
    @pytest.mark.asyncio
    async def test_falls_back_once_to_next_best(self):
        static = FakeStrategy("static", 0.6, fail_with="HTTP_ERROR")
        dynamic = FakeStrategy("dynamic", 0.5)
        spa = FakeStrategy("spa", 0.2)
        manager = StrategyManager([static, dynamic, spa])

        result = await manager.scrape_one("https://a.test/", make_request())
        assert result.success
        assert result.strategy == "dynamic"
        assert spa.calls == []

    @pytest.mark.asyncio
    async def test_fallback_failure_is_reported(self):
        manager = StrategyManager([
            FakeStrategy("static", 0.6, fail_with="HTTP_ERROR"),
            FakeStrategy("dynamic", 0.5, fail_with="TIMEOUT"),
            FakeStrategy("spa", 0.2),
        ])
        result = await manager.scrape_one("https://a.test/", make_request())
        assert not result.success
        assert result.strategy == "dynamic"
        assert result.error_code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_fallback_disabled(self):
        static = FakeStrategy("static", 0.6, fail_with="HTTP_ERROR")
        dynamic = FakeStrategy("dynamic", 0.5)
        manager = StrategyManager([static, dynamic])
        result = await manager.scrape_one("https://a.test/", make_request(enable_fallback=False))
        assert result.strategy == "static"
        assert dynamic.calls == []


class TestInfrastructureFailures:
    @pytest.mark.asyncio
    async def test_first_failure_cleans_pool_and_retries(self):
        pool = MagicMock()
        pool.cleanup = AsyncMock()
        outcomes = ["BROWSER_ERROR", None]
        dynamic = FakeStrategy("dynamic", 0.9)

        async def flaky_execute(url, request):
            code = outcomes.pop(0)
            dynamic.fail_with = code
            return await FakeStrategy.execute(dynamic, url, request)

        dynamic.execute = flaky_execute
        manager = StrategyManager([FakeStrategy("static", 0.1), dynamic], pool=pool)

        result = await manager.scrape_one("https://a.test/", make_request())
        assert result.success
        assert result.strategy == "dynamic"
        pool.cleanup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_failure_is_fatal(self):
        pool = MagicMock()
        pool.cleanup = AsyncMock()
        manager = StrategyManager(
            [FakeStrategy("static", 0.1), FakeStrategy("dynamic", 0.9, fail_with="BROWSER_ERROR")],
            pool=pool,
        )
        urls = [f"https://a.test/{i}" for i in range(3)]

        with pytest.raises(ScrapeFatalError) as exc_info:
            await manager.scrape_bulk(urls, make_request(urls))
        assert exc_info.value.code == "BROWSER_ERROR"
        assert exc_info.value.partial is not None
        assert exc_info.value.partial.results == []

    @pytest.mark.asyncio
    async def test_fatal_page_is_closed_out_in_progress(self):
        pool = MagicMock()
        pool.cleanup = AsyncMock()
        manager = StrategyManager([FakeStrategy("dynamic", 0.9, fail_with="BROWSER_ERROR")], pool=pool)
        urls = ["https://a.test/1", "https://a.test/2"]
        events = []
        streamer = ProgressStreamer(events.append)
        streamer.discovery_complete(urls)

        with pytest.raises(ScrapeFatalError):
            await manager.scrape_bulk(urls, make_request(urls), streamer=streamer)
        await streamer.close()

        started = [e.metadata["url"] for e in events if e.event_type == "scrape_started"]
        failed = [e for e in events if e.event_type == "page_failed"]
        assert started == ["https://a.test/1"]
        assert [e.metadata["url"] for e in failed] == ["https://a.test/1"]
        assert failed[0].metadata["error_code"] == "BROWSER_ERROR"

    @pytest.mark.asyncio
    async def test_closed_pool_is_immediately_fatal(self):
        manager = StrategyManager([FakeStrategy("dynamic", 0.9, fail_with="BROWSER_POOL_CLOSED")])
        with pytest.raises(ScrapeFatalError) as exc_info:
            await manager.scrape_one("https://a.test/", make_request())
        assert exc_info.value.code == "BROWSER_POOL_CLOSED"


class TestBulk:
    @pytest.mark.asyncio
    async def test_results_keep_input_order(self):
        urls = [f"https://a.test/{i}" for i in range(6)]
        manager = StrategyManager(trio())
        bulk = await manager.scrape_bulk(urls, make_request(urls, concurrency=3))

        assert [r.url for r in bulk.results] == urls
        assert bulk.metrics.pages_scraped == 6
        assert bulk.metrics.network_requests == 6
        assert bulk.metrics.success_rate == 1.0
        assert bulk.cancelled is False

    @pytest.mark.asyncio
    async def test_page_failures_do_not_stop_the_run(self):
        urls = [f"https://a.test/{i}" for i in range(4)]
        manager = StrategyManager([FakeStrategy("static", 0.5, fail_with="HTTP_ERROR")])
        bulk = await manager.scrape_bulk(urls, make_request(urls))
        assert len(bulk.results) == 4
        assert bulk.metrics.pages_failed == 4
        assert bulk.metrics.success_rate == 0

    @pytest.mark.asyncio
    async def test_cancellation_stops_before_next_page(self):
        urls = [f"https://a.test/{i}" for i in range(10)]
        cancel = asyncio.Event()
        static = FakeStrategy("static", 0.9)
        static.on_execute = lambda url: len(static.calls) == 2 and cancel.set()
        manager = StrategyManager([static])

        bulk = await manager.scrape_bulk(urls, make_request(urls), cancel_event=cancel)
        assert len(bulk.results) == 2
        assert [r.url for r in bulk.results] == urls[:2]
        assert bulk.cancelled is True

    @pytest.mark.asyncio
    async def test_cancel_interrupts_page_in_flight(self):
        urls = ["https://a.test/slow", "https://a.test/next"]
        cancel = asyncio.Event()
        interrupted = []

        class HangingStrategy(FakeStrategy):
            async def execute(self, url, request):
                self.calls.append(url)
                cancel.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    interrupted.append(url)
                    raise

        strategy = HangingStrategy("static", 0.9)
        events = []
        streamer = ProgressStreamer(events.append)
        streamer.discovery_complete(urls)

        bulk = await asyncio.wait_for(
            StrategyManager([strategy]).scrape_bulk(
                urls, make_request(urls), streamer=streamer, cancel_event=cancel
            ),
            timeout=2,
        )
        await streamer.close()

        assert interrupted == ["https://a.test/slow"]
        assert strategy.calls == ["https://a.test/slow"]
        assert bulk.results == []
        assert bulk.cancelled is True
        failed = [e for e in events if e.event_type == "page_failed"]
        assert [e.metadata["error_code"] for e in failed] == ["CANCELLED"]

    @pytest.mark.asyncio
    async def test_malformed_page_does_not_sink_the_run(self):
        pages = {
            "/a": "<html><body><p>Fine</p></body></html>",
            "/b": '<html><body><a href="http://[broken">x</a><div itemscope itemtype=" "></div></body></html>',
        }
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, html=pages[request.url.path]))
        )
        urls = ["https://a.test/a", "https://a.test/b"]
        manager = StrategyManager([StaticStrategy(client=client)])

        bulk = await manager.scrape_bulk(urls, make_request(urls))
        assert [r.url for r in bulk.results] == urls
        assert all(r.success for r in bulk.results)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cancel_after_last_page_is_not_cancelled(self):
        urls = ["https://a.test/1"]
        cancel = asyncio.Event()
        static = FakeStrategy("static", 0.9, on_execute=lambda url: cancel.set())
        bulk = await StrategyManager([static]).scrape_bulk(urls, make_request(urls), cancel_event=cancel)
        assert len(bulk.results) == 1
        assert bulk.cancelled is False

    @pytest.mark.asyncio
    async def test_politeness_delay_between_pages(self):
        urls = [f"https://a.test/{i}" for i in range(3)]
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        manager = StrategyManager(trio(), sleep=fake_sleep)
        await manager.scrape_bulk(urls, make_request(urls, request_delay=250))
        # No delay before the first page
        assert delays == [0.25, 0.25]

    @pytest.mark.asyncio
    async def test_progress_events_per_page(self):
        urls = [f"https://a.test/{i}" for i in range(3)]
        events = []
        streamer = ProgressStreamer(events.append)
        streamer.discovery_complete(urls)

        await StrategyManager(trio()).scrape_bulk(urls, make_request(urls), streamer=streamer)
        await streamer.close()

        types = [e.event_type for e in events]
        assert types.count("scrape_started") == 3
        assert types.count("page_complete") == 3
        assert events[-1].percentage == 100
