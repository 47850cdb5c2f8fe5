"""End-to-end tests for the scrape() entry point with fake collaborators."""
import asyncio

import httpx
import pytest

from sitescout.core.exceptions import ScrapeFatalError
from sitescout.schemas.scrape import ScrapeRequest, ScrapingResult
from sitescout.services.engine import analyze_site, scrape
from sitescout.services.manager import StrategyManager

NEXTJS_HTML = """
<html><body>
  <div id="__next"><main>App</main></div>
  <script id="__NEXT_DATA__" type="application/json">{}</script>
</body></html>
"""


class FakeStrategy:
    def __init__(self, name, confidence=0.5, fail_with=None):
        self.name = name
        self.requires_browser = name != "static"
        self.confidence = confidence
        self.fail_with = fail_with

    async def detect_confidence(self, url, page=None):
        return self.confidence

    async def execute(self, url, request):
        if self.fail_with:
            return ScrapingResult(url=url, strategy=self.name, error="boom", error_code=self.fail_with)
        return ScrapingResult(url=url, strategy=self.name, content={"title": "t"})


class FakeDiscovery:
    def __init__(self, urls):
        self.urls = urls
        self.calls = []

    async def discover(self, domain, max_pages=None, streamer=None):
        self.calls.append((domain, max_pages))
        for i, url in enumerate(self.urls, start=1):
            if streamer is not None:
                streamer.url_discovered(url, i)
        return list(self.urls)


def manager(**confidences):
    return StrategyManager([
        FakeStrategy("static", confidences.get("static", 0.5)),
        FakeStrategy("dynamic", confidences.get("dynamic", 0.5)),
        FakeStrategy("spa", confidences.get("spa", 0.5)),
    ])


def serving(html):
    return httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, html=html))
    )


class TestScrape:
    @pytest.mark.asyncio
    async def test_url_list_with_site_analysis(self):
        events = []
        client = serving(NEXTJS_HTML)
        request = ScrapeRequest(
            urls=["https://app.test/", "https://app.test/a", "https://app.test/"],
            request_delay=0,
        )

        response = await scrape(request, events.append, manager=manager(), http_client=client)

        assert response.success
        assert response.discovered_urls == ["https://app.test/", "https://app.test/a"]
        assert [r.strategy for r in response.results] == ["spa", "spa"]
        assert response.analysis["recommended_strategy"] == "spa"
        assert response.metrics.pages_scraped == 2

        phases = [e.phase for e in events]
        assert phases[0] == "discovery"
        assert phases[-1] == "complete"
        assert "initialization" in phases and "processing" in phases
        assert sum(1 for e in events if e.is_terminal) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_domain_uses_discovery(self):
        discovery = FakeDiscovery(["https://site.test", "https://site.test/about"])
        request = ScrapeRequest(domain="site.test", max_pages=5, strategy="static", request_delay=0)

        response = await scrape(request, manager=manager(), discovery=discovery)
        assert discovery.calls == [("https://site.test", 5)]
        assert len(response.results) == 2
        assert response.analysis is None

    @pytest.mark.asyncio
    async def test_no_urls_is_fatal_after_error_event(self):
        events = []
        request = ScrapeRequest(domain="empty.test", strategy="static")

        with pytest.raises(ScrapeFatalError) as exc_info:
            await scrape(request, events.append, manager=manager(), discovery=FakeDiscovery([]))

        assert exc_info.value.code == "NO_URLS"
        assert events[-1].phase == "error"
        assert events[-1].metadata["error_code"] == "NO_URLS"

    @pytest.mark.asyncio
    async def test_analysis_failure_falls_back_to_url_scores(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        request = ScrapeRequest(urls=["https://down.test/"], request_delay=0)
        response = await scrape(request, manager=manager(dynamic=0.7), http_client=client)

        assert response.analysis is None
        assert response.results[0].strategy == "dynamic"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        events = []
        cancel = asyncio.Event()
        cancel.set()
        request = ScrapeRequest(urls=["https://a.test/1", "https://a.test/2"], strategy="static")

        response = await scrape(request, events.append, manager=manager(), cancel_event=cancel)
        assert response.cancelled
        assert response.results == []
        assert response.success is False
        assert events[-1].phase == "cancelled"

    @pytest.mark.asyncio
    async def test_all_pages_failing_is_not_fatal(self):
        failing = StrategyManager([FakeStrategy("static", 0.9, fail_with="HTTP_ERROR")])
        request = ScrapeRequest(urls=["https://a.test/1"], strategy="static")

        response = await scrape(request, manager=failing)
        assert response.success is False
        assert response.metrics.pages_failed == 1

    @pytest.mark.asyncio
    async def test_repeated_infrastructure_failure_is_fatal(self):
        events = []
        broken = StrategyManager([FakeStrategy("dynamic", 0.9, fail_with="BROWSER_LAUNCH_FAILED")])
        request = ScrapeRequest(urls=["https://a.test/1", "https://a.test/2"], request_delay=0, strategy="dynamic")

        with pytest.raises(ScrapeFatalError) as exc_info:
            await scrape(request, events.append, manager=broken)
        assert exc_info.value.code == "BROWSER_LAUNCH_FAILED"
        assert events[-1].phase == "error"


class TestAnalyzeSite:
    @pytest.mark.asyncio
    async def test_runs_detector_on_fetched_page(self):
        client = serving(NEXTJS_HTML)
        analysis = await analyze_site("https://app.test/", client=client)
        assert analysis.top.framework == "nextjs"
        assert analysis.url == "https://app.test/"
        await client.aclose()
