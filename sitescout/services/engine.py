"""Top-level scrape entry point.

Runs one request through discovery, site analysis, strategy execution and
aggregation, emitting progress events along the way. Page-level failures end
up on the results; only request-level failures raise, always as
ScrapeFatalError and always after the terminal `error` event was queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid

import httpx
import sentry_sdk

from sitescout.config import settings
from sitescout.core.exceptions import (
    NoUrlsDiscoveredError,
    ScrapeFatalError,
    SiteScoutError,
)
from sitescout.core.logging_config import reset_scrape_id, set_scrape_id
from sitescout.core.metrics import scrape_requests_total
from sitescout.schemas.detection import WebsiteAnalysis
from sitescout.schemas.progress import ScrapingPhase
from sitescout.schemas.scrape import ScrapeRequest, ScrapeResponse, ScrapingMetrics
from sitescout.services.browser import BrowserPool
from sitescout.services.detector import WebsiteDetector
from sitescout.services.discovery import UrlDiscovery
from sitescout.services.manager import StrategyManager
from sitescout.services.stealth import StealthLayer
from sitescout.services.streaming import ProgressStreamer, Sink

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


async def analyze_site(
    url: str,
    detector: WebsiteDetector | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = 15.0,
) -> WebsiteAnalysis:
    """Fetch url over plain HTTP and run the framework detector on it."""
    detector = detector or WebsiteDetector()
    headers = {"User-Agent": settings.DEFAULT_USER_AGENT}
    if client is not None:
        response = await client.get(url, headers=headers, timeout=timeout)
    else:
        async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as own:
            response = await own.get(url, headers=headers)
    return detector.analyze(str(response.url), response.text, dict(response.headers))


def _unique(urls: list[str]) -> list[str]:
    return list(dict.fromkeys(urls))


async def scrape(
    request: ScrapeRequest,
    sink: Sink | None = None,
    *,
    pool: BrowserPool | None = None,
    cancel_event: asyncio.Event | None = None,
    manager: StrategyManager | None = None,
    discovery: UrlDiscovery | None = None,
    detector: WebsiteDetector | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ScrapeResponse:
    """Scrape a domain (or an explicit URL list) end to end.

    Args:
        request: What to scrape and how.
        sink: Receives ProgressEvents; a callable or an object with async send().
        pool: Shared BrowserPool. When omitted a private pool is created and
            shut down before returning.
        cancel_event: Set it to stop before the next page; partial results
            are returned and a `cancelled` event ends the stream.
        manager, discovery, detector, http_client: Collaborator overrides.

    Raises:
        ScrapeFatalError: Nothing could be attempted (no URLs) or the browser
            infrastructure failed twice. `partial` holds any results.
    """
    scrape_id = uuid.uuid4().hex[:12]
    token = set_scrape_id(scrape_id)
    started_at = _now_ms()
    streamer = ProgressStreamer(sink)

    owns_pool = pool is None and manager is None
    if owns_pool:
        pool = BrowserPool()
    owns_manager = manager is None
    if manager is None:
        manager = StrategyManager(pool=pool, stealth=StealthLayer(request.stealth))
    owns_discovery = discovery is None
    if discovery is None:
        discovery = UrlDiscovery(client=http_client)

    target = request.domain or request.urls[0]
    logger.info(f"Scrape {scrape_id} started for {target} (strategy={request.strategy})")

    try:
        # Discovery
        streamer.discovery_started(target)
        if request.urls:
            urls = _unique(request.urls)
            for i, url in enumerate(urls, start=1):
                streamer.url_discovered(url, i)
        else:
            urls = await discovery.discover(request.domain, request.max_pages, streamer)
        if not urls:
            raise NoUrlsDiscoveredError(f"No URLs discovered for {target}")
        streamer.discovery_complete(urls)

        # Initialization: one site analysis for the entry URL
        analysis = None
        if request.strategy == "auto":
            streamer.phase_change(ScrapingPhase.INITIALIZATION, f"Analyzing {urls[0]}")
            try:
                analysis = await analyze_site(urls[0], detector, http_client)
            except httpx.HTTPError as e:
                logger.warning(f"Site analysis for {urls[0]} failed, scoring by URL only: {e}")
        else:
            streamer.phase_change(
                ScrapingPhase.INITIALIZATION, f"Using {request.strategy} strategy"
            )

        # Scraping
        streamer.phase_change(ScrapingPhase.SCRAPING, f"Scraping {len(urls)} page(s)")
        bulk = await manager.scrape_bulk(
            urls, request, streamer=streamer, cancel_event=cancel_event, analysis=analysis
        )

        # Processing
        streamer.phase_change(ScrapingPhase.PROCESSING, "Aggregating results")
        metrics = bulk.metrics
        if bulk.cancelled:
            streamer.cancelled(metrics)
            scrape_requests_total.labels(status="cancelled").inc()
        else:
            streamer.complete(metrics)
            scrape_requests_total.labels(status="success").inc()
        logger.info(
            f"Scrape {scrape_id} finished: {metrics.pages_scraped} scraped, "
            f"{metrics.pages_failed} failed in {metrics.duration / 1000:.1f}s"
        )
        return ScrapeResponse(
            success=metrics.pages_scraped > 0,
            results=bulk.results,
            metrics=metrics,
            discovered_urls=urls,
            analysis=analysis.model_dump() if analysis else None,
            cancelled=bulk.cancelled,
        )

    except ScrapeFatalError as e:
        partial_metrics = e.partial.metrics if e.partial is not None else None
        streamer.error(str(e), e.code, partial_metrics)
        scrape_requests_total.labels(status="error").inc()
        logger.exception(f"Scrape {scrape_id} failed: {e}")
        sentry_sdk.capture_exception(e)
        raise
    except SiteScoutError as e:
        streamer.error(str(e), e.code)
        scrape_requests_total.labels(status="error").inc()
        logger.error(f"Scrape {scrape_id} rejected: {e}")
        raise ScrapeFatalError(str(e), cause=e) from e
    except asyncio.CancelledError:
        streamer.cancelled(ScrapingMetrics(started_at=started_at, completed_at=_now_ms()))
        scrape_requests_total.labels(status="cancelled").inc()
        logger.info(f"Scrape {scrape_id} task cancelled")
        raise
    except Exception as e:
        streamer.error(f"Unexpected error: {e}", "INTERNAL_ERROR")
        scrape_requests_total.labels(status="error").inc()
        logger.exception(f"Scrape {scrape_id} crashed: {e}")
        sentry_sdk.capture_exception(e)
        raise ScrapeFatalError(str(e), cause=e) from e
    finally:
        await streamer.close()
        if owns_manager:
            await manager.aclose()
        if owns_discovery:
            await discovery.aclose()
        if owns_pool:
            await pool.shutdown()
        reset_scrape_id(token)
