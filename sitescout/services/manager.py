"""Strategy selection, execution with fallback, and bulk scraping."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable

from sitescout.config import settings
from sitescout.core.exceptions import (
    BrowserInfrastructureError,
    InvalidRequestError,
    ScrapeFatalError,
)
from sitescout.core.metrics import scrape_pages_total, strategy_fallbacks_total
from sitescout.schemas.detection import WebsiteAnalysis
from sitescout.schemas.scrape import BulkScrapingResult, ScrapeRequest, ScrapingMetrics, ScrapingResult
from sitescout.services.browser import BrowserPool
from sitescout.services.stealth import StealthLayer
from sitescout.services.strategies import (
    DynamicStrategy,
    SPAStrategy,
    STRATEGY_COST_ORDER,
    ScrapingStrategy,
    StaticStrategy,
)
from sitescout.services.strategies.base import is_infrastructure_failure
from sitescout.services.streaming import ProgressStreamer

logger = logging.getLogger(__name__)

# Added to the strategy the site analysis recommends
ANALYSIS_BOOST = 0.3

POOL_CLOSED_CODE = "BROWSER_POOL_CLOSED"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _cost_rank(name: str) -> int:
    try:
        return STRATEGY_COST_ORDER.index(name)
    except ValueError:
        return len(STRATEGY_COST_ORDER)


def _infra_cause(result: ScrapingResult) -> BrowserInfrastructureError:
    cause = BrowserInfrastructureError(result.error)
    cause.code = result.error_code
    return cause


def rank_strategies(scores: dict[str, float]) -> list[str]:
    """Names by confidence desc; equal confidences prefer the cheaper strategy."""
    return sorted(scores, key=lambda name: (-round(scores[name], 6), _cost_rank(name)))


class StrategyManager:
    """Picks a strategy per URL and runs it, falling back once on failure.

    A second browser-infrastructure failure within one manager run is fatal;
    the first one costs a pool cleanup and a relaunch on the next acquire.
    """

    def __init__(
        self,
        strategies: list[ScrapingStrategy] | None = None,
        *,
        pool: BrowserPool | None = None,
        stealth: StealthLayer | None = None,
        preview_with_browser: bool = False,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        if strategies is None:
            if pool is None:
                raise ValueError("A BrowserPool is required for the default strategies")
            strategies = [
                StaticStrategy(),
                DynamicStrategy(pool, stealth),
                SPAStrategy(pool, stealth),
            ]
        self.strategies: dict[str, ScrapingStrategy] = {s.name: s for s in strategies}
        self.pool = pool
        self.preview_with_browser = preview_with_browser and pool is not None
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._infra_failures = 0

    async def aclose(self) -> None:
        for strategy in self.strategies.values():
            closer = getattr(strategy, "aclose", None)
            if closer is not None:
                await closer()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def _preview_scores(self, url: str, request: ScrapeRequest) -> dict[str, float] | None:
        try:
            async with self.pool.new_page(block_resources=("image", "media", "font")) as page:
                await page.goto(url, wait_until="domcontentloaded", timeout=request.timeout)
                return {
                    name: await strategy.detect_confidence(url, page)
                    for name, strategy in self.strategies.items()
                }
        except Exception as e:
            logger.debug(f"Page preview for {url} failed, using URL heuristics: {e}")
            return None

    async def score(
        self,
        url: str,
        request: ScrapeRequest,
        analysis: WebsiteAnalysis | None = None,
    ) -> dict[str, float]:
        scores = None
        if self.preview_with_browser:
            scores = await self._preview_scores(url, request)
        if scores is None:
            scores = {
                name: await strategy.detect_confidence(url)
                for name, strategy in self.strategies.items()
            }
        if analysis is not None and analysis.recommended_strategy in scores:
            name = analysis.recommended_strategy
            scores[name] = min(scores[name] + ANALYSIS_BOOST, 1.0)
        return scores

    async def plan(
        self,
        url: str,
        request: ScrapeRequest,
        analysis: WebsiteAnalysis | None = None,
    ) -> list[str]:
        """Strategy names in the order they should be tried."""
        if request.strategy != "auto":
            if request.strategy not in self.strategies:
                raise InvalidRequestError(f"Strategy {request.strategy!r} is not registered")
            rest = sorted(
                (n for n in self.strategies if n != request.strategy), key=_cost_rank
            )
            return [request.strategy, *rest]
        scores = await self.score(url, request, analysis)
        ordered = rank_strategies(scores)
        logger.debug(
            f"Strategy scores for {url}: "
            + ", ".join(f"{n}={scores[n]:.2f}" for n in ordered)
        )
        return ordered

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, name: str, url: str, request: ScrapeRequest) -> ScrapingResult:
        result = await self.strategies[name].execute(url, request)
        if result.error_code == POOL_CLOSED_CODE:
            raise ScrapeFatalError(
                f"Browser pool closed while scraping {url}",
                cause=_infra_cause(result),
            )
        if not is_infrastructure_failure(result):
            return result

        self._infra_failures += 1
        if self._infra_failures > 1:
            raise ScrapeFatalError(
                f"Browser infrastructure failed again on {url}: {result.error}",
                cause=_infra_cause(result),
            )

        logger.warning(
            f"Browser infrastructure failure on {url} ({result.error_code}), "
            "cleaning up the pool and retrying once"
        )
        if self.pool is not None:
            await self.pool.cleanup()
        return await self._run(name, url, request)

    async def scrape_one(
        self,
        url: str,
        request: ScrapeRequest,
        analysis: WebsiteAnalysis | None = None,
    ) -> ScrapingResult:
        ordered = await self.plan(url, request, analysis)
        best = ordered[0]
        result = await self._run(best, url, request)

        if not result.success and request.enable_fallback and len(ordered) > 1:
            fallback = ordered[1]
            logger.info(
                f"{best} failed for {url} ({result.error_code or result.error}), "
                f"falling back to {fallback}"
            )
            strategy_fallbacks_total.labels(from_strategy=best, to_strategy=fallback).inc()
            result = await self._run(fallback, url, request)

        scrape_pages_total.labels(
            strategy=result.strategy, status="success" if result.success else "failed"
        ).inc()
        return result

    async def _scrape_until_cancelled(
        self,
        url: str,
        request: ScrapeRequest,
        analysis: WebsiteAnalysis | None,
        cancel_event: asyncio.Event | None,
    ) -> ScrapingResult | None:
        """scrape_one, abandoned with its page closed if cancel_event fires first."""
        if cancel_event is None:
            return await self.scrape_one(url, request, analysis)

        task = asyncio.ensure_future(self.scrape_one(url, request, analysis))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Cancelled in-flight page {url}")
        return None

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def _politeness_delay(self, request: ScrapeRequest) -> float:
        if request.random_delay is not None:
            low, high = request.random_delay
            return self._rng.uniform(low, high) / 1000
        return request.request_delay / 1000

    async def _pause(self, seconds: float, cancel_event: asyncio.Event | None) -> None:
        if seconds <= 0:
            return
        if cancel_event is None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def scrape_bulk(
        self,
        urls: list[str],
        request: ScrapeRequest,
        streamer: ProgressStreamer | None = None,
        cancel_event: asyncio.Event | None = None,
        analysis: WebsiteAnalysis | None = None,
    ) -> BulkScrapingResult:
        """Scrape every URL with bounded concurrency.

        Results keep the input order. Cancellation stops new pages and
        interrupts running ones, whose browser pages are closed and which
        leave no result. A fatal error stops new pages and is re-raised with
        the partial result attached.
        """
        started_at = _now_ms()
        self._infra_failures = 0
        concurrency = max(1, min(request.concurrency, settings.MAX_CONCURRENCY))
        sem = asyncio.Semaphore(concurrency)
        slots: list[ScrapingResult | None] = [None] * len(urls)
        abort = asyncio.Event()
        fatal: list[ScrapeFatalError] = []
        launched = 0

        def _stopped() -> bool:
            return abort.is_set() or (cancel_event is not None and cancel_event.is_set())

        async def _process(index: int, url: str) -> None:
            nonlocal launched
            async with sem:
                if _stopped():
                    return
                if launched >= concurrency:
                    await self._pause(self._politeness_delay(request), cancel_event)
                    if _stopped():
                        return
                launched += 1
                if streamer is not None:
                    streamer.page_started(url)
                try:
                    result = await self._scrape_until_cancelled(url, request, analysis, cancel_event)
                except ScrapeFatalError as e:
                    if streamer is not None:
                        streamer.page_aborted(url, str(e), e.code)
                    fatal.append(e)
                    abort.set()
                    return
                if result is None:
                    if streamer is not None:
                        streamer.page_aborted(url, "cancelled", "CANCELLED")
                    return
                slots[index] = result
                if streamer is not None:
                    streamer.page_finished(result)
                if not result.success:
                    logger.warning(f"Page failed: {url} ({result.error_code}): {result.error}")

        await asyncio.gather(*(_process(i, u) for i, u in enumerate(urls)))

        results = [r for r in slots if r is not None]
        bulk = BulkScrapingResult(
            results=results,
            metrics=ScrapingMetrics.from_results(results, started_at, _now_ms()),
            cancelled=(
                cancel_event is not None
                and cancel_event.is_set()
                and not fatal
                and len(results) < len(urls)
            ),
        )
        if fatal:
            fatal[0].partial = bulk
            raise fatal[0]
        logger.info(
            f"Bulk scrape finished: {bulk.metrics.pages_scraped} ok, "
            f"{bulk.metrics.pages_failed} failed of {len(urls)}"
            + (" (cancelled)" if bulk.cancelled else "")
        )
        return bulk
