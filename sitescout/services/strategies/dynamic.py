"""Browser rendering for JavaScript-driven pages that still load per URL."""

import logging
import time
from urllib.parse import urlparse

from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from sitescout.core.metrics import scrape_duration_seconds
from sitescout.schemas.scrape import ScrapeRequest, ScrapingResult
from sitescout.services.browser import BrowserPool
from sitescout.services.stealth import Fingerprint, StealthLayer, simulate_human
from sitescout.services.strategies.base import (
    auto_scroll,
    build_result,
    capture_outputs,
    failed_result,
    measure_page,
    navigate,
    redirect_chain_length,
)

logger = logging.getLogger(__name__)

LOADING_SELECTORS = [
    ".loading",
    ".spinner",
    "[data-loading]",
    ".skeleton",
    ".placeholder",
    "#loading",
    ".loader",
]

CONTENT_READY_SELECTORS = [
    "[data-content]",
    ".content-loaded",
    'main[data-loaded="true"]',
    "#app[data-ready]",
]

API_HINTS = ("/api/", "graphql", ".json")

DYNAMIC_FEATURES_JS = """
() => {
    const w = window;
    let framework = null;
    if (w.React || w.__REACT_DEVTOOLS_GLOBAL_HOOK__ || document.querySelector('[data-reactroot]')) framework = 'react';
    else if (w.Vue || w.__VUE__ || document.querySelector('[data-v-app]')) framework = 'vue';
    else if (w.ng || document.querySelector('[ng-version], [ng-app]')) framework = 'angular';
    else if (w.__NEXT_DATA__) framework = 'nextjs';
    else if (w.__NUXT__) framework = 'nuxt';
    else if (w.jQuery) framework = 'jquery';

    const resources = performance.getEntriesByType('resource');
    const scripts = document.querySelectorAll('script').length;
    const total = document.querySelectorAll('*').length;
    return {
        framework,
        hasAjax: resources.some(e => e.initiatorType === 'xmlhttprequest' || e.initiatorType === 'fetch'),
        hasLazyLoading: !!document.querySelector('img[loading="lazy"], [data-src], [data-lazy], .lazy'),
        hasInteractive: !!document.querySelector('[onclick], [data-toggle], [data-action], button[aria-expanded]'),
        hasClientRouting: !!(w.__NEXT_DATA__ || w.$nuxt || document.querySelector('a[href^="#/"], [data-router], [routerlink], router-outlet')),
        hasDynamicContent: !!document.querySelector('[data-bind], [v-if], [ng-if], [x-data], [data-reactid]'),
        hasInitialState: !!(w.__INITIAL_STATE__ || w.__PRELOADED_STATE__),
        scriptRatio: scripts / Math.max(1, total),
        dataElementCount: document.querySelectorAll('[data-id], [data-product], [data-item]').length,
    };
}
"""

VISIBLE_TEXT_JS = """
({ maxLength }) => {
    const candidates = ['[role="main"]', 'main', '#content', '.main-content', 'article', '[data-content]', '.app-content'];
    let root = null;
    for (const sel of candidates) {
        const el = document.querySelector(sel);
        if (el && el.textContent && el.textContent.trim()) { root = el; break; }
    }
    root = root || document.body;
    if (!root) return '';
    const skip = new Set(['SCRIPT', 'STYLE', 'NOSCRIPT', 'TEMPLATE']);
    const walker = document.createTreeWalker(root, NodeFilter.SHOW_TEXT, {
        acceptNode(node) {
            const parent = node.parentElement;
            if (!parent || skip.has(parent.tagName)) return NodeFilter.FILTER_REJECT;
            if (typeof parent.checkVisibility === 'function' && !parent.checkVisibility()) return NodeFilter.FILTER_REJECT;
            const style = window.getComputedStyle(parent);
            if (style.display === 'none' || style.visibility === 'hidden') return NodeFilter.FILTER_REJECT;
            return NodeFilter.FILTER_ACCEPT;
        },
    });
    const parts = [];
    let length = 0;
    let node;
    while ((node = walker.nextNode())) {
        const text = node.textContent.replace(/\\s+/g, ' ').trim();
        if (!text) continue;
        parts.push(text);
        length += text.length + 1;
        if (length >= maxLength) break;
    }
    return parts.join(' ').slice(0, maxLength);
}
"""


def score_dynamic(features: dict) -> float:
    score = 0.3
    if features.get("framework"):
        score += 0.25
    if features.get("hasAjax"):
        score += 0.15
    if features.get("hasLazyLoading"):
        score += 0.15
    if features.get("hasInteractive"):
        score += 0.1
    if features.get("hasClientRouting"):
        score += 0.15
    if features.get("hasDynamicContent"):
        score += 0.1
    if (features.get("scriptRatio") or 0) > 0.05:
        score += 0.1
    return max(0.0, min(score, 1.0))


def request_fingerprint(stealth: StealthLayer | None, request: ScrapeRequest) -> Fingerprint:
    """Session fingerprint carrying the request's UA and viewport."""
    viewport = request.viewport.model_dump()
    if stealth is not None:
        return stealth.session_fingerprint(request.user_agent, viewport)
    return Fingerprint.from_seed(request.stealth.seed, request.user_agent, viewport)


def summarize_api_calls(requests: list[str]) -> dict:
    api_calls = [u for u in requests if any(h in u for h in API_HINTS)]
    endpoints: list[str] = []
    for u in api_calls:
        path = urlparse(u).path
        if path not in endpoints:
            endpoints.append(path)
    return {
        "total": len(requests),
        "api_calls": len(api_calls),
        "endpoints": endpoints[:10],
    }


class DynamicStrategy:
    name = "dynamic"
    requires_browser = True

    def __init__(self, pool: BrowserPool, stealth: StealthLayer | None = None):
        self.pool = pool
        self.stealth = stealth

    async def detect_confidence(self, url: str, page: Page | None = None) -> float:
        if page is None:
            return 0.5
        try:
            features = await page.evaluate(DYNAMIC_FEATURES_JS)
        except Exception as e:
            logger.debug(f"Dynamic detection failed for {url}: {e}")
            return 0.5
        score = score_dynamic(features)
        logger.debug(f"Dynamic confidence for {url}: {score:.2f}")
        return score

    async def _wait_for_dynamic_content(self, page: Page) -> None:
        for selector in LOADING_SELECTORS:
            if await page.query_selector(selector) is None:
                continue
            try:
                await page.wait_for_selector(selector, state="hidden", timeout=5000)
            except PlaywrightTimeoutError:
                logger.debug(f"Loading indicator {selector} still visible on {page.url}")

        for selector in CONTENT_READY_SELECTORS:
            try:
                await page.wait_for_selector(selector, state="visible", timeout=3000)
                break
            except PlaywrightTimeoutError:
                continue

    async def execute(self, url: str, request: ScrapeRequest) -> ScrapingResult:
        started = time.monotonic()
        requests: list[str] = []
        html: str | None = None
        status: int | None = None

        def _track(req) -> None:
            if req.resource_type in ("xhr", "fetch"):
                requests.append(req.url)

        try:
            async with self.pool.new_page(
                stealth=self.stealth if request.stealth.enabled else None,
                stealth_config=request.stealth,
                fingerprint=request_fingerprint(self.stealth, request),
                block_resources=request.block_resources,
            ) as page:
                page.on("request", _track)
                response = await navigate(page, url, request, wait_until="networkidle")
                status = response.status if response is not None else None
                redirects = redirect_chain_length(response)

                await self._wait_for_dynamic_content(page)
                scroll_info = await auto_scroll(page, request.scroll) if request.scroll.enabled else {}
                if request.stealth.simulate_human:
                    await simulate_human(page)

                html = await page.content()
                if status is not None and status >= 400:
                    return failed_result(
                        url,
                        self.name,
                        f"HTTP {status}",
                        status_code=status,
                        html=html,
                        final_url=page.url,
                        redirect_count=redirects,
                        started=started,
                    )

                text = await page.evaluate(VISIBLE_TEXT_JS, {"maxLength": request.max_text_length})
                features = await page.evaluate(DYNAMIC_FEATURES_JS)
                screenshot, pdf = await capture_outputs(page, request)
                metrics = await measure_page(page, started)
                final_url = page.url
        except Exception as e:
            logger.warning(f"Dynamic scrape failed for {url}: {e}")
            return failed_result(
                url,
                self.name,
                e,
                status_code=getattr(e, "status_code", status),
                html=html,
                started=started,
            )
        finally:
            scrape_duration_seconds.labels(strategy=self.name).observe(
                time.monotonic() - started
            )

        try:
            network = summarize_api_calls(requests)
            dynamic_info = {
                "framework": features.get("framework"),
                "has_initial_state": bool(features.get("hasInitialState")),
                "api_endpoints": network["endpoints"],
                "data_element_count": features.get("dataElementCount", 0),
                "network_requests": network,
                "scroll": scroll_info,
            }
            return build_result(
                url=url,
                strategy=self.name,
                html=html,
                request=request,
                final_url=final_url,
                redirect_count=redirects,
                status_code=status,
                text=text or None,
                metrics=metrics,
                extras={"dynamic_info": dynamic_info},
                screenshot=screenshot,
                pdf=pdf,
            )
        except Exception as e:
            logger.warning(f"Dynamic extraction failed for {url}: {e}")
            return failed_result(
                url,
                self.name,
                e,
                status_code=status,
                final_url=final_url,
                redirect_count=redirects,
                started=started,
            )
