"""Shared pieces for the scraping strategies.

Strategies are plain classes satisfying the ScrapingStrategy protocol; the
helpers here (result building, error classification, scrolling, page
metrics) are composed in rather than inherited.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Protocol, runtime_checkable

from playwright.async_api import Page

from sitescout.config import settings
from sitescout.core.exceptions import (
    BrowserInfrastructureError,
    RetryableHTTPError,
)
from sitescout.schemas.scrape import ScrapeRequest, ScrapingResult, ScrollConfig
from sitescout.services.browser import is_browser_closed_error
from sitescout.services.content import extract_content, html_to_markdown, parse_html
from sitescout.services.metadata import extract_metadata
from sitescout.services.retry import retry_async
from sitescout.services.social import extract_social_accounts

logger = logging.getLogger(__name__)

# Cheapest first: equal confidences resolve to the lighter strategy
STRATEGY_COST_ORDER = ("static", "dynamic", "spa")

INFRASTRUCTURE_ERROR_CODES = frozenset(
    {"BROWSER_ERROR", "BROWSER_LAUNCH_FAILED", "BROWSER_POOL_EXHAUSTED"}
)

# URL shapes typical of client-routed apps
SPA_URL_PATTERNS = ("/#/", "/app", "/dashboard", "/portal")


@runtime_checkable
class ScrapingStrategy(Protocol):
    name: str
    requires_browser: bool

    async def detect_confidence(self, url: str, page: Page | None = None) -> float:
        ...

    async def execute(self, url: str, request: ScrapeRequest) -> ScrapingResult:
        ...


def default_strategy_config(request: ScrapeRequest | None = None) -> dict:
    """Baseline page settings, overridden by request values when given."""
    config = {
        "timeout": settings.DEFAULT_TIMEOUT,
        "user_agent": settings.DEFAULT_USER_AGENT,
        "load_images": False,
        "load_stylesheets": True,
        "execute_javascript": True,
        "viewport": {"width": 1920, "height": 1080},
    }
    if request is not None:
        config["timeout"] = request.timeout
        config["viewport"] = request.viewport.model_dump()
        if request.user_agent:
            config["user_agent"] = request.user_agent
        config["load_images"] = "image" not in request.block_resources
        config["load_stylesheets"] = "stylesheet" not in request.block_resources
    return config


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_error(
    error: str | None, html: str | None = None, status_code: int | None = 0
) -> str | None:
    """Classify a scrape failure into a structured error code.

    Returns one of: TIMEOUT, NETWORK_ERROR, CAPTCHA_REQUIRED, BLOCKED_BY_WAF,
    JS_REQUIRED, HTTP_ERROR, or None if nothing specific applies.
    """
    if not error and not html and not status_code:
        return None

    err_lower = (error or "").lower()
    if any(kw in err_lower for kw in ("timeout", "timed out", "timedout")):
        return "TIMEOUT"
    if "redirect" in err_lower:
        return "TOO_MANY_REDIRECTS"
    if any(
        kw in err_lower
        for kw in ("connection", "dns", "resolve", "refused", "unreachable", "network", "ssl", "net::err_")
    ):
        return "NETWORK_ERROR"

    html_lower = (html or "").lower()
    if any(
        kw in html_lower
        for kw in ("captcha", "recaptcha", "hcaptcha", "verify you are human", "verify you're human")
    ):
        return "CAPTCHA_REQUIRED"
    if status_code in (403, 451) or any(
        kw in html_lower
        for kw in ("access denied", "cloudflare", "sucuri", "incapsula", "datadome", "perimeterx")
    ):
        return "BLOCKED_BY_WAF"
    if any(
        kw in html_lower
        for kw in ("enable javascript", "javascript is required", "requires javascript")
    ):
        return "JS_REQUIRED"
    if status_code and status_code >= 400:
        return "HTTP_ERROR"
    return None


def _error_code_for(exc: BaseException, html: str | None, status_code: int | None) -> str | None:
    if isinstance(exc, BrowserInfrastructureError):
        return exc.code
    if is_browser_closed_error(exc):
        return "BROWSER_ERROR"
    return classify_error(str(exc), html, status_code)


# ---------------------------------------------------------------------------
# Result construction
# ---------------------------------------------------------------------------


def failed_result(
    url: str,
    strategy: str,
    error: BaseException | str,
    *,
    status_code: int | None = None,
    html: str | None = None,
    final_url: str | None = None,
    redirect_count: int = 0,
    started: float | None = None,
    extras: dict | None = None,
) -> ScrapingResult:
    if isinstance(error, BaseException):
        message = str(error) or error.__class__.__name__
        code = _error_code_for(error, html, status_code)
    else:
        message = error
        code = classify_error(error, html, status_code)
    metrics = {}
    if started is not None:
        metrics["load_time"] = round((time.monotonic() - started) * 1000, 1)
    return ScrapingResult(
        url=url,
        strategy=strategy,
        final_url=final_url,
        redirect_count=redirect_count,
        status_code=status_code,
        error=message,
        error_code=code,
        metrics=metrics,
        extras=extras or {},
    )


def _markdown(html: str) -> str:
    soup = parse_html(html)
    return html_to_markdown(soup.body or soup)


def build_result(
    *,
    url: str,
    strategy: str,
    html: str,
    request: ScrapeRequest,
    final_url: str | None = None,
    redirect_count: int = 0,
    status_code: int | None = None,
    text: str | None = None,
    metrics: dict | None = None,
    extras: dict | None = None,
    screenshot: bytes | None = None,
    pdf: bytes | None = None,
) -> ScrapingResult:
    """Run every extractor over the final HTML and assemble the result."""
    base_url = final_url or url
    content = extract_content(
        html,
        base_url=base_url,
        max_text_length=request.max_text_length,
    )
    if text is None:
        text = content["main_content"]
    text = text[: request.max_text_length]

    page_metrics = {"content_size": len(html.encode("utf-8")), "request_count": 0}
    page_metrics.update(metrics or {})

    return ScrapingResult(
        url=url,
        strategy=strategy,
        final_url=base_url,
        redirect_count=redirect_count,
        status_code=status_code,
        content=content,
        text=text if request.wants("text") else None,
        markdown=_markdown(html) if request.wants("markdown") else None,
        html=html if request.wants("html") else None,
        metadata=extract_metadata(html),
        links=content["links"] if request.wants("links") else [],
        images=content["images"] if request.wants("images") else [],
        social_accounts=extract_social_accounts(html, base_url),
        screenshot=base64.b64encode(screenshot).decode() if screenshot else None,
        pdf=base64.b64encode(pdf).decode() if pdf else None,
        metrics=page_metrics,
        extras=extras or {},
    )


# ---------------------------------------------------------------------------
# Browser page helpers
# ---------------------------------------------------------------------------

AUTO_SCROLL_JS = """
({ distance, delay, maxScrolls }) => new Promise((resolve) => {
    let totalScrolled = 0;
    let scrollCount = 0;
    let lastHeight = document.body ? document.body.scrollHeight : 0;
    let newContentDetected = false;
    const timer = setInterval(() => {
        const body = document.body;
        if (!body) { clearInterval(timer); resolve({ totalScrolled, scrollCount, reachedBottom: true, newContentDetected }); return; }
        const height = body.scrollHeight;
        if (height > lastHeight) { newContentDetected = true; lastHeight = height; }
        window.scrollBy(0, distance);
        totalScrolled += distance;
        scrollCount += 1;
        const reachedBottom = window.pageYOffset + window.innerHeight >= height - 10;
        if (reachedBottom || scrollCount >= maxScrolls) {
            clearInterval(timer);
            window.scrollTo(0, 0);
            resolve({ totalScrolled, scrollCount, reachedBottom, newContentDetected });
        }
    }, delay);
})
"""

PAGE_METRICS_JS = """
() => ({
    contentSize: document.documentElement ? document.documentElement.outerHTML.length : 0,
    requestCount: performance.getEntriesByType('resource').length,
})
"""


async def auto_scroll(page: Page, scroll: ScrollConfig) -> dict:
    """Scroll in steps to trigger lazy content, then let it settle."""
    try:
        result = await page.evaluate(
            AUTO_SCROLL_JS,
            {"distance": scroll.distance, "delay": scroll.delay, "maxScrolls": scroll.max_scrolls},
        )
    except Exception as e:
        logger.debug(f"Auto-scroll failed on {page.url}: {e}")
        return {}
    if scroll.wait_after > 0:
        await page.wait_for_timeout(scroll.wait_after)
    return result or {}


async def measure_page(page: Page, started: float) -> dict:
    metrics = {"load_time": round((time.monotonic() - started) * 1000, 1)}
    try:
        measured = await page.evaluate(PAGE_METRICS_JS)
        metrics["content_size"] = measured.get("contentSize", 0)
        metrics["request_count"] = measured.get("requestCount", 0)
    except Exception as e:
        logger.debug(f"Page metrics unavailable: {e}")
    return metrics


def redirect_chain_length(response) -> int:
    """Number of redirects that led to a Playwright response."""
    if response is None:
        return 0
    count = 0
    req = response.request.redirected_from
    while req is not None:
        count += 1
        req = req.redirected_from
    return count


async def navigate(page: Page, url: str, request: ScrapeRequest, wait_until: str, timeout: int | None = None):
    """page.goto with retry on configured status codes and network errors."""
    timeout = timeout or request.timeout

    async def _goto():
        response = await page.goto(url, wait_until=wait_until, timeout=timeout)
        if response is not None and response.status in request.retry.retryable_status_codes:
            raise RetryableHTTPError(url, response.status)
        return response

    return await retry_async(_goto, request.retry, describe=f"Navigation to {url}")


async def capture_outputs(page: Page, request: ScrapeRequest) -> tuple[bytes | None, bytes | None]:
    """Screenshot / PDF bytes for the requested formats; failures are logged."""
    screenshot = pdf = None
    if request.wants("screenshot"):
        try:
            screenshot = await page.screenshot(full_page=True, type="png")
        except Exception as e:
            logger.warning(f"Screenshot failed for {page.url}: {e}")
    if request.wants("pdf"):
        try:
            pdf = await page.pdf(print_background=True)
        except Exception as e:
            logger.warning(f"PDF capture failed for {page.url}: {e}")
    return screenshot, pdf


def is_infrastructure_failure(result: ScrapingResult) -> bool:
    return result.error_code in INFRASTRUCTURE_ERROR_CODES

