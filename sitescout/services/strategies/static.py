"""Plain HTTP fetch + BeautifulSoup extraction, no browser."""

import logging
import time

import httpx
from playwright.async_api import Page

from sitescout.config import settings
from sitescout.core.exceptions import RetryableHTTPError
from sitescout.core.metrics import scrape_duration_seconds
from sitescout.schemas.scrape import ScrapeRequest, ScrapingResult
from sitescout.services.retry import retry_async
from sitescout.services.strategies.base import (
    SPA_URL_PATTERNS,
    build_result,
    failed_result,
)

logger = logging.getLogger(__name__)

_STATIC_EXTENSIONS = (".html", ".htm", ".xml", ".txt")

_SCRIPT_RATIO_JS = """
() => {
    const scripts = document.querySelectorAll('script').length;
    const total = document.querySelectorAll('*').length;
    return scripts / Math.max(1, total);
}
"""

_BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
}


class StaticStrategy:
    """httpx GET with manual redirect handling so hops can be counted and capped."""

    name = "static"
    requires_browser = False

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                follow_redirects=False,
                headers=_BASE_HEADERS,
                timeout=settings.DEFAULT_TIMEOUT / 1000,
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def detect_confidence(self, url: str, page: Page | None = None) -> float:
        if page is None:
            lowered = url.lower()
            if any(p in lowered for p in SPA_URL_PATTERNS):
                return 0.2
            path = httpx.URL(url).path.lower()
            if path.endswith(_STATIC_EXTENSIONS):
                return 0.6
            return 0.4
        try:
            ratio = await page.evaluate(_SCRIPT_RATIO_JS)
        except Exception as e:
            logger.debug(f"Static detection failed for {url}: {e}")
            return 0.4
        return 0.7 if ratio < 0.05 else 0.3

    async def _fetch(self, url: str, request: ScrapeRequest) -> tuple[httpx.Response, int]:
        """GET url, following up to request.max_redirects hops by hand."""
        client = self._get_client()
        headers = {"User-Agent": request.user_agent or settings.DEFAULT_USER_AGENT}
        timeout = request.timeout / 1000
        redirects = 0
        outgoing = client.build_request("GET", url, headers=headers, timeout=timeout)
        while True:
            response = await client.send(outgoing)
            if not (request.follow_redirects and response.is_redirect):
                break
            next_request = response.next_request
            if next_request is None:
                break
            if redirects >= request.max_redirects:
                raise httpx.TooManyRedirects(
                    f"Too many redirects (more than {request.max_redirects})",
                    request=outgoing,
                )
            redirects += 1
            outgoing = next_request

        if response.status_code in request.retry.retryable_status_codes:
            raise RetryableHTTPError(url, response.status_code)
        return response, redirects

    async def execute(self, url: str, request: ScrapeRequest) -> ScrapingResult:
        started = time.monotonic()
        try:
            response, redirects = await retry_async(
                lambda: self._fetch(url, request),
                request.retry,
                describe=f"GET {url}",
            )
        except RetryableHTTPError as e:
            return failed_result(url, self.name, e, status_code=e.status_code, started=started)
        except Exception as e:
            logger.warning(f"Static fetch failed for {url}: {e}")
            return failed_result(url, self.name, e, started=started)
        finally:
            scrape_duration_seconds.labels(strategy=self.name).observe(
                time.monotonic() - started
            )

        html = response.text
        final_url = str(response.url)
        if response.status_code >= 400:
            return failed_result(
                url,
                self.name,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                html=html,
                final_url=final_url,
                redirect_count=redirects,
                started=started,
            )

        try:
            return build_result(
                url=url,
                strategy=self.name,
                html=html,
                request=request,
                final_url=final_url,
                redirect_count=redirects,
                status_code=response.status_code,
                metrics={
                    "load_time": round((time.monotonic() - started) * 1000, 1),
                    "content_size": len(response.content),
                    "request_count": redirects + 1,
                },
                extras={"content_type": response.headers.get("content-type", "")},
            )
        except Exception as e:
            logger.warning(f"Extraction failed for {url}: {e}")
            return failed_result(
                url,
                self.name,
                e,
                status_code=response.status_code,
                final_url=final_url,
                redirect_count=redirects,
                started=started,
            )
