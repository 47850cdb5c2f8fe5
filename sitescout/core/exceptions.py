"""Exception hierarchy for the scraping engine.

Page-level failures never surface as exceptions past a strategy; they are
recorded on the ScrapingResult. The classes here cover what does propagate:
bad input, browser infrastructure trouble, and retryable fetch errors that
the retry helper consumes.
"""


class SiteScoutError(Exception):
    """Base class for all engine errors."""

    code = "INTERNAL_ERROR"


class InvalidRequestError(SiteScoutError):
    """The scrape request cannot be attempted (bad domain, empty URL list)."""

    code = "INVALID_REQUEST"


class NoUrlsDiscoveredError(InvalidRequestError):
    """Discovery produced zero URLs to scrape."""

    code = "NO_URLS"


class BrowserInfrastructureError(SiteScoutError):
    """The shared browser process failed (launch failure, disconnect)."""

    code = "BROWSER_ERROR"


class BrowserLaunchError(BrowserInfrastructureError):
    code = "BROWSER_LAUNCH_FAILED"


class BrowserPoolClosingError(BrowserInfrastructureError):
    """Raised when acquiring from a pool that has been shut down."""

    code = "BROWSER_POOL_CLOSED"


class BrowserPoolExhaustedError(BrowserInfrastructureError):
    """No browser context slot became available in time."""

    code = "BROWSER_POOL_EXHAUSTED"


class RetryableHTTPError(SiteScoutError):
    """An HTTP response whose status code is configured as retryable."""

    code = "HTTP_RETRYABLE"

    def __init__(self, url: str, status_code: int):
        self.url = url
        self.status_code = status_code
        super().__init__(f"HTTP {status_code} for {url}")


class ScrapeFatalError(SiteScoutError):
    """A request-level failure surfaced to the caller of scrape()."""

    code = "SCRAPE_FAILED"

    def __init__(self, message: str, cause: Exception | None = None, partial=None):
        self.cause = cause
        self.partial = partial
        if cause is not None and getattr(cause, "code", None):
            self.code = cause.code
        super().__init__(message)
