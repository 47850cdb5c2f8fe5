from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

OUTPUT_FORMATS = frozenset(
    {"text", "markdown", "html", "links", "images", "screenshot", "pdf"}
)
BLOCKABLE_RESOURCE_TYPES = frozenset({"image", "stylesheet", "font", "script", "media"})
DEFAULT_EVASIONS = (
    "navigator.webdriver",
    "navigator.plugins",
    "webgl.vendor",
    "navigator.permissions",
    "chrome.runtime",
)


def _normalize_url(url: str) -> str:
    """Prepend https:// if no protocol is present."""
    url = url.strip()
    if url and not url.startswith(("http://", "https://", "//")):
        url = f"https://{url}"
    return url


class RetryConfig(BaseModel):
    max_retries: int = Field(3, ge=0)
    retry_delay: int = Field(1000, ge=0)  # ms before the first retry
    backoff_multiplier: float = Field(2.0, ge=1.0)
    retryable_status_codes: list[int] = [429, 500, 502, 503, 504]

    model_config = {"frozen": True}

    def delay_for(self, attempt: int) -> float:
        """Seconds to sleep before retry number `attempt` (1-based)."""
        return (self.retry_delay / 1000) * (self.backoff_multiplier ** (attempt - 1))


class StealthConfig(BaseModel):
    enabled: bool = True
    evasions: list[str] = list(DEFAULT_EVASIONS)
    randomize_fingerprint: bool = False  # canvas/audio noise, seeded per session
    simulate_human: bool = False  # mouse moves + wheel jitter before extraction
    block_webrtc: bool = False
    mask_media_devices: bool = False
    seed: int | None = None  # fixed session seed; random when unset

    model_config = {"frozen": True}


class ScrollConfig(BaseModel):
    enabled: bool = True
    distance: int = 500  # px per step
    delay: int = 200  # ms between steps
    max_scrolls: int = 10
    wait_after: int = 500  # ms to let lazy content settle

    model_config = {"frozen": True}


class Viewport(BaseModel):
    width: int = 1920
    height: int = 1080

    model_config = {"frozen": True}


class ScrapeRequest(BaseModel):
    domain: str | None = None
    urls: list[str] | None = None  # explicit list skips discovery
    max_pages: int = Field(10, ge=1)
    formats: list[str] = ["text", "links", "images"]
    timeout: int = Field(30000, gt=0)  # ms, per page
    follow_redirects: bool = True
    max_redirects: int = Field(5, ge=0)
    strategy: Literal["auto", "static", "dynamic", "spa"] = "auto"
    enable_fallback: bool = True
    concurrency: int = Field(1, ge=1)
    request_delay: int = Field(1000, ge=0)  # ms between pages
    random_delay: tuple[int, int] | None = None  # (min, max) ms, overrides request_delay
    block_resources: list[str] = []
    user_agent: str | None = None
    viewport: Viewport = Field(default_factory=Viewport)
    stealth: StealthConfig = Field(default_factory=StealthConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scroll: ScrollConfig = Field(default_factory=ScrollConfig)
    max_text_length: int = Field(50000, gt=0)

    model_config = {"frozen": True}

    @field_validator("domain", mode="before")
    @classmethod
    def _add_protocol(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _normalize_url(v)

    @field_validator("urls", mode="before")
    @classmethod
    def _normalize_urls(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        return [_normalize_url(u) for u in v if u and u.strip()]

    @field_validator("formats")
    @classmethod
    def _check_formats(cls, v: list[str]) -> list[str]:
        unknown = [f for f in v if f not in OUTPUT_FORMATS]
        if unknown:
            raise ValueError(
                f"Unknown output format(s): {', '.join(unknown)}. "
                f"Valid: {', '.join(sorted(OUTPUT_FORMATS))}"
            )
        return v

    @field_validator("block_resources")
    @classmethod
    def _check_resources(cls, v: list[str]) -> list[str]:
        unknown = [r for r in v if r not in BLOCKABLE_RESOURCE_TYPES]
        if unknown:
            raise ValueError(f"Cannot block resource type(s): {', '.join(unknown)}")
        return v

    @field_validator("random_delay")
    @classmethod
    def _check_random_delay(cls, v: tuple[int, int] | None) -> tuple[int, int] | None:
        if v is not None and (v[0] < 0 or v[0] > v[1]):
            raise ValueError("random_delay must be (min, max) with 0 <= min <= max")
        return v

    @model_validator(mode="after")
    def _require_target(self):
        if not self.domain and not self.urls:
            raise ValueError("Either domain or urls must be provided")
        return self

    def wants(self, fmt: str) -> bool:
        return fmt in self.formats


class ScrapingResult(BaseModel):
    """Outcome of scraping one URL. Never mutated once created."""

    url: str
    strategy: str
    final_url: str | None = None
    redirect_count: int = 0
    status_code: int | None = None
    content: dict | None = None  # ContentExtractor output
    text: str | None = None
    markdown: str | None = None
    html: str | None = None
    metadata: dict | None = None  # MetadataExtractor output
    links: list[dict] = []
    images: list[dict] = []
    social_accounts: list[dict] = []
    screenshot: str | None = None  # base64 PNG
    pdf: str | None = None  # base64 PDF
    error: str | None = None
    error_code: str | None = None  # TIMEOUT, NETWORK_ERROR, BLOCKED_BY_WAF, ...
    metrics: dict[str, Any] = {}  # load_time (ms), content_size (bytes), request_count
    extras: dict[str, Any] = {}  # strategy-specific details

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _error_excludes_content(self):
        if self.error is not None and self.content is not None:
            raise ValueError("A failed result cannot carry extracted content")
        return self

    @property
    def success(self) -> bool:
        return self.error is None


class ScrapingMetrics(BaseModel):
    pages_scraped: int = 0
    pages_failed: int = 0
    duration: float = 0  # ms
    network_requests: int = 0
    credits_used: int = 0  # always 0 for self-hosted strategies
    cost_estimate: float = 0.0
    data_size: int = 0  # bytes
    started_at: int = 0  # epoch ms
    completed_at: int | None = None
    average_time_per_page: float = 0  # ms
    success_rate: float = 0  # 0..1

    @classmethod
    def from_results(
        cls, results: list[ScrapingResult], started_at: int, completed_at: int
    ) -> "ScrapingMetrics":
        scraped = sum(1 for r in results if r.success)
        failed = len(results) - scraped
        duration = max(completed_at - started_at, 0)
        return cls(
            pages_scraped=scraped,
            pages_failed=failed,
            duration=duration,
            network_requests=sum(r.metrics.get("request_count", 0) for r in results),
            data_size=sum(r.metrics.get("content_size", 0) for r in results),
            started_at=started_at,
            completed_at=completed_at,
            average_time_per_page=(duration / len(results)) if results else 0,
            success_rate=(scraped / len(results)) if results else 0,
        )


class BulkScrapingResult(BaseModel):
    results: list[ScrapingResult] = []
    metrics: ScrapingMetrics
    cancelled: bool = False


class ScrapeResponse(BaseModel):
    success: bool
    results: list[ScrapingResult] = []
    metrics: ScrapingMetrics
    discovered_urls: list[str] = []
    analysis: dict | None = None  # WebsiteAnalysis of the entry URL
    cancelled: bool = False
    error: str | None = None
    error_code: str | None = None
