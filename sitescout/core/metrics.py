from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# Page / request outcomes
# ---------------------------------------------------------------------------
scrape_requests_total = Counter(
    "sitescout_scrape_requests_total",
    "Total number of top-level scrape requests",
    ["status"],
)
scrape_pages_total = Counter(
    "sitescout_scrape_pages_total",
    "Pages scraped by strategy and outcome",
    ["strategy", "status"],
)
scrape_duration_seconds = Histogram(
    "sitescout_scrape_duration_seconds",
    "Time spent scraping a single URL",
    ["strategy"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60],
)
strategy_fallbacks_total = Counter(
    "sitescout_strategy_fallbacks_total",
    "Times a failed strategy was retried with the next-best strategy",
    ["from_strategy", "to_strategy"],
)
retry_attempts_total = Counter(
    "sitescout_retry_attempts_total",
    "Retry attempts for retryable fetch errors",
)

# ---------------------------------------------------------------------------
# Browser pool
# ---------------------------------------------------------------------------
browser_launches_total = Counter(
    "sitescout_browser_launches_total",
    "Number of headless browser launches",
)
browser_launch_failures_total = Counter(
    "sitescout_browser_launch_failures_total",
    "Number of failed headless browser launches",
)
active_browser_contexts = Gauge(
    "sitescout_active_browser_contexts",
    "Number of currently open browser contexts",
)

# ---------------------------------------------------------------------------
# Progress streaming
# ---------------------------------------------------------------------------
progress_events_total = Counter(
    "sitescout_progress_events_total",
    "Progress events delivered to sinks",
    ["phase"],
)
progress_events_dropped_total = Counter(
    "sitescout_progress_events_dropped_total",
    "Progress events dropped because the sink failed or the queue was full",
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
