import logging

from pydantic_settings import BaseSettings

_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # App
    APP_NAME: str = "SiteScout"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Browser Pool
    BROWSER_HEADLESS: bool = True
    BROWSER_IDLE_TIMEOUT: float = 60.0  # seconds since last acquisition
    BROWSER_MAX_CONTEXTS: int = 10
    BROWSER_LAUNCH_TIMEOUT: float = 15.0  # seconds

    # Scraping
    DEFAULT_TIMEOUT: int = 30000  # ms
    SPA_TIMEOUT: int = 45000  # ms
    MAX_PAGES: int = 10
    MAX_TEXT_LENGTH: int = 50000
    REQUEST_DELAY: int = 1000  # ms between pages per worker
    MAX_CONCURRENCY: int = 8
    DEFAULT_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36"
    )

    # Detection
    DETECTOR_NORMALIZATION: float = 10.0
    HEAVY_SPA_THRESHOLD: float = 0.7

    # Progress streaming
    PROGRESS_QUEUE_SIZE: int = 256
    PROGRESS_SEND_TIMEOUT: float = 5.0  # seconds per sink delivery

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2
    SENTRY_ENVIRONMENT: str = "development"

    # Logging
    LOG_FORMAT: str = "json"  # "json" for production, "text" for development
    LOG_LEVEL: str = "INFO"

    # Metrics
    METRICS_ENABLED: bool = True

    def model_post_init(self, __context) -> None:
        if self.MAX_CONCURRENCY < 1:
            _logger.warning(
                "SITESCOUT_MAX_CONCURRENCY=%s is invalid, falling back to 1",
                self.MAX_CONCURRENCY,
            )
            object.__setattr__(self, "MAX_CONCURRENCY", 1)

    model_config = {
        "env_prefix": "SITESCOUT_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
