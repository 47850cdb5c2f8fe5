import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ScrapingPhase(str, Enum):
    DISCOVERY = "discovery"
    INITIALIZATION = "initialization"
    SCRAPING = "scraping"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset(
    {ScrapingPhase.COMPLETE, ScrapingPhase.ERROR, ScrapingPhase.CANCELLED}
)


class ProgressEventType(str, Enum):
    URL_DISCOVERED = "url_discovered"
    PHASE_CHANGE = "phase_change"
    SCRAPE_STARTED = "scrape_started"
    PAGE_COMPLETE = "page_complete"
    PAGE_FAILED = "page_failed"
    NETWORK_ACTIVITY = "network_activity"
    ERROR_OCCURRED = "error_occurred"
    COMPLETE = "complete"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ProgressEvent(BaseModel):
    phase: ScrapingPhase
    event_type: ProgressEventType
    current: int = 0
    total: int = 0
    percentage: int = Field(0, ge=0, le=100)
    message: str = ""
    metadata: dict[str, Any] = {}
    timestamp: int = Field(default_factory=_now_ms)
    source: str = "engine"

    model_config = {"use_enum_values": True}

    @property
    def is_terminal(self) -> bool:
        return self.phase in {p.value for p in TERMINAL_PHASES}
