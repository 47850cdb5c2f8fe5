"""Phased progress events delivered to a caller-supplied sink.

The scrape loop never waits on the sink: events go into a bounded queue and
a separate delivery task forwards them. A slow or failing sink can only lose
events (counted in metrics), never stall or break the scrape.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import IO, Any, AsyncIterator, Awaitable, Callable, Protocol, Union

from sitescout.config import settings
from sitescout.core.metrics import progress_events_dropped_total, progress_events_total
from sitescout.schemas.progress import ProgressEvent, ProgressEventType, ScrapingPhase
from sitescout.schemas.scrape import ScrapingMetrics, ScrapingResult

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    async def send(self, event: ProgressEvent) -> Any:
        ...


Sink = Union[EventSink, Callable[[ProgressEvent], Union[Awaitable[Any], Any]]]


def ndjson_sink(stream: IO[str]) -> Callable[[ProgressEvent], None]:
    """Sink writing one JSON object per line to a text stream."""

    def _write(event: ProgressEvent) -> None:
        stream.write(event.model_dump_json() + "\n")
        stream.flush()

    return _write


class StreamBuffer:
    """Sink that buffers events for `async for` consumption.

    Iteration ends after the terminal event.
    """

    def __init__(self, max_buffer: int = 100):
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max_buffer)

    async def send(self, event: ProgressEvent) -> None:
        await self._queue.put(event)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                break


class ProgressStreamer:
    """Turns scrape milestones into ProgressEvents and delivers them in order."""

    def __init__(
        self,
        sink: Sink | None = None,
        source: str = "engine",
        max_queue: int | None = None,
        send_timeout: float | None = None,
    ):
        self._sink = sink
        self.source = source
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(
            maxsize=max_queue or settings.PROGRESS_QUEUE_SIZE
        )
        self._send_timeout = send_timeout or settings.PROGRESS_SEND_TIMEOUT
        self._task: asyncio.Task | None = None
        self._closed = False
        self._terminal_sent = False
        self._last_percentage: dict[str, int] = {}
        self.total = 0
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    # ------------------------------------------------------------------
    # Queue + delivery
    # ------------------------------------------------------------------

    def send_event(self, event: ProgressEvent) -> None:
        """Enqueue an event. Never raises and never blocks."""
        if self._terminal_sent or self._closed:
            logger.debug(f"Ignoring {event.event_type} event after stream end")
            return
        if event.is_terminal:
            self._terminal_sent = True
        if self._sink is None:
            return
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._deliver())

        if self._queue.full():
            # Only non-terminal events can be queued ahead of this one
            try:
                self._count_drop(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(event)

    def _count_drop(self, event: ProgressEvent) -> None:
        self.dropped += 1
        progress_events_dropped_total.inc()
        logger.debug(f"Progress queue full, dropped {event.event_type} event")

    async def _deliver(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            try:
                await asyncio.wait_for(self._dispatch(event), timeout=self._send_timeout)
                progress_events_total.labels(phase=event.phase).inc()
            except asyncio.TimeoutError:
                self.dropped += 1
                progress_events_dropped_total.inc()
                logger.warning(
                    f"Progress sink timed out after {self._send_timeout}s on {event.event_type}"
                )
            except Exception as e:
                self.dropped += 1
                progress_events_dropped_total.inc()
                logger.warning(f"Progress sink failed on {event.event_type}: {e}")

    async def _dispatch(self, event: ProgressEvent) -> None:
        send = getattr(self._sink, "send", None)
        outcome = send(event) if callable(send) else self._sink(event)
        if inspect.isawaitable(outcome):
            await outcome

    async def close(self) -> None:
        """Flush queued events and stop the delivery task."""
        if self._closed:
            return
        self._closed = True
        if self._task is None:
            return
        await self._queue.put(None)
        await self._task

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _clamp(self, phase: ScrapingPhase, percentage: float) -> int:
        pct = max(0, min(100, round(percentage)))
        pct = max(pct, self._last_percentage.get(phase.value, 0))
        self._last_percentage[phase.value] = pct
        return pct

    def _emit(
        self,
        phase: ScrapingPhase,
        event_type: ProgressEventType,
        message: str,
        *,
        current: int = 0,
        total: int = 0,
        percentage: float = 0,
        metadata: dict | None = None,
        source: str | None = None,
    ) -> ProgressEvent:
        event = ProgressEvent(
            phase=phase,
            event_type=event_type,
            current=current,
            total=total,
            percentage=self._clamp(phase, percentage),
            message=message,
            metadata=metadata or {},
            source=source or self.source,
        )
        self.send_event(event)
        return event

    def phase_change(self, phase: ScrapingPhase, message: str, **metadata) -> ProgressEvent:
        return self._emit(phase, ProgressEventType.PHASE_CHANGE, message, metadata=metadata)

    def discovery_started(self, target: str) -> ProgressEvent:
        return self._emit(
            ScrapingPhase.DISCOVERY,
            ProgressEventType.PHASE_CHANGE,
            f"Discovering pages on {target}",
            metadata={"target": target},
        )

    def url_discovered(self, url: str, count: int) -> ProgressEvent:
        return self._emit(
            ScrapingPhase.DISCOVERY,
            ProgressEventType.URL_DISCOVERED,
            f"Discovered {url}",
            current=count,
            metadata={"url": url},
        )

    def discovery_complete(self, urls: list[str]) -> ProgressEvent:
        self.total = len(urls)
        return self._emit(
            ScrapingPhase.DISCOVERY,
            ProgressEventType.PHASE_CHANGE,
            f"Discovered {len(urls)} URL(s)",
            current=len(urls),
            total=len(urls),
            percentage=100,
            metadata={"urls": list(urls)},
        )

    def _scraping_percentage(self) -> float:
        if not self.total:
            return 0
        return (self.completed + self.failed) / self.total * 100

    def page_started(self, url: str, strategy: str | None = None) -> ProgressEvent:
        return self._emit(
            ScrapingPhase.SCRAPING,
            ProgressEventType.SCRAPE_STARTED,
            f"Scraping {url}",
            current=self.completed + self.failed,
            total=self.total,
            percentage=self._scraping_percentage(),
            metadata={"url": url},
            source=strategy,
        )

    def network_activity(self, url: str, detail: str, **metadata) -> ProgressEvent:
        return self._emit(
            ScrapingPhase.SCRAPING,
            ProgressEventType.NETWORK_ACTIVITY,
            detail,
            current=self.completed + self.failed,
            total=self.total,
            percentage=self._scraping_percentage(),
            metadata={"url": url, **metadata},
        )

    def page_finished(self, result: ScrapingResult) -> ProgressEvent:
        """page_complete or page_failed depending on the result."""
        if result.success:
            self.completed += 1
            event_type = ProgressEventType.PAGE_COMPLETE
            message = f"Scraped {result.url}"
        else:
            self.failed += 1
            event_type = ProgressEventType.PAGE_FAILED
            message = f"Failed {result.url}: {result.error}"
        return self._emit(
            ScrapingPhase.SCRAPING,
            event_type,
            message,
            current=self.completed + self.failed,
            total=self.total,
            percentage=self._scraping_percentage(),
            metadata={
                "url": result.url,
                "error_code": result.error_code,
                "load_time": result.metrics.get("load_time"),
            },
            source=result.strategy,
        )

    def page_aborted(self, url: str, message: str, code: str | None = None) -> ProgressEvent:
        """Closes out a started page that ended without a result."""
        self.failed += 1
        return self._emit(
            ScrapingPhase.SCRAPING,
            ProgressEventType.PAGE_FAILED,
            f"Aborted {url}: {message}",
            current=self.completed + self.failed,
            total=self.total,
            percentage=self._scraping_percentage(),
            metadata={"url": url, "error_code": code},
        )

    # Terminal events: exactly one per stream

    def complete(self, metrics: ScrapingMetrics) -> ProgressEvent:
        return self._emit(
            ScrapingPhase.COMPLETE,
            ProgressEventType.COMPLETE,
            f"Scraped {metrics.pages_scraped} page(s), {metrics.pages_failed} failed",
            current=self.completed + self.failed,
            total=self.total,
            percentage=100,
            metadata={"metrics": metrics.model_dump()},
        )

    def error(self, message: str, code: str | None = None, metrics: ScrapingMetrics | None = None) -> ProgressEvent:
        return self._emit(
            ScrapingPhase.ERROR,
            ProgressEventType.ERROR_OCCURRED,
            message,
            current=self.completed + self.failed,
            total=self.total,
            percentage=self._scraping_percentage(),
            metadata={
                "error_code": code,
                "metrics": metrics.model_dump() if metrics else None,
            },
        )

    def cancelled(self, metrics: ScrapingMetrics) -> ProgressEvent:
        return self._emit(
            ScrapingPhase.CANCELLED,
            ProgressEventType.COMPLETE,
            f"Cancelled after {self.completed + self.failed} of {self.total} page(s)",
            current=self.completed + self.failed,
            total=self.total,
            percentage=self._scraping_percentage(),
            metadata={"metrics": metrics.model_dump()},
        )
