"""
Capture Strategies

Stream an active session's observable activity outward:
- FrameCapture: periodic JPEG screenshots (browser:frame)
- TrafficCapture: one event per finished or failed in-page request (browser:traffic)

The browser channel only sees the CaptureStrategy interface; which one runs
is a deployment setting.
"""

import asyncio
import base64
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from ..config import RunnerConfig
from ..errors import NoActivePageError
from ..protocol import (
    BrowserFrame,
    BrowserTraffic,
    CaptureEvent,
    TrafficRequest,
    TrafficResponse,
)
from .engine import NetworkObserver
from .session import BrowserSession

logger = logging.getLogger(__name__)

Emit = Callable[[CaptureEvent], Awaitable[None]]


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class CaptureStrategy(ABC):
    """
    Pluggable capture mechanism.

    Attributes:
        acknowledges_start: The channel sends an explicit started Ack when
            True; otherwise the first emitted event signals readiness.
    """

    acknowledges_start: bool = False

    @abstractmethod
    async def start(self, session: BrowserSession, emit: Emit) -> None:
        """Begin emitting events for an active session."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop emitting. No event is emitted once this returns."""


class FrameCapture(CaptureStrategy):
    """Captures a JPEG of the page every interval until stopped."""

    def __init__(self, interval_ms: int = 200, quality: int = 60):
        self.interval_ms = interval_ms
        self.quality = quality
        self._task: Optional[asyncio.Task] = None

    async def start(self, session: BrowserSession, emit: Emit) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(session, emit))

    async def _run(self, session: BrowserSession, emit: Emit) -> None:
        loop = asyncio.get_running_loop()
        interval = self.interval_ms / 1000

        while session.is_active:
            started = loop.time()
            try:
                frame = await session.capture_frame(self.quality)
            except NoActivePageError:
                break
            except Exception as e:
                logger.error(f"Frame capture error: {e}")
            else:
                await emit(
                    BrowserFrame(
                        session_id=session.session_id,
                        data=base64.b64encode(frame).decode("ascii"),
                    )
                )
            await asyncio.sleep(max(0.0, interval - (loop.time() - started)))

    async def stop(self) -> None:
        task, self._task = self._task, None
        await _cancel(task)


class TrafficCapture(CaptureStrategy, NetworkObserver):
    """
    Emits one traffic event per completed or failed request.

    Engine callbacks only record timestamps and enqueue; a single pump task
    turns queued events into messages, so emission order follows the order
    in which the engine reported them. Start timestamps are kept only while
    a request is in flight.
    """

    acknowledges_start = True

    def __init__(self) -> None:
        self._session: Optional[BrowserSession] = None
        self._emit: Optional[Emit] = None
        self._queue: Optional[asyncio.Queue] = None
        self._pump: Optional[asyncio.Task] = None
        self._timings: dict[Any, float] = {}

    @property
    def in_flight(self) -> int:
        """Number of requests with a recorded start time."""
        return len(self._timings)

    async def start(self, session: BrowserSession, emit: Emit) -> None:
        if self._queue is not None:
            return
        self._session = session
        self._emit = emit
        self._queue = asyncio.Queue()
        session.observe_network(self)
        self._pump = asyncio.create_task(self._run(self._queue))

    async def stop(self) -> None:
        self._queue = None
        if self._session is not None:
            self._session.unobserve_network(self)
            self._session = None
        self._timings.clear()
        pump, self._pump = self._pump, None
        await _cancel(pump)

    # NetworkObserver callbacks

    def on_request(self, request: Any) -> None:
        if self._queue is not None:
            self._timings[request] = time.monotonic()

    def on_response(self, response: Any) -> None:
        if self._queue is not None:
            self._queue.put_nowait(("response", response, time.monotonic()))

    def on_request_failed(self, request: Any) -> None:
        if self._queue is not None:
            self._queue.put_nowait(("failed", request, time.monotonic()))

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            kind, target, at = await queue.get()
            try:
                if kind == "response":
                    event = await self._response_event(target, at)
                else:
                    event = self._failure_event(target)
            except Exception as e:
                logger.error(f"Failed to build traffic event: {e}")
                continue

            # Stopped while the body was being read
            if self._queue is not queue or self._emit is None:
                return
            await self._emit(event)

    def _elapsed_ms(self, request: Any, at: float) -> int:
        started = self._timings.pop(request, None)
        if started is None:
            return 0
        return int((at - started) * 1000)

    async def _response_event(self, response: Any, at: float) -> BrowserTraffic:
        request = response.request
        time_ms = self._elapsed_ms(request, at)

        body: Optional[str] = None
        try:
            body = (await response.body()).decode("utf-8", errors="replace")
        except Exception as e:
            # Redirects, aborted loads and some resource types carry no body
            logger.debug(f"Response body unavailable for {request.url}: {e}")

        return BrowserTraffic(
            session_id=self._session_id,
            request=self._request_info(request),
            response=TrafficResponse(
                status=response.status,
                status_text=response.status_text or "",
                headers=dict(response.headers),
                body=body,
                time_ms=time_ms,
            ),
        )

    def _failure_event(self, request: Any) -> BrowserTraffic:
        self._timings.pop(request, None)
        error = request.failure or "Request failed"

        return BrowserTraffic(
            session_id=self._session_id,
            request=self._request_info(request),
            error=error,
            timed_out="timeout" in error.lower(),
        )

    @property
    def _session_id(self) -> str:
        return self._session.session_id if self._session else ""

    @staticmethod
    def _request_info(request: Any) -> TrafficRequest:
        try:
            post_data = request.post_data
        except Exception as e:
            logger.debug(f"Request body unavailable for {request.url}: {e}")
            post_data = None

        return TrafficRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers),
            body=post_data,
        )


def create_capture_strategy(config: RunnerConfig) -> CaptureStrategy:
    """Build a fresh capture strategy for the configured mode."""
    if config.capture_mode == "traffic":
        return TrafficCapture()
    return FrameCapture(interval_ms=config.frame_interval_ms, quality=config.jpeg_quality)
