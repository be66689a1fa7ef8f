"""
Control Channel

Single point of contact with the control plane. Sends hello and result
frames, dispatches execute / browser:start / browser:stop, and owns the
(at most one) browser channel.

HTTP jobs run as independent tasks so a slow job never delays message
handling. Browser commands go through one worker queue, so they are
applied in arrival order without blocking jobs.
"""

import asyncio
import contextlib
import logging
import time
from functools import partial
from typing import Any, Optional, Union

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from .browser.capture import create_capture_strategy
from .browser.channel import BrowserChannel, CaptureFactory, Connector
from .browser.engine import create_engine
from .browser.session import BrowserSession, EngineFactory
from .config import RunnerConfig
from .errors import ChannelClosedError, HttpExecutionError, MessageDecodeError
from .identity import RunnerIdentity
from .jobs.executor import HttpExecutor
from .protocol import (
    SERVER_MESSAGES,
    BrowserStart,
    BrowserStop,
    Execute,
    Hello,
    HttpResponsePayload,
    Result,
    WireModel,
    decode_message,
)

logger = logging.getLogger(__name__)

# Worker-queue marker: run the pending browser:start
RUN_PENDING_START = object()


class ControlChannel:
    """
    Primary control-plane connection.

    Usage:
        >>> control = ControlChannel(RunnerIdentity.create(token), RunnerConfig.from_env())
        >>> await control.run()  # returns when the server closes the connection
    """

    def __init__(
        self,
        identity: RunnerIdentity,
        config: Optional[RunnerConfig] = None,
        executor: Optional[HttpExecutor] = None,
        connector: Connector = connect,
        browser_connector: Optional[Connector] = None,
        engine_factory: Optional[EngineFactory] = None,
        capture_factory: Optional[CaptureFactory] = None,
    ):
        """
        Initialize the control channel.

        Args:
            identity: Runner identity sent in hello
            config: Deployment configuration (uses env if None)
            executor: HTTP executor (one is created if None)
            connector: Opens the primary WebSocket
            browser_connector: Opens browser channels (defaults to connector)
            engine_factory: Creates browser engines (defaults to config engine)
            capture_factory: Creates capture strategies (defaults to config mode)
        """
        self.identity = identity
        self.config = config or RunnerConfig.from_env()
        self.server_url = self.config.server_url

        self._executor = executor or HttpExecutor(default_timeout_ms=self.config.http_timeout_ms)
        self._connector = connector
        self._browser_connector = browser_connector or connector
        self._engine_factory = engine_factory or partial(create_engine, self.config)
        self._capture_factory = capture_factory or partial(create_capture_strategy, self.config)

        self._connection: Optional[Any] = None
        self._jobs: dict[str, asyncio.Task] = {}

        self._browser_channel: Optional[BrowserChannel] = None
        self._browser_connect_task: Optional[asyncio.Task] = None
        self._pending_start: Optional[BrowserStart] = None
        self._commands: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    @property
    def browser_channel(self) -> Optional[BrowserChannel]:
        return self._browser_channel

    @property
    def pending_start(self) -> Optional[BrowserStart]:
        return self._pending_start

    @property
    def jobs_in_flight(self) -> int:
        return len(self._jobs)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the primary connection and send hello."""
        self._connection = await self._connector(self.server_url)
        logger.info(f"Connected to {self.server_url}")

        if self._worker is None:
            self._worker = asyncio.create_task(self._command_worker())

        await self._send(
            Hello(
                runner_id=self.identity.runner_id,
                token=self.identity.token,
                version=self.identity.version,
                capabilities=list(self.identity.capabilities),
            )
        )

    async def run(self) -> None:
        """Connect, serve until the connection closes, then clean up."""
        await self.connect()
        try:
            await self.serve()
        finally:
            await self.disconnect()

    async def serve(self) -> None:
        """Dispatch inbound frames until the connection closes."""
        connection = self._connection
        if connection is None:
            return
        try:
            async for raw in connection:
                await self.dispatch(raw)
        except ConnectionClosed as e:
            logger.warning(f"Connection error: {e}")
        logger.info("Disconnected from server")

    async def disconnect(self) -> None:
        """
        Release everything in dependency order: browser commands in flight
        (a half-started session is stopped by its own cleanup), browser
        channel and its session, then jobs, then the primary connection.
        """
        channel = self._browser_channel
        self._browser_channel = None
        self._pending_start = None

        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

        connect_task, self._browser_connect_task = self._browser_connect_task, None
        if connect_task is not None and not connect_task.done():
            connect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await connect_task

        if channel is not None:
            await channel.disconnect()
            channel.unregister_handlers()

        jobs = list(self._jobs.values())
        for task in jobs:
            task.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)

        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()

        await self._executor.aclose()

    async def dispatch(self, raw: Union[str, bytes]) -> None:
        """Decode one inbound frame and route it."""
        try:
            message = decode_message(raw, SERVER_MESSAGES)
        except MessageDecodeError as e:
            logger.error(f"Failed to parse message: {e}")
            return

        if isinstance(message, Execute):
            self.handle_execute(message)
        elif isinstance(message, (BrowserStart, BrowserStop)):
            self._commands.put_nowait(message)

    async def _send(self, message: WireModel) -> None:
        connection = self._connection
        if connection is None:
            return
        try:
            await connection.send(message.to_json())
        except ConnectionClosed:
            logger.warning(f"Connection closed, dropping {message.type}")

    # ------------------------------------------------------------------
    # HTTP jobs
    # ------------------------------------------------------------------

    def handle_execute(self, job: Execute) -> Optional[asyncio.Task]:
        """
        Start a job in the background.

        Returns:
            The job task, or None if a job with the same id is in flight
        """
        if job.job_id in self._jobs:
            logger.warning(f"Job {job.job_id} is already running, ignoring duplicate")
            return None

        received = time.monotonic()
        task = asyncio.create_task(self._run_job(job, received))
        self._jobs[job.job_id] = task
        task.add_done_callback(partial(self._job_done, job.job_id))
        return task

    def _job_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._jobs.get(job_id) is task:
            del self._jobs[job_id]

    async def _run_job(self, job: Execute, received: float) -> None:
        logger.info(f"Executing job {job.job_id}: {job.request.method} {job.request.url}")

        if job.kind != "http":
            result = Result(job_id=job.job_id, status="error", error=f"Unsupported job kind: {job.kind}")
        else:
            try:
                response = await self._executor.execute(job.request, job.options, job.timeout_ms)
                result = Result(
                    job_id=job.job_id,
                    status="success",
                    response=HttpResponsePayload(
                        status=response.status,
                        headers=response.headers,
                        body=response.body,
                        time_ms=int((time.monotonic() - received) * 1000),
                    ),
                )
            except HttpExecutionError as e:
                result = Result(job_id=job.job_id, status="error", error=str(e))
            except Exception as e:
                logger.exception(f"Unexpected error in job {job.job_id}")
                result = Result(job_id=job.job_id, status="error", error=str(e) or type(e).__name__)

        await self._send(result)
        logger.info(f"Job {job.job_id} completed with status: {result.status}")

    # ------------------------------------------------------------------
    # Browser commands
    # ------------------------------------------------------------------

    async def _command_worker(self) -> None:
        while True:
            command = await self._commands.get()
            try:
                if isinstance(command, BrowserStart):
                    await self.handle_browser_start(command)
                elif isinstance(command, BrowserStop):
                    await self.handle_browser_stop(command)
                elif command is RUN_PENDING_START:
                    await self._start_pending()
            except Exception as e:
                logger.error(f"Browser command failed: {e}")
            finally:
                self._commands.task_done()

    async def join_browser_commands(self) -> None:
        """Wait until every queued browser command has been handled."""
        await self._commands.join()

    async def handle_browser_start(self, message: BrowserStart) -> None:
        logger.info(f"Browser start request for session {message.session_id}")

        channel = self._browser_channel
        if channel is not None and channel.session is not None and channel.session.is_active:
            logger.info("Browser session already active, ignoring start request")
            return

        self._pending_start = message

        if channel is None:
            channel = BrowserChannel(
                self.server_url,
                self.identity,
                message.session_id,
                self._capture_factory,
                connector=self._browser_connector,
            )
            channel.register_handlers(
                self._on_browser_connected,
                partial(self._on_browser_disconnected, channel),
            )
            self._browser_channel = channel
            self._browser_connect_task = asyncio.create_task(self._open_browser_channel(channel))
        elif channel.is_connected:
            await self._start_pending()

    async def _open_browser_channel(self, channel: BrowserChannel) -> None:
        try:
            await channel.connect()
        except Exception as e:
            logger.error(f"Failed to connect browser channel: {e}")
            channel.unregister_handlers()
            if self._browser_channel is channel:
                self._browser_channel = None
                self._pending_start = None

    async def _on_browser_connected(self) -> None:
        if self._pending_start is not None:
            self._commands.put_nowait(RUN_PENDING_START)

    def _on_browser_disconnected(self, channel: BrowserChannel) -> None:
        if self._browser_channel is not channel:
            return
        logger.info("Browser channel disconnected")
        self._browser_channel = None
        self._pending_start = None

    async def _start_pending(self) -> None:
        message = self._pending_start
        channel = self._browser_channel
        if message is None or channel is None or not channel.is_connected:
            return

        session = BrowserSession(
            message.session_id,
            message.options,
            engine_factory=self._engine_factory,
            navigation_timeout_ms=self.config.navigation_timeout_ms,
            force_headless=self.config.force_headless,
            browser_channel=self.config.browser_channel,
        )

        attached = False
        try:
            await session.start()
            # The channel may have dropped while the browser was launching
            if self._browser_channel is not channel or not channel.is_connected:
                raise ChannelClosedError()
            await channel.attach_session(session)
            attached = True
            logger.info(f"Browser session {message.session_id} started successfully")
        except Exception as e:
            logger.error(f"Failed to start browser: {e}")
            await channel.send_ack(message.session_id, "error", str(e) or type(e).__name__)
        finally:
            # Also runs when disconnect() cancels a start in progress
            if not attached:
                if channel.session is session:
                    await channel.detach_session()
                await session.stop()
            if self._pending_start is message:
                self._pending_start = None

    async def handle_browser_stop(self, message: BrowserStop) -> None:
        logger.info(f"Browser stop request for session {message.session_id}")

        channel = self._browser_channel
        if channel is None:
            logger.info("No browser channel connection")
            return

        session = channel.session
        if session is not None and session.session_id == message.session_id:
            await channel.detach_session()
            await channel.send_ack(message.session_id, "stopped")
            logger.info(f"Browser session {message.session_id} stopped")
        else:
            logger.info(f"Session {message.session_id} not found or mismatch")
