"""
Browser Channel

Secondary WebSocket connection scoped to a browser session. Authenticates
with browser:hello, forwards browser:input to the attached session and
relays its capture events outward.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlsplit, urlunsplit

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from ..errors import ChannelClosedError, MessageDecodeError
from ..identity import RunnerIdentity
from ..protocol import (
    BROWSER_MESSAGES,
    BrowserAck,
    BrowserClosed,
    BrowserHello,
    BrowserInput,
    CaptureEvent,
    WireModel,
    decode_message,
    parse_input_action,
)
from .capture import CaptureStrategy
from .session import BrowserSession

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
CaptureFactory = Callable[[], CaptureStrategy]
ConnectedHandler = Callable[[], Awaitable[None]]
DisconnectedHandler = Callable[[], None]


def browser_channel_url(server_url: str) -> str:
    """Derive the browser channel URL: wss://host/ws/runner -> wss://host/ws/runner/browser."""
    parts = urlsplit(server_url)
    path = parts.path.rstrip("/") + "/browser"
    return urlunsplit(parts._replace(path=path))


class BrowserChannel:
    """
    Owns the browser WebSocket and at most one attached session.

    Usage:
        >>> channel = BrowserChannel(server_url, identity, "s-1", capture_factory)
        >>> channel.register_handlers(on_connected, on_disconnected)
        >>> await channel.connect()
        >>> await channel.attach_session(session)
        >>> await channel.disconnect()
    """

    def __init__(
        self,
        server_url: str,
        identity: RunnerIdentity,
        session_id: str,
        capture_factory: CaptureFactory,
        connector: Connector = connect,
    ):
        """
        Initialize the channel (not connected yet).

        Args:
            server_url: Primary control-plane URL
            identity: Runner identity used for browser:hello
            session_id: Session this channel was opened for
            capture_factory: Builds a fresh capture strategy per attach
            connector: Opens the WebSocket (tests inject a fake)
        """
        self.url = browser_channel_url(server_url)
        self.identity = identity
        self.session_id = session_id

        self._capture_factory = capture_factory
        self._connector = connector

        self._connection: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self._closed = False

        self._session: Optional[BrowserSession] = None
        self._capture: Optional[CaptureStrategy] = None

        self._on_connected: Optional[ConnectedHandler] = None
        self._on_disconnected: Optional[DisconnectedHandler] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._closed

    @property
    def session(self) -> Optional[BrowserSession]:
        """The attached session, if any."""
        return self._session

    def register_handlers(
        self,
        on_connected: ConnectedHandler,
        on_disconnected: DisconnectedHandler,
    ) -> None:
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected

    def unregister_handlers(self) -> None:
        self._on_connected = None
        self._on_disconnected = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection, authenticate, then notify the owner."""
        if self._connection is not None:
            logger.info("Browser channel already connected")
            return

        logger.info(f"Connecting browser channel to {self.url}")
        connection = await self._connector(self.url)
        self._connection = connection
        logger.info("Browser channel connected")

        # browser:hello must precede any other traffic
        await self._send(
            BrowserHello(
                runner_id=self.identity.runner_id,
                token=self.identity.token,
                session_id=self.session_id,
            )
        )
        self._reader = asyncio.create_task(self._read_loop(connection))

        if self._on_connected is not None:
            await self._on_connected()

    async def disconnect(self) -> None:
        """Tear down the attached session, then close the connection."""
        await self.detach_session()

        connection = self._connection
        if connection is not None:
            await connection.close()

        if self._reader is not None:
            await self._reader
        else:
            await self._handle_close()

    async def _read_loop(self, connection: Any) -> None:
        try:
            async for raw in connection:
                await self._handle_frame(raw)
        except ConnectionClosed as e:
            logger.warning(f"Browser channel closed: {e}")
        except Exception as e:
            logger.error(f"Browser channel error: {e}")
        finally:
            await self._handle_close()

    async def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("Browser channel disconnected, cleaning up browser session")

        try:
            await self.detach_session()
        except Exception as e:
            logger.error(f"Error stopping session during cleanup: {e}")
        self._connection = None

        if self._on_disconnected is not None:
            self._on_disconnected()

    async def _handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            message = decode_message(raw, BROWSER_MESSAGES)
        except MessageDecodeError as e:
            logger.error(f"Failed to parse browser channel message: {e}")
            return

        if isinstance(message, BrowserInput):
            await self._handle_input(message)

    async def _handle_input(self, message: BrowserInput) -> None:
        session = self._session
        if session is None or session.session_id != message.session_id or not session.is_active:
            logger.debug(f"Dropping input for inactive session {message.session_id}")
            return

        if message.action is None:
            logger.warning("Received browser:input message without action")
            return

        try:
            await session.handle_input(parse_input_action(message.action))
        except Exception as e:
            logger.error(f"Input handling error: {e}")

    # ------------------------------------------------------------------
    # Session attachment
    # ------------------------------------------------------------------

    async def attach_session(self, session: BrowserSession) -> None:
        """
        Attach a started session and begin capture.

        Any previously attached session is stopped first. The initial
        navigation runs after capture is wired so its traffic is observed;
        once readiness is signaled a failed navigation is only logged, like
        a failed navigate input.

        Raises:
            ChannelClosedError: the connection is gone (the caller still
                owns the session and must stop it)
        """
        if not self.is_connected:
            raise ChannelClosedError()

        if self._session is not None:
            logger.info("Detaching existing session before attaching new one")
            await self.detach_session()

        self._session = session
        session.add_close_handler(self._on_session_closed)

        capture = self._capture_factory()
        self._capture = capture
        await capture.start(session, self._emit)

        if self._session is not session or not self.is_connected:
            # Connection dropped while capture was starting
            raise ChannelClosedError()

        if capture.acknowledges_start:
            await self.send_ack(session.session_id, "started")

        try:
            await session.navigate_initial()
        except Exception as e:
            logger.warning(f"Initial navigation for session {session.session_id} failed: {e}")

    async def detach_session(self) -> None:
        """Stop capture and the session. No-op when nothing is attached."""
        session, self._session = self._session, None
        capture, self._capture = self._capture, None

        try:
            if capture is not None:
                await capture.stop()
        finally:
            if session is not None:
                session.remove_close_handler(self._on_session_closed)
                await session.stop()

    def _on_session_closed(self, session: BrowserSession) -> None:
        if session is not self._session:
            return

        capture = self._capture
        self._session = None
        self._capture = None
        session.remove_close_handler(self._on_session_closed)

        task = asyncio.get_running_loop().create_task(self._session_terminated(session, capture))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _session_terminated(
        self,
        session: BrowserSession,
        capture: Optional[CaptureStrategy],
    ) -> None:
        if capture is not None:
            await capture.stop()
        await self._send(BrowserClosed(session_id=session.session_id))

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_ack(
        self,
        session_id: str,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        await self._send(BrowserAck(session_id=session_id, status=status, error=error))

    async def _emit(self, event: CaptureEvent) -> None:
        await self._send(event)

    async def _send(self, message: WireModel) -> None:
        connection = self._connection
        if connection is None or self._closed:
            return
        try:
            await connection.send(message.to_json())
        except ConnectionClosed:
            logger.debug(f"Browser channel closed, dropping {message.type}")
