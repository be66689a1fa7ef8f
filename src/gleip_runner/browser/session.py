"""
Browser Session

Lifecycle of one remotely steered browser page:

    created -> starting -> active -> stopping -> stopped

Input replay and screenshots are serialized per session so that mutating
operations never hit the page concurrently.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from ..errors import BrowserStartError, NoActivePageError, SessionStateError
from ..protocol import (
    BrowserStartOptions,
    ClickAction,
    DoubleClickAction,
    InputAction,
    KeyDownAction,
    KeyModifiers,
    KeyUpAction,
    MoveAction,
    NavigateAction,
    RefreshAction,
    ScrollAction,
    TypeAction,
)
from .engine import BrowserEngine, LaunchProfile, NetworkObserver, PatchrightEngine

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], BrowserEngine]
SessionCloseHandler = Callable[["BrowserSession"], None]

DEFAULT_NAVIGATION_TIMEOUT_MS = 30000

# Wire modifier name -> engine key name
MODIFIER_KEYS = (
    ("alt", "Alt"),
    ("ctrl", "Control"),
    ("meta", "Meta"),
    ("shift", "Shift"),
)


class SessionStatus(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"


def _modifier_keys(modifiers: Optional[KeyModifiers]) -> list[str]:
    if modifiers is None:
        return []
    return [key for name, key in MODIFIER_KEYS if getattr(modifiers, name)]


class BrowserSession:
    """
    Owns exactly one engine instance and its page.

    Usage:
        >>> session = BrowserSession("s-1", BrowserStartOptions(url="https://example.com"))
        >>> await session.start()
        >>> await session.navigate_initial()
        >>> await session.handle_input(TypeAction(text="hello"))
        >>> await session.stop()
    """

    def __init__(
        self,
        session_id: str,
        options: Optional[BrowserStartOptions] = None,
        engine_factory: EngineFactory = PatchrightEngine,
        navigation_timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS,
        force_headless: bool = False,
        browser_channel: Optional[str] = None,
    ):
        """
        Initialize a session (no browser is launched yet).

        Args:
            session_id: Control-plane session id
            options: Viewport, headless flag and initial URL
            engine_factory: Creates the engine on start()
            navigation_timeout_ms: Timeout for navigate/refresh
            force_headless: Run headless whatever the options say
            browser_channel: Playwright channel (None = bundled Chromium)
        """
        self.session_id = session_id
        self.options = options or BrowserStartOptions()
        self.status = SessionStatus.CREATED
        self.error: Optional[str] = None

        self._engine_factory = engine_factory
        self._navigation_timeout_ms = navigation_timeout_ms
        self._force_headless = force_headless
        self._browser_channel = browser_channel

        self._engine: Optional[BrowserEngine] = None
        self._lock = asyncio.Lock()
        self._close_handlers: list[SessionCloseHandler] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE and self._engine is not None

    def launch_profile(self) -> LaunchProfile:
        """Build the engine profile from the session options."""
        viewport = self.options.viewport
        headless = True if self.options.headless is None else self.options.headless

        return LaunchProfile(
            headless=headless or self._force_headless,
            viewport_width=viewport.width if viewport else 1280,
            viewport_height=viewport.height if viewport else 800,
            channel=self._browser_channel,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Launch the engine and open the page.

        Raises:
            SessionStateError: not in created/stopped state
            BrowserStartError: engine launch failed (session ends stopped)
        """
        if self.status not in (SessionStatus.CREATED, SessionStatus.STOPPED):
            raise SessionStateError(f"Cannot start session in state {self.status.value}")

        profile = self.launch_profile()
        logger.info(f"Starting browser session {self.session_id} (headless: {profile.headless})")

        self.status = SessionStatus.STARTING
        self.error = None
        engine = self._engine_factory()
        self._engine = engine

        try:
            await engine.launch(profile)
        except Exception as e:
            self.error = str(e) or type(e).__name__
            await self._release(engine)
            self._engine = None
            self.status = SessionStatus.STOPPED
            raise BrowserStartError(self.error) from e
        except asyncio.CancelledError:
            await self._release(engine)
            self._engine = None
            self.status = SessionStatus.STOPPED
            raise

        if self.status is not SessionStatus.STARTING:
            # stop() ran while the engine was launching
            await self._release(engine)
            self.error = "Session stopped during start"
            raise BrowserStartError(self.error)

        engine.add_close_handler(self._on_engine_closed)
        self.status = SessionStatus.ACTIVE
        logger.info(f"Browser session {self.session_id} started")

    async def navigate_initial(self) -> None:
        """Navigate to options.url, if one was given."""
        url = self.options.url
        if not url:
            return
        logger.info(f"Navigating to {url}")
        async with self._lock:
            engine = self._require_engine()
            await engine.navigate(url, self._navigation_timeout_ms)

    async def stop(self) -> None:
        """Close the engine and page. Safe to call repeatedly."""
        if self.status in (SessionStatus.STOPPED, SessionStatus.STOPPING):
            return
        if self.status is SessionStatus.CREATED:
            self.status = SessionStatus.STOPPED
            return

        self.status = SessionStatus.STOPPING
        engine = self._engine
        self._engine = None

        if engine is not None:
            engine.remove_close_handler(self._on_engine_closed)
            await self._release(engine)

        self.status = SessionStatus.STOPPED
        logger.info(f"Browser session {self.session_id} stopped")

    async def _release(self, engine: BrowserEngine) -> None:
        try:
            await engine.close()
        except Exception as e:
            logger.error(f"Error closing browser for session {self.session_id}: {e}")

    def add_close_handler(self, handler: SessionCloseHandler) -> None:
        """Register a callback for browser termination outside stop()."""
        if handler not in self._close_handlers:
            self._close_handlers.append(handler)

    def remove_close_handler(self, handler: SessionCloseHandler) -> None:
        if handler in self._close_handlers:
            self._close_handlers.remove(handler)

    def _on_engine_closed(self) -> None:
        if self.status not in (SessionStatus.STARTING, SessionStatus.ACTIVE):
            return

        logger.warning(f"Browser for session {self.session_id} was closed externally")
        engine = self._engine
        self._engine = None
        self.status = SessionStatus.STOPPED
        self.error = "Browser closed externally"

        if engine is not None:
            engine.remove_close_handler(self._on_engine_closed)
            task = asyncio.get_running_loop().create_task(self._release(engine))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        for handler in list(self._close_handlers):
            handler(self)

    # ------------------------------------------------------------------
    # Page operations
    # ------------------------------------------------------------------

    def _require_engine(self) -> BrowserEngine:
        if not self.is_active:
            raise NoActivePageError()
        return self._engine

    async def capture_frame(self, quality: int = 60) -> bytes:
        """Take a JPEG screenshot of the page."""
        self._require_engine()
        async with self._lock:
            return await self._require_engine().screenshot(quality)

    def observe_network(self, observer: NetworkObserver) -> None:
        self._require_engine().observe_network(observer)

    def unobserve_network(self, observer: NetworkObserver) -> None:
        if self._engine is not None:
            self._engine.unobserve_network(observer)

    async def handle_input(self, action: Optional[InputAction]) -> None:
        """
        Apply one input action to the page.

        Actions are applied one at a time, in call order. None (an
        unknown action kind) is a no-op.

        Raises:
            NoActivePageError: session is not active
        """
        self._require_engine()
        if action is None:
            return

        async with self._lock:
            engine = self._require_engine()

            if isinstance(action, ClickAction):
                await engine.click(action.x, action.y, button=action.button)
            elif isinstance(action, DoubleClickAction):
                await engine.dblclick(action.x, action.y)
            elif isinstance(action, MoveAction):
                await engine.move(action.x, action.y)
            elif isinstance(action, ScrollAction):
                await engine.move(action.x, action.y)
                await engine.wheel(action.delta_x, action.delta_y)
            elif isinstance(action, KeyDownAction):
                for key in _modifier_keys(action.modifiers):
                    await engine.key_down(key)
                await engine.key_down(action.key)
            elif isinstance(action, KeyUpAction):
                await engine.key_up(action.key)
                for key in reversed(_modifier_keys(action.modifiers)):
                    await engine.key_up(key)
            elif isinstance(action, TypeAction):
                await engine.type_text(action.text)
            elif isinstance(action, NavigateAction):
                logger.info(f"Navigating to: {action.url}")
                await engine.navigate(action.url, self._navigation_timeout_ms)
            elif isinstance(action, RefreshAction):
                await engine.reload(self._navigation_timeout_ms)
