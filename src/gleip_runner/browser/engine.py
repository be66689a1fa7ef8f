"""
Browser Engine

Narrow capability interface over the browser automation engine, and its
Playwright-API bindings. Rendering, navigation and automation-detection
evasion belong to the engine; sessions only drive it through these
primitives. The default binding drives patchright, a stealth-patched
Playwright build; stock Playwright stays available for debugging.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from patchright.async_api import async_playwright as patchright_driver
from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Page,
    Playwright,
)

from ..config import RunnerConfig
from ..errors import NoActivePageError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

DEFAULT_LAUNCH_ARGS = (
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
)

# Chromium defaults that expose automation to page scripts
STEALTH_IGNORED_DEFAULT_ARGS = (
    "--enable-automation",
    "--disable-popup-blocking",
    "--disable-component-update",
    "--disable-default-apps",
    "--disable-extensions",
)

CloseHandler = Callable[[], None]


@dataclass(frozen=True)
class LaunchProfile:
    """
    Fixed automation profile for a browser session.

    Only viewport, headless mode and channel vary between sessions.
    """

    headless: bool = True
    viewport_width: int = 1280
    viewport_height: int = 800
    user_agent: str = DEFAULT_USER_AGENT
    locale: str = "en-US"
    timezone_id: str = "America/New_York"
    latitude: float = 40.7128
    longitude: float = -74.006
    channel: Optional[str] = None
    args: tuple[str, ...] = DEFAULT_LAUNCH_ARGS


class NetworkObserver(ABC):
    """Receives in-page network events. Callbacks must not block."""

    @abstractmethod
    def on_request(self, request: Any) -> None: ...

    @abstractmethod
    def on_response(self, response: Any) -> None: ...

    @abstractmethod
    def on_request_failed(self, request: Any) -> None: ...


class BrowserEngine(ABC):
    """
    One browser instance with one page.

    External-close handlers fire when the browser or page goes away without
    close() having been called (e.g. the window was closed by hand).
    """

    def __init__(self) -> None:
        self._close_handlers: list[CloseHandler] = []

    def add_close_handler(self, handler: CloseHandler) -> None:
        if handler not in self._close_handlers:
            self._close_handlers.append(handler)

    def remove_close_handler(self, handler: CloseHandler) -> None:
        if handler in self._close_handlers:
            self._close_handlers.remove(handler)

    def _notify_external_close(self) -> None:
        for handler in list(self._close_handlers):
            try:
                handler()
            except Exception as e:
                logger.error(f"External close handler failed: {e}")

    @abstractmethod
    async def launch(self, profile: LaunchProfile) -> None: ...

    @abstractmethod
    async def navigate(self, url: str, timeout_ms: int) -> None: ...

    @abstractmethod
    async def reload(self, timeout_ms: int) -> None: ...

    @abstractmethod
    async def screenshot(self, quality: int) -> bytes: ...

    @abstractmethod
    async def click(self, x: float, y: float, button: str = "left") -> None: ...

    @abstractmethod
    async def dblclick(self, x: float, y: float) -> None: ...

    @abstractmethod
    async def move(self, x: float, y: float) -> None: ...

    @abstractmethod
    async def wheel(self, delta_x: float, delta_y: float) -> None: ...

    @abstractmethod
    async def key_down(self, key: str) -> None: ...

    @abstractmethod
    async def key_up(self, key: str) -> None: ...

    @abstractmethod
    async def type_text(self, text: str) -> None: ...

    @abstractmethod
    def observe_network(self, observer: NetworkObserver) -> None: ...

    @abstractmethod
    def unobserve_network(self, observer: NetworkObserver) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class PlaywrightEngine(BrowserEngine):
    """
    Playwright-backed engine (Chromium).

    Usage:
        >>> engine = PlaywrightEngine()
        >>> await engine.launch(LaunchProfile(headless=True))
        >>> await engine.navigate("https://example.com", timeout_ms=30000)
        >>> await engine.close()
    """

    driver = staticmethod(async_playwright)

    def __init__(self) -> None:
        super().__init__()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._closing = False

    @property
    def page(self) -> Page:
        if self._page is None or self._closing:
            raise NoActivePageError()
        return self._page

    async def launch(self, profile: LaunchProfile) -> None:
        if self._playwright is not None:
            raise RuntimeError("Browser already launched")

        self._playwright = await self.driver().start()
        self._browser = await self._playwright.chromium.launch(**self.launch_options(profile))
        self._context = await self._browser.new_context(
            viewport={
                "width": profile.viewport_width,
                "height": profile.viewport_height,
            },
            user_agent=profile.user_agent,
            device_scale_factor=1,
            has_touch=False,
            is_mobile=False,
            java_script_enabled=True,
            locale=profile.locale,
            timezone_id=profile.timezone_id,
            permissions=["geolocation"],
            geolocation={"latitude": profile.latitude, "longitude": profile.longitude},
        )
        self._page = await self._context.new_page()

        self._browser.on("disconnected", self._on_gone)
        self._page.on("close", self._on_gone)

    def launch_options(self, profile: LaunchProfile) -> dict[str, Any]:
        options: dict[str, Any] = {
            "headless": profile.headless,
            "args": list(profile.args),
        }
        if profile.channel:
            options["channel"] = profile.channel
        return options

    def _on_gone(self, _target: Any) -> None:
        if self._closing:
            return
        self._closing = True
        logger.info("Browser closed outside of an explicit stop")
        self._notify_external_close()

    async def navigate(self, url: str, timeout_ms: int) -> None:
        await self.page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

    async def reload(self, timeout_ms: int) -> None:
        await self.page.reload(wait_until="domcontentloaded", timeout=timeout_ms)

    async def screenshot(self, quality: int) -> bytes:
        return await self.page.screenshot(type="jpeg", quality=quality)

    async def click(self, x: float, y: float, button: str = "left") -> None:
        await self.page.mouse.click(x, y, button=button)

    async def dblclick(self, x: float, y: float) -> None:
        await self.page.mouse.dblclick(x, y)

    async def move(self, x: float, y: float) -> None:
        await self.page.mouse.move(x, y)

    async def wheel(self, delta_x: float, delta_y: float) -> None:
        await self.page.mouse.wheel(delta_x, delta_y)

    async def key_down(self, key: str) -> None:
        await self.page.keyboard.down(key)

    async def key_up(self, key: str) -> None:
        await self.page.keyboard.up(key)

    async def type_text(self, text: str) -> None:
        await self.page.keyboard.type(text)

    def observe_network(self, observer: NetworkObserver) -> None:
        page = self.page
        page.on("request", observer.on_request)
        page.on("response", observer.on_response)
        page.on("requestfailed", observer.on_request_failed)

    def unobserve_network(self, observer: NetworkObserver) -> None:
        if self._page is None:
            return
        for event, listener in (
            ("request", observer.on_request),
            ("response", observer.on_response),
            ("requestfailed", observer.on_request_failed),
        ):
            try:
                self._page.remove_listener(event, listener)
            except KeyError:
                logger.debug(f"No {event} listener registered")

    async def close(self) -> None:
        """Close the browser and release Playwright. Safe to call twice."""
        self._closing = True

        if self._context:
            try:
                await self._context.close()
            except Exception as e:
                logger.debug(f"Context close failed: {e}")
            self._context = None

        if self._browser:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug(f"Browser close failed: {e}")
            self._browser = None

        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"Playwright stop failed: {e}")
            self._playwright = None

        self._page = None


class PatchrightEngine(PlaywrightEngine):
    """
    Stealth engine: same API, driven by patchright's patched Chromium.

    Patchright closes the Runtime.enable and navigator.webdriver leaks;
    the automation-revealing default switches are dropped on top of that.
    """

    driver = staticmethod(patchright_driver)

    def launch_options(self, profile: LaunchProfile) -> dict[str, Any]:
        options = super().launch_options(profile)
        options["ignore_default_args"] = list(STEALTH_IGNORED_DEFAULT_ARGS)
        return options


ENGINES: dict[str, type[PlaywrightEngine]] = {
    "patchright": PatchrightEngine,
    "playwright": PlaywrightEngine,
}


def create_engine(config: RunnerConfig) -> BrowserEngine:
    """Build an engine of the configured kind."""
    return ENGINES[config.browser_engine]()
