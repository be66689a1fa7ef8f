"""
Shared fakes for unit tests.

- FakeConnection / FakeConnector: in-memory stand-in for a WebSocket
- FakeEngine / FakeEngineFactory: records every page primitive it receives
- FakeCapture: records start/stop, emits only when told to
"""

import asyncio
import json
from typing import Any, Callable, Optional

import pytest
from websockets.exceptions import ConnectionClosed

from gleip_runner.browser.capture import CaptureStrategy
from gleip_runner.browser.engine import BrowserEngine, LaunchProfile, NetworkObserver
from gleip_runner.identity import RunnerIdentity

_CLOSE = object()


class FakeConnection:
    """Async-iterable connection; tests feed inbound frames with feed()."""

    def __init__(self, url: str = ""):
        self.url = url
        self.sent: list[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(data)

    def feed(self, message: Any) -> None:
        """Queue an inbound frame (dicts are JSON-encoded)."""
        self._inbox.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item

    def messages(self, message_type: Optional[str] = None) -> list[dict]:
        decoded = [json.loads(raw) for raw in self.sent]
        if message_type is None:
            return decoded
        return [m for m in decoded if m["type"] == message_type]


class FakeConnector:
    """Connector that hands out FakeConnections and remembers them."""

    def __init__(self, fail: Optional[Exception] = None):
        self.fail = fail
        self.connections: list[FakeConnection] = []

    async def __call__(self, url: str) -> FakeConnection:
        if self.fail is not None:
            raise self.fail
        connection = FakeConnection(url)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class FakeEngine(BrowserEngine):
    def __init__(
        self,
        fail_launch: Optional[Exception] = None,
        launch_delay: float = 0,
        fail_navigate: Optional[Exception] = None,
    ):
        super().__init__()
        self.fail_launch = fail_launch
        self.launch_delay = launch_delay
        self.fail_navigate = fail_navigate
        self.launching = False
        self.profile: Optional[LaunchProfile] = None
        self.calls: list[tuple] = []
        self.observer: Optional[NetworkObserver] = None
        self.closed = False
        self.screenshot_data = b"\xff\xd8fake-jpeg"

    async def launch(self, profile: LaunchProfile) -> None:
        self.profile = profile
        self.launching = True
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        if self.fail_launch is not None:
            raise self.fail_launch

    async def navigate(self, url: str, timeout_ms: int) -> None:
        self.calls.append(("navigate", url))
        if self.fail_navigate is not None:
            raise self.fail_navigate

    async def reload(self, timeout_ms: int) -> None:
        self.calls.append(("reload",))

    async def screenshot(self, quality: int) -> bytes:
        self.calls.append(("screenshot", quality))
        return self.screenshot_data

    async def click(self, x: float, y: float, button: str = "left") -> None:
        self.calls.append(("click", x, y, button))

    async def dblclick(self, x: float, y: float) -> None:
        self.calls.append(("dblclick", x, y))

    async def move(self, x: float, y: float) -> None:
        self.calls.append(("move", x, y))

    async def wheel(self, delta_x: float, delta_y: float) -> None:
        self.calls.append(("wheel", delta_x, delta_y))

    async def key_down(self, key: str) -> None:
        self.calls.append(("key_down", key))

    async def key_up(self, key: str) -> None:
        self.calls.append(("key_up", key))

    async def type_text(self, text: str) -> None:
        self.calls.append(("type_text", text))

    def observe_network(self, observer: NetworkObserver) -> None:
        self.observer = observer

    def unobserve_network(self, observer: NetworkObserver) -> None:
        if self.observer is observer:
            self.observer = None

    async def close(self) -> None:
        self.closed = True

    def simulate_external_close(self) -> None:
        self._notify_external_close()

    def input_calls(self) -> list[tuple]:
        return [c for c in self.calls if c[0] != "screenshot"]


class FakeEngineFactory:
    def __init__(self, fail_launch: Optional[Exception] = None):
        self.fail_launch = fail_launch
        self.launch_delay: float = 0
        self.fail_navigate: Optional[Exception] = None
        self.engines: list[FakeEngine] = []

    def __call__(self) -> FakeEngine:
        engine = FakeEngine(
            fail_launch=self.fail_launch,
            launch_delay=self.launch_delay,
            fail_navigate=self.fail_navigate,
        )
        self.engines.append(engine)
        return engine

    @property
    def last(self) -> FakeEngine:
        return self.engines[-1]


class FakeCapture(CaptureStrategy):
    def __init__(self, acknowledges_start: bool = False):
        self.acknowledges_start = acknowledges_start
        self.session = None
        self.emit = None
        self.started = False
        self.stopped = False

    async def start(self, session, emit) -> None:
        self.session = session
        self.emit = emit
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


class FakeCaptureFactory:
    def __init__(self, acknowledges_start: bool = False):
        self.acknowledges_start = acknowledges_start
        self.captures: list[FakeCapture] = []

    def __call__(self) -> FakeCapture:
        capture = FakeCapture(self.acknowledges_start)
        self.captures.append(capture)
        return capture


async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    """Poll until predicate() is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def engine_factory():
    return FakeEngineFactory()


@pytest.fixture
def capture_factory():
    return FakeCaptureFactory()


@pytest.fixture
def identity():
    return RunnerIdentity(runner_id="host-deadbeef", token="secret-token")


@pytest.fixture
def acking_capture_factory():
    return FakeCaptureFactory(acknowledges_start=True)


@pytest.fixture
def failing_connector():
    return FakeConnector(fail=OSError("Connection refused"))
