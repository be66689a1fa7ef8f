"""
Unit tests for BrowserChannel.

The WebSocket is a FakeConnection; sessions run on FakeEngine.
"""

import asyncio

import pytest
import pytest_asyncio

from gleip_runner.browser import BrowserChannel, BrowserSession, TrafficCapture, browser_channel_url
from gleip_runner.errors import ChannelClosedError
from gleip_runner.protocol import BrowserFrame, BrowserStartOptions

SERVER = "wss://control.example/ws/runner"


class TestChannelUrl:
    @pytest.mark.parametrize(
        "server, expected",
        [
            ("wss://app.gleip.io/ws/runner", "wss://app.gleip.io/ws/runner/browser"),
            ("ws://localhost:8080/ws/runner/", "ws://localhost:8080/ws/runner/browser"),
            ("wss://host/runner?region=eu", "wss://host/runner/browser?region=eu"),
        ],
    )
    def test_browser_suffix(self, server, expected):
        assert browser_channel_url(server) == expected


@pytest.fixture
def make_channel(identity, connector, capture_factory):
    def _make(session_id: str = "s-1", factory=None) -> BrowserChannel:
        return BrowserChannel(
            SERVER,
            identity,
            session_id,
            factory or capture_factory,
            connector=connector,
        )

    return _make


@pytest.fixture
def make_session(engine_factory):
    async def _make(session_id: str = "s-1", options=None) -> BrowserSession:
        session = BrowserSession(session_id, options, engine_factory=engine_factory)
        await session.start()
        return session

    return _make


@pytest.fixture
def lifecycle():
    """Records connected/disconnected notifications."""
    calls = []

    async def on_connected():
        calls.append("connected")

    def on_disconnected():
        calls.append("disconnected")

    return calls, on_connected, on_disconnected


@pytest_asyncio.fixture
async def channel(make_channel, lifecycle):
    _, on_connected, on_disconnected = lifecycle
    channel = make_channel()
    channel.register_handlers(on_connected, on_disconnected)
    await channel.connect()
    yield channel
    await channel.disconnect()


class TestConnection:
    @pytest.mark.asyncio
    async def test_hello_is_first_frame(self, channel, connector, identity):
        connection = connector.last

        assert connection.url == f"{SERVER}/browser"
        assert connection.messages()[0] == {
            "type": "browser:hello",
            "runnerId": identity.runner_id,
            "token": identity.token,
            "sessionId": "s-1",
        }

    @pytest.mark.asyncio
    async def test_connected_handler_runs_after_hello(self, channel, lifecycle):
        calls, _, _ = lifecycle

        assert calls == ["connected"]
        assert channel.is_connected

    @pytest.mark.asyncio
    async def test_server_close_stops_session(self, channel, connector, lifecycle, make_session, eventually):
        calls, _, _ = lifecycle
        session = await make_session()
        await channel.attach_session(session)

        await connector.last.close()
        await eventually(lambda: "disconnected" in calls)

        assert not session.is_active
        assert channel.session is None
        assert not channel.is_connected

    @pytest.mark.asyncio
    async def test_disconnect_notifies_once(self, make_channel, lifecycle):
        calls, on_connected, on_disconnected = lifecycle
        channel = make_channel()
        channel.register_handlers(on_connected, on_disconnected)
        await channel.connect()

        await channel.disconnect()
        await channel.disconnect()

        assert calls == ["connected", "disconnected"]

    @pytest.mark.asyncio
    async def test_unregistered_handlers_are_not_called(self, make_channel, lifecycle):
        calls, on_connected, on_disconnected = lifecycle
        channel = make_channel()
        channel.register_handlers(on_connected, on_disconnected)
        channel.unregister_handlers()

        await channel.connect()
        await channel.disconnect()

        assert calls == []


class TestAttachment:
    @pytest.mark.asyncio
    async def test_attach_starts_capture_and_navigates(
        self, channel, capture_factory, engine_factory, make_session
    ):
        session = await make_session(options=BrowserStartOptions(url="https://example.test"))

        await channel.attach_session(session)

        capture = capture_factory.captures[-1]
        assert channel.session is session
        assert capture.started and capture.session is session
        assert engine_factory.last.calls == [("navigate", "https://example.test")]

    @pytest.mark.asyncio
    async def test_frame_capture_sends_no_started_ack(self, channel, connector, make_session):
        await channel.attach_session(await make_session())

        assert connector.last.messages("browser:ack") == []

    @pytest.mark.asyncio
    async def test_acknowledging_capture_sends_started_ack(
        self, make_channel, connector, acking_capture_factory, make_session
    ):
        channel = make_channel(factory=acking_capture_factory)
        await channel.connect()

        await channel.attach_session(await make_session())

        assert connector.last.messages("browser:ack") == [
            {"type": "browser:ack", "sessionId": "s-1", "status": "started"}
        ]
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_capture_events_are_forwarded(self, channel, connector, capture_factory, make_session):
        await channel.attach_session(await make_session())

        await capture_factory.captures[-1].emit(BrowserFrame(session_id="s-1", data="AAAA"))

        assert connector.last.messages("browser:frame") == [
            {"type": "browser:frame", "sessionId": "s-1", "mime": "image/jpeg", "data": "AAAA"}
        ]

    @pytest.mark.asyncio
    async def test_attach_replaces_previous_session(self, channel, capture_factory, make_session):
        first = await make_session("s-1")
        second = await make_session("s-2")

        await channel.attach_session(first)
        await channel.attach_session(second)

        assert not first.is_active
        assert capture_factory.captures[0].stopped
        assert channel.session is second

    @pytest.mark.asyncio
    async def test_detach_stops_capture_and_session(self, channel, capture_factory, make_session):
        session = await make_session()
        await channel.attach_session(session)

        await channel.detach_session()

        assert channel.session is None
        assert capture_factory.captures[-1].stopped
        assert not session.is_active

    @pytest.mark.asyncio
    async def test_no_traffic_after_detach(self, make_channel, connector, engine_factory, make_session):
        channel = make_channel(factory=TrafficCapture)
        await channel.connect()
        session = await make_session()
        await channel.attach_session(session)
        observer = engine_factory.last.observer

        await channel.detach_session()
        observer.on_request_failed(_FailedRequest())
        await asyncio.sleep(0.02)

        assert connector.last.messages("browser:traffic") == []
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_external_close_sends_closed(
        self, channel, connector, engine_factory, capture_factory, make_session, eventually
    ):
        session = await make_session()
        await channel.attach_session(session)

        engine_factory.last.simulate_external_close()
        await eventually(lambda: connector.last.messages("browser:closed"))

        assert connector.last.messages("browser:closed") == [{"type": "browser:closed", "sessionId": "s-1"}]
        assert channel.session is None
        assert capture_factory.captures[-1].stopped

    @pytest.mark.asyncio
    async def test_attach_to_closed_channel_is_refused(
        self, channel, connector, capture_factory, make_session, eventually
    ):
        await connector.last.close()
        await eventually(lambda: not channel.is_connected)
        session = await make_session()

        with pytest.raises(ChannelClosedError):
            await channel.attach_session(session)

        assert channel.session is None
        assert capture_factory.captures == []
        # The caller still owns the session
        assert session.is_active
        await session.stop()

    @pytest.mark.asyncio
    async def test_failed_initial_navigation_keeps_session(
        self, make_channel, connector, engine_factory, acking_capture_factory, make_session
    ):
        engine_factory.fail_navigate = RuntimeError("net::ERR_NAME_NOT_RESOLVED")
        channel = make_channel(factory=acking_capture_factory)
        await channel.connect()
        session = await make_session(options=BrowserStartOptions(url="https://nowhere.invalid"))

        await channel.attach_session(session)

        assert channel.session is session
        assert session.is_active
        assert connector.last.messages("browser:ack") == [
            {"type": "browser:ack", "sessionId": "s-1", "status": "started"}
        ]
        await channel.disconnect()


class _FailedRequest:
    url = "https://example.test/late"
    method = "GET"
    headers = {}
    post_data = None
    failure = "net::ERR_ABORTED"


class TestInputRouting:
    @pytest_asyncio.fixture
    async def attached(self, channel, make_session, engine_factory):
        session = await make_session()
        await channel.attach_session(session)
        return session, engine_factory.last

    @pytest.mark.asyncio
    async def test_input_reaches_session(self, attached, connector, eventually):
        _, engine = attached

        connector.last.feed(
            {"type": "browser:input", "sessionId": "s-1", "action": {"kind": "type", "text": "hello"}}
        )
        await eventually(lambda: engine.input_calls())

        assert engine.input_calls() == [("type_text", "hello")]

    @pytest.mark.asyncio
    async def test_inputs_apply_in_arrival_order(self, attached, connector, eventually):
        _, engine = attached

        connector.last.feed({"type": "browser:input", "sessionId": "s-1", "action": {"kind": "move", "x": 1, "y": 2}})
        connector.last.feed({"type": "browser:input", "sessionId": "s-1", "action": {"kind": "click", "x": 1, "y": 2}})
        await eventually(lambda: len(engine.input_calls()) == 2)

        assert engine.input_calls() == [("move", 1, 2), ("click", 1, 2, "left")]

    @pytest.mark.asyncio
    async def test_input_for_other_session_is_dropped(self, attached, connector):
        _, engine = attached

        connector.last.feed(
            {"type": "browser:input", "sessionId": "other", "action": {"kind": "type", "text": "x"}}
        )
        await asyncio.sleep(0.02)

        assert engine.input_calls() == []

    @pytest.mark.asyncio
    async def test_bad_frames_do_not_break_the_channel(self, attached, connector, eventually):
        _, engine = attached

        connector.last.feed("{broken")
        connector.last.feed({"type": "browser:input", "sessionId": "s-1"})
        connector.last.feed({"type": "browser:input", "sessionId": "s-1", "action": {"kind": "click"}})
        connector.last.feed({"type": "browser:input", "sessionId": "s-1", "action": {"kind": "teleport"}})
        connector.last.feed({"type": "browser:mystery"})
        connector.last.feed({"type": "browser:input", "sessionId": "s-1", "action": {"kind": "refresh"}})
        await eventually(lambda: engine.input_calls())

        assert engine.input_calls() == [("reload",)]

    @pytest.mark.asyncio
    async def test_input_without_session_is_dropped(self, channel, connector):
        connector.last.feed(
            {"type": "browser:input", "sessionId": "s-1", "action": {"kind": "type", "text": "x"}}
        )
        await asyncio.sleep(0.02)

        assert channel.session is None
