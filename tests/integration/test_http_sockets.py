"""
Integration tests for HttpExecutor against loopback servers.

Unlike the unit tests these open real sockets on 127.0.0.1, so connection
teardown on timeout and the HTTP/2-only client are exercised end to end.
"""

import asyncio
from typing import Optional

import h2.config
import h2.connection
import h2.events
import pytest
import pytest_asyncio

from gleip_runner.errors import RequestTimeout
from gleip_runner.jobs import HttpExecutor
from gleip_runner.protocol import HttpOptions, HttpRequest


class SilentServer:
    """Reads whatever the client sends and never answers."""

    def __init__(self):
        self.received = bytearray()
        self.eof = asyncio.Event()
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def _handle(self, reader, writer):
        while True:
            chunk = await reader.read(65536)
            if not chunk:
                break
            self.received.extend(chunk)
        self.eof.set()
        writer.close()

    def close(self) -> None:
        self._server.close()


class H2CServer:
    """Prior-knowledge HTTP/2 cleartext server that answers every stream."""

    def __init__(self):
        self.requests: list[dict[str, str]] = []
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def _handle(self, reader, writer):
        conn = h2.connection.H2Connection(
            config=h2.config.H2Configuration(client_side=False, header_encoding="utf-8")
        )
        conn.initiate_connection()
        writer.write(conn.data_to_send())
        await writer.drain()

        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                for event in conn.receive_data(data):
                    if isinstance(event, h2.events.RequestReceived):
                        headers = dict(event.headers)
                        self.requests.append(headers)
                        conn.send_headers(
                            event.stream_id,
                            [
                                (":status", "200"),
                                ("content-type", "text/plain"),
                                ("x-path", headers[":path"]),
                            ],
                        )
                        conn.send_data(event.stream_id, b"hello over h2", end_stream=True)
                writer.write(conn.data_to_send())
                await writer.drain()
        finally:
            writer.close()

    def close(self) -> None:
        self._server.close()


@pytest_asyncio.fixture
async def silent_server():
    server = SilentServer()
    await server.start()
    yield server
    server.close()


@pytest_asyncio.fixture
async def h2c_server():
    server = H2CServer()
    await server.start()
    yield server
    server.close()


class TestTimeoutTeardown:
    """A timed-out job leaves no open connection behind."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("keep_alive", [None, False, True])
    async def test_peer_sees_eof_after_timeout(self, silent_server, keep_alive):
        executor = HttpExecutor()
        try:
            with pytest.raises(RequestTimeout):
                await executor.execute(
                    HttpRequest(method="GET", url=f"http://127.0.0.1:{silent_server.port}/slow"),
                    HttpOptions(keep_alive=keep_alive),
                    timeout_ms=100,
                )

            await asyncio.wait_for(silent_server.eof.wait(), timeout=2)
        finally:
            await executor.aclose()

        assert bytes(silent_server.received).startswith(b"GET /slow HTTP/1.1")


class TestHttp2:
    @pytest.mark.asyncio
    async def test_prior_knowledge_round_trip(self, h2c_server):
        executor = HttpExecutor()
        try:
            response = await executor.execute(
                HttpRequest(
                    method="GET",
                    url=f"http://127.0.0.1:{h2c_server.port}/hello",
                    headers={"X-Job": "7", "Connection": "keep-alive"},
                ),
                HttpOptions(http_version="2"),
                timeout_ms=5000,
            )
        finally:
            await executor.aclose()

        assert response.status == 200
        assert response.body == "hello over h2"
        assert response.headers["x-path"] == "/hello"

        # Connection-specific headers are illegal in HTTP/2 and must be dropped
        request = h2c_server.requests[0]
        assert request[":method"] == "GET"
        assert request["x-job"] == "7"
        assert "connection" not in request
