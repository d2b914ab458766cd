"""
Tests for the event-stream transport: decoder, endpoint discovery and the
POST side, driven by httpx.MockTransport.
"""

import asyncio
import json

import httpx
import pytest

from toolbridge.config.settings import ServerConfig, TransportKind
from toolbridge.core.exceptions import ProtocolError, ServerConnectionError, TransportClosedError
from toolbridge.protocols.mcp.messages import Message
from toolbridge.protocols.mcp.transports import SSETransport
from toolbridge.protocols.mcp.transports.sse import SSEDecoder

URL = "https://tools.example.com/sse"


class FakeEventServer:
    """Serves one open event stream and answers POSTed requests on it."""

    def __init__(self, endpoint="/messages?session=1", status=200):
        self.endpoint = endpoint
        self.status = status
        self.posted = []
        self.queue = asyncio.Queue()

    async def _stream(self):
        if self.endpoint is not None:
            yield f"event: endpoint\ndata: {self.endpoint}\n\n".encode()
        while True:
            chunk = await self.queue.get()
            if chunk is None:
                return
            yield chunk

    def emit(self, payload):
        self.queue.put_nowait(f"event: message\ndata: {payload}\n\n".encode())

    def end(self):
        self.queue.put_nowait(None)

    async def handler(self, request):
        if request.method == "GET":
            if self.status != 200:
                return httpx.Response(self.status)
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=self._stream())
        body = json.loads(request.content)
        self.posted.append((request, body))
        if "id" in body:
            self.emit(json.dumps({"jsonrpc": "2.0", "id": body["id"], "result": {"echo": body["method"]}}))
        return httpx.Response(202)


def _transport(server, connect_timeout=1.0):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    config = ServerConfig(name="events", transport=TransportKind.SSE, url=URL)
    return SSETransport(config, connect_timeout=connect_timeout, client=client), client


class TestSSEDecoder:
    def test_multiline_data_and_comments(self):
        decoder = SSEDecoder()
        lines = [": keepalive", "event: message", "data: one", "data: two", "id: 7", ""]
        events = [e for e in (decoder.decode(line) for line in lines) if e is not None]
        assert len(events) == 1
        assert events[0].event == "message"
        assert events[0].data == "one\ntwo"
        assert events[0].id == "7"

    def test_blank_lines_without_fields_ignored(self):
        decoder = SSEDecoder()
        assert decoder.decode("") is None
        assert decoder.decode("retry: abc") is None


class TestSSETransport:
    @pytest.mark.asyncio
    async def test_endpoint_discovery_and_round_trip(self):
        server = FakeEventServer()
        transport, client = _transport(server)
        async with transport:
            assert transport.post_url == "https://tools.example.com/messages?session=1"
            await transport.send(Message.request(1, "tools/list"))
            reply = await asyncio.wait_for(transport.receive(), 1)
            assert reply.id == 1
            assert reply.result == {"echo": "tools/list"}
            assert await transport.ping() is True

        request, _ = server.posted[0]
        assert str(request.url) == transport.post_url
        assert request.headers["content-type"] == "application/json"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_initiated_messages_interleave(self):
        server = FakeEventServer()
        transport, client = _transport(server)
        async with transport:
            server.emit(json.dumps({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"}))
            notice = await asyncio.wait_for(transport.receive(), 1)
            assert notice.method == "notifications/tools/list_changed"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_malformed_event_surfaces_as_protocol_error(self):
        server = FakeEventServer()
        transport, client = _transport(server)
        async with transport:
            server.emit("{broken")
            with pytest.raises(ProtocolError):
                await asyncio.wait_for(transport.receive(), 1)
            server.emit(json.dumps({"jsonrpc": "2.0", "method": "notifications/message"}))
            assert (await asyncio.wait_for(transport.receive(), 1)).method == "notifications/message"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stream_end_closes_transport(self):
        server = FakeEventServer()
        transport, client = _transport(server)
        await transport.connect()
        try:
            server.end()
            with pytest.raises(TransportClosedError):
                await asyncio.wait_for(transport.receive(), 1)
            assert await transport.ping() is False
        finally:
            await transport.disconnect()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_endpoint_times_out(self):
        server = FakeEventServer(endpoint=None)
        transport, client = _transport(server, connect_timeout=0.1)
        with pytest.raises(ServerConnectionError, match="No endpoint event"):
            await transport.connect()
        await transport.disconnect()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cross_origin_endpoint_ignored(self):
        server = FakeEventServer(endpoint="https://elsewhere.example.net/messages")
        transport, client = _transport(server, connect_timeout=0.1)
        with pytest.raises(ServerConnectionError):
            await transport.connect()
        assert transport.post_url is None
        await transport.disconnect()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_on_stream(self):
        server = FakeEventServer(status=401)
        transport, client = _transport(server)
        with pytest.raises(ServerConnectionError, match="HTTP 401"):
            await transport.connect()
        await transport.disconnect()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stream_error_before_endpoint_is_reported(self):
        async def broken_stream():
            yield b": hello\n\n"
            raise httpx.StreamClosed()

        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=broken_stream())

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        config = ServerConfig(name="events", transport=TransportKind.SSE, url=URL)
        transport = SSETransport(config, connect_timeout=1.0, client=client)
        with pytest.raises(ServerConnectionError, match="Event stream for 'events' failed") as exc_info:
            await transport.connect()
        assert "stream ended" not in exc_info.value.message
        await transport.disconnect()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stream_error_after_endpoint_closes_transport(self):
        release = asyncio.Event()

        async def stream_then_break():
            yield b"event: endpoint\ndata: /messages\n\n"
            await release.wait()
            raise httpx.StreamClosed()

        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream_then_break())

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        config = ServerConfig(name="events", transport=TransportKind.SSE, url=URL)
        transport = SSETransport(config, connect_timeout=1.0, client=client)
        await transport.connect()
        try:
            release.set()
            with pytest.raises(TransportClosedError, match="StreamClosed"):
                await asyncio.wait_for(transport.receive(), 1)
        finally:
            await transport.disconnect()
        await client.aclose()
