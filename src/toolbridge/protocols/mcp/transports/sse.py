"""
Event Stream Transport
======================

One long-lived ``GET`` with ``Accept: text/event-stream`` carries every
server-to-client message, replies and server-initiated traffic interleaved.
The server announces where to POST client messages with an ``endpoint``
event; ``message`` events each hold one JSON-RPC envelope.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit

import httpx

from toolbridge.config.settings import ServerConfig
from toolbridge.core.exceptions import ProtocolError, ServerConnectionError, TransportClosedError
from toolbridge.protocols.mcp.messages import Message, decode_message
from toolbridge.protocols.mcp.transports.base import QueueingTransport

logger = logging.getLogger(__name__)


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None
    retry: int | None = None


class SSEDecoder:
    """Incremental decoder for the text/event-stream line format."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._last_id: str | None = None
        self._retry: int | None = None

    def decode(self, line: str) -> ServerSentEvent | None:
        """Feed one line (without its terminator); returns an event on the blank line ending it."""
        line = line.rstrip("\r\n")
        if not line:
            if not self._event and not self._data:
                return None
            event = ServerSentEvent(
                event=self._event or "message",
                data="\n".join(self._data),
                id=self._last_id,
                retry=self._retry,
            )
            self._event = ""
            self._data = []
            self._retry = None
            return event

        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self._last_id = value
        elif name == "retry":
            try:
                self._retry = int(value)
            except ValueError:
                pass
        return None


async def aiter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    decoder = SSEDecoder()
    async for line in lines:
        event = decoder.decode(line)
        if event is not None:
            yield event


def _same_origin(a: str, b: str) -> bool:
    left, right = urlsplit(a), urlsplit(b)
    return (left.scheme, left.netloc) == (right.scheme, right.netloc)


class SSETransport(QueueingTransport):
    """Long-lived event stream for receiving, one POST per outbound message."""

    kind = "sse"

    def __init__(
        self,
        config: ServerConfig,
        connect_timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config, connect_timeout)
        self._client = client
        self._owns_client = client is None
        self._post_url: str | None = None
        self._endpoint_ready = asyncio.Event()
        self._stream_task: asyncio.Task | None = None
        self._stream_error: BaseException | None = None

    @property
    def post_url(self) -> str | None:
        return self._post_url

    def _headers(self, accept: str) -> dict[str, str]:
        headers = {"Accept": accept}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        headers.update(self.config.headers)
        return headers

    async def _connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(300.0, connect=self.connect_timeout))

        self._stream_task = asyncio.create_task(
            self._run_stream(), name=f"sse-stream-{self.config.name}"
        )
        endpoint_wait = asyncio.create_task(self._endpoint_ready.wait())
        try:
            done, _ = await asyncio.wait(
                {endpoint_wait, self._stream_task},
                timeout=self.connect_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            endpoint_wait.cancel()

        if not self._endpoint_ready.is_set():
            if not done:
                raise ServerConnectionError(
                    f"No endpoint event from '{self.config.name}' within {self.connect_timeout}s",
                    details={"url": self.config.url},
                )
            raise ServerConnectionError(
                f"Event stream for '{self.config.name}' failed: {self._stream_error or 'stream ended'}",
                details={"url": self.config.url},
            )

    async def _run_stream(self) -> None:
        reason = "event stream ended"
        try:
            async with self._client.stream(
                "GET", self.config.url, headers=self._headers("text/event-stream")
            ) as response:
                if response.status_code != 200:
                    raise ServerConnectionError(
                        f"Event stream returned HTTP {response.status_code}",
                        details={"status": response.status_code},
                    )
                content_type = response.headers.get("content-type", "")
                if not content_type.startswith("text/event-stream"):
                    raise ServerConnectionError(f"Unexpected content type {content_type!r}")
                async for event in aiter_sse(response.aiter_lines()):
                    self._handle_event(event)
        except ServerConnectionError as e:
            self._stream_error = e
            reason = e.message
        except (httpx.HTTPError, httpx.StreamError) as e:
            self._stream_error = e
            reason = f"event stream failed: {e!r}"
        except asyncio.CancelledError:
            reason = "disconnected"
            raise
        except Exception as e:
            logger.error("Event stream for %s crashed: %s", self.config.name, e, exc_info=True)
            self._stream_error = e
            reason = f"event stream crashed: {e!r}"
        finally:
            logger.debug("Event stream for %s finished: %s", self.config.name, reason)
            self._deliver_closed(reason)

    def _handle_event(self, event: ServerSentEvent) -> None:
        if event.event == "endpoint":
            candidate = urljoin(self.config.url, event.data.strip())
            if not _same_origin(candidate, self.config.url):
                logger.warning("Ignoring cross-origin endpoint %s from %s", candidate, self.config.name)
                return
            self._post_url = candidate
            self._endpoint_ready.set()
            logger.debug("Event stream endpoint for %s: %s", self.config.name, candidate)
        elif event.event == "message":
            try:
                self._deliver(decode_message(event.data))
            except ProtocolError as e:
                self._inbox.put_nowait(e)
        else:
            logger.debug("Ignoring %r event from %s", event.event, self.config.name)

    async def _send(self, message: Message, payload: bytes) -> None:
        if self._post_url is None or self._client is None:
            raise TransportClosedError(self._closed_message())
        headers = self._headers("application/json")
        headers["Content-Type"] = "application/json"
        try:
            response = await self._client.post(self._post_url, content=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ServerConnectionError(
                f"Posting message to '{self.config.name}' failed: {e}",
                details={"url": self._post_url},
            ) from e
        if response.status_code >= 400:
            raise ServerConnectionError(
                f"Server '{self.config.name}' rejected message with HTTP {response.status_code}",
                details={"status": response.status_code},
            )

    async def ping(self) -> bool:
        return (
            self.is_connected
            and self._stream_task is not None
            and not self._stream_task.done()
        )

    async def _disconnect(self) -> None:
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._deliver_closed("disconnected")
