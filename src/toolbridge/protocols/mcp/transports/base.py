"""Transport contract shared by the stdio, HTTP and SSE variants."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from toolbridge.config.settings import ServerConfig
from toolbridge.core.exceptions import TransportClosedError
from toolbridge.protocols.mcp.messages import Message, encode_message

logger = logging.getLogger(__name__)

# Queued into a variant's inbox to wake receive() when the stream ends
_CLOSED = object()


class Transport(ABC):
    """
    Byte-level message exchange with one tool server.

    A transport is owned by exactly one session. ``disconnect`` is idempotent
    and ``async with transport:`` guarantees it runs on every exit path.
    """

    kind: str = "abstract"

    def __init__(self, config: ServerConfig, connect_timeout: float = 30.0) -> None:
        self.config = config
        self.connect_timeout = connect_timeout
        self.messages_sent = 0
        self.bytes_sent = 0
        self._connected = False
        self._closed = False
        self._close_reason: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def connect(self) -> None:
        """Set up the channel, failing with ServerConnectionError after ``connect_timeout``."""
        if self._closed:
            raise TransportClosedError(f"Transport for '{self.config.name}' was already closed")
        if self._connected:
            return
        await self._connect()
        self._connected = True
        logger.debug("%s transport connected for %s", self.kind, self.config.name)

    async def send(self, message: Message) -> None:
        if not self.is_connected:
            raise TransportClosedError(self._closed_message())
        payload = encode_message(message)
        await self._send(message, payload)
        self.messages_sent += 1
        self.bytes_sent += len(payload)

    @abstractmethod
    async def receive(self) -> Message:
        """Suspend until one full message is decoded; TransportClosedError when the stream ends."""

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._connected = False
        try:
            await self._disconnect()
        finally:
            logger.debug("%s transport disconnected for %s", self.kind, self.config.name)

    def on_initialized(self, protocol_version: str) -> None:
        """Hook called once the handshake has negotiated a protocol version."""

    @abstractmethod
    async def ping(self) -> bool:
        """Cheap liveness round trip used by health checks."""

    @abstractmethod
    async def _connect(self) -> None: ...

    @abstractmethod
    async def _send(self, message: Message, payload: bytes) -> None: ...

    @abstractmethod
    async def _disconnect(self) -> None: ...

    def _mark_lost(self, reason: str) -> None:
        """Record why the remote end went away; later sends fail fast."""
        if self._close_reason is None:
            self._close_reason = reason
        self._connected = False

    def _closed_message(self) -> str:
        if self._close_reason:
            return f"Transport for '{self.config.name}' closed: {self._close_reason}"
        return f"Transport for '{self.config.name}' is not connected"

    async def __aenter__(self) -> Transport:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()


class QueueingTransport(Transport):
    """Base for variants whose receive side drains an internal inbox."""

    def __init__(self, config: ServerConfig, connect_timeout: float = 30.0) -> None:
        super().__init__(config, connect_timeout)
        self._inbox: asyncio.Queue = asyncio.Queue()

    def _deliver(self, message: Message) -> None:
        self._inbox.put_nowait(message)

    def _deliver_closed(self, reason: str) -> None:
        self._mark_lost(reason)
        self._inbox.put_nowait(_CLOSED)

    async def receive(self) -> Message:
        if self._closed and self._inbox.empty():
            raise TransportClosedError(self._closed_message())
        item = await self._inbox.get()
        if item is _CLOSED:
            # Leave the marker for any other receiver
            self._inbox.put_nowait(_CLOSED)
            raise TransportClosedError(self._closed_message())
        if isinstance(item, Exception):
            raise item
        return item
