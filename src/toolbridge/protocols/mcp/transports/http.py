"""
Request/Response HTTP Transport
===============================

Every ``send`` is one POST carrying one envelope. The reply body, a JSON
envelope, a JSON batch, or a short ``text/event-stream`` body, is decoded
and queued, so the matching ``receive`` is synthesized from the synchronous
reply. No connection state is kept apart from an optional server-issued
``Mcp-Session-Id`` that is echoed on later requests.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from toolbridge.config.settings import ServerConfig
from toolbridge.core.exceptions import ProtocolError, ServerConnectionError
from toolbridge.protocols.mcp.messages import Message, MessageKind, decode_messages
from toolbridge.protocols.mcp.transports.base import QueueingTransport
from toolbridge.protocols.mcp.transports.sse import aiter_sse

logger = logging.getLogger(__name__)

_RETRY_DELAYS = (1.0, 2.0, 4.0)  # seconds between attempts (3 retries total)

SESSION_HEADER = "mcp-session-id"


class HTTPTransport(QueueingTransport):
    """Stateless POST-per-message transport."""

    kind = "http"

    def __init__(
        self,
        config: ServerConfig,
        connect_timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config, connect_timeout)
        self._client = client
        self._owns_client = client is None
        self.session_id: str | None = None
        self.protocol_version: str | None = None

    def on_initialized(self, protocol_version: str) -> None:
        self.protocol_version = protocol_version

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        if self.protocol_version:
            headers["MCP-Protocol-Version"] = self.protocol_version
        headers.update(self.config.headers)
        return headers

    async def _connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(300.0, connect=self.connect_timeout))

    async def _send(self, message: Message, payload: bytes) -> None:
        last_exc: Exception = RuntimeError("no attempts made")
        for attempt, delay in enumerate((*_RETRY_DELAYS, None), start=1):
            try:
                await self._post(message, payload)
                return
            except httpx.ConnectError as exc:
                # Nothing reached the server, so resending cannot duplicate a call
                last_exc = exc
                if delay is not None:
                    logger.debug("POST to %s attempt %d failed (%s); retrying in %.1fs",
                                 self.config.name, attempt, exc, delay)
                    await asyncio.sleep(delay)
                else:
                    logger.warning("POST to %s failed after %d attempts: %s",
                                   self.config.name, attempt, exc)
            except httpx.HTTPError as exc:
                raise ServerConnectionError(
                    f"HTTP request to '{self.config.name}' failed: {exc}",
                    details={"url": self.config.url},
                ) from exc
        raise ServerConnectionError(
            f"Could not reach '{self.config.name}': {last_exc}",
            details={"url": self.config.url},
        ) from last_exc

    async def _post(self, message: Message, payload: bytes) -> None:
        async with self._client.stream(
            "POST", self.config.url, content=payload, headers=self._headers()
        ) as response:
            session_id = response.headers.get(SESSION_HEADER)
            if session_id:
                self.session_id = session_id

            content_type = response.headers.get("content-type", "")
            expects_reply = message.kind is MessageKind.REQUEST

            if content_type.startswith("text/event-stream"):
                await self._consume_event_stream(response, message)
                return

            body = await response.aread()
            if response.status_code in (202, 204) or not body.strip():
                if response.status_code >= 400:
                    self._raise_for_status(response)
                if expects_reply:
                    raise ProtocolError(
                        f"Server '{self.config.name}' sent no reply to {message.method}",
                        request_id=message.id,
                    )
                return

            if content_type.startswith("application/json"):
                try:
                    replies = decode_messages(body)
                except ProtocolError as e:
                    if response.status_code >= 400:
                        self._raise_for_status(response)
                    raise ProtocolError(e.message, request_id=message.id) from e
                for reply in replies:
                    self._deliver(reply)
                return

            if response.status_code >= 400:
                self._raise_for_status(response)
            raise ProtocolError(
                f"Unexpected content type {content_type!r} from '{self.config.name}'",
                request_id=message.id,
            )

    async def _consume_event_stream(self, response: httpx.Response, message: Message) -> None:
        async for event in aiter_sse(response.aiter_lines()):
            if event.event != "message" or not event.data:
                continue
            try:
                replies = decode_messages(event.data)
            except ProtocolError as e:
                logger.warning("Malformed event from %s: %s", self.config.name, e.message)
                continue
            for reply in replies:
                self._deliver(reply)
                if message.id is not None and reply.kind is MessageKind.RESPONSE and reply.id == message.id:
                    return

    def _raise_for_status(self, response: httpx.Response) -> None:
        raise ServerConnectionError(
            f"Server '{self.config.name}' answered HTTP {response.status_code}",
            details={"status": response.status_code, "url": self.config.url},
        )

    async def ping(self) -> bool:
        if not self.is_connected or self._client is None:
            return False
        try:
            resp = await self._client.request("HEAD", self.config.url, headers=self._headers(), timeout=5.0)
            return resp.status_code < 500
        except httpx.HTTPError as exc:
            logger.debug("Ping failed for %r: %s", self.config.name, exc)
            return False

    async def _disconnect(self) -> None:
        try:
            if self.session_id and self._client is not None:
                try:
                    await self._client.delete(self.config.url, headers=self._headers(), timeout=2.0)
                except httpx.HTTPError as exc:
                    logger.debug("Session teardown for %s failed: %s", self.config.name, exc)
        finally:
            if self._client is not None and self._owns_client:
                await self._client.aclose()
            self._deliver_closed("disconnected")
