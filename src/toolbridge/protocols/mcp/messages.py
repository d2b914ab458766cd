"""
Protocol Envelope Codec
=======================

JSON-RPC 2.0 envelopes exchanged with tool servers, plus the pending-request
table that correlates replies to callers by id.

Values crossing the wire are checked with ``ensure_json_value`` so nothing
but plain JSON data (None, bool, int, float, str, list, str-keyed dict)
travels into or out of a session.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeAlias

from toolbridge.core.exceptions import ProtocolError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Codes that mean the envelope itself was wrong rather than the tool failing
PROTOCOL_ERROR_CODES = frozenset({PARSE_ERROR, INVALID_REQUEST, METHOD_NOT_FOUND})

JSONValue: TypeAlias = "None | bool | int | float | str | list[JSONValue] | dict[str, JSONValue]"
JSONObject: TypeAlias = "dict[str, JSONValue]"
RequestId: TypeAlias = "int | str"


def ensure_json_value(value: Any, path: str = "$") -> JSONValue:
    """
    Check that value is plain JSON data, recursively.

    Raises:
        TypeError: naming the offending path and type
    """
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and value != value:
            raise TypeError(f"{path}: NaN is not valid JSON")
        return value
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            ensure_json_value(item, f"{path}[{index}]")
        return value
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path}: object keys must be strings, got {type(key).__name__}")
            ensure_json_value(item, f"{path}.{key}")
        return value
    raise TypeError(f"{path}: {type(value).__name__} is not a JSON value")


def _valid_id(value: Any) -> bool:
    return value is None or (isinstance(value, (int, str)) and not isinstance(value, bool))


class MessageKind(StrEnum):
    REQUEST = "request"
    NOTIFICATION = "notification"
    RESPONSE = "response"


@dataclass(frozen=True)
class RPCError:
    """Error object carried by a failed response"""
    code: int
    message: str
    data: JSONValue = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload

    @classmethod
    def from_dict(cls, raw: Any, request_id: RequestId | None = None) -> RPCError:
        if not isinstance(raw, dict):
            raise ProtocolError("Response 'error' must be an object", request_id=request_id)
        code = raw.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            raise ProtocolError("Response error 'code' must be an integer", request_id=request_id)
        message = raw.get("message", "")
        if not isinstance(message, str):
            raise ProtocolError("Response error 'message' must be a string", request_id=request_id)
        return cls(code=code, message=message, data=raw.get("data"))


@dataclass(frozen=True)
class Message:
    """
    One protocol envelope.

    Requests carry ``id`` and ``method``; notifications carry ``method`` only;
    responses carry ``id`` and either ``result`` or ``error`` (never both).
    A response whose ``error`` is None is a success, even if ``result`` is None.
    """
    id: RequestId | None = None
    method: str | None = None
    params: JSONObject | None = None
    result: JSONValue = None
    error: RPCError | None = None

    @property
    def kind(self) -> MessageKind:
        if self.method is None:
            return MessageKind.RESPONSE
        if self.id is None:
            return MessageKind.NOTIFICATION
        return MessageKind.REQUEST

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def request(cls, request_id: RequestId, method: str, params: JSONObject | None = None) -> Message:
        return cls(id=request_id, method=method, params=params)

    @classmethod
    def notification(cls, method: str, params: JSONObject | None = None) -> Message:
        return cls(method=method, params=params)

    @classmethod
    def response(cls, request_id: RequestId, result: JSONValue) -> Message:
        return cls(id=request_id, result=result)

    @classmethod
    def error_response(cls, request_id: RequestId | None, code: int, message: str,
                       data: JSONValue = None) -> Message:
        return cls(id=request_id, error=RPCError(code, message, data))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
        if self.kind is MessageKind.RESPONSE:
            payload["id"] = self.id
            if self.error is not None:
                payload["error"] = self.error.to_dict()
            else:
                payload["result"] = self.result
            return payload
        if self.id is not None:
            payload["id"] = self.id
        payload["method"] = self.method
        if self.params is not None:
            payload["params"] = self.params
        return payload


def encode_message(message: Message) -> bytes:
    """Serialize one envelope as compact UTF-8 JSON (no trailing newline)."""
    payload = message.to_dict()
    try:
        ensure_json_value(payload)
    except TypeError as e:
        raise ProtocolError(f"Cannot encode message: {e}", request_id=message.id) from e
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def message_from_dict(raw: Any) -> Message:
    """Validate a decoded JSON object and build a Message from it."""
    if not isinstance(raw, dict):
        raise ProtocolError(f"Envelope must be a JSON object, got {type(raw).__name__}")

    request_id = raw.get("id")
    if not _valid_id(request_id):
        raise ProtocolError(f"Invalid id type: {type(request_id).__name__}")

    version = raw.get("jsonrpc", JSONRPC_VERSION)
    if version != JSONRPC_VERSION:
        raise ProtocolError(f"Unsupported jsonrpc version: {version!r}", request_id=request_id)

    if "method" in raw:
        method = raw["method"]
        if not isinstance(method, str) or not method:
            raise ProtocolError("'method' must be a non-empty string", request_id=request_id)
        params = raw.get("params")
        if params is not None and not isinstance(params, dict):
            raise ProtocolError("'params' must be an object", request_id=request_id)
        return Message(id=request_id, method=method, params=params)

    has_result = "result" in raw
    has_error = "error" in raw
    if has_result == has_error:
        raise ProtocolError("Response must carry exactly one of 'result' or 'error'",
                            request_id=request_id)
    if has_error:
        return Message(id=request_id, error=RPCError.from_dict(raw["error"], request_id))
    if request_id is None:
        raise ProtocolError("Successful response is missing 'id'")
    return Message(id=request_id, result=raw["result"])


def _loads(data: bytes | str) -> Any:
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e


def decode_message(data: bytes | str) -> Message:
    """Decode exactly one envelope."""
    return message_from_dict(_loads(data))


def decode_messages(data: bytes | str) -> list[Message]:
    """Decode a body holding one envelope or a JSON-RPC batch."""
    raw = _loads(data)
    if isinstance(raw, list):
        return [message_from_dict(item) for item in raw]
    return [message_from_dict(raw)]


# =============================================================================
# CORRELATION
# =============================================================================


@dataclass
class PendingRequest:
    """A sent request still waiting for its reply"""
    id: int
    method: str
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    deadline: float | None = None


class PendingRequestTable:
    """
    Correlation id -> waiting caller.

    Every entry is removed exactly once: by ``resolve``/``reject`` when the
    outcome arrives, or by ``discard`` when the caller gives up (timeout or
    cancellation). The lock makes that removal the single point at which an
    outcome is decided.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[int, PendingRequest] = {}
        self._ids = itertools.count(1)

    def create(self, method: str, timeout: float | None = None) -> PendingRequest:
        future = asyncio.get_running_loop().create_future()
        now = time.monotonic()
        with self._lock:
            request_id = next(self._ids)
            pending = PendingRequest(
                id=request_id,
                method=method,
                future=future,
                created_at=now,
                deadline=now + timeout if timeout is not None else None,
            )
            self._pending[request_id] = pending
        return pending

    def _pop(self, request_id: RequestId | None) -> PendingRequest | None:
        if request_id is None:
            return None
        with self._lock:
            pending = self._pending.pop(request_id, None)
            if pending is None and isinstance(request_id, str) and request_id.isdigit():
                pending = self._pending.pop(int(request_id), None)
        return pending

    def resolve(self, message: Message) -> bool:
        """Hand a response to its caller. Returns False if nobody is waiting."""
        pending = self._pop(message.id)
        if pending is None:
            logger.debug("Dropping unmatched response id=%r", message.id)
            return False
        if not pending.future.done():
            pending.future.set_result(message)
        return True

    def reject(self, request_id: RequestId | None, exc: BaseException) -> bool:
        pending = self._pop(request_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(exc)
        return True

    def discard(self, request_id: RequestId) -> PendingRequest | None:
        """Remove an entry whose caller stopped waiting."""
        return self._pop(request_id)

    def reject_all(self, exc: BaseException) -> int:
        with self._lock:
            drained = list(self._pending.values())
            self._pending.clear()
        for pending in drained:
            if not pending.future.done():
                pending.future.set_exception(exc)
        return len(drained)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._pending

    def ids(self) -> list[int]:
        with self._lock:
            return list(self._pending)
