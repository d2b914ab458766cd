"""Tests for toolbridge.core.exceptions"""

import pytest

from toolbridge.core.exceptions import (
    ApplicationError,
    CallTimeoutError,
    ErrorCode,
    PermissionDeniedError,
    ProtocolError,
    ServerConnectionError,
    ToolBridgeError,
    ToolNotFoundError,
    TransportClosedError,
    ValidationError,
)


class TestToolBridgeError:
    def test_to_dict(self):
        err = PermissionDeniedError("path outside write roots", details={"path": "/etc/hosts"})
        assert err.to_dict() == {
            "error_type": "PermissionDeniedError",
            "error_code": 2001,
            "message": "path outside write roots",
            "details": {"path": "/etc/hosts"},
        }

    def test_user_message_uses_code(self):
        err = CallTimeoutError("tools/call to 'files' timed out", timeout=5.0)
        assert err.user_message() == "Error 4003: Request timed out"
        assert err.timeout == 5.0

    def test_default_code_is_internal(self):
        err = ToolBridgeError("boom")
        assert err.error_code is ErrorCode.INTERNAL_ERROR
        assert err.details == {}


class TestHierarchy:
    @pytest.mark.parametrize("error, parent", [
        (TransportClosedError(), ServerConnectionError),
        (PermissionDeniedError("denied"), ValidationError),
        (ToolNotFoundError("search"), ToolBridgeError),
    ])
    def test_subclasses(self, error, parent):
        assert isinstance(error, parent)

    def test_transport_closed_keeps_its_code(self):
        err = TransportClosedError(details={"returncode": 3})
        assert err.error_code is ErrorCode.TRANSPORT_CLOSED
        assert err.message == "Transport is closed"

    def test_protocol_and_application_fields(self):
        assert ProtocolError("bad envelope", request_id=7).request_id == 7
        app = ApplicationError("disk full", rpc_code=-32000, data={"free": 0})
        assert (app.rpc_code, app.data) == (-32000, {"free": 0})

    def test_tool_not_found_message(self):
        err = ToolNotFoundError("search")
        assert err.tool_name == "search"
        assert str(err) == "Tool not found: search"
