from __future__ import annotations

import asyncio
import builtins

import grpc
import pytest

from cmdop_sdk import errors


class _FakeRpcError(grpc.RpcError):
    """模拟 grpc.aio 抛出的状态错误（`code()`/`details()` 为方法）。"""

    def __init__(self, code: grpc.StatusCode, details: str = "boom") -> None:
        super().__init__(details)
        self._code = code
        self._details = details

    def code(self) -> grpc.StatusCode:
        return self._code

    def details(self) -> str:
        return self._details


class _CodeAttrError(Exception):
    """带 `code` 属性（int）的普通异常。"""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (grpc.StatusCode.CANCELLED, errors.CancelledError),
        (grpc.StatusCode.DEADLINE_EXCEEDED, errors.TimeoutError),
        (grpc.StatusCode.NOT_FOUND, errors.NotFoundError),
        (grpc.StatusCode.PERMISSION_DENIED, errors.PermissionError),
        (grpc.StatusCode.RESOURCE_EXHAUSTED, errors.RateLimitError),
        (grpc.StatusCode.UNAVAILABLE, errors.AgentOfflineError),
        (grpc.StatusCode.UNAUTHENTICATED, errors.InvalidAPIKeyError),
    ],
)
def test_status_codes_map_to_typed_errors(status: grpc.StatusCode, expected: type) -> None:
    mapped = errors.map_grpc_error(_FakeRpcError(status))
    assert type(mapped) is expected
    assert isinstance(mapped, errors.CmdopError)


def test_family_relationships_allow_catching_by_parent() -> None:
    assert issubclass(errors.RateLimitError, errors.ResourceExhaustedError)
    assert issubclass(errors.AgentOfflineError, errors.UnavailableError)
    assert issubclass(errors.InvalidAPIKeyError, errors.AuthenticationError)
    assert issubclass(errors.StaleDiscoveryFileError, errors.ConnectionError)
    assert issubclass(errors.AgentNotRunningError, errors.ConnectionError)
    assert issubclass(errors.StreamCancelledError, errors.CancelledError)


def test_message_is_enriched_with_operation_and_context() -> None:
    mapped = errors.map_grpc_error(
        _FakeRpcError(grpc.StatusCode.NOT_FOUND, "no such file"),
        operation="read_file",
        session_id="s-1",
        path="/tmp/x",
    )
    assert str(mapped) == "[read_file] no such file (session=s-1, path=/tmp/x)"
    assert isinstance(mapped, errors.NotFoundError)
    assert mapped.resource == "/tmp/x"


def test_not_found_falls_back_to_session_as_resource() -> None:
    mapped = errors.map_grpc_error(_FakeRpcError(grpc.StatusCode.NOT_FOUND), session_id="s-9")
    assert isinstance(mapped, errors.NotFoundError)
    assert mapped.resource == "s-9"


def test_unmapped_status_keeps_code_name() -> None:
    mapped = errors.map_grpc_error(_FakeRpcError(grpc.StatusCode.INVALID_ARGUMENT, "bad field"))
    assert type(mapped) is errors.CmdopError
    assert mapped.code == "INVALID_ARGUMENT"
    assert mapped.message == "bad field"


def test_integer_code_attribute_is_understood() -> None:
    mapped = errors.map_grpc_error(_CodeAttrError(14, "connection refused"), operation="ping")
    assert isinstance(mapped, errors.AgentOfflineError)
    assert str(mapped) == "[ping] connection refused"


def test_typed_errors_pass_through_unchanged() -> None:
    original = errors.SessionError("gone", session_id="s-1")
    assert errors.map_grpc_error(original, operation="x") is original


def test_plain_exceptions_become_generic_error_with_same_message() -> None:
    mapped = errors.map_grpc_error(ValueError("weird"))
    assert type(mapped) is errors.CmdopError
    assert str(mapped) == "weird"


def test_builtin_timeout_becomes_sdk_timeout() -> None:
    mapped = errors.map_grpc_error(builtins.TimeoutError(), operation="health_check")
    assert isinstance(mapped, errors.TimeoutError)
    assert str(mapped).startswith("[health_check]")


def test_error_context_reraises_mapped_error_with_cause() -> None:
    original = _FakeRpcError(grpc.StatusCode.PERMISSION_DENIED, "denied")
    with pytest.raises(errors.PermissionError) as exc_info:
        with errors.error_context(operation="send_input", session_id="s-2"):
            raise original
    assert exc_info.value.__cause__ is original
    assert "session=s-2" in str(exc_info.value)


def test_error_context_does_not_touch_cancellation() -> None:
    with pytest.raises(asyncio.CancelledError):
        with errors.error_context(operation="x"):
            raise asyncio.CancelledError()


def test_to_payload_is_serializable() -> None:
    err = errors.RateLimitError("slow down", retry_after_seconds=3.0)
    assert err.to_payload() == {
        "code": "RATE_LIMITED",
        "message": "slow down",
        "details": {"retry_after_seconds": 3.0},
    }
