"""
SDK 错误分类（异常类型）与 gRPC 状态码映射。

说明：
- 所有对外异常均继承 `CmdopError`，携带稳定的英文 `code/message/details`；
- 部分类名与内置异常同名（`ConnectionError`/`TimeoutError`/`PermissionError`），
  调用方应通过 `cmdop_sdk.errors.<Name>` 访问，避免与 builtins 混淆；
- `map_grpc_error` 是唯一的映射入口：传输层/流/服务层都通过它把底层失败转换为类型化异常。
"""

from __future__ import annotations

import builtins
import contextlib
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import grpc


class CmdopError(Exception):
    """SDK 错误基类（英文 `code/message/details`）。"""

    default_code = "CMDOP_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        创建 SDK 错误。

        参数：
        - `message`：英文错误消息（`str(exc)` 直接返回它）
        - `code`：稳定错误码；缺省使用类上的 `default_code`
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回错误消息本身。"""

        return self.message

    def to_payload(self) -> Dict[str, Any]:
        """转换为可 JSON 序列化的 payload（用于日志/上报）。"""

        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class ConnectionError(CmdopError):  # noqa: A001
    """无法建立或维持与 agent 的连接。"""

    default_code = "CONNECTION_ERROR"


class AgentNotRunningError(ConnectionError):
    """本机未发现运行中的 agent（找不到 discovery 文件）。"""

    default_code = "AGENT_NOT_RUNNING"


class StaleDiscoveryFileError(ConnectionError):
    """discovery 文件存在但 agent 已不可达（文件已被清理）。"""

    default_code = "STALE_DISCOVERY_FILE"

    def __init__(self, path: str) -> None:
        """
        参数：
        - path：已被清理的 discovery 文件路径
        """

        super().__init__(
            "Agent crashed. Stale discovery file cleaned up. Restart agent with: cmdop agent start",
            details={"path": path},
        )
        self.path = path


class AuthenticationError(CmdopError):
    """认证失败（缺失或无效的凭据）。"""

    default_code = "AUTHENTICATION_ERROR"


class InvalidAPIKeyError(AuthenticationError):
    """API key 被服务端拒绝。"""

    default_code = "INVALID_API_KEY"


class SessionError(CmdopError):
    """会话相关错误（会话不存在、主机名匹配歧义等）。"""

    default_code = "SESSION_ERROR"

    def __init__(self, message: str, *, session_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        """
        参数：
        - message：错误消息
        - session_id：相关会话 id（可选）
        - details：附加上下文
        """

        merged = dict(details or {})
        if session_id:
            merged["session_id"] = session_id
        super().__init__(message, details=merged)
        self.session_id = session_id


class TimeoutError(CmdopError):  # noqa: A001
    """调用超过截止时间。"""

    default_code = "TIMEOUT"


class NotFoundError(CmdopError):
    """目标资源不存在。"""

    default_code = "NOT_FOUND"

    def __init__(self, message: str, *, resource: Optional[str] = None) -> None:
        """
        参数：
        - message：错误消息
        - resource：不存在的资源（路径或会话 id）
        """

        super().__init__(message, details={"resource": resource} if resource else None)
        self.resource = resource


class PermissionError(CmdopError):  # noqa: A001
    """权限不足。"""

    default_code = "PERMISSION_DENIED"


class ResourceExhaustedError(CmdopError):
    """资源耗尽（配额、队列容量等）。"""

    default_code = "RESOURCE_EXHAUSTED"


class RateLimitError(ResourceExhaustedError):
    """服务端限流。"""

    default_code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after_seconds: Optional[float] = None) -> None:
        """
        参数：
        - message：错误消息
        - retry_after_seconds：服务端建议的重试间隔（未知时为 None）
        """

        super().__init__(message, details={"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class QueueFullError(ResourceExhaustedError):
    """出站消息队列已满。"""

    default_code = "QUEUE_FULL"


class CancelledError(CmdopError):  # noqa: A001
    """调用被取消。"""

    default_code = "CANCELLED"


class StreamCancelledError(CancelledError):
    """调用方主动取消了流。"""

    default_code = "STREAM_CANCELLED"


class UnavailableError(CmdopError):
    """服务不可用。"""

    default_code = "UNAVAILABLE"


class AgentOfflineError(UnavailableError):
    """目标 agent 离线。"""

    default_code = "AGENT_OFFLINE"

    def __init__(self, message: str, *, agent_id: Optional[str] = None) -> None:
        """
        参数：
        - message：错误消息
        - agent_id：离线的 agent id（可选）
        """

        super().__init__(message, details={"agent_id": agent_id} if agent_id else None)
        self.agent_id = agent_id


class NotConnectedError(CmdopError):
    """在非连接状态下调用了需要连接的操作。"""

    default_code = "NOT_CONNECTED"


class StreamProtocolError(CmdopError):
    """流违反协议约定（例如结束时没有最终结果）。"""

    default_code = "STREAM_PROTOCOL_ERROR"


class AgentRunError(CmdopError):
    """agent 执行返回了失败结果。"""

    default_code = "AGENT_RUN_FAILED"

    def __init__(self, message: str, *, result: Any = None) -> None:
        """
        参数：
        - message：服务端给出的错误文本
        - result：完整的失败结果对象（`AgentResult`）
        """

        super().__init__(message)
        self.result = result


@dataclass(frozen=True)
class ErrorContext:
    """错误上下文（用于增强映射后的错误消息）。"""

    operation: Optional[str] = None
    session_id: Optional[str] = None
    path: Optional[str] = None
    agent_id: Optional[str] = None

    def decorate(self, base: str) -> str:
        """按 `[op] base (session=…, path=…)` 格式拼接消息。"""

        message = f"[{self.operation}] {base}" if self.operation else base
        parts = []
        if self.session_id:
            parts.append(f"session={self.session_id}")
        if self.path:
            parts.append(f"path={self.path}")
        if parts:
            message = f"{message} ({', '.join(parts)})"
        return message


_STATUS_BY_VALUE: Dict[int, grpc.StatusCode] = {status.value[0]: status for status in grpc.StatusCode}


def _status_of(exc: BaseException) -> Optional[grpc.StatusCode]:
    """从异常中提取 gRPC 状态码；不是状态类错误时返回 None。"""

    code_attr = getattr(exc, "code", None)
    if isinstance(exc, grpc.RpcError) and callable(code_attr):
        code = code_attr()
    else:
        code = code_attr
    if isinstance(code, grpc.StatusCode):
        return code
    if isinstance(code, int) and not isinstance(code, bool):
        return _STATUS_BY_VALUE.get(code)
    return None


def _details_of(exc: BaseException) -> str:
    """提取状态错误的描述文本。"""

    details = getattr(exc, "details", None)
    if callable(details):
        details = details()
    if isinstance(details, str) and details:
        return details
    return str(exc) or exc.__class__.__name__


def map_grpc_error(
    exc: BaseException,
    *,
    operation: Optional[str] = None,
    session_id: Optional[str] = None,
    path: Optional[str] = None,
    agent_id: Optional[str] = None,
) -> CmdopError:
    """
    把底层失败映射为唯一一个类型化 SDK 异常。

    参数：
    - exc：原始异常（`grpc.RpcError`、带 `code` 属性的错误或普通异常）
    - operation/session_id/path/agent_id：用于增强消息的上下文

    返回：
    - `CmdopError` 子类实例（已类型化的 `CmdopError` 原样返回）
    """

    if isinstance(exc, CmdopError):
        return exc

    ctx = ErrorContext(operation=operation, session_id=session_id, path=path, agent_id=agent_id)
    status = _status_of(exc)
    if status is None:
        if isinstance(exc, builtins.TimeoutError):
            return TimeoutError(ctx.decorate(str(exc) or "Operation timed out"))
        return CmdopError(ctx.decorate(str(exc) or exc.__class__.__name__))

    message = ctx.decorate(_details_of(exc))
    if status is grpc.StatusCode.CANCELLED:
        return CancelledError(message)
    if status is grpc.StatusCode.DEADLINE_EXCEEDED:
        return TimeoutError(message)
    if status is grpc.StatusCode.NOT_FOUND:
        return NotFoundError(message, resource=path or session_id)
    if status is grpc.StatusCode.PERMISSION_DENIED:
        return PermissionError(message)
    if status is grpc.StatusCode.RESOURCE_EXHAUSTED:
        return RateLimitError(message)
    if status is grpc.StatusCode.UNAVAILABLE:
        return AgentOfflineError(message, agent_id=agent_id)
    if status is grpc.StatusCode.UNAUTHENTICATED:
        return InvalidAPIKeyError(message)
    return CmdopError(message, code=status.name)


@contextlib.contextmanager
def error_context(
    *,
    operation: Optional[str] = None,
    session_id: Optional[str] = None,
    path: Optional[str] = None,
    agent_id: Optional[str] = None,
) -> Iterator[None]:
    """
    在上下文内把任何 `Exception` 经 `map_grpc_error` 重新抛出。

    说明：
    - `asyncio.CancelledError` 属于 BaseException，不会被映射；
    - 已类型化的 `CmdopError` 原样抛出。
    """

    try:
        yield
    except CmdopError:
        raise
    except Exception as exc:
        raise map_grpc_error(
            exc, operation=operation, session_id=session_id, path=path, agent_id=agent_id
        ) from exc
