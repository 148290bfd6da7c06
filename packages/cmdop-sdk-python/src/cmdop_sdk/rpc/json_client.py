"""
基于 `grpc.aio` 的默认客户端绑定（JSON codec）。

说明：
- 请求/响应均为 `cmdop_sdk.rpc.messages` 中的 pydantic 模型，线上编码为 UTF-8 JSON；
- 方法路径为 `/<SERVICE_NAME>/<Method>`；
- 需要 protobuf 编码时，可通过 transport 的 `client_factory` 注入生成代码的 stub，
  只要满足 `TerminalServiceClient` 协议即可。
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Type, TypeVar

import grpc
from pydantic import BaseModel

from cmdop_sdk.rpc import messages as m
from cmdop_sdk.rpc.protocol import AgentStreamCall, Metadata, TerminalDuplexCall

SERVICE_NAME = "cmdop.terminal.TerminalStreamingService"

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def _serialize(message: BaseModel) -> bytes:
    """把 pydantic 消息编码为 JSON 字节。"""

    return message.model_dump_json().encode("utf-8")


def _deserializer(model: Type[_ModelT]) -> Callable[[bytes], _ModelT]:
    """返回指定模型的 JSON 解码函数。"""

    def _decode(raw: bytes) -> _ModelT:
        """解码单条消息。"""

        return model.model_validate_json(raw)

    return _decode


def _path(method: str) -> str:
    """拼接完整方法路径。"""

    return f"/{SERVICE_NAME}/{method}"


class JsonTerminalServiceClient:
    """`TerminalServiceClient` 的 grpc.aio 实现。"""

    def __init__(self, channel: grpc.aio.Channel) -> None:
        """
        参数：
        - channel：已创建的 `grpc.aio` channel（生命周期由 transport 管理）
        """

        self._channel = channel
        self._create_session = self._unary("CreateSession", m.CreateSessionResponse)
        self._close_session = self._unary("CloseSession", m.CloseSessionResponse)
        self._get_session_status = self._unary("GetSessionStatus", m.GetSessionStatusResponse)
        self._list_sessions = self._unary("ListSessions", m.ListSessionsResponse)
        self._get_session_by_hostname = self._unary("GetSessionByHostname", m.GetSessionByHostnameResponse)
        self._send_input = self._unary("SendInput", m.AckResponse)
        self._send_resize = self._unary("SendResize", m.AckResponse)
        self._send_signal = self._unary("SendSignal", m.AckResponse)
        self._get_output = self._unary("GetOutput", m.GetOutputResponse)
        self._get_history = self._unary("GetHistory", m.GetHistoryResponse)
        self._run_agent = self._unary("RunAgent", m.RunAgentResponse)
        self._health_check = self._unary("HealthCheck", m.HealthCheckResponse)
        self._run_agent_stream = channel.unary_stream(
            _path("RunAgentStream"),
            request_serializer=_serialize,
            response_deserializer=_deserializer(m.RunAgentStreamResponse),
        )
        self._connect_terminal = channel.stream_stream(
            _path("ConnectTerminal"),
            request_serializer=_serialize,
            response_deserializer=_deserializer(m.ControlMessage),
        )

    def _unary(self, method: str, response_model: Type[BaseModel]) -> Any:
        """创建一元方法的 multi-callable。"""

        return self._channel.unary_unary(
            _path(method),
            request_serializer=_serialize,
            response_deserializer=_deserializer(response_model),
        )

    async def create_session(
        self, request: m.CreateSessionRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.CreateSessionResponse:
        """CreateSession。"""

        return await self._create_session(request, metadata=metadata, timeout=timeout)

    async def close_session(
        self, request: m.CloseSessionRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.CloseSessionResponse:
        """CloseSession。"""

        return await self._close_session(request, metadata=metadata, timeout=timeout)

    async def get_session_status(
        self, request: m.GetSessionStatusRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.GetSessionStatusResponse:
        """GetSessionStatus。"""

        return await self._get_session_status(request, metadata=metadata, timeout=timeout)

    async def list_sessions(
        self, request: m.ListSessionsRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.ListSessionsResponse:
        """ListSessions。"""

        return await self._list_sessions(request, metadata=metadata, timeout=timeout)

    async def get_session_by_hostname(
        self,
        request: m.GetSessionByHostnameRequest,
        *,
        metadata: Optional[Metadata] = None,
        timeout: Optional[float] = None,
    ) -> m.GetSessionByHostnameResponse:
        """GetSessionByHostname。"""

        return await self._get_session_by_hostname(request, metadata=metadata, timeout=timeout)

    async def send_input(
        self, request: m.SendInputRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.AckResponse:
        """SendInput。"""

        return await self._send_input(request, metadata=metadata, timeout=timeout)

    async def send_resize(
        self, request: m.SendResizeRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.AckResponse:
        """SendResize。"""

        return await self._send_resize(request, metadata=metadata, timeout=timeout)

    async def send_signal(
        self, request: m.SendSignalRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.AckResponse:
        """SendSignal。"""

        return await self._send_signal(request, metadata=metadata, timeout=timeout)

    async def get_output(
        self, request: m.GetOutputRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.GetOutputResponse:
        """GetOutput。"""

        return await self._get_output(request, metadata=metadata, timeout=timeout)

    async def get_history(
        self, request: m.GetHistoryRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.GetHistoryResponse:
        """GetHistory。"""

        return await self._get_history(request, metadata=metadata, timeout=timeout)

    async def run_agent(
        self, request: m.RunAgentRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.RunAgentResponse:
        """RunAgent。"""

        return await self._run_agent(request, metadata=metadata, timeout=timeout)

    async def health_check(
        self, request: m.HealthCheckRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> m.HealthCheckResponse:
        """HealthCheck。"""

        return await self._health_check(request, metadata=metadata, timeout=timeout)

    def run_agent_stream(
        self, request: m.RunAgentRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> AgentStreamCall:
        """RunAgentStream（返回 `grpc.aio.UnaryStreamCall`）。"""

        return self._run_agent_stream(request, metadata=metadata, timeout=timeout)

    def connect_terminal(
        self, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> TerminalDuplexCall:
        """ConnectTerminal（返回 `grpc.aio.StreamStreamCall`，出站消息通过 `write()` 发送）。"""

        return self._connect_terminal(metadata=metadata, timeout=timeout)
