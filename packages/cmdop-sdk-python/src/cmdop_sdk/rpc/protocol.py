"""
TerminalStreamingService 客户端协议（结构化类型）。

说明：
- 传输层只依赖这里声明的方法形状，不关心具体绑定（JSON codec 或 protobuf 生成代码）；
- 所有方法都接受 `metadata=`/`timeout=` 关键字参数，便于认证包装器统一注入请求头；
- 流式调用的返回对象与 `grpc.aio` 的 call 对象形状一致（可异步迭代、可 `cancel()`）。
"""

from __future__ import annotations

from typing import AsyncIterator, Optional, Protocol, Sequence, Tuple

from cmdop_sdk.rpc.messages import (
    AckResponse,
    AgentMessage,
    CloseSessionRequest,
    CloseSessionResponse,
    ControlMessage,
    CreateSessionRequest,
    CreateSessionResponse,
    GetHistoryRequest,
    GetHistoryResponse,
    GetOutputRequest,
    GetOutputResponse,
    GetSessionByHostnameRequest,
    GetSessionByHostnameResponse,
    GetSessionStatusRequest,
    GetSessionStatusResponse,
    HealthCheckRequest,
    HealthCheckResponse,
    ListSessionsRequest,
    ListSessionsResponse,
    RunAgentRequest,
    RunAgentResponse,
    RunAgentStreamResponse,
    SendInputRequest,
    SendResizeRequest,
    SendSignalRequest,
)

Metadata = Sequence[Tuple[str, str]]


class AgentStreamCall(Protocol):
    """服务端流式调用（RunAgentStream）。"""

    def __aiter__(self) -> AsyncIterator[RunAgentStreamResponse]:
        """逐条产出流消息。"""

    def cancel(self) -> bool:
        """取消调用；迭代方随后收到 `asyncio.CancelledError`。"""


class TerminalDuplexCall(Protocol):
    """双向流调用（ConnectTerminal）。"""

    async def write(self, message: AgentMessage) -> None:
        """写入一条出站消息。"""

    async def done_writing(self) -> None:
        """半关闭：通知服务端不会再有出站消息。"""

    def __aiter__(self) -> AsyncIterator[ControlMessage]:
        """逐条产出入站消息。"""

    def cancel(self) -> bool:
        """取消调用。"""


class TerminalServiceClient(Protocol):
    """TerminalStreamingService 的客户端方法集合。"""

    async def create_session(
        self, request: CreateSessionRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> CreateSessionResponse:
        """创建会话。"""

    async def close_session(
        self, request: CloseSessionRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> CloseSessionResponse:
        """关闭会话。"""

    async def get_session_status(
        self, request: GetSessionStatusRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> GetSessionStatusResponse:
        """查询会话状态。"""

    async def list_sessions(
        self, request: ListSessionsRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> ListSessionsResponse:
        """列出会话。"""

    async def get_session_by_hostname(
        self,
        request: GetSessionByHostnameRequest,
        *,
        metadata: Optional[Metadata] = None,
        timeout: Optional[float] = None,
    ) -> GetSessionByHostnameResponse:
        """按主机名解析会话。"""

    async def send_input(
        self, request: SendInputRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> AckResponse:
        """发送输入字节。"""

    async def send_resize(
        self, request: SendResizeRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> AckResponse:
        """调整终端尺寸。"""

    async def send_signal(
        self, request: SendSignalRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> AckResponse:
        """发送信号。"""

    async def get_output(
        self, request: GetOutputRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> GetOutputResponse:
        """按偏移读取输出缓冲。"""

    async def get_history(
        self, request: GetHistoryRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> GetHistoryResponse:
        """读取命令历史。"""

    async def run_agent(
        self, request: RunAgentRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> RunAgentResponse:
        """一次性执行 agent。"""

    async def health_check(
        self, request: HealthCheckRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> HealthCheckResponse:
        """健康检查。"""

    def run_agent_stream(
        self, request: RunAgentRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> AgentStreamCall:
        """流式执行 agent。"""

    def connect_terminal(
        self, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None
    ) -> TerminalDuplexCall:
        """打开双向 attach 流。"""


UNARY_METHODS: Tuple[str, ...] = (
    "create_session",
    "close_session",
    "get_session_status",
    "list_sessions",
    "get_session_by_hostname",
    "send_input",
    "send_resize",
    "send_signal",
    "get_output",
    "get_history",
    "run_agent",
    "health_check",
)
