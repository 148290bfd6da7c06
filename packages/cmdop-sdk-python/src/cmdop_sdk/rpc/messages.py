"""
TerminalStreamingService 的请求/响应消息（pydantic 模型）。

说明：
- 字段名与服务端协议一致（snake_case）；未知字段在反序列化时忽略，便于服务端向前演进；
- bytes 字段在 JSON 编码中使用 base64；
- 双工流的 payload 使用 `kind` 作为判别字段（pydantic discriminated union）。
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class RpcMessage(BaseModel):
    """所有 RPC 消息的基类（统一编码配置）。"""

    model_config = ConfigDict(extra="ignore", ser_json_bytes="base64", val_json_bytes="base64")


class TerminalSize(RpcMessage):
    """终端尺寸（字符单元）。"""

    cols: int = 80
    rows: int = 24
    width: int = 0
    height: int = 0


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


class SessionConfig(RpcMessage):
    """新会话的 shell 配置。"""

    session_id: str = ""
    shell: str = ""
    working_directory: str = ""
    env: Dict[str, str] = Field(default_factory=dict)
    size: TerminalSize = Field(default_factory=TerminalSize)


class CreateSessionRequest(RpcMessage):
    """CreateSession 请求。"""

    user_id: str = ""
    name: str = ""
    config: SessionConfig = Field(default_factory=SessionConfig)


class CreateSessionResponse(RpcMessage):
    """CreateSession 响应。"""

    session_id: str = ""
    success: bool = False
    error: str = ""


class CloseSessionRequest(RpcMessage):
    """CloseSession 请求。"""

    session_id: str
    reason: str = ""
    force: bool = False


class CloseSessionResponse(RpcMessage):
    """CloseSession 响应。"""

    success: bool = False
    error: str = ""


class GetSessionStatusRequest(RpcMessage):
    """GetSessionStatus 请求。"""

    session_id: str


class GetSessionStatusResponse(RpcMessage):
    """GetSessionStatus 响应。"""

    exists: bool = False
    status: str = "unknown"
    agent_hostname: str = ""
    connected_at: Optional[str] = None
    last_heartbeat_at: Optional[str] = None
    commands_count: int = 0


class SessionInfoItem(RpcMessage):
    """ListSessions 中的单个会话条目。"""

    session_id: str
    machine_hostname: str = ""
    machine_name: str = ""
    status: str = ""
    os: str = ""
    agent_version: str = ""
    has_shell: bool = False
    shell: str = ""
    working_directory: str = ""
    connected_at: Optional[str] = None
    heartbeat_age_seconds: float = 0.0


class ListSessionsRequest(RpcMessage):
    """ListSessions 请求。"""

    hostname_filter: str = ""
    status_filter: str = ""
    limit: int = 20
    offset: int = 0


class ListSessionsResponse(RpcMessage):
    """ListSessions 响应。"""

    sessions: List[SessionInfoItem] = Field(default_factory=list)
    total: int = 0
    workspace_name: str = ""
    error: str = ""


class GetSessionByHostnameRequest(RpcMessage):
    """GetSessionByHostname 请求。"""

    hostname: str
    partial_match: bool = True


class GetSessionByHostnameResponse(RpcMessage):
    """GetSessionByHostname 响应。"""

    found: bool = False
    ambiguous: bool = False
    matches_count: int = 0
    error: str = ""
    session_id: str = ""
    machine_hostname: str = ""
    machine_name: str = ""
    status: str = ""
    os: str = ""
    agent_version: str = ""
    has_shell: bool = False
    shell: str = ""
    working_directory: str = ""
    connected_at: Optional[str] = None
    heartbeat_age_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Terminal I/O
# ---------------------------------------------------------------------------


class SendInputRequest(RpcMessage):
    """SendInput 请求。"""

    session_id: str
    data: bytes


class SendResizeRequest(RpcMessage):
    """SendResize 请求。"""

    session_id: str
    cols: int
    rows: int


class SendSignalRequest(RpcMessage):
    """SendSignal 请求。"""

    session_id: str
    signal: int


class AckResponse(RpcMessage):
    """SendInput/SendResize/SendSignal 的通用应答。"""

    success: bool = False
    error: str = ""


class GetOutputRequest(RpcMessage):
    """GetOutput 请求（`limit=0` 表示不限制）。"""

    session_id: str
    offset: int = 0
    limit: int = 0


class GetOutputResponse(RpcMessage):
    """GetOutput 响应。"""

    data: bytes = b""
    total_bytes: int = 0
    has_more: bool = False


class GetHistoryRequest(RpcMessage):
    """GetHistory 请求。"""

    session_id: str
    limit: int = 100
    offset: int = 0


class GetHistoryResponse(RpcMessage):
    """GetHistory 响应。"""

    commands: List[str] = Field(default_factory=list)
    total: int = 0


# ---------------------------------------------------------------------------
# Agent execution
# ---------------------------------------------------------------------------


class AgentType(str, Enum):
    """服务端 agent 类型。"""

    CHAT = "chat"
    TERMINAL = "terminal"
    COMMAND = "command"
    ROUTER = "router"
    PLANNER = "planner"
    BROWSER = "browser"
    SCRAPER = "scraper"
    FORM_FILLER = "form_filler"


class RunAgentRequest(RpcMessage):
    """RunAgent / RunAgentStream 请求。"""

    session_id: str
    prompt: str
    request_id: str = ""
    agent_type: AgentType = AgentType.CHAT
    timeout_seconds: int = 300
    options: Dict[str, str] = Field(default_factory=dict)
    output_schema: str = ""


class AgentToolResult(RpcMessage):
    """单次工具调用结果。"""

    tool_name: str = ""
    tool_call_id: str = ""
    success: bool = False
    result: str = ""
    error: str = ""
    duration_ms: int = 0


class AgentUsage(RpcMessage):
    """token 用量。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class RunAgentResponse(RpcMessage):
    """RunAgent 响应（也作为流式调用的最终结果）。"""

    request_id: str = ""
    success: bool = False
    text: str = ""
    error: str = ""
    tool_results: List[AgentToolResult] = Field(default_factory=list)
    usage: Optional[AgentUsage] = None
    duration_ms: int = 0
    output_json: str = ""


class AgentEventType(str, Enum):
    """流式 agent 的进度事件类型。"""

    TOKEN = "token"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    THINKING = "thinking"
    ERROR = "error"
    HANDOFF = "handoff"
    CANCELLED = "cancelled"


class AgentEvent(RpcMessage):
    """流式 agent 的单个进度事件（`timestamp` 为毫秒）。"""

    request_id: str = ""
    type: AgentEventType
    payload: str = ""
    timestamp: int = 0


class RunAgentStreamResponse(RpcMessage):
    """RunAgentStream 的单条流消息。"""

    event: Optional[AgentEvent] = None
    is_final: bool = False
    result: Optional[RunAgentResponse] = None


class HealthCheckRequest(RpcMessage):
    """HealthCheck 请求（无字段）。"""


class HealthCheckResponse(RpcMessage):
    """HealthCheck 响应。"""

    healthy: bool = True
    version: str = ""
    active_sessions: int = 0
    active_connections: int = 0


# ---------------------------------------------------------------------------
# ConnectTerminal duplex stream
# ---------------------------------------------------------------------------


class RegisterPayload(RpcMessage):
    """attach 流的首条消息：注册客户端。"""

    kind: Literal["register"] = "register"
    version: str
    hostname: str = ""
    platform: str = ""
    supported_shells: List[str] = Field(default_factory=list)
    initial_size: TerminalSize = Field(default_factory=TerminalSize)
    username: str = ""
    home_dir: str = ""
    has_shell: bool = True


class OutputPayload(RpcMessage):
    """客户端 → 服务端：键盘输入字节。"""

    kind: Literal["output"] = "output"
    data: bytes
    is_stderr: bool = False
    sequence: int = 0


class StatusPayload(RpcMessage):
    """客户端 → 服务端：带原因的状态更新（resize/signal 编码在 reason 中）。"""

    kind: Literal["status"] = "status"
    old_status: str = ""
    new_status: str = ""
    reason: str = ""
    working_directory: str = ""


class HeartbeatPayload(RpcMessage):
    """客户端 → 服务端：保活心跳。"""

    kind: Literal["heartbeat"] = "heartbeat"


ClientPayload = Annotated[
    Union[RegisterPayload, OutputPayload, StatusPayload, HeartbeatPayload],
    Field(discriminator="kind"),
]


class AgentMessage(RpcMessage):
    """attach 流出站消息信封。"""

    session_id: str
    message_id: str
    timestamp: int = 0
    payload: ClientPayload


class StartSessionPayload(RpcMessage):
    """服务端 → 客户端：会话就绪。"""

    kind: Literal["start_session"] = "start_session"
    session_id: str = ""


class InputPayload(RpcMessage):
    """服务端 → 客户端：终端输出字节。"""

    kind: Literal["input"] = "input"
    data: bytes = b""


class CloseSessionPayload(RpcMessage):
    """服务端 → 客户端：会话关闭。"""

    kind: Literal["close_session"] = "close_session"
    reason: str = ""


class PingPayload(RpcMessage):
    """服务端 → 客户端：心跳探测，需立即回心跳。"""

    kind: Literal["ping"] = "ping"


ServerPayload = Annotated[
    Union[StartSessionPayload, InputPayload, CloseSessionPayload, PingPayload],
    Field(discriminator="kind"),
]


class ControlMessage(RpcMessage):
    """attach 流入站消息信封（payload 可为空）。"""

    session_id: str = ""
    message_id: str = ""
    payload: Optional[ServerPayload] = None
