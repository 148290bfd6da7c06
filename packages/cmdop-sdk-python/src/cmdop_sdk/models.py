"""
对外数据模型（pydantic）。

说明：
- 与 `cmdop_sdk.rpc.messages` 的线上消息分离：这里是 SDK 调用方看到的形状；
- 输入类模型（如 `AgentRunOptions`）拒绝未知字段，构造时即校验取值范围。
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from cmdop_sdk.rpc import messages as m

AgentMode = Literal["chat", "terminal", "command", "router", "planner", "browser", "scraper", "form_filler"]


class SdkModel(BaseModel):
    """对外模型基类（不可变）。"""

    model_config = ConfigDict(frozen=True, extra="forbid")


class AgentRunOptions(SdkModel):
    """agent 执行选项。"""

    mode: AgentMode = "chat"
    timeout_seconds: int = Field(default=300, ge=1, le=600)
    max_turns: Optional[int] = Field(default=None, ge=1)
    max_retries: Optional[int] = Field(default=None, ge=0)
    model: Optional[str] = None
    options: Dict[str, str] = Field(default_factory=dict)
    output_schema: Optional[str] = None
    request_id: Optional[str] = None

    def merged_options(self) -> Dict[str, str]:
        """
        合并自由选项与命名选项。

        说明：
        - 命名选项以字符串形式写入 `max_turns/max_retries/model`，同名 key 以命名选项为准；
        - 未设置的命名选项不出现在结果中。
        """

        merged = dict(self.options)
        if self.max_turns is not None:
            merged["max_turns"] = str(self.max_turns)
        if self.max_retries is not None:
            merged["max_retries"] = str(self.max_retries)
        if self.model is not None:
            merged["model"] = self.model
        return merged

    def to_request(self, session_id: str, prompt: str) -> m.RunAgentRequest:
        """构造 RunAgent/RunAgentStream 请求。"""

        return m.RunAgentRequest(
            session_id=session_id,
            prompt=prompt,
            request_id=self.request_id or "",
            agent_type=m.AgentType(self.mode),
            timeout_seconds=self.timeout_seconds,
            options=self.merged_options(),
            output_schema=self.output_schema or "",
        )


class ToolResult(SdkModel):
    """单次工具调用结果。"""

    tool_name: str
    tool_call_id: str
    success: bool
    result: str
    error: Optional[str] = None
    duration_ms: int = Field(ge=0)


class Usage(SdkModel):
    """token 用量。"""

    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(ge=0)
    total_tokens: int = Field(ge=0)


class AgentResult(SdkModel):
    """agent 执行结果。"""

    request_id: str
    success: bool
    text: str
    error: Optional[str] = None
    tool_results: List[ToolResult] = Field(default_factory=list)
    usage: Optional[Usage] = None
    duration_ms: int = Field(default=0, ge=0)
    output_json: Optional[str] = None

    @classmethod
    def from_response(cls, response: m.RunAgentResponse) -> "AgentResult":
        """从线上响应构造（空字符串视为缺失）。"""

        return cls(
            request_id=response.request_id,
            success=response.success,
            text=response.text,
            error=response.error or None,
            tool_results=[
                ToolResult(
                    tool_name=item.tool_name,
                    tool_call_id=item.tool_call_id,
                    success=item.success,
                    result=item.result,
                    error=item.error or None,
                    duration_ms=max(0, item.duration_ms),
                )
                for item in response.tool_results
            ],
            usage=(
                Usage(
                    prompt_tokens=response.usage.prompt_tokens,
                    completion_tokens=response.usage.completion_tokens,
                    total_tokens=response.usage.total_tokens,
                )
                if response.usage is not None
                else None
            ),
            duration_ms=max(0, response.duration_ms),
            output_json=response.output_json or None,
        )


class SessionInfo(SdkModel):
    """终端会话信息。"""

    session_id: str
    status: str
    hostname: Optional[str] = None
    machine_name: Optional[str] = None
    shell: Optional[str] = None
    working_dir: Optional[str] = None
    os: Optional[str] = None
    agent_version: Optional[str] = None
    has_shell: Optional[bool] = None
    connected_at: Optional[str] = None

    @classmethod
    def from_item(cls, item: m.SessionInfoItem) -> "SessionInfo":
        """从 ListSessions 条目构造。"""

        return cls(
            session_id=item.session_id,
            status=item.status,
            hostname=item.machine_hostname or None,
            machine_name=item.machine_name or None,
            shell=item.shell or None,
            working_dir=item.working_directory or None,
            os=item.os or None,
            agent_version=item.agent_version or None,
            has_shell=item.has_shell,
            connected_at=item.connected_at,
        )


class SessionList(SdkModel):
    """会话列表（分页）。"""

    sessions: List[SessionInfo] = Field(default_factory=list)
    total: int = 0
    workspace_name: str = ""


class SessionStatusInfo(SdkModel):
    """会话状态。"""

    exists: bool
    status: str
    hostname: str
    connected_at: Optional[str] = None
    last_heartbeat: Optional[str] = None
    commands_count: int = Field(default=0, ge=0)


class MachineSession(SdkModel):
    """按主机名解析出的会话（`set_machine` 的结果）。"""

    session_id: str
    hostname: str
    machine_name: str
    status: str
    os: Optional[str] = None
    agent_version: Optional[str] = None
    has_shell: Optional[bool] = None
    shell: Optional[str] = None
    working_dir: Optional[str] = None
    connected_at: Optional[str] = None
    heartbeat_age_seconds: Optional[float] = None


class HistoryResult(SdkModel):
    """命令历史。"""

    commands: List[str] = Field(default_factory=list)
    total: int = 0


class OutputResult(SdkModel):
    """输出缓冲读取结果。"""

    data: bytes = b""
    total_bytes: int = 0
    has_more: bool = False


class ExecuteResult(SdkModel):
    """`TerminalService.execute` 的结果（超时/发送失败时 `exit_code=-1`）。"""

    output: str
    exit_code: int


class HealthStatus(SdkModel):
    """agent 健康状态。"""

    healthy: bool
    version: str = ""
    active_sessions: int = 0
    active_connections: int = 0
