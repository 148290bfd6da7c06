"""
本地 transport：通过 Unix socket / Named Pipe / 本机 TCP 直连 agent。

发现流程（`LocalTransport.discover`）：
1. 显式 `socket_path` → 直接连接；
2. 按顺序查找 discovery 文件：`settings.agent_info_path`（`CMDOP_AGENT_INFO`）→
   `~/.cmdop/agent.info` → `/var/run/cmdop/agent.info`；
3. 解析 discovery 文件并做健康检查：失败则删除文件（best-effort）并报告 agent 已崩溃；
4. 读取 token 文件（若有），用于注入 `authorization` 请求头。
"""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path
import sys
from typing import List, Literal, Optional, Tuple, Union

import grpc
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from cmdop_sdk import errors
from cmdop_sdk.config import CmdopSettings, load_settings
from cmdop_sdk.rpc.json_client import JsonTerminalServiceClient
from cmdop_sdk.rpc.messages import HealthCheckRequest
from cmdop_sdk.transport.base import BaseTransport, ClientFactory

logger = logging.getLogger(__name__)

_GRPC_SCHEMES: Tuple[str, ...] = ("unix:", "unix-abstract:", "dns:", "ipv4:", "ipv6:")
_WINDOWS_PIPE_PREFIX = "\\\\.\\pipe\\"


class AgentInfo(BaseModel):
    """本地 agent 的 discovery 描述（`agent.info`，JSON）。"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    protocol_version: Union[int, str] = Field(
        default="", validation_alias=AliasChoices("version", "protocolVersion", "protocol_version")
    )
    pid: int
    transport_kind: Literal["unix", "pipe", "tcp"] = Field(
        validation_alias=AliasChoices("transport", "transportKind", "transport_kind")
    )
    address: str
    token_path: Optional[str] = Field(default=None, validation_alias=AliasChoices("tokenPath", "token_path"))
    started_at: Optional[str] = Field(default=None, validation_alias=AliasChoices("startedAt", "started_at"))

    @field_validator("token_path")
    @classmethod
    def _expand_home(cls, value: Optional[str]) -> Optional[str]:
        """展开 `~` 前缀。"""

        if value and value.startswith("~"):
            return str(Path(value).expanduser())
        return value or None


def default_discovery_paths(settings: Optional[CmdopSettings] = None) -> List[Path]:
    """
    返回 discovery 文件候选路径（按优先级）。

    参数：
    - settings：读取 `agent_info_path`（对应 `CMDOP_AGENT_INFO`）
    """

    paths: List[Path] = []
    if settings is not None and settings.agent_info_path:
        paths.append(Path(settings.agent_info_path).expanduser())
    paths.append(Path.home() / ".cmdop" / "agent.info")
    paths.append(Path("/var/run/cmdop/agent.info"))
    return paths


def find_discovery_file(candidates: List[Path]) -> Optional[Path]:
    """返回第一个存在且可读的候选文件；都不存在时返回 None。"""

    for path in candidates:
        if path.is_file() and os.access(path, os.R_OK):
            return path
    return None


def read_agent_info(path: Path) -> AgentInfo:
    """
    读取并解析 discovery 文件。

    异常：
    - `errors.ConnectionError`：文件不可读或内容非法
    """

    try:
        return AgentInfo.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        raise errors.ConnectionError(f"Failed to read agent info: {path}", details={"path": str(path)}) from exc


def read_token(path: str) -> str:
    """读取 token 文件（展开 `~`，去掉首尾空白）。"""

    return Path(path).expanduser().read_text(encoding="utf-8").strip()


def format_socket_address(address: str) -> str:
    """
    把 discovery 中的地址规范化为 gRPC target。

    规则（按顺序）：
    - 已带 gRPC scheme（`unix:`/`dns:` 等）：原样返回
    - 以 `/` 或 `.` 开头的文件路径：加 `unix://` 前缀
    - Windows named pipe：加 `unix://` 前缀
    - 含 `:` 的 `host:port`：原样返回
    - 其它：按 socket 路径处理，加 `unix://` 前缀
    """

    if address.startswith(_GRPC_SCHEMES):
        return address
    if address.startswith(("/", ".")):
        return f"unix://{address}"
    if sys.platform == "win32" and address.startswith(_WINDOWS_PIPE_PREFIX):
        return f"unix://{address}"
    if ":" in address:
        return address
    return f"unix://{address}"


async def ping_agent(
    address: str,
    *,
    timeout_sec: float,
    client_factory: Optional[ClientFactory] = None,
) -> bool:
    """
    对 agent 做一次健康检查（临时 channel，检查后立即关闭）。

    返回：
    - True：agent 在超时内应答
    - False：不可达/超时/报错（原因记录在 debug 日志中）
    """

    channel = grpc.aio.insecure_channel(
        format_socket_address(address),
        options=[("grpc.initial_reconnect_backoff_ms", 100), ("grpc.max_reconnect_backoff_ms", 500)],
    )
    try:
        client = (client_factory or JsonTerminalServiceClient)(channel)
        await client.health_check(HealthCheckRequest(), timeout=timeout_sec)
        return True
    except Exception:
        logger.debug("Health check failed for %s", address, exc_info=True)
        return False
    finally:
        await channel.close()


class LocalTransport(BaseTransport):
    """本地 transport（insecure channel；`set_agent_id` 为 no-op）。"""

    mode = "local"

    def __init__(
        self,
        address: str,
        *,
        token: Optional[str] = None,
        agent_info: Optional[AgentInfo] = None,
        settings: Optional[CmdopSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        """
        参数：
        - address：socket 路径或 `host:port`（会被规范化）
        - token：本地 agent token（存在时注入 `authorization` 请求头）
        - agent_info：discovery 描述（直连时为 None）
        - settings：SDK 配置
        - client_factory：channel → 客户端工厂
        """

        super().__init__(format_socket_address(address), settings=settings, client_factory=client_factory)
        self._token = token
        self._agent_info = agent_info

    @property
    def agent_info(self) -> Optional[AgentInfo]:
        """discovery 描述（直连时为 None）。"""

        return self._agent_info

    @classmethod
    async def discover(
        cls,
        *,
        settings: Optional[CmdopSettings] = None,
        discovery_path: Optional[Path] = None,
        socket_path: Optional[str] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> "LocalTransport":
        """
        发现并连接本地 agent。

        参数：
        - settings：SDK 配置（候选路径、健康检查超时）
        - discovery_path：显式 discovery 文件路径（跳过候选查找）
        - socket_path：显式 socket 地址（跳过 discovery）
        - client_factory：channel → 客户端工厂（健康检查与正式连接共用）

        异常：
        - `errors.AgentNotRunningError`：找不到 discovery 文件
        - `errors.ConnectionError`：discovery 文件非法
        - `errors.StaleDiscoveryFileError`：agent 不可达（文件已被清理）
        """

        resolved = settings or load_settings()
        if socket_path:
            transport = cls(socket_path, settings=resolved, client_factory=client_factory)
            transport.connect()
            return transport

        path = Path(discovery_path) if discovery_path else find_discovery_file(default_discovery_paths(resolved))
        if path is None:
            raise errors.AgentNotRunningError(
                "Agent not running. No discovery file found. Start agent with: cmdop agent start"
            )

        info = read_agent_info(path)
        alive = await ping_agent(
            info.address,
            timeout_sec=resolved.health_check_timeout_ms / 1000.0,
            client_factory=client_factory,
        )
        if not alive:
            with contextlib.suppress(OSError):
                path.unlink()
            raise errors.StaleDiscoveryFileError(str(path))

        token: Optional[str] = None
        if info.token_path:
            try:
                token = read_token(info.token_path)
            except OSError:
                logger.debug("Token file not readable: %s", info.token_path, exc_info=True)

        transport = cls(info.address, token=token, agent_info=info, settings=resolved, client_factory=client_factory)
        transport.connect()
        return transport

    def _build_channel(self) -> grpc.aio.Channel:
        """创建 insecure channel。"""

        return grpc.aio.insecure_channel(self._address, options=self._channel_options())

    def _call_metadata(self) -> List[Tuple[str, str]]:
        """有 token 时注入 `authorization` 请求头。"""

        if self._token:
            return [("authorization", f"Bearer {self._token}")]
        return []

    def set_agent_id(self, agent_id: str) -> None:
        """本地直连单个 agent，不需要路由（no-op）。"""
