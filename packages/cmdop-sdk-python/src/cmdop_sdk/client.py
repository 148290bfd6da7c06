"""
SDK 入口：`CmdopClient`。

连接方式：
- `CmdopClient.local(socket_path=...)`：直连已知 socket
- `await CmdopClient.discover_local()`：按 discovery 文件发现本机 agent
- `CmdopClient.remote(api_key, agent_id=...)`：经云端中继
- `await CmdopClient.discover()`：优先本地，失败后用 `CMDOP_API_KEY` 走远程
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional

from cmdop_sdk import errors
from cmdop_sdk.config import CmdopSettings, load_settings
from cmdop_sdk.discovery import AgentDiscovery, RemoteAgentInfo
from cmdop_sdk.models import HealthStatus, MachineSession
from cmdop_sdk.observability.log_config import configure_logging
from cmdop_sdk.rpc.messages import HealthCheckRequest
from cmdop_sdk.services.agent import AgentService
from cmdop_sdk.services.terminal import TerminalService
from cmdop_sdk.transport.base import BaseTransport, ClientFactory
from cmdop_sdk.transport.local import LocalTransport
from cmdop_sdk.transport.remote import RemoteTransport

logger = logging.getLogger(__name__)


class CmdopClient:
    """
    SDK 客户端（持有 transport，懒创建服务对象）。

    说明：
    - `set_session_id()` 会更新 transport 的路由 id，并使已创建的服务失效（下次访问时按新客户端重建）；
    - 支持 `async with`，退出时关闭 transport。
    """

    def __init__(self, transport: BaseTransport, *, settings: Optional[CmdopSettings] = None) -> None:
        """
        参数：
        - transport：已创建的 transport
        - settings：SDK 配置；缺省沿用 transport 的配置
        """

        self._transport = transport
        self._settings = settings or transport.settings
        self._terminal: Optional[TerminalService] = None
        self._agent: Optional[AgentService] = None
        configure_logging(self._settings)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_transport(cls, transport: BaseTransport) -> "CmdopClient":
        """用已有 transport 创建客户端。"""

        return cls(transport)

    @classmethod
    def local(
        cls,
        socket_path: str,
        *,
        settings: Optional[CmdopSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> "CmdopClient":
        """直连本地 socket（不做 discovery 与健康检查）。"""

        transport = LocalTransport(socket_path, settings=settings, client_factory=client_factory)
        transport.connect()
        return cls(transport)

    @classmethod
    async def discover_local(
        cls,
        *,
        settings: Optional[CmdopSettings] = None,
        discovery_path: Optional[Path] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> "CmdopClient":
        """通过 discovery 文件发现并连接本地 agent。"""

        transport = await LocalTransport.discover(
            settings=settings, discovery_path=discovery_path, client_factory=client_factory
        )
        return cls(transport)

    @classmethod
    def remote(
        cls,
        api_key: str,
        *,
        agent_id: Optional[str] = None,
        server: Optional[str] = None,
        settings: Optional[CmdopSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> "CmdopClient":
        """经云端中继连接远程 agent。"""

        transport = RemoteTransport(
            api_key, agent_id=agent_id, server=server, settings=settings, client_factory=client_factory
        )
        transport.connect()
        return cls(transport)

    @classmethod
    async def discover(
        cls,
        *,
        settings: Optional[CmdopSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> "CmdopClient":
        """
        自动选择连接方式：本地 agent 优先，其次远程（需要 `api_key`/`CMDOP_API_KEY`）。

        异常：
        - `errors.ConnectionError`：本地不可用且未配置 API key
        """

        resolved = settings or load_settings()
        try:
            return await cls.discover_local(settings=resolved, client_factory=client_factory)
        except errors.ConnectionError as exc:
            if not resolved.api_key:
                raise errors.ConnectionError(
                    f"No local agent available and no API key configured (set CMDOP_API_KEY): {exc}"
                ) from exc
            logger.info("Local agent unavailable (%s); falling back to remote", exc)
        return cls.remote(resolved.api_key, settings=resolved, client_factory=client_factory)

    @staticmethod
    async def list_agents(api_key: str, *, settings: Optional[CmdopSettings] = None) -> List[RemoteAgentInfo]:
        """列出 API key 可见的远程 agent。"""

        return await AgentDiscovery(api_key, settings=settings).list_agents()

    @staticmethod
    async def get_online_agents(api_key: str, *, settings: Optional[CmdopSettings] = None) -> List[RemoteAgentInfo]:
        """列出在线的远程 agent。"""

        return await AgentDiscovery(api_key, settings=settings).get_online_agents()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def transport(self) -> BaseTransport:
        """底层 transport。"""

        return self._transport

    @property
    def mode(self) -> str:
        """连接方式：`local` 或 `remote`。"""

        return self._transport.mode

    @property
    def address(self) -> str:
        """gRPC target 地址。"""

        return self._transport.address

    @property
    def is_connected(self) -> bool:
        """transport 是否已建立 channel。"""

        return self._transport.is_connected

    @property
    def terminal(self) -> TerminalService:
        """终端服务（懒创建）。"""

        if self._terminal is None:
            self._terminal = TerminalService(self._transport.create_client(), settings=self._settings)
        return self._terminal

    @property
    def agent(self) -> AgentService:
        """agent 服务（懒创建）。"""

        if self._agent is None:
            self._agent = AgentService(self._transport.create_client(), settings=self._settings)
        return self._agent

    # ------------------------------------------------------------------
    # Session routing
    # ------------------------------------------------------------------

    def set_session_id(self, session_id: str) -> None:
        """设置远程路由 id，并重建服务对象。"""

        self._transport.set_agent_id(session_id)
        self._terminal = None
        self._agent = None
        self.terminal.set_session_id(session_id)
        self.agent.set_session_id(session_id)

    async def set_machine(self, hostname: str, partial_match: bool = True) -> MachineSession:
        """按主机名解析会话，并同步到终端与 agent 服务。"""

        result = await self.terminal.set_machine(hostname, partial_match)
        await self.agent.set_machine(hostname, partial_match)
        return result

    async def health_check(self) -> HealthStatus:
        """查询 agent 健康状态。"""

        client = self._transport.create_client()
        with errors.error_context(operation="health_check"):
            response = await client.health_check(
                HealthCheckRequest(), timeout=self._settings.health_check_timeout_ms / 1000.0
            )
        return HealthStatus(
            healthy=response.healthy,
            version=response.version,
            active_sessions=response.active_sessions,
            active_connections=response.active_connections,
        )

    async def close(self) -> None:
        """关闭 transport（幂等）。"""

        self._terminal = None
        self._agent = None
        await self._transport.close()

    async def __aenter__(self) -> "CmdopClient":
        """进入上下文。"""

        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """退出上下文时关闭。"""

        await self.close()
