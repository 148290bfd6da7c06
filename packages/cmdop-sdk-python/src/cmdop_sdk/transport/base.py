"""
传输层基类：channel 生命周期 + 客户端缓存 + 请求头注入。

约束：
- `connect()` 幂等：已有 channel 时直接返回；
- `create_client()` 懒创建并缓存；有需要注入的请求头时用 `AuthenticatedClient` 包装；
- `set_agent_id()` 只使缓存的客户端失效，不重建 channel；
- `close()` 之后，由该 transport 构建的客户端/流全部失效。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Tuple

import grpc

from cmdop_sdk import errors
from cmdop_sdk.config import CmdopSettings, load_settings
from cmdop_sdk.rpc.authenticated import AuthenticatedClient
from cmdop_sdk.rpc.json_client import JsonTerminalServiceClient
from cmdop_sdk.rpc.protocol import TerminalServiceClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[grpc.aio.Channel], TerminalServiceClient]


class BaseTransport:
    """gRPC transport 基类（子类决定 channel 凭据与请求头）。"""

    mode = "base"

    def __init__(
        self,
        address: str,
        *,
        settings: Optional[CmdopSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        """
        参数：
        - address：gRPC target（已规范化）
        - settings：SDK 配置；缺省时按环境变量加载
        - client_factory：channel → 客户端的工厂（默认 JSON codec 绑定）
        """

        self._address = address
        self._settings = settings or load_settings()
        self._client_factory: ClientFactory = client_factory or JsonTerminalServiceClient
        self._channel: Optional[grpc.aio.Channel] = None
        self._client: Optional[TerminalServiceClient] = None
        self._agent_id: Optional[str] = None

    @property
    def address(self) -> str:
        """gRPC target 地址。"""

        return self._address

    @property
    def settings(self) -> CmdopSettings:
        """当前配置对象。"""

        return self._settings

    @property
    def agent_id(self) -> Optional[str]:
        """当前路由 id（仅远程模式有意义）。"""

        return self._agent_id

    @property
    def is_connected(self) -> bool:
        """是否已创建 channel。"""

        return self._channel is not None

    @property
    def channel(self) -> grpc.aio.Channel:
        """
        返回当前 channel。

        异常：
        - `errors.ConnectionError`：尚未 `connect()` 或已 `close()`
        """

        if self._channel is None:
            raise errors.ConnectionError("Transport not connected")
        return self._channel

    def _channel_options(self) -> List[Tuple[str, Any]]:
        """返回 channel 选项（keepalive 参数来自配置）。"""

        s = self._settings
        return [
            ("grpc.keepalive_time_ms", s.keepalive_interval_ms),
            ("grpc.keepalive_timeout_ms", s.keepalive_timeout_ms),
            ("grpc.keepalive_permit_without_calls", 1),
            ("grpc.http2.min_time_between_pings_ms", s.keepalive_interval_ms),
        ]

    def _build_channel(self) -> grpc.aio.Channel:
        """创建 channel（子类实现）。"""

        raise NotImplementedError

    def _call_metadata(self) -> List[Tuple[str, str]]:
        """返回每次调用需要注入的请求头（默认无）。"""

        return []

    def connect(self) -> grpc.aio.Channel:
        """创建 channel（幂等）。"""

        if self._channel is None:
            self._channel = self._build_channel()
            logger.debug("%s transport connected to %s", self.mode, self._address)
        return self._channel

    def create_client(self) -> TerminalServiceClient:
        """
        返回缓存的 RPC 客户端；必要时懒创建。

        说明：
        - 尚未连接时会先 `connect()`；
        - 请求头在创建时固定，路由 id 变化后需通过 `set_agent_id()` 失效重建。
        """

        if self._client is None:
            raw = self._client_factory(self.connect())
            metadata = self._call_metadata()
            self._client = AuthenticatedClient(raw, metadata) if metadata else raw
        return self._client

    def set_agent_id(self, agent_id: str) -> None:
        """更新路由 id，并丢弃缓存的客户端（channel 保持不变）。"""

        self._agent_id = agent_id
        self._client = None

    async def close(self) -> None:
        """关闭 channel 并丢弃客户端（幂等）。"""

        channel, self._channel = self._channel, None
        self._client = None
        if channel is not None:
            await channel.close()
            logger.debug("%s transport closed (%s)", self.mode, self._address)

    async def __aenter__(self) -> "BaseTransport":
        """进入上下文时建立 channel。"""

        self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """退出上下文时关闭 channel。"""

        await self.close()
