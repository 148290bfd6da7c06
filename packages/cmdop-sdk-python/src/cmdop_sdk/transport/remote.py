"""
远程 transport：经云端中继访问 agent（TLS + API key）。
"""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

import grpc

from cmdop_sdk import errors
from cmdop_sdk.config import CmdopSettings, load_settings
from cmdop_sdk.transport.base import BaseTransport, ClientFactory


class RemoteTransport(BaseTransport):
    """
    远程 transport。

    说明：
    - 使用 TLS channel，并放宽收发消息大小上限；
    - 每次调用注入 `authorization: Bearer <api_key>`，设置了 agent id 时额外注入 `x-agent-id`。
    """

    mode = "remote"

    def __init__(
        self,
        api_key: str,
        *,
        agent_id: Optional[str] = None,
        server: Optional[str] = None,
        settings: Optional[CmdopSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        """
        参数：
        - api_key：云端 API key（必填）
        - agent_id：目标 agent/会话路由 id（可后续通过 `set_agent_id` 修改）
        - server：中继地址；缺省取 `settings.grpc_server`
        - settings：SDK 配置
        - client_factory：channel → 客户端工厂

        异常：
        - `errors.AuthenticationError`：api_key 为空
        """

        if not api_key or not api_key.strip():
            raise errors.AuthenticationError("API key is required for remote connection")
        resolved = settings or load_settings()
        super().__init__(server or resolved.grpc_server, settings=resolved, client_factory=client_factory)
        self._api_key = api_key.strip()
        self._agent_id = agent_id

    def _channel_options(self) -> List[Tuple[str, Any]]:
        """在 keepalive 选项之外追加消息大小上限。"""

        size = self._settings.max_message_size
        return super()._channel_options() + [
            ("grpc.max_send_message_length", size),
            ("grpc.max_receive_message_length", size),
        ]

    def _build_channel(self) -> grpc.aio.Channel:
        """创建 TLS channel。"""

        return grpc.aio.secure_channel(
            self._address, grpc.ssl_channel_credentials(), options=self._channel_options()
        )

    def _call_metadata(self) -> List[Tuple[str, str]]:
        """注入认证头与路由头。"""

        metadata = [("authorization", f"Bearer {self._api_key}")]
        if self._agent_id:
            metadata.append(("x-agent-id", self._agent_id))
        return metadata
