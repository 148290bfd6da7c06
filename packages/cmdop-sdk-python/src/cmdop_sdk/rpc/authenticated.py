"""
认证包装客户端：为每次调用注入请求头。

说明：
- 显式实现 `TerminalServiceClient` 的全部方法（不使用动态代理），逐一合并 metadata 后转发；
- metadata 在构造时固定；路由 id 变化时由 transport 丢弃缓存并重建包装器。
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple

from cmdop_sdk.rpc import messages as m
from cmdop_sdk.rpc.protocol import AgentStreamCall, Metadata, TerminalDuplexCall, TerminalServiceClient


class AuthenticatedClient:
    """在内层客户端外注入 `authorization`/`x-agent-id` 等请求头。"""

    def __init__(self, inner: TerminalServiceClient, metadata: Sequence[Tuple[str, str]]) -> None:
        """
        参数：
        - inner：真正发起 RPC 的客户端
        - metadata：需要注入的请求头（小写 key）
        """

        self._inner = inner
        self._metadata: Tuple[Tuple[str, str], ...] = tuple(metadata)

    @property
    def metadata(self) -> Tuple[Tuple[str, str], ...]:
        """注入的请求头（只读）。"""

        return self._metadata

    def _merge(self, metadata: Optional[Metadata]) -> List[Tuple[str, str]]:
        """合并调用方 metadata；同名 key 以注入值为准。"""

        injected_keys = {key for key, _ in self._metadata}
        merged = [(key, value) for key, value in (metadata or ()) if key not in injected_keys]
        merged.extend(self._metadata)
        return merged

    async def create_session(self, request: m.CreateSessionRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """CreateSession。"""

        return await self._inner.create_session(request, metadata=self._merge(metadata), timeout=timeout)

    async def close_session(self, request: m.CloseSessionRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """CloseSession。"""

        return await self._inner.close_session(request, metadata=self._merge(metadata), timeout=timeout)

    async def get_session_status(self, request: m.GetSessionStatusRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """GetSessionStatus。"""

        return await self._inner.get_session_status(request, metadata=self._merge(metadata), timeout=timeout)

    async def list_sessions(self, request: m.ListSessionsRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """ListSessions。"""

        return await self._inner.list_sessions(request, metadata=self._merge(metadata), timeout=timeout)

    async def get_session_by_hostname(self, request: m.GetSessionByHostnameRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """GetSessionByHostname。"""

        return await self._inner.get_session_by_hostname(request, metadata=self._merge(metadata), timeout=timeout)

    async def send_input(self, request: m.SendInputRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """SendInput。"""

        return await self._inner.send_input(request, metadata=self._merge(metadata), timeout=timeout)

    async def send_resize(self, request: m.SendResizeRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """SendResize。"""

        return await self._inner.send_resize(request, metadata=self._merge(metadata), timeout=timeout)

    async def send_signal(self, request: m.SendSignalRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """SendSignal。"""

        return await self._inner.send_signal(request, metadata=self._merge(metadata), timeout=timeout)

    async def get_output(self, request: m.GetOutputRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """GetOutput。"""

        return await self._inner.get_output(request, metadata=self._merge(metadata), timeout=timeout)

    async def get_history(self, request: m.GetHistoryRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """GetHistory。"""

        return await self._inner.get_history(request, metadata=self._merge(metadata), timeout=timeout)

    async def run_agent(self, request: m.RunAgentRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """RunAgent。"""

        return await self._inner.run_agent(request, metadata=self._merge(metadata), timeout=timeout)

    async def health_check(self, request: m.HealthCheckRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> Any:
        """HealthCheck。"""

        return await self._inner.health_check(request, metadata=self._merge(metadata), timeout=timeout)

    def run_agent_stream(self, request: m.RunAgentRequest, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> AgentStreamCall:
        """RunAgentStream。"""

        return self._inner.run_agent_stream(request, metadata=self._merge(metadata), timeout=timeout)

    def connect_terminal(self, *, metadata: Optional[Metadata] = None, timeout: Optional[float] = None) -> TerminalDuplexCall:
        """ConnectTerminal。"""

        return self._inner.connect_terminal(metadata=self._merge(metadata), timeout=timeout)
