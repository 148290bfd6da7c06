"""
服务基类：会话路由（session id / 主机名）与统一的错误映射。
"""

from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from cmdop_sdk import errors
from cmdop_sdk.config import CmdopSettings, load_settings
from cmdop_sdk.models import MachineSession
from cmdop_sdk.rpc.messages import GetSessionByHostnameRequest
from cmdop_sdk.rpc.protocol import TerminalServiceClient


class BaseService:
    """
    服务基类。

    说明：
    - 子类通过 `self._call(...)` 包裹 RPC，传输失败统一映射为类型化异常；
    - `set_machine()` 把主机名解析为会话并缓存，后续调用可省略 session_id。
    """

    def __init__(self, client: TerminalServiceClient, *, settings: Optional[CmdopSettings] = None) -> None:
        """
        参数：
        - client：RPC 客户端
        - settings：SDK 配置（读取单次 RPC 超时等）
        """

        self._client = client
        self._settings = settings or load_settings()
        self._session_id = ""
        self._hostname = ""
        self._session_info: Optional[MachineSession] = None

    @property
    def session_id(self) -> str:
        """当前缓存的会话 id（未设置时为空串）。"""

        return self._session_id

    def set_session_id(self, session_id: str) -> None:
        """设置后续调用使用的会话 id。"""

        self._session_id = session_id

    @property
    def current_session(self) -> Optional[MachineSession]:
        """`set_machine()` 缓存的会话信息。"""

        return self._session_info

    @property
    def current_hostname(self) -> str:
        """`set_machine()` 缓存的主机名。"""

        return self._hostname

    def clear_session(self) -> None:
        """清除缓存的会话与主机名。"""

        self._session_id = ""
        self._hostname = ""
        self._session_info = None

    @contextlib.contextmanager
    def _call(self, operation: str, *, session_id: Optional[str] = None) -> Iterator[None]:
        """RPC 调用的错误映射上下文。"""

        with errors.error_context(operation=operation, session_id=session_id or self._session_id or None):
            yield

    @property
    def _timeout(self) -> float:
        """单次一元 RPC 超时（秒）。"""

        return self._settings.request_timeout_sec

    def _resolve_session(self, session_id: Optional[str]) -> str:
        """
        返回显式 session_id 或缓存值。

        异常：
        - `errors.SessionError`：两者都为空
        """

        resolved = session_id or self._session_id
        if not resolved:
            raise errors.SessionError("No session. Call set_machine() first or pass session_id.")
        return resolved

    async def get_session_by_hostname(self, hostname: str, partial_match: bool = True) -> MachineSession:
        """
        按主机名查找最合适的活动会话（不缓存）。

        异常：
        - `errors.SessionError`：主机名匹配多个机器，或没有匹配的活动会话
        """

        with self._call("get_session_by_hostname"):
            response = await self._client.get_session_by_hostname(
                GetSessionByHostnameRequest(hostname=hostname, partial_match=partial_match),
                timeout=self._timeout,
            )
        if response.ambiguous:
            raise errors.SessionError(
                f'Ambiguous hostname "{hostname}": {response.matches_count} machines matched. '
                "Use a more specific name or set partial_match=False."
            )
        if not response.found:
            raise errors.SessionError(response.error or f'No active session found for hostname "{hostname}"')
        return MachineSession(
            session_id=response.session_id,
            hostname=response.machine_hostname,
            machine_name=response.machine_name,
            status=response.status,
            os=response.os or None,
            agent_version=response.agent_version or None,
            has_shell=response.has_shell or None,
            shell=response.shell or None,
            working_dir=response.working_directory or None,
            connected_at=response.connected_at,
            heartbeat_age_seconds=response.heartbeat_age_seconds or None,
        )

    async def set_machine(self, hostname: str, partial_match: bool = True) -> MachineSession:
        """解析主机名并缓存会话 id、主机名与会话信息。"""

        result = await self.get_session_by_hostname(hostname, partial_match)
        self._session_id = result.session_id
        self._hostname = result.hostname
        self._session_info = result
        return result
