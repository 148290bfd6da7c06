"""
远程 agent 发现（REST API，httpx）。

接口：
- `GET {api_base_url}/api/v1/sdk/agents/`：列出当前 API key 可见的 agent
- `GET {api_base_url}/api/v1/sdk/agents/{agent_id}/`：查询单个 agent（404 视为不存在）
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cmdop_sdk import errors
from cmdop_sdk.config import CmdopSettings, load_settings
from cmdop_sdk.version import __version__

logger = logging.getLogger(__name__)

AgentStatus = Literal["online", "offline", "busy"]


class RemoteAgentInfo(BaseModel):
    """远程 agent 描述。"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    agent_id: str = ""
    name: str = ""
    hostname: str = ""
    platform: str = ""
    version: str = ""
    status: AgentStatus = "offline"
    last_seen: Optional[str] = None
    workspace_id: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        """未知/缺失状态按 offline 处理。"""

        text = str(value or "").strip().lower()
        return text if text in ("online", "offline", "busy") else "offline"

    @field_validator("workspace_id", mode="before")
    @classmethod
    def _stringify_workspace(cls, value: Any) -> Optional[str]:
        """workspace id 可能是整数，统一转为字符串。"""

        return None if value is None else str(value)

    @field_validator("labels", mode="before")
    @classmethod
    def _default_labels(cls, value: Any) -> Dict[str, str]:
        """null 视为空映射。"""

        return value or {}

    @property
    def is_online(self) -> bool:
        """是否在线。"""

        return self.status == "online"

    @property
    def display_name(self) -> str:
        """展示名：name → hostname → "Unknown"。"""

        return self.name or self.hostname or "Unknown"


def _retry_after_seconds(headers: httpx.Headers) -> Optional[float]:
    """从 `Retry-After` 头解析整数秒；无法解析时返回 None。"""

    raw = headers.get("Retry-After")
    if not raw:
        return None
    try:
        seconds = int(str(raw).strip())
    except (ValueError, TypeError):
        return None
    return float(seconds) if seconds > 0 else None


class AgentDiscovery:
    """
    远程 agent 发现客户端。

    说明：
    - 每次请求使用一个短生命周期的 `httpx.AsyncClient`；
    - `http_transport` 可注入 `httpx.MockTransport` 等实现（测试用）。
    """

    def __init__(
        self,
        api_key: str,
        *,
        settings: Optional[CmdopSettings] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        参数：
        - api_key：云端 API key
        - settings：SDK 配置（`api_base_url`、请求超时）
        - http_transport：httpx transport 覆盖
        """

        if not api_key or not api_key.strip():
            raise errors.AuthenticationError("API key is required for agent discovery")
        self._api_key = api_key.strip()
        self._settings = settings or load_settings()
        self._http_transport = http_transport

    @property
    def _base_url(self) -> str:
        """API 根地址（去掉末尾斜杠）。"""

        return self._settings.api_base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        """请求头。"""

        return {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
            "User-Agent": f"cmdop-sdk-python/{__version__}",
        }

    async def _get(self, path: str) -> httpx.Response:
        """
        发送 GET 请求。

        异常：
        - `errors.TimeoutError`：请求超时
        - `errors.ConnectionError`：网络错误
        """

        timeout = httpx.Timeout(self._settings.request_timeout_sec)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._http_transport) as client:
                return await client.get(f"{self._base_url}{path}", headers=self._headers())
        except httpx.TimeoutException as exc:
            raise errors.TimeoutError(f"Discovery API request timed out: {path}") from exc
        except httpx.RequestError as exc:
            raise errors.ConnectionError(f"Discovery API request failed: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        """把非 2xx 响应映射为类型化异常。"""

        status = response.status_code
        if status == 401:
            raise errors.InvalidAPIKeyError("Invalid or expired API key")
        if status == 403:
            raise errors.PermissionError("API key lacks agent access")
        if status == 429:
            raise errors.RateLimitError(
                "Discovery API rate limit exceeded", retry_after_seconds=_retry_after_seconds(response.headers)
            )
        if not response.is_success:
            raise errors.CmdopError(
                f"Discovery API error: {status} {response.reason_phrase}",
                code="DISCOVERY_API_ERROR",
                details={"status_code": status},
            )

    async def list_agents(self) -> List[RemoteAgentInfo]:
        """列出全部可见 agent。"""

        response = await self._get("/api/v1/sdk/agents/")
        self._raise_for_status(response)
        data = response.json()
        if isinstance(data, dict):
            items = data.get("agents") or data.get("results") or []
        else:
            items = data
        return [RemoteAgentInfo.model_validate(item) for item in items]

    async def get_online_agents(self) -> List[RemoteAgentInfo]:
        """只返回在线 agent。"""

        return [agent for agent in await self.list_agents() if agent.is_online]

    async def get_agent(self, agent_id: str) -> Optional[RemoteAgentInfo]:
        """查询单个 agent；不存在时返回 None。"""

        response = await self._get(f"/api/v1/sdk/agents/{quote(agent_id, safe='')}/")
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return RemoteAgentInfo.model_validate(response.json())

    async def wait_for_agent(
        self,
        agent_id: str,
        *,
        timeout_ms: int = 30_000,
        poll_interval_ms: int = 2_000,
    ) -> RemoteAgentInfo:
        """
        轮询直到 agent 上线。

        异常：
        - `errors.TimeoutError`：截止时间内未上线
        """

        deadline = time.monotonic() + timeout_ms / 1000.0
        while time.monotonic() < deadline:
            agent = await self.get_agent(agent_id)
            if agent is not None and agent.is_online:
                return agent
            logger.debug("Agent %s not online yet; retrying", agent_id)
            await asyncio.sleep(poll_interval_ms / 1000.0)
        raise errors.TimeoutError(f"Agent {agent_id} did not come online within {timeout_ms}ms")
