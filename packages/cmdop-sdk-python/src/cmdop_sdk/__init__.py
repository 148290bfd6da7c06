"""
CMDOP SDK（Python）。

说明：
- 客户端 SDK：创建/驱动远端终端会话，实时收发输入输出，执行长时间运行的 AI agent；
- 支持本地（同机 IPC）与远程（云端中继 + TLS）两种连接；
- 入口：`CmdopClient`；配置：`load_settings()`；错误：`cmdop_sdk.errors`。
"""

from __future__ import annotations

import logging

from cmdop_sdk.client import CmdopClient
from cmdop_sdk.config import CmdopSettings, load_settings
from cmdop_sdk.discovery import AgentDiscovery, RemoteAgentInfo
from cmdop_sdk.errors import CmdopError, map_grpc_error
from cmdop_sdk.models import AgentResult, AgentRunOptions
from cmdop_sdk.streaming import AgentStream, AttachStream, StreamState, TerminalStream
from cmdop_sdk.version import __version__

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AgentDiscovery",
    "AgentResult",
    "AgentRunOptions",
    "AgentStream",
    "AttachStream",
    "CmdopClient",
    "CmdopError",
    "CmdopSettings",
    "RemoteAgentInfo",
    "StreamState",
    "TerminalStream",
    "__version__",
    "load_settings",
    "map_grpc_error",
]
