"""
服务层：终端会话与 agent 执行。
"""

from __future__ import annotations

from cmdop_sdk.services.agent import AgentService
from cmdop_sdk.services.base import BaseService
from cmdop_sdk.services.terminal import TerminalService

__all__ = ["AgentService", "BaseService", "TerminalService"]
