"""
RPC 层：消息模型、客户端协议、默认 grpc.aio 绑定与认证包装。
"""

from __future__ import annotations

from cmdop_sdk.rpc.authenticated import AuthenticatedClient
from cmdop_sdk.rpc.json_client import JsonTerminalServiceClient
from cmdop_sdk.rpc.protocol import AgentStreamCall, TerminalDuplexCall, TerminalServiceClient

__all__ = [
    "AgentStreamCall",
    "AuthenticatedClient",
    "JsonTerminalServiceClient",
    "TerminalDuplexCall",
    "TerminalServiceClient",
]
