"""
传输层：本地（IPC）与远程（TLS 中继）两种 channel 生命周期管理。
"""

from __future__ import annotations

from cmdop_sdk.transport.base import BaseTransport
from cmdop_sdk.transport.local import AgentInfo, LocalTransport, format_socket_address
from cmdop_sdk.transport.remote import RemoteTransport

__all__ = ["AgentInfo", "BaseTransport", "LocalTransport", "RemoteTransport", "format_socket_address"]
