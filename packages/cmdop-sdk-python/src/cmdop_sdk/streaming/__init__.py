"""
流层：状态机、轮询输出流、双向 attach 流与 agent 执行流。
"""

from __future__ import annotations

from cmdop_sdk.streaming.agent import AgentStream
from cmdop_sdk.streaming.attach import AttachStream, AttachStreamOptions, MessageQueue
from cmdop_sdk.streaming.base import StreamMetrics, StreamState, StreamStateMachine
from cmdop_sdk.streaming.terminal import TerminalStream, TerminalStreamOptions

__all__ = [
    "AgentStream",
    "AttachStream",
    "AttachStreamOptions",
    "MessageQueue",
    "StreamMetrics",
    "StreamState",
    "StreamStateMachine",
    "TerminalStream",
    "TerminalStreamOptions",
]
