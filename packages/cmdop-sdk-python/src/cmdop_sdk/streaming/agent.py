"""
可取消的 agent 执行流（RunAgentStream）。

约束：
- `start()` 只在收到带结果的最终消息后返回结果；流结束却没有结果时报 `StreamProtocolError`；
- 最终结果 `success=false` 时以服务端错误文本抛 `AgentRunError`（结果对象附在异常上）；
- `cancel()` 之后 `start()` 一律抛 `StreamCancelledError`，不暴露底层中止异常。
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional, Union

from cmdop_sdk import errors
from cmdop_sdk.models import AgentResult, AgentRunOptions
from cmdop_sdk.rpc.messages import AgentEventType, RunAgentStreamResponse
from cmdop_sdk.rpc.protocol import AgentStreamCall, TerminalServiceClient
from cmdop_sdk.streaming.base import (
    AgentCancelledEvent,
    AgentDoneEvent,
    AgentErrorEvent,
    AgentHandoffEvent,
    AgentThinkingEvent,
    AgentTokenEvent,
    AgentToolEndEvent,
    AgentToolStartEvent,
    EventEmitter,
    StreamState,
    StreamStateMachine,
    now_ms,
)

logger = logging.getLogger(__name__)

AgentStreamEvent = Union[
    AgentTokenEvent,
    AgentToolStartEvent,
    AgentToolEndEvent,
    AgentThinkingEvent,
    AgentErrorEvent,
    AgentHandoffEvent,
    AgentCancelledEvent,
    AgentDoneEvent,
]


def _tool_name(payload: str) -> str:
    """从工具事件 payload（JSON）中提取工具名；不是 JSON 时返回空串。"""

    try:
        data = json.loads(payload)
    except ValueError:
        return ""
    if isinstance(data, dict):
        return str(data.get("tool_name") or data.get("name") or "")
    return ""


class AgentStream:
    """
    流式 agent 执行。

    用法：
    - `stream.on(callback)` 接收 token/工具/思考等进度事件；
    - `result = await stream.start()`；
    - 另一个任务中 `stream.cancel()` 可中止执行。
    """

    def __init__(
        self,
        client: TerminalServiceClient,
        session_id: str,
        prompt: str,
        options: Optional[AgentRunOptions] = None,
    ) -> None:
        """
        参数：
        - client：RPC 客户端
        - session_id：执行所在会话
        - prompt：用户提示词
        - options：执行选项（模式、超时、命名选项等）
        """

        self._client = client
        self._session_id = session_id
        self._prompt = prompt
        self._options = options or AgentRunOptions()
        self._state = StreamStateMachine()
        self._events: EventEmitter[AgentStreamEvent] = EventEmitter()
        self._call: Optional[AgentStreamCall] = None

    @property
    def state(self) -> StreamState:
        """当前状态。"""

        return self._state.current

    def on(self, listener: Callable[[AgentStreamEvent], Any]) -> "AgentStream":
        """注册事件监听器。"""

        self._events.on(listener)
        return self

    def off(self, listener: Callable[[AgentStreamEvent], Any]) -> "AgentStream":
        """注销事件监听器。"""

        self._events.off(listener)
        return self

    def _cancelled(self) -> errors.StreamCancelledError:
        """完成 CLOSING → CLOSED，并返回取消异常。"""

        if self._state.current is StreamState.CLOSING:
            self._state.transition(StreamState.CLOSED)
        return errors.StreamCancelledError("Agent stream cancelled")

    async def start(self) -> AgentResult:
        """
        执行 agent 并等待最终结果。

        返回：
        - `AgentResult`（`success=true`）

        异常：
        - `errors.StreamCancelledError`：调用方 `cancel()` 了流
        - `errors.AgentRunError`：最终结果为失败
        - `errors.StreamProtocolError`：流结束但没有最终结果
        - 其它 `errors.CmdopError`：传输失败（已映射）
        """

        if self._state.current is not StreamState.IDLE:
            raise errors.CmdopError("AgentStream already started", code="STREAM_ALREADY_STARTED")
        self._state.transition(StreamState.CONNECTING)

        request = self._options.to_request(self._session_id, self._prompt)
        final: Optional[AgentResult] = None
        try:
            self._call = self._client.run_agent_stream(request)
            self._state.transition(StreamState.CONNECTED)
            async for message in self._call:
                if self._state.current is StreamState.CLOSING:
                    break
                if message.is_final and message.result is not None:
                    final = AgentResult.from_response(message.result)
                    self._events.emit(AgentDoneEvent(result=final))
                else:
                    self._handle_progress(message)
        except asyncio.CancelledError:
            if self._state.current is StreamState.CLOSING:
                raise self._cancelled() from None
            # 外部取消了运行 start() 的任务
            if self._call is not None:
                self._call.cancel()
            self._state.transition(StreamState.CLOSED)
            raise
        except Exception as exc:
            if self._state.current is StreamState.CLOSING:
                raise self._cancelled() from exc
            self._state.transition(StreamState.ERROR)
            raise errors.map_grpc_error(exc, operation="run_agent_stream", session_id=self._session_id) from exc

        if self._state.current is StreamState.CLOSING:
            raise self._cancelled()
        if final is None:
            self._state.transition(StreamState.ERROR)
            raise errors.StreamProtocolError("Agent stream ended without a final result")

        self._state.transition(StreamState.CLOSED)
        if not final.success:
            raise errors.AgentRunError(final.error or "Agent execution failed", result=final)
        return final

    def cancel(self) -> None:
        """取消执行（仅在 CONNECTING/CONNECTED 时生效）。"""

        if self._state.current not in (StreamState.CONNECTING, StreamState.CONNECTED):
            return
        self._state.transition(StreamState.CLOSING)
        if self._call is not None:
            self._call.cancel()

    def _handle_progress(self, message: RunAgentStreamResponse) -> None:
        """把进度事件映射为类型化事件并派发。"""

        event = message.event
        if event is None:
            return
        rid = event.request_id
        ts = event.timestamp or now_ms()
        kind = event.type
        if kind is AgentEventType.TOKEN:
            self._events.emit(AgentTokenEvent(request_id=rid, token=event.payload, timestamp=ts))
        elif kind is AgentEventType.TOOL_START:
            self._events.emit(
                AgentToolStartEvent(request_id=rid, tool_name=_tool_name(event.payload), payload=event.payload, timestamp=ts)
            )
        elif kind is AgentEventType.TOOL_END:
            self._events.emit(
                AgentToolEndEvent(request_id=rid, tool_name=_tool_name(event.payload), payload=event.payload, timestamp=ts)
            )
        elif kind is AgentEventType.THINKING:
            self._events.emit(AgentThinkingEvent(request_id=rid, payload=event.payload, timestamp=ts))
        elif kind is AgentEventType.ERROR:
            self._events.emit(AgentErrorEvent(request_id=rid, message=event.payload, timestamp=ts))
        elif kind is AgentEventType.HANDOFF:
            self._events.emit(AgentHandoffEvent(request_id=rid, payload=event.payload, timestamp=ts))
        elif kind is AgentEventType.CANCELLED:
            self._events.emit(AgentCancelledEvent(request_id=rid, timestamp=ts))
        else:
            logger.debug("Ignoring unknown agent event type %r", kind)
