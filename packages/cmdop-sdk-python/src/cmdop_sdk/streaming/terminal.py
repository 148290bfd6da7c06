"""
轮询式终端输出流。

行为：
- `connect()` 后以自适应节奏轮询 `get_output`：连续空轮询次数达到 `idle_threshold`
  后降为 `idle_poll_interval_ms`，拿到任何数据立即恢复 `poll_interval_ms`；
- 游标只按"已派发的字节数"前进：轮询失败或在 `close()` 之后才返回的数据不推进游标；
- 输入/resize/信号各自走一元 RPC，与轮询相互独立。
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
import logging
from typing import Any, Callable, Optional, Union

from cmdop_sdk import errors
from cmdop_sdk.config import CmdopSettings
from cmdop_sdk.rpc.messages import GetOutputRequest, SendInputRequest, SendResizeRequest, SendSignalRequest
from cmdop_sdk.rpc.protocol import TerminalServiceClient
from cmdop_sdk.streaming.base import (
    ErrorEvent,
    EventEmitter,
    OutputEvent,
    StatusEvent,
    StreamMetrics,
    StreamState,
    StreamStateMachine,
)

logger = logging.getLogger(__name__)

SIGNALS = {
    "SIGHUP": 1,
    "SIGINT": 2,
    "SIGKILL": 9,
    "SIGTERM": 15,
    "SIGCONT": 18,
    "SIGSTOP": 19,
}


def resolve_signal(signal: Union[int, str]) -> int:
    """把信号名/编号解析为编号（未知名称按 SIGTERM=15 处理）。"""

    if isinstance(signal, int):
        return signal
    return SIGNALS.get(signal.strip().upper(), 15)


@dataclass(frozen=True)
class TerminalStreamOptions:
    """轮询节奏参数（毫秒）。`max_bytes_per_poll=0` 表示不限制。"""

    poll_interval_ms: int = 100
    idle_threshold: int = 10
    idle_poll_interval_ms: int = 500
    max_bytes_per_poll: int = 0

    @classmethod
    def from_settings(cls, settings: CmdopSettings) -> "TerminalStreamOptions":
        """从 SDK 配置读取默认值。"""

        return cls(
            poll_interval_ms=settings.poll_interval_ms,
            idle_threshold=settings.idle_threshold,
            idle_poll_interval_ms=settings.idle_poll_interval_ms,
            max_bytes_per_poll=settings.max_bytes_per_poll,
        )


TerminalEvent = Union[OutputEvent, StatusEvent, ErrorEvent]


class TerminalStream:
    """
    基于 `get_output` 轮询的终端输出流。

    用法：
    - `stream.on(callback)` 注册事件监听；
    - `done = stream.connect()` 开始轮询，`await done` 在流关闭时返回；
    - `await stream.close()` 停止轮询（幂等）。
    """

    def __init__(
        self,
        client: TerminalServiceClient,
        session_id: str,
        *,
        options: Optional[TerminalStreamOptions] = None,
    ) -> None:
        """
        参数：
        - client：RPC 客户端（通常来自 transport.create_client()）
        - session_id：目标会话
        - options：轮询节奏参数
        """

        self._client = client
        self._session_id = session_id
        self._options = options or TerminalStreamOptions()
        self._state = StreamStateMachine()
        self._events: EventEmitter[TerminalEvent] = EventEmitter()
        self._metrics = StreamMetrics()
        self._output_offset = 0
        self._consecutive_empty = 0
        self._closed = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional["asyncio.Task[None]"] = None
        self._done: Optional["asyncio.Future[None]"] = None

    @property
    def session_id(self) -> str:
        """目标会话 id。"""

        return self._session_id

    @property
    def state(self) -> StreamState:
        """当前状态。"""

        return self._state.current

    @property
    def metrics(self) -> StreamMetrics:
        """指标快照。"""

        return self._metrics.snapshot()

    @property
    def output_offset(self) -> int:
        """已派发的输出字节数（下一次轮询的起始偏移）。"""

        return self._output_offset

    def on(self, listener: Callable[[TerminalEvent], Any]) -> "TerminalStream":
        """注册事件监听器。"""

        self._events.on(listener)
        return self

    def off(self, listener: Callable[[TerminalEvent], Any]) -> "TerminalStream":
        """注销事件监听器。"""

        self._events.off(listener)
        return self

    def _set_state(self, target: StreamState) -> None:
        """转换状态并派发状态事件。"""

        self._state.transition(target)
        self._events.emit(StatusEvent(state=target))

    def connect(self) -> "asyncio.Future[None]":
        """
        开始轮询（必须在运行中的事件循环内调用）。

        返回：
        - 在流进入 CLOSED 时完成的 future

        异常：
        - `errors.CmdopError`：流已启动过
        """

        if self._state.current is not StreamState.IDLE:
            raise errors.CmdopError("TerminalStream already started", code="STREAM_ALREADY_STARTED")
        loop = asyncio.get_running_loop()
        self._done = loop.create_future()
        self._set_state(StreamState.CONNECTING)
        self._set_state(StreamState.CONNECTED)
        self._schedule_poll()
        return self._done

    def next_poll_delay_ms(self) -> int:
        """按空轮询计数返回下一次轮询间隔。"""

        if self._consecutive_empty >= self._options.idle_threshold:
            return self._options.idle_poll_interval_ms
        return self._options.poll_interval_ms

    def _schedule_poll(self) -> None:
        """安排下一次轮询。"""

        if self._closed:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.next_poll_delay_ms() / 1000.0, self._on_timer)

    def _on_timer(self) -> None:
        """定时器回调：启动一次轮询任务。"""

        self._timer = None
        if self._closed:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_and_reschedule())

    async def _poll_and_reschedule(self) -> None:
        """执行一次轮询并安排下一次。"""

        if self._closed or self._state.current is not StreamState.CONNECTED:
            return
        await self.poll_once()
        self._schedule_poll()

    async def poll_once(self) -> None:
        """
        执行一次 `get_output` 轮询。

        说明：
        - 失败时计数 `errors` 并派发错误事件，不推进游标；
        - 返回时流已关闭则丢弃数据。
        """

        self._metrics.poll_count += 1
        request = GetOutputRequest(
            session_id=self._session_id,
            offset=self._output_offset,
            limit=self._options.max_bytes_per_poll,
        )
        try:
            response = await self._client.get_output(request)
        except Exception as exc:
            if self._closed:
                return
            self._metrics.errors += 1
            mapped = errors.map_grpc_error(exc, operation="get_output", session_id=self._session_id)
            logger.debug("Terminal poll failed: %s", mapped)
            self._events.emit(ErrorEvent(error=mapped))
            return

        if self._closed:
            return
        data = response.data or b""
        if not data:
            self._consecutive_empty += 1
            return
        self._consecutive_empty = 0
        self._output_offset += len(data)
        self._metrics.bytes_received += len(data)
        self._metrics.touch()
        self._events.emit(OutputEvent(data=data))

    async def send_input(self, data: Union[str, bytes]) -> None:
        """
        发送输入。

        异常：
        - `errors.NotConnectedError`：流不在 CONNECTED
        - `errors.CmdopError`：服务端返回 `success=false`
        """

        self._state.require(StreamState.CONNECTED, what="TerminalStream")
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        with errors.error_context(operation="send_input", session_id=self._session_id):
            response = await self._client.send_input(SendInputRequest(session_id=self._session_id, data=payload))
        if not response.success:
            raise errors.CmdopError(response.error or "Failed to send input")
        self._metrics.bytes_sent += len(payload)
        self._metrics.touch()

    async def send_resize(self, cols: int, rows: int) -> None:
        """
        调整终端尺寸。

        异常：
        - `errors.NotConnectedError`：流不在 CONNECTED
        - `errors.CmdopError`：服务端返回 `success=false`
        """

        self._state.require(StreamState.CONNECTED, what="TerminalStream")
        with errors.error_context(operation="send_resize", session_id=self._session_id):
            response = await self._client.send_resize(
                SendResizeRequest(session_id=self._session_id, cols=cols, rows=rows)
            )
        if not response.success:
            raise errors.CmdopError(response.error or "Failed to resize terminal")

    async def send_signal(self, signal: Union[int, str]) -> None:
        """
        发送信号（编号或 `SIGINT` 等名称）。

        异常：
        - `errors.NotConnectedError`：流不在 CONNECTED
        - `errors.CmdopError`：服务端返回 `success=false`
        """

        self._state.require(StreamState.CONNECTED, what="TerminalStream")
        with errors.error_context(operation="send_signal", session_id=self._session_id):
            response = await self._client.send_signal(
                SendSignalRequest(session_id=self._session_id, signal=resolve_signal(signal))
            )
        if not response.success:
            raise errors.CmdopError(response.error or "Failed to send signal")

    async def close(self) -> None:
        """停止轮询（取消定时器与进行中的轮询任务）并进入 CLOSED（幂等）。"""

        if self._state.current in (StreamState.CLOSING, StreamState.CLOSED):
            return
        if self._state.current is not StreamState.ERROR:
            self._set_state(StreamState.CLOSING)
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        poll_task, self._poll_task = self._poll_task, None
        if poll_task is not None and not poll_task.done() and poll_task is not asyncio.current_task():
            poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poll_task
        if self._state.current is StreamState.CLOSING:
            self._set_state(StreamState.CLOSED)
        if self._done is not None and not self._done.done():
            self._done.set_result(None)
