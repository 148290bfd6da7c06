"""
双向 attach 流（ConnectTerminal）与出站消息队列。

行为：
- 出站消息经 `MessageQueue` 严格 FIFO 发送，由独立的发送任务写入 call；
- 队列空闲超过 keepalive 间隔时只合成一条心跳（不会堆积）；
- 入站消息按类型派发：`start_session`→就绪、`input`→输出、`close_session`→关闭、`ping`→立即回心跳；
- `close()` 进入 CLOSING 之后出现的传输错误只记 debug 日志，不向上派发。
"""

from __future__ import annotations

import asyncio
from collections import deque
import contextlib
from dataclasses import dataclass
import getpass
import itertools
import logging
from pathlib import Path
import socket
import sys
from typing import Any, Callable, Deque, Optional, Union

from cmdop_sdk import errors
from cmdop_sdk.config import CmdopSettings
from cmdop_sdk.rpc.messages import (
    AgentMessage,
    ClientPayload,
    CloseSessionPayload,
    ControlMessage,
    HeartbeatPayload,
    InputPayload,
    OutputPayload,
    PingPayload,
    RegisterPayload,
    StartSessionPayload,
    StatusPayload,
    TerminalSize,
)
from cmdop_sdk.rpc.protocol import TerminalDuplexCall, TerminalServiceClient
from cmdop_sdk.streaming.base import (
    ClosedEvent,
    ErrorEvent,
    EventEmitter,
    OutputEvent,
    SessionReadyEvent,
    StreamMetrics,
    StreamState,
    StreamStateMachine,
    now_ms,
)
from cmdop_sdk.streaming.terminal import resolve_signal
from cmdop_sdk.version import __version__

logger = logging.getLogger(__name__)

ATTACH_CLIENT_VERSION = f"sdk-python-{__version__}-attach"


class MessageQueue:
    """
    attach 流的出站消息队列。

    说明：
    - 消息 id 为 `<session_id>-<n>`，n 从 1 严格递增；
    - `next_message()` 在"有消息入队"与"keepalive 超时"之间等待，超时且队列为空时合成一条心跳；
    - `shutdown()` 之后 `next_message()` 返回 None，新消息被丢弃。
    """

    def __init__(self, session_id: str, *, keepalive_interval_sec: float, max_size: int = 0) -> None:
        """
        参数：
        - session_id：会话 id（写入每条消息信封）
        - keepalive_interval_sec：空闲多久合成一条心跳
        - max_size：数据消息上限（0 表示不限制；心跳不受限）
        """

        self._session_id = session_id
        self._keepalive = keepalive_interval_sec
        self._max_size = max_size
        self._messages: Deque[AgentMessage] = deque()
        self._wakeup = asyncio.Event()
        self._counter = itertools.count(1)
        self._done = False

    @property
    def done(self) -> bool:
        """是否已关闭。"""

        return self._done

    def __len__(self) -> int:
        """待发送消息数。"""

        return len(self._messages)

    def _envelope(self, payload: ClientPayload) -> AgentMessage:
        """为 payload 分配 id 与时间戳。"""

        return AgentMessage(
            session_id=self._session_id,
            message_id=f"{self._session_id}-{next(self._counter)}",
            timestamp=now_ms(),
            payload=payload,
        )

    def enqueue(self, payload: ClientPayload) -> Optional[AgentMessage]:
        """
        入队一条消息。

        返回：
        - 入队的消息；队列已关闭时返回 None

        异常：
        - `errors.QueueFullError`：数据消息超出 `max_size`
        """

        if self._done:
            logger.debug("Dropping %s message after queue shutdown", payload.kind)
            return None
        if (
            self._max_size
            and not isinstance(payload, HeartbeatPayload)
            and len(self._messages) >= self._max_size
        ):
            raise errors.QueueFullError(
                f"Outbound queue is full ({self._max_size} messages)",
                details={"session_id": self._session_id},
            )
        message = self._envelope(payload)
        self._messages.append(message)
        self._wakeup.set()
        return message

    def send_input(self, data: bytes) -> Optional[AgentMessage]:
        """入队键盘输入。"""

        return self.enqueue(OutputPayload(data=data, is_stderr=False, sequence=0))

    def send_resize(self, cols: int, rows: int) -> Optional[AgentMessage]:
        """入队尺寸调整（编码为状态原因 `resize:<cols>x<rows>`）。"""

        return self.enqueue(StatusPayload(reason=f"resize:{cols}x{rows}"))

    def send_signal(self, signal: int) -> Optional[AgentMessage]:
        """入队信号（编码为状态原因 `signal:<n>`）。"""

        return self.enqueue(StatusPayload(reason=f"signal:{signal}"))

    def send_heartbeat(self) -> Optional[AgentMessage]:
        """入队心跳。"""

        return self.enqueue(HeartbeatPayload())

    async def next_message(self) -> Optional[AgentMessage]:
        """
        取出下一条待发送消息。

        返回：
        - 下一条消息（FIFO）；队列关闭后返回 None
        """

        while True:
            if self._messages:
                return self._messages.popleft()
            if self._done:
                return None
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._keepalive)
            except asyncio.TimeoutError:
                if not self._messages and not self._done:
                    self.send_heartbeat()

    def shutdown(self) -> None:
        """关闭队列并唤醒等待方（幂等）。"""

        self._done = True
        self._wakeup.set()


@dataclass(frozen=True)
class AttachStreamOptions:
    """attach 流参数。"""

    cols: int = 80
    rows: int = 24
    keepalive_interval_ms: int = 25_000
    queue_max_size: int = 1_000

    @classmethod
    def from_settings(cls, settings: CmdopSettings, *, cols: int = 80, rows: int = 24) -> "AttachStreamOptions":
        """从 SDK 配置读取 keepalive 与队列上限。"""

        return cls(
            cols=cols,
            rows=rows,
            keepalive_interval_ms=settings.keepalive_interval_ms,
            queue_max_size=settings.queue_max_size,
        )


AttachEvent = Union[SessionReadyEvent, OutputEvent, ClosedEvent, ErrorEvent]


def _local_username() -> str:
    """当前用户名（取不到时为空串）。"""

    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


class AttachStream:
    """
    SSH 式双向 attach 流。

    用法：
    - `stream.on(callback)` 注册事件监听；
    - `await stream.connect()` 建立流，并在流结束后返回；
    - 在另一个任务中调用 `send_input/send_resize/send_signal` 与 `close()`。
    """

    def __init__(
        self,
        client: TerminalServiceClient,
        session_id: str,
        *,
        options: Optional[AttachStreamOptions] = None,
    ) -> None:
        """
        参数：
        - client：RPC 客户端
        - session_id：要 attach 的会话
        - options：初始尺寸、keepalive 与队列上限
        """

        self._client = client
        self._session_id = session_id
        self._options = options or AttachStreamOptions()
        self._state = StreamStateMachine()
        self._events: EventEmitter[AttachEvent] = EventEmitter()
        self._metrics = StreamMetrics()
        self._queue: Optional[MessageQueue] = None
        self._call: Optional[TerminalDuplexCall] = None
        self._call_cancelled = False
        self._sender: Optional["asyncio.Task[None]"] = None

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

    def on(self, listener: Callable[[AttachEvent], Any]) -> "AttachStream":
        """注册事件监听器。"""

        self._events.on(listener)
        return self

    def off(self, listener: Callable[[AttachEvent], Any]) -> "AttachStream":
        """注销事件监听器。"""

        self._events.off(listener)
        return self

    def _register_payload(self) -> RegisterPayload:
        """构造注册消息。"""

        return RegisterPayload(
            version=ATTACH_CLIENT_VERSION,
            hostname=socket.gethostname(),
            platform=sys.platform,
            initial_size=TerminalSize(cols=self._options.cols, rows=self._options.rows),
            username=_local_username(),
            home_dir=str(Path.home()),
            has_shell=True,
        )

    async def connect(self) -> None:
        """
        建立 attach 流并处理入站消息，直到流结束。

        说明：
        - 入站循环退出后：状态进入 CLOSED（已处于 ERROR 则保持），队列关闭，发送任务停止。

        异常：
        - `errors.CmdopError`：流已启动过
        """

        if self._state.current is not StreamState.IDLE:
            raise errors.CmdopError("AttachStream already started", code="STREAM_ALREADY_STARTED")

        self._state.transition(StreamState.CONNECTING)
        queue = MessageQueue(
            self._session_id,
            keepalive_interval_sec=self._options.keepalive_interval_ms / 1000.0,
            max_size=self._options.queue_max_size,
        )
        self._queue = queue
        queue.enqueue(self._register_payload())
        self._state.transition(StreamState.REGISTERING)

        try:
            call = self._client.connect_terminal()
            self._call = call
            self._sender = asyncio.get_running_loop().create_task(self._send_loop(call, queue))
            if self._state.current is StreamState.REGISTERING:
                self._state.transition(StreamState.CONNECTED)
            async for message in call:
                if self._state.is_closing_or_closed:
                    break
                self._handle_inbound(message)
        except asyncio.CancelledError:
            if not self._call_cancelled:
                raise
            logger.debug("Attach call cancelled by close()")
        except Exception as exc:
            self._handle_stream_error(exc)
        finally:
            if not self._state.is_terminal:
                self._state.transition(StreamState.CLOSED)
            queue.shutdown()
            await self._stop_sender()

    def _handle_stream_error(self, exc: Exception) -> None:
        """处理入站循环中的异常（关闭阶段的错误被吞掉并记 debug 日志）。"""

        if self._state.is_closing_or_closed:
            logger.debug("Attach stream error after close ignored: %s", exc, exc_info=True)
            return
        self._metrics.errors += 1
        mapped = errors.map_grpc_error(exc, operation="connect_terminal", session_id=self._session_id)
        logger.warning("Attach stream failed: %s", mapped)
        self._state.transition(StreamState.ERROR)
        self._events.emit(ErrorEvent(error=mapped))

    async def _send_loop(self, call: TerminalDuplexCall, queue: MessageQueue) -> None:
        """发送任务：按 FIFO 把队列消息写入 call，队列关闭后半关闭写端。"""

        try:
            while True:
                message = await queue.next_message()
                if message is None:
                    break
                await call.write(message)
            await call.done_writing()
        except Exception:
            if self._state.is_closing_or_closed or self._state.is_terminal:
                logger.debug("Attach send loop stopped during shutdown", exc_info=True)
            else:
                logger.warning("Attach send loop failed", exc_info=True)

    async def _stop_sender(self) -> None:
        """停止发送任务（入站流已结束，未写出的消息不再有意义）。"""

        sender, self._sender = self._sender, None
        if sender is None:
            return
        if not sender.done():
            sender.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sender

    def _handle_inbound(self, message: ControlMessage) -> None:
        """派发一条入站消息。"""

        payload = message.payload
        if isinstance(payload, StartSessionPayload):
            self._events.emit(SessionReadyEvent(session_id=payload.session_id or message.session_id or self._session_id))
        elif isinstance(payload, InputPayload):
            data = payload.data or b""
            self._metrics.bytes_received += len(data)
            self._metrics.touch()
            self._events.emit(OutputEvent(data=data))
        elif isinstance(payload, CloseSessionPayload):
            self._events.emit(ClosedEvent(reason=payload.reason))
        elif isinstance(payload, PingPayload):
            if self._queue is not None:
                self._queue.send_heartbeat()

    def _require_open(self) -> MessageQueue:
        """断言流处于 REGISTERING/CONNECTED，并返回队列。"""

        self._state.require(StreamState.REGISTERING, StreamState.CONNECTED, what="AttachStream")
        assert self._queue is not None
        return self._queue

    def send_input(self, data: Union[str, bytes]) -> None:
        """
        发送键盘输入（入队，不等待写出）。

        异常：
        - `errors.NotConnectedError`：流未连接
        - `errors.QueueFullError`：出站队列已满
        """

        queue = self._require_open()
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        if queue.send_input(payload) is not None:
            self._metrics.bytes_sent += len(payload)
            self._metrics.touch()

    def send_resize(self, cols: int, rows: int) -> None:
        """发送终端尺寸变化。"""

        self._require_open().send_resize(cols, rows)

    def send_signal(self, signal: Union[int, str]) -> None:
        """发送信号（编号或名称）。"""

        self._require_open().send_signal(resolve_signal(signal))

    def close(self) -> None:
        """
        关闭流（幂等）：CLOSING → 关闭队列 → 取消 call → CLOSED。

        说明：
        - 取消 call 使 `connect()` 的入站循环立即结束，不等待服务端关闭流。
        """

        if self._state.current in (StreamState.CLOSING, StreamState.CLOSED, StreamState.ERROR):
            return
        self._state.transition(StreamState.CLOSING)
        if self._queue is not None:
            self._queue.shutdown()
        if self._call is not None:
            self._call_cancelled = True
            self._call.cancel()
        self._state.transition(StreamState.CLOSED)

    async def __aenter__(self) -> "AttachStream":
        """进入上下文（不自动连接）。"""

        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """退出上下文时关闭流。"""

        self.close()
