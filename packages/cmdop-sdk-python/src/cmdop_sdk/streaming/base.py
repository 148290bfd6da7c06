"""
流的公共模型：状态机、指标、事件与监听器分发。

状态转换表（其余转换一律拒绝）：
- IDLE → CONNECTING / CLOSING / CLOSED / ERROR
- CONNECTING → REGISTERING / CONNECTED / CLOSING / CLOSED / ERROR
- REGISTERING → CONNECTED / CLOSING / CLOSED / ERROR
- CONNECTED → RECONNECTING / CLOSING / CLOSED / ERROR
- RECONNECTING → CONNECTING / CONNECTED / CLOSING / CLOSED / ERROR
- CLOSING → CLOSED / ERROR
- CLOSED / ERROR：吸收态
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import logging
import time
from typing import Any, Callable, Dict, FrozenSet, Generic, List, Optional, TypeVar

from cmdop_sdk import errors

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    """流生命周期状态。"""

    IDLE = "idle"
    CONNECTING = "connecting"
    REGISTERING = "registering"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


_S = StreamState

_TRANSITIONS: Dict[StreamState, FrozenSet[StreamState]] = {
    _S.IDLE: frozenset({_S.CONNECTING, _S.CLOSING, _S.CLOSED, _S.ERROR}),
    _S.CONNECTING: frozenset({_S.REGISTERING, _S.CONNECTED, _S.CLOSING, _S.CLOSED, _S.ERROR}),
    _S.REGISTERING: frozenset({_S.CONNECTED, _S.CLOSING, _S.CLOSED, _S.ERROR}),
    _S.CONNECTED: frozenset({_S.RECONNECTING, _S.CLOSING, _S.CLOSED, _S.ERROR}),
    _S.RECONNECTING: frozenset({_S.CONNECTING, _S.CONNECTED, _S.CLOSING, _S.CLOSED, _S.ERROR}),
    _S.CLOSING: frozenset({_S.CLOSED, _S.ERROR}),
    _S.CLOSED: frozenset(),
    _S.ERROR: frozenset(),
}

TERMINAL_STATES: FrozenSet[StreamState] = frozenset({_S.CLOSED, _S.ERROR})


class StreamStateMachine:
    """单个流拥有的状态机（所有状态变更都必须经过 `transition`）。"""

    def __init__(self) -> None:
        """初始状态为 IDLE。"""

        self._state = StreamState.IDLE

    @property
    def current(self) -> StreamState:
        """当前状态。"""

        return self._state

    def can_transition(self, target: StreamState) -> bool:
        """判断是否允许转换到 `target`。"""

        return target in _TRANSITIONS[self._state]

    def transition(self, target: StreamState) -> StreamState:
        """
        执行状态转换。

        返回：
        - 转换前的状态

        异常：
        - `errors.CmdopError(code=ILLEGAL_STATE_TRANSITION)`：转换不在允许表内
        """

        previous = self._state
        if not self.can_transition(target):
            raise errors.CmdopError(
                f"Illegal stream state transition: {previous.value} -> {target.value}",
                code="ILLEGAL_STATE_TRANSITION",
                details={"from": previous.value, "to": target.value},
            )
        self._state = target
        return previous

    def require(self, *allowed: StreamState, what: str = "Stream") -> None:
        """
        断言当前状态在 `allowed` 之内。

        异常：
        - `errors.NotConnectedError`：当前状态不允许该操作
        """

        if self._state not in allowed:
            raise errors.NotConnectedError(f"{what} is not connected (state: {self._state.value})")

    @property
    def is_terminal(self) -> bool:
        """是否处于吸收态（CLOSED/ERROR）。"""

        return self._state in TERMINAL_STATES

    @property
    def is_closing_or_closed(self) -> bool:
        """是否处于 CLOSING 或 CLOSED。"""

        return self._state in (StreamState.CLOSING, StreamState.CLOSED)


def now_ms() -> int:
    """当前 wall-clock 时间（毫秒）。"""

    return int(time.time() * 1000)


@dataclass
class StreamMetrics:
    """流的累计指标（对外只暴露快照）。"""

    bytes_sent: int = 0
    bytes_received: int = 0
    poll_count: int = 0
    last_activity_at: Optional[int] = None
    errors: int = 0

    def snapshot(self) -> "StreamMetrics":
        """返回独立副本（修改副本不影响流内部计数）。"""

        return replace(self)

    def touch(self) -> None:
        """刷新最近活动时间。"""

        self.last_activity_at = now_ms()


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusEvent:
    """状态变化事件。"""

    state: StreamState
    type: str = field(default="status", init=False)


@dataclass(frozen=True)
class OutputEvent:
    """输出数据事件（`data` 为本次新增字节）。"""

    data: bytes
    type: str = field(default="output", init=False)

    @property
    def text(self) -> str:
        """按 UTF-8 解码（非法字节替换）。"""

        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class ErrorEvent:
    """错误事件（已映射为类型化异常）。"""

    error: errors.CmdopError
    type: str = field(default="error", init=False)


@dataclass(frozen=True)
class SessionReadyEvent:
    """attach 流：服务端确认会话就绪。"""

    session_id: str
    type: str = field(default="session_ready", init=False)


@dataclass(frozen=True)
class ClosedEvent:
    """attach 流：服务端关闭会话。"""

    reason: str
    type: str = field(default="closed", init=False)


@dataclass(frozen=True)
class AgentTokenEvent:
    """agent 流：增量 token。"""

    request_id: str
    token: str
    timestamp: int
    type: str = field(default="token", init=False)


@dataclass(frozen=True)
class AgentToolStartEvent:
    """agent 流：工具调用开始。"""

    request_id: str
    tool_name: str
    payload: str
    timestamp: int
    type: str = field(default="tool_start", init=False)


@dataclass(frozen=True)
class AgentToolEndEvent:
    """agent 流：工具调用结束。"""

    request_id: str
    tool_name: str
    payload: str
    timestamp: int
    type: str = field(default="tool_end", init=False)


@dataclass(frozen=True)
class AgentThinkingEvent:
    """agent 流：思考过程片段。"""

    request_id: str
    payload: str
    timestamp: int
    type: str = field(default="thinking", init=False)


@dataclass(frozen=True)
class AgentErrorEvent:
    """agent 流：服务端报告的非致命错误。"""

    request_id: str
    message: str
    timestamp: int
    type: str = field(default="error", init=False)


@dataclass(frozen=True)
class AgentHandoffEvent:
    """agent 流：交接给其它 agent。"""

    request_id: str
    payload: str
    timestamp: int
    type: str = field(default="handoff", init=False)


@dataclass(frozen=True)
class AgentCancelledEvent:
    """agent 流：服务端报告已取消。"""

    request_id: str
    timestamp: int
    type: str = field(default="cancelled", init=False)


@dataclass(frozen=True)
class AgentDoneEvent:
    """agent 流：最终结果到达。"""

    result: Any
    type: str = field(default="done", init=False)


# ---------------------------------------------------------------------------
# Listener fan-out
# ---------------------------------------------------------------------------

EventT = TypeVar("EventT")


class EventEmitter(Generic[EventT]):
    """
    监听器分发。

    说明：
    - 按注册顺序同步回调；
    - 单个监听器抛出的异常只记录日志，不影响其它监听器与流本身。
    """

    def __init__(self) -> None:
        """创建空的监听器列表。"""

        self._listeners: List[Callable[[EventT], Any]] = []

    def on(self, listener: Callable[[EventT], Any]) -> None:
        """注册监听器。"""

        self._listeners.append(listener)

    def off(self, listener: Callable[[EventT], Any]) -> None:
        """注销监听器（未注册时忽略）。"""

        self._listeners = [item for item in self._listeners if item != listener]

    def emit(self, event: EventT) -> None:
        """把事件分发给所有监听器。"""

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.debug("Stream listener raised for %r", event, exc_info=True)

    def __len__(self) -> int:
        """已注册的监听器数量。"""

        return len(self._listeners)
