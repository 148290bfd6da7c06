from __future__ import annotations

import asyncio
from typing import Any, List

import grpc
import pytest

from cmdop_sdk import errors
from cmdop_sdk.rpc.messages import (
    AgentMessage,
    CloseSessionPayload,
    ControlMessage,
    HeartbeatPayload,
    InputPayload,
    OutputPayload,
    PingPayload,
    RegisterPayload,
    StartSessionPayload,
    StatusPayload,
)
from cmdop_sdk.streaming.attach import AttachStream, AttachStreamOptions, MessageQueue
from cmdop_sdk.streaming.base import ClosedEvent, ErrorEvent, OutputEvent, SessionReadyEvent, StreamState

_END = object()


class _StatusError(Exception):
    """带 gRPC 状态码属性的错误。"""

    def __init__(self, code: grpc.StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = code


class _FakeDuplexCall:
    """
    模拟 ConnectTerminal 双向流。

    - `write()` 记录出站消息；
    - `push()/fail()/finish()` 由测试驱动入站方向；
    - `end_on_done_writing=True` 时半关闭写端即结束入站（模拟服务端随之关闭）；
    - `cancel()` 与 grpc.aio 一致：入站迭代抛出 `asyncio.CancelledError`。
    """

    def __init__(self, *, end_on_done_writing: bool = True) -> None:
        self.written: List[AgentMessage] = []
        self.done_writing_called = False
        self.cancelled = False
        self._end_on_done_writing = end_on_done_writing
        self._inbound: "asyncio.Queue[Any]" = asyncio.Queue()

    async def write(self, message: AgentMessage) -> None:
        self.written.append(message)

    async def done_writing(self) -> None:
        self.done_writing_called = True
        if self._end_on_done_writing:
            self.finish()

    def push(self, payload: Any) -> None:
        self._inbound.put_nowait(ControlMessage(session_id="s-1", message_id="srv", payload=payload))

    def fail(self, exc: BaseException) -> None:
        self._inbound.put_nowait(exc)

    def finish(self) -> None:
        self._inbound.put_nowait(_END)

    def cancel(self) -> bool:
        self.cancelled = True
        self.fail(asyncio.CancelledError())
        return True

    def __aiter__(self) -> Any:
        return self._iterate()

    async def _iterate(self) -> Any:
        while True:
            item = await self._inbound.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item


class _FakeClient:
    def __init__(self, call: _FakeDuplexCall) -> None:
        self.call = call

    def connect_terminal(self, **kwargs: Any) -> _FakeDuplexCall:
        return self.call


async def _wait_for(predicate: Any, timeout: float = 2.0) -> None:
    async def _spin() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_spin(), timeout)


def _payloads(call: _FakeDuplexCall, kind: type) -> List[Any]:
    return [m.payload for m in call.written if isinstance(m.payload, kind)]


# ---------------------------------------------------------------------------
# MessageQueue
# ---------------------------------------------------------------------------


def test_queue_is_fifo_with_sequential_ids() -> None:
    async def _run() -> List[AgentMessage]:
        queue = MessageQueue("sess", keepalive_interval_sec=10.0)
        queue.send_input(b"a")
        queue.send_resize(120, 40)
        queue.send_signal(2)
        return [await queue.next_message() for _ in range(3)]  # type: ignore[misc]

    messages = asyncio.run(_run())
    assert [m.message_id for m in messages] == ["sess-1", "sess-2", "sess-3"]
    assert isinstance(messages[0].payload, OutputPayload)
    assert messages[0].payload.data == b"a"
    assert isinstance(messages[1].payload, StatusPayload)
    assert messages[1].payload.reason == "resize:120x40"
    assert messages[2].payload.reason == "signal:2"


def test_idle_queue_synthesizes_a_single_heartbeat() -> None:
    """空闲超时只合成一条心跳；没有消费者时不会堆积。"""

    async def _run() -> tuple:
        queue = MessageQueue("sess", keepalive_interval_sec=0.01)
        first = await queue.next_message()
        pending_after_first = len(queue)
        await asyncio.sleep(0.05)
        pending_without_consumer = len(queue)
        queue.send_input(b"x")
        second = await queue.next_message()
        return first, pending_after_first, pending_without_consumer, second

    first, pending_after_first, pending_without_consumer, second = asyncio.run(_run())
    assert isinstance(first.payload, HeartbeatPayload)
    assert pending_after_first == 0
    assert pending_without_consumer == 0
    assert isinstance(second.payload, OutputPayload)


def test_shutdown_drains_to_none_and_drops_new_messages() -> None:
    async def _run() -> tuple:
        queue = MessageQueue("sess", keepalive_interval_sec=10.0)
        waiter = asyncio.create_task(queue.next_message())
        await asyncio.sleep(0)
        queue.shutdown()
        return await waiter, queue.send_input(b"late"), queue.done

    result, dropped, done = asyncio.run(_run())
    assert result is None
    assert dropped is None
    assert done is True


def test_full_queue_rejects_data_but_accepts_heartbeats() -> None:
    async def _run() -> MessageQueue:
        queue = MessageQueue("sess", keepalive_interval_sec=10.0, max_size=2)
        queue.send_input(b"1")
        queue.send_input(b"2")
        with pytest.raises(errors.QueueFullError):
            queue.send_input(b"3")
        assert queue.send_heartbeat() is not None
        return queue

    queue = asyncio.run(_run())
    assert len(queue) == 3


# ---------------------------------------------------------------------------
# AttachStream
# ---------------------------------------------------------------------------


def test_send_input_is_written_as_output_payload() -> None:
    """attach 后发送 "ls\\n"：出站为 OutputPayload，bytes_sent 为 3。"""

    async def _run() -> tuple:
        call = _FakeDuplexCall()
        stream = AttachStream(_FakeClient(call), "s-1", options=AttachStreamOptions(cols=120, rows=40))
        task = asyncio.create_task(stream.connect())
        await _wait_for(lambda: stream.state is StreamState.CONNECTED)
        stream.send_input("ls\n")
        await _wait_for(lambda: bool(_payloads(call, OutputPayload)))
        stream.close()
        await asyncio.wait_for(task, 2.0)
        return stream, call

    stream, call = asyncio.run(_run())
    register = call.written[0]
    assert isinstance(register.payload, RegisterPayload)
    assert register.payload.version.startswith("sdk-python-")
    assert register.payload.version.endswith("-attach")
    assert register.payload.initial_size.cols == 120
    assert register.message_id == "s-1-1"

    assert [p.data for p in _payloads(call, OutputPayload)] == [b"ls\n"]
    assert stream.metrics.bytes_sent == 3
    assert stream.state is StreamState.CLOSED
    assert call.cancelled is True


def test_inbound_messages_are_dispatched_and_ping_answered() -> None:
    async def _run() -> tuple:
        call = _FakeDuplexCall(end_on_done_writing=False)
        stream = AttachStream(_FakeClient(call), "s-1")
        events: List[Any] = []
        stream.on(events.append)
        task = asyncio.create_task(stream.connect())
        call.push(StartSessionPayload(session_id="s-1"))
        call.push(InputPayload(data=b"hi"))
        call.push(PingPayload())
        call.push(CloseSessionPayload(reason="bye"))
        await _wait_for(lambda: bool(_payloads(call, HeartbeatPayload)))
        call.finish()
        await asyncio.wait_for(task, 2.0)
        return stream, events

    stream, events = asyncio.run(_run())
    assert isinstance(events[0], SessionReadyEvent)
    assert events[0].session_id == "s-1"
    assert isinstance(events[1], OutputEvent)
    assert events[1].data == b"hi"
    assert isinstance(events[2], ClosedEvent)
    assert events[2].reason == "bye"
    assert stream.metrics.bytes_received == 2
    assert stream.state is StreamState.CLOSED


def test_transport_error_moves_stream_to_error() -> None:
    async def _run() -> tuple:
        call = _FakeDuplexCall(end_on_done_writing=False)
        stream = AttachStream(_FakeClient(call), "s-1")
        events: List[Any] = []
        stream.on(events.append)
        task = asyncio.create_task(stream.connect())
        await _wait_for(lambda: stream.state is StreamState.CONNECTED)
        call.fail(_StatusError(grpc.StatusCode.UNAVAILABLE, "relay dropped"))
        await asyncio.wait_for(task, 2.0)
        return stream, events

    stream, events = asyncio.run(_run())
    assert stream.state is StreamState.ERROR
    assert stream.metrics.errors == 1
    failures = [e for e in events if isinstance(e, ErrorEvent)]
    assert len(failures) == 1
    assert isinstance(failures[0].error, errors.AgentOfflineError)
    with pytest.raises(errors.NotConnectedError):
        stream.send_input("x")


def test_errors_after_close_are_suppressed() -> None:
    async def _run() -> tuple:
        call = _FakeDuplexCall(end_on_done_writing=False)
        stream = AttachStream(_FakeClient(call), "s-1")
        events: List[Any] = []
        stream.on(events.append)
        task = asyncio.create_task(stream.connect())
        await _wait_for(lambda: stream.state is StreamState.CONNECTED)
        call.fail(_StatusError(grpc.StatusCode.CANCELLED, "call cancelled"))
        stream.close()
        await asyncio.wait_for(task, 2.0)
        return stream, events

    stream, events = asyncio.run(_run())
    assert stream.state is StreamState.CLOSED
    assert stream.metrics.errors == 0
    assert not [e for e in events if isinstance(e, ErrorEvent)]


def test_send_before_connect_raises_not_connected() -> None:
    stream = AttachStream(_FakeClient(_FakeDuplexCall()), "s-1")
    with pytest.raises(errors.NotConnectedError):
        stream.send_input("ls\n")
    with pytest.raises(errors.NotConnectedError):
        stream.send_resize(80, 24)


def test_close_is_idempotent_and_connect_twice_rejected() -> None:
    async def _run() -> AttachStream:
        call = _FakeDuplexCall()
        stream = AttachStream(_FakeClient(call), "s-1")
        task = asyncio.create_task(stream.connect())
        await _wait_for(lambda: stream.state is StreamState.CONNECTED)
        with pytest.raises(errors.CmdopError, match="already started"):
            await stream.connect()
        stream.close()
        stream.close()
        await asyncio.wait_for(task, 2.0)
        return stream

    stream = asyncio.run(_run())
    assert stream.state is StreamState.CLOSED


def test_close_cancels_call_when_server_keeps_stream_open() -> None:
    """服务端在写端半关闭后仍不结束流：close() 取消 call，connect() 立即返回。"""

    async def _run() -> tuple:
        call = _FakeDuplexCall(end_on_done_writing=False)
        stream = AttachStream(_FakeClient(call), "s-1")
        task = asyncio.create_task(stream.connect())
        await _wait_for(lambda: stream.state is StreamState.CONNECTED)
        stream.close()
        await asyncio.wait_for(task, 1.0)
        return stream, call

    stream, call = asyncio.run(_run())
    assert call.cancelled is True
    assert stream.state is StreamState.CLOSED
    assert stream.metrics.errors == 0


def test_interleaved_sends_reach_the_call_in_order() -> None:
    async def _run() -> _FakeDuplexCall:
        call = _FakeDuplexCall()
        stream = AttachStream(_FakeClient(call), "s-1")
        task = asyncio.create_task(stream.connect())
        await _wait_for(lambda: stream.state is StreamState.CONNECTED)
        stream.send_input("a")
        stream.send_resize(100, 30)
        stream.send_signal("SIGINT")
        stream.send_input(b"b")
        await _wait_for(lambda: len(call.written) >= 5)
        stream.close()
        await asyncio.wait_for(task, 2.0)
        return call

    call = asyncio.run(_run())
    sent = call.written[1:5]
    assert [m.message_id for m in sent] == ["s-1-2", "s-1-3", "s-1-4", "s-1-5"]
    assert [type(m.payload) for m in sent] == [OutputPayload, StatusPayload, StatusPayload, OutputPayload]
    assert sent[0].payload.data == b"a"
    assert sent[1].payload.reason == "resize:100x30"
    assert sent[2].payload.reason == "signal:2"
    assert sent[3].payload.data == b"b"
