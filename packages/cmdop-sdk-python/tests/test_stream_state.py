from __future__ import annotations

import pytest

from cmdop_sdk import errors
from cmdop_sdk.streaming.base import EventEmitter, OutputEvent, StreamMetrics, StreamState, StreamStateMachine


def _walk(machine: StreamStateMachine, *states: StreamState) -> None:
    for state in states:
        machine.transition(state)


def test_happy_path_through_register_and_close() -> None:
    machine = StreamStateMachine()
    assert machine.current is StreamState.IDLE
    _walk(machine, StreamState.CONNECTING, StreamState.REGISTERING, StreamState.CONNECTED)
    previous = machine.transition(StreamState.CLOSING)
    assert previous is StreamState.CONNECTED
    machine.transition(StreamState.CLOSED)
    assert machine.is_terminal


@pytest.mark.parametrize("terminal", [StreamState.CLOSED, StreamState.ERROR])
def test_terminal_states_are_absorbing(terminal: StreamState) -> None:
    machine = StreamStateMachine()
    machine.transition(terminal)
    for target in StreamState:
        assert machine.can_transition(target) is False
    with pytest.raises(errors.CmdopError) as exc_info:
        machine.transition(StreamState.CONNECTING)
    assert exc_info.value.code == "ILLEGAL_STATE_TRANSITION"
    assert machine.current is terminal


def test_closing_only_moves_to_closed_or_error() -> None:
    machine = StreamStateMachine()
    _walk(machine, StreamState.CONNECTING, StreamState.CONNECTED, StreamState.CLOSING)
    assert machine.is_closing_or_closed
    assert machine.can_transition(StreamState.CONNECTED) is False
    assert machine.can_transition(StreamState.CLOSED) is True
    assert machine.can_transition(StreamState.ERROR) is True


def test_connected_cannot_go_back_to_registering() -> None:
    machine = StreamStateMachine()
    _walk(machine, StreamState.CONNECTING, StreamState.CONNECTED)
    with pytest.raises(errors.CmdopError):
        machine.transition(StreamState.REGISTERING)
    assert machine.current is StreamState.CONNECTED


def test_require_raises_not_connected_with_state_in_message() -> None:
    machine = StreamStateMachine()
    with pytest.raises(errors.NotConnectedError, match=r"Terminal stream is not connected \(state: idle\)"):
        machine.require(StreamState.CONNECTED, what="Terminal stream")
    machine.transition(StreamState.CONNECTING)
    machine.transition(StreamState.CONNECTED)
    machine.require(StreamState.CONNECTED)


def test_metrics_snapshot_is_independent_copy() -> None:
    metrics = StreamMetrics()
    metrics.bytes_sent = 3
    snap = metrics.snapshot()
    snap.bytes_sent = 100
    assert metrics.bytes_sent == 3
    metrics.touch()
    assert metrics.last_activity_at is not None
    assert snap.last_activity_at is None


def test_emitter_isolates_listener_failures_and_supports_off() -> None:
    emitter: EventEmitter[OutputEvent] = EventEmitter()
    seen: list = []

    def broken(event: OutputEvent) -> None:
        raise RuntimeError("listener bug")

    class Sink:
        def handle(self, event: OutputEvent) -> None:
            seen.append(event.text)

    sink = Sink()
    emitter.on(broken)
    emitter.on(sink.handle)
    emitter.emit(OutputEvent(b"hi"))
    assert seen == ["hi"]

    # 绑定方法每次访问都是新对象，注销需按相等性匹配
    emitter.off(sink.handle)
    emitter.emit(OutputEvent(b"again"))
    assert seen == ["hi"]
    assert len(emitter) == 1


def test_event_type_tags() -> None:
    event = OutputEvent(b"\xff")
    assert event.type == "output"
    assert event.text == "�"
