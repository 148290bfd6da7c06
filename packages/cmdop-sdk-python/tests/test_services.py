from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, List, Optional

import grpc
import pytest
from pydantic import BaseModel

from cmdop_sdk import errors
from cmdop_sdk.config import load_settings
from cmdop_sdk.models import AgentRunOptions
from cmdop_sdk.rpc import messages as m
from cmdop_sdk.services.agent import AgentService
from cmdop_sdk.services.terminal import TerminalService, extract_marked_output
from cmdop_sdk.streaming.attach import AttachStream
from cmdop_sdk.streaming.terminal import TerminalStream

_SETTINGS = load_settings(env={}, overrides={"request_timeout_ms": 1_000, "poll_interval_ms": 7})


class _StatusError(Exception):
    """带 gRPC 状态码属性的错误。"""

    def __init__(self, code: grpc.StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = code


class _FakeClient:
    """
    可配置的 TerminalServiceClient 替身。

    - `responses[method]`：该方法返回（或抛出）的对象；
    - `output_for(inputs)`：可选回调，根据已发送的输入构造 `get_output` 响应。
    """

    def __init__(self, **responses: Any) -> None:
        self.responses: Dict[str, Any] = responses
        self.requests: List[tuple] = []
        self.inputs: List[bytes] = []
        self.output_for: Optional[Any] = None

    async def _respond(self, name: str, request: Any, timeout: Optional[float]) -> Any:
        self.requests.append((name, request, timeout))
        value = self.responses.get(name)
        if isinstance(value, BaseException):
            raise value
        return value

    async def create_session(self, request: Any, **kw: Any) -> Any:
        return await self._respond("create_session", request, kw.get("timeout"))

    async def close_session(self, request: Any, **kw: Any) -> Any:
        return await self._respond("close_session", request, kw.get("timeout"))

    async def list_sessions(self, request: Any, **kw: Any) -> Any:
        return await self._respond("list_sessions", request, kw.get("timeout"))

    async def get_session_by_hostname(self, request: Any, **kw: Any) -> Any:
        return await self._respond("get_session_by_hostname", request, kw.get("timeout"))

    async def send_input(self, request: Any, **kw: Any) -> Any:
        self.inputs.append(request.data)
        return await self._respond("send_input", request, kw.get("timeout")) or m.AckResponse(success=True)

    async def get_output(self, request: Any, **kw: Any) -> Any:
        if self.output_for is not None:
            self.requests.append(("get_output", request, kw.get("timeout")))
            return m.GetOutputResponse(data=self.output_for(self.inputs))
        return await self._respond("get_output", request, kw.get("timeout"))

    async def get_history(self, request: Any, **kw: Any) -> Any:
        return await self._respond("get_history", request, kw.get("timeout"))

    async def run_agent(self, request: Any, **kw: Any) -> Any:
        return await self._respond("run_agent", request, kw.get("timeout"))


def _hostname_match(**overrides: Any) -> m.GetSessionByHostnameResponse:
    data: Dict[str, Any] = {
        "found": True,
        "session_id": "sess-42",
        "machine_hostname": "build-box",
        "machine_name": "Build box",
        "status": "connected",
        "os": "linux",
    }
    data.update(overrides)
    return m.GetSessionByHostnameResponse(**data)


# ---------------------------------------------------------------------------
# Session routing
# ---------------------------------------------------------------------------


def test_set_machine_caches_session_for_later_calls() -> None:
    client = _FakeClient(get_session_by_hostname=_hostname_match(), get_history=m.GetHistoryResponse(commands=["ls"], total=1))
    service = TerminalService(client, settings=_SETTINGS)

    async def _run() -> Any:
        await service.set_machine("build")
        return await service.get_history()

    history = asyncio.run(_run())
    assert service.session_id == "sess-42"
    assert service.current_hostname == "build-box"
    assert service.current_session is not None and service.current_session.os == "linux"
    assert history.commands == ["ls"]
    assert client.requests[-1][1].session_id == "sess-42"
    assert client.requests[-1][2] == 1.0

    service.clear_session()
    assert service.session_id == ""
    assert service.current_session is None


def test_set_machine_reports_ambiguous_hostname() -> None:
    client = _FakeClient(get_session_by_hostname=_hostname_match(found=False, ambiguous=True, matches_count=3))
    service = TerminalService(client, settings=_SETTINGS)
    with pytest.raises(errors.SessionError, match="3 machines matched"):
        asyncio.run(service.set_machine("web"))
    assert service.session_id == ""


def test_set_machine_reports_missing_hostname() -> None:
    client = _FakeClient(get_session_by_hostname=_hostname_match(found=False))
    with pytest.raises(errors.SessionError, match='No active session found for hostname "ghost"'):
        asyncio.run(TerminalService(client, settings=_SETTINGS).set_machine("ghost"))


def test_calls_without_session_fail_fast() -> None:
    service = TerminalService(_FakeClient(), settings=_SETTINGS)
    with pytest.raises(errors.SessionError, match="set_machine"):
        asyncio.run(service.send_input("ls\n"))


def test_transport_errors_are_mapped_with_context() -> None:
    client = _FakeClient(get_output=_StatusError(grpc.StatusCode.NOT_FOUND, "session gone"))
    service = TerminalService(client, settings=_SETTINGS)
    with pytest.raises(errors.NotFoundError) as exc_info:
        asyncio.run(service.get_output("sess-9"))
    assert str(exc_info.value) == "[get_output] session gone (session=sess-9)"
    assert exc_info.value.resource == "sess-9"


# ---------------------------------------------------------------------------
# TerminalService
# ---------------------------------------------------------------------------


def test_create_builds_config_and_reports_failure() -> None:
    ok = _FakeClient(create_session=m.CreateSessionResponse(session_id="new-1", success=True))
    info = asyncio.run(TerminalService(ok, settings=_SETTINGS).create(shell="/bin/zsh", cols=100, env={"A": "1"}))
    request = ok.requests[0][1]
    assert request.config.shell == "/bin/zsh"
    assert request.config.size.cols == 100
    assert request.config.env == {"A": "1"}
    assert info.session_id == "new-1"

    bad = _FakeClient(create_session=m.CreateSessionResponse(success=False, error="quota exceeded"))
    with pytest.raises(errors.SessionError, match="quota exceeded"):
        asyncio.run(TerminalService(bad, settings=_SETTINGS).create())


def test_list_active_filters_connected_sessions() -> None:
    client = _FakeClient(
        list_sessions=m.ListSessionsResponse(
            sessions=[m.SessionInfoItem(session_id="s1", machine_hostname="h1", status="connected", shell="bash")],
            total=1,
            workspace_name="team",
        )
    )
    result = asyncio.run(TerminalService(client, settings=_SETTINGS).list_active(hostname="h1"))
    request = client.requests[0][1]
    assert request.status_filter == "connected"
    assert request.hostname_filter == "h1"
    assert result.sessions[0].hostname == "h1"
    assert result.workspace_name == "team"


def test_stream_and_attach_use_configured_defaults() -> None:
    service = TerminalService(_FakeClient(), settings=_SETTINGS)
    service.set_session_id("s-1")
    stream = service.stream()
    attach = service.attach(cols=132, rows=50)
    assert isinstance(stream, TerminalStream)
    assert stream.next_poll_delay_ms() == 7
    assert isinstance(attach, AttachStream)
    assert attach.session_id == "s-1"


def _marker_id(inputs: List[bytes]) -> str:
    match = re.search(rb"<<CMD:([0-9a-f]+):START>>", inputs[-1])
    assert match is not None
    return match.group(1).decode()


def test_execute_extracts_output_between_markers() -> None:
    client = _FakeClient()

    def output_for(inputs: List[bytes]) -> bytes:
        cmd_id = _marker_id(inputs)
        # 输出缓冲里先是回显的包装命令，再是命令输出
        return (
            inputs[-1]
            + f"\r\n<<CMD:{cmd_id}:START>>\r\nhello\r\nworld\r\nuser@host:~$ \r\n<<CMD:{cmd_id}:END:3>>\r\n".encode()
        )

    client.output_for = output_for
    service = TerminalService(client, settings=_SETTINGS)
    result = asyncio.run(service.execute("echo hello; echo world", session_id="s-1", poll_interval_ms=1))

    assert result.exit_code == 3
    assert result.output == "hello\nworld"
    wrapped = client.inputs[0].decode()
    assert "echo hello; echo world" in wrapped
    assert wrapped.endswith("$?\n")


def test_execute_times_out_with_partial_output() -> None:
    client = _FakeClient()
    client.output_for = lambda inputs: f"<<CMD:{_marker_id(inputs)}:START>>\r\nstill running".encode()
    service = TerminalService(client, settings=_SETTINGS)
    result = asyncio.run(service.execute("sleep 100", session_id="s-1", timeout_ms=20, poll_interval_ms=5))
    assert result.exit_code == -1
    assert result.output.startswith("[CMDOP] Command timed out after 20ms.")
    assert result.output.endswith("Partial output:\nstill running")


def test_execute_without_session_returns_error_result() -> None:
    result = asyncio.run(TerminalService(_FakeClient(), settings=_SETTINGS).execute("ls"))
    assert result.exit_code == -1
    assert "No session" in result.output


def test_execute_send_failure_returns_error_result() -> None:
    client = _FakeClient(send_input=m.AckResponse(success=False, error="pty closed"))
    result = asyncio.run(TerminalService(client, settings=_SETTINGS).execute("ls", session_id="s-1"))
    assert result.exit_code == -1
    assert "pty closed" in result.output


def test_extract_marked_output_needs_both_markers() -> None:
    pattern = re.compile(r"<<CMD:abc:END:(\d+)>>")
    assert extract_marked_output(b"<<CMD:abc:END:0>>", "<<CMD:abc:START>>", pattern) is None
    result = extract_marked_output(b"<<CMD:abc:START>>\n\n<<CMD:abc:END:0>>", "<<CMD:abc:START>>", pattern)
    assert result is not None and result.output == "" and result.exit_code == 0


# ---------------------------------------------------------------------------
# AgentService
# ---------------------------------------------------------------------------


class _Invoice(BaseModel):
    number: str
    total: float


def test_run_uses_extended_timeout_and_raises_on_failure() -> None:
    ok = _FakeClient(run_agent=m.RunAgentResponse(request_id="r", success=True, text="done"))
    result = asyncio.run(AgentService(ok, settings=_SETTINGS).run("go", AgentRunOptions(timeout_seconds=60), session_id="s-1"))
    assert result.text == "done"
    assert ok.requests[0][2] == 61.0

    bad = _FakeClient(run_agent=m.RunAgentResponse(request_id="r", success=False, error="Agent timed out"))
    with pytest.raises(errors.AgentRunError, match="^Agent timed out$"):
        asyncio.run(AgentService(bad, settings=_SETTINGS).run("go", session_id="s-1"))


def test_extract_returns_model_instance_and_sends_schema() -> None:
    client = _FakeClient(
        run_agent=m.RunAgentResponse(request_id="r", success=True, output_json=json.dumps({"number": "A-1", "total": 9.5}))
    )
    invoice = asyncio.run(
        AgentService(client, settings=_SETTINGS).extract("read invoice", _Invoice, AgentRunOptions(max_turns=2), session_id="s-1")
    )
    assert invoice == _Invoice(number="A-1", total=9.5)
    request = client.requests[0][1]
    assert json.loads(request.output_schema)["title"] == "_Invoice"
    assert request.options == {"max_turns": "2"}


def test_extract_with_dict_schema_returns_plain_json() -> None:
    client = _FakeClient(run_agent=m.RunAgentResponse(request_id="r", success=True, output_json="[1, 2]"))
    value = asyncio.run(AgentService(client, settings=_SETTINGS).extract("nums", {"type": "array"}, session_id="s-1"))
    assert value == [1, 2]


@pytest.mark.parametrize("output_json", ["", "{broken"])
def test_extract_rejects_missing_or_invalid_output(output_json: str) -> None:
    client = _FakeClient(run_agent=m.RunAgentResponse(request_id="r", success=True, output_json=output_json))
    with pytest.raises(errors.CmdopError) as exc_info:
        asyncio.run(AgentService(client, settings=_SETTINGS).extract("x", '{"type": "object"}', session_id="s-1"))
    assert exc_info.value.code == "INVALID_OUTPUT"
