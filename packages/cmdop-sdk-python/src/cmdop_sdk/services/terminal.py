"""
终端服务：会话管理、输入输出与流式访问。
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from typing import Dict, Optional, Union

from cmdop_sdk import errors
from cmdop_sdk.models import (
    ExecuteResult,
    HistoryResult,
    OutputResult,
    SessionInfo,
    SessionList,
    SessionStatusInfo,
)
from cmdop_sdk.rpc import messages as m
from cmdop_sdk.services.base import BaseService
from cmdop_sdk.streaming.attach import AttachStream, AttachStreamOptions
from cmdop_sdk.streaming.terminal import TerminalStream, TerminalStreamOptions, resolve_signal

logger = logging.getLogger(__name__)

# execute() 每次读取输出缓冲的上限
_EXECUTE_OUTPUT_LIMIT = 20 * 1024
_PARTIAL_OUTPUT_MAX_CHARS = 2000


def _is_prompt_line(line: str) -> bool:
    """粗略判断是否为 shell 提示符行（`user@host:~$` 之类）。"""

    stripped = line.strip()
    return bool(stripped) and stripped.endswith(("$", "#", ">")) and ("@" in stripped or ":" in stripped)


def _skip_newlines(data: bytes, pos: int, end: int) -> int:
    """跳过 pos 处连续的 CR/LF。"""

    while pos < end and data[pos] in (0x0D, 0x0A):
        pos += 1
    return pos


def extract_marked_output(data: bytes, start_marker: str, end_pattern: "re.Pattern[str]") -> Optional[ExecuteResult]:
    """
    从输出缓冲中提取 START/END 标记之间的命令输出。

    返回：
    - 找到 END 标记（且 START 标记出现过）时返回结果；否则 None

    说明：
    - 过滤掉标记行、回显的包装命令与 shell 提示符行；
    - 去掉 CR 与首尾空行。
    """

    text = data.decode("utf-8", errors="replace")
    start_bytes = start_marker.encode("utf-8")
    end_match = end_pattern.search(text)
    if end_match is None or start_bytes not in data:
        return None

    exit_code = int(end_match.group(1))
    end_pos = len(text[: end_match.start()].encode("utf-8"))
    start_idx = data.rfind(start_bytes, 0, end_pos)
    if start_idx == -1:
        return ExecuteResult(output="", exit_code=exit_code)

    content_start = _skip_newlines(data, start_idx + len(start_bytes), end_pos)
    raw = data[content_start:end_pos].decode("utf-8", errors="replace")
    echoed = f'printf "\\n{start_marker}'
    kept = [
        line
        for line in raw.split("\n")
        if "<<CMD:" not in line and echoed not in line and not _is_prompt_line(line)
    ]
    lines = "\n".join(kept).replace("\r", "").split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return ExecuteResult(output="\n".join(lines), exit_code=exit_code)


class TerminalService(BaseService):
    """终端会话服务。"""

    async def create(
        self,
        *,
        name: str = "",
        shell: Optional[str] = None,
        working_dir: Optional[str] = None,
        cols: int = 80,
        rows: int = 24,
        env: Optional[Dict[str, str]] = None,
    ) -> SessionInfo:
        """
        创建终端会话。

        异常：
        - `errors.SessionError`：服务端返回失败
        """

        request = m.CreateSessionRequest(
            name=name,
            config=m.SessionConfig(
                shell=shell or "",
                working_directory=working_dir or "",
                env=dict(env or {}),
                size=m.TerminalSize(cols=cols, rows=rows),
            ),
        )
        with self._call("create_session"):
            response = await self._client.create_session(request, timeout=self._timeout)
        if not response.success:
            raise errors.SessionError(response.error or "Failed to create session")
        return SessionInfo(session_id=response.session_id, shell=shell, working_dir=working_dir, status="connected")

    async def close(self, session_id: Optional[str] = None, *, reason: str = "", force: bool = False) -> None:
        """
        关闭会话。

        异常：
        - `errors.SessionError`：服务端返回 `success=false`
        """

        sid = self._resolve_session(session_id)
        with self._call("close_session", session_id=sid):
            response = await self._client.close_session(
                m.CloseSessionRequest(session_id=sid, reason=reason, force=force), timeout=self._timeout
            )
        if not response.success:
            raise errors.SessionError(response.error or "Failed to close session", session_id=sid)

    async def get_status(self, session_id: Optional[str] = None) -> SessionStatusInfo:
        """查询会话状态。"""

        sid = self._resolve_session(session_id)
        with self._call("get_session_status", session_id=sid):
            response = await self._client.get_session_status(
                m.GetSessionStatusRequest(session_id=sid), timeout=self._timeout
            )
        return SessionStatusInfo(
            exists=response.exists,
            status=response.status,
            hostname=response.agent_hostname,
            connected_at=response.connected_at,
            last_heartbeat=response.last_heartbeat_at,
            commands_count=response.commands_count,
        )

    async def list(
        self,
        *,
        hostname: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> SessionList:
        """
        列出会话（可按主机名/状态过滤）。

        异常：
        - `errors.SessionError`：服务端在响应中返回错误
        """

        request = m.ListSessionsRequest(
            hostname_filter=hostname or "", status_filter=status or "", limit=limit, offset=offset
        )
        with self._call("list_sessions"):
            response = await self._client.list_sessions(request, timeout=self._timeout)
        if response.error:
            raise errors.SessionError(response.error)
        return SessionList(
            sessions=[SessionInfo.from_item(item) for item in response.sessions],
            total=response.total,
            workspace_name=response.workspace_name,
        )

    async def list_active(self, *, hostname: Optional[str] = None, limit: int = 20, offset: int = 0) -> SessionList:
        """只列出已连接的会话。"""

        return await self.list(hostname=hostname, status="connected", limit=limit, offset=offset)

    async def get_active_session(self, hostname: Optional[str] = None) -> Optional[SessionInfo]:
        """
        返回某台机器上的活动会话（服务端排序的第一个）。

        说明：
        - 未给出 hostname 时使用 `set_machine()` 缓存的主机名；都没有时返回 None。
        """

        target = hostname or self._hostname
        if not target:
            return None
        result = await self.list(hostname=target, status="connected", limit=5)
        return result.sessions[0] if result.sessions else None

    async def send_input(self, data: Union[str, bytes], session_id: Optional[str] = None) -> None:
        """
        发送输入字节（`str` 按 UTF-8 编码）。

        异常：
        - `errors.SessionError`：服务端返回 `success=false`
        """

        sid = self._resolve_session(session_id)
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        with self._call("send_input", session_id=sid):
            response = await self._client.send_input(
                m.SendInputRequest(session_id=sid, data=payload), timeout=self._timeout
            )
        if not response.success:
            raise errors.SessionError(response.error or "Failed to send input", session_id=sid)

    async def resize(self, cols: int, rows: int, session_id: Optional[str] = None) -> None:
        """
        调整终端尺寸。

        异常：
        - `errors.SessionError`：服务端返回 `success=false`
        """

        sid = self._resolve_session(session_id)
        with self._call("send_resize", session_id=sid):
            response = await self._client.send_resize(
                m.SendResizeRequest(session_id=sid, cols=cols, rows=rows), timeout=self._timeout
            )
        if not response.success:
            raise errors.SessionError(response.error or "Failed to resize terminal", session_id=sid)

    async def signal(self, signal: Union[int, str], session_id: Optional[str] = None) -> None:
        """
        发送信号（编号或 `SIGINT`/`SIGTERM` 等名称）。

        异常：
        - `errors.SessionError`：服务端返回 `success=false`
        """

        sid = self._resolve_session(session_id)
        with self._call("send_signal", session_id=sid):
            response = await self._client.send_signal(
                m.SendSignalRequest(session_id=sid, signal=resolve_signal(signal)), timeout=self._timeout
            )
        if not response.success:
            raise errors.SessionError(response.error or "Failed to send signal", session_id=sid)

    async def get_history(self, session_id: Optional[str] = None, *, limit: int = 100, offset: int = 0) -> HistoryResult:
        """读取命令历史。"""

        sid = self._resolve_session(session_id)
        with self._call("get_history", session_id=sid):
            response = await self._client.get_history(
                m.GetHistoryRequest(session_id=sid, limit=limit, offset=offset), timeout=self._timeout
            )
        return HistoryResult(commands=list(response.commands), total=response.total)

    async def get_output(self, session_id: Optional[str] = None, *, offset: int = 0, limit: int = 0) -> OutputResult:
        """按偏移读取输出缓冲（`limit=0` 不限制）。"""

        sid = self._resolve_session(session_id)
        with self._call("get_output", session_id=sid):
            response = await self._client.get_output(
                m.GetOutputRequest(session_id=sid, offset=offset, limit=limit), timeout=self._timeout
            )
        return OutputResult(data=response.data, total_bytes=response.total_bytes, has_more=response.has_more)

    def stream(self, session_id: Optional[str] = None, *, options: Optional[TerminalStreamOptions] = None) -> TerminalStream:
        """创建轮询式输出流（节奏默认取自配置）。"""

        sid = self._resolve_session(session_id)
        return TerminalStream(self._client, sid, options=options or TerminalStreamOptions.from_settings(self._settings))

    def attach(
        self,
        session_id: Optional[str] = None,
        *,
        cols: int = 80,
        rows: int = 24,
        options: Optional[AttachStreamOptions] = None,
    ) -> AttachStream:
        """创建双向 attach 流。"""

        sid = self._resolve_session(session_id)
        return AttachStream(
            self._client,
            sid,
            options=options or AttachStreamOptions.from_settings(self._settings, cols=cols, rows=rows),
        )

    async def execute(
        self,
        command: str,
        *,
        session_id: Optional[str] = None,
        timeout_ms: int = 30_000,
        poll_interval_ms: int = 200,
    ) -> ExecuteResult:
        """
        执行一条命令并返回其输出。

        说明：
        - 用唯一的 START/END 标记包裹命令，轮询输出缓冲直到出现 END 标记；
        - END 标记携带 `$?`，作为 `exit_code`；
        - 发送失败、读取失败或超时时返回 `exit_code=-1`（超时附带已捕获的部分输出）。
        """

        sid = session_id or self._session_id
        if not sid:
            return ExecuteResult(output="No session. Call set_machine() first or pass session_id.", exit_code=-1)

        cmd_id = secrets.token_hex(6)
        start_marker = f"<<CMD:{cmd_id}:START>>"
        end_prefix = f"<<CMD:{cmd_id}:END:"
        wrapped = f'printf "\\n{start_marker}\\n"; {command}; printf "\\n{end_prefix}%d>>\\n" $?\n'
        end_pattern = re.compile(re.escape(end_prefix) + r"(\d+)>>")

        try:
            await self.send_input(wrapped, sid)
        except errors.CmdopError as exc:
            return ExecuteResult(output=f"Failed to send command: {exc}", exit_code=-1)

        deadline = time.monotonic() + timeout_ms / 1000.0
        while time.monotonic() < deadline:
            await asyncio.sleep(poll_interval_ms / 1000.0)
            try:
                result = await self.get_output(sid, limit=_EXECUTE_OUTPUT_LIMIT)
            except errors.CmdopError as exc:
                return ExecuteResult(output=f"Failed to get output: {exc}", exit_code=-1)
            extracted = extract_marked_output(result.data, start_marker, end_pattern)
            if extracted is not None:
                return extracted

        message = f"[CMDOP] Command timed out after {timeout_ms}ms."
        partial = await self._partial_output(sid, start_marker)
        if partial:
            message += f"\nPartial output:\n{partial}"
        return ExecuteResult(output=message, exit_code=-1)

    async def _partial_output(self, session_id: str, start_marker: str) -> str:
        """超时后读取 START 标记之后的部分输出（读取失败时返回空串）。"""

        try:
            result = await self.get_output(session_id, limit=_EXECUTE_OUTPUT_LIMIT)
        except errors.CmdopError:
            logger.debug("Failed to fetch partial output for %s", session_id, exc_info=True)
            return ""
        data = result.data
        start_bytes = start_marker.encode("utf-8")
        idx = data.rfind(start_bytes)
        if idx == -1:
            return ""
        content_start = _skip_newlines(data, idx + len(start_bytes), len(data))
        partial = data[content_start:].decode("utf-8", errors="replace").replace("\r", "").strip()
        return partial if len(partial) < _PARTIAL_OUTPUT_MAX_CHARS else ""
