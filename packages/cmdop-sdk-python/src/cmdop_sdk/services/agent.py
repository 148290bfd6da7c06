"""
Agent 服务：一次性执行、流式执行与结构化抽取。
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from cmdop_sdk import errors
from cmdop_sdk.models import AgentResult, AgentRunOptions
from cmdop_sdk.services.base import BaseService
from cmdop_sdk.streaming.agent import AgentStream

OutputSchema = Union[str, Dict[str, Any], Type[BaseModel]]


def _schema_text(schema: OutputSchema) -> str:
    """把 JSON schema（字符串/dict/pydantic 模型类）统一为字符串。"""

    if isinstance(schema, str):
        return schema
    if isinstance(schema, dict):
        return json.dumps(schema, ensure_ascii=False)
    return json.dumps(schema.model_json_schema(), ensure_ascii=False)


class AgentService(BaseService):
    """在远端会话中执行 AI agent。"""

    def _run_timeout(self, options: AgentRunOptions) -> float:
        """一元 RunAgent 的 RPC 超时：agent 超时再留出一次请求超时的余量。"""

        return options.timeout_seconds + self._timeout

    async def run(
        self,
        prompt: str,
        options: Optional[AgentRunOptions] = None,
        *,
        session_id: Optional[str] = None,
    ) -> AgentResult:
        """
        一次性执行 agent（等待完整结果）。

        异常：
        - `errors.AgentRunError`：结果为失败（异常上附带结果对象）
        """

        opts = options or AgentRunOptions()
        sid = self._resolve_session(session_id)
        with self._call("run_agent", session_id=sid):
            response = await self._client.run_agent(opts.to_request(sid, prompt), timeout=self._run_timeout(opts))
        result = AgentResult.from_response(response)
        if not result.success:
            raise errors.AgentRunError(result.error or "Agent execution failed", result=result)
        return result

    def run_stream(
        self,
        prompt: str,
        options: Optional[AgentRunOptions] = None,
        *,
        session_id: Optional[str] = None,
    ) -> AgentStream:
        """创建流式执行对象（调用方 `await stream.start()` 开始执行）。"""

        return AgentStream(self._client, self._resolve_session(session_id), prompt, options)

    async def extract(
        self,
        prompt: str,
        output_schema: OutputSchema,
        options: Optional[AgentRunOptions] = None,
        *,
        session_id: Optional[str] = None,
    ) -> Any:
        """
        按 JSON schema 抽取结构化结果。

        参数：
        - output_schema：JSON schema 字符串/dict，或 pydantic 模型类

        返回：
        - 传入模型类时返回校验后的模型实例；否则返回解析后的 JSON 值

        异常：
        - `errors.CmdopError(code=INVALID_OUTPUT)`：缺少结构化输出或解析/校验失败
        """

        base = options or AgentRunOptions()
        opts = base.model_copy(update={"output_schema": _schema_text(output_schema)})
        result = await self.run(prompt, opts, session_id=session_id)
        if not result.output_json:
            raise errors.CmdopError("Agent returned no structured output", code="INVALID_OUTPUT")
        try:
            if isinstance(output_schema, type) and issubclass(output_schema, BaseModel):
                return output_schema.model_validate_json(result.output_json)
            return json.loads(result.output_json)
        except (ValidationError, ValueError) as exc:
            raise errors.CmdopError(
                f"Failed to parse structured output: {exc}", code="INVALID_OUTPUT"
            ) from exc
