"""
SDK 配置（pydantic 模型 + YAML overlay + 环境变量）。

合并顺序（后者覆盖前者）：
1. 模型默认值
2. YAML overlay 文件（按顺序深度合并）
3. `CMDOP_*` 环境变量
4. 显式 overrides

说明：
- 不做模块级缓存：每次 `load_settings()` 都返回一个新对象，"重置"即重新加载；
- 配置对象以引用方式注入 transport/service/stream，避免隐式全局状态；
- 默认拒绝未知字段（拼写错误需 fail-fast，不得静默吞掉）。
"""

from __future__ import annotations

from copy import deepcopy
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

LogLevel = Literal["debug", "info", "warn", "error", "silent"]

# 环境变量 → 配置字段
ENV_FIELDS: Dict[str, str] = {
    "CMDOP_CONNECT_TIMEOUT_MS": "connect_timeout_ms",
    "CMDOP_REQUEST_TIMEOUT_MS": "request_timeout_ms",
    "CMDOP_HEALTH_CHECK_TIMEOUT_MS": "health_check_timeout_ms",
    "CMDOP_KEEPALIVE_INTERVAL_MS": "keepalive_interval_ms",
    "CMDOP_KEEPALIVE_TIMEOUT_MS": "keepalive_timeout_ms",
    "CMDOP_QUEUE_MAX_SIZE": "queue_max_size",
    "CMDOP_MAX_MESSAGE_SIZE": "max_message_size",
    "CMDOP_GRPC_SERVER": "grpc_server",
    "CMDOP_API_BASE_URL": "api_base_url",
    "CMDOP_API_KEY": "api_key",
    "CMDOP_AGENT_INFO": "agent_info_path",
    "CMDOP_POLL_INTERVAL_MS": "poll_interval_ms",
    "CMDOP_IDLE_THRESHOLD": "idle_threshold",
    "CMDOP_IDLE_POLL_INTERVAL_MS": "idle_poll_interval_ms",
    "CMDOP_MAX_BYTES_PER_POLL": "max_bytes_per_poll",
    "CMDOP_LOG_LEVEL": "log_level",
    "CMDOP_LOG_JSON": "log_json",
}


class CmdopSettings(BaseModel):
    """SDK 运行时配置。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    connect_timeout_ms: int = Field(default=10_000, ge=1)
    request_timeout_ms: int = Field(default=30_000, ge=1)
    health_check_timeout_ms: int = Field(default=2_000, ge=1)
    keepalive_interval_ms: int = Field(default=25_000, ge=1)
    keepalive_timeout_ms: int = Field(default=5_000, ge=1)
    queue_max_size: int = Field(default=1_000, ge=1)
    max_message_size: int = Field(default=32 * 1024 * 1024, ge=1024)

    grpc_server: str = "grpc.cmdop.com:443"
    api_base_url: str = "https://api.cmdop.com"
    api_key: Optional[str] = None
    agent_info_path: Optional[str] = None

    poll_interval_ms: int = Field(default=100, ge=1)
    idle_threshold: int = Field(default=10, ge=1)
    idle_poll_interval_ms: int = Field(default=500, ge=1)
    max_bytes_per_poll: int = Field(default=0, ge=0)

    log_level: LogLevel = "silent"
    log_json: bool = False

    @property
    def keepalive_interval_sec(self) -> float:
        """keepalive 间隔（秒）。"""

        return self.keepalive_interval_ms / 1000.0

    @property
    def request_timeout_sec(self) -> float:
        """单次 RPC 超时（秒）。"""

        return self.request_timeout_ms / 1000.0

    def with_overrides(self, **overrides: Any) -> "CmdopSettings":
        """
        返回合并了 overrides 的新配置对象（重新做完整校验）。

        参数：
        - overrides：字段名 → 值；值为 None 的项被忽略
        """

        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return CmdopSettings.model_validate(data)


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 整体覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return data


def settings_from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    """
    从环境变量中提取配置字段。

    说明：
    - 空字符串视为未设置；
    - 类型转换交给 pydantic（`"true"`/`"1"` 等由模型校验解析）。
    """

    values: Dict[str, Any] = {}
    for env_name, field_name in ENV_FIELDS.items():
        raw = env.get(env_name)
        if raw is None or not raw.strip():
            continue
        value = raw.strip()
        if field_name == "log_level":
            value = value.lower()
        values[field_name] = value
    return values


def load_settings(
    *,
    config_paths: Iterable[Path] = (),
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> CmdopSettings:
    """
    加载配置。

    参数：
    - config_paths：YAML overlay 路径列表；按顺序合并
    - env：环境变量映射；默认读取 `os.environ`
    - overrides：显式覆盖（最高优先级；值为 None 的项被忽略）

    异常：
    - `pydantic.ValidationError`：字段非法或存在未知字段
    - `ValueError`：YAML 根节点不是 mapping
    """

    merged: Dict[str, Any] = {}
    for path in config_paths:
        _deep_merge(merged, _load_yaml_file(Path(path)))
    _deep_merge(merged, settings_from_env(os.environ if env is None else env))
    if overrides:
        _deep_merge(merged, {k: v for k, v in overrides.items() if v is not None})
    return CmdopSettings.model_validate(merged)
