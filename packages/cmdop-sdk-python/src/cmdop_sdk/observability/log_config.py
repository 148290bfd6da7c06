"""
SDK 日志配置（标准库 logging）。

说明：
- 只在 `cmdop_sdk` 根 logger 上挂最多一个 handler，重复调用是幂等的；
- `log_level=silent` 时移除已挂载的 handler，并把级别抬到 CRITICAL 之上；
- `log_json=True` 时每条记录输出一行 JSON（便于日志平台采集）。
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any, Dict, Optional

from cmdop_sdk.config import CmdopSettings

ROOT_LOGGER_NAME = "cmdop_sdk"

_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "silent": logging.CRITICAL + 10,
}

# handler 标记属性：用于识别“由本模块挂载的 handler”
_HANDLER_MARK = "_cmdop_sdk_handler"


class JsonLineFormatter(logging.Formatter):
    """把日志记录格式化为单行 JSON。"""

    def format(self, record: logging.LogRecord) -> str:
        """
        格式化单条记录。

        返回：
        - JSON 字符串，字段：`timestamp/level/logger/message`（含异常时附带 `exc_info`）
        """

        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _find_handler(logger: logging.Logger) -> Optional[logging.Handler]:
    """返回本模块挂载过的 handler（不存在时为 None）。"""

    for handler in logger.handlers:
        if getattr(handler, _HANDLER_MARK, False):
            return handler
    return None


def configure_logging(settings: CmdopSettings, *, stream: Any = None) -> logging.Logger:
    """
    按配置设置 `cmdop_sdk` 根 logger。

    参数：
    - settings：SDK 配置（读取 `log_level/log_json`）
    - stream：输出流（默认 stderr；测试可注入 StringIO）

    返回：
    - `cmdop_sdk` 根 logger
    """

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(_LEVELS[settings.log_level])

    existing = _find_handler(logger)
    if settings.log_level == "silent":
        if existing is not None:
            logger.removeHandler(existing)
        return logger

    if existing is None or (stream is not None and getattr(existing, "stream", None) is not stream):
        if existing is not None:
            logger.removeHandler(existing)
        existing = logging.StreamHandler(stream)
        setattr(existing, _HANDLER_MARK, True)
        logger.addHandler(existing)

    if settings.log_json:
        existing.setFormatter(JsonLineFormatter())
    else:
        existing.setFormatter(logging.Formatter("[cmdop:%(levelname)s] %(name)s: %(message)s"))
    return logger
