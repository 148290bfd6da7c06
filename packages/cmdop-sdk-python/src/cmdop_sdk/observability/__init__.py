"""
Observability（可观测性：日志配置与流指标）。

说明：
- SDK 内部统一使用标准库 `logging.getLogger(__name__)`；
- 是否输出、输出级别与格式由 `configure_logging(settings)` 决定（默认静默）。
"""

from __future__ import annotations

__all__ = [
    "log_config",
]
