"""SDK 版本号（单一来源；打包元数据需保持一致）。"""

from __future__ import annotations

__version__ = "0.1.0"
