from __future__ import annotations

from pathlib import Path
import sys
from importlib.machinery import PathFinder


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def test_package_is_importable_without_install() -> None:
    root = _repo_root()
    sdk_src = root / "packages" / "cmdop-sdk-python" / "src"

    # 说明：开发机/CI 的 site-packages 可能装有旧版本，需确认解析来源是 repo 的 sdk_src。
    assert PathFinder.find_spec("cmdop_sdk", [str(sdk_src)]) is not None

    sys.path.insert(0, str(sdk_src))
    import cmdop_sdk

    assert callable(cmdop_sdk.load_settings)
    assert set(cmdop_sdk.__all__) >= {"CmdopClient", "CmdopError", "TerminalStream", "AttachStream", "AgentStream"}


def test_public_errors_do_not_shadow_builtins_at_package_level() -> None:
    import cmdop_sdk
    from cmdop_sdk import errors

    assert not hasattr(cmdop_sdk, "TimeoutError")
    assert issubclass(errors.TimeoutError, cmdop_sdk.CmdopError)
    assert errors.TimeoutError is not TimeoutError
