from __future__ import annotations

import ast
from pathlib import Path
from typing import Iterator, List, Union

_FuncDef = Union[ast.FunctionDef, ast.AsyncFunctionDef]

# 这些子包的公开方法是调用方直接面对的 API，抛出的异常必须写进 docstring。
_RAISES_SECTION_PACKAGES = ("streaming", "services")


def _sdk_root() -> Path:
    return Path(__file__).resolve().parents[1] / "packages" / "cmdop-sdk-python" / "src" / "cmdop_sdk"


def _sdk_modules() -> List[Path]:
    return sorted(p for p in _sdk_root().rglob("*.py") if "__pycache__" not in p.parts)


def _walk_defs(node: ast.AST, prefix: str = "") -> Iterator[tuple]:
    """产出 `(qualname, node)`，包含嵌套定义。"""

    for child in ast.iter_child_nodes(node):
        if isinstance(child, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)):
            qualname = f"{prefix}{child.name}"
            yield qualname, child
            yield from _walk_defs(child, f"{qualname}.")


def _raises_directly(func: _FuncDef) -> bool:
    """函数体（不含嵌套定义与 lambda）中是否有 `raise`。"""

    pending: List[ast.AST] = list(func.body)
    while pending:
        node = pending.pop()
        if isinstance(node, ast.Raise):
            return True
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)):
            continue
        pending.extend(ast.iter_child_nodes(node))
    return False


def _relative(path: Path) -> str:
    return path.relative_to(_sdk_root()).as_posix()


def test_every_class_and_function_has_a_docstring() -> None:
    """
    Docstring 护栏：`cmdop_sdk` 下每个 `class/def/async def`（含嵌套定义）都必须有 docstring。
    """

    missing: List[str] = []
    for path in _sdk_modules():
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        for qualname, node in _walk_defs(tree):
            if ast.get_docstring(node) is None:
                missing.append(f"{_relative(path)}:{node.lineno} {qualname}")

    assert not missing, "missing docstrings:\n" + "\n".join(missing)


def test_public_stream_and_service_methods_document_raised_errors() -> None:
    """
    流与服务层的公开方法只要直接 `raise`，docstring 就必须包含 `异常：` 段落。
    """

    undocumented: List[str] = []
    for path in _sdk_modules():
        if path.parent.name not in _RAISES_SECTION_PACKAGES:
            continue
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        for qualname, node in _walk_defs(tree):
            if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) or node.name.startswith("_"):
                continue
            if _raises_directly(node) and "异常：" not in (ast.get_docstring(node) or ""):
                undocumented.append(f"{_relative(path)}:{node.lineno} {qualname}")

    assert not undocumented, "public methods raising without an 异常： section:\n" + "\n".join(undocumented)
