"""filebundle strict architecture guard.

Enforced at import time:

1) Custom exceptions live in `filebundle/core/exception.py`.
2) Spec (pydantic schema) classes live in `filebundle/core/spec.py`.
3) Loggers obtained with a literal name use the `filebundle.` hierarchy, so
   one `logging.getLogger("filebundle")` handler sees every event.

Violations raise RuntimeError naming the file and class (or logger).
"""

from __future__ import annotations

import ast
import os
from pathlib import Path
from typing import Iterable, List, NamedTuple

_SKIP_PARTS = {"__pycache__", ".venv", "venv", ".tox", "build", "dist", ".eggs", ".git", "tests", "test", "docs"}
LOGGER_PREFIX = "filebundle."


class _Violation(NamedTuple):
    rule: int
    name: str
    path: Path


_RULES = {
    1: ("CUSTOM EXCEPTIONS", "move these classes into filebundle/core/exception.py"),
    2: ("SPECS", "move these classes into filebundle/core/spec.py"),
    3: ("LOGGER NAMES", f"name loggers '{LOGGER_PREFIX}<module>'"),
}


def _iter_python_files(package_root: Path) -> Iterable[Path]:
    for path in sorted(package_root.rglob("*.py")):
        if set(path.relative_to(package_root).parts) & _SKIP_PARTS:
            continue
        yield path


def _base_name(node: ast.expr) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Subscript):
        return _base_name(node.value)
    return ""


def _is_exception_subclass(cls: ast.ClassDef) -> bool:
    for base in cls.bases:
        last = _base_name(base)
        if last in {"BaseException", "Exception"} or last.endswith(("Error", "Exception")):
            return True
    return False


def _logger_literal(node: ast.Call) -> str | None:
    if _base_name(node.func) != "getLogger" or not node.args:
        return None
    arg = node.args[0]
    if isinstance(arg, ast.Constant) and isinstance(arg.value, str):
        return arg.value
    return None


def _check_tree(tree: ast.AST, path: Path, *, is_exception_file: bool, is_spec_file: bool) -> List[_Violation]:
    out: List[_Violation] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.ClassDef):
            if not is_exception_file and _is_exception_subclass(node):
                out.append(_Violation(1, node.name, path))
            if not is_spec_file and node.name.endswith("Spec"):
                out.append(_Violation(2, node.name, path))
        elif isinstance(node, ast.Call):
            name = _logger_literal(node)
            if name is not None and not name.startswith(LOGGER_PREFIX):
                out.append(_Violation(3, name, path))
    return out


def assert_architecture() -> None:
    """Scan the filebundle source tree and raise if a rule is violated.

    Disable by setting env var FILEBUNDLE_STRICT_ARCH=0.
    """
    if os.getenv("FILEBUNDLE_STRICT_ARCH", "1") == "0":
        return

    package_root = Path(__file__).resolve().parent
    exception_file = (package_root / "exception.py").resolve()
    spec_file = (package_root / "spec.py").resolve()

    violations: List[_Violation] = []
    for path in _iter_python_files(package_root):
        try:
            tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        except (OSError, UnicodeDecodeError, SyntaxError) as e:
            raise RuntimeError(f"[filebundle strict-arch] Cannot parse source file: {path}") from e
        resolved = path.resolve()
        violations.extend(
            _check_tree(tree, path, is_exception_file=resolved == exception_file, is_spec_file=resolved == spec_file)
        )

    if not violations:
        return

    lines: List[str] = ["filebundle strict architecture check failed:"]
    for rule, (title, fix) in _RULES.items():
        hits = sorted((v for v in violations if v.rule == rule), key=lambda v: (str(v.path), v.name))
        if not hits:
            continue
        lines.append("")
        lines.append(f"RULE #{rule}: {title}")
        for v in hits:
            lines.append(f"  - {v.name} in {v.path}")
        lines.append(f"Fix: {fix}.")
    raise RuntimeError("\n".join(lines))
