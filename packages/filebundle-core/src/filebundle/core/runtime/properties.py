from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from filebundle.core.fileutil import atomic_output


def parse_properties(text: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines ('#' and '!' comments, blank lines ignored)."""
    out: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", "!")):
            continue
        if "=" not in line:
            continue
        k, v = line.split("=", 1)
        k = k.strip()
        if k:
            out[k] = v.strip()
    return out


def read_properties(path: Path) -> Dict[str, str]:
    """Read a properties file; a missing file reads as empty."""
    p = Path(path)
    if not p.exists():
        return {}
    return parse_properties(p.read_text(encoding="utf-8"))


def format_properties(props: Mapping[str, str], *, header: Iterable[str] = ()) -> str:
    lines = [f"# {h}" for h in header]
    lines.extend(f"{k}={props[k]}" for k in sorted(props))
    return "\n".join(lines) + "\n"


def write_properties(path: Path, props: Mapping[str, str], *, header: Optional[Iterable[str]] = None) -> None:
    """Write a properties file with write-then-rename, keys sorted."""
    data = format_properties(props, header=header or ()).encode("utf-8")
    with atomic_output(Path(path)) as f:
        f.write(data)
