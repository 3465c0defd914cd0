from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from filebundle.core.spec import PartitionRuleSpec


def _compile(patterns: Iterable[str]) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)


def _matches(compiled: Tuple[Pattern[str], ...], name: str) -> bool:
    return any(p.fullmatch(name) for p in compiled)


@dataclass(frozen=True)
class DirectoryStrategy:
    """Describes which files make up a dataset and how they are bundled.

    Patterns are regular expressions matched (full match) against posix
    relative names such as ``state`` or ``cms/page.xml``.

      - include / exclude: the dataset filter
      - partition_rules: first matching rule names the bundle (ref) a file
        belongs to; unmatched files go to ``default_bundle``
      - default_excluded: published only by an explicit
        ``save_default_excluded_files()`` (e.g. noisy log files)
      - possibly_corrupt: zero-length files matching these are restored
        from the bundle store on prepare()
    """

    name: str
    include: Tuple[str, ...]
    exclude: Tuple[str, ...] = ()
    partition_rules: Tuple[PartitionRuleSpec, ...] = ()
    default_bundle: str = "main"
    default_excluded: Tuple[str, ...] = ()
    possibly_corrupt: Tuple[str, ...] = ()
    background_flush: bool = False
    shared: bool = False
    peg_pattern: Optional[str] = None

    _include_re: Tuple[Pattern[str], ...] = field(init=False, repr=False, compare=False)
    _exclude_re: Tuple[Pattern[str], ...] = field(init=False, repr=False, compare=False)
    _rules_re: Tuple[Tuple[Pattern[str], str], ...] = field(init=False, repr=False, compare=False)
    _default_excluded_re: Tuple[Pattern[str], ...] = field(init=False, repr=False, compare=False)
    _corrupt_re: Tuple[Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_include_re", _compile(self.include))
        object.__setattr__(self, "_exclude_re", _compile(self.exclude))
        object.__setattr__(
            self, "_rules_re", tuple((re.compile(r.pattern), r.bundle) for r in self.partition_rules)
        )
        object.__setattr__(self, "_default_excluded_re", _compile(self.default_excluded))
        object.__setattr__(self, "_corrupt_re", _compile(self.possibly_corrupt))

    def accepts(self, name: str) -> bool:
        return _matches(self._include_re, name) and not _matches(self._exclude_re, name)

    def bundle_for(self, name: str) -> str:
        for rx, bundle in self._rules_re:
            if rx.fullmatch(name):
                path = Path(name)
                return bundle.format(stem=path.stem, name=path.name)
        return self.default_bundle

    def partition(self, names: Iterable[str]) -> Dict[str, List[str]]:
        """Group names by bundle; each list is sorted."""
        out: Dict[str, List[str]] = {}
        for name in names:
            out.setdefault(self.bundle_for(name), []).append(name)
        return {k: sorted(v) for k, v in sorted(out.items())}

    def is_default_excluded(self, name: str) -> bool:
        return _matches(self._default_excluded_re, name)

    def is_possibly_corrupt(self, name: str, path: Path) -> bool:
        if not _matches(self._corrupt_re, name):
            return False
        try:
            return path.is_file() and path.stat().st_size == 0
        except OSError:
            return True


DASHBOARD = DirectoryStrategy(
    name="dashboard",
    include=(
        r"state",
        r"[^/]+\.(dat|def|ini|xml|txt)",
        r"cms/.+",
        r"import/.+",
    ),
    partition_rules=(PartitionRuleSpec(pattern=r"[^/]+\.dat", bundle="data"),),
    default_bundle="main",
    default_excluded=(r"log\.txt",),
    possibly_corrupt=(r"state", r"[^/]+\.dat"),
    background_flush=True,
    shared=False,
)

TEAM_DATA = DirectoryStrategy(
    name="wbs",
    include=(
        r"[^/]+\.(xml|ini|txt|csv)",
        r"[^/]+\.pdash",
        r"[^/]+\.zip",
    ),
    partition_rules=(PartitionRuleSpec(pattern=r"[^/]+\.pdash", bundle="{stem},pdash"),),
    default_bundle="wbs",
    possibly_corrupt=(r"[^/]+\.pdash", r"[^/]+\.zip"),
    background_flush=False,
    shared=True,
    peg_pattern=r".*,pdash",
)

_BY_NAME = {"dashboard": DASHBOARD, "wbs": TEAM_DATA, "disseminate": TEAM_DATA}


def strategy_for_kind(kind: str) -> DirectoryStrategy:
    try:
        return _BY_NAME[str(kind).strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown directory kind: {kind!r}") from None
