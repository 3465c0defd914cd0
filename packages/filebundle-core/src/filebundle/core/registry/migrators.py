from __future__ import annotations

from typing import Any, Dict, Optional, Tuple, Type

from filebundle.core.exception import MigrationError
from filebundle.core.spec import BundleModeSpec


class MigratorRegistry:
    """
    Registry + factory for bundle-mode migrators.

    Supports decorator registration:
        @registry.register("local", min_versions={"pspdash": "2.6.4"})
        class LocalMigrator: ...

    And factory instantiation for a target directory:
        m = registry.create("local", target=..., strategy=..., settings=..., enforce_locks=True)
    """

    def __init__(self) -> None:
        self._items: Dict[str, Tuple[BundleModeSpec, Type]] = {}

    def register(self, mode: str, *, min_versions: Optional[Dict[str, str]] = None):
        def deco(cls):
            self._items[mode] = (BundleModeSpec(name=mode, min_versions=dict(min_versions or {})), cls)
            return cls
        return deco

    def _lookup(self, mode: str) -> Tuple[BundleModeSpec, Type]:
        key = str(mode or "").strip().lower()
        if key not in self._items:
            raise MigrationError(f"Unrecognized bundle mode: {mode!r}. Loaded: {self.list()}")
        return self._items[key]

    def get(self, mode: str) -> BundleModeSpec:
        return self._lookup(mode)[0]

    def list(self) -> list[str]:
        return sorted(self._items.keys())

    def create(self, mode: str, **kwargs: Any):
        _spec, Cls = self._lookup(mode)
        return Cls(**kwargs)


# Singleton registry used by core + plugins
REGISTRY = MigratorRegistry()


def register_migrator(mode: str, *, min_versions: Optional[Dict[str, str]] = None):
    return REGISTRY.register(mode, min_versions=min_versions)


def get_bundle_mode_spec(mode: str) -> BundleModeSpec:
    return REGISTRY.get(mode)


def list_bundle_modes() -> list[str]:
    return REGISTRY.list()
