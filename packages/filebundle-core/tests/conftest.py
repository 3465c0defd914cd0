import itertools
import os
import tempfile
import shutil
from pathlib import Path

import sys

# Allow running tests without installing the package.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import pytest
from filebundle.core.runtime.settings import Settings


@pytest.fixture()
def temp_dir():
    d = Path(tempfile.mkdtemp(prefix="filebundle_test_"))
    try:
        yield d
    finally:
        shutil.rmtree(d, ignore_errors=True)


@pytest.fixture()
def settings(temp_dir):
    return Settings(
        state_root=str(temp_dir / "state"),
        device_id="dev-a",
        log_level="INFO",
        lock_retry_delay_seconds=0.0,
        file_cache_ttl_seconds=0.0,
    )


@pytest.fixture()
def write():
    """Write a text file with a distinct, increasing mtime (filesystem clocks are coarse)."""
    clock = itertools.count(1_700_000_000_000, 2_000)

    def _write(path: Path, text: str, mtime_ms=None) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        ms = next(clock) if mtime_ms is None else mtime_ms
        os.utime(path, ns=(ms * 1_000_000, ms * 1_000_000))
        return path

    return _write
