from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from filebundle.core.exception import SpecError

_SEP = "_"
_TIME_PARSE = "%Y%m%d.%H%M%S.%f%z"
_DEVICE_UNSAFE = re.compile(r"[^A-Za-z0-9.-]")
_LABEL_UNSAFE = re.compile(r"[^A-Za-z0-9._,+=@-]")


def sanitize_device_id(device_id: str) -> str:
    return _DEVICE_UNSAFE.sub("-", str(device_id)) or "unknown"


def sanitize_label(label: str) -> str:
    return _LABEL_UNSAFE.sub("-", str(label)) or "bundle"


@dataclass(frozen=True, order=True)
class BundleID:
    """Immutable bundle identifier.

    Ordered by (timestamp, device_id, label); ``token`` is the sortable,
    filename-safe string form ``YYYYMMDD.HHMMSS.mmm+HHMM_<device>_<label>``
    and is what head refs and bundle file names store.
    """

    timestamp: int
    device_id: str
    label: str
    token: str = field(compare=False)

    def __str__(self) -> str:
        return self.token

    @classmethod
    def parse(cls, token: str) -> "BundleID":
        token = (token or "").strip()
        parts = token.split(_SEP, 2)
        if len(parts) != 3 or not all(parts):
            raise SpecError(f"Invalid bundle token: {token!r}")
        time_part, device, label = parts
        try:
            dt = datetime.strptime(time_part, _TIME_PARSE)
        except ValueError as e:
            raise SpecError(f"Invalid bundle token timestamp: {token!r}") from e
        ts = int(dt.timestamp()) * 1000 + dt.microsecond // 1000
        return cls(timestamp=ts, device_id=device, label=label, token=token)


class BundleTimeFormat:
    """Formats bundle timestamps in the time zone of a bundle directory."""

    def __init__(self, tz_name: str):
        try:
            self.tz = ZoneInfo(tz_name)
            self.tz_name = tz_name
        except (ZoneInfoNotFoundError, ValueError):
            self.tz = timezone.utc
            self.tz_name = "UTC"

    def format(self, timestamp_ms: int) -> str:
        dt = datetime.fromtimestamp(int(timestamp_ms) // 1000, tz=self.tz)
        ms = int(timestamp_ms) % 1000
        return dt.strftime("%Y%m%d.%H%M%S.") + f"{ms:03d}" + dt.strftime("%z")

    def make_id(self, timestamp_ms: int, device_id: str, label: str) -> BundleID:
        device = sanitize_device_id(device_id)
        safe_label = sanitize_label(label)
        token = _SEP.join([self.format(timestamp_ms), device, safe_label])
        return BundleID(timestamp=int(timestamp_ms), device_id=device, label=safe_label, token=token)
