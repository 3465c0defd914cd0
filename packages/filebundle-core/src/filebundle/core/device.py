from __future__ import annotations

import logging
import uuid

from filebundle.core.bundle_id import sanitize_device_id
from filebundle.core.fileutil import atomic_output
from filebundle.core.runtime.settings import Settings

log = logging.getLogger("filebundle.core.device")

DEVICE_ID_FILE = "device-id.txt"


def get_device_id(settings: Settings) -> str:
    """Return this device's ID: configured, else persisted under state_root, else generated."""
    if settings.device_id:
        return sanitize_device_id(settings.device_id)

    path = settings.state_path / DEVICE_ID_FILE
    try:
        existing = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        existing = ""
    if existing:
        return sanitize_device_id(existing)

    device_id = uuid.uuid4().hex[:16]
    with atomic_output(path) as f:
        f.write(device_id.encode("utf-8"))
    log.info("generated device id %s (%s)", device_id, path)
    return device_id
