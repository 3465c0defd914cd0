"""filebundle core package.

Public entrypoints:
- filebundle.core.api: stable API surface for integrations
- filebundle.core.session.Session: open working copies of bundled directories

Internal modules may change without notice.
"""

from __future__ import annotations

# Strict architecture enforcement (default ON; set FILEBUNDLE_STRICT_ARCH=0 to disable).
from filebundle.core._architecture_guard import assert_architecture as _assert_architecture

_assert_architecture()

# Ensure built-in bundle modes are registered on import.
from filebundle.core import migrate as _migrate  # noqa: F401,E402

from filebundle.core.session import Session  # noqa: E402

__all__ = ["Session"]
