from __future__ import annotations

import re
import uuid
from typing import Optional

_ROLE_RE = re.compile(r"[^a-z0-9_]+")


def new_salt() -> str:
    return uuid.uuid4().hex[:8]


class TableNamer:
    """Run-scoped working table names: ``<prefix_><role>_<salt>_<n>``.

    The salt isolates runs sharing one database, the counter isolates
    tables created for the same role within a run.
    """

    def __init__(self, salt: Optional[str] = None, prefix: str = "") -> None:
        self.salt = salt or new_salt()
        self.prefix = prefix.lower()
        self._counter = 0

    def name(self, role: str) -> str:
        self._counter += 1
        role = _ROLE_RE.sub("_", role.lower()).strip("_") or "table"
        prefix = f"{self.prefix}_" if self.prefix else ""
        return f"{prefix}{role}_{self.salt}_{self._counter}"
