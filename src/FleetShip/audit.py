"""Append-only installation audit log (``/etc/CHANGELOG`` format).

Each run that installs something appends one entry::

    <blank line>
    2026-03-01-root:
    \tInstalled package alpha-20260301-101500-package.tgz:
    \t   /etc/pf.conf
    \tUpgraded to rsync-3.4.1.tgz.
"""

from __future__ import annotations

import getpass
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

__all__ = ["AuditEntry", "append_entry"]

INDENT = "\t"
PATH_INDENT = "\t   "


@dataclass
class AuditEntry:
    date: str
    user: str
    lines: List[str] = field(default_factory=list)

    @classmethod
    def start(cls, *, user: Optional[str] = None, now: Optional[datetime] = None) -> "AuditEntry":
        return cls((now or datetime.now()).strftime("%Y-%m-%d"), user or getpass.getuser())

    @property
    def empty(self) -> bool:
        return not self.lines

    def installed_bundle(self, name: str, paths: Iterable[str]) -> None:
        self.lines.append(f"{INDENT}Installed package {name}:")
        self.lines.extend(f"{PATH_INDENT}{path}" for path in paths)

    def upgraded(self, name: str) -> None:
        self.lines.append(f"{INDENT}Upgraded to {name}.")

    def render(self) -> str:
        body = "".join(f"{line}\n" for line in self.lines)
        return f"\n{self.date}-{self.user}:\n{body}"


def append_entry(path: Path, entry: AuditEntry) -> None:
    """Append ``entry`` to the log at ``path``, creating the file if needed."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(entry.render())
