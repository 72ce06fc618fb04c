"""Protection-group handling: group files, ``syslock``/``sysunlock``, securelevel."""

from __future__ import annotations

import logging
import platform
import re
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Protocol

from .errors import LockError

__all__ = [
    "GroupLock",
    "SyslockCommands",
    "merge_groups",
    "read_group_file",
    "write_group_file",
    "read_securelevel",
    "check_securelevel",
    "unlocked",
]

logger = logging.getLogger("FleetShip.locks")

Runner = Callable[..., subprocess.CompletedProcess]


def merge_groups(existing: Iterable[str], extra: Iterable[str]) -> List[str]:
    """Append unseen groups from ``extra`` to ``existing``, keeping first-seen order."""

    merged: List[str] = []
    for group in list(existing) + list(extra):
        if group and group not in merged:
            merged.append(group)
    return merged


def read_group_file(path: Path) -> List[str]:
    text = Path(path).read_text(encoding="utf-8")
    return merge_groups([], (line.strip() for line in text.splitlines()))


def write_group_file(path: Path, groups: Iterable[str]) -> Path:
    Path(path).write_text("".join(f"{group}\n" for group in groups), encoding="utf-8")
    return Path(path)


class GroupLock(Protocol):
    def unlock(self, group: str) -> int:  # pragma: no cover
        """Unlock ``group``; return the tool's exit status."""

    def lock(self, group: str) -> int:  # pragma: no cover
        """Lock ``group``; return the tool's exit status."""


class SyslockCommands:
    """Run the ``syslock -g``/``sysunlock -g`` tools."""

    def __init__(self, syslock: Path, sysunlock: Path, *, runner: Runner = subprocess.run) -> None:
        self.syslock = Path(syslock)
        self.sysunlock = Path(sysunlock)
        self._runner = runner

    def available(self) -> bool:
        return self.syslock.exists()

    def _run(self, tool: Path, group: str) -> int:
        try:
            return self._runner([str(tool), "-g", group], check=False).returncode
        except OSError as exc:
            logger.error("cannot run %s: %s", tool, exc, extra={"stage": "lock"})
            return 127

    def unlock(self, group: str) -> int:
        return self._run(self.sysunlock, group)

    def lock(self, group: str) -> int:
        return self._run(self.syslock, group)


_BSD = re.compile(r"^(OpenBSD|Darwin|\w*BSD)$")


def read_securelevel(sysctl: Path, *, runner: Runner = subprocess.run) -> int:
    """Return ``kern.securelevel`` as reported by ``sysctl``."""

    try:
        completed = runner(
            [str(sysctl), "kern.securelevel"], capture_output=True, text=True, check=False
        )
    except OSError as exc:
        raise LockError(f"Cannot get system securelevel: {exc}") from exc
    output = (completed.stdout or "").strip()
    match = re.match(r"^.*[=:]\s*(-?\d+)$", output)
    if not match:
        raise LockError(f"Cannot get system securelevel. Output: {output}")
    return int(match.group(1))


def check_securelevel(
    sysctl: Path, *, runner: Runner = subprocess.run, system: str = ""
) -> None:
    """Refuse to continue on a BSD host whose securelevel is not 0.

    Immutable flags cannot be cleared above securelevel 0, so unlocking would
    silently leave protected files untouched.
    """

    if not _BSD.match(system or platform.system()):
        return
    level = read_securelevel(sysctl, runner=runner)
    logger.debug("securelevel=%d", level, extra={"stage": "lock"})
    if level != 0:
        raise LockError(
            "Cannot unlock immutable files and directories for installation while "
            f"system securelevel > 0. Securelevel: {level}."
        )


@contextmanager
def unlocked(locker: GroupLock, groups: Iterable[str], *, force: bool = False) -> Iterator[List[str]]:
    """Unlock ``groups`` for the duration of the block and always relock them.

    A failed unlock is fatal when ``force`` is set and a warning otherwise.
    Every group is relocked on exit, including after errors.
    """

    groups = list(groups)
    try:
        for group in groups:
            logger.debug("unlocking %s", group, extra={"stage": "lock"})
            status = locker.unlock(group)
            if status != 0:
                if force:
                    raise LockError(f"sysunlock failed with exit code: {status}")
                logger.warning(
                    "sysunlock -g %s exited with %d", group, status, extra={"stage": "lock"}
                )
        yield groups
    finally:
        for group in groups:
            logger.debug("locking %s", group, extra={"stage": "lock"})
            status = locker.lock(group)
            if status != 0:
                logger.error(
                    "syslock -g %s exited with %d", group, status, extra={"stage": "lock"}
                )
