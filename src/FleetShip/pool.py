"""Lookup of the newest signed package for a stem in the package pool."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ArchiveError, VersionParseError
from .versions import PackageName, Version, split_package_name

__all__ = ["PackagePool"]

logger = logging.getLogger("FleetShip.pool")


class PackagePool:
    """A flat directory of ``<stem>-<version>[-<flavor>].tgz`` archives."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def candidates(self, stem: str, flavor: Optional[str] = None) -> List[Tuple[Path, PackageName]]:
        """Return archives whose stem and flavor match exactly."""

        try:
            children = sorted(self.root.iterdir())
        except OSError as exc:
            raise ArchiveError(f"Could not open directory {self.root}: {exc}") from exc
        found = []
        for child in children:
            if not child.name.endswith(".tgz") or not child.is_file():
                continue
            try:
                name = split_package_name(child.name)
            except VersionParseError:
                continue
            if name.stem == stem and name.flavor == flavor:
                found.append((child, name))
        return found

    def find_latest(self, stem: str, flavor: Optional[str] = None) -> Path:
        """Return the path of the newest archive for ``stem``.

        Raises:
            ArchiveError: If no archive for ``stem`` exists.
            VersionParseError: If a matching archive has an unparsable version.
            VersionComparisonError: If matching archives use different grammars.
        """

        best: Optional[Tuple[Path, Version]] = None
        for path, name in self.candidates(stem, flavor):
            version = name.parsed_version()
            if best is None or version.compare(best[1]) > 0:
                best = (path, version)
        if best is None:
            label = f"{stem}-*-{flavor}" if flavor else stem
            raise ArchiveError(f"Could not find {label} package in {self.root}")
        logger.debug("latest %s is %s", stem, best[0].name, extra={"stage": "pool"})
        return best[0]
