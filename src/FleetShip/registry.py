"""Installed-package registry: one directory per package identity.

Each entry directory (``<registry>/<name>-<version>[-<flavor>]``) holds the
package's ``+CONTENTS`` and ``+DESC`` verbatim.  The registry is the only
record of what is installed; the installer's skip check treats the bare
existence of the directory as "registered".
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import RegistryError, VersionParseError
from .manifest import Manifest, parse_manifest
from .versions import PackageName, split_package_name

__all__ = ["RegistryEntry", "PackageRegistry"]

logger = logging.getLogger("FleetShip.registry")

CONTENTS = "+CONTENTS"
DESC = "+DESC"


@dataclass(frozen=True)
class RegistryEntry:
    identity: str
    path: Path

    @property
    def contents_path(self) -> Path:
        return self.path / CONTENTS

    @property
    def desc_path(self) -> Path:
        return self.path / DESC

    def package_name(self) -> PackageName:
        return split_package_name(self.identity)

    def manifest(self) -> Manifest:
        try:
            return parse_manifest(self.contents_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RegistryError(f"Cannot open +CONTENTS for package {self.identity}: {exc}") from exc

    def description_lines(self) -> List[str]:
        try:
            return self.desc_path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise RegistryError(f"Cannot open +DESC for package {self.identity}: {exc}") from exc

    def one_liner(self) -> str:
        lines = self.description_lines()
        return lines[0] if lines else ""


def _check_identity(identity: str) -> None:
    if not identity or "/" in identity or identity.startswith("."):
        raise RegistryError(f"Invalid package identity {identity!r}")


class PackageRegistry:
    """Read and update the registry rooted at ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _identities(self) -> List[str]:
        if not self.root.is_dir():
            return []
        try:
            return sorted(
                child.name
                for child in self.root.iterdir()
                if child.is_dir() and not child.name.startswith(".")
            )
        except OSError as exc:
            raise RegistryError(f"Cannot open dir {self.root}: {exc}") from exc

    def entry(self, identity: str) -> RegistryEntry:
        _check_identity(identity)
        return RegistryEntry(identity, self.root / identity)

    def is_registered(self, identity: str) -> bool:
        return self.entry(identity).path.is_dir()

    def lookup(self, stem: str) -> Optional[RegistryEntry]:
        """Return the entry named ``stem`` or ``stem-<digit>...``.

        ``foo`` matches ``foo-1.0`` but never ``foobar-1.0``.
        """

        pattern = re.compile(rf"^{re.escape(stem)}-\d")
        for identity in self._identities():
            if identity == stem or pattern.match(identity):
                return RegistryEntry(identity, self.root / identity)
        return None

    def find_installed(self, stem: str) -> List[RegistryEntry]:
        """Return every entry whose parsed stem equals ``stem``."""

        found = []
        for identity in self._identities():
            try:
                name = split_package_name(identity)
            except VersionParseError:
                logger.debug("skipping unparsable registry entry %s", identity)
                continue
            if name.stem == stem:
                found.append(RegistryEntry(identity, self.root / identity))
        return found

    def register(self, identity: str, manifest: bytes, description: bytes) -> RegistryEntry:
        entry = self.entry(identity)
        try:
            entry.path.mkdir(parents=True, exist_ok=True)
            entry.contents_path.write_bytes(manifest)
            entry.desc_path.write_bytes(description)
        except OSError as exc:
            raise RegistryError(f"Couldn't create {entry.path}: {exc}") from exc
        return entry

    def deregister(self, identity: str) -> None:
        entry = self.entry(identity)
        if not entry.path.is_dir():
            raise RegistryError(f"Package {identity} is not registered")
        try:
            shutil.rmtree(entry.path)
        except OSError as exc:
            raise RegistryError(
                f"Could not remove package registration {entry.path}: {exc}"
            ) from exc

    def list_all(self) -> List[Tuple[str, str]]:
        """Return ``(@name, first +DESC line)`` for every entry, sorted by directory."""

        listing = []
        for identity in self._identities():
            entry = RegistryEntry(identity, self.root / identity)
            name = entry.manifest().name
            if not name:
                raise RegistryError(f'Cannot find "@name" in +CONTENTS for package {identity}')
            listing.append((name, entry.one_liner()))
        return listing

    def describe(self, identity: str) -> str:
        """Render the long description block for one entry, ``pkg_info`` style."""

        lines = self.entry(identity).description_lines()
        one_liner = lines[0] if lines else ""
        body = "".join(f"{line}\n" for line in lines[1:])
        return (
            f"Information for inst:{identity}\n\n"
            f"Comment:\n{one_liner}\n\nDescription:\n{body}\n\n"
        )
