# === NAVMAP v1 ===
# {
#   "module": "FleetShip.pkg_manager",
#   "purpose": "Manifest-driven install, upgrade and delete of foreign packages",
#   "sections": [
#     {"id": "outcomes", "name": "InstallOutcome", "anchor": "class-installoutcome", "kind": "class"},
#     {"id": "manager", "name": "MinimalPackageManager", "anchor": "class-minimalpackagemanager", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Minimal package manager for hosts without a native ``pkg_add``.

Installing a package walks a fixed sequence:

1. parse and validate ``+CONTENTS`` (header, ``@name``, ``@arch *``,
   ``@cwd <prefix>``) and confirm every listed file is in the archive;
2. run the caller's signature check over the in-memory archive bytes;
3. classify against the registry: new, upgrade, already at this version, or
   a newer version already installed (the last two are no-ops);
4. for an upgrade, delete the installed version first;
5. create directories, extract files, then copy samples whose destination
   does not exist yet;
6. register.  A registry write failure is logged, the install stands.

Samples are only removed on delete while their size and SHA-256 still match
what the manifest recorded, so administrator edits survive upgrades.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .errors import PackageInstallError, RegistryError
from .io.archive import PackageArchive, sha256_base64
from .manifest import Manifest
from .registry import PackageRegistry, RegistryEntry
from .versions import split_package_name

__all__ = ["InstallOutcome", "InstallResult", "MinimalPackageManager"]

logger = logging.getLogger("FleetShip.pkg_manager")

Verifier = Callable[[PackageArchive], object]


class InstallOutcome(str, Enum):
    INSTALLED = "installed"
    UPGRADED = "upgraded"
    ALREADY_SAME = "already-same"
    ALREADY_NEWER = "already-newer"

    @property
    def changed(self) -> bool:
        return self in (InstallOutcome.INSTALLED, InstallOutcome.UPGRADED)


@dataclass
class InstallResult:
    outcome: InstallOutcome
    identity: str
    previous: Optional[str] = None
    files: List[Path] = field(default_factory=list)
    registered: bool = False


class MinimalPackageManager:
    """Install and remove packages beneath ``root`` using the given registry.

    Args:
        registry: Installed-package registry.
        prefix: Required ``@cwd``; package files land in ``root``/``prefix``.
        root: Filesystem root that ``prefix`` and absolute sample paths live under.
        platform: Sample overlay prefix (``linux`` or ``macos``), if any.
    """

    def __init__(
        self,
        registry: PackageRegistry,
        *,
        prefix: str = "/usr/local",
        root: Path = Path("/"),
        platform: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.prefix = prefix
        self.root = Path(root)
        self.platform = platform

    def _rooted(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")

    @property
    def prefix_dir(self) -> Path:
        return self._rooted(self.prefix)

    def _sample_source(self, source: str, manifest: Manifest) -> str:
        if not self.platform:
            return source
        overlay = posixpath.join(
            posixpath.dirname(source), f"{self.platform}.{posixpath.basename(source)}"
        )
        return overlay if overlay in manifest.files else source

    # ------------------------------------------------------------------
    # install
    # ------------------------------------------------------------------

    def _classify(self, archive: PackageArchive) -> tuple[Optional[InstallOutcome], Optional[RegistryEntry]]:
        incoming = split_package_name(archive.stem)
        if self.registry.is_registered(incoming.identity):
            return InstallOutcome.ALREADY_SAME, self.registry.entry(incoming.identity)

        older: Optional[RegistryEntry] = None
        for entry in self.registry.find_installed(incoming.stem):
            installed = entry.package_name()
            if installed.flavor != incoming.flavor:
                raise PackageInstallError(
                    f"New package {incoming.identity} has flavor {incoming.flavor or 'none'}, "
                    f"but installed {installed.identity} has {installed.flavor or 'none'}"
                )
            order = incoming.parsed_version().compare(installed.parsed_version())
            if order < 0:
                return InstallOutcome.ALREADY_NEWER, entry
            if order == 0:
                return InstallOutcome.ALREADY_SAME, entry
            older = entry
        return None, older

    def add(self, archive: PackageArchive, *, verify: Optional[Verifier] = None) -> InstallResult:
        """Install ``archive``; see the module docstring for the sequence.

        Raises:
            ManifestError: If the manifest is missing or structurally invalid.
            VerificationFailure: Propagated from ``verify``.
            PackageInstallError: On flavor mismatch, failed delete of the old
                version, or a directory/file that cannot be written.
        """

        manifest = archive.manifest()
        manifest.validate(archive.stem, self.prefix)
        archive.check_members(manifest.files)
        if verify is not None:
            verify(archive)

        state, entry = self._classify(archive)
        identity = archive.stem
        if state is not None:
            logger.info(
                "%s: %s (%s)",
                identity,
                state.value,
                entry.identity if entry else identity,
                extra={"stage": "install", "package": identity},
            )
            return InstallResult(state, identity, previous=entry.identity if entry else None)

        previous = None
        if entry is not None:
            logger.info(
                "deleting %s before installing %s",
                entry.identity,
                identity,
                extra={"stage": "install", "package": identity},
            )
            self.delete(entry.identity)
            previous = entry.identity

        written = self._extract(archive, manifest)
        logger.info("Installed package %s", identity, extra={"stage": "install", "package": identity})

        result = InstallResult(
            InstallOutcome.UPGRADED if previous else InstallOutcome.INSTALLED,
            identity,
            previous=previous,
            files=written,
        )
        try:
            self.registry.register(identity, archive.get_content("+CONTENTS"), archive.description())
            result.registered = True
        except RegistryError as exc:
            logger.warning(
                "installed %s but could not register it: %s",
                identity,
                exc,
                extra={"stage": "register", "package": identity},
            )
        return result

    def _extract(self, archive: PackageArchive, manifest: Manifest) -> List[Path]:
        prefix_dir = self.prefix_dir
        try:
            for directory in manifest.directories:
                (prefix_dir / directory).mkdir(parents=True, exist_ok=True)
            for directory in manifest.sample_directories:
                self._rooted(directory).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PackageInstallError(f"Couldn't create required directory: {exc}") from exc

        written: List[Path] = []
        try:
            for path in manifest.files:
                written.append(archive.extract_member(path, prefix_dir / path))
            for sample in manifest.samples:
                target = self._rooted(sample.target)
                if target.exists() or target.is_symlink():
                    logger.debug(
                        "not extracting sample %s to existing %s",
                        sample.source,
                        target,
                        extra={"stage": "install"},
                    )
                    continue
                source = self._sample_source(sample.source, manifest)
                written.append(archive.extract_member(source, target))
        except OSError as exc:
            raise PackageInstallError(
                f"Couldn't extract files from package {archive.name}: {exc}"
            ) from exc
        return written

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    def _sample_unchanged(self, target: Path, source: str, manifest: Manifest) -> bool:
        record = manifest.record_for(self._sample_source(source, manifest))
        if record is None or record.size is None or record.sha is None:
            return False
        try:
            if target.stat().st_size != record.size:
                return False
            return sha256_base64(target) == record.sha
        except OSError as exc:
            logger.debug("could not check sample %s: %s", target, exc)
            return False

    def delete(self, identity: str) -> List[Path]:
        """Remove an installed package and its registry entry.

        Samples are removed only while unchanged; directories only when
        empty, deepest first.  Returns the paths removed.
        """

        entry = self.registry.entry(identity)
        if not entry.path.is_dir():
            raise PackageInstallError(f"Package {identity} is not installed")
        manifest = entry.manifest()
        for cwd in manifest.cwds:
            if cwd != self.prefix:
                raise PackageInstallError(
                    f'+CONTENTS has "@cwd {cwd}", not {self.prefix}. Not removing package.'
                )

        removed: List[Path] = []
        for sample in manifest.samples:
            target = self._rooted(sample.target)
            if not target.is_file():
                continue
            if self._sample_unchanged(target, sample.source, manifest):
                target.unlink()
                removed.append(target)
            else:
                logger.debug(
                    "not removing changed sample file %s", target, extra={"stage": "delete"}
                )

        prefix_dir = self.prefix_dir
        for path in manifest.files:
            target = prefix_dir / path
            try:
                target.unlink()
                removed.append(target)
            except FileNotFoundError:
                logger.debug("already gone: %s", target, extra={"stage": "delete"})
            except OSError as exc:
                logger.debug("could not remove %s: %s", target, exc, extra={"stage": "delete"})

        directories = [prefix_dir / d for d in manifest.directories]
        directories += [self._rooted(d) for d in manifest.sample_directories]
        for directory in reversed(directories):
            try:
                directory.rmdir()
                removed.append(directory)
            except OSError as exc:
                logger.debug("kept dir %s: %s", directory, exc, extra={"stage": "delete"})

        try:
            self.registry.deregister(identity)
        except RegistryError as exc:
            raise PackageInstallError(str(exc)) from exc
        logger.info("Deleting package %s", identity, extra={"stage": "delete", "package": identity})
        return removed
