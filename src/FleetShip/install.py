# === NAVMAP v1 ===
# {
#   "module": "FleetShip.install",
#   "purpose": "Verify and install everything waiting in the drop directory",
#   "sections": [
#     {"id": "report", "name": "InstallReport", "anchor": "class-installreport", "kind": "class"},
#     {"id": "installer", "name": "Installer", "anchor": "class-installer", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Install orchestrator for destination hosts.

One run:

1. lists the drop directory, ignoring detached ``.sig`` files;
2. when group locking is in use, verifies each ``.grp`` list against the
   domain keys only and merges its groups into the defaults; lists and
   signatures are always removed, a bad signature only costs a warning;
3. checks ``kern.securelevel`` on BSD hosts unless forced;
4. unlocks the groups, dispatches every payload, and relocks;
5. appends one audit entry when anything was installed.

Payloads are matched by name.  ``<host>-<date>-<time>-package.tgz`` bundles
for this host are verified and extracted over the install root; other
hosts' bundles are extraneous.  ``<name>-<version>[-<flavor>].tgz`` packages
are skipped when already registered and otherwise installed with the native
``pkg_add`` when present, or the minimal package manager.  Anything else is
logged and left alone.  A payload is removed from the drop directory only
after it was handled successfully.
"""

from __future__ import annotations

import getpass
import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .audit import AuditEntry, append_entry
from .errors import FleetShipError, LockError
from .io.archive import PackageArchive, extract_bundle
from .locks import GroupLock, SyslockCommands, check_securelevel, merge_groups, read_group_file, unlocked
from .pkg_manager import MinimalPackageManager
from .registry import PackageRegistry
from .settings import FleetShipSettings
from .signify import read_signature, signature_path
from .trust import TrustPolicy

__all__ = ["PayloadResult", "InstallReport", "Installer"]

logger = logging.getLogger("FleetShip.install")

_PACKAGE = re.compile(r"^(?P<identity>[\w\-]+-[.\w]+(?:-\w+)?)\.tgz$")
_ANY_BUNDLE = re.compile(r"^[\w.\-]+-\d+-\d+-package\.tgz$")


@dataclass
class PayloadResult:
    name: str
    kind: str
    ok: bool = True
    changed: bool = False
    detail: str = ""


@dataclass
class InstallReport:
    groups: List[str] = field(default_factory=list)
    results: List[PayloadResult] = field(default_factory=list)
    audit: Optional[AuditEntry] = None

    @property
    def nothing_to_install(self) -> bool:
        return not self.results

    @property
    def installed_something(self) -> bool:
        return any(result.changed for result in self.results)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)


class Installer:
    """Install the contents of ``settings.paths.drop_dir``.

    Args:
        settings: Runtime settings.
        locker: Group lock implementation; defaults to the configured
            ``syslock``/``sysunlock`` tools.
        runner: ``subprocess.run`` compatible callable for external tools.
        user: Name recorded in the audit log.
        now: Date recorded in the audit log.
    """

    def __init__(
        self,
        settings: FleetShipSettings,
        *,
        locker: Optional[GroupLock] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        user: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.settings = settings
        self.paths = settings.paths
        self._runner = runner
        self.locker = locker or SyslockCommands(
            settings.locks.syslock, settings.locks.sysunlock, runner=runner
        )
        self.user = user or getpass.getuser()
        self.now = now
        self.trust = TrustPolicy.from_settings(settings)
        self.group_trust = TrustPolicy.from_settings(settings, vendor_keys=False)
        self.registry = PackageRegistry(self.paths.registry_dir)
        self.manager = MinimalPackageManager(
            self.registry,
            prefix=self.paths.package_prefix,
            root=self.paths.install_root,
            platform=settings.overlay_platform(),
        )
        self._bundle = re.compile(
            rf"^{re.escape(settings.short_hostname)}-\d+-\d+-package\.tgz$"
        )

    def _use_locks(self, force: bool, no_lock: bool) -> bool:
        if force and no_lock:
            raise LockError("Cannot use -f and -n, they are mutually exclusive.")
        if no_lock:
            return False
        available = getattr(self.locker, "available", lambda: True)()
        if not available:
            if force:
                raise LockError("Cannot use -f because you don't have syslock.")
            return False
        return True

    def scan(self, use_locks: bool) -> Tuple[List[Path], List[Path]]:
        """Return ``(group_files, payloads)`` from the drop directory, sorted by name."""

        drop_dir = self.paths.drop_dir
        try:
            names = sorted(
                child.name
                for child in drop_dir.iterdir()
                if not child.name.startswith(".") and not child.name.endswith(".sig")
            )
        except OSError as exc:
            raise FleetShipError(f"Cannot open {drop_dir} to read files. {exc}") from exc
        groups = [drop_dir / name for name in names if use_locks and name.endswith(".grp")]
        payloads = [drop_dir / name for name in names if drop_dir / name not in groups]
        return groups, payloads

    def collect_groups(self, group_files: List[Path]) -> List[str]:
        groups = list(self.settings.locks.default_groups)
        for path in group_files:
            sig = signature_path(path)
            if not sig.exists():
                logger.warning(
                    "Install dir contains group file without signature. %s",
                    path.name,
                    extra={"stage": "groups"},
                )
            else:
                try:
                    self.group_trust.verify_path(path)
                    groups = merge_groups(groups, read_group_file(path))
                except FleetShipError as exc:
                    logger.warning(
                        "Bad signature on group file. %s: %s", sig, exc, extra={"stage": "groups"}
                    )
                sig.unlink(missing_ok=True)
            path.unlink(missing_ok=True)
        logger.debug("groups: %s", " ".join(groups), extra={"stage": "groups"})
        return groups

    def _remove(self, path: Path) -> None:
        path.unlink(missing_ok=True)
        signature_path(path).unlink(missing_ok=True)

    def install_bundle(self, path: Path, entry: AuditEntry) -> PayloadResult:
        data = path.read_bytes()
        self.trust.verify_bytes(data, read_signature(path), label=str(path))
        root = self.paths.install_root
        extracted = extract_bundle(data, root)
        entry.installed_bundle(path.name, ("/" + p.relative_to(root).as_posix() for p in extracted))
        self._remove(path)
        logger.info("Installed package %s", path.name, extra={"stage": "install", "package": path.name})
        return PayloadResult(path.name, "bundle", changed=True, detail=f"{len(extracted)} files")

    def _native_pkg_add(self) -> bool:
        return self.paths.pkg_add.exists()

    def install_package(self, path: Path, identity: str, entry: AuditEntry) -> PayloadResult:
        if self.registry.is_registered(identity):
            logger.info(
                "Package %s already installed per existence of directory %s.",
                path.name,
                self.registry.entry(identity).path,
                extra={"stage": "install", "package": identity},
            )
            self._remove(path)
            return PayloadResult(path.name, "package", detail="already installed")

        signature = read_signature(path)
        if self._native_pkg_add():
            self.trust.verify_bytes(path.read_bytes(), signature, label=str(path))
            completed = self._runner([str(self.paths.pkg_add), str(path)], check=False)
            if completed.returncode != 0:
                return PayloadResult(
                    path.name,
                    "package",
                    ok=False,
                    detail=f"pkg_add exited with {completed.returncode}",
                )
            changed = True
        else:
            archive = PackageArchive.read(path)
            result = self.manager.add(
                archive,
                verify=lambda a: self.trust.verify_bytes(a.data, signature, label=str(path)),
            )
            changed = result.outcome.changed
        self._remove(path)
        if changed:
            entry.upgraded(path.name)
        return PayloadResult(path.name, "package", changed=changed)

    def dispatch(self, path: Path, entry: AuditEntry) -> PayloadResult:
        name = path.name
        try:
            if self._bundle.match(name):
                return self.install_bundle(path, entry)
            match = _PACKAGE.match(name)
            if match and not _ANY_BUNDLE.match(name):
                return self.install_package(path, match.group("identity"), entry)
        except (FleetShipError, OSError) as exc:
            logger.error("Could not install %s: %s", name, exc, extra={"stage": "install", "package": name})
            return PayloadResult(name, "failed", ok=False, detail=str(exc))
        logger.warning(
            "Extraneous file in %s. Ignoring. %s", self.paths.drop_dir, name, extra={"stage": "install"}
        )
        return PayloadResult(name, "extraneous")

    def run(self, *, force: bool = False, no_lock: bool = False) -> InstallReport:
        """Install everything in the drop directory and return what happened.

        Raises:
            LockError: For conflicting options, a non-zero securelevel, or a
                failed unlock in forced mode.
        """

        use_locks = self._use_locks(force, no_lock)
        group_files, payloads = self.scan(use_locks)
        report = InstallReport()
        if use_locks:
            report.groups = self.collect_groups(group_files)
        if not payloads:
            logger.info("Nothing to install.", extra={"stage": "install"})
            return report

        if use_locks and not force:
            check_securelevel(self.settings.locks.sysctl, runner=self._runner)

        entry = AuditEntry.start(user=self.user, now=self.now)
        with unlocked(self.locker, report.groups if use_locks else [], force=force):
            for path in payloads:
                report.results.append(self.dispatch(path, entry))

        if entry.empty:
            logger.info("Didn't find any files that could be installed.", extra={"stage": "install"})
            return report
        append_entry(self.paths.audit_log, entry)
        report.audit = entry
        return report
