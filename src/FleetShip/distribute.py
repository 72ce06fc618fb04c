# === NAVMAP v1 ===
# {
#   "module": "FleetShip.distribute",
#   "purpose": "Stage, bundle, sign and ship declared artifacts to destination hosts",
#   "sections": [
#     {"id": "hostplan", "name": "HostPlan", "anchor": "class-hostplan", "kind": "class"},
#     {"id": "report", "name": "DistributionReport", "anchor": "class-distributionreport", "kind": "class"},
#     {"id": "distributor", "name": "Distributor", "anchor": "class-distributor", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Distribution orchestrator.

A run takes artifact names, resolves each to its target hosts and stages it:

* ``package`` artifacts resolve to the newest archive in the package pool,
  whose signature is verified before it is queued, unchanged, for each host;
* ``plain`` artifacts are copied, permissions preserved, into a per-host
  staging tree at their destination path;
* ``custom`` artifacts are handed to the registered handler of that name.

Protection groups are accumulated per host along the way.  Each host with
staged files then gets one bundle ``<host>-<YYYYmmdd-HHMMSS>-package.tgz``,
signed with the current (or, on request, the prior-year) key, plus a signed
``.grp`` list when groups were accumulated.  Everything is shipped and the
local staging area is removed.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional, Sequence

from .custom import HandlerContext, get_handler
from .declarations import ArtifactDeclaration, ArtifactKind, DeclarationSet
from .errors import ConfigError, FleetShipError, SigningError
from .io.archive import build_archive
from .locks import merge_groups, write_group_file
from .pool import PackagePool
from .settings import FleetShipSettings
from .signify import SecretKey, sign_file, signature_path
from .transport import Transport, build_transport
from .trust import TrustPolicy

__all__ = ["HostPlan", "HostResult", "DistributionReport", "Distributor", "bundle_name"]

logger = logging.getLogger("FleetShip.distribute")

STAMP_FORMAT = "%Y%m%d-%H%M%S"


def bundle_name(host: str, now: datetime) -> str:
    return f"{host}-{now.strftime(STAMP_FORMAT)}-package.tgz"


@dataclass
class HostPlan:
    """Everything accumulated for one destination host."""

    host: str
    staging_root: Path
    groups: List[str] = field(default_factory=list)
    staged: List[Path] = field(default_factory=list)
    packages: List[Path] = field(default_factory=list)

    def add_groups(self, groups: Sequence[str]) -> None:
        self.groups = merge_groups(self.groups, groups)

    def stage_path(self, dest: str) -> Path:
        """Return the staging path for absolute ``dest`` and record it for bundling."""

        posix = PurePosixPath(dest)
        if not posix.is_absolute() or ".." in posix.parts:
            raise ConfigError(f"Destination must be an absolute path: {dest}")
        path = self.staging_root.joinpath(*posix.parts[1:])
        path.parent.mkdir(parents=True, exist_ok=True)
        if path not in self.staged:
            self.staged.append(path)
        return path

    def add_package(self, path: Path) -> None:
        if path not in self.packages:
            self.packages.append(path)


@dataclass
class HostResult:
    host: str
    bundle: Optional[str] = None
    group_file: Optional[str] = None
    shipped: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DistributionReport:
    results: Dict[str, HostResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results.values())

    @property
    def failed_hosts(self) -> List[str]:
        return [host for host, result in self.results.items() if not result.ok]


class Distributor:
    """Run distribution for a validated :class:`DeclarationSet`.

    Args:
        settings: Runtime settings.
        declarations: Validated artifact declarations.
        passphrase: Called at most once, only when a bundle must be signed.
        transport: Overrides the transport chosen from settings.
        prompt: Line input for interactive custom handlers.
        echo: Operator notices from custom handlers.
        now: Timestamp used for bundle names.
    """

    def __init__(
        self,
        settings: FleetShipSettings,
        declarations: DeclarationSet,
        *,
        passphrase: Callable[[], str],
        transport: Optional[Transport] = None,
        prompt: Callable[[str], str] = input,
        echo: Optional[Callable[[str], None]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.settings = settings
        self.declarations = declarations
        self._passphrase = passphrase
        self._transport = transport
        self._prompt = prompt
        self._echo = echo or (lambda message: logger.warning(message, extra={"stage": "custom"}))
        self._now = now
        self.pool = PackagePool(settings.paths.package_pool)
        self.trust = TrustPolicy.from_settings(settings)
        self.use_v6: Optional[bool] = None

    # ------------------------------------------------------------------
    # staging
    # ------------------------------------------------------------------

    def _target_hosts(self, artifact: ArtifactDeclaration, selected: Optional[List[str]]) -> List[str]:
        hosts = artifact.target_hosts(self.declarations.host_list)
        if selected:
            hosts = [host for host in hosts if host in selected]
        return hosts

    def stage(
        self, artifacts: List[ArtifactDeclaration], work_dir: Path, selected: Optional[List[str]] = None
    ) -> Dict[str, HostPlan]:
        """Stage ``artifacts`` under ``work_dir`` and return the per-host plans."""

        plans: Dict[str, HostPlan] = {}

        def plan_for(host: str) -> HostPlan:
            if host not in plans:
                plans[host] = HostPlan(host, work_dir / "stage" / host)
            return plans[host]

        for artifact in artifacts:
            hosts = self._target_hosts(artifact, selected)
            logger.debug(
                "processing %s for %s", artifact.name, ", ".join(hosts), extra={"stage": "plan"}
            )
            for host in hosts:
                plan_for(host).add_groups(artifact.groups)

            if artifact.kind is ArtifactKind.PACKAGE:
                package = self.pool.find_latest(artifact.source, artifact.flavor)
                self.trust.verify_path(package)
                for host in hosts:
                    plan_for(host).add_package(package)
            elif artifact.kind is ArtifactKind.PLAIN:
                source = Path(artifact.source)
                if not source.exists():
                    raise ConfigError(f"File in config can't be found. {source}")
                for host in hosts:
                    shutil.copy2(source, plan_for(host).stage_path(artifact.destination))
            else:
                handler = get_handler(artifact.name)
                context = HandlerContext(
                    hosts=hosts,
                    settings=self.settings,
                    stage=lambda host, dest: plan_for(host).stage_path(dest),
                    prompt=self._prompt,
                    echo=self._echo,
                )
                handler.stage(artifact, context)
                if context.use_v6 is not None:
                    self.use_v6 = context.use_v6
        return plans

    # ------------------------------------------------------------------
    # bundle, sign, ship
    # ------------------------------------------------------------------

    def _load_secret(self, prior_key: bool) -> SecretKey:
        year = self.settings.key_year() - (1 if prior_key else 0)
        path = self.settings.paths.key_dir / f"{self.settings.key_name(year)}.sec"
        return SecretKey.load(path, self._passphrase())

    def _finish_host(
        self,
        plan: HostPlan,
        secret: Optional[SecretKey],
        now: datetime,
        outbox: Path,
        transport: Transport,
    ) -> HostResult:
        result = HostResult(plan.host)
        outbox.mkdir(parents=True, exist_ok=True)
        files: List[Path] = []
        if plan.staged:
            if secret is None:
                raise SigningError("No signing key loaded")
            bundle = build_archive(plan.staged, outbox / bundle_name(plan.host, now), plan.staging_root)
            files += [bundle, sign_file(bundle, secret)]
            result.bundle = bundle.name
            if plan.groups:
                group_file = write_group_file(bundle.with_name(bundle.name + ".grp"), plan.groups)
                files += [group_file, sign_file(group_file, secret)]
                result.group_file = group_file.name
        for package in plan.packages:
            for source in (package, signature_path(package)):
                copied = outbox / source.name
                shutil.copy2(source, copied)
                files.append(copied)
        if files:
            logger.info("Distributing to %s.", plan.host, extra={"stage": "ship", "host": plan.host})
            transport.ship(plan.host, files)
        result.shipped = [path.name for path in files]
        return result

    def _safe_finish(self, plan: HostPlan, *args) -> HostResult:
        try:
            return self._finish_host(plan, *args)
        except (FleetShipError, OSError) as exc:
            logger.error(
                "distribution to %s failed: %s", plan.host, exc, extra={"stage": "ship", "host": plan.host}
            )
            return HostResult(plan.host, error=str(exc))

    def run(
        self,
        names: List[str],
        *,
        hosts: Optional[List[str]] = None,
        prior_key: bool = False,
        use_v6: Optional[bool] = None,
    ) -> DistributionReport:
        """Distribute the named artifacts.

        Configuration, lookup and verification problems raise before anything
        is shipped.  Per-host bundle, sign and transport failures are recorded
        in the report and do not stop the other hosts.
        """

        if not names:
            raise ConfigError("No artifacts named")
        artifacts = self.declarations.select(names)
        for host in hosts or []:
            if host not in self.declarations.host_list:
                raise ConfigError(f"-h specifies host not defined in config. {host}")
        self.use_v6 = use_v6
        now = self._now or datetime.now()

        report = DistributionReport()
        with tempfile.TemporaryDirectory(
            prefix="distribute.", dir=self.settings.paths.staging_dir
        ) as tmp:
            work_dir = Path(tmp)
            plans = self.stage(artifacts, work_dir, hosts)
            secret = None
            if any(plan.staged for plan in plans.values()):
                secret = self._load_secret(prior_key)
            transport = self._transport or build_transport(self.settings, use_v6=self.use_v6)

            workers = min(self.settings.distribute.max_workers, max(len(plans), 1))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    host: executor.submit(
                        self._safe_finish, plan, secret, now, work_dir / "out" / host, transport
                    )
                    for host, plan in plans.items()
                }
                for host, future in futures.items():
                    report.results[host] = future.result()
        return report
