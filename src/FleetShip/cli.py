# === NAVMAP v1 ===
# {
#   "module": "FleetShip.cli",
#   "purpose": "Typer CLI for distribution, installation, package queries and keys",
#   "sections": [
#     {"id": "clicontext", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"},
#     {"id": "distribute-cmd", "name": "distribute_cmd", "anchor": "function-distribute-cmd", "kind": "function"},
#     {"id": "install-cmd", "name": "install_cmd", "anchor": "function-install-cmd", "kind": "function"},
#     {"id": "pkg-info-cmd", "name": "pkg_info_cmd", "anchor": "function-pkg-info-cmd", "kind": "function"},
#     {"id": "keygen-cmd", "name": "keygen_cmd", "anchor": "function-keygen-cmd", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command line entry point ``fleetship``.

Global options come before the subcommand::

    fleetship -c /etc/fleetship.yaml distribute rsync pf.conf -h alpha,beta
    fleetship -vv install -n
    fleetship pkg-info rsync

Exit codes: 0 on success (including "nothing to do"), 1 on any failure,
2 on usage errors.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .declarations import builtin_macros, load_declarations
from .distribute import Distributor
from .errors import FleetShipError
from .install import Installer
from .io.archive import PackageArchive
from .logging_utils import setup_logging
from .pkg_manager import MinimalPackageManager
from .registry import PackageRegistry
from .settings import FleetShipSettings, load_settings
from .signify import SecretKey, generate_keypair, read_signature, sign_file
from .trust import TrustPolicy

__all__ = ["app", "CliContext", "get_context", "main"]

logger = logging.getLogger("FleetShip.cli")

_console = Console(highlight=False)


class CliContext:
    """Per-invocation state shared by the commands."""

    def __init__(self, settings: FleetShipSettings, verbosity: int = 0) -> None:
        self.settings = settings
        self.verbosity = verbosity
        self.console = _console

    def configure_logging(self, debug: bool = False) -> None:
        level = self.settings.logging.level
        if self.verbosity == 1 and level not in ("DEBUG", "INFO"):
            level = "INFO"
        if debug or self.verbosity >= 2:
            level = "DEBUG"
        setup_logging(
            level=level,
            retention_days=self.settings.logging.retention_days,
            max_log_size_mb=self.settings.logging.max_log_size_mb,
            log_dir=self.settings.logging.directory,
        )

    def fail(self, message: str, code: int = 1) -> typer.Exit:
        self.console.print(f"[red]Error:[/red] {escape(message)}")
        return typer.Exit(code)


app = typer.Typer(
    name="fleetship",
    help="Distribute signed artifacts to a fleet of hosts and install them there",
    no_args_is_help=True,
)

_context: Optional[CliContext] = None


def get_context() -> CliContext:
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


def _version() -> str:
    from . import __version__

    return __version__


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="FLEETSHIP_CONFIG",
        help="Settings YAML file",
    ),
    verbosity: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Increase verbosity (-v INFO, -vv DEBUG)"
    ),
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
) -> None:
    """Distribute and install signed configuration files and packages."""

    global _context

    if version:
        typer.echo(f"fleetship {_version()}")
        raise typer.Exit(0)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)
    try:
        settings = load_settings(config)
    except FleetShipError as exc:
        _console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(1)
    _context = CliContext(settings, verbosity)


def _passphrase() -> str:
    return typer.prompt("passphrase", hide_input=True)


def _csv(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


@app.command("distribute")
def distribute_cmd(
    names: List[str] = typer.Argument(..., help="Artifact names from the declarations"),
    ipv4: bool = typer.Option(False, "-4", help="Ship over the IPv4 host aliases"),
    ipv6: bool = typer.Option(False, "-6", help="Ship over the IPv6 host aliases"),
    prior_key: bool = typer.Option(False, "--prior-key", "-p", help="Sign with last year's key"),
    hosts: Optional[str] = typer.Option(None, "--hosts", "-h", help="Comma-separated host subset"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Debug logging"),
    declarations: Optional[Path] = typer.Option(
        None, "--declarations", help="Artifact declaration document"
    ),
) -> None:
    """Stage, bundle, sign and ship artifacts to their hosts."""

    ctx = get_context()
    ctx.configure_logging(debug)
    if ipv4 and ipv6:
        raise typer.BadParameter("-4 and -6 are mutually exclusive")
    use_v6 = True if ipv6 else (False if ipv4 else None)

    settings = ctx.settings
    try:
        declaration_set = load_declarations(
            declarations or settings.paths.declarations, builtin_macros(settings)
        )
        distributor = Distributor(
            settings,
            declaration_set,
            passphrase=_passphrase,
            prompt=lambda text: typer.prompt(text, default="", show_default=False),
            echo=ctx.console.print,
        )
        report = distributor.run(names, hosts=_csv(hosts), prior_key=prior_key, use_v6=use_v6)
    except FleetShipError as exc:
        raise ctx.fail(str(exc))

    table = Table(title="Distribution")
    table.add_column("Host")
    table.add_column("Bundle")
    table.add_column("Files", justify="right")
    table.add_column("Status")
    for host, result in report.results.items():
        status = "[green]ok[/green]" if result.ok else f"[red]{result.error}[/red]"
        table.add_row(host, result.bundle or "-", str(len(result.shipped)), status)
    ctx.console.print(table)
    logger.info(
        "distribution finished",
        extra={
            "stage": "cli",
            "extra_fields": {"hosts": len(report.results), "failed": report.failed_hosts},
        },
    )
    if not report.ok:
        raise ctx.fail(f"Distribution failed for: {', '.join(report.failed_hosts)}")


@app.command("install")
def install_cmd(
    force: bool = typer.Option(False, "--force", "-f", help="Unlock even above securelevel 0"),
    no_lock: bool = typer.Option(False, "--no-lock", "-n", help="Do not use syslock"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Debug logging"),
) -> None:
    """Verify and install everything waiting in the drop directory."""

    ctx = get_context()
    ctx.configure_logging(debug)
    if force and no_lock:
        raise typer.BadParameter("Cannot use -f and -n, they are mutually exclusive.")
    if ctx.settings.require_root and os.geteuid() != 0:
        raise ctx.fail("Must be run by root.")

    try:
        report = Installer(ctx.settings).run(force=force, no_lock=no_lock)
    except FleetShipError as exc:
        raise ctx.fail(str(exc))

    if report.nothing_to_install:
        ctx.console.print("Nothing to install.")
        return
    logger.info(
        "install finished",
        extra={"stage": "cli", "extra_fields": {"payloads": len(report.results), "ok": report.ok}},
    )
    for result in report.results:
        if not result.ok:
            ctx.console.print(f"[red]failed[/red] {result.name}: {result.detail}")
        elif result.changed:
            ctx.console.print(f"[green]installed[/green] {result.name}")
        else:
            ctx.console.print(f"skipped {result.name} ({result.detail or result.kind})")
    if not report.ok:
        raise typer.Exit(1)


@app.command("pkg-info")
def pkg_info_cmd(
    names: Optional[List[str]] = typer.Argument(None, help="Package names (default: list all)"),
) -> None:
    """List installed packages or describe the named ones."""

    ctx = get_context()
    registry = PackageRegistry(ctx.settings.paths.registry_dir)
    try:
        if not names:
            for name, one_liner in registry.list_all():
                typer.echo(f"{name:<19} {one_liner}")
            return
        found = []
        for name in names:
            entry = registry.lookup(name)
            if entry is None:
                typer.echo(f'Did not find matching package for "{name}".')
            else:
                found.append(entry.identity)
        if not found:
            raise ctx.fail("No valid packages specified.")
        for identity in found:
            typer.echo(registry.describe(identity), nl=False)
    except FleetShipError as exc:
        raise ctx.fail(str(exc))


def _manager(settings: FleetShipSettings) -> MinimalPackageManager:
    return MinimalPackageManager(
        PackageRegistry(settings.paths.registry_dir),
        prefix=settings.paths.package_prefix,
        root=settings.paths.install_root,
        platform=settings.overlay_platform(),
    )


@app.command("pkg-add")
def pkg_add_cmd(
    archive: Path = typer.Argument(..., exists=True, dir_okay=False, help="Signed package archive"),
) -> None:
    """Install one signed package with the minimal package manager."""

    ctx = get_context()
    ctx.configure_logging()
    try:
        trust = TrustPolicy.from_settings(ctx.settings)
        signature = read_signature(archive)
        result = _manager(ctx.settings).add(
            PackageArchive.read(archive),
            verify=lambda a: trust.verify_bytes(a.data, signature, label=str(archive)),
        )
    except FleetShipError as exc:
        raise ctx.fail(str(exc))
    ctx.console.print(f"{result.identity}: {result.outcome.value}")


@app.command("pkg-delete")
def pkg_delete_cmd(name: str = typer.Argument(..., help="Installed package name")) -> None:
    """Remove an installed package, keeping modified sample files."""

    ctx = get_context()
    ctx.configure_logging()
    manager = _manager(ctx.settings)
    try:
        entry = manager.registry.lookup(name)
        if entry is None:
            raise ctx.fail(f'Did not find matching package for "{name}".')
        manager.delete(entry.identity)
    except FleetShipError as exc:
        raise ctx.fail(str(exc))
    ctx.console.print(f"Deleted {entry.identity}")


@app.command("keygen")
def keygen_cmd(
    name: Optional[str] = typer.Argument(None, help="Key name (default: <domain>-<year>-pkg)"),
    key_dir: Optional[Path] = typer.Option(None, "--key-dir", help="Output directory"),
) -> None:
    """Generate a signing key pair."""

    ctx = get_context()
    try:
        name = name or ctx.settings.key_name()
        passphrase = typer.prompt(
            "passphrase", default="", show_default=False, hide_input=True, confirmation_prompt=True
        )
        public, secret = generate_keypair(
            key_dir or ctx.settings.paths.key_dir, name, passphrase or None
        )
    except FleetShipError as exc:
        raise ctx.fail(str(exc))
    ctx.console.print(f"Wrote {public} and {secret}")


@app.command("sign")
def sign_cmd(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
    prior_key: bool = typer.Option(False, "--prior-key", "-p", help="Sign with last year's key"),
) -> None:
    """Write a detached signature next to FILE."""

    ctx = get_context()
    settings = ctx.settings
    try:
        year = settings.key_year() - (1 if prior_key else 0)
        secret = SecretKey.load(
            settings.paths.key_dir / f"{settings.key_name(year)}.sec", _passphrase()
        )
        sig = sign_file(path, secret)
    except FleetShipError as exc:
        raise ctx.fail(str(exc))
    ctx.console.print(f"Wrote {sig}")


@app.command("verify")
def verify_cmd(path: Path = typer.Argument(..., exists=True, dir_okay=False)) -> None:
    """Check FILE against its ``.sig`` under the trust policy."""

    ctx = get_context()
    try:
        signer = TrustPolicy.from_settings(ctx.settings).verify_path(path)
    except FleetShipError as exc:
        raise ctx.fail(str(exc))
    ctx.console.print(f"Signature Verified ({signer}.pub)")


@app.command("version")
def version_cmd() -> None:
    """Show version information."""

    get_context().console.print(f"[bold]fleetship[/bold] version {_version()}")
