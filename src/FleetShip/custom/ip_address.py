"""Coordinated external address change across several per-host files.

The operator picks which WAN link changed (when a second one is configured),
confirms the old address (pre-filled from DNS when an FQDN is configured) and
enters the new one.  Every ``file`` entry (comma separated, ``$HOST``
replaced with the target host) is copied to the matching ``dest`` entry in
staging with the old address replaced literally by the new one.  A staged
``pf.conf`` is made unreadable by group and other.  Choosing the secondary
link switches the transport to IPv6, since the primary address is the one
that no longer reaches the hosts.
"""

from __future__ import annotations

import ipaddress
import logging
import shutil
import socket
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from ..errors import ConfigError
from .base import OPTIONAL, REQUIRED, HandlerContext, validate_custom_vars

if TYPE_CHECKING:  # pragma: no cover
    from ..declarations import ArtifactDeclaration

__all__ = ["IpAddressHandler", "replace_in_file"]

logger = logging.getLogger("FleetShip.custom.ip_address")


def _is_ipv4(text: str) -> bool:
    try:
        ipaddress.IPv4Address(text)
    except ValueError:
        return False
    return True


def lookup_address(fqdn: str) -> Optional[str]:
    """Return the IPv4 address ``fqdn`` currently resolves to, if any."""

    try:
        infos = socket.getaddrinfo(fqdn, None, socket.AF_INET)
    except OSError as exc:
        logger.warning("cannot resolve %s: %s", fqdn, exc, extra={"stage": "custom"})
        return None
    return infos[-1][4][0] if infos else None


def replace_in_file(path: Path, old: str, new: str) -> int:
    """Replace every literal ``old`` with ``new`` in ``path``; return the count."""

    text = path.read_text(encoding="utf-8")
    count = text.count(old)
    if count:
        path.write_text(text.replace(old, new), encoding="utf-8")
    return count


class IpAddressHandler:
    NAME = "ip-address"
    VARS: Dict[str, str] = {
        "wan0": REQUIRED,
        "wan1": OPTIONAL,
        "wan0-host-fqdn": OPTIONAL,
        "wan1-host-fqdn": OPTIONAL,
        "ipv6-name": REQUIRED,
        "dns": REQUIRED,
    }

    def __init__(self, resolver=lookup_address) -> None:
        self._resolve = resolver

    def _choose_link(self, values: Dict[str, str], context: HandlerContext) -> bool:
        """Return ``True`` when the secondary link was chosen."""

        wan0 = values["wan0"]
        wan1 = values.get("wan1")
        if not wan1:
            return False
        while True:
            answer = context.prompt(f"{wan0} or {wan1}? ").strip().lower()
            if answer == wan0.lower():
                return False
            if answer == wan1.lower():
                return True

    def ask_addresses(self, values: Dict[str, str], context: HandlerContext) -> Tuple[str, str]:
        secondary = self._choose_link(values, context)
        context.echo(
            "Warning: Must manually update /etc/faild.conf and /etc/reportnew/reportnew.conf."
        )
        if secondary:
            context.echo("Distributing via v6 since v4 address doesn't have access.")
            context.echo(f"Warning: Must manually update DNS record via {values['dns']}.")
            context.use_v6 = True
            fqdn = values.get("wan1-host-fqdn")
        else:
            context.echo("Distributing via v4 (default) since v6 tunnel is down.")
            context.echo(f"Warning: Must manually update {values['ipv6-name']} tunnel.")
            context.echo("Warning: Must manually update firewall tunnel and policies.")
            context.use_v6 = False
            fqdn = values.get("wan0-host-fqdn")

        old = self._resolve(fqdn) if fqdn else None
        while True:
            answer = context.prompt(
                f"Old address: {old or 'null'} (return or enter correct): "
            ).strip()
            if _is_ipv4(answer):
                old = answer
                break
            if answer == "" and old:
                break
            context.echo(f'Invalid response "{answer}". Enter new IP or hit return.')

        while True:
            new = context.prompt("New IP Address: ").strip()
            if _is_ipv4(new):
                return old, new

    def stage(self, artifact: "ArtifactDeclaration", context: HandlerContext) -> None:
        validate_custom_vars(artifact.name, artifact.vars, self.VARS)
        sources: List[str] = [item.strip() for item in artifact.source.split(",")]
        dests: List[str] = [item.strip() for item in artifact.destination.split(",")]
        if len(sources) != len(dests):
            raise ConfigError(
                f"{artifact.name}: {len(sources)} file entries but {len(dests)} dest entries"
            )
        old, new = self.ask_addresses(dict(artifact.vars), context)

        for host in context.hosts:
            for source, dest in zip(sources, dests):
                source_path = Path(source.replace("$HOST", host))
                if not source_path.exists():
                    raise ConfigError(f"Source path missing: {source_path}")
                staged = context.stage(host, dest)
                shutil.copy2(source_path, staged)
                replaced = replace_in_file(staged, old, new)
                if staged.name == "pf.conf":
                    staged.chmod(staged.stat().st_mode & ~0o044)
                logger.debug(
                    "%s: %d replacements in %s",
                    host,
                    replaced,
                    dest,
                    extra={"stage": "custom", "host": host},
                )
