"""Per-host ``doas.conf`` generated from a commented template.

The template is a doas.conf whose rules are commented out.  A
``# hosts:`` line opens a section for ``all``, ``none``, a space-separated
host list, or ``all except <hosts>``.  Inside a section that matches the
target host, commented ``permit``/``deny`` lines (and their ``\\``
continuation lines) are uncommented; everything else is copied as is.
Sections that do not match are dropped.
"""

from __future__ import annotations

import getpass
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import ConfigError
from .base import OPTIONAL, HandlerContext, validate_custom_vars

if TYPE_CHECKING:  # pragma: no cover
    from ..declarations import ArtifactDeclaration

__all__ = ["DoasConfHandler", "render_doas_conf"]

logger = logging.getLogger("FleetShip.custom.doas")

_HOSTS = re.compile(r"^\s*#\s*hosts:\s*(.*)$")
_RULE = re.compile(r"^\s*#\s*(deny|permit)(.*)$")
_COMMENTED = re.compile(r"^\s*#(.*)$")
_ALL_EXCEPT = re.compile(r"^all except\s*(.*)$")

DEFAULT_DEST = "/etc/doas.conf"


def render_doas_conf(template: str, host: str, *, user: str, date: str) -> str:
    """Render ``template`` for ``host``."""

    out: List[str] = [f"# doas.conf for {host} created with gendoas by user {user} on {date}.\n"]
    host_match = True
    continuation = False
    for line in template.splitlines(keepends=True):
        body = line.rstrip("\n")
        hosts = _HOSTS.match(body)
        rule = _RULE.match(body)
        if hosts:
            host_list = hosts.group(1).strip()
            if host_list == "none":
                host_match = False
                continue
            if host_list == "all":
                host_match = True
            else:
                excepted = _ALL_EXCEPT.match(host_list)
                names = (excepted.group(1) if excepted else host_list).split()
                host_match = (host in names) != bool(excepted)
            if host_match:
                out.append(line)
        elif rule:
            if host_match:
                out.append(f"{rule.group(1)}{rule.group(2)}\n")
            continuation = rule.group(2).endswith("\\")
        elif continuation:
            continuation = body.endswith("\\")
            if host_match:
                commented = _COMMENTED.match(body)
                out.append(f"{commented.group(1)}\n" if commented else line)
        elif host_match:
            out.append(line)
    return "".join(out)


class DoasConfHandler:
    NAME = "doas.conf"
    VARS: Dict[str, str] = {"user": OPTIONAL}

    def __init__(self, now: Optional[datetime] = None) -> None:
        self._now = now

    def stage(self, artifact: "ArtifactDeclaration", context: HandlerContext) -> None:
        validate_custom_vars(artifact.name, artifact.vars, self.VARS)
        template_path = Path(artifact.source)
        try:
            template = template_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot open template {template_path}: {exc}") from exc
        user = artifact.vars.get("user") or getpass.getuser()
        date = (self._now or datetime.now()).strftime("%a %b %d %H:%M:%S %Y")
        dest = artifact.dest or DEFAULT_DEST
        for host in context.hosts:
            staged = context.stage(host, dest)
            staged.write_text(render_doas_conf(template, host, user=user, date=date), encoding="utf-8")
            staged.chmod(0o600)
            logger.debug("generated %s for %s", dest, host, extra={"stage": "custom", "host": host})
