"""Interfaces shared by custom artifact handlers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Mapping, Optional, Protocol

from ..errors import ConfigError

if TYPE_CHECKING:  # pragma: no cover
    from ..declarations import ArtifactDeclaration
    from ..settings import FleetShipSettings

__all__ = ["REQUIRED", "OPTIONAL", "HandlerContext", "CustomHandler", "validate_custom_vars"]

REQUIRED = "required"
OPTIONAL = "optional"


@dataclass
class HandlerContext:
    """What a handler may touch while staging files.

    ``stage(host, dest)`` returns the staging path for absolute destination
    ``dest`` on ``host`` (parent directories created) and records it for that
    host's bundle.  Handlers that need a particular transport address family
    set ``use_v6``.
    """

    hosts: List[str]
    settings: "FleetShipSettings"
    stage: Callable[[str, str], Path]
    prompt: Callable[[str], str]
    echo: Callable[[str], None]
    use_v6: Optional[bool] = None


class CustomHandler(Protocol):
    """A named generator that deposits per-host files into staging."""

    NAME: str
    VARS: Mapping[str, str]

    def stage(self, artifact: "ArtifactDeclaration", context: HandlerContext) -> None:  # pragma: no cover
        """Write this artifact's files for every host in ``context.hosts``."""


def validate_custom_vars(name: str, values: Mapping[str, str], table: Mapping[str, str]) -> None:
    """Check ``values`` against a handler's required/optional table.

    Raises:
        ConfigError: Listing missing required and undeclared variables.
    """

    problems = [
        f'Config is missing required custom variable "{var}" for {name}'
        for var, kind in table.items()
        if kind == REQUIRED and var not in values
    ]
    problems += [
        f'Config specifies undefined custom variable "{var}" for {name}'
        for var in values
        if var not in table
    ]
    if problems:
        raise ConfigError("\n".join(problems))
