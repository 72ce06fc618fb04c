"""Artifact declarations: which files go to which hosts, and how.

Declarations are a YAML document::

    host-list: [alpha, beta, gamma]
    protection-groups: [etc, local]
    macros:
      SSH: /home/_rsyncu/.ssh
    artifacts:
      - name: pf.conf
        file: /etc/pf.conf
        type: plain
        hosts: all
        groups: [etc]
      - name: signify-key
        file: "%%SIGNIFY_PUB_KEY%%"
        type: plain
        hosts: [alpha]
        groups: [etc]
      - name: rsync
        file: rsync
        type: package
        hosts: alpha, beta

``%%NAME%%`` macros are expanded in string values from the ``macros`` section
and the built-ins ``SIGNIFY_PUB_KEY``, ``SIGNIFY_PUB_KEY_NEXT`` and
``DOMAIN``.  All rule violations are collected and reported together as one
:class:`ConfigError`.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .settings import FleetShipSettings, load_raw_yaml

__all__ = [
    "ALL_HOSTS",
    "ArtifactKind",
    "ArtifactDeclaration",
    "DeclarationSet",
    "builtin_macros",
    "parse_declarations",
    "load_declarations",
]

ALL_HOSTS = "all"
_MACRO = re.compile(r"%%([A-Za-z0-9_-]+)%%")


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item for item in re.split(r",\s*", value.strip()) if item]
    return value


class ArtifactKind(str, Enum):
    PLAIN = "plain"
    PACKAGE = "package"
    CUSTOM = "custom"


class ArtifactDeclaration(BaseModel):
    """One named artifact."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    name: str
    source: str = Field(alias="file")
    dest: Optional[str] = None
    kind: ArtifactKind = Field(alias="type")
    hosts: List[str]
    groups: List[str] = Field(default_factory=list)
    vars: Dict[str, str] = Field(default_factory=dict)
    flavor: Optional[str] = None

    @field_validator("hosts", "groups", mode="before")
    @classmethod
    def split_lists(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("vars", mode="before")
    @classmethod
    def stringify_vars(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {str(key): str(item) for key, item in value.items()}
        return value

    @property
    def destination(self) -> str:
        return self.dest or self.source

    def target_hosts(self, all_hosts: List[str]) -> List[str]:
        """Expand ``all`` to every configured host, keeping declaration order."""

        if ALL_HOSTS in self.hosts:
            return list(all_hosts)
        return list(self.hosts)


class DeclarationSet(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    host_list: List[str] = Field(alias="host-list", min_length=1)
    protection_groups: List[str] = Field(default_factory=list, alias="protection-groups")
    macros: Dict[str, str] = Field(default_factory=dict)
    artifacts: List[ArtifactDeclaration] = Field(default_factory=list)

    @field_validator("host_list", "protection_groups", mode="before")
    @classmethod
    def split_lists(cls, value: Any) -> Any:
        return _split_csv(value)

    def names(self) -> List[str]:
        return [artifact.name for artifact in self.artifacts]

    def get(self, name: str) -> ArtifactDeclaration:
        for artifact in self.artifacts:
            if artifact.name == name:
                return artifact
        raise ConfigError(f"Unknown file. {name}")

    def select(self, names: List[str]) -> List[ArtifactDeclaration]:
        unknown = [name for name in names if name not in self.names()]
        if unknown:
            raise ConfigError("\n".join(f"Unknown file. {name}" for name in unknown))
        return [self.get(name) for name in names]

    def problems(self) -> List[str]:
        """Return every rule violation, one message per problem."""

        found: List[str] = []
        seen: set[str] = set()
        known_hosts = set(self.host_list)
        known_groups = set(self.protection_groups)
        for artifact in self.artifacts:
            label = f'"{artifact.name}"'
            if artifact.name in seen:
                found.append(f"A second artifact named {label}")
            seen.add(artifact.name)
            if not artifact.hosts:
                found.append(f"No hosts defined for {label}")
            for host in artifact.hosts:
                if host != ALL_HOSTS and host not in known_hosts:
                    found.append(f'Unknown host "{host}" in hosts of {label}')
            if artifact.kind is ArtifactKind.PACKAGE:
                if artifact.dest is not None:
                    found.append(f"A dest field is not permitted for package {label}")
            elif artifact.flavor is not None:
                found.append(f"A flavor is only permitted for packages, not {label}")
            if artifact.groups and not known_groups:
                found.append(f"Groups used by {label} with no protection-groups defined")
            for group in artifact.groups:
                if known_groups and group not in known_groups:
                    found.append(f'Unknown protection group "{group}" for {label}')
            if (
                known_groups
                and not artifact.groups
                and artifact.kind is not ArtifactKind.PACKAGE
            ):
                found.append(f"No groups defined for {label}")
            if artifact.vars and artifact.kind is not ArtifactKind.CUSTOM:
                found.append(f"vars found for non-custom {label}")
        return found


def builtin_macros(settings: FleetShipSettings) -> Dict[str, str]:
    """Return the macros every declaration document may use."""

    key_dir = settings.paths.key_dir
    year = settings.key_year()
    return {
        "SIGNIFY_PUB_KEY": str(key_dir / f"{settings.key_name(year)}.pub"),
        "SIGNIFY_PUB_KEY_NEXT": str(key_dir / f"{settings.key_name(year + 1)}.pub"),
        "DOMAIN": settings.domain(),
    }


def _expand(value: Any, macros: Mapping[str, str], where: str, problems: List[str]) -> Any:
    if isinstance(value, str):

        def _replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name not in macros:
                problems.append(f"Undefined macro %%{name}%% in {where}")
                return match.group(0)
            return macros[name]

        return _MACRO.sub(_replace, value)
    if isinstance(value, list):
        return [_expand(item, macros, where, problems) for item in value]
    if isinstance(value, Mapping):
        return {key: _expand(item, macros, where, problems) for key, item in value.items()}
    return value


def parse_declarations(
    data: Mapping[str, Any], builtins: Optional[Mapping[str, str]] = None
) -> DeclarationSet:
    """Validate a raw declaration mapping.

    Raises:
        ConfigError: With one line per problem found.
    """

    problems: List[str] = []
    raw_macros = data.get("macros") or {}
    if not isinstance(raw_macros, Mapping):
        raise ConfigError("macros must be a mapping")
    macros: Dict[str, str] = dict(builtins or {})
    macros.update({str(key): str(value) for key, value in raw_macros.items()})

    raw = dict(data)
    artifacts = raw.get("artifacts") or []
    if not isinstance(artifacts, list):
        raise ConfigError("artifacts must be a list")
    expanded = []
    for index, artifact in enumerate(artifacts):
        where = f"artifact #{index + 1}"
        if isinstance(artifact, Mapping) and "name" in artifact:
            where = f'artifact "{artifact["name"]}"'
        expanded.append(_expand(artifact, macros, where, problems))
    raw["artifacts"] = expanded

    try:
        declarations = DeclarationSet.model_validate(raw)
    except ValidationError as exc:
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()))
            problems.append(f"{location or '<root>'}: {error.get('msg')}")
        raise ConfigError("\n".join(problems)) from exc

    problems.extend(declarations.problems())
    if problems:
        raise ConfigError("\n".join(problems))
    return declarations


def load_declarations(
    path: Path, builtins: Optional[Mapping[str, str]] = None
) -> DeclarationSet:
    """Read and validate the declaration document at ``path``."""

    return parse_declarations(load_raw_yaml(path), builtins)
