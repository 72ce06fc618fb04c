"""Runtime settings for distribution and install runs.

Settings are a single :class:`FleetShipSettings` model assembled from, in
increasing priority, built-in defaults, ``FLEETSHIP_*`` environment variables
(nested sections use ``__``, e.g. ``FLEETSHIP_TRANSPORT__RETRIES=5``) and an
optional YAML document passed to :func:`load_settings`.

Values that depend on the running host (the signing domain, the current key
year, the vendor key floor) are left unset by default and derived on demand
so that tests can pin them explicitly.
"""

from __future__ import annotations

import logging
import os
import platform
import re
import socket
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

__all__ = [
    "PathSettings",
    "KeySettings",
    "TransportSettings",
    "LockSettings",
    "DistributeSettings",
    "LoggingSettings",
    "FleetShipSettings",
    "load_raw_yaml",
    "load_settings",
    "LOG_DIR",
]

LOG_DIR = Path("/var/log/fleetship")


class PathSettings(BaseModel):
    """Filesystem locations used on both the source and destination hosts."""

    model_config = ConfigDict(validate_assignment=True)

    drop_dir: Path = Field(Path("/var/install"), description="Per-host drop directory root")
    package_pool: Path = Field(
        Path("/usr/ports/packages/amd64/all"), description="Directory of signed packages"
    )
    key_dir: Path = Field(Path("/etc/signify"), description="Trusted signing key directory")
    registry_dir: Path = Field(Path("/var/db/pkg"), description="Installed package registry")
    package_prefix: str = Field("/usr/local", description="Required @cwd of foreign packages")
    install_root: Path = Field(Path("/"), description="Filesystem root bundles extract into")
    audit_log: Path = Field(Path("/etc/CHANGELOG"), description="Append-only audit log")
    declarations: Path = Field(
        Path("/etc/distribute.yaml"), description="Artifact declaration document"
    )
    staging_dir: Optional[Path] = Field(None, description="Parent for temporary staging trees")
    pkg_add: Path = Field(Path("/usr/sbin/pkg_add"), description="Native package installer")

    @field_validator("package_prefix")
    @classmethod
    def validate_prefix(cls, value: str) -> str:
        if not value.startswith("/") or value.endswith("/"):
            raise ValueError("package_prefix must be absolute without a trailing slash")
        return value


class KeySettings(BaseModel):
    """Signing key naming and trust floors."""

    model_config = ConfigDict(validate_assignment=True)

    domain: Optional[str] = Field(None, description="Key domain (default: from hostname)")
    year: Optional[int] = Field(None, description="Current key year (default: this year)")
    domain_floor: Optional[int] = Field(None, description="Oldest accepted domain key year")
    vendor_family: str = Field("openbsd", description="Name prefix of vendor package keys")
    vendor_floor: Optional[int] = Field(
        None, description="Oldest accepted vendor key number (default: OS release - 1)"
    )
    accept_vendor_keys: bool = Field(True, description="Allow the vendor key family at all")

    @field_validator("vendor_family")
    @classmethod
    def validate_family(cls, value: str) -> str:
        if not re.fullmatch(r"[A-Za-z0-9][\w.-]*", value):
            raise ValueError(f"invalid key family name {value!r}")
        return value


class TransportSettings(BaseModel):
    """How staged files reach each destination host."""

    model_config = ConfigDict(validate_assignment=True)

    kind: Literal["rsync", "local"] = "rsync"
    rsync: str = Field("/usr/local/bin/rsync", description="rsync binary")
    v4_suffix: str = Field("-distribute", description="Host alias suffix for IPv4")
    v6_suffix: str = Field("-distributev6", description="Host alias suffix for IPv6")
    use_v6: bool = False
    timeout_s: float = Field(300.0, gt=0, description="Per-invocation timeout")
    retries: int = Field(3, ge=1, description="Attempts per host including the first")
    backoff_s: float = Field(1.0, ge=0, description="Exponential backoff base")
    local_root: Optional[Path] = Field(None, description="Target root for local transport")


class LockSettings(BaseModel):
    """Protection-group lock tooling on destination hosts."""

    model_config = ConfigDict(validate_assignment=True)

    syslock: Path = Path("/usr/local/bin/syslock")
    sysunlock: Path = Path("/usr/local/bin/sysunlock")
    sysctl: Path = Path("/usr/sbin/sysctl")
    default_groups: Tuple[str, ...] = ("etc", "local")


class DistributeSettings(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    max_workers: int = Field(1, ge=1, description="Hosts built, signed and shipped in parallel")


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(validate_assignment=True)

    level: str = Field("INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    max_log_size_mb: int = Field(10, gt=0, description="Maximum size of rotated log files")
    retention_days: int = Field(30, ge=1, description="Retention period for log files")
    directory: Optional[Path] = Field(None, description="Directory for JSON-lines logs")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, value: str) -> str:
        upper = str(value).upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {sorted(valid_levels)}, got '{value}'")
        return upper

    def level_int(self) -> int:
        return getattr(logging, self.level)


class FleetShipSettings(BaseSettings):
    """Top-level settings, overridable through ``FLEETSHIP_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FLEETSHIP_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    hostname: str = Field(default_factory=socket.gethostname)
    require_root: bool = True
    sample_platform: Optional[Literal["linux", "macos"]] = Field(
        None, description="Sample overlay prefix (default: from the running OS)"
    )
    paths: PathSettings = Field(default_factory=PathSettings)
    keys: KeySettings = Field(default_factory=KeySettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    locks: LockSettings = Field(default_factory=LockSettings)
    distribute: DistributeSettings = Field(default_factory=DistributeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def short_hostname(self) -> str:
        return self.hostname.split(".", 1)[0]

    def domain(self) -> str:
        """Return the key domain: configured, or the last two hostname labels."""

        if self.keys.domain:
            return self.keys.domain
        labels = [label for label in self.hostname.split(".") if label]
        if len(labels) < 2:
            raise ConfigError(
                f"Cannot derive a key domain from hostname {self.hostname!r}; "
                "set keys.domain or FLEETSHIP_KEYS__DOMAIN"
            )
        return ".".join(labels[-2:])

    def key_year(self) -> int:
        return self.keys.year if self.keys.year is not None else datetime.now().year

    def domain_floor(self) -> int:
        if self.keys.domain_floor is not None:
            return self.keys.domain_floor
        return self.key_year() - 1

    def vendor_floor(self) -> Optional[int]:
        """Return the oldest vendor key number accepted, or ``None`` to reject vendor keys."""

        if not self.keys.accept_vendor_keys:
            return None
        if self.keys.vendor_floor is not None:
            return self.keys.vendor_floor
        if platform.system() != "OpenBSD":
            return None
        match = re.match(r"^(\d+)\.(\d+)", platform.release())
        if not match:
            return None
        return int(match.group(1)) * 10 + int(match.group(2)) - 1

    def key_name(self, year: Optional[int] = None) -> str:
        """Return the key base name ``<domain>-<year>-pkg``."""

        return f"{self.domain()}-{year if year is not None else self.key_year()}-pkg"

    def overlay_platform(self) -> Optional[str]:
        if self.sample_platform is not None:
            return self.sample_platform
        system = platform.system()
        if system == "Linux":
            return "linux"
        if system == "Darwin":
            return "macos"
        return None

    def host_suffix(self, use_v6: Optional[bool] = None) -> str:
        v6 = self.transport.use_v6 if use_v6 is None else use_v6
        return self.transport.v6_suffix if v6 else self.transport.v4_suffix


def load_raw_yaml(config_path: Path) -> Mapping[str, object]:
    """Read a YAML document and return its top-level mapping."""

    path = Path(config_path).expanduser()
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file '{path}' contains invalid YAML") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Configuration file '{path}' must contain a mapping at the root")
    return data


def _format_validation_error(exc: ValidationError) -> str:
    lines = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        lines.append(f"{location or '<root>'}: {error.get('msg')}")
    return "\n".join(lines)


def load_settings(config_path: Optional[Path] = None, **overrides: Any) -> FleetShipSettings:
    """Build settings from the environment, an optional YAML file and keyword overrides.

    Raises:
        ConfigError: If the file is missing, unreadable or fails validation.
    """

    data: Dict[str, Any] = {}
    if config_path is not None:
        data.update(load_raw_yaml(config_path))
    elif os.environ.get("FLEETSHIP_CONFIG"):
        data.update(load_raw_yaml(Path(os.environ["FLEETSHIP_CONFIG"])))
    data.update(overrides)
    try:
        return FleetShipSettings(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings:\n{_format_validation_error(exc)}") from exc
