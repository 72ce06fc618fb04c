"""Exception hierarchy shared across distribution, verification, and install.

FleetShip spans configuration parsing, version ordering, signature checks,
archive handling, and host-side package management.  This module groups the
failure modes into a small hierarchy so callers can react to high-level
categories (a bad declaration vs. an untrusted package) while still having
access to the specialised subclasses when finer-grained handling is required.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "FleetShipError",
    "ConfigError",
    "VersionParseError",
    "VersionComparisonError",
    "SigningError",
    "VerificationFailure",
    "ArchiveError",
    "ManifestError",
    "RegistryError",
    "PackageInstallError",
    "TransportError",
    "LockError",
]


class FleetShipError(RuntimeError):
    """Base exception for packaging, distribution, and install failures."""


class ConfigError(FleetShipError):
    """Raised when declarations, settings, or CLI inputs are invalid."""


class VersionParseError(FleetShipError):
    """Raised when a version string matches none of the accepted grammars."""


class VersionComparisonError(FleetShipError):
    """Raised when two versions parsed under different grammars are compared."""


class SigningError(FleetShipError):
    """Raised when a key cannot be loaded or a signature cannot be produced."""


class VerificationFailure(FleetShipError):
    """Raised when a signature is missing, invalid, or made by an untrusted key."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        signer: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.path = path
        self.signer = signer


class ArchiveError(FleetShipError):
    """Raised when an archive cannot be built, read, or safely extracted."""


class ManifestError(ArchiveError):
    """Raised when a package ``+CONTENTS`` manifest fails structural validation."""


class RegistryError(FleetShipError):
    """Raised when the installed-package registry cannot be read or written."""


class PackageInstallError(FleetShipError):
    """Raised when a package install or delete cannot be completed."""


class TransportError(FleetShipError):
    """Raised when shipping files to a destination host fails."""

    def __init__(self, message: str, *, host: Optional[str] = None) -> None:
        super().__init__(message)
        self.host = host


class LockError(FleetShipError):
    """Raised when protection groups cannot be unlocked in forced mode."""
