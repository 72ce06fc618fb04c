# === NAVMAP v1 ===
# {
#   "module": "FleetShip.versions",
#   "purpose": "Parse and order package version strings",
#   "sections": [
#     {"id": "grammars", "name": "Version Grammars", "anchor": "GRM", "kind": "constants"},
#     {"id": "version", "name": "Version", "anchor": "class-version", "kind": "class"},
#     {"id": "parse-version", "name": "parse_version", "anchor": "function-parse-version", "kind": "function"},
#     {"id": "compare-versions", "name": "compare_versions", "anchor": "function-compare-versions", "kind": "function"},
#     {"id": "split-package-name", "name": "split_package_name", "anchor": "function-split-package-name", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Version parsing and ordering for package file names.

Package archives carry versions in several shapes that the ports tree mixes
freely: plain dotted releases (``3.11.10p0``, ``9.20.8p0v3``, and
``1.0.20210914`` whose patch is a date), two-part releases with an alpha
tier letter (``1.4b``) and compact dates (``20250101``, ``20240612a``).
:func:`parse_version` recognises exactly those grammars and refuses anything
else, because silently misordering two strings could turn an upgrade into a
downgrade.

Ordering is field by field: major, minor and patch compare as numbers, then
the letter/epoch marker and the port revision compare as plain strings, so
``p10`` sorts before ``p9``.  An absent marker sorts lowest.  Versions parsed
under different grammars are not comparable and raise
:class:`VersionComparisonError`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .errors import VersionComparisonError, VersionParseError

__all__ = [
    "Grammar",
    "Version",
    "PackageName",
    "parse_version",
    "compare_versions",
    "is_newer",
    "split_package_name",
]


class Grammar(str, Enum):
    """Accepted textual version grammars, in the order they are tried."""

    DOTTED = "dotted"
    ALPHA = "alpha"
    DATE = "date"


# maj.min.pat(pN)(vN); a yyyymmdd patch parses here too.
_DOTTED = re.compile(r"^(\d+)\.(\d+)\.(\d+)(p\d+)?(v\d+)?$")
# maj.min(alpha)(pN)
_ALPHA = re.compile(r"^(\d+)\.(\d+)([a-o])?(p\d+)?$")
# yyyy[.]mmdd(alpha)(pN)(vN)
_DATE = re.compile(r"^(\d{4})\.?(\d{2})(\d{2})([a-o])?(p\d+)?(v\d+)?$")


def _marker_key(marker: Optional[str]) -> str:
    """Markers compare as strings; the empty string sorts below any marker."""

    return marker or ""


@dataclass(frozen=True)
class Version:
    """A parsed version string.

    ``epoch`` holds either the alpha tier letter or the ``vN`` marker, since
    the grammars never carry both. ``revision`` holds the ``pN`` marker.
    """

    text: str
    grammar: Grammar
    major: int
    minor: int
    patch: int = 0
    epoch: Optional[str] = None
    revision: Optional[str] = None

    def sort_key(self) -> Tuple[int, int, int, str, str]:
        return (
            self.major,
            self.minor,
            self.patch,
            _marker_key(self.epoch),
            _marker_key(self.revision),
        )

    def compare(self, other: "Version") -> int:
        """Return -1, 0 or 1 as ``self`` is older than, equal to, or newer than ``other``."""

        if self.grammar is not other.grammar:
            raise VersionComparisonError(
                f"Cannot compare version {self.text!r} ({self.grammar.value}) "
                f"with {other.text!r} ({other.grammar.value})"
            )
        mine = self.sort_key()
        theirs = other.sort_key()
        if mine < theirs:
            return -1
        if mine > theirs:
            return 1
        return 0

    def __lt__(self, other: "Version") -> bool:
        return self.compare(other) < 0

    def __le__(self, other: "Version") -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: "Version") -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: "Version") -> bool:
        return self.compare(other) >= 0

    def __str__(self) -> str:
        return self.text


def parse_version(text: str) -> Version:
    """Parse ``text`` under the first grammar that matches the whole string.

    Raises:
        VersionParseError: If no grammar matches, or a compact date carries
            both an alpha letter and a ``vN`` epoch.

    Examples:
        >>> parse_version("9.20.8p0v3").revision
        'p0'
        >>> parse_version("20250101").grammar.value
        'date'
    """

    candidate = text.strip()

    match = _DOTTED.match(candidate)
    if match:
        major, minor, patch, revision, epoch = match.groups()
        return Version(candidate, Grammar.DOTTED, int(major), int(minor), int(patch), epoch, revision)

    match = _ALPHA.match(candidate)
    if match:
        major, minor, letter, revision = match.groups()
        return Version(candidate, Grammar.ALPHA, int(major), int(minor), 0, letter, revision)

    match = _DATE.match(candidate)
    if match:
        year, month, day, letter, revision, epoch = match.groups()
        if letter and epoch:
            raise VersionParseError(
                f"Cannot parse version {text!r}: both an alpha patch and an epoch marker"
            )
        return Version(
            candidate, Grammar.DATE, int(year), int(month), int(day), letter or epoch, revision
        )

    raise VersionParseError(f"Cannot parse version {text!r}")


def compare_versions(left: str, right: str) -> int:
    """Parse and compare two version strings, returning -1, 0 or 1."""

    return parse_version(left).compare(parse_version(right))


def is_newer(candidate: str, baseline: str) -> bool:
    """Return ``True`` when ``candidate`` orders strictly after ``baseline``."""

    return compare_versions(candidate, baseline) > 0


@dataclass(frozen=True)
class PackageName:
    """Components of a package identity such as ``emacs-29.1p0-no_x11``."""

    stem: str
    version: str
    flavor: Optional[str] = None

    @property
    def identity(self) -> str:
        if self.flavor:
            return f"{self.stem}-{self.version}-{self.flavor}"
        return f"{self.stem}-{self.version}"

    def parsed_version(self) -> Version:
        return parse_version(self.version)


_PACKAGE_NAME = re.compile(r"^(?P<stem>.+?)-(?P<version>\d[\w.]*?)(?:-(?P<flavor>[A-Za-z_]\w*))?$")


def split_package_name(identity: str) -> PackageName:
    """Split ``identity`` (archive suffix optional) into stem, version and flavor.

    The version starts at the first ``-`` followed by a digit; a trailing
    ``-word`` after it is the flavor.

    Raises:
        VersionParseError: If ``identity`` has no version component.
    """

    name = identity[:-4] if identity.endswith(".tgz") else identity
    match = _PACKAGE_NAME.match(name)
    if not match:
        raise VersionParseError(f"Couldn't parse version from {identity!r}")
    return PackageName(match.group("stem"), match.group("version"), match.group("flavor"))
