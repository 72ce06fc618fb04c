"""Parser and structural validator for package ``+CONTENTS`` manifests.

Only the subset of the packing-list format that the minimal package manager
acts on is understood:

* ``@comment $OpenBSD: PLIST...`` header, ``@name``, ``@arch``, ``@cwd``;
* bare lines (and ``@bin``/``@man``/``@file`` lines) naming files relative to
  ``@cwd``; bare lines ending in ``/`` name directories;
* ``@sample <absolute path>`` after a file, copying that file to the path on
  first install only; ``@sample <dir>/`` creates a directory;
* ``@size``, ``@sha`` and ``@ts`` annotating the preceding file.

Other directives are ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from .errors import ManifestError

__all__ = ["FileRecord", "SampleEntry", "Manifest", "parse_manifest"]

_PLIST_HEADER = re.compile(r"^@comment .OpenBSD: PLIST", re.MULTILINE)
_FILE_DIRECTIVES = ("@bin ", "@man ", "@file ")


@dataclass
class FileRecord:
    path: str
    size: Optional[int] = None
    sha: Optional[str] = None
    ts: Optional[str] = None


@dataclass(frozen=True)
class SampleEntry:
    """A first-install-only copy of ``source`` (archive path) to ``target`` (absolute)."""

    source: str
    target: str


@dataclass
class Manifest:
    text: str
    name: Optional[str] = None
    arch: Optional[str] = None
    cwds: List[str] = field(default_factory=list)
    has_plist_header: bool = False
    directories: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    samples: List[SampleEntry] = field(default_factory=list)
    sample_directories: List[str] = field(default_factory=list)
    records: Dict[str, FileRecord] = field(default_factory=dict)

    @property
    def cwd(self) -> Optional[str]:
        return self.cwds[0] if self.cwds else None

    def record_for(self, path: str) -> Optional[FileRecord]:
        return self.records.get(path)

    def validate(self, stem: str, prefix: str) -> None:
        """Check the structural markers required before anything is extracted.

        Args:
            stem: Archive file name without ``.tgz``; must equal ``@name``.
            prefix: Required ``@cwd`` value.

        Raises:
            ManifestError: Naming the first missing or mismatched marker.
        """

        if not self.has_plist_header:
            raise ManifestError(f'No "@comment" PLIST header found in +CONTENTS for {stem}')
        if self.name != stem:
            raise ManifestError(f'No "@name {stem}" found in +CONTENTS for {stem}')
        if self.arch != "*":
            raise ManifestError(f'No "@arch *" found in +CONTENTS for {stem}')
        if not self.cwds or any(cwd != prefix for cwd in self.cwds):
            raise ManifestError(f'No "@cwd {prefix}" found in +CONTENTS for {stem}')
        for entry in self.files + self.directories:
            _check_relative(entry)
        targets = [sample.target for sample in self.samples] + self.sample_directories
        for target in targets:
            if not target.startswith("/") or ".." in PurePosixPath(target).parts:
                raise ManifestError(f"Sample target must be an absolute path: {target}")


def _check_relative(entry: str) -> None:
    path = PurePosixPath(entry)
    if path.is_absolute() or ".." in path.parts or not entry.strip("/"):
        raise ManifestError(f"Unsafe manifest path: {entry!r}")


def parse_manifest(text: str) -> Manifest:
    """Parse manifest ``text`` into a :class:`Manifest`.

    Raises:
        ManifestError: When a ``@sample`` or annotation has no preceding file.
    """

    manifest = Manifest(text=text, has_plist_header=bool(_PLIST_HEADER.search(text)))
    last_file: Optional[str] = None

    for raw in text.splitlines():
        line = raw.rstrip("\r")
        if not line:
            continue
        if line.startswith(_FILE_DIRECTIVES):
            line = line.split(" ", 1)[1]
        if not line.startswith(("@", "+")):
            if line.endswith("/"):
                manifest.directories.append(line)
            else:
                manifest.files.append(line)
                manifest.records[line] = FileRecord(line)
                last_file = line
            continue

        directive, _, value = line.partition(" ")
        if directive == "@name":
            manifest.name = value
        elif directive == "@arch":
            manifest.arch = value
        elif directive == "@cwd":
            manifest.cwds.append(value)
        elif directive == "@sample":
            if value.endswith("/"):
                manifest.sample_directories.append(value)
            elif last_file is None:
                raise ManifestError(f"@sample {value} has no preceding file")
            else:
                manifest.samples.append(SampleEntry(last_file, value))
        elif directive in ("@size", "@sha", "@ts"):
            if last_file is None:
                raise ManifestError(f"{directive} has no preceding file")
            record = manifest.records[last_file]
            if directive == "@size":
                try:
                    record.size = int(value)
                except ValueError as exc:
                    raise ManifestError(f"Invalid @size for {last_file}: {value!r}") from exc
            elif directive == "@sha":
                record.sha = value
            else:
                record.ts = value
    return manifest
