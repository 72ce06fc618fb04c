"""Gzip tar building and validated extraction.

Two extraction modes exist.  :func:`extract_bundle` unpacks a whole, already
verified host bundle beneath a root directory; :class:`PackageArchive` holds a
foreign package in memory so that the manifest can be read, the signature
checked over the very same bytes, and then only the members the manifest
names are written out.
"""

from __future__ import annotations

import base64
import hashlib
import io
import logging
import os
import posixpath
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Union

from ..errors import ArchiveError, ManifestError
from ..manifest import Manifest, parse_manifest

__all__ = [
    "sha256_base64",
    "build_archive",
    "extract_bundle",
    "PackageArchive",
]

logger = logging.getLogger("FleetShip.io")


def sha256_base64(source: Union[Path, bytes]) -> str:
    """Return the padded base64 SHA-256 digest used by ``@sha`` annotations."""

    hasher = hashlib.sha256()
    if isinstance(source, bytes):
        hasher.update(source)
    else:
        with source.open("rb") as stream:
            for chunk in iter(lambda: stream.read(1 << 20), b""):
                hasher.update(chunk)
    return base64.b64encode(hasher.digest()).decode("ascii")


def _validate_member_path(member_name: str) -> Path:
    """Validate archive member paths to prevent traversal attacks."""

    normalized = member_name.replace("\\", "/")
    relative = PurePosixPath(normalized)
    if relative.is_absolute():
        raise ArchiveError(f"Unsafe absolute path detected in archive: {member_name}")
    parts = [part for part in relative.parts if part != "."]
    if not parts:
        raise ArchiveError(f"Empty path detected in archive: {member_name}")
    if any(part in {"", ".."} for part in parts):
        raise ArchiveError(f"Unsafe path detected in archive: {member_name}")
    return Path(*parts)


def _apply_ownership(member: tarfile.TarInfo, target: Path) -> None:
    os.chmod(target, member.mode & 0o7777)
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        os.chown(target, member.uid, member.gid)


def build_archive(files: Iterable[Path], output: Path, root: Path) -> Path:
    """Write ``files`` into a new gzip tar at ``output`` with names relative to ``root``.

    File modes are preserved.  An existing ``output`` is never overwritten.

    Raises:
        ArchiveError: If ``output`` exists, a file is missing or lies outside ``root``.
    """

    root = Path(root)
    output = Path(output)
    if output.exists():
        raise ArchiveError(f"Error, {output} already exists")
    entries = []
    for file in files:
        path = Path(file)
        try:
            relative = path.relative_to(root)
        except ValueError as exc:
            raise ArchiveError(f"{path} is not under archive root {root}") from exc
        if not path.is_file():
            raise ArchiveError(f"File to archive can't be found: {path}")
        entries.append((path, relative.as_posix()))

    output.parent.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(output, mode="x:gz") as archive:
            for path, arcname in entries:
                archive.add(str(path), arcname=arcname, recursive=False)
    except FileExistsError as exc:
        raise ArchiveError(f"Error, {output} already exists") from exc
    except (OSError, tarfile.TarError) as exc:
        output.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to build archive {output}: {exc}") from exc
    return output


def _open(source: Union[Path, bytes]) -> tarfile.TarFile:
    if isinstance(source, bytes):
        return tarfile.open(fileobj=io.BytesIO(source), mode="r:*")
    return tarfile.open(source, mode="r:*")


def extract_bundle(source: Union[Path, bytes], destination: Path) -> List[Path]:
    """Extract every member of a trusted host bundle beneath ``destination``.

    Member names are still validated, and links and device nodes are refused
    before anything is written.  Returns the absolute paths written, in
    archive order.
    """

    destination = Path(destination)
    label = "<bundle>" if isinstance(source, bytes) else str(source)
    extracted: List[Path] = []
    try:
        with _open(source) as archive:
            members = []
            for member in archive.getmembers():
                member_path = _validate_member_path(member.name)
                if member.islnk() or member.issym():
                    raise ArchiveError(f"Unsafe link detected in archive: {member.name}")
                if member.isdev() or not (member.isfile() or member.isdir()):
                    raise ArchiveError(f"Unsupported member type in archive: {member.name}")
                members.append((member, member_path))
            for member, member_path in members:
                target = destination / member_path
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                stream = archive.extractfile(member)
                if stream is None:
                    raise ArchiveError(f"Failed to extract member: {member.name}")
                with stream as src, target.open("wb") as dst:
                    shutil.copyfileobj(src, dst)
                _apply_ownership(member, target)
                extracted.append(target)
    except tarfile.TarError as exc:
        raise ArchiveError(f"Failed to extract {label}: {exc}") from exc
    except OSError as exc:
        raise ArchiveError(f"Failed to extract {label}: {exc}") from exc
    logger.info(
        "extracted bundle",
        extra={"stage": "extract", "extra_fields": {"archive": label, "files": len(extracted)}},
    )
    return extracted


class PackageArchive:
    """A package archive held entirely in memory.

    The bytes are read once; every later check (manifest, signature,
    extraction) sees exactly the same content.
    """

    def __init__(self, data: bytes, name: str) -> None:
        self.data = data
        self.name = name
        self.stem = name[:-4] if name.endswith(".tgz") else name
        try:
            with _open(data) as archive:
                self._members: Dict[str, tarfile.TarInfo] = {}
                self._contents: Dict[str, bytes] = {}
                for member in archive.getmembers():
                    key = member.name[2:] if member.name.startswith("./") else member.name
                    self._members[key] = member
                    if member.isfile():
                        stream = archive.extractfile(member)
                        if stream is not None:
                            self._contents[key] = stream.read()
        except tarfile.TarError as exc:
            raise ArchiveError(f"Couldn't read tar file {name}: {exc}") from exc

    @classmethod
    def read(cls, path: Path) -> "PackageArchive":
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ArchiveError(f"Couldn't read tar file {path}: {exc}") from exc
        return cls(data, path.name)

    def has(self, member: str) -> bool:
        return member in self._members

    def names(self) -> List[str]:
        return list(self._members)

    def get_content(self, member: str) -> bytes:
        try:
            return self._contents[member]
        except KeyError as exc:
            raise ArchiveError(f"{member} not found as a regular file in {self.name}") from exc

    def manifest(self) -> Manifest:
        if "+CONTENTS" not in self._contents:
            raise ManifestError(f"No +CONTENTS file found in {self.name}")
        return parse_manifest(self._contents["+CONTENTS"].decode("utf-8", errors="replace"))

    def description(self) -> bytes:
        return self._contents.get("+DESC", b"")

    def check_members(self, paths: Iterable[str]) -> None:
        """Ensure every manifest file is present and extractable.

        Raises:
            ManifestError: For a listed file that is missing from the archive.
            ArchiveError: For hard links, devices, or symlinks escaping the prefix.
        """

        for path in paths:
            member = self._members.get(path)
            if member is None:
                raise ManifestError(f"{path} listed in +CONTENTS but missing from {self.name}")
            if member.issym():
                self._check_symlink(path, member.linkname)
            elif not member.isfile():
                raise ArchiveError(f"Unsupported member type for {path} in {self.name}")

    def _check_symlink(self, path: str, link: str) -> None:
        if link.startswith("/"):
            raise ArchiveError(f"Absolute symlink {path} -> {link} in {self.name}")
        resolved = posixpath.normpath(posixpath.join(posixpath.dirname(path), link))
        if resolved == ".." or resolved.startswith("../"):
            raise ArchiveError(f"Symlink {path} -> {link} escapes the prefix in {self.name}")

    def extract_member(self, path: str, target: Path) -> Path:
        """Write member ``path`` to ``target``, replacing what is there."""

        member = self._members.get(path)
        if member is None:
            raise ArchiveError(f"{path} not found in {self.name}")
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink() or (target.exists() and not target.is_dir()):
            target.unlink()
        if member.issym():
            self._check_symlink(path, member.linkname)
            os.symlink(member.linkname, target)
            return target
        target.write_bytes(self.get_content(path))
        _apply_ownership(member, target)
        return target
