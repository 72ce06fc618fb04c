"""Bundle build/extract and in-memory package archive checks."""

from __future__ import annotations

import io
import stat
import tarfile
from pathlib import Path

import pytest

from FleetShip.errors import ArchiveError, ManifestError
from FleetShip.io.archive import (
    PackageArchive,
    build_archive,
    extract_bundle,
    sha256_base64,
)


def _tree(root: Path) -> list[Path]:
    files = {
        "etc/pf.conf": (b"pass all\n", 0o600),
        "etc/ssh/sshd_config": (b"PermitRootLogin no\n", 0o644),
        "usr/local/bin/hook": (b"#!/bin/sh\n", 0o755),
    }
    paths = []
    for relative, (data, mode) in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        path.chmod(mode)
        paths.append(path)
    return paths


def test_build_then_extract_preserves_content_and_modes(tmp_path: Path) -> None:
    staging = tmp_path / "stage"
    files = _tree(staging)
    bundle = build_archive(files, tmp_path / "alpha-20260301-101500-package.tgz", staging)

    target = tmp_path / "root"
    extracted = extract_bundle(bundle, target)

    assert sorted(p.relative_to(target).as_posix() for p in extracted) == [
        "etc/pf.conf",
        "etc/ssh/sshd_config",
        "usr/local/bin/hook",
    ]
    for source in files:
        copy = target / source.relative_to(staging)
        assert copy.read_bytes() == source.read_bytes()
        assert stat.S_IMODE(copy.stat().st_mode) == stat.S_IMODE(source.stat().st_mode)


def test_build_refuses_existing_output(tmp_path: Path) -> None:
    staging = tmp_path / "stage"
    files = _tree(staging)
    output = tmp_path / "bundle.tgz"
    output.write_bytes(b"")
    with pytest.raises(ArchiveError, match="already exists"):
        build_archive(files, output, staging)


def test_build_refuses_files_outside_root(tmp_path: Path) -> None:
    outside = tmp_path / "outside.txt"
    outside.write_text("x")
    with pytest.raises(ArchiveError):
        build_archive([outside], tmp_path / "b.tgz", tmp_path / "stage")


def _raw_tar(members: list[tarfile.TarInfo], payloads: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for info in members:
            data = payloads.get(info.name)
            archive.addfile(info, io.BytesIO(data) if data is not None else None)
    return buffer.getvalue()


def test_extract_rejects_traversal(tmp_path: Path) -> None:
    info = tarfile.TarInfo("../escape")
    info.size = 1
    data = _raw_tar([info], {"../escape": b"x"})
    with pytest.raises(ArchiveError, match="Unsafe"):
        extract_bundle(data, tmp_path / "root")
    assert not (tmp_path / "escape").exists()


def test_extract_rejects_links(tmp_path: Path) -> None:
    link = tarfile.TarInfo("etc/passwd")
    link.type = tarfile.SYMTYPE
    link.linkname = "/tmp/evil"
    with pytest.raises(ArchiveError, match="link"):
        extract_bundle(_raw_tar([link], {}), tmp_path / "root")


def test_digests(tmp_path: Path) -> None:
    path = tmp_path / "f"
    path.write_bytes(b"abc")
    assert sha256_base64(path) == sha256_base64(b"abc") == "ungWv48Bz+pBQUDeXa4iI7ADYaOWF3qctBD/YfIAFa0="


def test_package_archive_reads_manifest(package_bytes) -> None:
    archive = PackageArchive(package_bytes("tool-1.0", {"bin/tool": b"x"}), "tool-1.0.tgz")

    assert archive.stem == "tool-1.0"
    assert archive.manifest().name == "tool-1.0"
    assert archive.description().startswith(b"A test package")
    archive.check_members(["bin/tool"])


def test_check_members_reports_missing_file(package_bytes) -> None:
    archive = PackageArchive(package_bytes("tool-1.0", {"bin/tool": b"x"}), "tool-1.0.tgz")
    with pytest.raises(ManifestError, match="missing"):
        archive.check_members(["bin/tool", "bin/other"])


def test_check_members_rejects_escaping_symlink(package_bytes) -> None:
    data = package_bytes("tool-1.0", {"bin/tool": b"x"}, symlinks={"bin/bad": "../../etc/passwd"})
    archive = PackageArchive(data, "tool-1.0.tgz")
    with pytest.raises(ArchiveError, match="escapes"):
        archive.check_members(["bin/tool", "bin/bad"])


def test_archive_without_contents(tmp_path: Path) -> None:
    info = tarfile.TarInfo("bin/tool")
    info.size = 1
    archive = PackageArchive(_raw_tar([info], {"bin/tool": b"x"}), "tool-1.0.tgz")
    with pytest.raises(ManifestError, match=r"\+CONTENTS"):
        archive.manifest()


def test_garbage_is_an_archive_error() -> None:
    with pytest.raises(ArchiveError):
        PackageArchive(b"not a tarball", "junk-1.0.tgz")
