"""Shared fixtures: throwaway signing keys, settings rooted in ``tmp_path``, package builders."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from FleetShip.io.archive import sha256_base64
from FleetShip.settings import FleetShipSettings
from FleetShip.signify import SecretKey, generate_keypair, sign_file

DOMAIN = "example.org"
YEAR = 2026
PASSPHRASE = "correct horse"


@pytest.fixture
def key_dir(tmp_path: Path) -> Path:
    return tmp_path / "signify"


@pytest.fixture
def keys(key_dir: Path) -> Dict[str, SecretKey]:
    """Current, prior and stale domain keys plus two vendor keys."""

    loaded = {}
    for name, passphrase in (
        (f"{DOMAIN}-{YEAR}-pkg", PASSPHRASE),
        (f"{DOMAIN}-{YEAR - 1}-pkg", PASSPHRASE),
        (f"{DOMAIN}-{YEAR - 2}-pkg", None),
        ("openbsd-78-pkg", None),
        ("openbsd-76-pkg", None),
    ):
        _pub, sec = generate_keypair(key_dir, name, passphrase)
        loaded[name] = SecretKey.load(sec, passphrase)
    return loaded


@pytest.fixture
def settings(tmp_path: Path, key_dir: Path) -> FleetShipSettings:
    root = tmp_path / "root"
    root.mkdir()
    return FleetShipSettings(
        hostname=f"alpha.{DOMAIN}",
        require_root=False,
        sample_platform=None,
        paths={
            "drop_dir": tmp_path / "drop",
            "package_pool": tmp_path / "pool",
            "key_dir": key_dir,
            "registry_dir": tmp_path / "registry",
            "install_root": root,
            "audit_log": root / "etc" / "CHANGELOG",
            "declarations": tmp_path / "distribute.yaml",
            "staging_dir": None,
            "pkg_add": tmp_path / "no-pkg_add",
        },
        keys={"domain": DOMAIN, "year": YEAR, "vendor_floor": 77},
        transport={"kind": "local", "local_root": tmp_path / "remote"},
        locks={
            "syslock": tmp_path / "bin" / "syslock",
            "sysunlock": tmp_path / "bin" / "sysunlock",
            "sysctl": tmp_path / "bin" / "sysctl",
        },
        logging={"directory": tmp_path / "logs"},
    )


def _add_bytes(archive: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    archive.addfile(info, io.BytesIO(data))


def make_package_bytes(
    identity: str,
    files: Dict[str, bytes],
    *,
    samples: Optional[Dict[str, str]] = None,
    directories: Optional[List[str]] = None,
    cwd: str = "/usr/local",
    name: Optional[str] = None,
    arch: str = "*",
    description: str = "A test package\nIt installs a few files.\n",
    symlinks: Optional[Dict[str, str]] = None,
) -> bytes:
    """Build an in-memory package whose ``+CONTENTS`` lists ``files``.

    ``samples`` maps an archive path (which must also be in ``files``) to
    the absolute sample target; those files get ``@size``/``@sha`` lines.
    """

    samples = samples or {}
    lines = [
        "@comment $OpenBSD: PLIST,v 1.0 2026/01/01 $",
        f"@name {name or identity}",
        f"@arch {arch}",
        f"@cwd {cwd}",
    ]
    lines += list(directories or [])
    for path, data in files.items():
        lines.append(path)
        if path in samples:
            lines.append(f"@size {len(data)}")
            lines.append(f"@sha {sha256_base64(data)}")
            lines.append(f"@sample {samples[path]}")
    for path in symlinks or {}:
        lines.append(path)
    contents = ("\n".join(lines) + "\n").encode("utf-8")

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        _add_bytes(archive, "+CONTENTS", contents)
        _add_bytes(archive, "+DESC", description.encode("utf-8"))
        for path, data in files.items():
            _add_bytes(archive, path, data, 0o755 if path.startswith("bin/") else 0o644)
        for path, target in (symlinks or {}).items():
            info = tarfile.TarInfo(path)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            archive.addfile(info)
    return buffer.getvalue()


@pytest.fixture
def build_package() -> Callable[..., Path]:
    """Return ``build(directory, identity, files, signer=None, **kwargs) -> Path``."""

    def _build(
        directory: Path,
        identity: str,
        files: Dict[str, bytes],
        *,
        signer: Optional[SecretKey] = None,
        **kwargs,
    ) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{identity}.tgz"
        path.write_bytes(make_package_bytes(identity, files, **kwargs))
        if signer is not None:
            sign_file(path, signer)
        return path

    return _build


@pytest.fixture
def current_key(keys: Dict[str, SecretKey]) -> SecretKey:
    return keys[f"{DOMAIN}-{YEAR}-pkg"]


@pytest.fixture
def package_bytes() -> Callable[..., bytes]:
    return make_package_bytes
