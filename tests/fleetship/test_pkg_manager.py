"""Minimal package manager: install, upgrade, no-op outcomes, samples, delete."""

from __future__ import annotations

from pathlib import Path

import pytest

from FleetShip.errors import ManifestError, PackageInstallError, VerificationFailure
from FleetShip.io.archive import PackageArchive
from FleetShip.pkg_manager import InstallOutcome, MinimalPackageManager
from FleetShip.registry import PackageRegistry

SAMPLE = "share/examples/tool/tool.conf"


@pytest.fixture
def manager(tmp_path: Path) -> MinimalPackageManager:
    root = tmp_path / "root"
    root.mkdir()
    return MinimalPackageManager(PackageRegistry(tmp_path / "db"), root=root)


@pytest.fixture
def make(package_bytes):
    def _make(version: str, conf: bytes = b"default = 1\n", **kwargs) -> PackageArchive:
        identity = kwargs.pop("identity", f"tool-{version}")
        files = kwargs.pop(
            "files", {"bin/tool": f"tool {version}".encode(), SAMPLE: conf}
        )
        data = package_bytes(
            identity,
            files,
            directories=["bin/", "share/examples/tool/"],
            samples={SAMPLE: "/etc/tool.conf"} if SAMPLE in files else None,
            **kwargs,
        )
        return PackageArchive(data, f"{identity}.tgz")

    return _make


def test_fresh_install(manager: MinimalPackageManager, make) -> None:
    result = manager.add(make("1.0"))

    assert result.outcome is InstallOutcome.INSTALLED
    assert result.registered
    assert (manager.prefix_dir / "bin/tool").read_bytes() == b"tool 1.0"
    assert (manager.root / "etc/tool.conf").read_bytes() == b"default = 1\n"
    assert manager.registry.is_registered("tool-1.0")


def test_same_version_is_a_no_op(manager, make) -> None:
    manager.add(make("1.0"))
    entry = manager.registry.entry("tool-1.0").path
    before = {name: (entry / name).read_bytes() for name in ("+CONTENTS", "+DESC")}
    (manager.prefix_dir / "bin/tool").write_bytes(b"local patch")

    result = manager.add(make("1.0"))

    assert result.outcome is InstallOutcome.ALREADY_SAME
    assert not result.outcome.changed
    assert (manager.prefix_dir / "bin/tool").read_bytes() == b"local patch"
    assert {name: (entry / name).read_bytes() for name in before} == before
    assert sorted(p.name for p in entry.iterdir()) == ["+CONTENTS", "+DESC"]


def test_downgrade_refused(manager, make) -> None:
    manager.add(make("2.0"))

    result = manager.add(make("1.0"))

    assert result.outcome is InstallOutcome.ALREADY_NEWER
    assert result.previous == "tool-2.0"
    assert (manager.prefix_dir / "bin/tool").read_bytes() == b"tool 2.0"
    assert not manager.registry.is_registered("tool-1.0")


def test_upgrade_replaces_and_keeps_edited_sample(manager, make) -> None:
    manager.add(make("1.0"))
    conf = manager.root / "etc/tool.conf"
    conf.write_bytes(b"edited = yes\n")

    result = manager.add(make("2.0", conf=b"default = 2\n"))

    assert result.outcome is InstallOutcome.UPGRADED
    assert result.previous == "tool-1.0"
    assert (manager.prefix_dir / "bin/tool").read_bytes() == b"tool 2.0"
    assert conf.read_bytes() == b"edited = yes\n"
    assert not manager.registry.is_registered("tool-1.0")
    assert manager.registry.is_registered("tool-2.0")


def test_upgrade_refreshes_untouched_sample(manager, make) -> None:
    manager.add(make("1.0"))
    manager.add(make("2.0", conf=b"default = 2\n"))
    assert (manager.root / "etc/tool.conf").read_bytes() == b"default = 2\n"


def test_delete_removes_files_dirs_and_registration(manager, make) -> None:
    manager.add(make("1.0"))

    manager.delete("tool-1.0")

    assert not (manager.prefix_dir / "bin/tool").exists()
    assert not (manager.prefix_dir / "bin").exists()
    assert not (manager.root / "etc/tool.conf").exists()
    assert not manager.registry.is_registered("tool-1.0")


def test_delete_keeps_edited_sample(manager, make) -> None:
    manager.add(make("1.0"))
    conf = manager.root / "etc/tool.conf"
    conf.write_bytes(b"mine\n")

    manager.delete("tool-1.0")

    assert conf.read_bytes() == b"mine\n"


def test_delete_unknown_package(manager) -> None:
    with pytest.raises(PackageInstallError, match="not installed"):
        manager.delete("tool-9.9")


def test_wrong_cwd_rejected_before_writing(manager, make) -> None:
    with pytest.raises(ManifestError, match="@cwd /usr/local"):
        manager.add(make("1.0", cwd="/opt/local"))
    assert not (manager.root / "opt").exists()
    assert not manager.registry.is_registered("tool-1.0")


def test_name_mismatch_rejected(manager, make) -> None:
    with pytest.raises(ManifestError, match="@name"):
        manager.add(make("1.0", name="tool-1.1"))


def test_failed_verification_writes_nothing(manager, make) -> None:
    def reject(_archive):
        raise VerificationFailure("bad signature")

    with pytest.raises(VerificationFailure):
        manager.add(make("1.0"), verify=reject)
    assert not (manager.prefix_dir / "bin/tool").exists()


def test_verify_sees_exact_bytes(manager, make) -> None:
    archive = make("1.0")
    seen = []
    manager.add(archive, verify=lambda a: seen.append(a.data))
    assert seen == [archive.data]


def test_flavor_mismatch_refused(manager, make) -> None:
    manager.add(make("1.0", identity="tool-1.0-no_x11"))
    with pytest.raises(PackageInstallError, match="flavor"):
        manager.add(make("2.0"))


def test_platform_overlay_sample(tmp_path: Path, package_bytes) -> None:
    root = tmp_path / "root"
    manager = MinimalPackageManager(PackageRegistry(tmp_path / "db"), root=root, platform="linux")
    overlay = "share/examples/tool/linux.tool.conf"
    data = package_bytes(
        "tool-1.0",
        {"bin/tool": b"t", SAMPLE: b"generic\n", overlay: b"linux\n"},
        samples={SAMPLE: "/etc/tool.conf"},
    )

    manager.add(PackageArchive(data, "tool-1.0.tgz"))

    assert (root / "etc/tool.conf").read_bytes() == b"linux\n"


def _with_sample_directory(package_bytes, conf: bytes = b"default = 1\n") -> PackageArchive:
    data = package_bytes(
        "tool-1.0",
        {"bin/tool": b"t", SAMPLE: conf},
        directories=["bin/", "share/examples/tool/", "@sample /etc/tool/"],
        samples={SAMPLE: "/etc/tool/tool.conf"},
    )
    return PackageArchive(data, "tool-1.0.tgz")


def test_sample_directory_created_and_removed(manager, package_bytes) -> None:
    manager.add(_with_sample_directory(package_bytes))

    assert (manager.root / "etc/tool").is_dir()
    assert (manager.root / "etc/tool/tool.conf").read_bytes() == b"default = 1\n"

    removed = manager.delete("tool-1.0")

    assert manager.root / "etc/tool" in removed
    assert not (manager.root / "etc/tool").exists()


def test_sample_directory_kept_while_it_holds_edits(manager, package_bytes) -> None:
    manager.add(_with_sample_directory(package_bytes))
    conf = manager.root / "etc/tool/tool.conf"
    conf.write_bytes(b"mine\n")

    manager.delete("tool-1.0")

    assert conf.read_bytes() == b"mine\n"
    assert not manager.registry.is_registered("tool-1.0")
