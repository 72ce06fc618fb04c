"""Distribution runs end to end through the local transport."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest
import yaml

from FleetShip.declarations import load_declarations, parse_declarations
from FleetShip.distribute import Distributor, HostPlan, bundle_name
from FleetShip.errors import ConfigError, SigningError, TransportError, VerificationFailure
from FleetShip.io.archive import PackageArchive
from FleetShip.signify import Signature
from FleetShip.transport import LocalTransport

from .conftest import DOMAIN, PASSPHRASE, YEAR

NOW = datetime(2026, 3, 1, 10, 15, 0)
BUNDLE = "alpha-20260301-101500-package.tgz"


@pytest.fixture
def scenario(settings, tmp_path: Path, keys, build_package):
    """Artifacts A (plain, alpha) and B (package, alpha+beta) with B-1.0 and B-2.0 in the pool."""

    source = tmp_path / "src" / "motd"
    source.parent.mkdir(parents=True)
    source.write_text("welcome\n")
    source.chmod(0o640)

    signer = keys[f"{DOMAIN}-{YEAR}-pkg"]
    for version in ("1.0", "2.0"):
        build_package(
            settings.paths.package_pool,
            f"B-{version}",
            {"bin/b": f"b {version}\n".encode()},
            directories=["bin/"],
            signer=signer,
        )

    declarations_path = settings.paths.declarations
    declarations_path.write_text(
        yaml.safe_dump(
            {
                "host-list": ["alpha", "beta"],
                "protection-groups": ["etc", "local", "ssh"],
                "artifacts": [
                    {
                        "name": "A",
                        "file": str(source),
                        "dest": "/etc/motd",
                        "type": "plain",
                        "hosts": "alpha",
                        "groups": "ssh",
                    },
                    {"name": "B", "file": "B", "type": "package", "hosts": "alpha, beta"},
                ],
            }
        )
    )
    return load_declarations(declarations_path)


def _distributor(settings, declarations, **kwargs) -> Distributor:
    kwargs.setdefault("passphrase", lambda: PASSPHRASE)
    kwargs.setdefault("now", NOW)
    return Distributor(settings, declarations, **kwargs)


def _remote(tmp_path: Path, host: str) -> list[str]:
    directory = tmp_path / "remote" / host
    return sorted(p.name for p in directory.iterdir()) if directory.exists() else []


def test_end_to_end_selection_and_shipping(settings, scenario, tmp_path: Path) -> None:
    report = _distributor(settings, scenario).run(["A", "B"])

    assert report.ok
    assert _remote(tmp_path, "alpha") == sorted(
        [
            BUNDLE,
            f"{BUNDLE}.sig",
            f"{BUNDLE}.grp",
            f"{BUNDLE}.grp.sig",
            "B-2.0.tgz",
            "B-2.0.tgz.sig",
        ]
    )
    assert _remote(tmp_path, "beta") == ["B-2.0.tgz", "B-2.0.tgz.sig"]

    alpha = tmp_path / "remote" / "alpha"
    assert (alpha / f"{BUNDLE}.grp").read_text() == "ssh\n"
    shipped = PackageArchive.read(alpha / "B-2.0.tgz")
    assert shipped.manifest().name == "B-2.0"
    assert (alpha / "B-2.0.tgz").read_bytes() == (settings.paths.package_pool / "B-2.0.tgz").read_bytes()

    bundle = PackageArchive.read(alpha / BUNDLE)
    assert bundle.names() == ["etc/motd"]
    assert bundle.get_content("etc/motd") == b"welcome\n"
    assert report.results["alpha"].bundle == BUNDLE
    assert report.results["beta"].bundle is None


def test_bundle_signed_with_current_key(settings, scenario, tmp_path: Path) -> None:
    _distributor(settings, scenario).run(["A"])
    signature = Signature.parse(tmp_path / "remote" / "alpha" / f"{BUNDLE}.sig")
    assert signature.claimed_key == f"{DOMAIN}-{YEAR}-pkg.pub"


def test_prior_key_option(settings, scenario, tmp_path: Path) -> None:
    _distributor(settings, scenario).run(["A"], prior_key=True)
    signature = Signature.parse(tmp_path / "remote" / "alpha" / f"{BUNDLE}.sig")
    assert signature.claimed_key == f"{DOMAIN}-{YEAR - 1}-pkg.pub"


def test_packages_only_never_ask_for_passphrase(settings, scenario, tmp_path: Path) -> None:
    def refuse():
        raise AssertionError("passphrase requested")

    report = _distributor(settings, scenario, passphrase=refuse).run(["B"])
    assert report.ok
    assert _remote(tmp_path, "beta") == ["B-2.0.tgz", "B-2.0.tgz.sig"]


def test_host_filter(settings, scenario, tmp_path: Path) -> None:
    report = _distributor(settings, scenario).run(["A", "B"], hosts=["beta"])
    assert list(report.results) == ["beta"]
    assert _remote(tmp_path, "alpha") == []


def test_unknown_host_filter(settings, scenario) -> None:
    with pytest.raises(ConfigError, match="host not defined"):
        _distributor(settings, scenario).run(["A"], hosts=["delta"])


def test_unknown_artifact(settings, scenario) -> None:
    with pytest.raises(ConfigError, match="Unknown file"):
        _distributor(settings, scenario).run(["C"])


def test_unsigned_package_stops_before_shipping(settings, scenario, tmp_path: Path) -> None:
    (settings.paths.package_pool / "B-2.0.tgz.sig").unlink()
    with pytest.raises(VerificationFailure):
        _distributor(settings, scenario).run(["A", "B"])
    assert _remote(tmp_path, "alpha") == []


def test_wrong_passphrase_stops_before_shipping(settings, scenario, tmp_path: Path) -> None:
    with pytest.raises(SigningError):
        _distributor(settings, scenario, passphrase=lambda: "wrong").run(["A", "B"])
    assert _remote(tmp_path, "beta") == []


class FlakyTransport(LocalTransport):
    def ship(self, host, files):
        if host == "beta":
            raise TransportError("connection refused", host=host)
        super().ship(host, files)


def test_host_failures_are_independent(settings, scenario, tmp_path: Path) -> None:
    settings.distribute.max_workers = 2
    transport = FlakyTransport(tmp_path / "remote")

    report = _distributor(settings, scenario, transport=transport).run(["A", "B"])

    assert not report.ok
    assert report.failed_hosts == ["beta"]
    assert "connection refused" in report.results["beta"].error
    assert BUNDLE in _remote(tmp_path, "alpha")


def test_staging_is_removed(settings, scenario, tmp_path: Path) -> None:
    staging = tmp_path / "staging"
    staging.mkdir()
    settings.paths.staging_dir = staging

    _distributor(settings, scenario).run(["A", "B"])

    assert list(staging.iterdir()) == []


def test_custom_artifact_staged_through_handler(settings, keys, tmp_path: Path) -> None:
    template = tmp_path / "doas.template"
    template.write_text("# hosts: all\n#permit persist :wheel\n")
    declarations = parse_declarations(
        {
            "host-list": ["alpha", "beta"],
            "protection-groups": ["etc"],
            "artifacts": [
                {"name": "doas.conf", "file": str(template), "type": "custom", "hosts": "alpha", "groups": "etc"}
            ],
        }
    )

    _distributor(settings, declarations).run(["doas.conf"])

    bundle = PackageArchive.read(tmp_path / "remote" / "alpha" / BUNDLE)
    assert bundle.names() == ["etc/doas.conf"]
    assert b"permit persist :wheel" in bundle.get_content("etc/doas.conf")


def test_host_plan_rejects_relative_destinations(tmp_path: Path) -> None:
    plan = HostPlan("alpha", tmp_path)
    with pytest.raises(ConfigError):
        plan.stage_path("etc/motd")
    assert plan.stage_path("/etc/motd") == tmp_path / "etc" / "motd"
    plan.stage_path("/etc/motd")
    assert plan.staged == [tmp_path / "etc" / "motd"]


def test_bundle_name() -> None:
    assert bundle_name("alpha", NOW) == BUNDLE
