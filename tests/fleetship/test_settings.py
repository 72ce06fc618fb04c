"""Settings defaults, environment overrides, YAML loading and derived values."""

from __future__ import annotations

from pathlib import Path

import pytest

from FleetShip.errors import ConfigError
from FleetShip.settings import FleetShipSettings, load_raw_yaml, load_settings


def test_defaults() -> None:
    settings = FleetShipSettings(hostname="alpha.example.org")
    assert settings.paths.drop_dir == Path("/var/install")
    assert settings.transport.kind == "rsync"
    assert settings.locks.default_groups == ("etc", "local")
    assert settings.distribute.max_workers == 1
    assert settings.require_root is True


def test_environment_overrides_nested(monkeypatch) -> None:
    monkeypatch.setenv("FLEETSHIP_TRANSPORT__RETRIES", "5")
    monkeypatch.setenv("FLEETSHIP_KEYS__DOMAIN", "example.net")
    settings = load_settings(hostname="alpha")
    assert settings.transport.retries == 5
    assert settings.domain() == "example.net"


def test_yaml_file(tmp_path: Path) -> None:
    path = tmp_path / "fleetship.yaml"
    path.write_text(
        "hostname: gw.example.org\n"
        "keys:\n  year: 2026\n  vendor_floor: 77\n"
        "transport:\n  use_v6: true\n"
        "logging:\n  level: debug\n"
    )
    settings = load_settings(path)
    assert settings.key_name() == "example.org-2026-pkg"
    assert settings.key_name(2025) == "example.org-2025-pkg"
    assert settings.vendor_floor() == 77
    assert settings.host_suffix() == "-distributev6"
    assert settings.host_suffix(use_v6=False) == "-distribute"
    assert settings.logging.level == "DEBUG"


def test_config_from_environment(monkeypatch, tmp_path: Path) -> None:
    path = tmp_path / "fleetship.yaml"
    path.write_text("hostname: beta.example.org\n")
    monkeypatch.setenv("FLEETSHIP_CONFIG", str(path))
    assert load_settings().short_hostname == "beta"


@pytest.mark.parametrize(
    "text, message",
    [
        ("transport:\n  retries: 0\n", "transport.retries"),
        ("logging:\n  level: loud\n", "logging.level"),
        ("paths:\n  package_prefix: usr/local/\n", "paths.package_prefix"),
        ("keys:\n  vendor_family: 'bad family'\n", "keys.vendor_family"),
    ],
)
def test_invalid_values(tmp_path: Path, text: str, message: str) -> None:
    path = tmp_path / "fleetship.yaml"
    path.write_text(text)
    with pytest.raises(ConfigError, match=message):
        load_settings(path)


def test_yaml_errors(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_raw_yaml(tmp_path / "missing.yaml")
    broken = tmp_path / "broken.yaml"
    broken.write_text("a: [1, 2\n")
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_raw_yaml(broken)
    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just text\n")
    with pytest.raises(ConfigError, match="mapping at the root"):
        load_raw_yaml(scalar)


def test_domain_derived_from_hostname() -> None:
    assert FleetShipSettings(hostname="gw.branch.example.org").domain() == "example.org"
    with pytest.raises(ConfigError, match="Cannot derive a key domain"):
        FleetShipSettings(hostname="localhost").domain()


def test_floors() -> None:
    settings = FleetShipSettings(hostname="a.example.org", keys={"year": 2026})
    assert settings.domain_floor() == 2025
    settings.keys.domain_floor = 2020
    assert settings.domain_floor() == 2020

    settings.keys.vendor_floor = 76
    assert settings.vendor_floor() == 76
    settings.keys.accept_vendor_keys = False
    assert settings.vendor_floor() is None


def test_sample_platform_override() -> None:
    assert FleetShipSettings(hostname="a.b", sample_platform="macos").overlay_platform() == "macos"
