"""``+CONTENTS`` parsing and structural validation."""

from __future__ import annotations

import pytest

from FleetShip.errors import ManifestError
from FleetShip.manifest import SampleEntry, parse_manifest

CONTENTS = """\
@comment $OpenBSD: PLIST,v 1.0 2026/01/01 $
@name tool-1.2.3
@arch *
@cwd /usr/local
bin/
@bin bin/tool
@man man/man1/tool.1
share/examples/tool/
share/examples/tool/tool.conf
@size 12
@sha 3q2+7w==
@ts 1700000000
@sample /etc/tool.conf
@sample /etc/tool.d/
@option no-default-conflict
"""


def test_parse_collects_entries() -> None:
    manifest = parse_manifest(CONTENTS)

    assert manifest.name == "tool-1.2.3"
    assert manifest.arch == "*"
    assert manifest.cwd == "/usr/local"
    assert manifest.directories == ["bin/", "share/examples/tool/"]
    assert manifest.files == ["bin/tool", "man/man1/tool.1", "share/examples/tool/tool.conf"]
    assert manifest.samples == [SampleEntry("share/examples/tool/tool.conf", "/etc/tool.conf")]
    assert manifest.sample_directories == ["/etc/tool.d/"]

    record = manifest.record_for("share/examples/tool/tool.conf")
    assert (record.size, record.sha, record.ts) == (12, "3q2+7w==", "1700000000")


def test_validate_accepts_well_formed() -> None:
    parse_manifest(CONTENTS).validate("tool-1.2.3", "/usr/local")


@pytest.mark.parametrize(
    ("old", "new", "message"),
    [
        ("@comment $OpenBSD: PLIST,v 1.0 2026/01/01 $\n", "", "PLIST header"),
        ("@name tool-1.2.3", "@name tool-1.2.4", "@name tool-1.2.3"),
        ("@arch *", "@arch amd64", "@arch"),
        ("@cwd /usr/local", "@cwd /opt", "@cwd /usr/local"),
        ("@bin bin/tool", "@bin ../bin/tool", "Unsafe"),
        ("@sample /etc/tool.conf", "@sample etc/tool.conf", "absolute"),
    ],
)
def test_validate_rejects(old: str, new: str, message: str) -> None:
    manifest = parse_manifest(CONTENTS.replace(old, new))
    with pytest.raises(ManifestError, match=message):
        manifest.validate("tool-1.2.3", "/usr/local")


def test_missing_cwd_rejected() -> None:
    manifest = parse_manifest(CONTENTS.replace("@cwd /usr/local\n", ""))
    with pytest.raises(ManifestError, match="@cwd"):
        manifest.validate("tool-1.2.3", "/usr/local")


def test_second_cwd_must_match_too() -> None:
    manifest = parse_manifest(CONTENTS + "@cwd /etc\nfoo\n")
    with pytest.raises(ManifestError, match="@cwd"):
        manifest.validate("tool-1.2.3", "/usr/local")


def test_sample_without_file_is_an_error() -> None:
    with pytest.raises(ManifestError):
        parse_manifest("@name x-1.0\n@sample /etc/x.conf\n")


def test_bad_size_is_an_error() -> None:
    with pytest.raises(ManifestError):
        parse_manifest("@name x-1.0\nbin/x\n@size many\n")
