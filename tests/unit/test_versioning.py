"""Tests for version and build number management."""

import pytest

from flightdeck_mcp.deployment.versioning import (
    VersionBump,
    VersionInfo,
    bump_version,
    next_build_number,
    parse_version,
)
from flightdeck_mcp.error_handling import ValidationError


@pytest.mark.unit
@pytest.mark.parametrize("version,bump,expected", [
    ("1.2.3", VersionBump.PATCH, "1.2.4"),
    ("1.2.3", VersionBump.MINOR, "1.3.0"),
    ("1.2.3", VersionBump.MAJOR, "2.0.0"),
    ("1.2.3", VersionBump.NONE, "1.2.3"),
    ("1.2", VersionBump.PATCH, "1.2.1"),
    ("3", VersionBump.MINOR, "3.1.0"),
    ("1.9.9", "patch", "1.9.10"),
])
def test_bump_version(version, bump, expected):
    assert bump_version(version, bump) == expected


@pytest.mark.unit
def test_parse_version_pads_missing_components():
    assert parse_version("4") == (4, 0, 0)
    assert parse_version("4.1") == (4, 1, 0)


@pytest.mark.unit
@pytest.mark.parametrize("version", ["", "1.2.3.4", "v1.2", "1.x"])
def test_parse_version_rejects_invalid(version):
    with pytest.raises(ValidationError) as exc_info:
        parse_version(version)
    assert exc_info.value.error_code == "VERSION_UPDATE_FAILED"
    assert "Hint:" in str(exc_info.value)


@pytest.mark.unit
@pytest.mark.parametrize("build,expected", [
    ("1", "2"),
    ("41", "42"),
    ("1.0.7", "1.0.8"),
    ("", "1"),
])
def test_next_build_number(build, expected):
    assert next_build_number(build) == expected


@pytest.mark.unit
def test_next_build_number_rejects_text():
    with pytest.raises(ValidationError):
        next_build_number("build-7")


@pytest.mark.unit
class TestVersionInfo:
    """Tests for VersionInfo."""

    def test_bump_always_increments_build(self):
        current = VersionInfo("1.2.3", "9")

        assert current.bump(VersionBump.NONE) == VersionInfo("1.2.3", "10")
        assert current.bump(VersionBump.MAJOR) == VersionInfo("2.0.0", "10")

    def test_str_and_dict(self):
        info = VersionInfo("1.0.0", "4")
        assert str(info) == "1.0.0 (4)"
        assert info.to_dict() == {"version": "1.0.0", "build": "4"}
