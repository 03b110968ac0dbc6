"""
Marketing version and build number management.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..error_handling import ValidationError

VERSION_PATTERN = re.compile(r"^\d+(\.\d+){0,2}$")


class VersionBump(Enum):
    """Semantic version bump selectors."""
    NONE = "none"
    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse 'X', 'X.Y' or 'X.Y.Z', padding missing components with 0.

    Raises:
        ValidationError: If the version is not numeric dotted form
    """
    version = str(version or "").strip()
    if not VERSION_PATTERN.match(version):
        raise ValidationError(
            f"Invalid marketing version: {version!r}. "
            "Hint: Use dotted numeric form such as 1.2.3",
            error_code="VERSION_UPDATE_FAILED",
        )
    parts = [int(p) for p in version.split(".")]
    parts += [0] * (3 - len(parts))
    return parts[0], parts[1], parts[2]


def bump_version(version: str, bump: VersionBump) -> str:
    """Apply a semantic bump to a marketing version.

    Major resets minor and patch, minor resets patch, patch increments
    only the last component. 'none' returns the version unchanged.

    Examples:
        bump_version("1.2.3", VersionBump.MAJOR) == "2.0.0"
        bump_version("1.2", VersionBump.PATCH) == "1.2.1"
    """
    bump = VersionBump(bump) if not isinstance(bump, VersionBump) else bump
    if bump is VersionBump.NONE:
        return version
    major, minor, patch = parse_version(version)
    if bump is VersionBump.MAJOR:
        return f"{major + 1}.0.0"
    if bump is VersionBump.MINOR:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


def next_build_number(build_number: str) -> str:
    """Increment a build number by exactly one.

    Dotted build numbers ('1.0.7') increment their last component.

    Raises:
        ValidationError: If the build number is not numeric
    """
    build_number = str(build_number or "0").strip()
    parts = build_number.split(".")
    if not all(p.isdigit() for p in parts):
        raise ValidationError(
            f"Invalid build number: {build_number!r}. Hint: Build numbers must be numeric",
            error_code="VERSION_UPDATE_FAILED",
        )
    parts[-1] = str(int(parts[-1]) + 1)
    return ".".join(parts)


@dataclass(frozen=True)
class VersionInfo:
    """A project's marketing version and build number."""
    marketing_version: str
    build_number: str

    def bump(self, bump: VersionBump) -> "VersionInfo":
        """Next version: bumped marketing version, build number plus one."""
        return VersionInfo(
            marketing_version=bump_version(self.marketing_version, bump),
            build_number=next_build_number(self.build_number),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.marketing_version, "build": self.build_number}

    def __str__(self) -> str:
        return f"{self.marketing_version} ({self.build_number})"
