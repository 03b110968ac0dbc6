"""
Xcode build toolchain adapter.

Wraps xcodebuild for archiving, exporting and project introspection,
and edits project.pbxproj for version changes. Archive and export
failures come back as ToolchainResult values; only misuse raises.
"""

import json
import logging
import plistlib
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..config import Timeouts
from ..error_handling import BuildError
from ..repositories import BuildRepository
from .profiles import ProvisioningProfile
from .versioning import VersionInfo

logger = logging.getLogger(__name__)

MARKETING_VERSION_PATTERN = re.compile(r"MARKETING_VERSION\s*=\s*([^;]+);")
BUILD_NUMBER_PATTERN = re.compile(r"CURRENT_PROJECT_VERSION\s*=\s*([^;]+);")
DEFAULT_PROFILES_DIR = Path("~/Library/MobileDevice/Provisioning Profiles")
LOG_TAIL_LINES = 50


@dataclass(frozen=True)
class SigningConfig:
    """Code signing settings passed to xcodebuild."""
    team_id: str
    code_sign_identity: Optional[str] = None
    profile_specifier: Optional[str] = None
    keychain_path: Optional[Path] = None
    style: str = "Manual"

    def build_settings(self) -> list[str]:
        settings = [f"DEVELOPMENT_TEAM={self.team_id}", f"CODE_SIGN_STYLE={self.style}"]
        if self.code_sign_identity:
            settings.append(f"CODE_SIGN_IDENTITY={self.code_sign_identity}")
        if self.profile_specifier:
            settings.append(f"PROVISIONING_PROFILE_SPECIFIER={self.profile_specifier}")
        if self.keychain_path:
            settings.append(f"OTHER_CODE_SIGN_FLAGS=--keychain {self.keychain_path}")
        return settings


@dataclass(frozen=True)
class ExportOptions:
    """Contents of the ExportOptions.plist handed to xcodebuild -exportArchive."""
    team_id: str
    method: str = "app-store"
    provisioning_profiles: dict[str, str] = field(default_factory=dict)
    signing_certificate: Optional[str] = None
    upload_symbols: bool = True

    def to_plist_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "method": self.method,
            "teamID": self.team_id,
            "signingStyle": "manual",
            "uploadSymbols": self.upload_symbols,
            "compileBitcode": False,
        }
        if self.provisioning_profiles:
            data["provisioningProfiles"] = dict(self.provisioning_profiles)
        if self.signing_certificate:
            data["signingCertificate"] = self.signing_certificate
        return data


@dataclass
class ToolchainResult:
    """Outcome of an archive or export.

    Attributes:
        success: Whether the command succeeded and produced its output
        output_path: The archive or package produced
        duration: Seconds spent
        logs: Last lines of tool output
        error: Extracted error line on failure
    """
    success: bool
    output_path: Optional[Path] = None
    duration: float = 0.0
    logs: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output_path": str(self.output_path) if self.output_path else None,
            "duration": round(self.duration, 2),
            "error": self.error,
        }


def extract_error(output: str, fallback: str) -> str:
    """First 'error:' line of xcodebuild output, or a fallback message."""
    for line in output.splitlines():
        if "error:" in line or "ERROR" in line:
            return line.strip()
    if "Code Signing Error" in output:
        return "Code signing error - check certificates and provisioning profiles"
    return fallback


def find_pbxproj(project_path: Path) -> Path:
    """Locate project.pbxproj for a .xcodeproj or .xcworkspace path.

    Raises:
        BuildError: If the path is neither, or no project file exists
    """
    project_path = Path(project_path)
    if project_path.suffix == ".xcodeproj":
        candidate = project_path / "project.pbxproj"
    elif project_path.suffix == ".xcworkspace":
        projects = sorted(project_path.parent.glob("*.xcodeproj"))
        candidate = projects[0] / "project.pbxproj" if projects else None
    else:
        raise BuildError(
            f"Unsupported project type: {project_path}",
            error_code="VERSION_UPDATE_FAILED",
            recovery_suggestions=["Pass the path of the .xcodeproj or .xcworkspace"],
        )
    if candidate is None or not candidate.is_file():
        raise BuildError(f"project.pbxproj not found for {project_path}", error_code="VERSION_UPDATE_FAILED")
    return candidate


class XcodeToolchain(BuildRepository):
    """BuildRepository backed by xcodebuild."""

    def __init__(
        self,
        timeouts: Optional[Timeouts] = None,
        xcodebuild_path: str = "xcodebuild",
        derived_data_path: Optional[Path] = None,
        profiles_dir: Optional[Path] = None,
    ):
        self.timeouts = timeouts or Timeouts()
        self.xcodebuild_path = xcodebuild_path
        self.derived_data_path = Path(derived_data_path) if derived_data_path else None
        self.profiles_dir = Path(profiles_dir or DEFAULT_PROFILES_DIR).expanduser()

    @staticmethod
    def _project_args(project_path: Path) -> list[str]:
        flag = "-workspace" if Path(project_path).suffix == ".xcworkspace" else "-project"
        return [flag, str(project_path)]

    def _run(self, args: list[str], timeout: int) -> tuple[int, str]:
        """Run xcodebuild. Returns (exit code, combined output); timeouts return -1."""
        command = [self.xcodebuild_path, *args]
        logger.info(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = e.stdout if isinstance(e.stdout, str) else (e.stdout or b"").decode(errors="replace")
            return -1, f"{output}\nerror: xcodebuild timed out after {timeout}s"
        except FileNotFoundError:
            return -1, f"error: {self.xcodebuild_path} not found. Is Xcode installed?"
        return result.returncode, (result.stdout or "") + (result.stderr or "")

    def read_version_info(self, project_path: Path) -> VersionInfo:
        content = find_pbxproj(project_path).read_text()
        version = MARKETING_VERSION_PATTERN.search(content)
        build = BUILD_NUMBER_PATTERN.search(content)
        if not version or not build:
            logger.warning(f"Version settings missing from {project_path}, assuming 1.0.0 (1)")
        return VersionInfo(
            marketing_version=version.group(1).strip().strip('"') if version else "1.0.0",
            build_number=build.group(1).strip().strip('"') if build else "1",
        )

    def update_version(self, project_path: Path, version: VersionInfo) -> None:
        """Rewrite MARKETING_VERSION and CURRENT_PROJECT_VERSION in every build configuration.

        Raises:
            BuildError: If either setting is missing or did not persist
        """
        pbxproj = find_pbxproj(project_path)
        content = pbxproj.read_text()
        if not MARKETING_VERSION_PATTERN.search(content) or not BUILD_NUMBER_PATTERN.search(content):
            raise BuildError(
                f"{pbxproj} defines no MARKETING_VERSION or CURRENT_PROJECT_VERSION",
                error_code="VERSION_UPDATE_FAILED",
            )

        content = MARKETING_VERSION_PATTERN.sub(f"MARKETING_VERSION = {version.marketing_version};", content)
        content = BUILD_NUMBER_PATTERN.sub(f"CURRENT_PROJECT_VERSION = {version.build_number};", content)
        pbxproj.write_text(content)

        if self.read_version_info(project_path) != version:
            raise BuildError(
                f"Version update did not persist in {pbxproj}",
                error_code="VERSION_UPDATE_FAILED",
            )
        logger.info(f"Project version set to {version}")

    def archive(
        self,
        project_path: Path,
        scheme: str,
        configuration: str,
        archive_path: Path,
        signing: SigningConfig,
    ) -> ToolchainResult:
        Path(archive_path).parent.mkdir(parents=True, exist_ok=True)
        args = [
            *self._project_args(project_path),
            "-scheme", scheme,
            "-configuration", configuration,
            "-archivePath", str(archive_path),
            "-destination", "generic/platform=iOS",
        ]
        if self.derived_data_path:
            args += ["-derivedDataPath", str(self.derived_data_path)]
        args += ["archive", *signing.build_settings()]

        start = time.monotonic()
        code, output = self._run(args, self.timeouts.archive)
        duration = time.monotonic() - start
        logs = output.splitlines()[-LOG_TAIL_LINES:]

        if code == 0 and Path(archive_path).exists():
            logger.info(f"Archived {scheme} in {duration:.1f}s")
            return ToolchainResult(True, Path(archive_path), duration, logs)
        return ToolchainResult(
            False,
            Path(archive_path) if Path(archive_path).exists() else None,
            duration,
            logs,
            extract_error(output, "Archive failed - check build logs for details"),
        )

    def export_package(
        self,
        archive_path: Path,
        export_options: ExportOptions,
        output_dir: Path,
    ) -> ToolchainResult:
        if not Path(archive_path).exists():
            return ToolchainResult(False, error=f"Archive not found: {archive_path}")

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        plist_path = output_dir / "ExportOptions.plist"
        with open(plist_path, "wb") as f:
            plistlib.dump(export_options.to_plist_dict(), f)

        start = time.monotonic()
        code, output = self._run(
            [
                "-exportArchive",
                "-archivePath", str(archive_path),
                "-exportPath", str(output_dir),
                "-exportOptionsPlist", str(plist_path),
            ],
            self.timeouts.export,
        )
        duration = time.monotonic() - start
        logs = output.splitlines()[-LOG_TAIL_LINES:]

        packages = sorted(output_dir.glob("*.ipa"))
        if code == 0 and packages:
            logger.info(f"Exported {packages[0].name} in {duration:.1f}s")
            return ToolchainResult(True, packages[0], duration, logs)
        return ToolchainResult(
            False,
            packages[0] if packages else None,
            duration,
            logs,
            extract_error(output, "Export failed - check export options and certificates"),
        )

    def list_schemes(self, project_path: Path) -> list[str]:
        code, output = self._run(
            [*self._project_args(project_path), "-list", "-json"],
            self.timeouts.introspection,
        )
        if code != 0:
            raise BuildError(
                f"Could not list schemes for {project_path}: {extract_error(output, 'xcodebuild -list failed')}"
            )
        data = json.loads(output[output.index("{"):])
        container = data.get("workspace") or data.get("project") or {}
        return list(container.get("schemes", []))

    def read_build_settings(self, project_path: Path, scheme: str, configuration: str) -> dict[str, Any]:
        code, output = self._run(
            [
                *self._project_args(project_path),
                "-scheme", scheme,
                "-configuration", configuration,
                "-showBuildSettings",
                "-json",
            ],
            self.timeouts.introspection,
        )
        if code != 0:
            raise BuildError(
                f"Could not read build settings for {scheme}: "
                f"{extract_error(output, 'xcodebuild -showBuildSettings failed')}"
            )
        data = json.loads(output[output.index("["):])
        return data[0].get("buildSettings", {}) if data else {}

    def install_profile(self, profile: ProvisioningProfile) -> Path:
        """Copy a profile into the toolchain's provisioning profiles directory."""
        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        destination = self.profiles_dir / profile.expected_filename
        if profile.file_path and Path(profile.file_path).exists():
            shutil.copy2(profile.file_path, destination)
        elif profile.content:
            destination.write_bytes(profile.content)
        else:
            raise BuildError(
                f"Profile {profile.name} has no content to install",
                error_code="PROFILE_NOT_FOUND",
            )
        logger.info(f"Installed profile {profile.name} as {destination.name}")
        return destination
