"""
Pre-deployment checks for validation runs.

Covers what certificate and profile validation cannot see: the local
tools a build needs, the App Store Connect credentials, the project
and its scheme, and the privacy purpose strings App Store review
requires for every protected resource an app declares (ITMS-90683).

Checks run domain by domain. A check whose prerequisite failed is
reported as skipped rather than run.
"""

import logging
import plistlib
import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
from xml.parsers.expat import ExpatError

from ..error_handling import BuildError, ValidationError
from ..repositories import BuildRepository
from .credentials import ApiCredentials
from .toolchain import find_pbxproj

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("xcodebuild", "xcrun", "security")
PROJECT_SUFFIXES = (".xcodeproj", ".xcworkspace")
MIN_PURPOSE_STRING_LENGTH = 20

# Info.plist key -> resource it unlocks
PRIVACY_USAGE_KEYS: dict[str, str] = {
    "NSCameraUsageDescription": "the camera",
    "NSMicrophoneUsageDescription": "the microphone",
    "NSPhotoLibraryUsageDescription": "the photo library",
    "NSPhotoLibraryAddUsageDescription": "adding to the photo library",
    "NSLocationWhenInUseUsageDescription": "location while in use",
    "NSLocationAlwaysAndWhenInUseUsageDescription": "location at all times",
    "NSLocationAlwaysUsageDescription": "location at all times",
    "NSContactsUsageDescription": "contacts",
    "NSCalendarsUsageDescription": "calendars",
    "NSRemindersUsageDescription": "reminders",
    "NSSpeechRecognitionUsageDescription": "speech recognition",
    "NSMotionUsageDescription": "motion data",
    "NSFaceIDUsageDescription": "Face ID",
    "NSHealthShareUsageDescription": "reading health data",
    "NSHealthUpdateUsageDescription": "writing health data",
    "NSBluetoothAlwaysUsageDescription": "Bluetooth",
    "NSBluetoothPeripheralUsageDescription": "Bluetooth peripherals",
    "NSLocalNetworkUsageDescription": "the local network",
    "NSUserTrackingUsageDescription": "tracking across apps",
    "NSAppleMusicUsageDescription": "the media library",
    "NSDesktopFolderUsageDescription": "the Desktop folder",
    "NSDocumentsFolderUsageDescription": "the Documents folder",
    "NSDownloadsFolderUsageDescription": "the Downloads folder",
}

FRAMEWORK_PRIVACY_KEYS: dict[str, tuple[str, ...]] = {
    "AVFoundation": ("NSCameraUsageDescription", "NSMicrophoneUsageDescription"),
    "CoreLocation": ("NSLocationWhenInUseUsageDescription",),
    "Contacts": ("NSContactsUsageDescription",),
    "EventKit": ("NSCalendarsUsageDescription", "NSRemindersUsageDescription"),
    "Speech": ("NSSpeechRecognitionUsageDescription",),
    "CoreMotion": ("NSMotionUsageDescription",),
    "HealthKit": ("NSHealthShareUsageDescription", "NSHealthUpdateUsageDescription"),
    "CoreBluetooth": ("NSBluetoothAlwaysUsageDescription",),
    "Photos": ("NSPhotoLibraryUsageDescription",),
    "MediaPlayer": ("NSAppleMusicUsageDescription",),
}

PLACEHOLDER_PATTERN = re.compile(
    r"^\s*(todo|changeme|placeholder|this app uses|app uses|your app|replace this|add description|purpose string)",
    re.IGNORECASE,
)

FRAMEWORK_PATTERN = re.compile(r"\b(\w+)\.framework\b")
GENERATED_KEY_PREFIX = "INFOPLIST_KEY_"


@dataclass(frozen=True)
class PrivacyIssue:
    """One problem with a usage description.

    Attributes:
        key: Info.plist key
        kind: empty, placeholder, too_short or missing
        message: Human-readable description
    """
    key: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "kind": self.kind, "message": self.message}


@dataclass
class PrivacyReport:
    """Usage description findings for one Info.plist.

    Empty descriptions are errors. Placeholders, short descriptions and
    keys a linked framework usually needs are warnings, which fail the
    report only in strict mode.
    """
    source: Optional[str] = None
    present: list[str] = field(default_factory=list)
    errors: list[PrivacyIssue] = field(default_factory=list)
    warnings: list[PrivacyIssue] = field(default_factory=list)
    strict: bool = False

    @property
    def valid(self) -> bool:
        return not self.errors and not (self.strict and self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "source": self.source,
            "strict": self.strict,
            "present": self.present,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
        }


def check_privacy_descriptions(
    info: dict[str, Any],
    linked_frameworks: Iterable[str] = (),
    strict: bool = False,
    source: Optional[str] = None,
) -> PrivacyReport:
    """Check the privacy usage descriptions of an Info.plist.

    Args:
        info: Info.plist contents
        linked_frameworks: Framework names the target links
        strict: Treat warnings as failures
        source: Where the contents came from, for reporting

    Returns:
        PrivacyReport
    """
    report = PrivacyReport(source=source, strict=strict)
    for key, resource in PRIVACY_USAGE_KEYS.items():
        if key not in info:
            continue
        report.present.append(key)
        value = info[key]
        if not isinstance(value, str) or not value.strip():
            report.errors.append(PrivacyIssue(
                key,
                "empty",
                f"{key} is empty. Hint: explain to the user why the app needs {resource}",
            ))
        elif PLACEHOLDER_PATTERN.match(value):
            report.warnings.append(PrivacyIssue(
                key, "placeholder", f"{key} looks like placeholder text: '{value.strip()}'"
            ))
        elif len(value.strip()) < MIN_PURPOSE_STRING_LENGTH:
            report.warnings.append(PrivacyIssue(
                key,
                "too_short",
                f"{key} is shorter than {MIN_PURPOSE_STRING_LENGTH} characters. "
                f"Hint: say what the app does with {resource}",
            ))

    flagged = set(report.present)
    for framework in sorted(set(linked_frameworks)):
        for key in FRAMEWORK_PRIVACY_KEYS.get(framework, ()):
            if key in flagged:
                continue
            flagged.add(key)
            report.warnings.append(PrivacyIssue(
                key,
                "missing",
                f"{framework} is linked but {key} is not set. "
                f"Hint: add it if the app uses {PRIVACY_USAGE_KEYS[key]}",
            ))
    return report


def load_info_plist(path: Path) -> dict[str, Any]:
    """Read an Info.plist (XML or binary).

    Raises:
        ValidationError: If the file is missing or not a dictionary plist
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            data = plistlib.load(f)
    except FileNotFoundError as e:
        raise ValidationError(
            f"Info.plist not found: {path}",
            recovery_suggestions=["Check INFOPLIST_FILE in the target's build settings"],
            original=e,
        )
    except (plistlib.InvalidFileException, ExpatError, ValueError, OSError) as e:
        raise ValidationError(f"Could not read {path}: {e}", original=e)
    if not isinstance(data, dict):
        raise ValidationError(f"{path} is not a dictionary property list")
    return data


def locate_info_plist(project_path: Path, build_settings: dict[str, Any]) -> Optional[Path]:
    """Info.plist named by INFOPLIST_FILE, resolved against the project directory."""
    relative = build_settings.get("INFOPLIST_FILE")
    if not relative:
        return None
    path = Path(relative)
    if path.is_absolute():
        return path
    base = build_settings.get("SRCROOT") or build_settings.get("PROJECT_DIR") or Path(project_path).parent
    return Path(base) / path


def generated_info_keys(build_settings: dict[str, Any]) -> dict[str, Any]:
    """Info.plist keys Xcode generates from INFOPLIST_KEY_* build settings."""
    return {
        name[len(GENERATED_KEY_PREFIX):]: value
        for name, value in build_settings.items()
        if name.startswith(GENERATED_KEY_PREFIX)
    }


def linked_frameworks(project_path: Path) -> list[str]:
    """Frameworks referenced by project.pbxproj; empty when it cannot be read."""
    try:
        content = find_pbxproj(project_path).read_text(errors="replace")
    except (BuildError, OSError):
        return []
    return sorted(set(FRAMEWORK_PATTERN.findall(content)))


class PreflightStatus(Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PreflightCheck:
    """Outcome of one preflight check."""
    domain: str
    name: str
    status: PreflightStatus
    message: str
    suggestion: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.status is not PreflightStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        result = {
            "domain": self.domain,
            "check": self.name,
            "status": self.status.value,
            "message": self.message,
        }
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result


@dataclass
class PreflightReport:
    checks: list[PreflightCheck] = field(default_factory=list)
    privacy: Optional[PrivacyReport] = None

    def add(
        self,
        domain: str,
        name: str,
        status: PreflightStatus,
        message: str,
        suggestion: Optional[str] = None,
    ) -> PreflightCheck:
        check = PreflightCheck(domain, name, status, message, suggestion)
        self.checks.append(check)
        return check

    def status_of(self, name: str) -> Optional[PreflightStatus]:
        for check in self.checks:
            if check.name == name:
                return check.status
        return None

    @property
    def valid(self) -> bool:
        return all(c.valid for c in self.checks)

    @property
    def failed(self) -> list[PreflightCheck]:
        return [c for c in self.checks if not c.valid]

    @property
    def warnings(self) -> list[PreflightCheck]:
        return [c for c in self.checks if c.status is PreflightStatus.WARNING]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "checks": [c.to_dict() for c in self.checks],
            "privacy": self.privacy.to_dict() if self.privacy else None,
        }


class Preflight:
    """Environment, credential, project and privacy checks for one run."""

    def __init__(
        self,
        toolchain: BuildRepository,
        credentials: Optional[ApiCredentials] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        required_tools: Iterable[str] = REQUIRED_TOOLS,
    ):
        """Initialize the checks.

        Args:
            toolchain: Used to list schemes and read build settings
            credentials: The run's App Store Connect credentials, if any
            which: Resolves a command name to its path
            required_tools: Commands that must be on PATH
        """
        self.toolchain = toolchain
        self.credentials = credentials
        self.which = which
        self.required_tools = tuple(required_tools)

    def run(
        self,
        project_path: Path,
        scheme: str,
        configuration: str = "Release",
        info_plist_path: Optional[Path] = None,
        strict_privacy: bool = False,
    ) -> PreflightReport:
        """Run every check.

        Args:
            project_path: .xcodeproj or .xcworkspace
            scheme: Scheme that will be archived
            configuration: Build configuration
            info_plist_path: Info.plist to check (located from build settings when omitted)
            strict_privacy: Fail on privacy warnings too

        Returns:
            PreflightReport covering every check, skipped ones included
        """
        project_path = Path(project_path)
        report = PreflightReport()
        self._check_tools(report)
        self._check_credentials(report)
        settings = self._check_project(report, project_path, scheme, configuration)
        self._check_privacy(report, project_path, settings, info_plist_path, strict_privacy)

        logger.info(
            f"Preflight for {scheme}: {len(report.failed)} failed, {len(report.warnings)} warnings"
        )
        return report

    def _check_tools(self, report: PreflightReport) -> None:
        for tool in self.required_tools:
            location = self.which(tool)
            if location:
                report.add("environment", tool, PreflightStatus.PASSED, f"{tool} found at {location}")
            else:
                report.add(
                    "environment",
                    tool,
                    PreflightStatus.FAILED,
                    f"{tool} not found on PATH",
                    "Run on macOS with Xcode and its command line tools installed",
                )

    def _check_credentials(self, report: PreflightReport) -> None:
        if self.credentials is None:
            report.add(
                "authentication",
                "api_key",
                PreflightStatus.WARNING,
                "No App Store Connect API key configured; uploads will fail",
                "Set FLIGHTDECK_API_KEY_ID, FLIGHTDECK_API_ISSUER_ID and FLIGHTDECK_API_KEY_PATH",
            )
            return

        assessment = self.credentials.validate()
        if assessment["errors"]:
            report.add(
                "authentication",
                "api_key",
                PreflightStatus.FAILED,
                "; ".join(assessment["errors"]),
                "Generate a new API key in App Store Connect",
            )
        elif assessment["warnings"]:
            report.add("authentication", "api_key", PreflightStatus.WARNING, "; ".join(assessment["warnings"]))
        else:
            report.add(
                "authentication",
                "api_key",
                PreflightStatus.PASSED,
                f"API key {self.credentials.key_id} is usable",
            )

    def _check_project(
        self,
        report: PreflightReport,
        project_path: Path,
        scheme: str,
        configuration: str,
    ) -> Optional[dict[str, Any]]:
        """Check the project and scheme. Returns build settings when they could be read."""
        if project_path.suffix not in PROJECT_SUFFIXES or not project_path.exists():
            report.add(
                "project",
                "project_path",
                PreflightStatus.FAILED,
                f"No Xcode project at {project_path}",
                "Pass the path of the .xcodeproj or .xcworkspace",
            )
            report.add("project", "scheme", PreflightStatus.SKIPPED, "Project not found")
            return None
        report.add("project", "project_path", PreflightStatus.PASSED, f"Project found at {project_path}")

        if report.status_of("xcodebuild") is PreflightStatus.FAILED:
            report.add("project", "scheme", PreflightStatus.SKIPPED, "xcodebuild is not available")
            return None

        try:
            schemes = self.toolchain.list_schemes(project_path)
        except BuildError as e:
            report.add("project", "scheme", PreflightStatus.FAILED, e.message, "Open the project in Xcode once")
            return None
        if scheme not in schemes:
            report.add(
                "project",
                "scheme",
                PreflightStatus.FAILED,
                f"Scheme '{scheme}' not found in {project_path.name}",
                f"Use one of: {', '.join(schemes)}" if schemes else "Mark the scheme as shared in Xcode",
            )
            return None
        report.add("project", "scheme", PreflightStatus.PASSED, f"Scheme '{scheme}' found")

        try:
            settings = self.toolchain.read_build_settings(project_path, scheme, configuration)
        except BuildError as e:
            report.add("project", "build_settings", PreflightStatus.FAILED, e.message)
            return None
        report.add(
            "project",
            "build_settings",
            PreflightStatus.PASSED,
            f"Read {len(settings)} build settings for {configuration}",
        )
        return settings

    def _check_privacy(
        self,
        report: PreflightReport,
        project_path: Path,
        settings: Optional[dict[str, Any]],
        info_plist_path: Optional[Path],
        strict: bool,
    ) -> None:
        info: dict[str, Any] = {}
        source: Optional[str] = None
        plist = Path(info_plist_path) if info_plist_path is not None else None

        if settings is not None:
            info.update(generated_info_keys(settings))
            if plist is None:
                plist = locate_info_plist(project_path, settings)
            if plist is None and str(settings.get("GENERATE_INFOPLIST_FILE", "")).upper() == "YES":
                source = "build settings"

        if plist is not None:
            try:
                info.update(load_info_plist(plist))
            except ValidationError as e:
                report.add(
                    "privacy",
                    "usage_descriptions",
                    PreflightStatus.FAILED,
                    e.message,
                    e.recovery_suggestions[0],
                )
                return
            source = str(plist)

        if source is None:
            report.add(
                "privacy",
                "usage_descriptions",
                PreflightStatus.SKIPPED,
                "Info.plist not located; usage descriptions not checked",
                "Pass info_plist_path",
            )
            return

        privacy = check_privacy_descriptions(info, linked_frameworks(project_path), strict=strict, source=source)
        report.privacy = privacy
        for issue in privacy.errors:
            report.add("privacy", issue.key, PreflightStatus.FAILED, issue.message, "Fill in the usage description")
        warning_status = PreflightStatus.FAILED if strict else PreflightStatus.WARNING
        for issue in privacy.warnings:
            report.add("privacy", issue.key, warning_status, issue.message)
        if not privacy.errors and not privacy.warnings:
            report.add(
                "privacy",
                "usage_descriptions",
                PreflightStatus.PASSED,
                f"{len(privacy.present)} usage descriptions present in {source}",
            )
