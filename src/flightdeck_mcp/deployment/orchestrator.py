"""
Six-phase TestFlight deployment.

Phases run strictly in order and the run stops at the first failure.
Everything accomplished before a failure (version bump, archive, package)
is kept and reported so the run can be resumed by hand. Each executed
phase appends exactly one history entry. Validation runs stop after the
profile phase and add a preflight phase in its place.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from ..config import Timeouts, generate_deployment_id
from ..error_handling import (
    BuildError,
    FlightdeckError,
    ProfileError,
    UploadError,
    ValidationError,
    classify_error,
    validate_app_identifier,
    validate_scheme,
    validate_team_id,
    validate_version_bump,
)
from ..events import EventSink
from ..repositories import BuildRepository, UploadRepository
from ..signing.certificate_manager import CertificateManager, TypeAvailability
from ..signing.credential_store import EphemeralCredentialStore
from ..signing.models import Certificate, CertificateType, utcnow
from .credentials import ApiCredentials
from .history import DeploymentHistory, HistoryStore
from .preflight import Preflight
from .profiles import ProfileMatcher, ProfileType, ProvisioningProfile
from .toolchain import ExportOptions, SigningConfig
from .versioning import VersionBump, VersionInfo

logger = logging.getLogger(__name__)

TESTFLIGHT_URL = "https://appstoreconnect.apple.com/apps/{app_id}/testflight/ios"
READY_STATES = ("VALID", "READY_FOR_TESTING", "READY_FOR_BETA_TESTING")
FAILED_STATES = ("INVALID", "FAILED")


class Phase(Enum):
    """Deployment phases, in execution order."""
    CERTIFICATE_VALIDATION = "certificate_validation"
    PROFILE_VALIDATION = "profile_validation"
    VERSION_MANAGEMENT = "version_management"
    BUILD_AND_ARCHIVE = "build_and_archive"
    UPLOAD = "upload"
    PROCESSING_MONITOR = "processing_monitor"
    # validate_only runs it after profile validation
    PREFLIGHT = "preflight"


class Outcome:
    SUCCESS = "success"
    FAILURE = "failure"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class DeploymentRequest:
    """What to deploy.

    Attributes:
        app_identifier: Bundle identifier
        team_id: Apple Developer team ID
        scheme: Xcode scheme to archive
        project_path: .xcodeproj or .xcworkspace
        output_dir: Where archives and packages are written
        configuration: Build configuration
        version_bump: none, patch, minor or major
        required_types: Certificate types that must be available
        wait_for_processing: Run the processing monitor phase
        allow_profile_creation: Create missing profiles through App Store Connect
        deployment_id: Explicit id (generated when omitted)
        info_plist_path: Info.plist checked by validation runs (located from build settings when omitted)
        strict_privacy: Fail validation on privacy warnings too
    """
    app_identifier: str
    team_id: str
    scheme: str
    project_path: Path
    output_dir: Path
    configuration: str = "Release"
    version_bump: VersionBump = VersionBump.PATCH
    required_types: tuple[CertificateType, ...] = (CertificateType.DEVELOPMENT, CertificateType.DISTRIBUTION)
    wait_for_processing: bool = True
    allow_profile_creation: bool = True
    deployment_id: Optional[str] = None
    info_plist_path: Optional[Path] = None
    strict_privacy: bool = False

    def __post_init__(self):
        validate_app_identifier(self.app_identifier)
        validate_team_id(self.team_id)
        validate_scheme(self.scheme)
        if not isinstance(self.version_bump, VersionBump):
            object.__setattr__(self, "version_bump", VersionBump(validate_version_bump(self.version_bump)))
        object.__setattr__(self, "project_path", Path(self.project_path))
        object.__setattr__(self, "output_dir", Path(self.output_dir))
        if self.info_plist_path is not None:
            object.__setattr__(self, "info_plist_path", Path(self.info_plist_path))
        object.__setattr__(
            self, "required_types", tuple(CertificateType.normalize(t) for t in self.required_types)
        )
        if self.deployment_id is None:
            object.__setattr__(
                self, "deployment_id", generate_deployment_id(self.team_id, self.app_identifier)
            )

    @property
    def signing_type(self) -> CertificateType:
        """Type used to sign the uploaded package."""
        if CertificateType.DISTRIBUTION in self.required_types:
            return CertificateType.DISTRIBUTION
        return self.required_types[0]


@dataclass
class RunContext:
    """Adapters and services for one run. Nothing here is shared between runs."""
    team_id: str
    certificates: CertificateManager
    profiles: ProfileMatcher
    toolchain: BuildRepository
    uploader: Optional[UploadRepository] = None
    credentials: Optional[ApiCredentials] = None
    history_store: Optional[HistoryStore] = None
    store: Optional[EphemeralCredentialStore] = None
    events: EventSink = field(default_factory=EventSink)
    timeouts: Timeouts = field(default_factory=Timeouts)
    clock: Callable[[], datetime] = utcnow
    sleep: Callable[[float], None] = time.sleep
    on_deployed: Optional[Callable[["DeploymentRequest", VersionInfo], None]] = None
    preflight: Optional[Preflight] = None


@dataclass
class DeploymentResult:
    """Outcome of a run. to_dict() never includes tracebacks."""
    deployment_id: str
    status: str
    history: DeploymentHistory
    version: Optional[VersionInfo] = None
    archive_path: Optional[Path] = None
    package_path: Optional[Path] = None
    app_id: Optional[str] = None
    build_id: Optional[str] = None
    testflight_url: Optional[str] = None
    failed_phase: Optional[Phase] = None
    error: Optional[FlightdeckError] = None
    left_in_place: list[str] = field(default_factory=list)
    certificates: dict[str, Any] = field(default_factory=dict)
    profiles: dict[str, Any] = field(default_factory=dict)
    preflight: Optional[dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "deployment_id": self.deployment_id,
            "success": self.success,
            "status": self.status,
            "version": self.version.to_dict() if self.version else None,
            "archive_path": str(self.archive_path) if self.archive_path else None,
            "package_path": str(self.package_path) if self.package_path else None,
            "app_id": self.app_id,
            "build_id": self.build_id,
            "testflight_url": self.testflight_url,
            "certificates": self.certificates,
            "profiles": self.profiles,
            "duration": self.history.formatted_duration,
            "phases": [e.to_dict() for e in self.history.entries],
        }
        if self.preflight is not None:
            result["preflight"] = self.preflight
        if self.error:
            result["failed_phase"] = self.failed_phase.value if self.failed_phase else None
            result.update(self.error.to_dict())
            result["left_in_place"] = self.left_in_place
        return result


@dataclass
class _PhaseOutcome:
    outcome: str = Outcome.SUCCESS
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class _RunState:
    certificates: dict[CertificateType, list[Certificate]] = field(default_factory=dict)
    certificate_report: dict[str, Any] = field(default_factory=dict)
    profiles: dict[CertificateType, ProvisioningProfile] = field(default_factory=dict)
    version: Optional[VersionInfo] = None
    archive_path: Optional[Path] = None
    package_path: Optional[Path] = None
    app_id: Optional[str] = None
    build_id: Optional[str] = None
    processing_confirmed: bool = False
    preflight: Optional[dict[str, Any]] = None


class DeploymentOrchestrator:
    """Runs deployments phase by phase against a RunContext."""

    def __init__(self, context: RunContext):
        self.context = context

    def _phases(self, request: DeploymentRequest, dry_run: bool):
        phases = [
            (Phase.CERTIFICATE_VALIDATION, self._validate_certificates),
            (Phase.PROFILE_VALIDATION, self._validate_profiles),
        ]
        if dry_run:
            if self.context.preflight is not None:
                phases.append((Phase.PREFLIGHT, self._preflight))
            return phases
        phases += [
            (Phase.VERSION_MANAGEMENT, self._manage_version),
            (Phase.BUILD_AND_ARCHIVE, self._build_and_archive),
            (Phase.UPLOAD, self._upload),
        ]
        if request.wait_for_processing:
            phases.append((Phase.PROCESSING_MONITOR, self._monitor_processing))
        return phases

    def run(self, request: DeploymentRequest) -> DeploymentResult:
        """Run all phases.

        Args:
            request: What to deploy

        Returns:
            DeploymentResult; status is completed, uploaded_unconfirmed or failed
        """
        return self._execute(request, dry_run=False)

    def validate_only(self, request: DeploymentRequest) -> DeploymentResult:
        """Run certificate and profile validation, then the preflight checks.

        Nothing is built, bumped or uploaded. Preflight runs only when the
        context carries a Preflight.

        Returns:
            DeploymentResult; status is validated or failed
        """
        return self._execute(request, dry_run=True)

    def _execute(self, request: DeploymentRequest, dry_run: bool) -> DeploymentResult:
        ctx = self.context
        state = _RunState()
        history = DeploymentHistory(
            deployment_id=request.deployment_id,
            team_id=request.team_id,
            app_identifier=request.app_identifier,
            metadata={"scheme": request.scheme, "dry_run": dry_run, "version_bump": request.version_bump.value},
        ).start(ctx.clock())
        ctx.events.emit(
            "deployment.started",
            deployment_id=request.deployment_id,
            team_id=request.team_id,
            app_identifier=request.app_identifier,
            dry_run=dry_run,
        )

        error: Optional[FlightdeckError] = None
        failed_phase: Optional[Phase] = None
        degraded = False

        for phase, handler in self._phases(request, dry_run):
            logger.info(f"[{request.deployment_id}] {phase.value} started")
            started = time.monotonic()
            details: dict[str, Any] = {}
            try:
                outcome = handler(request, state)
            except Exception as e:
                error = classify_error(e, phase.value).with_context(
                    phase=phase.value,
                    team_id=request.team_id,
                    app_identifier=request.app_identifier,
                )
                if not isinstance(e, FlightdeckError):
                    logger.error(f"Unexpected error in {phase.value}: {e}", exc_info=True)
                report = error.context.get("report")
                if isinstance(report, dict):
                    details["certificates"] = {
                        t.value: a.to_dict() for t, a in report.items() if isinstance(a, TypeAvailability)
                    }
                outcome = _PhaseOutcome(Outcome.FAILURE, error.message, details)

            history = history.add_entry(
                phase.value,
                outcome.outcome,
                outcome.message,
                duration=time.monotonic() - started,
                details=outcome.details,
                now=ctx.clock(),
            )
            ctx.events.emit(
                "deployment.phase",
                deployment_id=request.deployment_id,
                phase=phase.value,
                outcome=outcome.outcome,
            )
            if outcome.outcome == Outcome.DEGRADED:
                degraded = True
            if error is not None:
                failed_phase = phase
                break

        if error is not None:
            status = "failed"
            history = history.fail(error.kind, error.message, now=ctx.clock())
        else:
            if dry_run:
                status = "validated"
            elif degraded:
                status = "uploaded_unconfirmed"
            else:
                status = "completed"
            history = history.complete(
                now=ctx.clock(),
                result=status,
                version=state.version.marketing_version if state.version else None,
                build=state.version.build_number if state.version else None,
            )
            if not dry_run and ctx.on_deployed and state.version:
                try:
                    ctx.on_deployed(request, state.version)
                except (OSError, ValueError) as e:
                    logger.warning(f"Could not record deployment in team info: {e}")

        if ctx.history_store is not None:
            try:
                ctx.history_store.save(history)
            except OSError as e:
                logger.warning(f"Could not save deployment history: {e}")

        ctx.events.emit(
            f"deployment.{'failed' if error else 'finished'}",
            level=logging.ERROR if error else logging.INFO,
            deployment_id=request.deployment_id,
            team_id=request.team_id,
            app_identifier=request.app_identifier,
            status=status,
            phase=failed_phase.value if failed_phase else None,
            duration=history.formatted_duration,
        )

        left_in_place = []
        if error is not None:
            for path in (state.archive_path, state.package_path):
                if path is not None and Path(path).exists():
                    left_in_place.append(str(path))

        return DeploymentResult(
            deployment_id=request.deployment_id,
            status=status,
            history=history,
            version=state.version,
            archive_path=state.archive_path,
            package_path=state.package_path,
            app_id=state.app_id,
            build_id=state.build_id,
            testflight_url=TESTFLIGHT_URL.format(app_id=state.app_id) if state.app_id else None,
            failed_phase=failed_phase,
            error=error,
            left_in_place=left_in_place,
            certificates=state.certificate_report,
            profiles={t.value: p.to_dict() for t, p in state.profiles.items()},
            preflight=state.preflight,
        )

    # Phases

    def _validate_certificates(self, request: DeploymentRequest, state: _RunState) -> _PhaseOutcome:
        report = self.context.certificates.ensure_available(request.required_types)
        for certificate_type, availability in report.items():
            if availability.certificate is not None:
                certificate = availability.certificate
            else:
                certificate = availability.candidate.to_certificate(request.team_id)
            state.certificates[certificate_type] = [certificate]
        state.certificate_report = {t.value: a.to_dict() for t, a in report.items()}

        sources = ", ".join(f"{t.value}={a.source}" for t, a in report.items())
        warnings = [w for a in report.values() for w in a.warnings]
        return _PhaseOutcome(
            message=f"Certificates available ({sources})",
            details={"sources": {t.value: a.source for t, a in report.items()}, "warnings": warnings},
        )

    def _validate_profiles(self, request: DeploymentRequest, state: _RunState) -> _PhaseOutcome:
        availability = self.context.profiles.ensure_profiles(
            request.app_identifier,
            state.certificates,
            request.team_id,
            allow_create=request.allow_profile_creation,
        )
        missing = [t for t, a in availability.items() if not a.available]
        if missing:
            first = availability[missing[0]].error
            raise ProfileError(
                f"No valid provisioning profile for {request.app_identifier} "
                f"({', '.join(t.value for t in missing)})",
                recovery_suggestions=first.recovery_suggestions if first else None,
                context={"missing_types": [t.value for t in missing]},
            )

        for certificate_type, profile_availability in availability.items():
            profile = profile_availability.profile
            self.context.toolchain.install_profile(profile)
            state.profiles[certificate_type] = profile

        return _PhaseOutcome(
            message="Profiles available: " + ", ".join(
                f"{t.value}={p.name}" for t, p in state.profiles.items()
            ),
            details={
                "profiles": {t.value: p.uuid for t, p in state.profiles.items()},
                "created": [t.value for t, a in availability.items() if a.created],
            },
        )

    def _manage_version(self, request: DeploymentRequest, state: _RunState) -> _PhaseOutcome:
        toolchain = self.context.toolchain
        current = toolchain.read_version_info(request.project_path)
        target = current.bump(request.version_bump)
        toolchain.update_version(request.project_path, target)
        state.version = target
        return _PhaseOutcome(
            message=f"Version {current} -> {target}",
            details={"previous": current.to_dict(), "current": target.to_dict()},
        )

    def _build_and_archive(self, request: DeploymentRequest, state: _RunState) -> _PhaseOutcome:
        toolchain = self.context.toolchain
        version = state.version
        stem = f"{request.scheme}_{version.marketing_version}_{version.build_number}"
        archive_path = request.output_dir / f"{stem}.xcarchive"
        export_dir = request.output_dir / f"{stem}_ipa"

        signing_type = request.signing_type
        profile = state.profiles[signing_type]
        store = self.context.store
        signing = SigningConfig(
            team_id=request.team_id,
            code_sign_identity=signing_type.common_name_prefixes[0],
            profile_specifier=profile.name,
            keychain_path=Path(store.name) if store is not None else None,
        )

        archived = toolchain.archive(
            request.project_path, request.scheme, request.configuration, archive_path, signing
        )
        if archived.output_path is not None:
            state.archive_path = archived.output_path
        if not archived.success:
            raise BuildError(
                f"Archive of {request.scheme} failed: {archived.error}",
                context={"archive_path": str(archive_path)},
            )

        export_options = ExportOptions(
            team_id=request.team_id,
            method=ProfileType.for_certificate_type(signing_type).export_method,
            provisioning_profiles={request.app_identifier: profile.name},
            signing_certificate=signing_type.common_name_prefixes[0],
        )
        exported = toolchain.export_package(archived.output_path, export_options, export_dir)
        if exported.output_path is not None:
            state.package_path = exported.output_path
        if not exported.success:
            raise BuildError(
                f"Export of {request.scheme} failed: {exported.error}",
                error_code="EXPORT_FAILED",
                context={"export_dir": str(export_dir)},
            )

        return _PhaseOutcome(
            message=f"Exported {exported.output_path.name}",
            details={
                "archive_path": str(archived.output_path),
                "package_path": str(exported.output_path),
                "archive_seconds": round(archived.duration, 1),
                "export_seconds": round(exported.duration, 1),
            },
        )

    def _upload(self, request: DeploymentRequest, state: _RunState) -> _PhaseOutcome:
        ctx = self.context
        if ctx.uploader is None or ctx.credentials is None:
            raise UploadError(
                "Uploading requires App Store Connect API credentials",
                recovery_suggestions=[
                    "Place AuthKey_<KEYID>.p8 in the team directory",
                    "Set API_KEY_ID and API_ISSUER_ID in config.env",
                ],
            )

        ack = ctx.uploader.upload_build(state.package_path, ctx.credentials)
        ctx.credentials = ctx.credentials.record_usage(f"upload {request.deployment_id}")
        ctx.events.emit(
            "build.uploaded",
            deployment_id=request.deployment_id,
            app_identifier=request.app_identifier,
            build=state.version.build_number,
            status=ack.get("status", "uploaded"),
        )
        return _PhaseOutcome(message=f"Uploaded build {state.version}", details={"ack": ack})

    def _monitor_processing(self, request: DeploymentRequest, state: _RunState) -> _PhaseOutcome:
        """Poll processing state. Timeouts and failures degrade; they never fail the run."""
        ctx = self.context
        build_number = state.version.build_number
        waited = 0
        last_state = "UNKNOWN"

        while True:
            try:
                status = ctx.uploader.get_build_status(request.app_identifier, build_number)
            except Exception as e:
                error = classify_error(e, "check build processing status")
                logger.warning(f"Build status check failed: {error.message}")
                return _PhaseOutcome(
                    Outcome.DEGRADED,
                    f"Uploaded but unconfirmed: status check failed: {error.message}",
                    {"state": last_state},
                )

            last_state = status.get("state", "UNKNOWN")
            state.app_id = status.get("app_id") or state.app_id
            state.build_id = status.get("build_id") or state.build_id

            if last_state in READY_STATES:
                state.processing_confirmed = True
                return _PhaseOutcome(
                    message=f"Build {build_number} ready for testing",
                    details={"state": last_state, "build_id": state.build_id},
                )
            if last_state in FAILED_STATES:
                return _PhaseOutcome(
                    Outcome.DEGRADED,
                    f"Uploaded but unconfirmed: processing reported {last_state}",
                    {"state": last_state, "build_id": state.build_id},
                )
            if waited + ctx.timeouts.processing_poll_interval > ctx.timeouts.processing_wait:
                return _PhaseOutcome(
                    Outcome.DEGRADED,
                    f"Uploaded but unconfirmed: still {last_state} after {ctx.timeouts.processing_wait}s",
                    {"state": last_state, "build_id": state.build_id},
                )
            ctx.sleep(ctx.timeouts.processing_poll_interval)
            waited += ctx.timeouts.processing_poll_interval

    def _preflight(self, request: DeploymentRequest, state: _RunState) -> _PhaseOutcome:
        report = self.context.preflight.run(
            request.project_path,
            request.scheme,
            request.configuration,
            info_plist_path=request.info_plist_path,
            strict_privacy=request.strict_privacy,
        )
        state.preflight = report.to_dict()

        failed = report.failed
        if failed:
            privacy = any(c.domain == "privacy" for c in failed)
            raise ValidationError(
                "Preflight checks failed: " + "; ".join(c.message for c in failed),
                error_code="PRIVACY_DESCRIPTION_MISSING" if privacy else "PREFLIGHT_FAILED",
                recovery_suggestions=[c.suggestion for c in failed if c.suggestion] or None,
                context={"failed_checks": [f"{c.domain}.{c.name}" for c in failed]},
            )

        warnings = [c.message for c in report.warnings]
        return _PhaseOutcome(
            message=f"Preflight passed ({len(report.checks)} checks, {len(warnings)} warnings)",
            details={"warnings": warnings},
        )
