"""
Signing certificate lifecycle for one team.

Ensures that every required certificate type is usable from the run's
keychain: imports P12 exports, recreates expired certificates through
App Store Connect, and frees quota before creating when the team is
at its certificate limit.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from ..error_handling import CertificateError, FlightdeckError
from ..events import EventSink
from .credential_store import generate_password
from .detector import CertificateDetector
from .importer import CertificateImporter
from .models import (
    CERTIFICATE_LIMITS,
    CandidateSource,
    Certificate,
    CertificateCandidate,
    CertificateType,
    utcnow,
)
from .p12 import generate_signing_request, write_p12
from .validator import Check, CertificateValidator, ValidationLevel, ValidationReport

if TYPE_CHECKING:
    from ..repositories import CertificateRepository, ProfileRepository

logger = logging.getLogger(__name__)


class CleanupStrategy(Enum):
    """How to free quota before creating a certificate."""
    REMOVE_EXPIRED = "remove_expired"
    REMOVE_OLDEST = "remove_oldest"
    CANNOT_CREATE = "cannot_create"


@dataclass(frozen=True)
class CleanupPlan:
    """Which certificates to revoke, and why."""
    strategy: CleanupStrategy
    targets: tuple[Certificate, ...] = ()
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "targets": [c.id for c in self.targets],
            "reason": self.reason,
        }


def select_cleanup_strategy(
    existing: list[Certificate],
    in_use_ids: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> CleanupPlan:
    """Choose which certificates to revoke to make room for a new one.

    Expired certificates are always removed first. Otherwise the
    earliest-expiring certificate that does not back an active
    provisioning profile is removed.

    Args:
        existing: The team's certificates of one type
        in_use_ids: Certificate ids or fingerprints embedded in active profiles
        now: Current time

    Returns:
        CleanupPlan
    """
    if not existing:
        return CleanupPlan(CleanupStrategy.CANNOT_CREATE, reason="No certificates to remove")

    expired = [c for c in existing if c.is_expired(now)]
    if expired:
        return CleanupPlan(
            CleanupStrategy.REMOVE_EXPIRED,
            tuple(expired),
            reason=f"{len(expired)} expired certificate(s)",
        )

    in_use = set(in_use_ids)
    removable = [
        c for c in existing
        if c.id not in in_use and (c.thumbprint is None or c.thumbprint not in in_use)
    ]
    if not removable:
        return CleanupPlan(
            CleanupStrategy.CANNOT_CREATE,
            reason="Every certificate backs an active provisioning profile",
        )

    oldest = min(removable, key=lambda c: c.expires_at)
    return CleanupPlan(
        CleanupStrategy.REMOVE_OLDEST,
        (oldest,),
        reason=f"Oldest certificate expires {oldest.expires_at.date().isoformat()}",
    )


@dataclass
class TypeAvailability:
    """Whether one certificate type is usable, and how it became so.

    Attributes:
        certificate_type: The type
        available: Usable from the run's keychain
        source: credential_store, file_import or remote_creation
        reason: Machine-readable reason when unavailable
        candidate: The candidate that was chosen
        validation: Validation report for the candidate
        recovery: Recovery action taken, if any
        error: Error explaining unavailability
        warnings: Non-fatal findings (e.g. expiring soon)
    """
    certificate_type: CertificateType
    available: bool
    source: Optional[str] = None
    reason: Optional[str] = None
    candidate: Optional[CertificateCandidate] = None
    validation: Optional[ValidationReport] = None
    recovery: Optional[str] = None
    error: Optional[FlightdeckError] = None
    warnings: list[str] = field(default_factory=list)
    certificate: Optional[Certificate] = None

    @property
    def fingerprint(self) -> Optional[str]:
        if self.candidate and self.candidate.fingerprint:
            return self.candidate.fingerprint
        if self.certificate:
            return self.certificate.thumbprint
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.certificate_type.value,
            "available": self.available,
            "source": self.source,
            "reason": self.reason,
            "recovery": self.recovery,
            "warnings": self.warnings,
            "fingerprint": self.fingerprint,
        }
        if self.candidate:
            result["candidate"] = self.candidate.to_dict()
        if self.validation:
            result["checks"] = [r.to_dict() for r in self.validation.results]
        if self.error:
            result["error"] = self.error.to_dict()
        return result


class CertificateManager:
    """Makes required certificate types available for one run."""

    def __init__(
        self,
        team_id: str,
        detector: CertificateDetector,
        validator: CertificateValidator,
        importer: CertificateImporter,
        remote: Optional["CertificateRepository"] = None,
        profile_sources: Optional[list["ProfileRepository"]] = None,
        output_dir: Optional[Path] = None,
        export_password: Optional[str] = None,
        events: Optional[EventSink] = None,
        clock: Callable[[], datetime] = utcnow,
        protect_in_use: bool = True,
        on_created: Optional[Callable[[Certificate, Path, str], None]] = None,
    ):
        """Initialize the certificate manager.

        Args:
            team_id: The team
            detector: Candidate detection
            validator: Candidate validation
            importer: P12 import into the run's keychain
            remote: App Store Connect certificates (None disables creation)
            profile_sources: Profile sources used to find in-use certificates
            output_dir: Where newly created certificates are exported as P12
            export_password: Password for exported P12 files
            events: Audit event sink
            clock: Returns the current time
            protect_in_use: Never revoke certificates embedded in active profiles
            on_created: Called with (certificate, p12 path, password) after creation
        """
        self.team_id = team_id
        self.detector = detector
        self.validator = validator
        self.importer = importer
        self.remote = remote
        self.profile_sources = profile_sources or []
        self.output_dir = Path(output_dir) if output_dir else None
        self.export_password = export_password
        self.events = events or EventSink()
        self.clock = clock
        self.protect_in_use = protect_in_use
        self.on_created = on_created
        self._recovery_attempted: set[CertificateType] = set()

    def ensure_available(
        self,
        required_types: Iterable[CertificateType],
        level: ValidationLevel = ValidationLevel.STANDARD,
    ) -> dict[CertificateType, TypeAvailability]:
        """Make every required type usable, recovering where possible.

        Args:
            required_types: Types that must be available
            level: Validation level for the chosen candidates

        Returns:
            Per-type availability report

        Raises:
            CertificateError: If any type is still unavailable; the context
                carries 'missing_types' and the full 'report'
        """
        report = {}
        for certificate_type in required_types:
            certificate_type = CertificateType.normalize(certificate_type)
            report[certificate_type] = self.ensure_type_available(certificate_type, level)

        missing = [t for t, availability in report.items() if not availability.available]
        if missing:
            suggestions: list[str] = []
            for t in missing:
                error = report[t].error
                for suggestion in (error.recovery_suggestions if error else []):
                    if suggestion not in suggestions:
                        suggestions.append(suggestion)
            raise CertificateError(
                "Required certificates unavailable: "
                + ", ".join(f"{t.value} ({report[t].reason})" for t in missing),
                error_code="CERTIFICATES_UNAVAILABLE",
                recovery_suggestions=suggestions or None,
                context={
                    "team_id": self.team_id,
                    "missing_types": [t.value for t in missing],
                    "report": report,
                },
            )
        return report

    def ensure_type_available(
        self,
        certificate_type: CertificateType,
        level: ValidationLevel = ValidationLevel.STANDARD,
    ) -> TypeAvailability:
        """Make one type usable. Never raises for expected failures."""
        candidate = self.detector.get_best_certificate(certificate_type)

        if candidate is None or candidate.source is CandidateSource.REMOTE:
            # A portal-only certificate has no private key on this machine
            recovery = "create_missing" if candidate is None else "create_without_local_key"
            return self._recover_by_creation(certificate_type, recovery)

        validation = self.validator.validate(candidate, level)
        if validation.valid:
            return self._make_accessible(certificate_type, candidate, validation)

        failed = set(validation.failed_checks)
        if Check.TEAM_MATCH in failed:
            result = validation.result(Check.TEAM_MATCH)
            return TypeAvailability(
                certificate_type=certificate_type,
                available=False,
                reason="team_mismatch",
                candidate=candidate,
                validation=validation,
                error=CertificateError(
                    f"{certificate_type.value} certificate {candidate.describe()}: {result.message}",
                    error_code="TEAM_MISMATCH",
                    context={"team_id": self.team_id, "type": certificate_type.value},
                ),
            )

        if Check.EXPIRATION in failed:
            return self._recover_by_creation(certificate_type, "recreate_expired", candidate, validation)

        if candidate.source is CandidateSource.FILE and failed <= {Check.STORE_ACCESS, Check.SIGNING_CAPABILITY}:
            return self._recover_by_reimport(certificate_type, candidate, level)

        return TypeAvailability(
            certificate_type=certificate_type,
            available=False,
            reason="validation_failed",
            candidate=candidate,
            validation=validation,
            error=CertificateError(
                f"{certificate_type.value} certificate {candidate.describe()} failed validation: "
                + "; ".join(r.message for r in validation.results if not r.valid),
                error_code="CERTIFICATE_IMPORT_FAILED" if candidate.source is CandidateSource.FILE else None,
                context={"team_id": self.team_id, "type": certificate_type.value},
            ),
        )

    def _warnings(self, validation: Optional[ValidationReport]) -> list[str]:
        if validation is None:
            return []
        return [w.message for w in validation.warnings]

    def _make_accessible(
        self,
        certificate_type: CertificateType,
        candidate: CertificateCandidate,
        validation: ValidationReport,
    ) -> TypeAvailability:
        if candidate.source is CandidateSource.CREDENTIAL_STORE:
            return TypeAvailability(
                certificate_type=certificate_type,
                available=True,
                source="credential_store",
                candidate=candidate,
                validation=validation,
                warnings=self._warnings(validation),
            )

        access = self.validator.run_check(Check.STORE_ACCESS, candidate)
        if access.valid:
            recovery = None
        else:
            imported = self.importer.import_certificate(
                candidate.file_path,
                self.importer.passwords.resolve(candidate.file_path),
                certificate_type,
            )
            self.detector.invalidate_cache()
            if not imported.success:
                return TypeAvailability(
                    certificate_type=certificate_type,
                    available=False,
                    reason="import_failed",
                    candidate=candidate,
                    validation=validation,
                    error=imported.error,
                )
            recovery = "imported"

        return TypeAvailability(
            certificate_type=certificate_type,
            available=True,
            source="file_import",
            candidate=candidate,
            validation=validation,
            recovery=recovery,
            warnings=self._warnings(validation),
        )

    def _recover_by_reimport(
        self,
        certificate_type: CertificateType,
        candidate: CertificateCandidate,
        level: ValidationLevel,
    ) -> TypeAvailability:
        self._recovery_attempted.add(certificate_type)
        imported = self.importer.import_certificate(
            candidate.file_path,
            self.importer.passwords.resolve(candidate.file_path),
            certificate_type,
        )
        self.detector.invalidate_cache()
        validation = self.validator.validate(candidate, level)
        if imported.success and validation.valid:
            return TypeAvailability(
                certificate_type=certificate_type,
                available=True,
                source="file_import",
                candidate=candidate,
                validation=validation,
                recovery="reimported",
                warnings=self._warnings(validation),
            )
        return TypeAvailability(
            certificate_type=certificate_type,
            available=False,
            reason="import_failed",
            candidate=candidate,
            validation=validation,
            recovery="reimported",
            error=imported.error or CertificateError(
                f"{certificate_type.value} certificate still unusable after re-import",
                error_code="CERTIFICATE_IMPORT_FAILED",
                context={"team_id": self.team_id, "type": certificate_type.value},
            ),
        )

    def _recover_by_creation(
        self,
        certificate_type: CertificateType,
        recovery: str,
        candidate: Optional[CertificateCandidate] = None,
        validation: Optional[ValidationReport] = None,
    ) -> TypeAvailability:
        def unavailable(reason: str, error: FlightdeckError) -> TypeAvailability:
            return TypeAvailability(
                certificate_type=certificate_type,
                available=False,
                reason=reason,
                candidate=candidate,
                validation=validation,
                recovery=recovery,
                error=error.with_context(team_id=self.team_id, type=certificate_type.value),
            )

        if self.remote is None:
            return unavailable(
                "not_found_no_remote_credentials",
                CertificateError(
                    f"No usable {certificate_type.value} certificate found, and certificates "
                    "cannot be created without App Store Connect API credentials",
                    error_code="CERTIFICATES_UNAVAILABLE",
                ),
            )

        if certificate_type in self._recovery_attempted:
            return unavailable(
                "recovery_already_attempted",
                CertificateError(
                    f"Recovery for {certificate_type.value} certificates was already attempted in this run"
                ),
            )
        self._recovery_attempted.add(certificate_type)

        try:
            certificate, p12_path = self.create_certificate(certificate_type)
        except CertificateError as e:
            reason = "quota_exhausted" if e.error_code == "CERTIFICATE_QUOTA_EXHAUSTED" else "creation_failed"
            return unavailable(reason, e)
        except FlightdeckError as e:
            return unavailable("creation_failed", e)

        imported = self.importer.import_certificate(p12_path, self.export_password, certificate_type)
        self.detector.invalidate_cache()
        if not imported.success:
            return unavailable("import_failed", imported.error)

        return TypeAvailability(
            certificate_type=certificate_type,
            available=True,
            source="remote_creation",
            candidate=self.detector.get_best_certificate(certificate_type),
            recovery=recovery,
            certificate=certificate,
        )

    def in_use_certificate_ids(self) -> set[str]:
        """Ids and fingerprints of certificates embedded in active profiles."""
        now = self.clock()
        in_use: set[str] = set()
        for source in self.profile_sources:
            try:
                profiles = source.list_profiles(None, self.team_id)
            except Exception as e:
                logger.warning(f"Could not list profiles from {type(source).__name__}: {e}")
                continue
            for profile in profiles:
                if profile.is_expired(now):
                    continue
                in_use.update(profile.certificate_ids)
                in_use.update(profile.certificate_fingerprints)
        return in_use

    def plan_cleanup(
        self,
        certificate_type: CertificateType,
        existing: Optional[list[Certificate]] = None,
    ) -> CleanupPlan:
        """Plan which certificates of a type to revoke."""
        if existing is None:
            if self.remote is None:
                return CleanupPlan(CleanupStrategy.CANNOT_CREATE, reason="No App Store Connect access")
            existing = self.remote.list_certificates(self.team_id, certificate_type)
        in_use = self.in_use_certificate_ids() if self.protect_in_use else set()
        return select_cleanup_strategy(existing, in_use, self.clock())

    def cleanup(self, certificate_type: CertificateType, dry_run: bool = False) -> CleanupPlan:
        """Revoke certificates chosen by the cleanup strategy.

        Args:
            certificate_type: Type to clean up
            dry_run: Only plan, do not revoke

        Returns:
            The executed (or planned) CleanupPlan
        """
        plan = self.plan_cleanup(certificate_type)
        self.events.emit(
            "certificate.cleanup_planned",
            team_id=self.team_id,
            type=certificate_type.value,
            strategy=plan.strategy.value,
            targets=[c.id for c in plan.targets],
            dry_run=dry_run,
        )
        if not dry_run:
            for target in plan.targets:
                self.remote.revoke_certificate(target.id)
                self.events.emit(
                    "certificate.revoked",
                    team_id=self.team_id,
                    type=certificate_type.value,
                    certificate_id=target.id,
                    expires_at=target.expires_at.isoformat(),
                    status="revoked",
                )
            if plan.targets:
                self.detector.invalidate_cache()
        return plan

    def create_certificate(self, certificate_type: CertificateType) -> tuple[Certificate, Path]:
        """Create a certificate through App Store Connect and export it as P12.

        Frees quota first when the team is at its limit.

        Returns:
            Tuple of (certificate, path of the exported P12)

        Raises:
            CertificateError: If quota cannot be freed or no output directory is set
            APIError: If App Store Connect rejects a request
        """
        if self.remote is None:
            raise CertificateError("Certificate creation requires App Store Connect API credentials")
        if self.output_dir is None:
            raise CertificateError(
                "No certificates directory configured for new certificates",
                recovery_suggestions=["Configure credentials_root so certificates can be exported"],
            )

        existing = self.remote.list_certificates(self.team_id, certificate_type)
        limit = CERTIFICATE_LIMITS[certificate_type]
        if len(existing) >= limit:
            logger.info(
                f"Team {self.team_id} has {len(existing)}/{limit} {certificate_type.value} certificates"
            )
            plan = self.cleanup(certificate_type)
            if plan.strategy is CleanupStrategy.CANNOT_CREATE:
                self.events.emit(
                    "certificate.create_blocked",
                    level=logging.WARNING,
                    team_id=self.team_id,
                    type=certificate_type.value,
                    status="quota_exhausted",
                    reason=plan.reason,
                )
                raise CertificateError(
                    f"Team {self.team_id} is at its {certificate_type.value} certificate limit "
                    f"({limit}) and nothing can be revoked: {plan.reason}",
                    error_code="CERTIFICATE_QUOTA_EXHAUSTED",
                    recovery_suggestions=[
                        "Revoke the oldest certificate to free quota",
                        "Export the existing certificate as P12 from the machine that created it",
                    ],
                )

        key, csr_pem = generate_signing_request(f"Flightdeck {certificate_type.value} {self.team_id}")
        certificate = self.remote.create_certificate(self.team_id, certificate_type, csr_pem)
        self.events.emit(
            "certificate.created",
            team_id=self.team_id,
            type=certificate_type.value,
            certificate_id=certificate.id,
            expires_at=certificate.expires_at.isoformat(),
            status="created",
        )

        if not certificate.content:
            raise CertificateError(
                f"App Store Connect returned certificate {certificate.id} without content",
                error_code="CERTIFICATE_IMPORT_FAILED",
            )

        if not self.export_password:
            self.export_password = generate_password()
            self.importer.passwords.default = self.importer.passwords.default or self.export_password
        p12_path = self.output_dir / f"{certificate_type.value}_{certificate.id}.p12"
        write_p12(p12_path, key, certificate.content, self.export_password)
        logger.info(f"Exported new {certificate_type.value} certificate to {p12_path}")

        if self.on_created:
            self.on_created(certificate, p12_path, self.export_password)
        return certificate, p12_path

    def status(self, required_types: Iterable[CertificateType]) -> dict[str, Any]:
        """Health of every candidate per type, at basic validation level."""
        now = self.clock()
        result: dict[str, Any] = {}
        for certificate_type in required_types:
            certificate_type = CertificateType.normalize(certificate_type)
            candidates = self.detector.detect(certificate_type)
            entries = []
            for candidate in candidates:
                report = self.validator.validate(candidate, ValidationLevel.BASIC)
                entry = candidate.to_dict()
                entry["valid"] = report.valid
                if candidate.expires_at:
                    days = (candidate.expires_at - now).days
                    entry["days_until_expiration"] = days
                    entry["expired"] = now >= candidate.expires_at
                entries.append(entry)
            result[certificate_type.value] = {
                "count": len(entries),
                "limit": CERTIFICATE_LIMITS[certificate_type],
                "candidates": entries,
            }
        return result
