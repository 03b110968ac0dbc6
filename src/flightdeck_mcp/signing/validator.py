"""
Certificate validation chains.

Each level runs an ordered list of independent checks. A check that
raises is recorded as a failure rather than aborting the chain, so a
report always covers every check of its level.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from .credential_store import EphemeralCredentialStore
from .models import (
    EXPIRATION_WARNING_DAYS,
    CandidateSource,
    CertificateCandidate,
    ensure_aware,
    utcnow,
)
from .p12 import P12Identity, P12PasswordError, PasswordMap, open_p12

logger = logging.getLogger(__name__)


class ValidationLevel(Enum):
    """How thoroughly to validate."""
    BASIC = "basic"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class Check(Enum):
    """Individual validation checks."""
    EXISTENCE = "existence"
    READABILITY = "readability"
    FORMAT = "format"
    EXPIRATION = "expiration"
    TEAM_MATCH = "team_match"
    STORE_ACCESS = "store_access"
    SIGNING_CAPABILITY = "signing_capability"


_BASIC = [Check.EXISTENCE, Check.READABILITY, Check.FORMAT]
_STANDARD = _BASIC + [Check.EXPIRATION, Check.TEAM_MATCH]
_COMPREHENSIVE = _STANDARD + [Check.STORE_ACCESS, Check.SIGNING_CAPABILITY]

VALIDATION_LEVELS = {
    ValidationLevel.BASIC: _BASIC,
    ValidationLevel.STANDARD: _STANDARD,
    ValidationLevel.COMPREHENSIVE: _COMPREHENSIVE,
}


class CheckStatus(Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one check. Warnings count as valid."""
    check: Check
    status: CheckStatus
    message: str

    @property
    def valid(self) -> bool:
        return self.status is not CheckStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {"check": self.check.value, "status": self.status.value, "message": self.message}


@dataclass
class ValidationReport:
    """All check results for one candidate at one level."""
    candidate: CertificateCandidate
    level: ValidationLevel
    results: list[CheckResult] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return all(r.valid for r in self.results)

    @property
    def failed_checks(self) -> list[Check]:
        return [r.check for r in self.results if not r.valid]

    @property
    def warnings(self) -> list[CheckResult]:
        return [r for r in self.results if r.status is CheckStatus.WARNING]

    def result(self, check: Check) -> Optional[CheckResult]:
        for r in self.results:
            if r.check is check:
                return r
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "level": self.level.value,
            "candidate": self.candidate.to_dict(),
            "checks": [r.to_dict() for r in self.results],
        }


class CertificateValidator:
    """Validates certificate candidates for one team."""

    def __init__(
        self,
        team_id: str,
        store: Optional[EphemeralCredentialStore] = None,
        passwords: Optional[PasswordMap] = None,
        warning_days: int = EXPIRATION_WARNING_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the validator.

        Args:
            team_id: Team the certificate must belong to
            store: The run's ephemeral keychain (for access and signing checks)
            passwords: Passwords used to open P12 candidates
            warning_days: Days before expiration that produce a warning
            clock: Returns the current time
        """
        self.team_id = team_id
        self.store = store
        self.passwords = passwords or PasswordMap()
        self.warning_days = warning_days
        self.clock = clock
        self._checks: dict[Check, Callable[[CertificateCandidate], CheckResult]] = {
            Check.EXISTENCE: self.check_existence,
            Check.READABILITY: self.check_readability,
            Check.FORMAT: self.check_format,
            Check.EXPIRATION: self.check_expiration,
            Check.TEAM_MATCH: self.check_team_match,
            Check.STORE_ACCESS: self.check_store_access,
            Check.SIGNING_CAPABILITY: self.check_signing_capability,
        }

    def validate(
        self,
        candidate: CertificateCandidate,
        level: ValidationLevel = ValidationLevel.STANDARD,
    ) -> ValidationReport:
        """Run every check of a level against a candidate.

        Args:
            candidate: The candidate to validate
            level: Validation level

        Returns:
            ValidationReport with one result per check, in order
        """
        report = ValidationReport(candidate=candidate, level=level)
        for check in VALIDATION_LEVELS[level]:
            report.results.append(self.run_check(check, candidate))

        if not report.valid:
            logger.info(
                f"{candidate.describe()} failed {level.value} validation: "
                f"{', '.join(c.value for c in report.failed_checks)}"
            )
        return report

    def run_check(self, check: Check, candidate: CertificateCandidate) -> CheckResult:
        """Run one check, converting exceptions into a failed result."""
        try:
            return self._checks[check](candidate)
        except Exception as e:
            logger.warning(f"{check.value} check raised for {candidate.describe()}: {e}")
            return CheckResult(check, CheckStatus.FAILED, f"{check.value} check raised: {e}")

    def _identity(self, candidate: CertificateCandidate) -> P12Identity:
        return open_p12(candidate.file_path, self.passwords.candidates(candidate.file_path))

    def _fingerprint(self, candidate: CertificateCandidate) -> Optional[str]:
        if candidate.fingerprint:
            return candidate.fingerprint
        if candidate.source is CandidateSource.FILE and candidate.file_path:
            return self._identity(candidate).fingerprint
        return None

    def _store_fingerprints(self) -> set[str]:
        if self.store is None or not self.store.is_open:
            return set()
        return {c.fingerprint for c in self.store.list_certificates()}

    def check_existence(self, candidate: CertificateCandidate) -> CheckResult:
        if candidate.source is CandidateSource.FILE:
            if candidate.file_path and candidate.file_path.is_file():
                return CheckResult(Check.EXISTENCE, CheckStatus.PASSED, "File exists")
            return CheckResult(Check.EXISTENCE, CheckStatus.FAILED, f"File not found: {candidate.file_path}")

        if candidate.source is CandidateSource.REMOTE:
            if candidate.certificate is not None:
                return CheckResult(Check.EXISTENCE, CheckStatus.PASSED, "Known to App Store Connect")
            return CheckResult(Check.EXISTENCE, CheckStatus.FAILED, "No portal certificate attached")

        if candidate.fingerprint and candidate.fingerprint in self._store_fingerprints():
            return CheckResult(Check.EXISTENCE, CheckStatus.PASSED, "Present in keychain")
        return CheckResult(Check.EXISTENCE, CheckStatus.FAILED, "Not present in keychain")

    def check_readability(self, candidate: CertificateCandidate) -> CheckResult:
        if candidate.source is not CandidateSource.FILE:
            return CheckResult(Check.READABILITY, CheckStatus.PASSED, "Not file based")
        if candidate.file_path and os.access(candidate.file_path, os.R_OK):
            return CheckResult(Check.READABILITY, CheckStatus.PASSED, "File is readable")
        return CheckResult(Check.READABILITY, CheckStatus.FAILED, f"File is not readable: {candidate.file_path}")

    def check_format(self, candidate: CertificateCandidate) -> CheckResult:
        if candidate.source is CandidateSource.FILE:
            if candidate.file_path.suffix.lower() != ".p12":
                return CheckResult(Check.FORMAT, CheckStatus.FAILED, "Expected a .p12 file")
            try:
                self._identity(candidate)
            except P12PasswordError as e:
                return CheckResult(
                    Check.FORMAT,
                    CheckStatus.FAILED,
                    f"{e}; re-export the P12 with the current import password",
                )
            return CheckResult(Check.FORMAT, CheckStatus.PASSED, "Valid PKCS#12 bundle")

        if candidate.source is CandidateSource.REMOTE:
            if candidate.certificate is not None:
                return CheckResult(Check.FORMAT, CheckStatus.PASSED, "Portal certificate record")
            return CheckResult(Check.FORMAT, CheckStatus.FAILED, "No portal certificate attached")

        if candidate.subject:
            return CheckResult(Check.FORMAT, CheckStatus.PASSED, "Parsed X.509 certificate")
        return CheckResult(Check.FORMAT, CheckStatus.FAILED, "Certificate subject could not be read")

    def check_expiration(self, candidate: CertificateCandidate) -> CheckResult:
        expires_at = candidate.expires_at
        if expires_at is None and candidate.source is CandidateSource.FILE:
            expires_at = self._identity(candidate).expires_at
        if expires_at is None:
            return CheckResult(Check.EXPIRATION, CheckStatus.FAILED, "Expiration date unknown")

        expires_at = ensure_aware(expires_at)
        now = ensure_aware(self.clock())
        if now >= expires_at:
            return CheckResult(
                Check.EXPIRATION, CheckStatus.FAILED, f"Expired on {expires_at.date().isoformat()}"
            )

        days = (expires_at - now).days
        if days <= self.warning_days:
            return CheckResult(Check.EXPIRATION, CheckStatus.WARNING, f"Expires in {days} days")
        return CheckResult(Check.EXPIRATION, CheckStatus.PASSED, f"Valid for {days} more days")

    def check_team_match(self, candidate: CertificateCandidate) -> CheckResult:
        team_id = candidate.effective_team_id
        if team_id is None and candidate.source is CandidateSource.FILE:
            team_id = self._identity(candidate).team_id

        if not team_id:
            return CheckResult(
                Check.TEAM_MATCH, CheckStatus.FAILED, "No team identifier could be extracted"
            )
        if team_id != self.team_id:
            return CheckResult(
                Check.TEAM_MATCH,
                CheckStatus.FAILED,
                f"Issued to team {team_id}, expected {self.team_id}",
            )
        return CheckResult(Check.TEAM_MATCH, CheckStatus.PASSED, f"Issued to team {team_id}")

    def check_store_access(self, candidate: CertificateCandidate) -> CheckResult:
        if self.store is None or not self.store.is_open:
            return CheckResult(Check.STORE_ACCESS, CheckStatus.FAILED, "No keychain is open for this run")

        fingerprint = self._fingerprint(candidate)
        if not fingerprint:
            return CheckResult(Check.STORE_ACCESS, CheckStatus.FAILED, "Certificate fingerprint unknown")
        if fingerprint in self._store_fingerprints():
            return CheckResult(Check.STORE_ACCESS, CheckStatus.PASSED, "Accessible in keychain")
        return CheckResult(Check.STORE_ACCESS, CheckStatus.FAILED, "Not imported into the keychain")

    def check_signing_capability(self, candidate: CertificateCandidate) -> CheckResult:
        if candidate.source is CandidateSource.FILE:
            identity = self._identity(candidate)
            if not identity.has_private_key:
                return CheckResult(
                    Check.SIGNING_CAPABILITY, CheckStatus.FAILED, "P12 does not contain a private key"
                )
            if not identity.can_sign_code:
                return CheckResult(
                    Check.SIGNING_CAPABILITY, CheckStatus.FAILED, "Certificate does not allow code signing"
                )
            return CheckResult(Check.SIGNING_CAPABILITY, CheckStatus.PASSED, "Private key and code signing usage present")

        if self.store is None or not self.store.is_open:
            return CheckResult(Check.SIGNING_CAPABILITY, CheckStatus.FAILED, "No keychain is open for this run")
        fingerprint = self._fingerprint(candidate)
        if fingerprint and fingerprint in self.store.find_identities():
            return CheckResult(Check.SIGNING_CAPABILITY, CheckStatus.PASSED, "Valid code signing identity")
        return CheckResult(
            Check.SIGNING_CAPABILITY, CheckStatus.FAILED, "No private key for this certificate in the keychain"
        )
