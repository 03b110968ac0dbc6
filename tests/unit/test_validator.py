"""Tests for certificate validation chains."""

from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("cryptography")

from flightdeck_mcp.signing.models import CandidateSource, CertificateCandidate, CertificateType
from flightdeck_mcp.signing.validator import (
    Check,
    CertificateValidator,
    CheckStatus,
    ValidationLevel,
)

from tests.conftest import OTHER_TEAM_ID, P12_PASSWORD, TEAM_ID
from tests.mocks.certificates import fingerprint, write_identity_p12


def file_candidate(path, cert=None) -> CertificateCandidate:
    return CertificateCandidate(
        source=CandidateSource.FILE,
        certificate_type=CertificateType.DEVELOPMENT,
        expires_at=cert.not_valid_after_utc if cert else None,
        subject=cert.subject.rfc4514_string() if cert else None,
        fingerprint=fingerprint(cert) if cert else None,
        file_path=path,
    )


@pytest.mark.unit
class TestValidationLevels:
    """Each level runs its checks in order."""

    def test_basic_level_checks(self, certificates_dir, passwords):
        path = certificates_dir / "development.p12"
        cert = write_identity_p12(path, "development", TEAM_ID, P12_PASSWORD)
        validator = CertificateValidator(TEAM_ID, passwords=passwords)

        report = validator.validate(file_candidate(path, cert), ValidationLevel.BASIC)

        assert [r.check for r in report.results] == [Check.EXISTENCE, Check.READABILITY, Check.FORMAT]
        assert report.valid

    def test_comprehensive_level_runs_every_check(self, keychain, certificates_dir, passwords):
        path = certificates_dir / "development.p12"
        cert = write_identity_p12(path, "development", TEAM_ID, P12_PASSWORD)
        keychain.import_item(path, P12_PASSWORD)
        validator = CertificateValidator(TEAM_ID, store=keychain, passwords=passwords)

        report = validator.validate(file_candidate(path, cert), ValidationLevel.COMPREHENSIVE)

        assert len(report.results) == 7
        assert report.valid, report.to_dict()

    def test_comprehensive_fails_store_access_before_import(self, keychain, certificates_dir, passwords):
        path = certificates_dir / "development.p12"
        cert = write_identity_p12(path, "development", TEAM_ID, P12_PASSWORD)
        validator = CertificateValidator(TEAM_ID, store=keychain, passwords=passwords)

        report = validator.validate(file_candidate(path, cert), ValidationLevel.COMPREHENSIVE)

        assert report.failed_checks == [Check.STORE_ACCESS]


@pytest.mark.unit
class TestChecks:
    """Tests for individual checks."""

    def test_missing_file_fails_existence(self, certificates_dir, passwords):
        validator = CertificateValidator(TEAM_ID, passwords=passwords)
        report = validator.validate(file_candidate(certificates_dir / "development.p12"), ValidationLevel.BASIC)

        assert Check.EXISTENCE in report.failed_checks

    def test_wrong_password_fails_format_with_hint(self, certificates_dir, passwords):
        path = certificates_dir / "development.p12"
        write_identity_p12(path, "development", TEAM_ID, "not-the-configured-one")
        validator = CertificateValidator(TEAM_ID, passwords=passwords)

        result = validator.run_check(Check.FORMAT, file_candidate(path))

        assert result.status is CheckStatus.FAILED
        assert "re-export" in result.message

    def test_team_mismatch(self, certificates_dir, passwords):
        path = certificates_dir / "development.p12"
        cert = write_identity_p12(path, "development", OTHER_TEAM_ID, P12_PASSWORD)
        validator = CertificateValidator(TEAM_ID, passwords=passwords)

        report = validator.validate(file_candidate(path, cert))

        assert report.failed_checks == [Check.TEAM_MATCH]
        assert OTHER_TEAM_ID in report.result(Check.TEAM_MATCH).message

    def test_team_read_from_file_when_unknown(self, certificates_dir, passwords):
        path = certificates_dir / "development.p12"
        write_identity_p12(path, "development", TEAM_ID, P12_PASSWORD)
        validator = CertificateValidator(TEAM_ID, passwords=passwords)

        result = validator.run_check(Check.TEAM_MATCH, file_candidate(path))

        assert result.status is CheckStatus.PASSED

    @pytest.mark.parametrize("subject,expected", [
        (f"CN=Apple Development: Dev ({TEAM_ID}),OU={TEAM_ID},O=Company", CheckStatus.PASSED),
        (f"CN=Apple Development: Dev,OU={OTHER_TEAM_ID},O=Company", CheckStatus.FAILED),
        ("CN=Apple Development: Dev,O=Company", CheckStatus.FAILED),
        (None, CheckStatus.FAILED),
    ])
    def test_team_match_from_subject(self, subject, expected):
        validator = CertificateValidator(TEAM_ID)
        candidate = CertificateCandidate(CandidateSource.CREDENTIAL_STORE, CertificateType.DEVELOPMENT, subject=subject)

        assert validator.run_check(Check.TEAM_MATCH, candidate).status is expected

    def test_expired_candidate_fails(self):
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        validator = CertificateValidator(TEAM_ID, clock=lambda: now)
        candidate = CertificateCandidate(
            CandidateSource.REMOTE, CertificateType.DEVELOPMENT, expires_at=now - timedelta(seconds=1)
        )

        result = validator.run_check(Check.EXPIRATION, candidate)

        assert result.status is CheckStatus.FAILED

    def test_expiring_soon_is_warning_but_valid(self):
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        validator = CertificateValidator(TEAM_ID, clock=lambda: now)
        candidate = CertificateCandidate(
            CandidateSource.REMOTE, CertificateType.DEVELOPMENT, expires_at=now + timedelta(days=12)
        )

        result = validator.run_check(Check.EXPIRATION, candidate)

        assert result.status is CheckStatus.WARNING
        assert result.valid

    def test_p12_without_key_cannot_sign(self, certificates_dir, passwords):
        path = certificates_dir / "development.p12"
        cert = write_identity_p12(path, "development", TEAM_ID, P12_PASSWORD, include_key=False)
        validator = CertificateValidator(TEAM_ID, passwords=passwords)

        result = validator.run_check(Check.SIGNING_CAPABILITY, file_candidate(path, cert))

        assert result.status is CheckStatus.FAILED
        assert "private key" in result.message

    def test_store_checks_fail_without_open_keychain(self, certificates_dir, passwords):
        path = certificates_dir / "development.p12"
        cert = write_identity_p12(path, "development", TEAM_ID, P12_PASSWORD)
        validator = CertificateValidator(TEAM_ID, passwords=passwords)

        result = validator.run_check(Check.STORE_ACCESS, file_candidate(path, cert))

        assert result.status is CheckStatus.FAILED

    def test_raising_check_recorded_as_failure(self, certificates_dir):
        validator = CertificateValidator(TEAM_ID)
        candidate = CertificateCandidate(
            CandidateSource.FILE, CertificateType.DEVELOPMENT, file_path=None
        )

        result = validator.run_check(Check.FORMAT, candidate)

        assert result.status is CheckStatus.FAILED
        assert "raised" in result.message
