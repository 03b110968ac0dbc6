"""Tests for signing certificate value objects."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

pytest.importorskip("cryptography")

from flightdeck_mcp.signing.models import (
    CandidateSource,
    Certificate,
    CertificateCandidate,
    CertificateType,
    HealthStatus,
    extract_team_id,
    infer_type_from_filename,
    parse_timestamp,
    rank_candidates,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_certificate(days: float, **kwargs) -> Certificate:
    defaults = dict(
        id="CERT0001",
        name="Apple Distribution: Test Person (ABCDE12345)",
        certificate_type=CertificateType.DISTRIBUTION,
        team_id="ABCDE12345",
        expires_at=NOW + timedelta(days=days),
    )
    defaults.update(kwargs)
    return Certificate(**defaults)


@pytest.mark.unit
class TestCertificateType:
    """Tests for CertificateType.normalize."""

    @pytest.mark.parametrize("value,expected", [
        ("development", CertificateType.DEVELOPMENT),
        ("IOS_DEVELOPMENT", CertificateType.DEVELOPMENT),
        ("iPhone Developer: Jane", CertificateType.DEVELOPMENT),
        ("DISTRIBUTION", CertificateType.DISTRIBUTION),
        ("IOS_DISTRIBUTION", CertificateType.DISTRIBUTION),
        ("Apple Distribution: Developer Tools Inc (ABCDE12345)", CertificateType.DISTRIBUTION),
    ])
    def test_normalize(self, value, expected):
        assert CertificateType.normalize(value) is expected

    def test_normalize_unknown(self):
        with pytest.raises(ValueError, match="Unknown certificate type"):
            CertificateType.normalize("enterprise")


@pytest.mark.unit
class TestCertificate:
    """Tests for Certificate expiry and validation."""

    def test_requires_valid_team_id(self):
        with pytest.raises(ValueError, match="Invalid team ID"):
            make_certificate(10, team_id="short")

    def test_requires_id(self):
        with pytest.raises(ValueError, match="id is required"):
            make_certificate(10, id="")

    def test_naive_expiry_treated_as_utc(self):
        cert = make_certificate(0, expires_at=datetime(2025, 7, 1))
        assert cert.expires_at.tzinfo is not None

    def test_expired_at_exact_expiry(self):
        cert = make_certificate(0)
        assert cert.is_expired(NOW) is True
        assert cert.is_valid(NOW) is False

    def test_days_until_expiration_negative_once_expired(self):
        cert = make_certificate(-3)
        assert cert.days_until_expiration(NOW) == -3

    def test_expiring_soon_boundary(self):
        assert make_certificate(30).is_expiring_soon(NOW) is True
        assert make_certificate(31).is_expiring_soon(NOW) is False

    def test_expired_is_not_expiring_soon(self):
        assert make_certificate(-1).is_expiring_soon(NOW) is False

    def test_health(self):
        assert make_certificate(200).health(NOW) is HealthStatus.HEALTHY
        assert make_certificate(10).health(NOW) is HealthStatus.EXPIRING_SOON
        assert make_certificate(-1).health(NOW) is HealthStatus.EXPIRED

    def test_from_portal_data(self):
        resource = {
            "id": "PORTAL1",
            "attributes": {
                "displayName": "Test Person",
                "certificateType": "IOS_DISTRIBUTION",
                "expirationDate": "2026-01-01T00:00:00.000+0000",
                "serialNumber": "ABC",
            },
        }
        cert = Certificate.from_portal_data(resource, "ABCDE12345")

        assert cert.id == "PORTAL1"
        assert cert.certificate_type is CertificateType.DISTRIBUTION
        assert cert.expires_at == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert cert.content is None

    def test_to_dict(self):
        data = make_certificate(10).to_dict(NOW)
        assert data["type"] == "distribution"
        assert data["health"] == "expiring_soon"
        assert data["days_until_expiration"] == 10


@pytest.mark.unit
class TestHelpers:
    """Tests for parsing helpers."""

    def test_extract_team_id(self):
        subject = "C=US,O=Test Company,OU=ABCDE12345,CN=Apple Development: Test Person (ABCDE12345)"
        assert extract_team_id(subject) == "ABCDE12345"

    def test_extract_team_id_missing(self):
        assert extract_team_id("CN=Someone") is None
        assert extract_team_id(None) is None

    @pytest.mark.parametrize("name,expected", [
        ("development.p12", CertificateType.DEVELOPMENT),
        ("ios_dev.p12", CertificateType.DEVELOPMENT),
        ("distribution.p12", CertificateType.DISTRIBUTION),
        ("release-cert.p12", CertificateType.DISTRIBUTION),
        ("cert.p12", None),
    ])
    def test_infer_type_from_filename(self, name, expected):
        assert infer_type_from_filename(Path(name)) is expected

    def test_parse_timestamp_formats(self):
        expected = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert parse_timestamp("2025-01-01T00:00:00Z") == expected
        assert parse_timestamp("2025-01-01T00:00:00.000+0000") == expected
        assert parse_timestamp("") is None


@pytest.mark.unit
class TestCandidates:
    """Tests for candidate ranking and conversion."""

    def test_rank_by_source_then_expiry(self):
        remote = CertificateCandidate(CandidateSource.REMOTE, CertificateType.DEVELOPMENT, NOW + timedelta(days=900))
        file_short = CertificateCandidate(CandidateSource.FILE, CertificateType.DEVELOPMENT, NOW + timedelta(days=10))
        file_long = CertificateCandidate(CandidateSource.FILE, CertificateType.DEVELOPMENT, NOW + timedelta(days=300))
        store = CertificateCandidate(CandidateSource.CREDENTIAL_STORE, CertificateType.DEVELOPMENT, NOW + timedelta(days=5))

        ranked = rank_candidates([remote, file_short, file_long, store])

        assert ranked == [store, file_long, file_short, remote]

    def test_unknown_expiry_sorts_last_within_source(self):
        unknown = CertificateCandidate(CandidateSource.FILE, CertificateType.DEVELOPMENT)
        known = CertificateCandidate(CandidateSource.FILE, CertificateType.DEVELOPMENT, NOW)
        assert rank_candidates([unknown, known]) == [known, unknown]

    def test_effective_team_id_from_subject(self):
        candidate = CertificateCandidate(
            CandidateSource.CREDENTIAL_STORE,
            CertificateType.DEVELOPMENT,
            subject="CN=Apple Development: X,OU=ABCDE12345",
        )
        assert candidate.effective_team_id == "ABCDE12345"

    def test_to_certificate_uses_fingerprint_as_id(self):
        candidate = CertificateCandidate(
            CandidateSource.FILE,
            CertificateType.DEVELOPMENT,
            expires_at=NOW,
            subject="CN=Apple Development: X,OU=ABCDE12345",
            fingerprint="AB" * 20,
        )
        cert = candidate.to_certificate("ABCDE12345")
        assert cert.id == "AB" * 20
        assert cert.thumbprint == "AB" * 20

    def test_to_certificate_requires_fingerprint(self):
        candidate = CertificateCandidate(CandidateSource.FILE, CertificateType.DEVELOPMENT, expires_at=NOW)
        with pytest.raises(ValueError, match="no fingerprint"):
            candidate.to_certificate("ABCDE12345")
