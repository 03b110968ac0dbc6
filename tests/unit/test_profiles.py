"""Tests for provisioning profiles and profile matching."""

from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("cryptography")

from flightdeck_mcp.deployment.profiles import (
    LocalProfileDirectory,
    ProfileMatcher,
    ProfileType,
    ProvisioningProfile,
    identifier_matches,
    load_profile_file,
    parse_profile_bytes,
)
from flightdeck_mcp.error_handling import ProfileError
from flightdeck_mcp.events import EventSink
from flightdeck_mcp.signing.models import Certificate, CertificateType

from tests.conftest import APP_IDENTIFIER, OTHER_TEAM_ID, TEAM_ID
from tests.mocks.certificates import build_profile_bytes, common_name_for, fingerprint, issue_certificate


def make_certificate(cert_id: str, certificate_type=CertificateType.DISTRIBUTION) -> Certificate:
    return Certificate(
        id=cert_id,
        name="Apple Distribution",
        certificate_type=certificate_type,
        team_id=TEAM_ID,
        expires_at=datetime.now(timezone.utc) + timedelta(days=200),
    )


def make_profile(
    app_identifier=APP_IDENTIFIER,
    certificate_ids=("CERT1",),
    team_id=TEAM_ID,
    days=100,
    profile_type=ProfileType.DISTRIBUTION,
    uuid=None,
) -> ProvisioningProfile:
    return ProvisioningProfile(
        uuid=uuid or f"{app_identifier}-{days}-{team_id}",
        name=f"Profile {app_identifier}",
        profile_type=profile_type,
        app_identifier=app_identifier,
        team_id=team_id,
        expires_at=datetime.now(timezone.utc) + timedelta(days=days),
        certificate_ids=frozenset(certificate_ids),
    )


class ListSource:
    """Read-only profile source over a list."""

    def __init__(self, profiles):
        self.profiles = profiles

    def list_profiles(self, app_identifier, team_id):
        return list(self.profiles)

    can_create_profiles = False


@pytest.mark.unit
class TestIdentifierMatching:
    """Tests for wildcard identifier matching."""

    @pytest.mark.parametrize("pattern,app_id,expected", [
        ("com.company.*", "com.company.app", True),
        ("com.company.*", "com.company.app.widget", True),
        ("com.company.*", "com.company", False),
        ("com.company.*", "com.other.app", False),
        ("*", "com.company.app", True),
        ("com.company.app", "com.company.app", True),
        ("com.company.app", "com.company.app2", False),
        ("com.company.*", "", False),
    ])
    def test_identifier_matches(self, pattern, app_id, expected):
        assert identifier_matches(pattern, app_id) is expected


@pytest.mark.unit
class TestProfileType:
    """Tests for ProfileType mappings."""

    def test_normalize_portal_types(self):
        assert ProfileType.normalize("IOS_APP_STORE") is ProfileType.DISTRIBUTION
        assert ProfileType.normalize("IOS_APP_ADHOC") is ProfileType.DISTRIBUTION
        assert ProfileType.normalize("IOS_APP_DEVELOPMENT") is ProfileType.DEVELOPMENT

    def test_export_method(self):
        assert ProfileType.DISTRIBUTION.export_method == "app-store"
        assert ProfileType.DEVELOPMENT.portal_type == "IOS_APP_DEVELOPMENT"


@pytest.mark.unit
class TestProfileParsing:
    """Tests for .mobileprovision parsing."""

    def test_parse_distribution_profile(self):
        _, cert = issue_certificate(common_name_for("distribution", TEAM_ID), TEAM_ID)
        content = build_profile_bytes(APP_IDENTIFIER, TEAM_ID, [cert], profile_uuid="1111-2222")

        profile = parse_profile_bytes(content)

        assert profile.uuid == "1111-2222"
        assert profile.team_id == TEAM_ID
        assert profile.app_identifier == APP_IDENTIFIER
        assert profile.profile_type is ProfileType.DISTRIBUTION
        assert profile.certificate_fingerprints == {fingerprint(cert)}
        assert profile.expected_filename == "1111-2222.mobileprovision"

    def test_parse_development_profile_with_devices(self):
        _, cert = issue_certificate(common_name_for("development", TEAM_ID), TEAM_ID)
        content = build_profile_bytes("com.company.*", TEAM_ID, [cert], devices=["00008101-AAAA"])

        profile = parse_profile_bytes(content)

        assert profile.profile_type is ProfileType.DEVELOPMENT
        assert profile.is_wildcard
        assert profile.device_ids == ("00008101-AAAA",)

    def test_garbage_raises_profile_error(self):
        with pytest.raises(ProfileError):
            parse_profile_bytes(b"not a profile")

    def test_embeds_certificate_by_fingerprint(self, tmp_path):
        _, cert = issue_certificate(common_name_for("distribution", TEAM_ID), TEAM_ID)
        path = tmp_path / "p.mobileprovision"
        path.write_bytes(build_profile_bytes(APP_IDENTIFIER, TEAM_ID, [cert]))

        profile = load_profile_file(path)
        local = Certificate.from_x509(cert)

        assert profile.file_path == path
        assert profile.embeds_certificate(local)

    def test_portal_resource(self):
        resource = {
            "id": "PROF1",
            "attributes": {
                "name": "App Store",
                "profileType": "IOS_APP_STORE",
                "uuid": "abcd",
                "expirationDate": "2030-01-01T00:00:00.000+0000",
                "platform": "IOS",
            },
            "relationships": {
                "bundleId": {"data": {"type": "bundleIds", "id": "B1"}},
                "certificates": {"data": [{"type": "certificates", "id": "CERT1"}]},
            },
        }
        included = [{"type": "bundleIds", "id": "B1", "attributes": {"identifier": APP_IDENTIFIER}}]

        profile = ProvisioningProfile.from_portal_data(resource, included, TEAM_ID)

        assert profile.uuid == "abcd"
        assert profile.portal_id == "PROF1"
        assert profile.app_identifier == APP_IDENTIFIER
        assert profile.certificate_ids == {"CERT1"}


@pytest.mark.unit
class TestLocalProfileDirectory:
    """Tests for the profiles directory source."""

    def test_lists_matching_team_profiles(self, tmp_path):
        _, cert = issue_certificate(common_name_for("distribution", TEAM_ID), TEAM_ID)
        (tmp_path / "ours.mobileprovision").write_bytes(build_profile_bytes(APP_IDENTIFIER, TEAM_ID, [cert]))
        (tmp_path / "theirs.mobileprovision").write_bytes(
            build_profile_bytes(APP_IDENTIFIER, OTHER_TEAM_ID, [cert])
        )
        (tmp_path / "broken.mobileprovision").write_bytes(b"junk")

        profiles = LocalProfileDirectory(tmp_path).list_profiles(APP_IDENTIFIER, TEAM_ID)

        assert len(profiles) == 1
        assert profiles[0].team_id == TEAM_ID

    def test_missing_directory(self, tmp_path):
        assert LocalProfileDirectory(tmp_path / "none").list_profiles(None, TEAM_ID) == []

    def test_cannot_create(self, tmp_path):
        assert LocalProfileDirectory(tmp_path).can_create_profiles is False


@pytest.mark.unit
class TestProfileMatcher:
    """Tests for ProfileMatcher."""

    def test_wildcard_profile_matches(self):
        matcher = ProfileMatcher([ListSource([make_profile("com.company.*")])])

        found = matcher.find_compatible(APP_IDENTIFIER, [make_certificate("CERT1")], TEAM_ID)

        assert len(found) == 1

    def test_exact_match_preferred_over_wildcard(self):
        wildcard = make_profile("com.company.*", days=300)
        exact = make_profile(APP_IDENTIFIER, days=50)
        matcher = ProfileMatcher([ListSource([wildcard, exact])])

        found = matcher.find_compatible(APP_IDENTIFIER, [make_certificate("CERT1")], TEAM_ID)

        assert found == [exact, wildcard]

    def test_latest_expiry_first(self):
        short = make_profile(days=10)
        long = make_profile(days=300)
        matcher = ProfileMatcher([ListSource([short, long])])

        found = matcher.find_compatible(APP_IDENTIFIER, [make_certificate("CERT1")], TEAM_ID)

        assert found == [long, short]

    def test_expired_and_foreign_profiles_excluded(self):
        matcher = ProfileMatcher([ListSource([
            make_profile(days=-1),
            make_profile(team_id=OTHER_TEAM_ID),
        ])])

        assert matcher.find_compatible(APP_IDENTIFIER, [make_certificate("CERT1")], TEAM_ID) == []

    def test_all_certificates_must_be_embedded(self):
        matcher = ProfileMatcher([ListSource([make_profile(certificate_ids=("CERT1",))])])

        found = matcher.find_compatible(
            APP_IDENTIFIER, [make_certificate("CERT1"), make_certificate("CERT2")], TEAM_ID
        )

        assert found == []

    def test_duplicate_uuids_across_sources_collapsed(self):
        profile = make_profile(uuid="same")
        matcher = ProfileMatcher([ListSource([profile]), ListSource([profile])])

        assert len(matcher.find_compatible(APP_IDENTIFIER, [make_certificate("CERT1")], TEAM_ID)) == 1

    def test_ensure_profiles_reports_missing_without_creator(self):
        matcher = ProfileMatcher([ListSource([])])

        result = matcher.ensure_profiles(
            APP_IDENTIFIER, {CertificateType.DISTRIBUTION: [make_certificate("CERT1")]}, TEAM_ID
        )

        availability = result[CertificateType.DISTRIBUTION]
        assert not availability.available
        assert availability.error.error_code == "PROFILE_NOT_FOUND"

    def test_ensure_profiles_creates_through_portal(self, portal):
        events = EventSink()
        matcher = ProfileMatcher([portal], creator=portal, events=events)
        cert = make_certificate("CERT1", CertificateType.DEVELOPMENT)

        result = matcher.ensure_profiles(APP_IDENTIFIER, {CertificateType.DEVELOPMENT: [cert]}, TEAM_ID)

        availability = result[CertificateType.DEVELOPMENT]
        assert availability.available and availability.created
        assert availability.profile.profile_type is ProfileType.DEVELOPMENT
        assert events.named("profile.created")[0].fields["uuid"] == availability.profile.uuid

    def test_ensure_profiles_respects_allow_create(self, portal):
        matcher = ProfileMatcher([portal], creator=portal)

        result = matcher.ensure_profiles(
            APP_IDENTIFIER,
            {CertificateType.DISTRIBUTION: [make_certificate("CERT1")]},
            TEAM_ID,
            allow_create=False,
        )

        assert not result[CertificateType.DISTRIBUTION].available
        assert portal.created_profiles == []
