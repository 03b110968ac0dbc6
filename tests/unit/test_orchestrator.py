"""Tests for the six-phase deployment orchestrator."""

import plistlib
from dataclasses import replace

import pytest

pytest.importorskip("cryptography")

from flightdeck_mcp.config import FlightdeckConfig, Timeouts
from flightdeck_mcp.deployment.context import open_run_context
from flightdeck_mcp.deployment.history import DeploymentStatus, HistoryStore
from flightdeck_mcp.deployment.orchestrator import DeploymentOrchestrator, DeploymentRequest, Phase
from flightdeck_mcp.deployment.team_info import CredentialsLayout, TeamInfo
from flightdeck_mcp.deployment.versioning import VersionInfo
from flightdeck_mcp.error_handling import APIError, ValidationError
from flightdeck_mcp.signing.models import CertificateType

from tests.conftest import APP_IDENTIFIER, P12_PASSWORD, TEAM_ID
from tests.mocks import FakePortal, FakeToolchain, InMemoryCredentialStore
from tests.mocks.certificates import write_identity_p12

ISSUER_ID = "69a6de70-03db-47e3-e053-5b8c7c11a4d1"


@pytest.fixture
def config(tmp_path, api_key_file):
    return FlightdeckConfig(
        team_id=TEAM_ID,
        credentials_root=tmp_path / "apple_info",
        api_key_id="ABC123DEFG",
        api_issuer_id=ISSUER_ID,
        api_key_path=api_key_file,
        p12_password=P12_PASSWORD,
        data_dir=tmp_path / "state",
        timeouts=Timeouts(processing_wait=60, processing_poll_interval=30),
    )


@pytest.fixture
def exported_certificates(certificates_dir):
    """Development and distribution P12 exports in the team directory."""
    write_identity_p12(certificates_dir / "development.p12", "development", TEAM_ID, P12_PASSWORD)
    write_identity_p12(certificates_dir / "distribution.p12", "distribution", TEAM_ID, P12_PASSWORD)
    return certificates_dir


@pytest.fixture
def request_(tmp_path):
    (tmp_path / "App.xcodeproj").mkdir()
    return DeploymentRequest(
        app_identifier=APP_IDENTIFIER,
        team_id=TEAM_ID,
        scheme="App",
        project_path=tmp_path / "App.xcodeproj",
        output_dir=tmp_path / "build",
    )


class Harness:
    """Runs the orchestrator inside a run context built from fakes."""

    def __init__(self, config, portal=None, toolchain=None):
        self.config = config
        self.adapter = InMemoryCredentialStore()
        self.portal = portal
        self.toolchain = toolchain or FakeToolchain()
        self.sleeps = []
        self.events = None

    def _open(self, request):
        return open_run_context(
            self.config,
            request,
            adapter=self.adapter,
            toolchain=self.toolchain,
            client=self.portal,
            sleep=self.sleeps.append,
            which=lambda name: f"/usr/bin/{name}",
        )

    def run(self, request):
        with self._open(request) as context:
            self.events = context.events
            return DeploymentOrchestrator(context).run(request)

    def validate(self, request):
        with self._open(request) as context:
            self.events = context.events
            return DeploymentOrchestrator(context).validate_only(request)


@pytest.fixture
def harness(config, portal, exported_certificates):
    return Harness(config, portal=portal)


@pytest.mark.unit
class TestDeploymentRequest:
    """Tests for request validation."""

    def test_generates_deployment_id(self, request_):
        assert request_.deployment_id.startswith(f"DEPLOY_{TEAM_ID}_APP_")

    def test_normalizes_inputs(self, tmp_path):
        request = DeploymentRequest(
            APP_IDENTIFIER, TEAM_ID, "App", tmp_path, tmp_path,
            version_bump="Minor", required_types=("distribution",),
        )
        assert request.version_bump.value == "minor"
        assert request.required_types == (CertificateType.DISTRIBUTION,)
        assert request.signing_type is CertificateType.DISTRIBUTION

    def test_invalid_inputs(self, tmp_path):
        with pytest.raises(ValidationError):
            DeploymentRequest("com.company.*", TEAM_ID, "App", tmp_path, tmp_path)
        with pytest.raises(ValidationError):
            DeploymentRequest(APP_IDENTIFIER, "bad", "App", tmp_path, tmp_path)


@pytest.mark.unit
class TestSuccessfulRun:
    """Tests for a run where every phase succeeds."""

    def test_completes_all_phases(self, harness, request_, config):
        result = harness.run(request_)

        assert result.success
        assert result.status == "completed"
        assert [e.phase for e in result.history.entries] == [p.value for p in Phase if p is not Phase.PREFLIGHT]
        assert all(e.outcome == "success" for e in result.history.entries)
        assert result.version == VersionInfo("1.0.1", "2")
        assert result.testflight_url == "https://appstoreconnect.apple.com/apps/1234567890/testflight/ios"
        assert result.build_id == "build-2"
        assert harness.portal.uploads == [result.package_path]

    def test_history_saved(self, harness, request_, config):
        result = harness.run(request_)

        saved = HistoryStore(config.history_dir).load(result.deployment_id)

        assert saved.status is DeploymentStatus.COMPLETED
        assert saved.metadata["result"] == "completed"
        assert saved.metadata["version"] == "1.0.1"
        assert saved.metadata["build"] == "2"

    def test_signs_with_distribution_in_run_keychain(self, harness, request_):
        harness.run(request_)

        signing = harness.toolchain.archive_calls[0]["signing"]
        assert signing.code_sign_identity == "Apple Distribution"
        assert str(signing.keychain_path) in harness.adapter.destroyed

    def test_profiles_created_and_installed(self, harness, request_):
        result = harness.run(request_)

        assert len(harness.portal.created_profiles) == 2
        assert len(harness.toolchain.installed) == 2
        assert set(result.profiles) == {"development", "distribution"}

    def test_team_info_records_deployment(self, harness, request_, config):
        harness.run(request_)

        info = TeamInfo.load(CredentialsLayout(config.credentials_root, TEAM_ID))
        assert info.last_deployment_version == "1.0.1"
        assert info.last_deployment_build == "2"
        assert info.p12_password == P12_PASSWORD
        assert info.api_key_path == "AuthKey_ABC123DEFG.p8"

    def test_events_emitted(self, harness, request_):
        harness.run(request_)

        assert len(harness.events.named("deployment.phase")) == 6
        assert harness.events.named("build.uploaded")[0].fields["build"] == "2"
        assert harness.events.named("deployment.finished")[0].fields["status"] == "completed"

    def test_skips_monitor_when_not_waiting(self, harness, tmp_path):
        request = DeploymentRequest(
            APP_IDENTIFIER, TEAM_ID, "App", tmp_path / "App.xcodeproj", tmp_path / "build",
            wait_for_processing=False,
        )

        result = harness.run(request)

        assert result.status == "completed"
        assert len(result.history.entries) == 5
        assert harness.portal.status_calls == 0


@pytest.mark.unit
class TestProcessingMonitor:
    """The monitor degrades the run instead of failing it."""

    def test_processing_failure_is_unconfirmed(self, harness, request_):
        harness.portal.build_states = ["PROCESSING", "FAILED"]

        result = harness.run(request_)

        assert result.success
        assert result.status == "uploaded_unconfirmed"
        assert result.history.entries[-1].outcome == "degraded"
        assert harness.sleeps == [30]

    def test_status_error_is_unconfirmed(self, harness, request_):
        harness.portal.build_states = [APIError("App Store Connect is unavailable")]

        result = harness.run(request_)

        assert result.status == "uploaded_unconfirmed"
        assert "status check failed" in result.history.entries[-1].message

    def test_unexpected_status_payload_is_unconfirmed(self, harness, request_):
        harness.portal.build_states = ["PROCESSING", KeyError("processingState")]

        result = harness.run(request_)

        assert result.success
        assert result.status == "uploaded_unconfirmed"
        assert result.history.entries[-1].outcome == "degraded"
        assert "processingState" in result.history.entries[-1].message

    def test_timeout_is_unconfirmed(self, harness, request_):
        harness.portal.build_states = ["PROCESSING"]

        result = harness.run(request_)

        assert result.status == "uploaded_unconfirmed"
        assert harness.portal.status_calls == 3
        assert harness.sleeps == [30, 30]


@pytest.mark.unit
class TestFailures:
    """Runs stop at the first failing phase."""

    def test_certificate_failure_stops_first_phase(self, config, request_):
        harness = Harness(replace(config, api_key_id=None, api_issuer_id=None, api_key_path=None))

        result = harness.run(request_)

        assert result.status == "failed"
        assert result.failed_phase is Phase.CERTIFICATE_VALIDATION
        assert len(result.history.entries) == 1
        assert result.history.entries[0].details["certificates"]["development"]["available"] is False
        assert harness.toolchain.version == VersionInfo("1.0.0", "1")

    def test_profile_failure_leaves_two_entries(self, harness, tmp_path):
        request = DeploymentRequest(
            APP_IDENTIFIER, TEAM_ID, "App", tmp_path / "App.xcodeproj", tmp_path / "build",
            allow_profile_creation=False,
        )

        result = harness.run(request)

        assert result.failed_phase is Phase.PROFILE_VALIDATION
        assert [e.outcome for e in result.history.entries] == ["success", "failure"]
        assert result.error.error_code == "PROFILE_NOT_FOUND"
        assert harness.toolchain.archive_calls == []

    def test_archive_failure_keeps_version_bump(self, harness, request_, config):
        harness.toolchain.fail_archive = "error: No signing certificate found"

        result = harness.run(request_)
        data = result.to_dict()

        assert result.failed_phase is Phase.BUILD_AND_ARCHIVE
        assert len(result.history.entries) == 4
        assert harness.toolchain.version == VersionInfo("1.0.1", "2")
        assert data["error_code"] == "BUILD_FAILED"
        assert data["failed_phase"] == "build_and_archive"
        assert data["left_in_place"] == []
        assert HistoryStore(config.history_dir).load(result.deployment_id).status is DeploymentStatus.FAILED

    def test_export_failure_leaves_archive_in_place(self, harness, request_):
        harness.toolchain.fail_export = "error: exportArchive failed"

        result = harness.run(request_)

        assert result.error.error_code == "EXPORT_FAILED"
        assert result.left_in_place == [str(result.archive_path)]
        assert result.archive_path.exists()

    def test_upload_without_credentials(self, tmp_path, portal, exported_certificates, request_):
        config = FlightdeckConfig(
            team_id=TEAM_ID,
            credentials_root=tmp_path / "apple_info",
            p12_password=P12_PASSWORD,
            data_dir=tmp_path / "state",
        )
        harness = Harness(config, portal=portal)

        result = harness.run(request_)

        assert result.failed_phase is Phase.UPLOAD
        assert result.error.kind == "UploadError"
        assert set(result.left_in_place) == {str(result.archive_path), str(result.package_path)}

    def test_upload_rejected(self, harness, request_):
        harness.portal.fail_upload = APIError("Redundant binary upload", error_code="API_REQUEST_FAILED")

        result = harness.run(request_)

        assert result.failed_phase is Phase.UPLOAD
        assert "Redundant binary upload" in result.to_dict()["error"]
        assert harness.events.named("deployment.failed")[0].fields["phase"] == "upload"


@pytest.mark.unit
class TestValidateOnly:
    """Tests for validation-only runs."""

    def test_validate_only_runs_preflight_after_signing_phases(self, harness, request_):
        result = harness.validate(request_)

        assert result.status == "validated"
        assert [e.phase for e in result.history.entries] == [
            "certificate_validation", "profile_validation", "preflight",
        ]
        assert result.to_dict()["preflight"]["valid"] is True
        assert harness.toolchain.archive_calls == []
        assert harness.portal.uploads == []
        assert result.version is None

    def test_empty_usage_description_fails_validation(self, harness, request_, tmp_path):
        plist = tmp_path / "Info.plist"
        plist.write_bytes(plistlib.dumps({"NSCameraUsageDescription": " "}))

        result = harness.validate(replace(request_, info_plist_path=plist))
        data = result.to_dict()

        assert result.status == "failed"
        assert result.failed_phase is Phase.PREFLIGHT
        assert data["error_code"] == "PRIVACY_DESCRIPTION_MISSING"
        assert data["preflight"]["privacy"]["errors"][0]["key"] == "NSCameraUsageDescription"
        assert "privacy.NSCameraUsageDescription" in result.error.context["failed_checks"]

    def test_generated_info_plist_keys_checked(self, harness, request_):
        harness.toolchain.build_settings = {
            "GENERATE_INFOPLIST_FILE": "YES",
            "INFOPLIST_KEY_NSMicrophoneUsageDescription": "TODO",
        }

        passed = harness.validate(request_)
        strict = harness.validate(replace(request_, strict_privacy=True))

        assert passed.status == "validated"
        assert passed.history.entries[-1].details["warnings"]
        assert strict.status == "failed"
        assert strict.error.error_code == "PRIVACY_DESCRIPTION_MISSING"

    def test_unknown_scheme_fails_preflight(self, harness, request_):
        harness.toolchain.schemes = ["Other"]

        result = harness.validate(request_)

        assert result.failed_phase is Phase.PREFLIGHT
        assert result.error.error_code == "PREFLIGHT_FAILED"
        assert "Use one of: Other" in result.error.recovery_suggestions

    def test_full_run_skips_preflight(self, harness, request_):
        harness.toolchain.schemes = []

        result = harness.run(request_)

        assert result.status == "completed"
        assert "preflight" not in result.to_dict()
