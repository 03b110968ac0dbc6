"""
Wiring of one deployment run.

open_run_context() builds every adapter and service a run needs around
a fresh ephemeral keychain, and tears the keychain down when the run
ends, whatever the outcome.
"""

import logging
import shutil
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from ..client import AppStoreConnectClient
from ..config import FlightdeckConfig
from ..error_handling import APIError, ValidationError
from ..events import EventSink
from ..repositories import BuildRepository, ProfileRepository
from ..signing.certificate_manager import CertificateManager
from ..signing.credential_store import CredentialStoreAdapter, EphemeralCredentialStore, KeychainCredentialStore
from ..signing.detector import CertificateDetector
from ..signing.importer import CertificateImporter
from ..signing.p12 import PasswordMap
from ..signing.validator import CertificateValidator
from .credentials import ApiCredentials
from .history import HistoryStore
from .orchestrator import DeploymentRequest, RunContext
from .preflight import Preflight
from .profiles import LocalProfileDirectory, ProfileMatcher
from .team_info import CredentialsLayout, TeamInfo, default_import_password
from .toolchain import XcodeToolchain
from .versioning import VersionInfo

logger = logging.getLogger(__name__)


def load_api_credentials(
    config: FlightdeckConfig,
    layout: CredentialsLayout,
    team_info: Optional[TeamInfo] = None,
) -> Optional[ApiCredentials]:
    """API key credentials from the config, falling back to the team directory.

    Returns:
        ApiCredentials, or None when no complete API key is configured

    Raises:
        ValidationError: If a configured key is malformed or badly protected
    """
    key_id = config.api_key_id or (team_info.api_key_id if team_info else None)
    issuer_id = config.api_issuer_id or (team_info.api_issuer_id if team_info else None)
    key_path = config.api_key_path
    if key_path is None and key_id and layout.api_key_path(key_id).exists():
        key_path = layout.api_key_path(key_id)
    if key_path is None:
        key_path = layout.find_api_key()

    if not (key_id and issuer_id and key_path):
        return None
    return ApiCredentials.api_key(config.team_id, key_id, issuer_id, key_path)


@contextmanager
def open_run_context(
    config: FlightdeckConfig,
    request: Optional[DeploymentRequest] = None,
    adapter: Optional[CredentialStoreAdapter] = None,
    toolchain: Optional[BuildRepository] = None,
    client: Optional[AppStoreConnectClient] = None,
    sleep: Optional[Callable[[float], None]] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> Iterator[RunContext]:
    """Open a RunContext for one run.

    Args:
        config: Team configuration
        request: The deployment, used for the import password and team info
        adapter: Credential store adapter (defaults to the macOS keychain)
        toolchain: Build toolchain (defaults to xcodebuild)
        client: App Store Connect client (built from the API key when omitted)
        sleep: Sleep function for the processing monitor
        which: Resolves command names for the preflight tool checks

    Yields:
        RunContext whose keychain is open until the block exits
    """
    layout = CredentialsLayout(config.credentials_root, config.team_id).ensure()
    team_info = TeamInfo.load(layout) or TeamInfo(team_id=config.team_id)

    password = config.p12_password or team_info.p12_password
    if not password and request is not None:
        password = default_import_password(request.app_identifier)
    passwords = PasswordMap(default=password)

    credentials = None
    owns_client = False
    try:
        credentials = load_api_credentials(config, layout, team_info)
    except ValidationError as e:
        logger.warning(f"Ignoring App Store Connect credentials: {e}")
    if client is None and credentials is not None:
        try:
            client = AppStoreConnectClient.from_credentials(
                credentials,
                base_url=config.api_base_url,
                timeout=config.timeouts.http,
                upload_timeout=config.timeouts.upload,
            )
            owns_client = True
        except APIError as e:
            logger.warning(f"App Store Connect unavailable: {e}")

    events = EventSink()
    label = request.deployment_id if request is not None else config.team_id
    store = EphemeralCredentialStore(
        adapter or KeychainCredentialStore(timeout=config.timeouts.credential_store),
        config.keychain_dir,
        label=label,
    )

    def record_certificate(certificate, p12_path, p12_password) -> None:
        nonlocal team_info
        team_info = team_info.update(p12_password=p12_password)
        team_info.save(layout)
        logger.info(f"Recorded import password for {p12_path.name} in {layout.config_file}")

    def record_deployment(deployed: DeploymentRequest, version: VersionInfo) -> None:
        nonlocal team_info
        team_info = team_info.update(
            app_identifier=deployed.app_identifier,
            scheme=deployed.scheme,
            api_key_id=credentials.key_id if credentials else team_info.api_key_id,
            api_issuer_id=credentials.issuer_id if credentials else team_info.api_issuer_id,
            api_key_path=credentials.private_key_path.name if credentials else team_info.api_key_path,
            p12_password=passwords.default or team_info.p12_password,
        ).record_deployment(version.marketing_version, version.build_number)
        team_info.save(layout)

    local_profiles = LocalProfileDirectory(layout.profiles_dir)
    profile_sources: list[ProfileRepository] = [local_profiles]
    if client is not None:
        profile_sources.append(client)

    try:
        with store:
            detector = CertificateDetector(
                config.team_id,
                store=store,
                certificate_dirs=[layout.certificates_dir],
                remote=client,
                passwords=passwords,
            )
            validator = CertificateValidator(config.team_id, store=store, passwords=passwords)
            importer = CertificateImporter(store, passwords, scan_dir=layout.certificates_dir)
            manager = CertificateManager(
                config.team_id,
                detector,
                validator,
                importer,
                remote=client,
                profile_sources=profile_sources,
                output_dir=layout.certificates_dir,
                export_password=password,
                events=events,
                on_created=record_certificate,
            )
            matcher = ProfileMatcher(profile_sources, creator=client, events=events)
            toolchain = toolchain or XcodeToolchain(config.timeouts)

            context = RunContext(
                team_id=config.team_id,
                certificates=manager,
                profiles=matcher,
                toolchain=toolchain,
                uploader=client,
                credentials=credentials,
                history_store=HistoryStore(config.history_dir),
                store=store,
                events=events,
                timeouts=config.timeouts,
                on_deployed=record_deployment,
                preflight=Preflight(toolchain, credentials, which=which),
            )
            if sleep is not None:
                context.sleep = sleep
            yield context
    finally:
        if owns_client:
            client.close()
