"""Shared pytest fixtures for flightdeck-mcp tests.

Unit tests run against in-memory fakes of the keychain, App Store
Connect and xcodebuild. Integration tests need macOS with Xcode and a
real App Store Connect account.
"""

import os
import platform
import shutil
from pathlib import Path
from typing import Generator

import pytest

TEAM_ID = "ABCDE12345"
OTHER_TEAM_ID = "ZYXWV98765"
APP_IDENTIFIER = "com.company.app"
P12_PASSWORD = "Test-Import-Pass1!"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Requires macOS with Xcode and App Store Connect")
    config.addinivalue_line("markers", "slow: Long-running tests")


def has_xcode() -> bool:
    """Check if xcodebuild is available."""
    return platform.system() == "Darwin" and shutil.which("xcodebuild") is not None


skip_no_xcode = pytest.mark.skipif(
    not has_xcode(),
    reason="xcodebuild not available"
)


@pytest.fixture
def team_id() -> str:
    return TEAM_ID


@pytest.fixture
def keychain_adapter():
    """In-memory keychain adapter."""
    from tests.mocks import InMemoryCredentialStore
    return InMemoryCredentialStore()


@pytest.fixture
def keychain(keychain_adapter, tmp_path: Path):
    """An open ephemeral keychain, destroyed after the test."""
    from flightdeck_mcp.signing.credential_store import EphemeralCredentialStore

    store = EphemeralCredentialStore(keychain_adapter, tmp_path / "keychains", label="test")
    with store:
        yield store


@pytest.fixture
def passwords():
    from flightdeck_mcp.signing.p12 import PasswordMap
    return PasswordMap(default=P12_PASSWORD)


@pytest.fixture
def certificates_dir(tmp_path: Path) -> Path:
    """Empty directory for P12 exports."""
    path = tmp_path / "apple_info" / TEAM_ID / "certificates"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def portal():
    """App Store Connect fake for TEAM_ID."""
    from tests.mocks import FakePortal
    return FakePortal(TEAM_ID)


@pytest.fixture
def toolchain():
    from tests.mocks import FakeToolchain
    return FakeToolchain()


@pytest.fixture
def api_key_file(tmp_path: Path) -> Path:
    """An AuthKey_*.p8 file holding a fresh P-256 key, mode 0600."""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import ec

    key = ec.generate_private_key(ec.SECP256R1())
    path = tmp_path / "apple_info" / TEAM_ID / "AuthKey_ABC123DEFG.p8"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    if os.name != "nt":
        os.chmod(path, 0o600)
    return path


@pytest.fixture
def clean_env(monkeypatch):
    """Remove all Flightdeck environment variables."""
    env_vars = [
        "FLIGHTDECK_CONFIG_PATH",
        "FLIGHTDECK_TEAM_ID",
        "FLIGHTDECK_CREDENTIALS_ROOT",
        "FLIGHTDECK_API_KEY_ID",
        "FLIGHTDECK_API_ISSUER_ID",
        "FLIGHTDECK_API_KEY_PATH",
        "FLIGHTDECK_P12_PASSWORD",
        "FLIGHTDECK_DATA_DIR",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)


# Autouse fixture for test isolation
@pytest.fixture(autouse=True)
def isolate_test_artifacts(tmp_path: Path, monkeypatch) -> Generator[None, None, None]:
    """Ensure tests don't affect the real system.

    Sets environment variables to redirect all storage to temp directories.
    """
    # Redirect XDG data home to temp directory
    test_data_home = tmp_path / "data"
    test_data_home.mkdir()
    monkeypatch.setenv("XDG_DATA_HOME", str(test_data_home))

    # On Windows, also set LOCALAPPDATA
    if os.name == "nt":
        monkeypatch.setenv("LOCALAPPDATA", str(test_data_home))

    yield

    # Cleanup is automatic with tmp_path
