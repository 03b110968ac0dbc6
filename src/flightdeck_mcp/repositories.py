"""
Abstract repositories for the external systems a deployment talks to.

Defines the interfaces that the App Store Connect client, the local
profile directory and the Xcode toolchain implement.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from .signing.models import Certificate, CertificateType

if TYPE_CHECKING:
    from .deployment.credentials import ApiCredentials
    from .deployment.profiles import ProfileType, ProvisioningProfile
    from .deployment.toolchain import ExportOptions, SigningConfig, ToolchainResult
    from .deployment.versioning import VersionInfo


class CertificateRepository(ABC):
    """Certificates held by the remote authority."""

    @abstractmethod
    def list_certificates(
        self,
        team_id: str,
        certificate_type: Optional[CertificateType] = None,
    ) -> list[Certificate]:
        """List the team's certificates, optionally of one type."""
        pass

    @abstractmethod
    def create_certificate(
        self,
        team_id: str,
        certificate_type: CertificateType,
        csr_pem: str,
    ) -> Certificate:
        """Issue a certificate for a signing request.

        The returned certificate carries its DER content.
        """
        pass

    @abstractmethod
    def revoke_certificate(self, certificate_id: str) -> None:
        """Revoke a certificate."""
        pass


class ProfileRepository(ABC):
    """A source of provisioning profiles."""

    @abstractmethod
    def list_profiles(
        self,
        app_identifier: Optional[str],
        team_id: str,
    ) -> list["ProvisioningProfile"]:
        """List profiles for a team, optionally narrowed to one app identifier."""
        pass

    def create_profile(
        self,
        app_identifier: str,
        certificates: list[Certificate],
        team_id: str,
        profile_type: "ProfileType",
    ) -> "ProvisioningProfile":
        """Create a profile binding the app identifier to the certificates.

        Read-only sources do not override this.
        """
        raise NotImplementedError(f"{type(self).__name__} cannot create profiles")

    @property
    def can_create_profiles(self) -> bool:
        return type(self).create_profile is not ProfileRepository.create_profile


class BuildRepository(ABC):
    """The local build toolchain."""

    @abstractmethod
    def read_version_info(self, project_path: Path) -> "VersionInfo":
        """Read the marketing version and build number from the project."""
        pass

    @abstractmethod
    def update_version(self, project_path: Path, version: "VersionInfo") -> None:
        """Persist a marketing version and build number into the project."""
        pass

    @abstractmethod
    def archive(
        self,
        project_path: Path,
        scheme: str,
        configuration: str,
        archive_path: Path,
        signing: "SigningConfig",
    ) -> "ToolchainResult":
        """Build and archive the scheme."""
        pass

    @abstractmethod
    def export_package(
        self,
        archive_path: Path,
        export_options: "ExportOptions",
        output_dir: Path,
    ) -> "ToolchainResult":
        """Export a signed package (.ipa) from an archive."""
        pass

    @abstractmethod
    def list_schemes(self, project_path: Path) -> list[str]:
        """List schemes defined by the project."""
        pass

    @abstractmethod
    def read_build_settings(
        self,
        project_path: Path,
        scheme: str,
        configuration: str,
    ) -> dict[str, Any]:
        """Read resolved build settings."""
        pass

    @abstractmethod
    def install_profile(self, profile: "ProvisioningProfile") -> Path:
        """Make a provisioning profile visible to the toolchain."""
        pass


class UploadRepository(ABC):
    """Build upload and processing status."""

    @abstractmethod
    def upload_build(
        self,
        package_path: Path,
        credentials: "ApiCredentials",
        options: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Upload a package. Returns the authority's acknowledgement."""
        pass

    @abstractmethod
    def get_build_status(self, app_identifier: str, build_number: str) -> dict[str, Any]:
        """Processing state for an uploaded build.

        Returns:
            Dictionary with at least 'state' (e.g. PROCESSING, VALID, INVALID,
            NOT_FOUND) and, when known, 'build_id' and 'app_id'
        """
        pass
