"""
Provisioning profiles and matching them to signing certificates.

A profile binds an application identifier (possibly a wildcard pattern)
to a set of certificates. Profiles come from the team's profiles
directory and from App Store Connect.
"""

import base64
import logging
import plistlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from cryptography import x509

from ..error_handling import ProfileError
from ..events import EventSink
from ..repositories import ProfileRepository
from ..signing.models import (
    Certificate,
    CertificateType,
    ensure_aware,
    parse_timestamp,
    utcnow,
    x509_fingerprint,
)

logger = logging.getLogger(__name__)

PLIST_PATTERN = re.compile(rb"<\?xml.*?</plist>", re.DOTALL)
PROFILE_EXTENSION = ".mobileprovision"


class ProfileType(Enum):
    """Provisioning profile types."""
    DEVELOPMENT = "development"
    DISTRIBUTION = "distribution"

    @classmethod
    def normalize(cls, value: Any) -> "ProfileType":
        """Map portal profile types (IOS_APP_STORE, IOS_APP_DEVELOPMENT...) onto a type.

        Raises:
            ValueError: If the value names neither type
        """
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if "develop" in text:
            return cls.DEVELOPMENT
        if any(k in text for k in ("store", "distribution", "adhoc", "ad_hoc", "inhouse")):
            return cls.DISTRIBUTION
        raise ValueError(f"Unknown profile type: {value!r}")

    @classmethod
    def for_certificate_type(cls, certificate_type: CertificateType) -> "ProfileType":
        if certificate_type is CertificateType.DEVELOPMENT:
            return cls.DEVELOPMENT
        return cls.DISTRIBUTION

    @property
    def portal_type(self) -> str:
        return "IOS_APP_DEVELOPMENT" if self is ProfileType.DEVELOPMENT else "IOS_APP_STORE"

    @property
    def export_method(self) -> str:
        """Export method xcodebuild expects for packages signed with this type."""
        return "development" if self is ProfileType.DEVELOPMENT else "app-store"


def identifier_matches(pattern: str, app_identifier: str) -> bool:
    """Whether a profile's identifier pattern covers a concrete identifier.

    'prefix.*' matches 'prefix.' followed by a non-empty suffix, so
    'com.company.*' does not match 'com.company'. A bare '*' matches any
    non-empty identifier. Anything else must match exactly.
    """
    if not app_identifier:
        return False
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        prefix = pattern[:-1]
        return app_identifier.startswith(prefix) and len(app_identifier) > len(prefix)
    return pattern == app_identifier


@dataclass(frozen=True)
class ProvisioningProfile:
    """A provisioning profile.

    Attributes:
        uuid: Profile UUID
        name: Display name
        profile_type: Development or distribution
        app_identifier: Bundle identifier pattern (may end in '.*')
        team_id: Owning team
        expires_at: Expiration timestamp
        certificate_ids: Portal ids of embedded certificates
        certificate_fingerprints: SHA-1 fingerprints of embedded certificates
        device_ids: Provisioned device UDIDs
        platform: Target platform
        file_path: Local .mobileprovision file, when loaded from disk
        content: Raw .mobileprovision bytes
        portal_id: App Store Connect resource id
    """
    uuid: str
    name: str
    profile_type: ProfileType
    app_identifier: str
    team_id: str
    expires_at: datetime
    certificate_ids: frozenset[str] = frozenset()
    certificate_fingerprints: frozenset[str] = frozenset()
    device_ids: tuple[str, ...] = ()
    platform: str = "ios"
    file_path: Optional[Path] = None
    content: Optional[bytes] = field(default=None, repr=False, compare=False)
    portal_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "expires_at", ensure_aware(self.expires_at))
        object.__setattr__(self, "certificate_ids", frozenset(self.certificate_ids))
        object.__setattr__(
            self, "certificate_fingerprints", frozenset(f.upper() for f in self.certificate_fingerprints)
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = ensure_aware(now or utcnow())
        return now >= self.expires_at

    @property
    def is_wildcard(self) -> bool:
        return self.app_identifier == "*" or self.app_identifier.endswith(".*")

    def matches_identifier(self, app_identifier: str) -> bool:
        return identifier_matches(self.app_identifier, app_identifier)

    def embeds_certificate(self, certificate: Certificate) -> bool:
        """Match by portal id or by SHA-1 fingerprint."""
        if certificate.id in self.certificate_ids:
            return True
        return bool(certificate.thumbprint) and certificate.thumbprint.upper() in self.certificate_fingerprints

    def contains_all_certificates(self, certificates: Iterable[Certificate]) -> bool:
        """Every certificate is embedded; a partial overlap is not enough."""
        return all(self.embeds_certificate(c) for c in certificates)

    @property
    def expected_filename(self) -> str:
        """File name the toolchain looks for in its profiles directory."""
        return f"{self.uuid}{PROFILE_EXTENSION}"

    def to_dict(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "uuid": self.uuid,
            "name": self.name,
            "type": self.profile_type.value,
            "app_identifier": self.app_identifier,
            "team_id": self.team_id,
            "expires_at": self.expires_at.isoformat(),
            "expired": self.is_expired(now),
            "certificate_count": len(self.certificate_ids | self.certificate_fingerprints),
            "device_count": len(self.device_ids),
            "platform": self.platform,
            "file_path": str(self.file_path) if self.file_path else None,
        }

    @classmethod
    def from_plist(
        cls,
        data: dict[str, Any],
        file_path: Optional[Path] = None,
        content: Optional[bytes] = None,
    ) -> "ProvisioningProfile":
        """Build a profile from the decoded plist embedded in a .mobileprovision."""
        team_ids = data.get("TeamIdentifier") or []
        team_id = team_ids[0] if team_ids else ""
        entitlements = data.get("Entitlements", {}) or {}
        application_identifier = entitlements.get("application-identifier", "")
        # "TEAMID.com.company.app" -> "com.company.app"
        app_identifier = application_identifier.split(".", 1)[1] if "." in application_identifier else application_identifier

        fingerprints = []
        for der in data.get("DeveloperCertificates", []) or []:
            try:
                fingerprints.append(x509_fingerprint(x509.load_der_x509_certificate(bytes(der))))
            except ValueError as e:
                logger.debug(f"Skipping unparsable certificate in profile {data.get('UUID')}: {e}")

        devices = tuple(data.get("ProvisionedDevices", []) or [])
        development = bool(entitlements.get("get-task-allow")) and bool(devices)
        platforms = data.get("Platform") or ["iOS"]

        return cls(
            uuid=data.get("UUID", ""),
            name=data.get("Name", ""),
            profile_type=ProfileType.DEVELOPMENT if development else ProfileType.DISTRIBUTION,
            app_identifier=app_identifier,
            team_id=team_id,
            expires_at=data["ExpirationDate"],
            certificate_fingerprints=frozenset(fingerprints),
            device_ids=devices,
            platform=str(platforms[0]).lower(),
            file_path=file_path,
            content=content,
        )

    @classmethod
    def from_portal_data(
        cls,
        resource: dict[str, Any],
        included: list[dict[str, Any]],
        team_id: str,
    ) -> "ProvisioningProfile":
        """Build a profile from an App Store Connect 'profiles' resource.

        Args:
            resource: One element of the JSON:API 'data' array
            included: The response's 'included' array (bundleIds, certificates, devices)
            team_id: The team the listing was made for

        Returns:
            ProvisioningProfile instance
        """
        attributes = resource.get("attributes", {})
        relationships = resource.get("relationships", {})
        by_key = {(item.get("type"), item.get("id")): item for item in included or []}

        def related_ids(name: str) -> list[str]:
            data = (relationships.get(name) or {}).get("data") or []
            if isinstance(data, dict):
                data = [data]
            return [item["id"] for item in data]

        app_identifier = ""
        for bundle_id in related_ids("bundleId"):
            bundle = by_key.get(("bundleIds", bundle_id))
            if bundle:
                app_identifier = bundle.get("attributes", {}).get("identifier", "")

        fingerprints: list[str] = []
        content = None
        encoded = attributes.get("profileContent")
        if encoded:
            content = base64.b64decode(encoded)
            parsed = parse_profile_bytes(content)
            fingerprints = list(parsed.certificate_fingerprints)
            app_identifier = app_identifier or parsed.app_identifier

        return cls(
            uuid=attributes.get("uuid") or resource["id"],
            name=attributes.get("name", ""),
            profile_type=ProfileType.normalize(attributes.get("profileType")),
            app_identifier=app_identifier,
            team_id=team_id,
            expires_at=parse_timestamp(attributes.get("expirationDate")),
            certificate_ids=frozenset(related_ids("certificates")),
            certificate_fingerprints=frozenset(fingerprints),
            device_ids=tuple(related_ids("devices")),
            platform=str(attributes.get("platform") or "ios").lower(),
            content=content,
            portal_id=resource["id"],
        )


def parse_profile_bytes(content: bytes, file_path: Optional[Path] = None) -> ProvisioningProfile:
    """Parse a signed .mobileprovision by extracting its embedded XML plist.

    Raises:
        ProfileError: If no plist can be found or decoded
    """
    match = PLIST_PATTERN.search(content)
    if not match:
        raise ProfileError(
            f"No property list found in profile {file_path or ''}".strip(),
            error_code="PROFILE_NOT_FOUND",
            recovery_suggestions=["Download the profile again from the Apple Developer portal"],
        )
    try:
        data = plistlib.loads(match.group(0))
    except (plistlib.InvalidFileException, ValueError) as e:
        raise ProfileError(
            f"Invalid property list in profile {file_path or ''}: {e}",
            error_code="PROFILE_NOT_FOUND",
            original=e,
        )
    return ProvisioningProfile.from_plist(data, file_path=file_path, content=content)


def load_profile_file(path: Path) -> ProvisioningProfile:
    """Load a .mobileprovision file.

    Args:
        path: Path to the profile

    Returns:
        ProvisioningProfile instance

    Raises:
        ProfileError: If the file cannot be parsed
    """
    path = Path(path)
    return parse_profile_bytes(path.read_bytes(), file_path=path)


class LocalProfileDirectory(ProfileRepository):
    """Read-only profile source over a directory of .mobileprovision files."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def list_profiles(self, app_identifier: Optional[str], team_id: str) -> list[ProvisioningProfile]:
        if not self.directory.is_dir():
            return []

        profiles = []
        for path in sorted(self.directory.glob(f"*{PROFILE_EXTENSION}")):
            try:
                profile = load_profile_file(path)
            except (ProfileError, OSError, KeyError) as e:
                logger.warning(f"Skipping unreadable profile {path.name}: {e}")
                continue
            if profile.team_id != team_id:
                continue
            if app_identifier and not profile.matches_identifier(app_identifier):
                continue
            profiles.append(profile)
        return profiles


@dataclass
class ProfileAvailability:
    """Whether a usable profile exists for one certificate type."""
    certificate_type: CertificateType
    available: bool
    profile: Optional[ProvisioningProfile] = None
    created: bool = False
    error: Optional[ProfileError] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.certificate_type.value,
            "available": self.available,
            "created": self.created,
        }
        if self.profile:
            result["profile"] = self.profile.to_dict()
        if self.error:
            result["error"] = self.error.to_dict()
        return result


class ProfileMatcher:
    """Finds provisioning profiles compatible with a set of certificates."""

    def __init__(
        self,
        sources: list[ProfileRepository],
        creator: Optional[ProfileRepository] = None,
        events: Optional[EventSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the matcher.

        Args:
            sources: Profile sources, searched in order
            creator: Source able to create profiles (usually App Store Connect)
            events: Audit event sink
            clock: Returns the current time
        """
        self.sources = sources
        self.creator = creator
        self.events = events or EventSink()
        self.clock = clock

    def _gather(self, app_identifier: str, team_id: str) -> list[ProvisioningProfile]:
        profiles: list[ProvisioningProfile] = []
        seen: set[str] = set()
        for source in self.sources:
            try:
                found = source.list_profiles(app_identifier, team_id)
            except Exception as e:
                logger.warning(f"Profile source {type(source).__name__} failed: {e}")
                continue
            for profile in found:
                if profile.uuid in seen:
                    continue
                seen.add(profile.uuid)
                profiles.append(profile)
        return profiles

    def find_compatible(
        self,
        app_identifier: str,
        certificates: list[Certificate],
        team_id: str,
        profile_type: Optional[ProfileType] = None,
    ) -> list[ProvisioningProfile]:
        """Profiles usable to sign app_identifier with every given certificate.

        Other teams' and expired profiles are dropped before matching.

        Args:
            app_identifier: Concrete bundle identifier
            certificates: Certificates that must all be embedded
            team_id: The team
            profile_type: Restrict to one profile type

        Returns:
            Compatible profiles, exact identifier matches first, then latest expiry
        """
        now = self.clock()
        live = [
            p for p in self._gather(app_identifier, team_id)
            if p.team_id == team_id and not p.is_expired(now)
        ]
        compatible = [
            p for p in live
            if (profile_type is None or p.profile_type is profile_type)
            and p.matches_identifier(app_identifier)
            and p.contains_all_certificates(certificates)
        ]
        compatible.sort(key=lambda p: (p.is_wildcard, -p.expires_at.timestamp()))
        return compatible

    def ensure_profiles(
        self,
        app_identifier: str,
        certificates: dict[CertificateType, list[Certificate]],
        team_id: str,
        allow_create: bool = True,
    ) -> dict[CertificateType, ProfileAvailability]:
        """Find, or create, one profile per certificate type.

        Args:
            app_identifier: Concrete bundle identifier
            certificates: Certificates per type, from certificate validation
            team_id: The team
            allow_create: Create a profile through App Store Connect when none matches

        Returns:
            Per-type ProfileAvailability
        """
        result = {}
        for certificate_type, certs in certificates.items():
            profile_type = ProfileType.for_certificate_type(certificate_type)
            matches = self.find_compatible(app_identifier, certs, team_id, profile_type)
            if matches:
                result[certificate_type] = ProfileAvailability(certificate_type, True, matches[0])
                continue

            can_create = allow_create and self.creator is not None and self.creator.can_create_profiles
            if not can_create:
                result[certificate_type] = ProfileAvailability(
                    certificate_type,
                    False,
                    error=ProfileError(
                        f"No valid {profile_type.value} profile for {app_identifier} "
                        f"embeds the selected {certificate_type.value} certificate",
                        context={"team_id": team_id, "app_identifier": app_identifier},
                    ),
                )
                continue

            try:
                profile = self.creator.create_profile(app_identifier, certs, team_id, profile_type)
            except Exception as e:
                logger.warning(f"Creating {profile_type.value} profile for {app_identifier} failed: {e}")
                error = e if isinstance(e, ProfileError) else ProfileError(
                    f"Could not create {profile_type.value} profile for {app_identifier}: {e}",
                    context={"team_id": team_id, "app_identifier": app_identifier},
                    original=e,
                )
                result[certificate_type] = ProfileAvailability(certificate_type, False, error=error)
                continue

            self.events.emit(
                "profile.created",
                team_id=team_id,
                app_identifier=app_identifier,
                type=profile_type.value,
                uuid=profile.uuid,
                status="created",
            )
            result[certificate_type] = ProfileAvailability(certificate_type, True, profile, created=True)
        return result
