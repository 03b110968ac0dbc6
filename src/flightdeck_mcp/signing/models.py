"""
Signing certificate value objects.

Certificates are immutable. Everything derived from the expiration date
(expired, expiring soon, health) is computed against an explicit clock
so that callers and tests agree on "now".
"""

import base64
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

TEAM_ID_PATTERN = re.compile(r"^[A-Z0-9]{10}$")
OU_PATTERN = re.compile(r"OU=([^,/]+)")
EXPIRATION_WARNING_DAYS = 30


class CertificateType(Enum):
    """Signing certificate types."""
    DEVELOPMENT = "development"
    DISTRIBUTION = "distribution"

    @classmethod
    def normalize(cls, value: Any) -> "CertificateType":
        """Map portal, keychain and user spellings onto a certificate type.

        Raises:
            ValueError: If the value names neither type
        """
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        # Keychain common names carry the holder's name after the prefix
        for member in cls:
            if any(text.startswith(p.lower()) for p in member.common_name_prefixes):
                return member
        if "develop" in text:
            return cls.DEVELOPMENT
        if "distribution" in text:
            return cls.DISTRIBUTION
        raise ValueError(f"Unknown certificate type: {value!r}")

    @property
    def common_name_prefixes(self) -> tuple[str, ...]:
        """Common-name prefixes the keychain uses for this type."""
        if self is CertificateType.DEVELOPMENT:
            return ("Apple Development", "iPhone Developer")
        return ("Apple Distribution", "iPhone Distribution")

    @property
    def portal_type(self) -> str:
        """Certificate type string understood by App Store Connect."""
        return "DEVELOPMENT" if self is CertificateType.DEVELOPMENT else "DISTRIBUTION"


CERTIFICATE_LIMITS = {
    CertificateType.DEVELOPMENT: 2,
    CertificateType.DISTRIBUTION: 3,
}


class HealthStatus(Enum):
    """Certificate health."""
    HEALTHY = "healthy"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


class CandidateSource(Enum):
    """Where a certificate candidate was found."""
    CREDENTIAL_STORE = "credential_store"
    FILE = "file"
    REMOTE = "remote"


SOURCE_PRIORITIES = {
    CandidateSource.CREDENTIAL_STORE: 3,
    CandidateSource.FILE: 2,
    CandidateSource.REMOTE: 1,
}


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as returned by App Store Connect."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    text = str(value).replace("Z", "+00:00")
    # "2025-01-01T00:00:00.000+0000" style offsets
    text = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", text)
    return ensure_aware(datetime.fromisoformat(text))


def extract_team_id(subject: Optional[str]) -> Optional[str]:
    """Extract the team ID from a certificate subject's OU field."""
    if not subject:
        return None
    match = OU_PATTERN.search(subject)
    if not match:
        return None
    return match.group(1).strip() or None


def infer_type_from_filename(path: Any) -> Optional[CertificateType]:
    """Best-effort certificate type from a file name.

    Returns:
        The inferred type, or None when the name gives no hint
    """
    name = Path(str(path)).name.lower()
    if "dev" in name or "debug" in name:
        return CertificateType.DEVELOPMENT
    if "dist" in name or "release" in name or "prod" in name:
        return CertificateType.DISTRIBUTION
    return None


def x509_subject_string(cert: x509.Certificate) -> str:
    """Render a subject as 'CN=...,OU=...,O=...' for display and OU lookup."""
    return cert.subject.rfc4514_string()


def x509_fingerprint(cert: x509.Certificate) -> str:
    """Get the SHA-1 fingerprint the keychain uses to identify a certificate."""
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def x509_common_name(cert: x509.Certificate) -> str:
    attributes = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attributes[0].value) if attributes else ""


@dataclass(frozen=True)
class Certificate:
    """A signing certificate issued to a team.

    Attributes:
        id: Opaque identifier assigned by App Store Connect (or the fingerprint
            when the certificate was found locally)
        name: Display name
        certificate_type: Development or distribution
        team_id: Owning team
        expires_at: Expiration timestamp
        serial_number: Certificate serial number
        thumbprint: SHA-1 fingerprint
        created_at: When the certificate was issued
        content: DER bytes, when known
    """
    id: str
    name: str
    certificate_type: CertificateType
    team_id: str
    expires_at: datetime
    serial_number: Optional[str] = None
    thumbprint: Optional[str] = None
    created_at: Optional[datetime] = None
    content: Optional[bytes] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Certificate id is required")
        if not isinstance(self.certificate_type, CertificateType):
            object.__setattr__(
                self, "certificate_type", CertificateType.normalize(self.certificate_type)
            )
        if not self.team_id or not TEAM_ID_PATTERN.match(self.team_id):
            raise ValueError(f"Invalid team ID format: {self.team_id!r}")
        if self.expires_at is None:
            raise ValueError("Certificate expiration date is required")
        object.__setattr__(self, "expires_at", ensure_aware(self.expires_at))

    def days_until_expiration(self, now: Optional[datetime] = None) -> int:
        """Whole days remaining (negative once expired)."""
        now = ensure_aware(now or utcnow())
        return math.floor((self.expires_at - now).total_seconds() / 86400)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = ensure_aware(now or utcnow())
        return now >= self.expires_at

    def is_expiring_soon(
        self,
        now: Optional[datetime] = None,
        warning_days: int = EXPIRATION_WARNING_DAYS,
    ) -> bool:
        """Valid, but with warning_days or fewer remaining."""
        if self.is_expired(now):
            return False
        return 0 <= self.days_until_expiration(now) <= warning_days

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_expired(now)

    def health(self, now: Optional[datetime] = None) -> HealthStatus:
        if self.is_expired(now):
            return HealthStatus.EXPIRED
        if self.is_expiring_soon(now):
            return HealthStatus.EXPIRING_SOON
        return HealthStatus.HEALTHY

    def to_dict(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.certificate_type.value,
            "team_id": self.team_id,
            "expires_at": self.expires_at.isoformat(),
            "serial_number": self.serial_number,
            "thumbprint": self.thumbprint,
            "days_until_expiration": self.days_until_expiration(now),
            "health": self.health(now).value,
        }

    @classmethod
    def from_x509(
        cls,
        cert: x509.Certificate,
        team_id: Optional[str] = None,
        certificate_id: Optional[str] = None,
    ) -> "Certificate":
        """Build a certificate from a parsed X.509 certificate.

        The team defaults to the subject's OU field, and the type is derived
        from the common name ("Apple Development: ...").
        """
        subject = x509_subject_string(cert)
        fingerprint = x509_fingerprint(cert)
        common_name = x509_common_name(cert)
        return cls(
            id=certificate_id or fingerprint,
            name=common_name,
            certificate_type=CertificateType.normalize(common_name),
            team_id=team_id or extract_team_id(subject) or "",
            expires_at=cert.not_valid_after_utc,
            serial_number=format(cert.serial_number, "X"),
            thumbprint=fingerprint,
            created_at=cert.not_valid_before_utc,
        )

    @classmethod
    def from_portal_data(cls, resource: dict[str, Any], team_id: str) -> "Certificate":
        """Build a certificate from an App Store Connect 'certificates' resource.

        Args:
            resource: One element of the JSON:API 'data' array
            team_id: The team the listing was made for

        Returns:
            Certificate instance
        """
        attributes = resource.get("attributes", {})
        content = None
        thumbprint = None
        encoded = attributes.get("certificateContent")
        if encoded:
            content = base64.b64decode(encoded)
            thumbprint = x509_fingerprint(x509.load_der_x509_certificate(content))

        return cls(
            id=resource["id"],
            name=attributes.get("displayName") or attributes.get("name") or resource["id"],
            certificate_type=CertificateType.normalize(attributes.get("certificateType")),
            team_id=team_id,
            expires_at=parse_timestamp(attributes.get("expirationDate")),
            serial_number=attributes.get("serialNumber"),
            thumbprint=thumbprint,
            content=content,
        )


@dataclass(frozen=True)
class CertificateCandidate:
    """A certificate found by one detection source.

    Attributes:
        source: Where the candidate was found
        certificate_type: Requested type the candidate serves
        expires_at: Expiration, when known
        subject: Subject string (carries the OU team ID)
        team_id: Explicit team attribute, when known
        fingerprint: SHA-1 fingerprint, when known
        file_path: Path to the P12 export for file candidates
        certificate: Portal certificate for remote candidates
    """
    source: CandidateSource
    certificate_type: CertificateType
    expires_at: Optional[datetime] = None
    subject: Optional[str] = None
    team_id: Optional[str] = None
    fingerprint: Optional[str] = None
    file_path: Optional[Path] = None
    certificate: Optional[Certificate] = None

    @property
    def priority(self) -> int:
        return SOURCE_PRIORITIES[self.source]

    @property
    def effective_team_id(self) -> Optional[str]:
        """Explicit team attribute, else the OU extracted from the subject."""
        return self.team_id or extract_team_id(self.subject)

    def describe(self) -> str:
        if self.file_path:
            return str(self.file_path)
        if self.subject:
            return self.subject
        return self.fingerprint or self.source.value

    def to_certificate(self, team_id: str) -> Certificate:
        """The portal certificate, or one built from the candidate's metadata.

        Locally found certificates use their fingerprint as id, which
        profiles match against their embedded certificate fingerprints.

        Raises:
            ValueError: If fingerprint or expiration are unknown
        """
        if self.certificate is not None:
            return self.certificate
        if not self.fingerprint or self.expires_at is None:
            raise ValueError(f"Candidate {self.describe()} has no fingerprint or expiration")
        return Certificate(
            id=self.fingerprint,
            name=self.subject or self.fingerprint,
            certificate_type=self.certificate_type,
            team_id=self.effective_team_id or team_id,
            expires_at=self.expires_at,
            thumbprint=self.fingerprint,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "type": self.certificate_type.value,
            "priority": self.priority,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "subject": self.subject,
            "team_id": self.effective_team_id,
            "fingerprint": self.fingerprint,
            "file_path": str(self.file_path) if self.file_path else None,
            "certificate_id": self.certificate.id if self.certificate else None,
        }


def rank_candidates(candidates: list[CertificateCandidate]) -> list[CertificateCandidate]:
    """Order candidates by source priority, then by latest expiration.

    Candidates without a known expiration sort last within their source.
    """
    def key(candidate: CertificateCandidate) -> tuple[int, float]:
        expires = candidate.expires_at.timestamp() if candidate.expires_at else float("-inf")
        return (-candidate.priority, -expires)

    return sorted(candidates, key=key)
