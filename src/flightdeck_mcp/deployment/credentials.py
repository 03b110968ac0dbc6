"""
App Store Connect API credentials.

ApiCredentials is a value object: usage tracking, rotation and metadata
updates return new instances.
"""

import os
import re
import secrets
import stat
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..error_handling import ValidationError
from ..error_handling.validators import API_KEY_ID_PATTERN, ISSUER_ID_PATTERN
from ..signing.models import ensure_aware, utcnow

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
ROTATION_DAYS = 90
ROTATION_WARNING_DAYS = 14
MAX_AGE_DAYS = 365


class CredentialType(Enum):
    API_KEY = "api_key"
    INTERACTIVE = "interactive"


class SecurityLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def generate_credential_id(team_id: str, credential_type: CredentialType) -> str:
    """Generate an id like 'ABCDE12345_ASC_20250101_a1b2c3'."""
    kind = "ASC" if credential_type is CredentialType.API_KEY else "AID"
    date = utcnow().strftime("%Y%m%d")
    return f"{team_id}_{kind}_{date}_{secrets.token_hex(3)}"


def _key_file_errors(path: Optional[Path]) -> list[str]:
    if path is None:
        return ["API key credentials require a private key path"]
    if not path.is_file():
        return [f"API private key not found: {path}"]
    if os.name != "nt":
        mode = stat.S_IMODE(path.stat().st_mode)
        if mode & 0o077:
            return [
                f"API private key {path} is accessible by group or others "
                f"(mode {oct(mode)}). Hint: chmod 600 {path}"
            ]
    return []


@dataclass(frozen=True)
class ApiCredentials:
    """Credentials used to talk to App Store Connect.

    Attributes:
        credential_id: Unique id (see generate_credential_id)
        team_id: Apple Developer team ID
        credential_type: api_key or interactive
        key_id: API key ID (api_key)
        issuer_id: Issuer UUID (api_key)
        private_key_path: AuthKey .p8 file (api_key)
        account_id: Apple ID email (interactive)
        security_level: Assessed security level
        created_at: When the credentials were registered
        last_used_at: Last recorded use
        rotation_due_at: When the key should be rotated
        usage_count: Number of recorded uses
        metadata: Free-form metadata (last usage context...)
    """
    credential_id: str
    team_id: str
    credential_type: CredentialType
    key_id: Optional[str] = None
    issuer_id: Optional[str] = None
    private_key_path: Optional[Path] = None
    account_id: Optional[str] = None
    security_level: SecurityLevel = SecurityLevel.HIGH
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    rotation_due_at: Optional[datetime] = None
    usage_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "created_at", ensure_aware(self.created_at))
        if self.rotation_due_at is None:
            object.__setattr__(self, "rotation_due_at", self.created_at + timedelta(days=ROTATION_DAYS))
        if self.private_key_path is not None:
            object.__setattr__(self, "private_key_path", Path(self.private_key_path))

        if self.credential_type is CredentialType.API_KEY:
            errors = []
            if not self.key_id or not API_KEY_ID_PATTERN.match(self.key_id):
                errors.append(f"Invalid API key ID: {self.key_id!r} (expected 10 characters A-Z, 0-9)")
            if not self.issuer_id or not ISSUER_ID_PATTERN.match(self.issuer_id):
                errors.append(f"Invalid issuer ID: {self.issuer_id!r} (expected a UUID)")
            errors.extend(_key_file_errors(self.private_key_path))
            if errors:
                raise ValidationError(
                    "; ".join(errors),
                    recovery_suggestions=[
                        "Download the key from App Store Connect > Users and Access > Integrations",
                        "Store it as AuthKey_<KEYID>.p8 with mode 600",
                    ],
                )
        elif not self.account_id or not EMAIL_PATTERN.match(self.account_id):
            raise ValidationError(
                f"Invalid Apple ID: {self.account_id!r}. Hint: Use the account email address"
            )

    @classmethod
    def api_key(
        cls,
        team_id: str,
        key_id: str,
        issuer_id: str,
        private_key_path: Path,
        **kwargs: Any,
    ) -> "ApiCredentials":
        return cls(
            credential_id=kwargs.pop("credential_id", None)
            or generate_credential_id(team_id, CredentialType.API_KEY),
            team_id=team_id,
            credential_type=CredentialType.API_KEY,
            key_id=key_id,
            issuer_id=issuer_id,
            private_key_path=Path(private_key_path),
            **kwargs,
        )

    @classmethod
    def interactive(cls, team_id: str, account_id: str, **kwargs: Any) -> "ApiCredentials":
        return cls(
            credential_id=kwargs.pop("credential_id", None)
            or generate_credential_id(team_id, CredentialType.INTERACTIVE),
            team_id=team_id,
            credential_type=CredentialType.INTERACTIVE,
            account_id=account_id,
            security_level=kwargs.pop("security_level", SecurityLevel.MEDIUM),
            **kwargs,
        )

    def read_private_key(self) -> bytes:
        if self.private_key_path is None:
            raise ValidationError("Interactive credentials have no private key")
        return self.private_key_path.read_bytes()

    def days_until_rotation(self, now: Optional[datetime] = None) -> int:
        now = ensure_aware(now or utcnow())
        return (self.rotation_due_at - now).days

    def needs_rotation(self, now: Optional[datetime] = None) -> bool:
        now = ensure_aware(now or utcnow())
        return now >= self.rotation_due_at

    def rotation_warning(self, now: Optional[datetime] = None) -> bool:
        """Rotation is due within the warning window but not yet overdue."""
        return not self.needs_rotation(now) and self.days_until_rotation(now) <= ROTATION_WARNING_DAYS

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = ensure_aware(now or utcnow())
        return now - self.created_at > timedelta(days=MAX_AGE_DAYS)

    def security_score(self, now: Optional[datetime] = None) -> int:
        """0-100 score: key-based auth, rotation hygiene and key file protection."""
        score = 60 if self.credential_type is CredentialType.API_KEY else 30
        if self.security_level is SecurityLevel.HIGH:
            score += 10
        elif self.security_level is SecurityLevel.MEDIUM:
            score += 5
        if not self.needs_rotation(now):
            score += 15
        if not self.is_expired(now):
            score += 10
        if self.credential_type is CredentialType.API_KEY and not _key_file_errors(self.private_key_path):
            score += 5
        return min(score, 100)

    def validate(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Assess the credentials without raising.

        Returns:
            Dictionary with 'valid', 'errors', 'warnings' and 'recommendations'
        """
        errors: list[str] = []
        warnings: list[str] = []
        recommendations: list[str] = []

        if self.credential_type is CredentialType.API_KEY:
            errors.extend(_key_file_errors(self.private_key_path))
        else:
            recommendations.append("Use an App Store Connect API key instead of an Apple ID")

        if self.is_expired(now):
            errors.append(f"Credentials are older than {MAX_AGE_DAYS} days")
        if self.needs_rotation(now):
            warnings.append("Key rotation is overdue")
            recommendations.append("Generate a new API key and revoke the old one")
        elif self.rotation_warning(now):
            warnings.append(f"Key rotation due in {self.days_until_rotation(now)} days")

        return {
            "valid": not errors,
            "errors": errors,
            "warnings": warnings,
            "recommendations": recommendations,
            "security_score": self.security_score(now),
        }

    def record_usage(self, context: Optional[str] = None, now: Optional[datetime] = None) -> "ApiCredentials":
        metadata = dict(self.metadata)
        if context:
            metadata["last_usage_context"] = context
        return replace(
            self,
            last_used_at=now or utcnow(),
            usage_count=self.usage_count + 1,
            metadata=metadata,
        )

    def rotate(self, days: int = ROTATION_DAYS, now: Optional[datetime] = None) -> "ApiCredentials":
        """Push the rotation deadline out by 'days' from now."""
        now = ensure_aware(now or utcnow())
        return replace(self, rotation_due_at=now + timedelta(days=days))

    def with_metadata(self, **metadata: Any) -> "ApiCredentials":
        return replace(self, metadata={**self.metadata, **metadata})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (never includes key material)."""
        return {
            "credential_id": self.credential_id,
            "team_id": self.team_id,
            "type": self.credential_type.value,
            "key_id": self.key_id,
            "issuer_id": self.issuer_id,
            "private_key_path": str(self.private_key_path) if self.private_key_path else None,
            "account_id": self.account_id,
            "security_level": self.security_level.value,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "rotation_due_at": self.rotation_due_at.isoformat(),
            "usage_count": self.usage_count,
        }
