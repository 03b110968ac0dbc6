"""
PKCS#12 helpers for exported signing identities.

Reads P12 exports to learn their subject, team and expiration, builds
certificate signing requests for new certificates, and bundles issued
certificates with their private key into P12 files.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .models import (
    Certificate,
    CertificateType,
    extract_team_id,
    infer_type_from_filename,
    x509_common_name,
    x509_fingerprint,
    x509_subject_string,
)

DEFAULT_KEY_SIZE = 2048


class P12PasswordError(ValueError):
    """None of the supplied passwords opens the P12 file."""


@dataclass(frozen=True)
class P12Identity:
    """What a P12 export contains.

    Attributes:
        subject: Subject string (includes OU=<team>)
        issuer: Issuer string
        common_name: Subject common name
        team_id: OU extracted from the subject
        expires_at: Certificate expiration
        fingerprint: SHA-1 fingerprint
        serial_number: Hex serial number
        has_private_key: Whether the bundle includes the private key
        can_sign_code: Whether the certificate allows code signing
        password: The password that opened the bundle
    """
    subject: str
    issuer: str
    common_name: str
    team_id: Optional[str]
    expires_at: datetime
    fingerprint: str
    serial_number: str
    has_private_key: bool
    can_sign_code: bool
    password: str

    @property
    def certificate_type(self) -> Optional[CertificateType]:
        try:
            return CertificateType.normalize(self.common_name)
        except ValueError:
            return None


def _allows_code_signing(cert: x509.Certificate) -> bool:
    try:
        usage = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        try:
            key_usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
        except x509.ExtensionNotFound:
            return True
        return key_usage.digital_signature
    return ExtendedKeyUsageOID.CODE_SIGNING in usage


def read_p12(path: Path, password: str) -> P12Identity:
    """Open a P12 file with a single password.

    Raises:
        ValueError: If the password is wrong or the file is not PKCS#12
        OSError: If the file cannot be read
    """
    data = Path(path).read_bytes()
    key, cert, _ = pkcs12.load_key_and_certificates(data, password.encode() if password else None)
    if cert is None:
        raise ValueError(f"No certificate found in {path}")

    subject = x509_subject_string(cert)
    return P12Identity(
        subject=subject,
        issuer=cert.issuer.rfc4514_string(),
        common_name=x509_common_name(cert),
        team_id=extract_team_id(subject),
        expires_at=cert.not_valid_after_utc,
        fingerprint=x509_fingerprint(cert),
        serial_number=format(cert.serial_number, "X"),
        has_private_key=key is not None,
        can_sign_code=_allows_code_signing(cert),
        password=password,
    )


def open_p12(path: Path, passwords: Iterable[Optional[str]]) -> P12Identity:
    """Open a P12 file trying each password in order.

    Args:
        path: The P12 file
        passwords: Candidate passwords; None entries and duplicates are skipped

    Returns:
        The identity opened by the first working password

    Raises:
        P12PasswordError: If no password works
    """
    tried = []
    for password in passwords:
        if password is None or password in tried:
            continue
        tried.append(password)
        try:
            return read_p12(path, password)
        except ValueError:
            continue
    raise P12PasswordError(
        f"Could not open {Path(path).name} with any of {len(tried)} candidate password(s)"
    )


def generate_signing_request(
    common_name: str,
    email: Optional[str] = None,
    key_size: int = DEFAULT_KEY_SIZE,
) -> tuple[rsa.RSAPrivateKey, str]:
    """Generate a private key and a PEM certificate signing request.

    Returns:
        Tuple of (private key, CSR PEM string)
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if email:
        attributes.append(x509.NameAttribute(NameOID.EMAIL_ADDRESS, email))
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name(attributes))
        .sign(key, hashes.SHA256())
    )
    return key, csr.public_bytes(serialization.Encoding.PEM).decode()


def write_p12(
    path: Path,
    key: rsa.RSAPrivateKey,
    certificate_der: bytes,
    password: str,
    friendly_name: Optional[str] = None,
) -> Certificate:
    """Bundle an issued certificate with its key into a password-protected P12.

    The file is written with 0600 permissions.

    Returns:
        The certificate that was written
    """
    cert = x509.load_der_x509_certificate(certificate_der)
    name = (friendly_name or x509_common_name(cert)).encode()
    data = pkcs12.serialize_key_and_certificates(
        name=name,
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if os.name != "nt":
        os.chmod(path, 0o600)
    return Certificate.from_x509(cert)


@dataclass
class PasswordMap:
    """Import passwords for P12 exports.

    Lookup order for a file: exact file name (or stem), then the type
    inferred from the file name (development when the name gives no hint),
    then the default password.

    Attributes:
        default: Shared team import password
        by_filename: Passwords keyed by file name or stem
        by_type: Passwords keyed by certificate type
    """
    default: Optional[str] = None
    by_filename: dict[str, str] = field(default_factory=dict)
    by_type: dict[CertificateType, str] = field(default_factory=dict)

    def resolve(self, path: Path) -> Optional[str]:
        """Best password for a file, or None if nothing is configured."""
        path = Path(path)
        for key in (path.name, path.stem):
            if key in self.by_filename:
                return self.by_filename[key]
        inferred = infer_type_from_filename(path) or CertificateType.DEVELOPMENT
        if inferred in self.by_type:
            return self.by_type[inferred]
        return self.default

    def candidates(self, path: Path, supplied: Optional[str] = None) -> list[str]:
        """Every password worth trying for a file, most specific first."""
        path = Path(path)
        ordered = [
            supplied,
            self.by_filename.get(path.name),
            self.by_filename.get(path.stem),
            self.by_type.get(infer_type_from_filename(path) or CertificateType.DEVELOPMENT),
            self.default,
            "",
        ]
        result: list[str] = []
        for password in ordered:
            if password is not None and password not in result:
                result.append(password)
        return result
