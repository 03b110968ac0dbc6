"""Issue throwaway signing certificates, P12 exports and provisioning profiles."""

import plistlib
import uuid as uuid_lib
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

_CA_KEY = ec.generate_private_key(ec.SECP256R1())
_CA_NAME = x509.Name([
    x509.NameAttribute(NameOID.COMMON_NAME, "Test Worldwide Developer Relations CA"),
    x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Authority"),
])


def common_name_for(kind: str, team_id: str) -> str:
    """'development' -> 'Apple Development: Test Person (TEAMID)'."""
    prefix = "Apple Development" if kind.startswith("dev") else "Apple Distribution"
    return f"{prefix}: Test Person ({team_id})"


def issue_certificate(
    common_name: str,
    team_id: str,
    public_key=None,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    code_signing: bool = True,
):
    """Issue a certificate from the test CA.

    Returns:
        Tuple of (private key or None, x509.Certificate)
    """
    key = None
    if public_key is None:
        key = ec.generate_private_key(ec.SECP256R1())
        public_key = key.public_key()

    now = datetime.now(timezone.utc)
    not_before = not_before or now - timedelta(days=1)
    not_after = not_after or now + timedelta(days=365)

    subject = x509.Name([
        x509.NameAttribute(NameOID.USER_ID, team_id),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, team_id),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Company"),
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
    ])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(_CA_NAME)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    usage = [ExtendedKeyUsageOID.CODE_SIGNING] if code_signing else [ExtendedKeyUsageOID.CLIENT_AUTH]
    builder = builder.add_extension(x509.ExtendedKeyUsage(usage), critical=True)
    return key, builder.sign(_CA_KEY, hashes.SHA256())


def issue_for_csr(csr_pem: str, common_name: str, team_id: str, days: int = 365) -> x509.Certificate:
    """Issue a certificate for a PEM signing request, the way the portal does."""
    csr = x509.load_pem_x509_csr(csr_pem.encode())
    _, cert = issue_certificate(
        common_name,
        team_id,
        public_key=csr.public_key(),
        not_after=datetime.now(timezone.utc) + timedelta(days=days),
    )
    return cert


def write_identity_p12(
    path: Path,
    kind: str,
    team_id: str,
    password: str,
    not_after: Optional[datetime] = None,
    include_key: bool = True,
) -> x509.Certificate:
    """Write a P12 export with a fresh identity and return its certificate."""
    key, cert = issue_certificate(common_name_for(kind, team_id), team_id, not_after=not_after)
    data = pkcs12.serialize_key_and_certificates(
        name=b"test identity",
        key=key if include_key else None,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return cert


def der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def fingerprint(cert: x509.Certificate) -> str:
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def build_profile_bytes(
    app_identifier: str,
    team_id: str,
    certificates: Iterable[x509.Certificate],
    expires_at: Optional[datetime] = None,
    name: str = "Test Profile",
    profile_uuid: Optional[str] = None,
    devices: Iterable[str] = (),
) -> bytes:
    """Build .mobileprovision bytes: a plist wrapped in opaque signature bytes.

    Profiles with devices are development profiles (get-task-allow).
    """
    expires_at = expires_at or datetime.now(timezone.utc) + timedelta(days=300)
    devices = list(devices)
    payload = {
        "AppIDName": name,
        "Name": name,
        "UUID": profile_uuid or str(uuid_lib.uuid4()),
        "TeamIdentifier": [team_id],
        "Platform": ["iOS"],
        "ExpirationDate": expires_at.astimezone(timezone.utc).replace(tzinfo=None),
        "DeveloperCertificates": [der(c) for c in certificates],
        "Entitlements": {
            "application-identifier": f"{team_id}.{app_identifier}",
            "get-task-allow": bool(devices),
        },
    }
    if devices:
        payload["ProvisionedDevices"] = devices
    return b"0\x82\x1f\x00signed-data" + plistlib.dumps(payload) + b"\x00\xa0trailer"
