"""
Keychain access for signing identities.

Every deployment run works inside its own ephemeral keychain: uniquely
named, protected by a random password, and destroyed when the run ends.
The machine's login keychain is never written to.
"""

import logging
import re
import secrets
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography import x509

from ..error_handling import CredentialStoreError
from .models import (
    CertificateType,
    ensure_aware,
    extract_team_id,
    utcnow,
    x509_common_name,
    x509_fingerprint,
    x509_subject_string,
)

logger = logging.getLogger(__name__)

PEM_PATTERN = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)
IDENTITY_PATTERN = re.compile(r'^\s*\d+\)\s+([0-9A-F]{40})\s+"(.*)"', re.MULTILINE)
TRUSTED_TOOLS = ("/usr/bin/codesign", "/usr/bin/security", "/usr/bin/productbuild")
PARTITION_LIST = "apple-tool:,apple:,codesign:"
ITEM_NOT_FOUND_EXIT = 44
KEYCHAIN_SETTINGS_TIMEOUT = 3600


@dataclass(frozen=True)
class StoredCertificate:
    """A certificate enumerated from a keychain.

    Attributes:
        subject: Subject string (includes OU=<team>)
        issuer: Issuer string
        common_name: Subject common name
        expires_at: Expiration timestamp, if it could be read
        fingerprint: SHA-1 fingerprint
    """
    subject: str
    issuer: str
    common_name: str
    expires_at: Optional[datetime]
    fingerprint: str

    @property
    def team_id(self) -> Optional[str]:
        return extract_team_id(self.subject)

    @property
    def certificate_type(self) -> Optional[CertificateType]:
        try:
            return CertificateType.normalize(self.common_name)
        except ValueError:
            return None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return ensure_aware(now or utcnow()) >= self.expires_at

    @classmethod
    def from_x509(cls, cert: x509.Certificate) -> "StoredCertificate":
        return cls(
            subject=x509_subject_string(cert),
            issuer=cert.issuer.rfc4514_string(),
            common_name=x509_common_name(cert),
            expires_at=cert.not_valid_after_utc,
            fingerprint=x509_fingerprint(cert),
        )


class CredentialStoreAdapter(ABC):
    """Contract for a secure credential container.

    Keychains are addressed by name (a path for file-based keychains).
    """

    @abstractmethod
    def create(self, name: str, password: str) -> None:
        """Create a new keychain protected by password.

        A keychain that fails part way through setup is deleted before
        the error is raised.
        """
        pass

    @abstractmethod
    def unlock(self, name: str, password: str) -> None:
        """Unlock a keychain."""
        pass

    @abstractmethod
    def import_item(
        self,
        path: Path,
        password: str,
        name: str,
        trusted_tools: tuple[str, ...] = TRUSTED_TOOLS,
    ) -> None:
        """Import a P12 identity into a keychain."""
        pass

    @abstractmethod
    def set_access_control(self, name: str, password: str) -> None:
        """Allow Apple signing tools to use the imported keys without prompting."""
        pass

    @abstractmethod
    def list_certificates(
        self,
        name: str,
        type_filter: Optional[CertificateType] = None,
    ) -> list[StoredCertificate]:
        """Enumerate certificates, optionally restricted to one type."""
        pass

    @abstractmethod
    def find_identities(self, name: str) -> list[str]:
        """Fingerprints of valid code-signing identities (certificate plus key)."""
        pass

    @abstractmethod
    def delete(self, fingerprint: str, name: str) -> None:
        """Delete a certificate by fingerprint."""
        pass

    @abstractmethod
    def destroy(self, name: str) -> None:
        """Delete the keychain itself. Missing keychains are ignored."""
        pass


class KeychainCredentialStore(CredentialStoreAdapter):
    """Credential store backed by the macOS `security` command."""

    def __init__(self, timeout: int = 60, security_path: str = "security"):
        """Initialize the keychain adapter.

        Args:
            timeout: Timeout in seconds for each security command
            security_path: Path to the security binary
        """
        self.timeout = timeout
        self.security_path = security_path

    def _run(
        self,
        args: list[str],
        operation: str,
        secrets_to_mask: tuple[str, ...] = (),
        allowed_exit_codes: tuple[int, ...] = (0,),
    ) -> subprocess.CompletedProcess:
        """Run a security subcommand.

        Raises:
            CredentialStoreError: On timeout, missing binary or unexpected exit code
        """
        command = [self.security_path, *args]
        printable = " ".join("****" if arg in secrets_to_mask else arg for arg in command)
        logger.debug(f"Running: {printable}")

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CredentialStoreError(
                f"Keychain operation timed out after {self.timeout}s: {operation}",
                error_code="KEYCHAIN_COMMAND_FAILED",
                context={"operation": operation},
                original=e,
            )
        except FileNotFoundError as e:
            raise CredentialStoreError(
                f"security command not available: {operation}",
                error_code="KEYCHAIN_COMMAND_FAILED",
                context={"operation": operation},
                original=e,
            )

        if result.returncode not in allowed_exit_codes:
            stderr = (result.stderr or "").strip()
            for secret in secrets_to_mask:
                if secret:
                    stderr = stderr.replace(secret, "****")
            lowered = stderr.lower()
            if "locked" in lowered or "user interaction is not allowed" in lowered:
                code = "KEYCHAIN_LOCKED"
            elif "passphrase" in lowered or "mac verification failed" in lowered:
                code = "CERTIFICATE_IMPORT_FAILED"
            else:
                code = "KEYCHAIN_COMMAND_FAILED"
            raise CredentialStoreError(
                f"Keychain operation failed: {operation} (exit {result.returncode}): {stderr}",
                error_code=code,
                context={"operation": operation, "exit_code": result.returncode},
            )

        return result

    def _search_list(self) -> list[str]:
        result = self._run(["list-keychains", "-d", "user"], "read keychain search list")
        return [line.strip().strip('"') for line in result.stdout.splitlines() if line.strip()]

    def create(self, name: str, password: str) -> None:
        Path(name).parent.mkdir(parents=True, exist_ok=True)
        self._run(
            ["create-keychain", "-p", password, name],
            "create keychain",
            secrets_to_mask=(password,),
        )
        try:
            self._run(
                ["set-keychain-settings", "-lut", str(KEYCHAIN_SETTINGS_TIMEOUT), name],
                "configure keychain lock timeout",
            )
            # codesign only finds identities in keychains on the user search list
            existing = [k for k in self._search_list() if k != name]
            self._run(
                ["list-keychains", "-d", "user", "-s", name, *existing],
                "add keychain to search list",
            )
        except CredentialStoreError:
            logger.warning(f"Keychain setup failed, deleting {Path(name).name}")
            try:
                self.destroy(name)
            except CredentialStoreError as e:
                logger.warning(f"Could not delete keychain {name}: {e}")
            raise

    def unlock(self, name: str, password: str) -> None:
        self._run(
            ["unlock-keychain", "-p", password, name],
            "unlock keychain",
            secrets_to_mask=(password,),
        )

    def import_item(
        self,
        path: Path,
        password: str,
        name: str,
        trusted_tools: tuple[str, ...] = TRUSTED_TOOLS,
    ) -> None:
        args = ["import", str(path), "-k", name, "-P", password, "-f", "pkcs12"]
        for tool in trusted_tools:
            args.extend(["-T", tool])
        self._run(args, f"import {Path(path).name}", secrets_to_mask=(password,))

    def set_access_control(self, name: str, password: str) -> None:
        self._run(
            ["set-key-partition-list", "-S", PARTITION_LIST, "-s", "-k", password, name],
            "set key partition list",
            secrets_to_mask=(password,),
        )

    def list_certificates(
        self,
        name: str,
        type_filter: Optional[CertificateType] = None,
    ) -> list[StoredCertificate]:
        queries: list[list[str]]
        if type_filter is None:
            queries = [["find-certificate", "-a", "-p", name]]
        else:
            queries = [
                ["find-certificate", "-a", "-c", prefix, "-p", name]
                for prefix in type_filter.common_name_prefixes
            ]

        found: dict[str, StoredCertificate] = {}
        for args in queries:
            result = self._run(
                args,
                "list certificates",
                allowed_exit_codes=(0, ITEM_NOT_FOUND_EXIT),
            )
            for pem in PEM_PATTERN.findall(result.stdout or ""):
                try:
                    cert = x509.load_pem_x509_certificate(pem.encode())
                except ValueError as e:
                    logger.warning(f"Skipping unreadable certificate in {name}: {e}")
                    continue
                stored = StoredCertificate.from_x509(cert)
                found.setdefault(stored.fingerprint, stored)
        return list(found.values())

    def find_identities(self, name: str) -> list[str]:
        result = self._run(
            ["find-identity", "-v", "-p", "codesigning", name],
            "list signing identities",
        )
        return [match.group(1) for match in IDENTITY_PATTERN.finditer(result.stdout or "")]

    def delete(self, fingerprint: str, name: str) -> None:
        self._run(["delete-certificate", "-Z", fingerprint, name], "delete certificate")

    def destroy(self, name: str) -> None:
        self._run(
            ["delete-keychain", name],
            "delete keychain",
            allowed_exit_codes=(0, 50, ITEM_NOT_FOUND_EXIT),
        )


def generate_password(length: int = 32) -> str:
    """Generate a secure random keychain password.

    Args:
        length: Password length (default 32)

    Returns:
        A cryptographically secure random password
    """
    # Shell-safe alphabet; the password is passed as a single argv entry
    alphabet = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_.%+="
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_store_name(directory: Path, label: str) -> str:
    """Generate a unique keychain path for one run."""
    safe_label = re.sub(r"[^A-Za-z0-9_.-]", "_", label) or "run"
    return str(Path(directory) / f"flightdeck-{safe_label}-{secrets.token_hex(4)}.keychain-db")


class EphemeralCredentialStore:
    """A keychain scoped to one deployment run.

    Use as a context manager; the keychain is destroyed on exit whether
    or not the run succeeded.

    Example:
        with EphemeralCredentialStore(KeychainCredentialStore(), keychain_dir, deployment_id) as store:
            store.import_item(p12_path, p12_password)
    """

    def __init__(
        self,
        adapter: CredentialStoreAdapter,
        directory: Path,
        label: str = "run",
        password: Optional[str] = None,
    ):
        self.adapter = adapter
        self.name = generate_store_name(directory, label)
        self.password = password or generate_password()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> "EphemeralCredentialStore":
        """Create and unlock the keychain."""
        logger.info(f"Creating ephemeral keychain {Path(self.name).name}")
        self.adapter.create(self.name, self.password)
        self._open = True
        try:
            self.adapter.unlock(self.name, self.password)
        except Exception:
            self.close()
            raise
        return self

    def close(self) -> None:
        """Destroy the keychain. Failures are logged, never raised."""
        if not self._open:
            return
        try:
            self.adapter.destroy(self.name)
            logger.info(f"Destroyed ephemeral keychain {Path(self.name).name}")
        except CredentialStoreError as e:
            logger.warning(f"Could not destroy keychain {self.name}: {e}")
        finally:
            self._open = False

    def __enter__(self) -> "EphemeralCredentialStore":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def unlock(self) -> None:
        self.adapter.unlock(self.name, self.password)

    def import_item(self, path: Path, p12_password: str) -> None:
        self.adapter.import_item(path, p12_password, self.name)

    def set_access_control(self) -> None:
        self.adapter.set_access_control(self.name, self.password)

    def list_certificates(
        self, type_filter: Optional[CertificateType] = None
    ) -> list[StoredCertificate]:
        return self.adapter.list_certificates(self.name, type_filter)

    def find_identities(self) -> list[str]:
        return self.adapter.find_identities(self.name)

    def delete(self, fingerprint: str) -> None:
        self.adapter.delete(fingerprint, self.name)

    def contains(self, fingerprint: str) -> bool:
        """Whether a certificate with this fingerprint is in the keychain."""
        return any(c.fingerprint == fingerprint for c in self.list_certificates())
