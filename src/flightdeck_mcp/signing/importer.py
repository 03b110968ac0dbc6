"""
Import of P12 exports into the run's keychain.

An import only counts as successful once the certificate is enumerated
back from the keychain and is not expired. Expected failures come back
as ImportResult values carrying a typed error, never as exceptions.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from ..error_handling import CertificateError, CredentialStoreError, FlightdeckError
from .credential_store import EphemeralCredentialStore
from .models import CertificateType, ensure_aware, infer_type_from_filename, utcnow
from .p12 import P12Identity, P12PasswordError, PasswordMap, open_p12

logger = logging.getLogger(__name__)

MAX_P12_SIZE = 50 * 1024 * 1024
P12_EXTENSION = ".p12"


@dataclass
class ImportResult:
    """Outcome of importing one P12 file.

    Attributes:
        success: Whether the certificate is now usable from the keychain
        file_path: The imported file
        certificate_type: Type the file was imported as
        fingerprint: SHA-1 fingerprint of the imported certificate
        already_present: The keychain already held this certificate
        error: Why the import failed
        imported_at: When the import finished
    """
    success: bool
    file_path: Path
    certificate_type: Optional[CertificateType] = None
    fingerprint: Optional[str] = None
    already_present: bool = False
    error: Optional[FlightdeckError] = None
    imported_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "success": self.success,
            "file": str(self.file_path),
            "type": self.certificate_type.value if self.certificate_type else None,
            "fingerprint": self.fingerprint,
            "already_present": self.already_present,
        }
        if self.error:
            result.update(self.error.to_dict())
        return result


@dataclass
class BatchImportResult:
    """Aggregate of a directory import."""
    results: list[ImportResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


def check_p12_file(file_path: Path) -> None:
    """Check a file is an importable P12 export.

    Raises:
        CertificateError: If the file is missing, unreadable, misnamed, empty or too large
    """
    if not file_path.is_file():
        raise CertificateError(f"Certificate file not found: {file_path}")
    if not os.access(file_path, os.R_OK):
        raise CertificateError(
            f"Certificate file is not readable: {file_path}",
            error_code="CERTIFICATE_IMPORT_FAILED",
            recovery_suggestions=[f"Fix permissions with: chmod 600 {file_path}"],
        )
    if file_path.suffix.lower() != P12_EXTENSION:
        raise CertificateError(
            f"Not a P12 export: {file_path.name}",
            error_code="CERTIFICATE_IMPORT_FAILED",
            recovery_suggestions=["Export the certificate and private key from Keychain Access as .p12"],
        )
    size = file_path.stat().st_size
    if size == 0:
        raise CertificateError(
            f"Certificate file is empty: {file_path.name}",
            error_code="CERTIFICATE_IMPORT_FAILED",
            recovery_suggestions=["Re-export the P12 from Keychain Access"],
        )
    if size > MAX_P12_SIZE:
        raise CertificateError(
            f"Certificate file is too large ({size} bytes): {file_path.name}",
            error_code="CERTIFICATE_IMPORT_FAILED",
            recovery_suggestions=["Export only the signing certificate and its private key"],
        )


class CertificateImporter:
    """Imports P12 exports into the run's ephemeral keychain."""

    def __init__(
        self,
        store: EphemeralCredentialStore,
        passwords: Optional[PasswordMap] = None,
        scan_dir: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the importer.

        Args:
            store: The run's ephemeral keychain
            passwords: Import passwords for P12 files
            scan_dir: Default directory for auto_import
            clock: Returns the current time
        """
        self.store = store
        self.passwords = passwords or PasswordMap()
        self.scan_dir = Path(scan_dir) if scan_dir else None
        self.clock = clock
        self.history: list[ImportResult] = []

    def import_certificate(
        self,
        file_path: Path,
        password: Optional[str] = None,
        certificate_type: Optional[CertificateType] = None,
    ) -> ImportResult:
        """Import one P12 file and verify it landed in the keychain.

        Args:
            file_path: The P12 export
            password: Preferred password; configured passwords are tried after it
            certificate_type: Type to import as (inferred from the file name if omitted)

        Returns:
            ImportResult describing the outcome
        """
        file_path = Path(file_path)
        certificate_type = (
            certificate_type or infer_type_from_filename(file_path) or CertificateType.DEVELOPMENT
        )
        result = ImportResult(success=False, file_path=file_path, certificate_type=certificate_type)

        try:
            check_p12_file(file_path)
            identity = self._open(file_path, password)
            result.fingerprint = identity.fingerprint

            if self.store.contains(identity.fingerprint):
                logger.info(f"{file_path.name} already in keychain, skipping import")
                result.already_present = True
            else:
                self.store.unlock()
                self.store.import_item(file_path, identity.password)
                self.store.set_access_control()

            self._verify(identity)
            result.success = True
            if not result.already_present:
                logger.info(f"Imported {certificate_type.value} certificate from {file_path.name}")

            result.imported_at = self.clock()

        except FlightdeckError as e:
            result.error = e.with_context(file=str(file_path), type=certificate_type.value)
            logger.warning(f"Import of {file_path.name} failed: {e}")

        self.history.append(result)
        return result

    def _open(self, file_path: Path, password: Optional[str]) -> P12Identity:
        try:
            return open_p12(file_path, self.passwords.candidates(file_path, password))
        except P12PasswordError as e:
            raise CertificateError(
                str(e),
                error_code="CERTIFICATE_IMPORT_FAILED",
                recovery_suggestions=[
                    "Re-export the P12 with the current import password",
                    "Set P12_PASSWORD in the team config.env",
                ],
                original=e,
            )

    def _verify(self, identity: P12Identity) -> None:
        stored = [c for c in self.store.list_certificates() if c.fingerprint == identity.fingerprint]
        if not stored:
            raise CredentialStoreError(
                "Import reported success but the certificate is not in the keychain",
                error_code="CERTIFICATE_IMPORT_FAILED",
                context={"fingerprint": identity.fingerprint},
            )
        if stored[0].is_expired(ensure_aware(self.clock())):
            raise CertificateError(
                "Imported certificate is expired",
                error_code="CERTIFICATE_EXPIRED",
                context={"fingerprint": identity.fingerprint},
            )

    def auto_import(self, directory: Optional[Path] = None) -> BatchImportResult:
        """Import every P12 file in a directory, continuing past failures.

        Args:
            directory: Directory to scan (defaults to the importer's scan_dir)

        Returns:
            BatchImportResult with one result per file
        """
        directory = Path(directory) if directory else self.scan_dir
        batch = BatchImportResult()
        if directory is None or not directory.is_dir():
            logger.info(f"No certificate directory to import from: {directory}")
            return batch

        for path in sorted(directory.glob(f"*{P12_EXTENSION}")):
            try:
                batch.results.append(self.import_certificate(path, self.passwords.resolve(path)))
            except Exception as e:
                logger.error(f"Unexpected error importing {path.name}: {e}", exc_info=True)
                batch.results.append(ImportResult(
                    success=False,
                    file_path=path,
                    error=CertificateError(
                        f"Unexpected error importing {path.name}: {e}",
                        error_code="CERTIFICATE_IMPORT_FAILED",
                        original=e,
                    ),
                ))

        logger.info(
            f"Imported {batch.successful}/{batch.total} certificate file(s) from {directory}"
        )
        return batch
