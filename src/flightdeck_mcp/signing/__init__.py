"""
Signing certificate lifecycle.

Provides detection, validation, import and remote creation of signing
certificates, isolated in a per-run keychain.
"""

from .models import Certificate, CertificateCandidate, CertificateType, CandidateSource
from .credential_store import (
    CredentialStoreAdapter,
    KeychainCredentialStore,
    EphemeralCredentialStore,
)
from .detector import CertificateDetector
from .validator import CertificateValidator, ValidationLevel
from .importer import CertificateImporter, ImportResult
from .certificate_manager import CertificateManager, CleanupStrategy, select_cleanup_strategy

__all__ = [
    "Certificate",
    "CertificateCandidate",
    "CertificateType",
    "CandidateSource",
    "CredentialStoreAdapter",
    "KeychainCredentialStore",
    "EphemeralCredentialStore",
    "CertificateDetector",
    "CertificateValidator",
    "ValidationLevel",
    "CertificateImporter",
    "ImportResult",
    "CertificateManager",
    "CleanupStrategy",
    "select_cleanup_strategy",
]
