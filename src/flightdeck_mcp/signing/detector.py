"""
Certificate detection across the keychain, P12 exports and App Store Connect.

Each source reports candidates independently. A source that fails is
logged and contributes nothing, so detection always returns whatever the
healthy sources found.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from .credential_store import EphemeralCredentialStore
from .models import (
    CandidateSource,
    CertificateCandidate,
    CertificateType,
    infer_type_from_filename,
    rank_candidates,
)
from .p12 import P12PasswordError, PasswordMap, open_p12

if TYPE_CHECKING:
    from ..repositories import CertificateRepository

logger = logging.getLogger(__name__)


class CertificateDetector:
    """Finds and ranks signing certificates for one team.

    Candidates are ranked keychain first, then P12 files, then the portal;
    within a source the longest-lived certificate wins.
    """

    def __init__(
        self,
        team_id: str,
        store: Optional[EphemeralCredentialStore] = None,
        certificate_dirs: Optional[list[Path]] = None,
        remote: Optional["CertificateRepository"] = None,
        passwords: Optional[PasswordMap] = None,
    ):
        """Initialize the detector.

        Args:
            team_id: Team whose certificates are wanted
            store: The run's ephemeral keychain
            certificate_dirs: Directories scanned for *.p12 exports
            remote: App Store Connect certificate repository
            passwords: Import passwords for P12 files
        """
        self.team_id = team_id
        self.store = store
        self.certificate_dirs = [Path(d) for d in (certificate_dirs or [])]
        self.remote = remote
        self.passwords = passwords or PasswordMap()
        self._cache: dict[CertificateType, Optional[CertificateCandidate]] = {}

    def detect(self, certificate_type: CertificateType) -> list[CertificateCandidate]:
        """Detect and rank candidates of one type from every source.

        Args:
            certificate_type: Development or distribution

        Returns:
            Ranked list of candidates (best first)
        """
        sources: list[tuple[CandidateSource, Callable[[CertificateType], list[CertificateCandidate]]]] = [
            (CandidateSource.CREDENTIAL_STORE, self.detect_store_candidates),
            (CandidateSource.FILE, self.detect_file_candidates),
            (CandidateSource.REMOTE, self.detect_remote_candidates),
        ]

        candidates: list[CertificateCandidate] = []
        for source, finder in sources:
            try:
                found = finder(certificate_type)
            except Exception as e:
                logger.warning(
                    f"{source.value} detection failed for {certificate_type.value}: {e}"
                )
                found = []
            logger.debug(f"{source.value}: {len(found)} {certificate_type.value} candidate(s)")
            candidates.extend(found)

        return rank_candidates(candidates)

    def detect_store_candidates(self, certificate_type: CertificateType) -> list[CertificateCandidate]:
        """Certificates already in the run's keychain."""
        if self.store is None or not self.store.is_open:
            return []

        candidates = []
        for stored in self.store.list_certificates(certificate_type):
            if stored.team_id and stored.team_id != self.team_id:
                continue
            candidates.append(CertificateCandidate(
                source=CandidateSource.CREDENTIAL_STORE,
                certificate_type=certificate_type,
                expires_at=stored.expires_at,
                subject=stored.subject,
                fingerprint=stored.fingerprint,
            ))
        return candidates

    def _p12_files(self) -> list[Path]:
        seen = set()
        files = []
        for directory in self.certificate_dirs:
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob("*.p12")):
                resolved = path.resolve()
                if resolved in seen:
                    continue
                seen.add(resolved)
                files.append(path)
        return files

    def detect_file_candidates(self, certificate_type: CertificateType) -> list[CertificateCandidate]:
        """P12 exports in the certificate directories."""
        candidates = []
        for path in self._p12_files():
            inferred = infer_type_from_filename(path)
            if inferred is not None and inferred != certificate_type:
                continue

            try:
                identity = open_p12(path, self.passwords.candidates(path))
            except (P12PasswordError, OSError) as e:
                if inferred != certificate_type:
                    logger.debug(f"Skipping unreadable {path.name}: {e}")
                    continue
                # Named for this type but unreadable; let validation report it
                candidates.append(CertificateCandidate(
                    source=CandidateSource.FILE,
                    certificate_type=certificate_type,
                    file_path=path,
                ))
                continue

            if identity.certificate_type and identity.certificate_type != certificate_type:
                continue
            if identity.team_id and identity.team_id != self.team_id:
                logger.info(f"Ignoring {path.name}: issued to team {identity.team_id}")
                continue

            candidates.append(CertificateCandidate(
                source=CandidateSource.FILE,
                certificate_type=certificate_type,
                expires_at=identity.expires_at,
                subject=identity.subject,
                fingerprint=identity.fingerprint,
                file_path=path,
            ))
        return candidates

    def detect_remote_candidates(self, certificate_type: CertificateType) -> list[CertificateCandidate]:
        """Certificates App Store Connect reports for the team."""
        if self.remote is None:
            return []

        return [
            CertificateCandidate(
                source=CandidateSource.REMOTE,
                certificate_type=certificate_type,
                expires_at=cert.expires_at,
                subject=cert.name,
                team_id=cert.team_id,
                fingerprint=cert.thumbprint,
                certificate=cert,
            )
            for cert in self.remote.list_certificates(self.team_id, certificate_type)
            if cert.certificate_type == certificate_type
        ]

    def get_best_certificate(self, certificate_type: CertificateType) -> Optional[CertificateCandidate]:
        """Best candidate of a type, cached until invalidate_cache()."""
        if certificate_type not in self._cache:
            ranked = self.detect(certificate_type)
            self._cache[certificate_type] = ranked[0] if ranked else None
        return self._cache[certificate_type]

    def invalidate_cache(self) -> None:
        """Forget cached results after an import, creation or cleanup."""
        self._cache.clear()

    def certificates_available(self, required_types: list[CertificateType]) -> dict[CertificateType, bool]:
        """Whether at least one candidate exists for each type."""
        return {t: self.get_best_certificate(t) is not None for t in required_types}
