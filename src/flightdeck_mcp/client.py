"""
App Store Connect API client.

Provides the certificate, profile and upload repositories on top of the
App Store Connect REST API, authenticated with an ES256 JWT.
"""

import json
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Any, Iterator, Optional

import httpx
import jwt
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .deployment.credentials import ApiCredentials
from .deployment.profiles import ProfileType, ProvisioningProfile
from .error_handling import APIError, ProfileError, UploadError, api_error_from_http, is_retryable_http_error
from .repositories import CertificateRepository, ProfileRepository, UploadRepository
from .signing.models import Certificate, CertificateType

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.appstoreconnect.apple.com"
TOKEN_AUDIENCE = "appstoreconnect-v1"
TOKEN_LIFETIME = 20 * 60
# Refresh tokens a minute before they expire
TOKEN_REFRESH_MARGIN = 60
PAGE_LIMIT = 200
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD"})

PORTAL_CERTIFICATE_TYPES = {
    CertificateType.DEVELOPMENT: "IOS_DEVELOPMENT,DEVELOPMENT",
    CertificateType.DISTRIBUTION: "IOS_DISTRIBUTION,DISTRIBUTION",
}


class AppStoreConnectClient(CertificateRepository, ProfileRepository, UploadRepository):
    """Client for the App Store Connect API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        upload_timeout: int = 1800,
        xcrun_path: str = "xcrun",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL
            timeout: Timeout in seconds for each HTTP request
            upload_timeout: Timeout in seconds for a build upload
            xcrun_path: Path to xcrun (used for altool uploads)
            transport: Optional httpx transport (for testing)
        """
        self.base_url = base_url.rstrip("/")
        self.upload_timeout = upload_timeout
        self.xcrun_path = xcrun_path
        self._http = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)
        self._key_id: Optional[str] = None
        self._issuer_id: Optional[str] = None
        self._private_key: Optional[bytes] = None
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_credentials(cls, credentials: ApiCredentials, **kwargs: Any) -> "AppStoreConnectClient":
        """Create a client authenticated with API key credentials."""
        client = cls(**kwargs)
        client.authenticate(credentials.key_id, credentials.issuer_id, credentials.read_private_key())
        return client

    def authenticate(self, key_id: str, issuer_id: str, private_key_bytes: bytes) -> None:
        """Set the API key used to sign request tokens.

        Raises:
            APIError: If the key cannot sign an ES256 token
        """
        self._key_id = key_id
        self._issuer_id = issuer_id
        self._private_key = private_key_bytes
        self._token = None
        self._bearer(force=True)

    def _mint_token(self) -> str:
        now = int(time.time())
        payload = {
            "iss": self._issuer_id,
            "iat": now,
            "exp": now + TOKEN_LIFETIME,
            "aud": TOKEN_AUDIENCE,
        }
        try:
            token = jwt.encode(
                payload,
                self._private_key,
                algorithm="ES256",
                headers={"kid": self._key_id, "typ": "JWT"},
            )
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise APIError(
                f"Could not sign App Store Connect token with key {self._key_id}: {e}",
                error_code="API_AUTH_FAILED",
                original=e,
            )
        self._token_expires_at = now + TOKEN_LIFETIME
        return token

    def _bearer(self, force: bool = False) -> str:
        if self._private_key is None:
            raise APIError(
                "App Store Connect client is not authenticated",
                error_code="API_AUTH_FAILED",
            )
        if force or self._token is None or time.time() >= self._token_expires_at - TOKEN_REFRESH_MARGIN:
            self._token = self._mint_token()
        return self._token

    def _exchange(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Send one request, re-authenticating once on 401."""
        response = self._http.request(
            method, url, params=params, json=body,
            headers={"Authorization": f"Bearer {self._bearer()}"},
        )
        if response.status_code == 401:
            logger.info("App Store Connect rejected the token, re-authenticating")
            response = self._http.request(
                method, url, params=params, json=body,
                headers={"Authorization": f"Bearer {self._bearer(force=True)}"},
            )
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    @retry(
        retry=retry_if_exception(is_retryable_http_error),
        wait=wait_exponential(multiplier=1, min=1, max=60),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _send(self, method: str, url: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Send an idempotent read.

        Automatic retry on transient failures (timeouts, transport errors,
        429 and 5xx) with exponential backoff capped at 60s.
        """
        return self._exchange(method, url, params=params)

    def _request(
        self,
        method: str,
        url: str,
        operation: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        try:
            if method in IDEMPOTENT_METHODS:
                return self._send(method, url, params=params)
            # Writes are never resent
            return self._exchange(method, url, params=params, body=body)
        except httpx.HTTPError as e:
            raise api_error_from_http(e, operation)

    def _paginate(
        self,
        url: str,
        operation: str,
        params: Optional[dict[str, Any]] = None,
    ) -> Iterator[tuple[dict[str, Any], list[dict[str, Any]]]]:
        """Yield (resource, included) for every resource across pages."""
        params = dict(params or {}, limit=PAGE_LIMIT)
        while url:
            payload = self._request("GET", url, operation, params=params)
            included = payload.get("included", [])
            for resource in payload.get("data", []):
                yield resource, included
            url = (payload.get("links") or {}).get("next")
            # The next link carries its own query string
            params = None

    # Certificates

    def list_certificates(
        self,
        team_id: str,
        certificate_type: Optional[CertificateType] = None,
    ) -> list[Certificate]:
        params = {}
        if certificate_type is not None:
            params["filter[certificateType]"] = PORTAL_CERTIFICATE_TYPES[certificate_type]

        certificates = []
        for resource, _ in self._paginate("/v1/certificates", "list certificates", params):
            try:
                certificate = Certificate.from_portal_data(resource, team_id)
            except ValueError as e:
                logger.debug(f"Skipping certificate {resource.get('id')}: {e}")
                continue
            if certificate_type is None or certificate.certificate_type is certificate_type:
                certificates.append(certificate)
        return certificates

    def create_certificate(
        self,
        team_id: str,
        certificate_type: CertificateType,
        csr_pem: str,
    ) -> Certificate:
        payload = self._request(
            "POST",
            "/v1/certificates",
            f"create {certificate_type.value} certificate",
            body={
                "data": {
                    "type": "certificates",
                    "attributes": {
                        "certificateType": certificate_type.portal_type,
                        "csrContent": csr_pem,
                    },
                }
            },
        )
        certificate = Certificate.from_portal_data(payload["data"], team_id)
        logger.info(f"Created {certificate_type.value} certificate {certificate.id}")
        return certificate

    def revoke_certificate(self, certificate_id: str) -> None:
        self._request("DELETE", f"/v1/certificates/{certificate_id}", f"revoke certificate {certificate_id}")
        logger.info(f"Revoked certificate {certificate_id}")

    # Profiles

    def list_profiles(self, app_identifier: Optional[str], team_id: str) -> list[ProvisioningProfile]:
        params = {"include": "bundleId,certificates", "filter[profileState]": "ACTIVE"}
        profiles = []
        for resource, included in self._paginate("/v1/profiles", "list profiles", params):
            try:
                profile = ProvisioningProfile.from_portal_data(resource, included, team_id)
            except (ValueError, KeyError, ProfileError) as e:
                logger.debug(f"Skipping profile {resource.get('id')}: {e}")
                continue
            if app_identifier and not profile.matches_identifier(app_identifier):
                continue
            profiles.append(profile)
        return profiles

    def _bundle_id(self, app_identifier: str) -> dict[str, Any]:
        payload = self._request(
            "GET",
            "/v1/bundleIds",
            f"look up bundle id {app_identifier}",
            params={"filter[identifier]": app_identifier},
        )
        for resource in payload.get("data", []):
            if resource.get("attributes", {}).get("identifier") == app_identifier:
                return resource
        raise ProfileError(
            f"Bundle identifier {app_identifier} is not registered",
            recovery_suggestions=["Register the identifier under Certificates, Identifiers & Profiles"],
            context={"app_identifier": app_identifier},
        )

    def _portal_certificate_ids(self, certificates: list[Certificate], team_id: str) -> list[str]:
        """Portal ids for certificates, resolving locally found ones by fingerprint."""
        portal = {c.thumbprint: c.id for c in self.list_certificates(team_id) if c.thumbprint}
        portal_ids = set(portal.values())
        ids = []
        for certificate in certificates:
            if certificate.id in portal_ids:
                ids.append(certificate.id)
            elif certificate.thumbprint and certificate.thumbprint in portal:
                ids.append(portal[certificate.thumbprint])
            else:
                raise ProfileError(
                    f"Certificate {certificate.name} is not known to App Store Connect",
                    context={"fingerprint": certificate.thumbprint},
                )
        return ids

    def create_profile(
        self,
        app_identifier: str,
        certificates: list[Certificate],
        team_id: str,
        profile_type: ProfileType,
    ) -> ProvisioningProfile:
        bundle = self._bundle_id(app_identifier)
        relationships: dict[str, Any] = {
            "bundleId": {"data": {"type": "bundleIds", "id": bundle["id"]}},
            "certificates": {
                "data": [
                    {"type": "certificates", "id": cid}
                    for cid in self._portal_certificate_ids(certificates, team_id)
                ]
            },
        }
        if profile_type is ProfileType.DEVELOPMENT:
            devices = [
                {"type": "devices", "id": resource["id"]}
                for resource, _ in self._paginate(
                    "/v1/devices", "list devices", {"filter[status]": "ENABLED"}
                )
            ]
            relationships["devices"] = {"data": devices}

        suffix = "Development" if profile_type is ProfileType.DEVELOPMENT else "AppStore"
        payload = self._request(
            "POST",
            "/v1/profiles",
            f"create {profile_type.value} profile for {app_identifier}",
            body={
                "data": {
                    "type": "profiles",
                    "attributes": {
                        "name": f"{app_identifier} {suffix}",
                        "profileType": profile_type.portal_type,
                    },
                    "relationships": relationships,
                }
            },
        )
        profile = ProvisioningProfile.from_portal_data(payload["data"], [bundle], team_id)
        logger.info(f"Created {profile_type.value} profile {profile.name}")
        return profile

    # Builds

    def upload_build(
        self,
        package_path: Path,
        credentials: ApiCredentials,
        options: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Upload an .ipa with altool using the API key.

        Raises:
            UploadError: If altool rejects the upload or times out
        """
        package_path = Path(package_path)
        if not package_path.is_file():
            raise UploadError(f"Package not found: {package_path}")

        command = [
            self.xcrun_path, "altool", "--upload-app",
            "-f", str(package_path),
            "-t", (options or {}).get("platform", "ios"),
            "--apiKey", credentials.key_id,
            "--apiIssuer", credentials.issuer_id,
            "--output-format", "json",
        ]
        env = dict(os.environ, API_PRIVATE_KEYS_DIR=str(credentials.private_key_path.parent))
        logger.info(f"Uploading {package_path.name} to App Store Connect")

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.upload_timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise UploadError(
                f"Upload of {package_path.name} timed out after {self.upload_timeout}s",
                error_code="UPLOAD_TIMEOUT",
                original=e,
            )
        except FileNotFoundError as e:
            raise UploadError(
                f"{self.xcrun_path} not found. Is Xcode installed?",
                original=e,
            )

        try:
            output = json.loads(result.stdout) if result.stdout.strip() else {}
        except ValueError:
            output = {"output": result.stdout.strip()[-2000:]}

        if result.returncode != 0:
            detail = output.get("product-errors") or result.stderr.strip()[-2000:] or result.stdout.strip()[-2000:]
            raise UploadError(
                f"App Store Connect rejected {package_path.name}: {detail}",
                context={"package": str(package_path)},
            )

        return {
            "status": "uploaded",
            "package": str(package_path),
            "message": output.get("success-message", "No errors uploading"),
        }

    def _app_id(self, app_identifier: str) -> Optional[str]:
        payload = self._request(
            "GET", "/v1/apps", f"look up app {app_identifier}",
            params={"filter[bundleId]": app_identifier},
        )
        for resource in payload.get("data", []):
            if resource.get("attributes", {}).get("bundleId") == app_identifier:
                return resource["id"]
        return None

    def get_build_status(self, app_identifier: str, build_number: str) -> dict[str, Any]:
        app_id = self._app_id(app_identifier)
        if app_id is None:
            return {"state": "NOT_FOUND", "app_id": None, "build_id": None}

        payload = self._request(
            "GET", "/v1/builds", f"get build {build_number} status",
            params={"filter[app]": app_id, "filter[version]": build_number, "limit": 1},
        )
        builds = payload.get("data", [])
        if not builds:
            return {"state": "NOT_FOUND", "app_id": app_id, "build_id": None}

        build = builds[0]
        return {
            "state": build.get("attributes", {}).get("processingState", "PROCESSING"),
            "app_id": app_id,
            "build_id": build["id"],
        }

    def close(self) -> None:
        """Close the HTTP connection pool."""
        self._http.close()

    def __enter__(self) -> "AppStoreConnectClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
